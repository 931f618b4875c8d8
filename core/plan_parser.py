"""Plan parsing: raw planner output -> ordered steps.

Two independent consumers read the planner stream: `PlanStreamScanner` reports
completed units as they appear (progress only), and `parse_plan` runs once over
the accumulated text and is the only source of truth for routing.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from core.state import Step

logger = logging.getLogger(__name__)

STEP_ID_PATTERN = r"#E\d+"

# Plan: <description> #E<n> = <toolName>[<rawInput>]
PLAN_UNIT_RE = re.compile(
    r"Plan:\s*(?P<description>.+?)\s*(?P<step_id>#E\d+)\s*=\s*(?P<tool>\w+)\s*\[(?P<input>[^\]]*)\]"
)


@dataclass
class ParsedPlan:
    steps: list[Step] = field(default_factory=list)
    plan_text: str = ""
    direct_response: str | None = None

    @property
    def is_direct(self) -> bool:
        return not self.steps


def _step_from_match(match: re.Match) -> Step:
    return Step(
        description=match.group("description").strip(),
        step_id=match.group("step_id"),
        tool_name=match.group("tool"),
        raw_input=match.group("input").strip(),
    )


def _dedupe(steps: list[Step]) -> list[Step]:
    seen: set[str] = set()
    unique: list[Step] = []
    for step in steps:
        if step.step_id in seen:
            logger.warning("Dropping duplicate plan step %s (%s)", step.step_id, step.tool_name)
            continue
        seen.add(step.step_id)
        unique.append(step)
    return unique


def parse_plan(text: str) -> ParsedPlan:
    """
    Extract every plan unit from `text` in textual order.

    Tool names are not validated here; an unknown tool surfaces when the
    router reaches that step. No units at all means the model answered
    directly, and the whole text becomes the direct response.
    """
    text = text or ""
    steps = _dedupe([_step_from_match(m) for m in PLAN_UNIT_RE.finditer(text)])
    if not steps:
        return ParsedPlan(steps=[], plan_text="", direct_response=text.strip())
    return ParsedPlan(steps=steps, plan_text=text.strip(), direct_response=None)


class PlanStreamScanner:
    """Incremental scanner over streamed planner chunks.

    `feed` returns the units completed since the previous call. A unit is
    complete once its closing bracket has arrived; results are for progress
    notifications and are never used for routing.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._reported = 0

    @property
    def text(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> list[Step]:
        if not chunk:
            return []
        self._buffer += chunk
        matches = list(PLAN_UNIT_RE.finditer(self._buffer))
        new = [_step_from_match(m) for m in matches[self._reported:]]
        self._reported = len(matches)
        return new


# Structured planner output


class PlannedStep(BaseModel):
    stepId: str = Field(description="Step id in the form #E<n>, e.g. #E1")
    description: str = Field(description="What this step does")
    toolName: str = Field(description="Name of the tool or agent that runs this step")
    toolParameters: list[str | int | float] = Field(
        default_factory=list,
        description="Inputs for the tool; earlier results are referenced by their step id",
    )


class PlannerOutput(BaseModel):
    steps: list[PlannedStep] = Field(default_factory=list)
    directResponse: str | None = Field(
        default=None,
        description="Answer for the user when no tool is needed",
    )


def _coerce_payload(payload: Any) -> dict:
    if isinstance(payload, BaseModel):
        return payload.model_dump()
    if isinstance(payload, str):
        return json.loads(payload)
    if isinstance(payload, dict):
        return dict(payload)
    raise ValueError(f"Unsupported planner payload: {type(payload).__name__}")


def plan_from_structured(payload: Any) -> ParsedPlan:
    """
    Build a ParsedPlan from a structured planner response.

    Accepts a PlannerOutput, a dict or a JSON string. Some models return the
    steps list itself JSON-encoded inside a single string; that is unwrapped.
    Raises ValueError when the payload cannot be read.
    """
    data = _coerce_payload(payload)
    raw_steps = data.get("steps") or []
    if isinstance(raw_steps, str):
        raw_steps = json.loads(raw_steps)
    if len(raw_steps) == 1 and isinstance(raw_steps[0], str):
        raw_steps = json.loads(raw_steps[0])

    steps: list[Step] = []
    for raw in raw_steps:
        item = PlannedStep.model_validate(raw)
        if not re.fullmatch(STEP_ID_PATTERN, item.stepId.strip()):
            raise ValueError(f"Invalid step id: {item.stepId!r}")
        raw_input = ", ".join(str(p) for p in item.toolParameters)
        step = Step(
            description=item.description.strip(),
            step_id=item.stepId.strip(),
            tool_name=item.toolName.strip(),
            raw_input=raw_input,
        )
        steps.append(step)

    steps = _dedupe(steps)
    if not steps:
        direct = data.get("directResponse") or ""
        return ParsedPlan(steps=[], plan_text="", direct_response=direct)
    plan_text = "\n".join(
        f"Plan: {s.description} {s.step_id} = {s.tool_name}[{s.raw_input}]" for s in steps
    )
    return ParsedPlan(steps=steps, plan_text=plan_text, direct_response=None)
