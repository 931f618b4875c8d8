"""Evidence substitution: replace #E<n> references with earlier step results."""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Literal, Mapping

from core.errors import EvidenceOrderError
from core.state import Step

SubstitutionMode = Literal["token", "literal"]

# Greedy digits, so #E1 never matches the start of #E10.
STEP_REF_RE = re.compile(r"#E\d+")


def find_references(text: str) -> list[str]:
    """Step ids referenced in `text`, in order of first appearance."""
    seen: dict[str, None] = {}
    for match in STEP_REF_RE.finditer(text or ""):
        seen.setdefault(match.group(0))
    return list(seen)


def _substitute_tokens(raw: str, evidence: Mapping[str, str]) -> tuple[str, list[str]]:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        ref = match.group(0)
        if ref in evidence:
            return evidence[ref]
        if ref not in missing:
            missing.append(ref)
        return ref

    return STEP_REF_RE.sub(_replace, raw), missing


def _substitute_literal(raw: str, evidence: Mapping[str, str]) -> tuple[str, list[str]]:
    # Plain substring replacement in evidence order; #E1 also rewrites the
    # prefix of #E10. Kept for output parity with older plans.
    missing = [ref for ref in find_references(raw) if not any(k in ref for k in evidence)]
    resolved = raw
    for key, value in evidence.items():
        resolved = resolved.replace(key, value)
    return resolved, missing


def resolve_input(
    raw: str,
    evidence: Mapping[str, str] | None,
    *,
    mode: SubstitutionMode = "token",
    strict: bool = True,
) -> str:
    """
    Return `raw` with every known step id replaced by its evidence.

    With `strict`, a reference to a step that has no evidence yet raises
    EvidenceOrderError. An input without references comes back unchanged.
    """
    raw = raw or ""
    evidence = evidence or {}
    if mode == "literal":
        resolved, missing = _substitute_literal(raw, evidence)
    else:
        resolved, missing = _substitute_tokens(raw, evidence)
    if strict and missing:
        raise EvidenceOrderError(missing)
    return resolved


def render_plan(
    steps: Iterable[Step],
    evidence: Mapping[str, str] | None,
    *,
    mode: SubstitutionMode = "token",
) -> str:
    """Plan text for the solver, with results substituted into ids and inputs."""
    lines: list[str] = []
    for step in steps:
        step_ref = resolve_input(step.step_id, evidence, mode=mode, strict=False)
        tool_input = resolve_input(step.raw_input, evidence, mode=mode, strict=False)
        lines.append(f"Plan: {step.description}\n{step_ref} = {step.tool_name}[{tool_input}]")
    return "\n".join(lines)


def serialize_result(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
