"""Planner node: turns the task into `Plan: ... #E<n> = tool[input]` steps."""

from __future__ import annotations

import logging
from typing import Literal

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from config import settings
from core.llm import ainvoke_structured, history_messages, make_llm, message_text
from core.plan_parser import ParsedPlan, PlannerOutput, PlanStreamScanner, parse_plan, plan_from_structured
from core.registry import AgentRegistry
from core.state import ConversationTurn, Step, TaskContext, TaskState, task_context

logger = logging.getLogger(__name__)

PLANNING_ERROR_MESSAGE = (
    "We had a problem creating a response for your requests. Please try again or contact support."
)

PLANNER_SYSTEM_PROMPT = """\
You are an economics, statistics and marketing expert who talks to a user through \
a chat box. You have tools that help you solve problems. Sometimes you will not \
see what a tool returns, only whether it succeeded. You don't know the current \
date. If the message needs no tool (a greeting, small talk, a question you can \
answer directly), reply to the user in plain text without any plan."""

PLAN_PROMPT = """\
For the following task, make plans that solve the problem step by step. For each \
plan, say which tool and which tool input retrieve the evidence. Store the \
evidence in a variable #E that later steps can use (Plan, #E1, Plan, #E2, ...). \
Pass a previous result to a later tool by writing its #E in that tool's input.

You can only use these tools:
{tools}

For example,

Task: A rectangle has a length of 20 meters and a width of 15 meters. Calculate its perimeter.
Plan: Add the length and the width. #E1 = calculate[add 20 15]
Plan: Multiply the sum by 2 to get the perimeter. #E2 = calculate[multiply #E1 2]

Task: What's 5 to the power of 2 multiplied by the square root of 7?
Plan: Raise 5 to the power of 2. #E1 = calculate[power 5 2]
Plan: Calculate the square root of 7. #E2 = calculate[root 7 2]
Plan: Multiply both results. #E3 = calculate[multiply #E1 #E2]

Begin! Each Plan is followed by exactly one #E. A plan does not see earlier \
results unless you pass their #E. Keep plans simple; one step is fine when one \
tool is enough.

Task: {task}"""

STRUCTURED_PLAN_PROMPT = """\
Break the task into steps. Each step has an id (#E1, #E2, ...), a description, \
the tool that runs it and the tool parameters. Reference an earlier result by \
putting its id in a parameter. If no tool is needed, return no steps and put your \
answer for the user in directResponse.

Available tools:
{tools}

Task: {task}"""


def _step_event(step: Step) -> dict:
    return {"stepId": step.step_id, "description": step.description, "toolName": step.tool_name}


async def _stream_plan(model: BaseChatModel, messages: list, ctx: TaskContext) -> ParsedPlan:
    scanner = PlanStreamScanner()
    async for chunk in model.astream(messages):
        for step in scanner.feed(message_text(chunk)):
            await ctx.emit("plan_step", _step_event(step))
    # Streaming results above are progress only; this parse decides routing.
    return parse_plan(scanner.text)


def make_planner_node(
    registry: AgentRegistry,
    model: BaseChatModel | None = None,
    *,
    output: Literal["text", "structured"] | None = None,
    max_history_turns: int | None = None,
):
    output = output or settings.planner_output
    max_turns = settings.max_history_turns if max_history_turns is None else max_history_turns

    async def planner_node(state: TaskState, config: RunnableConfig) -> dict:
        """Plan the task; a reply with no plan units becomes a direct response."""
        ctx = task_context(config)
        task = state["task"]
        llm = model or make_llm(settings.openai_strong_model)
        prompt = STRUCTURED_PLAN_PROMPT if output == "structured" else PLAN_PROMPT
        messages = [
            SystemMessage(content=PLANNER_SYSTEM_PROMPT),
            *history_messages(state.get("history"), max_turns),
            HumanMessage(content=prompt.format(tools=registry.describe(), task=task)),
        ]

        try:
            if output == "structured":
                structured = await ainvoke_structured(
                    llm, messages, PlannerOutput, retries=settings.structured_output_retries
                )
                plan = plan_from_structured(structured)
                for step in plan.steps:
                    await ctx.emit("plan_step", _step_event(step))
            else:
                plan = await _stream_plan(llm, messages, ctx)
        except Exception as e:
            logger.error("Planner failed for task %r: %s", task, e)
            plan = ParsedPlan(steps=[], plan_text="", direct_response=PLANNING_ERROR_MESSAGE)

        if plan.is_direct and not plan.direct_response:
            plan.direct_response = PLANNING_ERROR_MESSAGE

        logger.info("Planner produced %s steps for %r", len(plan.steps), task)
        if plan.steps:
            await ctx.emit(
                "plan",
                {"message": plan.plan_text, "steps": [_step_event(s) for s in plan.steps]},
            )

        return {
            "plan_string": plan.plan_text,
            "steps": plan.steps,
            "direct_response": plan.direct_response,
            "selected_agent": plan.steps[0].tool_name if plan.steps else "",
            "result": "",
            "history": [
                ConversationTurn(
                    user=f"Here is a task: {task}",
                    assistant=plan.plan_text or plan.direct_response or "",
                )
            ],
        }

    return planner_node
