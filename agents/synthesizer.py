"""Solve node: final answer from the plan and the collected evidence."""

from __future__ import annotations

import logging

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from config import settings
from core.evidence import SubstitutionMode, render_plan
from core.llm import history_messages, make_llm, message_text
from core.state import ConversationTurn, TaskState, task_context

logger = logging.getLogger(__name__)

SOLVE_ERROR_MESSAGE = "Error producing the final answer, please try again or contact support."

SOLVER_SYSTEM_PROMPT = """\
You are an economics, statistics and marketing expert who talks to a user through \
a chat box. Sometimes you will not see what a tool returned; then just say \
whether it succeeded."""

SOLVE_PROMPT = """\
Solve the following task or problem. To solve it, we made a step-by-step plan and \
retrieved the evidence for each step. Use the evidence with caution, long evidence \
may contain irrelevant information.

{plan}

Now answer the task using the evidence above. Reply directly to the user.

Task: {task}
Response:"""


def make_solver_node(
    model: BaseChatModel | None = None,
    *,
    substitution: SubstitutionMode | None = None,
    max_history_turns: int | None = None,
):
    mode = substitution or settings.evidence_substitution
    max_turns = settings.max_history_turns if max_history_turns is None else max_history_turns

    async def solver_node(state: TaskState, config: RunnableConfig) -> dict:
        ctx = task_context(config)
        task = state["task"]
        plan = render_plan(state.get("steps") or [], state.get("evidence"), mode=mode)
        llm = model or make_llm(settings.openai_strong_model)
        messages = [
            SystemMessage(content=SOLVER_SYSTEM_PROMPT),
            *history_messages(state.get("history"), max_turns),
            HumanMessage(content=SOLVE_PROMPT.format(plan=plan, task=task)),
        ]

        try:
            result = ""
            async for chunk in llm.astream(messages):
                result += message_text(chunk)
            result = result.strip() or SOLVE_ERROR_MESSAGE
        except Exception as e:
            logger.error("Solver failed for task %r: %s", task, e)
            result = SOLVE_ERROR_MESSAGE

        await ctx.emit("result", {"message": result})
        return {
            "result": result,
            "history": [ConversationTurn(user=f"Here are the results of the plan:\n{plan}", assistant=result)],
        }

    return solver_node
