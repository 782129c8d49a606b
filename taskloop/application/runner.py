"""Headless task execution."""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field
import asyncio
import structlog

from taskloop.domain.common.events import TaskEvent
from taskloop.domain.models.messages import AskKind, AskResponse, TokenUsage, ToolUsageStats, UIMessage
from taskloop.domain.orchestration.core.task import Task
from taskloop.domain.orchestration.core.task_orchestrator import TaskOrchestrator

logger = structlog.get_logger(__name__)

DEFAULT_TASK_TIMEOUT_SECONDS = 30 * 60

# Asks a headless run never answers on its own
UNANSWERED_ASKS = {AskKind.COMPLETION_RESULT}


class TaskRunResult(BaseModel):
    """Outcome of a headless run"""
    task_id: str
    completed: bool = False
    timed_out: bool = False
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    tool_usage: Dict[str, ToolUsageStats] = Field(default_factory=dict)


def _auto_respond(task: Task):
    async def on_message(payload) -> None:
        message: UIMessage = payload["message"]
        if message.type != "ask" or message.partial or message.ask in UNANSWERED_ASKS:
            return
        logger.debug("Auto-approving ask", task_id=task.task_id, ask=message.kind)
        task.handle_ask_response(AskResponse.YES_BUTTON_CLICKED)
    return on_message


async def run_task(
    orchestrator: TaskOrchestrator,
    prompt: str,
    images: Optional[List[str]] = None,
    timeout: float = DEFAULT_TASK_TIMEOUT_SECONDS,
) -> TaskRunResult:
    """Run `prompt` to completion, approving every request along the way.

    The run ends when the top-level task completes, when its loop ends on
    its own, or when `timeout` expires; in the last case the task is
    cancelled. The task is cleared from the orchestrator afterwards.
    """

    completed = asyncio.Event()
    outcome: Dict[str, object] = {}

    def on_task_created(task: Task) -> None:
        task.on(TaskEvent.MESSAGE, _auto_respond(task))
        if task.parent_task is None:
            def on_completed(task_id: str, usage: TokenUsage, tool_usage: Dict[str, ToolUsageStats]) -> None:
                outcome["token_usage"] = usage
                outcome["tool_usage"] = dict(tool_usage)
                completed.set()
            task.on(TaskEvent.TASK_COMPLETED, on_completed)

    orchestrator.on_task_created(on_task_created)
    task = await orchestrator.create_task(prompt, images)
    result = TaskRunResult(task_id=task.task_id)

    completion_waiter = asyncio.create_task(completed.wait())
    try:
        done, _ = await asyncio.wait(
            {completion_waiter, task.loop_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if not done:
            logger.warning("Task timed out", task_id=task.task_id, timeout=timeout)
            result.timed_out = True
    finally:
        completion_waiter.cancel()

    result.completed = completed.is_set()
    result.token_usage = outcome.get("token_usage") or task.get_token_usage()
    result.tool_usage = outcome.get("tool_usage") or dict(task.tool_usage)

    while orchestrator.task_stack:
        await orchestrator.clear_task()

    logger.info(
        "Task run finished",
        task_id=task.task_id,
        completed=result.completed,
        timed_out=result.timed_out,
        total_cost=result.token_usage.total_cost
    )
    return result
