from typing import TYPE_CHECKING
import json
import structlog

from taskloop.domain.common.events import TaskEvent
from taskloop.domain.models.messages import AskKind, AskResponse, SayKind
from taskloop.domain.models.task_state import ToolUseContent
from taskloop.domain.prompts import responses
from taskloop.domain.tool.tool_registry import ToolDefinition, ToolParameter, ToolRegistry

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task import Task
    from taskloop.domain.tool.tool_executor import ToolCallbacks

logger = structlog.get_logger(__name__)


async def attempt_completion(task: "Task", block: ToolUseContent, tool: "ToolCallbacks") -> None:
    """Present the result; a sub-task hands it back to its parent"""

    result = block.params.get("result", "")
    task.consecutive_mistake_count = 0

    await task.say(SayKind.COMPLETION_RESULT, result)
    task.telemetry.capture_event("task_completed", task.task_id)
    await task.emit(TaskEvent.TASK_COMPLETED, task.task_id, task.get_token_usage(), task.tool_usage)

    if task.parent_task is not None:
        approved = await tool.ask_approval(json.dumps({"tool": "finishTask"}))
        if not approved:
            return
        tool.push_result("")
        await task.orchestrator.finish_subtask(f"Task complete: {result}")
        return

    answer = await task.ask(AskKind.COMPLETION_RESULT, "")
    if answer.response == AskResponse.YES_BUTTON_CLICKED:
        tool.push_result("")
        return

    await task.say(SayKind.USER_FEEDBACK, answer.text or "", answer.images)
    tool.push_result(responses.tool_result(
        "The user has provided feedback on the results. Consider their input to continue the task, "
        f"and then attempt completion again.\n<feedback>\n{answer.text or ''}\n</feedback>",
        answer.images,
    ))


async def ask_followup_question(task: "Task", block: ToolUseContent, tool: "ToolCallbacks") -> None:
    question = block.params.get("question", "")
    task.consecutive_mistake_count = 0

    answer = await task.ask(AskKind.FOLLOWUP, question, partial=False)
    await task.say(SayKind.USER_FEEDBACK, answer.text or "", answer.images)
    tool.push_result(responses.tool_result(f"<answer>\n{answer.text or ''}\n</answer>", answer.images))


async def new_task(task: "Task", block: ToolUseContent, tool: "ToolCallbacks") -> None:
    """Delegate work to a sub-task and pause until it reports back"""

    mode = block.params.get("mode", "")
    message = block.params.get("message", "")
    task.consecutive_mistake_count = 0

    approved = await tool.ask_approval(json.dumps({"tool": "newTask", "mode": mode, "content": message}))
    if not approved:
        return

    tool.push_result(f"Successfully created new task in {mode} mode with message: {message}")
    child = await task.orchestrator.start_subtask(task, message, mode)
    logger.info("Started sub-task", parent_task_id=task.task_id, child_task_id=child.task_id, mode=mode)


async def switch_mode(task: "Task", block: ToolUseContent, tool: "ToolCallbacks") -> None:
    mode = block.params.get("mode_slug", "")
    reason = block.params.get("reason", "")
    task.consecutive_mistake_count = 0

    if mode == task.mode:
        tool.push_result(f"Already in {mode} mode.")
        return

    approved = await tool.ask_approval(json.dumps({"tool": "switchMode", "mode": mode, "reason": reason}))
    if not approved:
        return

    await task.orchestrator.handle_mode_switch(mode)
    tool.push_result(f"Successfully switched to {mode} mode" + (f" because: {reason}" if reason else "."))


def create_default_registry() -> ToolRegistry:
    """Registry with the tools the loop itself relies on"""

    registry = ToolRegistry()
    registry.register_tool(
        ToolDefinition(
            name="attempt_completion",
            description="Present the final result of the task to the user.",
            category="workflow",
            parameters={"result": ToolParameter(description="The result of the task", required=True)},
            requires_approval=False,
        ),
        attempt_completion,
    )
    registry.register_tool(
        ToolDefinition(
            name="ask_followup_question",
            description="Ask the user a question to gather information needed to complete the task.",
            category="workflow",
            parameters={"question": ToolParameter(description="The question to ask", required=True)},
            requires_approval=False,
        ),
        ask_followup_question,
    )
    registry.register_tool(
        ToolDefinition(
            name="new_task",
            description="Create a sub-task in the given mode; this task pauses until it completes.",
            category="workflow",
            parameters={
                "mode": ToolParameter(description="Slug of the mode to start the sub-task in", required=True),
                "message": ToolParameter(description="Instructions for the sub-task", required=True),
            },
        ),
        new_task,
    )
    registry.register_tool(
        ToolDefinition(
            name="switch_mode",
            description="Switch to a different mode.",
            category="workflow",
            parameters={
                "mode_slug": ToolParameter(description="Slug of the mode to switch to", required=True),
                "reason": ToolParameter(description="Why the switch is needed"),
            },
        ),
        switch_mode,
    )
    return registry
