from typing import List, Optional, Union, TYPE_CHECKING
import asyncio
import json
import structlog

from taskloop.domain.common.errors import AskIgnoredError, TaskAbortedError
from taskloop.domain.models.messages import AskKind, AskResponse, SayKind, TextBlock, ToolResultBlock
from taskloop.domain.models.task_state import StreamingRound, TextContent, ToolUseContent
from taskloop.domain.prompts import responses
from taskloop.domain.streaming.assistant_parser import clean_display_text
from taskloop.domain.tool.tool_registry import ToolRegistry

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task import Task

logger = structlog.get_logger(__name__)


class ToolCallbacks:
    """What a tool handler may do to the round it runs in"""

    def __init__(self, task: "Task", round: StreamingRound, block: ToolUseContent, requires_approval: bool):
        self.task = task
        self.round = round
        self.block = block
        self.requires_approval = requires_approval
        self.approval_feedback: Optional[List] = None

    def push_result(self, content: Union[str, List], is_error: bool = False) -> None:
        """Answer the tool use; only one tool result is accepted per round"""

        blocks = [TextBlock(text=content or "(tool did not return anything)")] if isinstance(content, str) else list(content)
        if self.approval_feedback:
            blocks = self.approval_feedback + blocks
            self.approval_feedback = None
        self.round.user_message_content.append(
            ToolResultBlock(tool_use_id=self.block.id, content=blocks, is_error=is_error)
        )
        self.round.did_already_use_tool = True

    async def ask_approval(self, message: Optional[str] = None, kind: AskKind = AskKind.TOOL) -> bool:
        """Ask the human to approve the call; a refusal rejects the rest of the round"""

        if not self.requires_approval:
            await self.task.say(SayKind.TOOL, message)
            return True

        answer = await self.task.ask(kind, message, partial=False)
        if answer.response != AskResponse.YES_BUTTON_CLICKED:
            if answer.text:
                await self.task.say(SayKind.USER_FEEDBACK, answer.text, answer.images)
                self.push_result(responses.tool_result(responses.tool_denied_with_feedback(answer.text), answer.images))
            else:
                self.push_result(responses.tool_denied())
            self.round.did_reject_tool = True
            return False

        if answer.text:
            await self.task.say(SayKind.USER_FEEDBACK, answer.text, answer.images)
            self.approval_feedback = responses.tool_result(responses.tool_approved_with_feedback(answer.text), answer.images)
        return True

    async def handle_error(self, action: str, error: BaseException) -> None:
        message = f"Error {action}: {error}"
        logger.error("Tool failed", tool=self.block.name, action=action, error=str(error))
        await self.task.say(SayKind.ERROR, message)
        await self.task.record_tool_error(self.block.name, str(error))
        self.push_result(responses.tool_error(message), is_error=True)


class AssistantMessagePresenter:
    """Presents parsed assistant blocks in order and runs their tools.

    Runs as a background asyncio task scheduled after every streamed chunk.
    Only one presentation runs at a time; a call arriving while one is in
    progress marks pending updates and the running one picks them up.
    `round.ready` is set once the last available block has been handled.
    """

    def __init__(self, task: "Task", registry: ToolRegistry):
        self.task = task
        self.registry = registry

    def schedule(self, round: StreamingRound) -> None:
        """Start presenting without waiting for it"""

        if round.present_locked:
            round.has_pending_updates = True
            return
        presentation = asyncio.create_task(self.present(round))
        presentation.add_done_callback(lambda t: self._on_done(t, round))
        round.presentation = presentation

    def _on_done(self, presentation: "asyncio.Task[None]", round: StreamingRound) -> None:
        if presentation.cancelled():
            return
        error = presentation.exception()
        if error is None or isinstance(error, TaskAbortedError):
            return
        logger.error("Error presenting assistant message", task_id=self.task.task_id, error=str(error))
        # Unblock the loop; unanswered tool uses are repaired before the next request.
        round.ready = True

    async def present(self, round: StreamingRound) -> None:
        if self.task.abort:
            raise TaskAbortedError(self.task.task_id, self.task.instance_id, "present")

        if round.present_locked:
            round.has_pending_updates = True
            return

        round.present_locked = True
        try:
            while True:
                round.has_pending_updates = False

                if round.current_index >= len(round.blocks):
                    if round.did_complete_reading_stream:
                        round.ready = True
                    return

                block = round.blocks[round.current_index].model_copy(deep=True)
                await self._present_block(round, block)

                if not block.partial or round.did_reject_tool or round.did_already_use_tool:
                    if round.current_index == len(round.blocks) - 1:
                        round.ready = True
                    round.current_index += 1
                    if round.current_index < len(round.blocks):
                        continue

                if round.has_pending_updates:
                    continue
                return
        finally:
            round.present_locked = False

    async def _present_block(self, round: StreamingRound, block) -> None:
        if isinstance(block, TextContent):
            if round.did_reject_tool or round.did_already_use_tool:
                return
            await self.task.say(SayKind.TEXT, clean_display_text(block.content, block.partial), partial=block.partial)
            return

        if isinstance(block, ToolUseContent):
            await self._present_tool_use(round, block)

    async def _present_tool_use(self, round: StreamingRound, block: ToolUseContent) -> None:
        if round.did_reject_tool:
            round.user_message_content.append(ToolResultBlock(
                tool_use_id=block.id,
                content=[TextBlock(text=responses.tool_skipped_after_rejection(block.name, block.partial))],
            ))
            return

        if round.did_already_use_tool:
            round.user_message_content.append(ToolResultBlock(
                tool_use_id=block.id,
                content=[TextBlock(text=responses.tool_already_used(block.name))],
            ))
            return

        definition = self.registry.get_tool(block.name)
        handler = self.registry.get_handler(block.name)
        state = self.task.get_state()
        requires_approval = (
            definition is not None
            and definition.requires_approval
            and block.name not in state.auto_approved_tools
        )
        callbacks = ToolCallbacks(self.task, round, block, requires_approval)

        if block.partial:
            if requires_approval:
                try:
                    await self.task.ask(AskKind.TOOL, self._describe(block), partial=True)
                except AskIgnoredError:
                    pass
            return

        self.task.record_tool_usage(block.name)

        if definition is None or handler is None:
            self.task.consecutive_mistake_count += 1
            await callbacks.handle_error("executing tool", ValueError(f"Unknown tool '{block.name}'"))
            return

        if definition.modes is not None and self.task.mode not in definition.modes:
            self.task.consecutive_mistake_count += 1
            await callbacks.handle_error(
                "executing tool", ValueError(f"Tool '{block.name}' is not allowed in {self.task.mode} mode")
            )
            return

        missing = self.registry.missing_parameters(block.name, block.params)
        if missing:
            self.task.consecutive_mistake_count += 1
            await self.task.record_tool_error(block.name, f"missing {missing[0]}")
            await self.task.say(
                SayKind.ERROR,
                f"The model tried to use {block.name} without value for required parameter '{missing[0]}'. Retrying...",
            )
            callbacks.push_result(responses.tool_error(responses.missing_tool_parameter_error(missing[0])), is_error=True)
            return

        try:
            await handler(self.task, block, callbacks)
        except (TaskAbortedError, AskIgnoredError):
            raise
        except Exception as e:
            await callbacks.handle_error(f"executing {block.name}", e)

    @staticmethod
    def _describe(block: ToolUseContent) -> str:
        return json.dumps({"tool": block.name, **block.params})
