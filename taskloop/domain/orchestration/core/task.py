from typing import Any, Dict, List, Optional, TYPE_CHECKING
from datetime import datetime
import asyncio
import inspect
import uuid
import structlog

from taskloop.domain.common.errors import (
    SubtaskTimeoutError, TaskAbortedError, UnexpectedStateError
)
from taskloop.domain.common.events import EventEmitter, TaskEvent
from taskloop.domain.common.waiting import wait_for
from taskloop.domain.context.condense import summarize_conversation
from taskloop.domain.context.context_manager import interrupted_result
from taskloop.domain.context.environment import DefaultEnvironment, EnvironmentProvider
from taskloop.domain.conversation.metrics import get_api_metrics, parse_api_request_info
from taskloop.domain.conversation.store import ConversationStore
from taskloop.domain.interaction.ask_say import AskSayProtocol
from taskloop.domain.approval.auto_approval import AutoApprovalHandler
from taskloop.domain.models.messages import (
    ApiMessage, AskKind, AskResponse, AskResult, ContextCondense, HistoryItem, SayKind,
    TextBlock, TokenUsage, ToolUsage, ToolUsageStats, UIMessage
)
from taskloop.domain.models.provider_state import ProviderState
from taskloop.domain.models.task_state import LoopPhase, StreamingRound, TaskActivity, UserContent
from taskloop.domain.orchestration.core.request_loop import RequestLoop
from taskloop.domain.prompts import responses
from taskloop.domain.prompts.system import build_system_prompt
from taskloop.domain.tool.tool_executor import AssistantMessagePresenter
from taskloop.domain.transport.api_handler import ApiHandler, ModelSettings
from taskloop.infrastructure.observability.logging import bind_task_context

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task_orchestrator import TaskOrchestrator

logger = structlog.get_logger(__name__)

# Messages newer than this are treated as a fresh interruption on resume.
RECENT_INTERRUPTION_MS = 30_000


class Task(EventEmitter):
    """One agent run: its logs, its flags and the loop that drives it.

    A sub-task keeps a non-owning reference to its parent. Several Task
    instances may exist for the same task id over time (restart, resume);
    `instance_id` tells them apart and only the newest one drives the task.
    """

    def __init__(
        self,
        orchestrator: "TaskOrchestrator",
        api_handler: ApiHandler,
        history_item: Optional[HistoryItem] = None,
        parent_task: Optional["Task"] = None,
        root_task: Optional["Task"] = None,
        task_number: int = 1,
        mode: Optional[str] = None,
        condensing_api_handler: Optional[ApiHandler] = None,
        model_settings: Optional[ModelSettings] = None,
        environment: Optional[EnvironmentProvider] = None,
        terminals: Optional[List[Any]] = None,
        url_fetcher: Optional[Any] = None,
        browser_session: Optional[Any] = None,
        edit_session: Optional[Any] = None,
        workspace: Optional[str] = None,
    ):
        super().__init__()
        self.orchestrator = orchestrator
        self.settings = orchestrator.settings
        self.telemetry = orchestrator.telemetry
        self.rate_limiter = orchestrator.rate_limiter
        self.sleep = orchestrator.sleep

        self.task_id = history_item.id if history_item else str(uuid.uuid4())
        self.instance_id = str(uuid.uuid4())[:8]
        self.history_item = history_item
        self.task_number = history_item.number if history_item else task_number
        self.parent_task = parent_task
        self.root_task = root_task or (parent_task.root_task or parent_task if parent_task else None)
        self.mode = mode or (history_item.mode if history_item and history_item.mode else orchestrator.mode)
        self.workspace = workspace or (history_item.workspace if history_item else None)

        self.api_handler = api_handler
        self.condensing_api_handler = condensing_api_handler
        self.model_settings = model_settings
        self.environment = environment or DefaultEnvironment(self.workspace)

        # Resources released on dispose
        self.terminals = list(terminals or [])
        self.url_fetcher = url_fetcher
        self.browser_session = browser_session
        self.edit_session = edit_session

        self.abort = False
        self.abandoned = False
        self.is_paused = False
        self.paused_mode_slug: Optional[str] = None
        self.blocking_ask: Optional[AskKind] = None
        self.is_initialized = False
        self.is_streaming = False
        self.did_finish_aborting_stream = False
        self.phase = LoopPhase.IDLE
        self.activity = TaskActivity.ACTIVE
        self._disposed = False

        self.consecutive_mistake_count = 0
        self.consecutive_mistake_limit = self.settings.consecutive_mistake_limit
        self.tool_usage: ToolUsage = {}

        self.store = ConversationStore(
            self.task_id,
            orchestrator.storage,
            self,
            self.telemetry,
            history_item_builder=self.build_history_item,
        )
        self.interaction = AskSayProtocol(self, poll_interval=self.settings.ask_poll_interval)
        self.auto_approval = AutoApprovalHandler()
        self.presenter = AssistantMessagePresenter(self, orchestrator.tool_registry)
        self.loop = RequestLoop(self)

        self.round = StreamingRound()
        self._suppress_next_response_id = False
        self._resume_content: UserContent = []
        self.loop_task: Optional["asyncio.Task[None]"] = None

    # Host access

    def get_state(self) -> ProviderState:
        return self.orchestrator.get_state()

    @property
    def tool_registry(self):
        return self.orchestrator.tool_registry

    async def get_system_prompt(self) -> str:
        state = self.get_state()
        return build_system_prompt(
            self.mode,
            self.tool_registry.tools_for_mode(self.mode),
            state.custom_instructions,
        )

    # Interaction

    async def ask(
        self,
        kind: AskKind,
        text: Optional[str] = None,
        partial: Optional[bool] = None,
        progress_status: Optional[Dict[str, Any]] = None,
    ) -> AskResult:
        return await self.interaction.ask(kind, text, partial, progress_status)

    async def say(
        self,
        kind: SayKind,
        text: Optional[str] = None,
        images: Optional[List[str]] = None,
        partial: Optional[bool] = None,
        checkpoint: Optional[Dict[str, Any]] = None,
        progress_status: Optional[Dict[str, Any]] = None,
        context_condense: Optional[ContextCondense] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_non_interactive: bool = False,
    ) -> UIMessage:
        return await self.interaction.say(
            kind,
            text,
            images,
            partial=partial,
            checkpoint=checkpoint,
            progress_status=progress_status,
            context_condense=context_condense,
            metadata=metadata,
            is_non_interactive=is_non_interactive,
        )

    def handle_ask_response(
        self,
        response: AskResponse,
        text: Optional[str] = None,
        images: Optional[List[str]] = None,
    ) -> None:
        """Deliver the caller's answer to the pending ask"""
        self.interaction.deliver_response(response, text, images)

    # Rounds

    def new_round(self) -> StreamingRound:
        """Fresh streaming state; consumes a pending response-id suppression"""
        self.round = StreamingRound(suppress_previous_response_id=self._suppress_next_response_id)
        self._suppress_next_response_id = False
        return self.round

    def take_resume_content(self) -> UserContent:
        content, self._resume_content = self._resume_content, []
        return content

    # Lifecycle

    def start_in_background(self, task: Optional[str] = None, images: Optional[List[str]] = None) -> "asyncio.Task[None]":
        if task is None and images is None and self.history_item is not None:
            runner = self.resume_from_history()
        else:
            runner = self.start(task or "", images)
        self.loop_task = asyncio.create_task(self._drive(runner))
        return self.loop_task

    async def _drive(self, runner) -> None:
        bind_task_context(self.task_id, self.instance_id)
        try:
            await runner
        except TaskAbortedError:
            logger.info("Task loop stopped after abort", task_id=self.task_id, instance_id=self.instance_id)
        except Exception as e:
            logger.error("Task loop failed", task_id=self.task_id, instance_id=self.instance_id, error=str(e))
            raise

    async def start(self, task: str, images: Optional[List[str]] = None) -> bool:
        """Run a fresh task from its description"""

        self.store.api_messages = []
        self.store.ui_messages = []
        await self.say(SayKind.TEXT, task, images)
        self.is_initialized = True

        logger.info("Starting task", task_id=self.task_id, instance_id=self.instance_id, mode=self.mode)
        user_content = [TextBlock(text=f"<task>\n{task}\n</task>")] + responses.image_blocks(images)
        return await self.loop.run(user_content)

    async def resume_from_history(self) -> bool:
        """Continue a persisted task after asking how to proceed"""

        await self.store.load()

        ui_messages = list(self.store.ui_messages)
        while ui_messages and ui_messages[-1].type == "ask" and ui_messages[-1].ask in (
            AskKind.RESUME_TASK, AskKind.RESUME_COMPLETED_TASK
        ):
            ui_messages.pop()

        for index in range(len(ui_messages) - 1, -1, -1):
            info = parse_api_request_info(ui_messages[index])
            if info is None:
                continue
            if info.cost is None and info.cancel_reason is None:
                # Never finished, so it carries no usage worth keeping.
                ui_messages.pop(index)
            break

        await self.store.overwrite_ui(ui_messages)

        last_ui = ui_messages[-1] if ui_messages else None
        ask_kind = (
            AskKind.RESUME_COMPLETED_TASK
            if last_ui is not None and last_ui.ask == AskKind.COMPLETION_RESULT
            else AskKind.RESUME_TASK
        )

        self.is_initialized = True
        logger.info("Resuming task", task_id=self.task_id, instance_id=self.instance_id, ask=ask_kind.value)

        answer = await self.ask(ask_kind)
        response_text = None
        response_images = None
        if answer.response == AskResponse.MESSAGE_RESPONSE:
            await self.say(SayKind.USER_FEEDBACK, answer.text, answer.images)
            response_text = answer.text
            response_images = answer.images

        history, user_content = self._prepare_resumed_history(list(self.store.api_messages))

        ago = self._interrupted_ago(last_ui)
        resumption = (
            f"[TASK RESUMPTION] This task was interrupted {ago}. It may or may not be complete, so please "
            "reassess the task context. Be aware that the project state may have changed since then. If the "
            "task has not been completed, retry the last step before interruption and proceed with completing "
            "the task.\n\nNote: If you previously attempted a tool use that the user did not provide a result "
            "for, you should assume the tool use was not successful and assess whether you should retry."
        )
        if response_text:
            resumption += f"\n\nNew instructions for task continuation:\n<user_message>\n{response_text}\n</user_message>"
        user_content.append(TextBlock(text=resumption))
        user_content.extend(responses.image_blocks(response_images))

        await self.store.overwrite_api(history)
        return await self.loop.run(user_content)

    def _prepare_resumed_history(self, history: List[ApiMessage]):
        """History to keep plus the content that opens the next user turn"""

        if not history:
            raise UnexpectedStateError("Unexpected: No existing API conversation history")

        last = history[-1]
        if last.role == "assistant":
            return history, [interrupted_result(use.id) for use in last.tool_uses()]

        if last.role == "user":
            previous = history[-2] if len(history) > 1 else None
            existing = [b for b in last.content if not (
                isinstance(b, TextBlock) and b.text.startswith("[TASK RESUMPTION]")
            )]
            if previous is not None and previous.role == "assistant":
                answered = {r.tool_use_id for r in last.tool_results()}
                missing = [interrupted_result(use.id) for use in previous.tool_uses() if use.id not in answered]
                return history[:-1], existing + missing
            return history[:-1], existing

        raise UnexpectedStateError("Unexpected: Last message is not a user or assistant message")

    @staticmethod
    def _interrupted_ago(last_ui: Optional[UIMessage]) -> str:
        if last_ui is None:
            return "just now"
        elapsed_ms = max(0, int(datetime.now().timestamp() * 1000) - last_ui.ts)
        if elapsed_ms < RECENT_INTERRUPTION_MS:
            return "just now"
        minutes = elapsed_ms // 60_000
        if minutes < 60:
            return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
        hours = minutes // 60
        if hours < 24:
            return f"{hours} hour{'s' if hours != 1 else ''} ago"
        days = hours // 24
        return f"{days} day{'s' if days != 1 else ''} ago"

    # Pause / resume

    async def wait_for_resume(self) -> None:
        """Block until the sub-task this task delegated to reports back"""

        try:
            await wait_for(
                lambda: not self.is_paused or self.abort,
                interval=self.settings.pause_poll_interval,
                timeout=self.settings.subtask_wait_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Timed out waiting for sub-task",
                task_id=self.task_id,
                timeout=self.settings.subtask_wait_timeout
            )
            await self.say(SayKind.ERROR, "Timed out waiting for the sub-task to finish.")
            raise SubtaskTimeoutError(f"task {self.task_id} gave up waiting for its sub-task")

    async def resume_paused_task(self, last_message: str) -> None:
        """Called by the host when the sub-task finished"""

        self.is_paused = False
        await self.emit(TaskEvent.TASK_UNPAUSED, self.task_id)

        await self.say(SayKind.SUBTASK_RESULT, last_message)
        # Joins the next user turn so it stays behind the pending tool result.
        self._resume_content.append(TextBlock(text=f"[new_task completed] Result: {last_message}"))

    async def pause_for_subtask(self, current_mode: str) -> None:
        self.paused_mode_slug = current_mode
        self.is_paused = True
        await self.emit(TaskEvent.TASK_PAUSED, self.task_id)

    # Abort

    async def abort_task(self, abandoned: bool = False) -> None:
        logger.info("Aborting task", task_id=self.task_id, instance_id=self.instance_id, abandoned=abandoned)

        if abandoned:
            self.abandoned = True
        self.abort = True
        self.phase = LoopPhase.ABORTED

        await self.emit(TaskEvent.TASK_ABORTED, self.task_id)

        try:
            await self.dispose()
        except Exception as e:
            logger.error("Error during task disposal", task_id=self.task_id, error=str(e))

        await self.store.save_ui()

    async def dispose(self) -> None:
        """Release owned resources once; each release is isolated"""

        if self._disposed:
            return
        self._disposed = True

        steps = [("terminals", self._release_terminals)]
        if self.url_fetcher is not None:
            steps.append(("url fetcher", self.url_fetcher.close))
        if self.browser_session is not None:
            steps.append(("browser session", self.browser_session.close))
        if self.edit_session is not None:
            steps.append(("edit session", self.revert_edits))

        for name, step in steps:
            try:
                await _maybe_await(step())
            except Exception as e:
                logger.error("Error releasing task resource", task_id=self.task_id, resource=name, error=str(e))

    async def _release_terminals(self) -> None:
        for terminal in self.terminals:
            try:
                await _maybe_await(terminal.release())
            except Exception as e:
                logger.error("Error releasing terminal", task_id=self.task_id, error=str(e))
        self.terminals = []

    async def revert_edits(self) -> None:
        if self.edit_session is not None and getattr(self.edit_session, "is_editing", False):
            await _maybe_await(self.edit_session.revert_changes())

    # Context

    async def condense_context(self) -> None:
        """Summarize the conversation on request"""

        state = self.get_state()
        usage = self.get_token_usage()
        system_prompt = await self.get_system_prompt()

        result = await summarize_conversation(
            self.store.api_messages,
            self.api_handler,
            system_prompt,
            self.task_id,
            usage.context_tokens,
            is_automatic_trigger=False,
            custom_condensing_prompt=state.custom_condensing_prompt,
            condensing_api_handler=self.condensing_api_handler,
        )
        if result.error:
            await self.say(SayKind.CONDENSE_CONTEXT_ERROR, result.error)
            return

        await self.store.overwrite_api(result.messages)
        self._suppress_next_response_id = True
        await self.say(
            SayKind.CONDENSE_CONTEXT,
            context_condense=ContextCondense(
                prev_context_tokens=usage.context_tokens,
                new_context_tokens=result.new_context_tokens or 0,
                cost=result.cost,
                summary=result.summary,
            ),
            is_non_interactive=True,
        )

    # Usage

    def get_token_usage(self) -> TokenUsage:
        return get_api_metrics(self.store.ui_messages)

    def record_tool_usage(self, tool_name: str) -> None:
        self.tool_usage.setdefault(tool_name, ToolUsageStats()).attempts += 1

    async def record_tool_error(self, tool_name: str, error: Optional[str] = None) -> None:
        self.tool_usage.setdefault(tool_name, ToolUsageStats()).failures += 1
        logger.warning("Tool error recorded", task_id=self.task_id, tool=tool_name, error=error)
        await self.emit(TaskEvent.TASK_TOOL_FAILED, self.task_id, tool_name, error)

    def build_history_item(self, ui_messages: List[UIMessage], usage: TokenUsage) -> Optional[HistoryItem]:
        if not ui_messages:
            return None
        return HistoryItem(
            id=self.task_id,
            number=self.task_number,
            ts=ui_messages[-1].ts,
            task=ui_messages[0].text or "",
            tokens_in=usage.total_tokens_in,
            tokens_out=usage.total_tokens_out,
            cache_writes=usage.total_cache_writes,
            cache_reads=usage.total_cache_reads,
            total_cost=usage.total_cost,
            workspace=self.workspace,
            mode=self.mode,
            parent_task_id=self.parent_task.task_id if self.parent_task else None,
            root_task_id=self.root_task.task_id if self.root_task else None,
        )


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value
