from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import structlog

from taskloop.config.settings import TaskSettings, get_settings
from taskloop.domain.approval.rate_limit import RequestRateLimiter
from taskloop.domain.common.errors import TaskNotFoundError
from taskloop.domain.common.events import TaskEvent
from taskloop.domain.common.waiting import wait_for
from taskloop.domain.context.environment import EnvironmentProvider
from taskloop.domain.models.messages import HistoryItem
from taskloop.domain.models.provider_state import ProviderState
from taskloop.domain.orchestration.core.task import Task
from taskloop.domain.tool.builtin_tools import create_default_registry
from taskloop.domain.tool.tool_registry import ToolRegistry
from taskloop.domain.transport.api_handler import ApiHandler, ModelSettings
from taskloop.infrastructure.observability.telemetry import NullTelemetry, TelemetrySink
from taskloop.infrastructure.persistence.task_storage import InMemoryTaskStorage, TaskStorage

logger = structlog.get_logger(__name__)

# Resources a task owns: terminals, url_fetcher, browser_session, edit_session
ResourceFactory = Callable[[], Dict[str, Any]]
TaskCreatedHook = Callable[[Task], None]

CANCEL_WAIT_SECONDS = 3.0


class TaskOrchestrator:
    """Host for tasks: the task stack plus the services all tasks share.

    The top of the stack is the active task. A parent stays below its
    sub-task, paused, until the sub-task finishes and is popped. The rate
    limiter lives here so parent and sub-tasks space their requests off
    the same clock.
    """

    def __init__(
        self,
        api_handler: ApiHandler,
        settings: Optional[TaskSettings] = None,
        storage: Optional[TaskStorage] = None,
        telemetry: Optional[TelemetrySink] = None,
        tool_registry: Optional[ToolRegistry] = None,
        rate_limiter: Optional[RequestRateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        condensing_api_handler: Optional[ApiHandler] = None,
        model_settings: Optional[ModelSettings] = None,
        environment_factory: Optional[Callable[[Optional[str]], EnvironmentProvider]] = None,
        resource_factory: Optional[ResourceFactory] = None,
        workspace: Optional[str] = None,
    ):
        self.api_handler = api_handler
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryTaskStorage()
        self.telemetry = telemetry or NullTelemetry()
        self.tool_registry = tool_registry or create_default_registry()
        self.rate_limiter = rate_limiter or RequestRateLimiter()
        self.sleep = sleep
        self.condensing_api_handler = condensing_api_handler
        self.model_settings = model_settings
        self.environment_factory = environment_factory
        self.resource_factory = resource_factory
        self.workspace = workspace

        self.mode = self.settings.default_mode
        self.task_stack: List[Task] = []
        self._state_overrides: Dict[str, Any] = {}
        self._task_created_hooks: List[TaskCreatedHook] = []
        self._task_count = 0

    # Configuration

    def get_state(self) -> ProviderState:
        values = {
            name: getattr(self.settings, name)
            for name in ProviderState.model_fields
            if hasattr(self.settings, name)
        }
        values["mode"] = self.mode
        values.update(self._state_overrides)
        return ProviderState(**values)

    def update_state(self, **overrides: Any) -> None:
        unknown = set(overrides) - set(ProviderState.model_fields)
        if unknown:
            raise ValueError(f"Unknown state keys: {sorted(unknown)}")
        self._state_overrides.update(overrides)

    def on_task_created(self, hook: TaskCreatedHook) -> None:
        self._task_created_hooks.append(hook)

    # Stack

    def get_current_task(self) -> Optional[Task]:
        return self.task_stack[-1] if self.task_stack else None

    def _new_task(
        self,
        history_item: Optional[HistoryItem] = None,
        parent_task: Optional[Task] = None,
        root_task: Optional[Task] = None,
        mode: Optional[str] = None,
    ) -> Task:
        self._task_count += 1
        resources = self.resource_factory() if self.resource_factory else {}
        environment = self.environment_factory(self.workspace) if self.environment_factory else None

        task = Task(
            self,
            self.api_handler,
            history_item=history_item,
            parent_task=parent_task,
            root_task=root_task,
            task_number=self._task_count,
            mode=mode,
            condensing_api_handler=self.condensing_api_handler,
            model_settings=self.model_settings,
            environment=environment,
            workspace=self.workspace,
            **resources,
        )
        self.task_stack.append(task)

        for hook in self._task_created_hooks:
            try:
                hook(task)
            except Exception as e:
                logger.error("Error in task created hook", task_id=task.task_id, error=str(e))

        logger.info(
            "Task added to stack",
            task_id=task.task_id,
            instance_id=task.instance_id,
            depth=len(self.task_stack),
            parent_task_id=parent_task.task_id if parent_task else None
        )
        return task

    async def _remove_current(self) -> None:
        if not self.task_stack:
            return
        task = self.task_stack.pop()
        logger.info("Task removed from stack", task_id=task.task_id, instance_id=task.instance_id)
        if not task.abort:
            await task.abort_task(abandoned=True)
        else:
            task.abandoned = True

    async def clear_task(self) -> None:
        """Drop the active task"""
        await self._remove_current()

    # Creation

    async def create_task(self, text: str, images: Optional[List[str]] = None) -> Task:
        """Start a new top-level task, replacing whatever was running"""

        while self.task_stack:
            await self._remove_current()

        task = self._new_task(mode=self.mode)
        task.start_in_background(text, images)
        return task

    async def init_task_with_history_item(
        self,
        item: HistoryItem,
        parent_task: Optional[Task] = None,
        root_task: Optional[Task] = None,
    ) -> Task:
        """Resume a stored task; a live instance with the same id is abandoned"""

        for existing in [t for t in self.task_stack if t.task_id == item.id]:
            self.task_stack.remove(existing)
            existing.abandoned = True
            if not existing.abort:
                await existing.abort_task(abandoned=True)

        if parent_task is None:
            while self.task_stack:
                await self._remove_current()

        if item.mode and item.mode != self.mode:
            self.mode = item.mode

        task = self._new_task(history_item=item, parent_task=parent_task, root_task=root_task, mode=item.mode)
        task.start_in_background()
        return task

    async def restart_from_history(self, task: Task) -> Task:
        """Fresh instance of `task` built from what it persisted"""

        item = await self.storage.get_history_item(task.task_id)
        if item is None:
            item = task.build_history_item(task.store.ui_messages, task.get_token_usage())
        if item is None:
            raise TaskNotFoundError(f"No history for task {task.task_id}")
        return await self.init_task_with_history_item(item, parent_task=task.parent_task, root_task=task.root_task)

    async def get_task_with_id(self, task_id: str) -> HistoryItem:
        item = await self.storage.get_history_item(task_id)
        if item is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return item

    # Sub-tasks

    async def start_subtask(self, parent: Task, message: str, mode: Optional[str] = None) -> Task:
        """Pause `parent` and run `message` as its sub-task"""

        await parent.pause_for_subtask(self.mode)

        if mode and mode != self.mode:
            await self.handle_mode_switch(mode)
            await self.sleep(self.settings.mode_switch_delay)

        child = self._new_task(parent_task=parent, root_task=parent.root_task or parent, mode=self.mode)
        await parent.emit(TaskEvent.TASK_SPAWNED, parent.task_id, child.task_id)
        child.start_in_background(message)
        return child

    async def finish_subtask(self, last_message: str) -> None:
        """Pop the finished sub-task and hand its result to the parent"""

        await self._remove_current()
        parent = self.get_current_task()
        if parent is not None:
            await parent.resume_paused_task(last_message)

    # Mode

    async def handle_mode_switch(self, mode: str) -> None:
        logger.info("Switching mode", previous=self.mode, mode=mode)
        self.mode = mode
        task = self.get_current_task()
        if task is not None:
            task.mode = mode
            await task.emit(TaskEvent.TASK_MODE_SWITCHED, task.task_id, mode)

    # Cancellation

    async def cancel_task(self) -> Optional[Task]:
        """Abort the active task and restart it from its saved history"""

        task = self.get_current_task()
        if task is None:
            return None

        logger.info("Cancelling task", task_id=task.task_id, instance_id=task.instance_id)
        await task.abort_task()

        try:
            await wait_for(
                lambda: self.get_current_task() is not task
                or task.did_finish_aborting_stream
                or (task.loop_task is not None and task.loop_task.done()),
                interval=0.1,
                timeout=CANCEL_WAIT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("Stream did not finish aborting in time", task_id=task.task_id)

        if self.get_current_task() is not task:
            return self.get_current_task()

        task.abandoned = True
        return await self.restart_from_history(task)
