from typing import Any, Awaitable, Callable, Dict, List, Union
import inspect
import structlog

logger = structlog.get_logger(__name__)

Handler = Callable[..., Union[None, Awaitable[None]]]


class TaskEvent:
    """Names of events a task emits"""
    MESSAGE = "message"
    TASK_STARTED = "task_started"
    TASK_ABORTED = "task_aborted"
    TASK_IDLE = "task_idle"
    TASK_ACTIVE = "task_active"
    TASK_PAUSED = "task_paused"
    TASK_UNPAUSED = "task_unpaused"
    TASK_SPAWNED = "task_spawned"
    TASK_MODE_SWITCHED = "task_mode_switched"
    TASK_TOKEN_USAGE_UPDATED = "task_token_usage_updated"
    TASK_TOOL_FAILED = "task_tool_failed"
    TASK_COMPLETED = "task_completed"


class EventEmitter:
    """Minimal async event emitter; listener failures never reach the emitter"""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in event handler", event_type=event, error=str(e))
