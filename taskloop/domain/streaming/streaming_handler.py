from typing import Any, Dict, Optional, TYPE_CHECKING
import structlog
from pydantic import BaseModel

from taskloop.application.websocket.connection_manager import ConnectionManager
from taskloop.application.websocket.schema.events import MessageEvent, TaskStateEvent
from taskloop.domain.common.events import TaskEvent

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task import Task

logger = structlog.get_logger(__name__)

# Positional arguments each lifecycle event carries after the task id
STATE_EVENT_ARGS = {
    TaskEvent.TASK_STARTED: (),
    TaskEvent.TASK_ABORTED: (),
    TaskEvent.TASK_IDLE: (),
    TaskEvent.TASK_ACTIVE: (),
    TaskEvent.TASK_PAUSED: (),
    TaskEvent.TASK_UNPAUSED: (),
    TaskEvent.TASK_SPAWNED: ("child_task_id",),
    TaskEvent.TASK_MODE_SWITCHED: ("mode",),
    TaskEvent.TASK_TOKEN_USAGE_UPDATED: ("token_usage",),
    TaskEvent.TASK_TOOL_FAILED: ("tool", "error"),
    TaskEvent.TASK_COMPLETED: ("token_usage", "tool_usage"),
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


class StreamingHandler:
    """Streams task activity to a WebSocket client"""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        self.connection_manager = connection_manager or ConnectionManager()

    def attach(self, session_id: str, task: "Task") -> None:
        """Bind `task` to `session_id` and forward every event it emits"""

        self.connection_manager.bind_task(session_id, task.task_id)

        async def on_message(payload: Dict[str, Any]) -> None:
            await self.send_message(task.task_id, payload)

        task.on(TaskEvent.MESSAGE, on_message)

        for event, names in STATE_EVENT_ARGS.items():
            task.on(event, self._state_forwarder(event, names))

        logger.debug("Streaming task events", session_id=session_id, task_id=task.task_id)

    def _state_forwarder(self, event: str, names):
        async def forward(task_id: str, *args: Any) -> None:
            payload = {name: _jsonable(value) for name, value in zip(names, args)}
            await self.send_state(task_id, event, payload)
        return forward

    async def send_message(self, task_id: str, payload: Dict[str, Any]) -> None:
        await self.connection_manager.send_to_task(
            task_id,
            MessageEvent(
                action=payload["action"],
                task_id=task_id,
                message=payload["message"],
            )
        )

    async def send_state(self, task_id: str, state: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.connection_manager.send_to_task(
            task_id,
            TaskStateEvent(task_id=task_id, state=state, payload=payload or {})
        )
