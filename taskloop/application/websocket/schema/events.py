from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from taskloop.domain.models.messages import AskResponse, UIMessage


class EventType(str, Enum):
    """WebSocket event types"""
    # Server to client
    MESSAGE = "message"
    TASK_STATE = "task_state"
    ERROR = "error"
    CONNECTION = "connection"
    # Client to server
    START_TASK = "start_task"
    ASK_RESPONSE = "ask_response"
    CANCEL_TASK = "cancel_task"
    CONDENSE_CONTEXT = "condense_context"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: Optional[str] = None


class MessageEvent(BaseEvent):
    """A UI message was created or updated"""
    type: Literal[EventType.MESSAGE] = EventType.MESSAGE
    action: Literal["created", "updated"]
    task_id: str
    message: UIMessage


class TaskStateEvent(BaseEvent):
    """Lifecycle change of a task"""
    type: Literal[EventType.TASK_STATE] = EventType.TASK_STATE
    task_id: str
    state: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected", "reconnecting"]


class StartTaskEvent(BaseEvent):
    """Start a new top-level task, or resume a stored one"""
    type: Literal[EventType.START_TASK] = EventType.START_TASK
    text: Optional[str] = None
    images: Optional[List[str]] = None
    history_task_id: Optional[str] = None


class AskResponseEvent(BaseEvent):
    """Answer to the pending ask of the active task"""
    type: Literal[EventType.ASK_RESPONSE] = EventType.ASK_RESPONSE
    response: AskResponse
    text: Optional[str] = None
    images: Optional[List[str]] = None


class CancelTaskEvent(BaseEvent):
    type: Literal[EventType.CANCEL_TASK] = EventType.CANCEL_TASK


class CondenseContextEvent(BaseEvent):
    type: Literal[EventType.CONDENSE_CONTEXT] = EventType.CONDENSE_CONTEXT
