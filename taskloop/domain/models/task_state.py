import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Literal, Union
from pydantic import BaseModel, Field
from enum import Enum

from taskloop.domain.models.messages import TextBlock, ImageBlock, ToolResultBlock


class LoopPhase(str, Enum):
    """Phase of the request loop"""
    IDLE = "idle"
    BUILDING_REQUEST = "building_request"
    STREAMING = "streaming"
    PRESENTING = "presenting"
    RECURSING = "recursing"
    ENDING = "ending"
    ABORTED = "aborted"


class TaskActivity(str, Enum):
    """Externally observable activity of a task"""
    ACTIVE = "active"
    IDLE = "idle"


class TextContent(BaseModel):
    """Parsed assistant text"""
    type: Literal["text"] = "text"
    content: str
    partial: bool = False


class ToolUseContent(BaseModel):
    """Parsed assistant tool invocation"""
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    params: Dict[str, str] = Field(default_factory=dict)
    partial: bool = False


AssistantContent = Union[TextContent, ToolUseContent]

UserContent = List[Union[TextBlock, ImageBlock, ToolResultBlock]]


@dataclass
class StreamingRound:
    """Per-round streaming state, replaced at the start of every request"""

    blocks: List[AssistantContent] = field(default_factory=list)
    user_message_content: UserContent = field(default_factory=list)
    current_index: int = 0
    ready: bool = False
    did_reject_tool: bool = False
    did_already_use_tool: bool = False
    did_complete_reading_stream: bool = False
    present_locked: bool = False
    has_pending_updates: bool = False
    suppress_previous_response_id: bool = False
    presentation: Optional["asyncio.Task[None]"] = None

    def tool_was_used(self) -> bool:
        return any(isinstance(block, ToolUseContent) for block in self.blocks)
