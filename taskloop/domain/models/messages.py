from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class TextBlock(BaseModel):
    """Plain text content"""
    type: Literal["text"] = "text"
    text: str


class ImageBlock(BaseModel):
    """Base64 image content"""
    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: str


class ReasoningBlock(BaseModel):
    """Model reasoning surfaced alongside a reply"""
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolUseBlock(BaseModel):
    """A tool invocation emitted by the model"""
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The answer to exactly one tool invocation"""
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: List[Union[TextBlock, ImageBlock]] = Field(default_factory=list)
    is_error: bool = False

    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, ReasoningBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class ApiMessage(BaseModel):
    """One turn of the model-facing conversation"""
    role: Literal["user", "assistant"]
    content: List[ContentBlock] = Field(default_factory=list)
    ts: Optional[int] = Field(None, description="Creation time in epoch milliseconds")
    is_summary: bool = Field(False, description="Set on condensation summaries")

    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> List[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


class AskKind(str, Enum):
    """Questions the loop can put to the human or caller"""
    FOLLOWUP = "followup"
    COMMAND = "command"
    COMMAND_OUTPUT = "command_output"
    COMPLETION_RESULT = "completion_result"
    TOOL = "tool"
    API_REQ_FAILED = "api_req_failed"
    RESUME_TASK = "resume_task"
    RESUME_COMPLETED_TASK = "resume_completed_task"
    MISTAKE_LIMIT_REACHED = "mistake_limit_reached"
    AUTO_APPROVAL_MAX_REQ_REACHED = "auto_approval_max_req_reached"


# Every ask except running-command output needs a human decision.
BLOCKING_ASKS = frozenset(kind for kind in AskKind if kind is not AskKind.COMMAND_OUTPUT)


class SayKind(str, Enum):
    """Informational message kinds"""
    ERROR = "error"
    API_REQ_STARTED = "api_req_started"
    API_REQ_RETRIED = "api_req_retried"
    API_REQ_RETRY_DELAYED = "api_req_retry_delayed"
    TEXT = "text"
    REASONING = "reasoning"
    COMPLETION_RESULT = "completion_result"
    USER_FEEDBACK = "user_feedback"
    TOOL = "tool"
    SUBTASK_RESULT = "subtask_result"
    CONDENSE_CONTEXT = "condense_context"
    CONDENSE_CONTEXT_ERROR = "condense_context_error"


class AskResponse(str, Enum):
    """How an ask was answered"""
    YES_BUTTON_CLICKED = "yes_button_clicked"
    NO_BUTTON_CLICKED = "no_button_clicked"
    MESSAGE_RESPONSE = "message_response"


class AskResult(BaseModel):
    """Answer delivered to a blocking ask"""
    response: AskResponse
    text: Optional[str] = None
    images: Optional[List[str]] = None


class ContextCondense(BaseModel):
    """Record of one summarization event"""
    model_config = ConfigDict(frozen=True)

    prev_context_tokens: int
    new_context_tokens: int
    cost: float
    summary: str


class UIMessage(BaseModel):
    """One entry in the human-facing log"""
    ts: int
    type: Literal["ask", "say"]
    ask: Optional[AskKind] = None
    say: Optional[SayKind] = None
    text: Optional[str] = None
    images: Optional[List[str]] = None
    partial: Optional[bool] = None
    progress_status: Optional[Dict[str, Any]] = None
    checkpoint: Optional[Dict[str, Any]] = None
    context_condense: Optional[ContextCondense] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def kind(self) -> Optional[str]:
        value = self.ask if self.type == "ask" else self.say
        return value.value if value is not None else None


class ApiRequestInfo(BaseModel):
    """Payload carried by an api_req_started message"""
    request: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    cost: Optional[float] = None
    cancel_reason: Optional[Literal["user_cancelled", "streaming_failed"]] = None
    streaming_failed_message: Optional[str] = None
    response_id: Optional[str] = None


class TokenUsage(BaseModel):
    """Aggregated usage derived from the UI log"""
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cache_writes: int = 0
    total_cache_reads: int = 0
    total_cost: float = 0.0
    context_tokens: int = 0


class ToolUsageStats(BaseModel):
    attempts: int = 0
    failures: int = 0


ToolUsage = Dict[str, ToolUsageStats]


class HistoryItem(BaseModel):
    """Task metadata derived from the message logs"""
    id: str
    number: int = 1
    ts: int
    task: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    total_cost: float = 0.0
    workspace: Optional[str] = None
    mode: Optional[str] = None
    parent_task_id: Optional[str] = None
    root_task_id: Optional[str] = None
