from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol, Union
from pydantic import BaseModel, ConfigDict, Field
import math

from taskloop.domain.models.messages import ApiMessage, ImageBlock, TextBlock, ToolResultBlock

ANTHROPIC_DEFAULT_MAX_TOKENS = 8192
DEFAULT_HYBRID_REASONING_MODEL_MAX_TOKENS = 16_384


class ModelInfo(BaseModel):
    """Capabilities and pricing of a model"""
    context_window: int
    max_tokens: Optional[int] = None
    supports_images: bool = False
    supports_reasoning_budget: bool = False
    required_reasoning_budget: bool = False
    input_price: float = Field(0.0, description="USD per million input tokens")
    output_price: float = Field(0.0, description="USD per million output tokens")
    cache_writes_price: Optional[float] = None
    cache_reads_price: Optional[float] = None


class ModelSettings(BaseModel):
    """Per-profile overrides for a model"""
    model_config = ConfigDict(protected_namespaces=())

    model_max_tokens: Optional[int] = None
    enable_reasoning_effort: bool = False


class Model(BaseModel):
    id: str
    info: ModelInfo


class TextChunk(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningChunk(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class UsageChunk(BaseModel):
    type: Literal["usage"] = "usage"
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: Optional[float] = None


ApiStreamChunk = Union[TextChunk, ReasoningChunk, UsageChunk]


class ApiHandler(Protocol):
    """Model transport consumed by the request loop"""

    # Provider response id of the last completed stream, when the provider has one.
    # Shared by every task using the handler; read it as soon as a stream ends.
    last_response_id: Optional[str]

    def create_message(
        self,
        system_prompt: str,
        messages: List[ApiMessage],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[ApiStreamChunk]: ...

    def get_model(self) -> Model: ...



def get_model_max_output_tokens(
    model_id: str,
    model: ModelInfo,
    settings: Optional[ModelSettings] = None,
) -> int:
    """Output-token reservation for a model, clamped to 20% of its window"""

    if model.required_reasoning_budget or (
        model.supports_reasoning_budget and settings is not None and settings.enable_reasoning_effort
    ):
        return (settings.model_max_tokens if settings else None) or DEFAULT_HYBRID_REASONING_MODEL_MAX_TOKENS

    is_anthropic = "claude" in model_id

    if model.supports_reasoning_budget and is_anthropic:
        return ANTHROPIC_DEFAULT_MAX_TOKENS

    if is_anthropic and not model.max_tokens:
        return ANTHROPIC_DEFAULT_MAX_TOKENS

    if model.max_tokens:
        return min(model.max_tokens, math.ceil(model.context_window * 0.2))

    return ANTHROPIC_DEFAULT_MAX_TOKENS


def calculate_api_cost(
    info: ModelInfo,
    input_tokens: int,
    output_tokens: int,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    """Cost in USD for one request, input tokens excluding cache traffic"""

    cache_writes_price = info.cache_writes_price if info.cache_writes_price is not None else info.input_price
    cache_reads_price = info.cache_reads_price if info.cache_reads_price is not None else info.input_price
    return (
        info.input_price * input_tokens
        + info.output_price * output_tokens
        + cache_writes_price * cache_write_tokens
        + cache_reads_price * cache_read_tokens
    ) / 1_000_000


def maybe_remove_image_blocks(messages: List[ApiMessage], supports_images: bool) -> List[ApiMessage]:
    """Replace image blocks with a placeholder for text-only models"""

    if supports_images:
        return messages

    def strip(blocks):
        result = []
        for block in blocks:
            if isinstance(block, ImageBlock):
                result.append(TextBlock(text="[Referenced image in conversation]"))
            elif isinstance(block, ToolResultBlock):
                result.append(block.model_copy(update={"content": strip(block.content)}))
            else:
                result.append(block)
        return result

    return [message.model_copy(update={"content": strip(message.content)}) for message in messages]
