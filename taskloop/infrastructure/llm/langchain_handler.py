from typing import Any, AsyncIterator, Dict, List, Optional
from langchain.chat_models import init_chat_model
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
import structlog

from taskloop.config.settings import TaskSettings
from taskloop.domain.approval.rate_limit import extract_retry_after
from taskloop.domain.common.errors import ApiRequestError
from taskloop.domain.context.tokens import block_to_text
from taskloop.domain.models.messages import ApiMessage, ImageBlock, ReasoningBlock
from taskloop.domain.transport.api_handler import (
    ApiStreamChunk, Model, ModelInfo, ReasoningChunk, TextChunk, UsageChunk
)

logger = structlog.get_logger(__name__)


def to_langchain_messages(system_prompt: str, messages: List[ApiMessage]) -> List[BaseMessage]:
    """Conversation in LangChain message form; tool traffic travels as text"""

    converted: List[BaseMessage] = [SystemMessage(content=system_prompt)]
    for message in messages:
        if message.role == "assistant":
            text = "\n\n".join(
                block_to_text(b) for b in message.content if not isinstance(b, ReasoningBlock) and block_to_text(b)
            )
            converted.append(AIMessage(content=text))
            continue

        parts: List[Dict[str, Any]] = []
        for block in message.content:
            if isinstance(block, ImageBlock):
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
                })
            else:
                text = block_to_text(block)
                if text:
                    parts.append({"type": "text", "text": text})
        converted.append(HumanMessage(content=parts))
    return converted


def to_api_error(error: BaseException) -> ApiRequestError:
    status_code = getattr(error, "status_code", None) or getattr(error, "status", None)
    return ApiRequestError(
        str(error) or error.__class__.__name__,
        status_code=status_code if isinstance(status_code, int) else None,
        retry_after_seconds=extract_retry_after(error),
    )


class LangChainApiHandler:
    """Model transport over any LangChain chat model"""

    def __init__(
        self,
        chat_model: BaseChatModel,
        model_id: str,
        info: ModelInfo,
        supports_previous_response_id: bool = False,
    ):
        self.chat_model = chat_model
        self.model = Model(id=model_id, info=info)
        self.supports_previous_response_id = supports_previous_response_id
        self.last_response_id: Optional[str] = None

    def get_model(self) -> Model:
        return self.model

    async def create_message(
        self,
        system_prompt: str,
        messages: List[ApiMessage],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[ApiStreamChunk]:
        metadata = metadata or {}
        kwargs: Dict[str, Any] = {}
        if self.supports_previous_response_id and metadata.get("previous_response_id"):
            kwargs["previous_response_id"] = metadata["previous_response_id"]

        config = {"metadata": {k: v for k, v in metadata.items() if k in ("task_id", "mode")}}
        response_id = None

        try:
            async for chunk in self.chat_model.astream(
                to_langchain_messages(system_prompt, messages), config=config, **kwargs
            ):
                response_id = chunk.id or response_id

                reasoning = chunk.additional_kwargs.get("reasoning_content")
                if reasoning:
                    yield ReasoningChunk(text=reasoning)

                if isinstance(chunk.content, str):
                    if chunk.content:
                        yield TextChunk(text=chunk.content)
                else:
                    for part in chunk.content:
                        if isinstance(part, str):
                            yield TextChunk(text=part)
                        elif part.get("type") == "text" and part.get("text"):
                            yield TextChunk(text=part["text"])
                        elif part.get("type") in ("thinking", "reasoning"):
                            text = part.get("thinking") or part.get("reasoning") or ""
                            if text:
                                yield ReasoningChunk(text=text)

                usage = getattr(chunk, "usage_metadata", None)
                if usage:
                    details = usage.get("input_token_details") or {}
                    yield UsageChunk(
                        input_tokens=usage.get("input_tokens", 0),
                        output_tokens=usage.get("output_tokens", 0),
                        cache_write_tokens=details.get("cache_creation", 0) or 0,
                        cache_read_tokens=details.get("cache_read", 0) or 0,
                    )
        except ApiRequestError:
            raise
        except Exception as e:
            logger.error("Model request failed", model=self.model.id, error=str(e))
            raise to_api_error(e) from e

        self.last_response_id = response_id


def create_api_handler(settings: TaskSettings) -> LangChainApiHandler:
    """Handler for the chat model named in settings"""

    chat_model = init_chat_model(settings.model, model_provider=settings.model_provider)
    info = ModelInfo(
        context_window=settings.model_context_window,
        max_tokens=settings.model_max_tokens,
        supports_images=settings.model_supports_images,
        input_price=settings.model_input_price,
        output_price=settings.model_output_price,
    )
    logger.info("Chat model initialized", model=settings.model, provider=settings.model_provider)
    return LangChainApiHandler(chat_model, settings.model, info)
