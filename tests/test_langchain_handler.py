import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from taskloop.domain.common.errors import ApiRequestError
from taskloop.domain.models.messages import (
    ApiMessage, ImageBlock, ReasoningBlock, TextBlock, ToolResultBlock, ToolUseBlock
)
from taskloop.domain.transport.api_handler import ModelInfo, ReasoningChunk, TextChunk, UsageChunk
from taskloop.infrastructure.llm.langchain_handler import (
    LangChainApiHandler, to_api_error, to_langchain_messages
)

INFO = ModelInfo(context_window=100_000, max_tokens=4096, supports_images=True)


class ScriptedChatModel:
    """Streams fixed chunks and records what it was called with"""

    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.calls = []

    async def astream(self, messages, config=None, **kwargs):
        self.calls.append({"messages": messages, "config": config, "kwargs": kwargs})
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


async def collect(handler, metadata=None):
    messages = [ApiMessage(role="user", content=[TextBlock(text="hi")])]
    return [chunk async for chunk in handler.create_message("system", messages, metadata)]


def test_to_langchain_messages():
    messages = [
        ApiMessage(role="user", content=[TextBlock(text="<task>\nlook\n</task>"), ImageBlock(media_type="image/jpeg", data="AAA")]),
        ApiMessage(role="assistant", content=[
            ReasoningBlock(text="hidden"),
            TextBlock(text="Reading."),
            ToolUseBlock(id="t1", name="read_file", input={"path": "a.py"}),
        ]),
        ApiMessage(role="user", content=[ToolResultBlock(tool_use_id="t1", content=[TextBlock(text="print(1)")])]),
    ]

    converted = to_langchain_messages("be helpful", messages)

    assert isinstance(converted[0], SystemMessage) and converted[0].content == "be helpful"
    assert isinstance(converted[1], HumanMessage)
    assert converted[1].content[0] == {"type": "text", "text": "<task>\nlook\n</task>"}
    assert converted[1].content[1] == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAA"}}
    assert isinstance(converted[2], AIMessage)
    assert converted[2].content == "Reading.\n\n<read_file>\n<path>a.py</path>\n</read_file>"
    assert converted[3].content == [{"type": "text", "text": "[tool_result t1]\nprint(1)"}]


async def test_streams_text_reasoning_and_usage():
    model = ScriptedChatModel([
        AIMessageChunk(content="", id="resp-9", additional_kwargs={"reasoning_content": "thinking"}),
        AIMessageChunk(content="Hello "),
        AIMessageChunk(content=[{"type": "text", "text": "world"}, {"type": "thinking", "thinking": "more"}]),
        AIMessageChunk(content="", usage_metadata={
            "input_tokens": 12,
            "output_tokens": 3,
            "total_tokens": 15,
            "input_token_details": {"cache_read": 4},
        }),
    ])
    handler = LangChainApiHandler(model, "fake", INFO)

    chunks = await collect(handler, {"task_id": "task-1", "mode": "code", "previous_response_id": "resp-1"})

    assert chunks == [
        ReasoningChunk(text="thinking"),
        TextChunk(text="Hello "),
        TextChunk(text="world"),
        ReasoningChunk(text="more"),
        UsageChunk(input_tokens=12, output_tokens=3, cache_read_tokens=4),
    ]
    assert handler.last_response_id == "resp-9"
    assert model.calls[0]["config"] == {"metadata": {"task_id": "task-1", "mode": "code"}}
    assert model.calls[0]["kwargs"] == {}


async def test_previous_response_id_forwarded_when_supported():
    model = ScriptedChatModel([AIMessageChunk(content="ok")])
    handler = LangChainApiHandler(model, "fake", INFO, supports_previous_response_id=True)

    await collect(handler, {"previous_response_id": "resp-1"})
    await collect(handler, {"suppress_previous_response_id": True})

    assert model.calls[0]["kwargs"] == {"previous_response_id": "resp-1"}
    assert model.calls[1]["kwargs"] == {}


async def test_provider_errors_are_mapped():
    class Response:
        headers = {"retry-after": "6"}

    class RateLimitError(Exception):
        status_code = 429
        response = Response()

    model = ScriptedChatModel([AIMessageChunk(content="par")], error=RateLimitError("rate limited"))
    handler = LangChainApiHandler(model, "fake", INFO)

    with pytest.raises(ApiRequestError) as info:
        await collect(handler)

    assert info.value.status_code == 429
    assert info.value.retry_after_seconds == 6.0
    assert handler.last_response_id is None


def test_to_api_error_without_status():
    error = to_api_error(ValueError())
    assert str(error) == "ValueError"
    assert error.status_code is None
    assert error.retry_after_seconds is None


async def test_generic_chat_model_stream():
    model = GenericFakeChatModel(messages=iter([AIMessage(content="hello there world")]))
    handler = LangChainApiHandler(model, "fake", INFO)

    chunks = await collect(handler)

    assert "".join(c.text for c in chunks if isinstance(c, TextChunk)) == "hello there world"
    assert handler.get_model().id == "fake"
