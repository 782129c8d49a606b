from typing import Iterable, List
from langchain_core.messages import HumanMessage
from langchain_core.messages.utils import count_tokens_approximately

from taskloop.domain.models.messages import (
    TextBlock, ImageBlock, ReasoningBlock, ToolUseBlock, ToolResultBlock
)

# Rough cost of an image in the context window.
IMAGE_TOKEN_ESTIMATE = 1000


def format_tool_use(block: ToolUseBlock) -> str:
    """Render a tool use in the XML form the model writes it in"""
    params = "".join(f"\n<{key}>{value}</{key}>" for key, value in block.input.items())
    return f"<{block.name}>{params}\n</{block.name}>"


def block_to_text(block) -> str:
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, ReasoningBlock):
        return ""
    if isinstance(block, ImageBlock):
        return "[image]"
    if isinstance(block, ToolUseBlock):
        return format_tool_use(block)
    if isinstance(block, ToolResultBlock):
        body = "\n".join(block_to_text(b) for b in block.content)
        return f"[tool_result {block.tool_use_id}]\n{body}"
    return ""


def content_to_text(blocks: Iterable) -> str:
    return "\n\n".join(text for text in (block_to_text(b) for b in blocks) if text)


def estimate_tokens(blocks: List) -> int:
    """Approximate token count of a list of content blocks"""
    if not blocks:
        return 0
    images = sum(1 for b in blocks if isinstance(b, ImageBlock))
    text = content_to_text(b for b in blocks if not isinstance(b, ImageBlock))
    tokens = count_tokens_approximately([HumanMessage(content=text)]) if text else 0
    return tokens + images * IMAGE_TOKEN_ESTIMATE
