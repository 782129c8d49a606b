from typing import Iterable, List
import re

from taskloop.domain.models.task_state import AssistantContent, TextContent, ToolUseContent

_THINKING_TAGS = re.compile(r"<thinking>\s?|\s?</thinking>")
_TRAILING_PARTIAL_TAG = re.compile(r"\s?<\/?[a-zA-Z_]*$")


def parse_assistant_message(
    message: str,
    tool_names: Iterable[str],
    param_names: Iterable[str],
    id_prefix: str = "tool",
) -> List[AssistantContent]:
    """Split streamed assistant text into text and tool-use blocks.

    Tool uses are written as `<tool_name><param>value</param></tool_name>`.
    A block whose closing tag has not arrived yet is returned as partial; the
    trailing text block is always partial since more text may follow.
    Re-parsing a longer prefix of the same message yields stable tool ids.
    """

    names = sorted(set(tool_names), key=len, reverse=True)
    params = sorted(set(param_names), key=len, reverse=True)
    if not names:
        return [TextContent(content=message, partial=True)] if message else []

    open_tool = re.compile("<(" + "|".join(re.escape(n) for n in names) + ")>")
    blocks: List[AssistantContent] = []
    pos = 0

    while pos < len(message):
        match = open_tool.search(message, pos)
        if match is None:
            break

        leading = message[pos:match.start()].strip()
        if leading:
            blocks.append(TextContent(content=leading, partial=False))

        name = match.group(1)
        closing = f"</{name}>"
        end = message.find(closing, match.end())
        body = message[match.end():] if end == -1 else message[match.end():end]

        tool_index = sum(1 for b in blocks if isinstance(b, ToolUseContent))
        blocks.append(ToolUseContent(
            id=f"{id_prefix}_{tool_index}",
            name=name,
            params=_parse_params(body, params),
            partial=end == -1,
        ))

        if end == -1:
            return blocks
        pos = end + len(closing)

    trailing = message[pos:].strip()
    if trailing:
        blocks.append(TextContent(content=trailing, partial=True))
    return blocks


def _parse_params(body: str, params: List[str]) -> dict:
    values = {}
    for name in params:
        opening = f"<{name}>"
        start = body.find(opening)
        if start == -1:
            continue
        start += len(opening)
        end = body.find(f"</{name}>", start)
        # An unterminated parameter carries whatever has streamed so far.
        values[name] = (body[start:] if end == -1 else body[start:end]).strip()
    return values


def clean_display_text(text: str, partial: bool) -> str:
    """Text as shown to the human: thinking tags removed, no dangling tag"""
    text = _THINKING_TAGS.sub("", text)
    if partial:
        text = _TRAILING_PARTIAL_TAG.sub("", text)
    return text.strip()
