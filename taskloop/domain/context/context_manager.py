from typing import Dict, List, Optional
from pydantic import BaseModel
import structlog

from taskloop.domain.context.condense import (
    summarize_conversation, MIN_CONDENSE_THRESHOLD, MAX_CONDENSE_THRESHOLD
)
from taskloop.domain.context.tokens import estimate_tokens
from taskloop.domain.models.messages import ApiMessage, TextBlock, ToolResultBlock
from taskloop.domain.transport.api_handler import ApiHandler

logger = structlog.get_logger(__name__)

TOKEN_BUFFER_PERCENTAGE = 0.1

INTERRUPTED_TOOL_RESULT = "Task was interrupted before this tool call could be completed."


class TruncateResponse(BaseModel):
    """History to use for the next request plus what happened to it"""
    messages: List[ApiMessage]
    summary: str = ""
    cost: float = 0.0
    prev_context_tokens: int = 0
    new_context_tokens: Optional[int] = None
    error: Optional[str] = None


def interrupted_result(tool_use_id: str) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=tool_use_id, content=[TextBlock(text=INTERRUPTED_TOOL_RESULT)])


def repair_tool_pairs(messages: List[ApiMessage]) -> List[ApiMessage]:
    """Make every tool use answered and every tool result anchored.

    A tool result whose tool use is not in the preceding assistant turn is
    turned into plain text. A tool use without a result in the following user
    turn gets an interrupted result. A trailing assistant turn is left alone.
    """

    repaired: List[ApiMessage] = []
    for index, message in enumerate(messages):
        if message.role != "user":
            repaired.append(message)
            continue

        previous = messages[index - 1] if index > 0 else None
        expected = [b.id for b in previous.tool_uses()] if previous is not None and previous.role == "assistant" else []

        content = []
        answered = set()
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                if block.tool_use_id in expected and block.tool_use_id not in answered:
                    answered.add(block.tool_use_id)
                    content.append(block)
                else:
                    content.append(TextBlock(text=f"[orphaned tool result]\n{block.text()}"))
            else:
                content.append(block)

        missing = [interrupted_result(tool_id) for tool_id in expected if tool_id not in answered]
        if missing or content != message.content:
            message = message.model_copy(update={"content": missing + content})
        repaired.append(message)

    return repaired


def truncate_conversation(messages: List[ApiMessage], frac_to_remove: float, task_id: str) -> List[ApiMessage]:
    """Drop the oldest turns after the first message and the last summary.

    An even number of turns is removed so roles keep alternating; the last
    turn is never removed.
    """

    if len(messages) <= 2:
        return list(messages)

    summaries = [i for i, m in enumerate(messages) if m.is_summary]
    start = summaries[-1] + 1 if summaries else 1
    candidates = list(range(start, len(messages) - 1))
    raw_to_remove = int((len(messages) - start) * frac_to_remove)
    to_remove = min(raw_to_remove - (raw_to_remove % 2), len(candidates) - (len(candidates) % 2))
    removed = set(candidates[:to_remove])

    logger.info("Truncating conversation", task_id=task_id, removed=len(removed), total=len(messages))

    kept = [m for i, m in enumerate(messages) if i not in removed]
    return repair_tool_pairs(kept)


def effective_condense_threshold(
    auto_condense_context_percent: int,
    profile_thresholds: Dict[str, int],
    current_profile_id: Optional[str],
) -> int:
    threshold = auto_condense_context_percent
    if current_profile_id is None or current_profile_id not in profile_thresholds:
        return threshold

    profile_threshold = profile_thresholds[current_profile_id]
    if profile_threshold == -1:
        return threshold
    if MIN_CONDENSE_THRESHOLD <= profile_threshold <= MAX_CONDENSE_THRESHOLD:
        return profile_threshold

    logger.warning(
        "Invalid profile condense threshold, using global default",
        profile_id=current_profile_id,
        threshold=profile_threshold,
        default=threshold
    )
    return threshold


async def truncate_conversation_if_needed(
    messages: List[ApiMessage],
    total_tokens: int,
    context_window: int,
    max_tokens: Optional[int],
    api_handler: ApiHandler,
    auto_condense_context: bool,
    auto_condense_context_percent: int,
    system_prompt: str,
    task_id: str,
    custom_condensing_prompt: Optional[str] = None,
    condensing_api_handler: Optional[ApiHandler] = None,
    profile_thresholds: Optional[Dict[str, int]] = None,
    current_profile_id: Optional[str] = None,
) -> TruncateResponse:
    """Fit the history into the context window before a request.

    Summarizes when usage crosses the threshold, falls back to dropping old
    turns when the window is still exceeded. A condensation failure is
    reported in `error` and never raised.
    """

    last_tokens = estimate_tokens(messages[-1].content) if messages else 0
    prev_context_tokens = total_tokens + last_tokens

    reserved_tokens = max_tokens or int(context_window * 0.2)
    allowed_tokens = context_window * (1 - TOKEN_BUFFER_PERCENTAGE) - reserved_tokens

    threshold = effective_condense_threshold(
        auto_condense_context_percent, profile_thresholds or {}, current_profile_id
    )

    error = None
    cost = 0.0

    if auto_condense_context:
        context_percent = 100 * prev_context_tokens / context_window
        if context_percent >= threshold or prev_context_tokens > allowed_tokens:
            result = await summarize_conversation(
                messages,
                api_handler,
                system_prompt,
                task_id,
                prev_context_tokens,
                is_automatic_trigger=True,
                custom_condensing_prompt=custom_condensing_prompt,
                condensing_api_handler=condensing_api_handler,
            )
            if result.error:
                error = result.error
                cost = result.cost
            else:
                return TruncateResponse(
                    messages=result.messages,
                    summary=result.summary,
                    cost=result.cost,
                    prev_context_tokens=prev_context_tokens,
                    new_context_tokens=result.new_context_tokens,
                )

    if prev_context_tokens > allowed_tokens:
        return TruncateResponse(
            messages=truncate_conversation(messages, 0.5, task_id),
            cost=cost,
            prev_context_tokens=prev_context_tokens,
            error=error,
        )

    return TruncateResponse(messages=messages, cost=cost, prev_context_tokens=prev_context_tokens, error=error)
