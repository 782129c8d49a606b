from typing import List, Optional
from pydantic import BaseModel
import structlog

from taskloop.domain.context.tokens import estimate_tokens
from taskloop.domain.models.messages import ApiMessage, TextBlock
from taskloop.domain.transport.api_handler import ApiHandler, maybe_remove_image_blocks

logger = structlog.get_logger(__name__)

N_MESSAGES_TO_KEEP = 3
MIN_CONDENSE_THRESHOLD = 5
MAX_CONDENSE_THRESHOLD = 100

SUMMARY_PROMPT = """You are a helpful AI assistant tasked with summarizing conversations.

Your task is to create a detailed summary of the conversation so far, paying close attention to the user's explicit requests and your previous actions.
This summary should be thorough in capturing technical details, code patterns, and decisions that would be essential for continuing the work without losing context.

Your summary should include the following sections:
1. Previous Conversation: High level details about what was discussed throughout the entire conversation with the user.
2. Current Work: Describe in detail what was being worked on prior to this request to summarize the conversation.
3. Key Technical Concepts: List all important technical concepts, technologies, coding conventions, and frameworks discussed.
4. Relevant Files and Code: Enumerate specific files and code sections examined, modified, or created.
5. Problem Solving: Document problems solved thus far and any ongoing troubleshooting efforts.
6. Pending Tasks and Next Steps: Outline all pending tasks and the next steps, quoting the most recent conversation verbatim where it shows exactly what was being worked on.

Output only the summary of the conversation so far, without any additional commentary or explanation."""

FINAL_SUMMARY_REQUEST = "Summarize the conversation so far, as described in the prompt instructions."

CONTINUE_FROM_SUMMARY = "Please continue from the following summary:"


class SummarizeResponse(BaseModel):
    """Outcome of one summarization attempt"""
    messages: List[ApiMessage]
    summary: str = ""
    cost: float = 0.0
    new_context_tokens: Optional[int] = None
    error: Optional[str] = None


def get_messages_since_last_summary(messages: List[ApiMessage]) -> List[ApiMessage]:
    """Messages from the most recent summary onwards, opened with a user turn"""

    last_summary = None
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].is_summary:
            last_summary = index
            break

    if last_summary is None:
        return list(messages)

    since = messages[last_summary:]
    opener = ApiMessage(role="user", content=[TextBlock(text=CONTINUE_FROM_SUMMARY)], ts=since[0].ts)
    return [opener] + since


async def summarize_conversation(
    messages: List[ApiMessage],
    api_handler: ApiHandler,
    system_prompt: str,
    task_id: str,
    prev_context_tokens: int,
    is_automatic_trigger: bool = False,
    custom_condensing_prompt: Optional[str] = None,
    condensing_api_handler: Optional[ApiHandler] = None,
) -> SummarizeResponse:
    """Replace everything before the last few turns with one summary turn.

    The original turns stay in the returned history; requests are built from
    `get_messages_since_last_summary`.
    """

    response = SummarizeResponse(messages=messages)

    to_summarize = get_messages_since_last_summary(messages[:-N_MESSAGES_TO_KEEP])
    if len(to_summarize) <= 1:
        response.error = (
            "Not enough messages to condense the context"
            if len(messages) <= N_MESSAGES_TO_KEEP + 1
            else "Context was condensed recently; skipping this attempt"
        )
        return response

    keep = messages[-N_MESSAGES_TO_KEEP:]
    if any(m.is_summary for m in keep):
        response.error = "Context was condensed recently; skipping this attempt"
        return response

    handler = condensing_api_handler or api_handler
    request = maybe_remove_image_blocks(
        to_summarize + [ApiMessage(role="user", content=[TextBlock(text=FINAL_SUMMARY_REQUEST)])],
        handler.get_model().info.supports_images,
    )
    prompt = custom_condensing_prompt.strip() if custom_condensing_prompt and custom_condensing_prompt.strip() else SUMMARY_PROMPT

    logger.info("Condensing conversation", task_id=task_id, automatic=is_automatic_trigger, messages=len(to_summarize))

    summary = ""
    cost = 0.0
    output_tokens = 0
    try:
        async for chunk in handler.create_message(prompt, request):
            if chunk.type == "text":
                summary += chunk.text
            elif chunk.type == "usage":
                cost = chunk.total_cost or 0.0
                output_tokens = chunk.output_tokens
    except Exception as e:
        logger.error("Condensing request failed", task_id=task_id, error=str(e))
        response.error = f"Context condensing failed: {e}"
        response.cost = cost
        return response

    summary = summary.strip()
    if not summary:
        response.error = "Context condensing failed: the summary was empty"
        response.cost = cost
        return response

    summary_message = ApiMessage(
        role="assistant",
        content=[TextBlock(text=summary)],
        ts=keep[0].ts,
        is_summary=True,
    )
    new_messages = messages[:-N_MESSAGES_TO_KEEP] + [summary_message] + keep

    context_blocks = [block for message in [summary_message] + keep for block in message.content]
    if not output_tokens:
        context_blocks = [TextBlock(text=system_prompt)] + context_blocks
    new_context_tokens = output_tokens + estimate_tokens(context_blocks)

    if new_context_tokens >= prev_context_tokens:
        response.error = "Context condensing did not reduce the context size"
        response.cost = cost
        return response

    return SummarizeResponse(
        messages=new_messages,
        summary=summary,
        cost=cost,
        new_context_tokens=new_context_tokens,
    )
