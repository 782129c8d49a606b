from typing import List, Optional
import json

from taskloop.domain.models.messages import UIMessage, SayKind, ApiRequestInfo, TokenUsage


def parse_api_request_info(message: UIMessage) -> Optional[ApiRequestInfo]:
    """Decode the JSON payload of an api_req_started message"""
    if message.say != SayKind.API_REQ_STARTED or not message.text:
        return None
    try:
        return ApiRequestInfo.model_validate(json.loads(message.text))
    except ValueError:
        return None


def get_api_metrics(messages: List[UIMessage]) -> TokenUsage:
    """Fold request and condensation records into token usage totals"""

    usage = TokenUsage()

    for message in messages:
        info = parse_api_request_info(message)
        if info is not None:
            usage.total_tokens_in += info.tokens_in
            usage.total_tokens_out += info.tokens_out
            usage.total_cache_writes += info.cache_writes
            usage.total_cache_reads += info.cache_reads
            usage.total_cost += info.cost or 0.0
        elif message.say == SayKind.CONDENSE_CONTEXT and message.context_condense:
            usage.total_cost += message.context_condense.cost

    # Context size comes from the most recent request or condensation.
    for message in reversed(messages):
        info = parse_api_request_info(message)
        if info is not None and (info.tokens_in or info.tokens_out):
            usage.context_tokens = info.tokens_in + info.tokens_out + info.cache_writes + info.cache_reads
            break
        if message.say == SayKind.CONDENSE_CONTEXT and message.context_condense:
            usage.context_tokens = message.context_condense.new_context_tokens
            break

    return usage


def find_last_response_id(messages: List[UIMessage]) -> Optional[str]:
    """Provider response id of this task's most recent completed request"""

    for message in reversed(messages):
        info = parse_api_request_info(message)
        if info is not None and info.response_id:
            return info.response_id
    return None
