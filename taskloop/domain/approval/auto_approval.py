from typing import Awaitable, Callable, List, Optional
from pydantic import BaseModel
import json
import math
import structlog

from taskloop.domain.conversation.metrics import get_api_metrics
from taskloop.domain.models.messages import AskKind, AskResponse, AskResult, UIMessage

logger = structlog.get_logger(__name__)

AskForApproval = Callable[[AskKind, str], Awaitable[AskResult]]


class AutoApprovalResult(BaseModel):
    should_proceed: bool
    requires_approval: bool = False
    approval_type: Optional[str] = None
    approval_count: Optional[float] = None


class AutoApprovalHandler:
    """Caps how many requests and how much spend proceed without a human.

    The request counter and the cost baseline reset whenever the human
    approves continuing past a limit.
    """

    def __init__(self):
        self.consecutive_requests = 0
        self.cost_reset_index = 0

    async def check_limits(
        self,
        enabled: bool,
        allowed_max_requests: Optional[int],
        allowed_max_cost: Optional[float],
        messages: List[UIMessage],
        ask_for_approval: AskForApproval,
    ) -> AutoApprovalResult:
        if not enabled:
            return AutoApprovalResult(should_proceed=True)

        result = await self._check_request_limit(allowed_max_requests, ask_for_approval)
        if not result.should_proceed or result.requires_approval:
            return result

        return await self._check_cost_limit(allowed_max_cost, messages, ask_for_approval)

    async def _check_request_limit(
        self,
        allowed_max_requests: Optional[int],
        ask_for_approval: AskForApproval,
    ) -> AutoApprovalResult:
        max_requests = allowed_max_requests or math.inf
        self.consecutive_requests += 1

        if self.consecutive_requests <= max_requests:
            return AutoApprovalResult(should_proceed=True)

        logger.info("Auto-approved request limit reached", limit=max_requests)
        answer = await ask_for_approval(
            AskKind.AUTO_APPROVAL_MAX_REQ_REACHED,
            json.dumps({"count": max_requests, "type": "requests"}),
        )
        if answer.response == AskResponse.YES_BUTTON_CLICKED:
            self.consecutive_requests = 0
            return AutoApprovalResult(
                should_proceed=True, requires_approval=True, approval_type="requests", approval_count=max_requests
            )

        return AutoApprovalResult(
            should_proceed=False, requires_approval=True, approval_type="requests", approval_count=max_requests
        )

    async def _check_cost_limit(
        self,
        allowed_max_cost: Optional[float],
        messages: List[UIMessage],
        ask_for_approval: AskForApproval,
    ) -> AutoApprovalResult:
        if not allowed_max_cost:
            return AutoApprovalResult(should_proceed=True)

        cost = get_api_metrics(messages[self.cost_reset_index:]).total_cost
        if cost <= allowed_max_cost:
            return AutoApprovalResult(should_proceed=True)

        logger.info("Auto-approved cost limit reached", cost=cost, limit=allowed_max_cost)
        answer = await ask_for_approval(
            AskKind.AUTO_APPROVAL_MAX_REQ_REACHED,
            json.dumps({"count": f"{cost:.2f}", "type": "cost"}),
        )
        if answer.response == AskResponse.YES_BUTTON_CLICKED:
            self.cost_reset_index = len(messages)
            return AutoApprovalResult(
                should_proceed=True, requires_approval=True, approval_type="cost", approval_count=allowed_max_cost
            )

        return AutoApprovalResult(
            should_proceed=False, requires_approval=True, approval_type="cost", approval_count=allowed_max_cost
        )
