from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class ProviderState(BaseModel):
    """Snapshot of host configuration a task reads before each step"""
    mode: str = "code"
    consecutive_mistake_limit: int = 3

    auto_condense_context: bool = True
    auto_condense_context_percent: int = 100
    profile_thresholds: Dict[str, int] = Field(default_factory=dict)
    current_profile_id: Optional[str] = None
    custom_condensing_prompt: Optional[str] = None

    auto_approval_enabled: bool = False
    always_approve_resubmit: bool = False
    allowed_max_requests: Optional[int] = None
    allowed_max_cost: Optional[float] = None
    auto_approved_tools: List[str] = Field(default_factory=list)

    request_delay_seconds: int = 5
    rate_limit_seconds: float = 0.0

    custom_instructions: str = ""
    experiments: Dict[str, bool] = Field(default_factory=dict)
