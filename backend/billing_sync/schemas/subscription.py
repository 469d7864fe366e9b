"""
Subscription schemas.

WHAT: Request/response models for plan change, unsubscribe, manual status
checks and account deletion.
"""

from typing import Dict, List, Optional, Union

from pydantic import Field, model_validator

from billing_sync.schemas.common import CamelModel


class ChangePlanRequest(CamelModel):
    """
    WHY: The new subscription may be referenced by its provider preapproval
    id when the checkout flow has not returned the internal id yet.
    """

    user_id: int = Field(gt=0)
    old_subscription_id: Union[int, str]
    new_subscription_id: Union[int, str]


class ChangePlanResponse(CamelModel):
    success: bool = True
    old_subscription_id: int
    new_subscription_id: int
    new_plan_name: str
    provider_cancelled: bool = True


class UnsubscribeRequest(CamelModel):
    user_id: int = Field(gt=0)
    subscription_id: Optional[int] = None
    provider_subscription_id: Optional[str] = None


class TeardownResponse(CamelModel):
    success: bool = True
    user_id: int
    deleted_counts: Dict[str, int]
    total_deleted: int
    failed_steps: List[str] = Field(default_factory=list)
    provider_cancel_failures: List[str] = Field(default_factory=list)
    partial_failure: bool = False
    roles_updated: bool = False
    user_deleted: bool = False
    external_identity_deleted: bool = False


class DeleteAccountRequest(CamelModel):
    user_id: int = Field(gt=0)


class CheckStatusRequest(CamelModel):
    user_id: Optional[int] = Field(default=None, gt=0)
    subscription_id: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def require_target(self) -> "CheckStatusRequest":
        if self.user_id is None and self.subscription_id is None:
            raise ValueError("userId or subscriptionId is required")
        return self


class StatusCheckItem(CamelModel):
    subscription_id: int
    provider_subscription_id: Optional[str] = None
    previous_status: str
    current_status: str
    provider_status: Optional[str] = None
    outcome: str
    error: Optional[str] = None


class CheckStatusResponse(CamelModel):
    results: List[StatusCheckItem]
    updated: int
