"""
API request/response models.

Field aliases keep the storefront's camelCase JSON contract; Python code
uses the snake_case names.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.subscription import PaymentHistory, Subscription


class SignedAuthorization(BaseModel):
    authorization: Optional[Dict[str, Any]] = None
    signature: Optional[str] = None


class SubscribeRequest(BaseModel):
    user_address: str = Field(..., alias="userAddress", min_length=1)
    plan_id: str = Field(..., alias="planId", min_length=1)
    subscription_private_key: str = Field(..., alias="subscriptionPrivateKey", min_length=1)
    signed_authorization: SignedAuthorization = Field(..., alias="signedAuthorization")
    delegated_key_id: Optional[str] = Field(default=None, alias="delegatedKeyId")

    model_config = {"populate_by_name": True}


class SubscribeResponse(BaseModel):
    success: bool = True
    subscription_id: str = Field(..., serialization_alias="subscriptionId")
    status: str


class SubscriptionIdRequest(BaseModel):
    subscription_id: str = Field(..., alias="subscriptionId", min_length=1)

    model_config = {"populate_by_name": True}


class SubscriptionOut(BaseModel):
    id: str
    userAddress: str
    planId: str
    status: str
    phase: str
    subscriptionKeyId: str
    keyRegistered: bool
    nextPaymentDue: int

    @classmethod
    def from_record(cls, sub: Subscription) -> "SubscriptionOut":
        return cls(
            id=sub.id,
            userAddress=sub.user_address,
            planId=sub.plan_id,
            status=sub.status,
            phase=sub.phase,
            subscriptionKeyId=sub.delegated_key_id,
            keyRegistered=sub.key_registered,
            nextPaymentDue=sub.next_charge_due_at,
        )


class PaymentHistoryOut(BaseModel):
    id: int
    subscriptionKey: str
    amount: str
    txHash: str
    status: str
    timestamp: float

    @classmethod
    def from_record(cls, entry: PaymentHistory) -> "PaymentHistoryOut":
        return cls(
            id=entry.id,
            subscriptionKey=entry.delegated_key_id,
            amount=entry.amount,
            txHash=entry.transaction_ref,
            status=entry.outcome,
            timestamp=entry.recorded_at,
        )


class MySubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionOut] = None
    history: List[PaymentHistoryOut] = Field(default_factory=list)


class PlanOut(BaseModel):
    id: str
    name: str
    price: str
    intervalSeconds: int


class SuccessResponse(BaseModel):
    success: bool = True


class BalanceResponse(BaseModel):
    usdc: str
