"""
Subscription Router
===================

Thin mapping of the billing engine onto the storefront's HTTP contract:
- POST /subscribe              — activate + first charge
- GET  /my-subscription/{addr} — current subscription + last payments
- POST /retry-payment          — charge a past_due subscription now
- POST /cancel-subscription    — cancel (idempotent)
- GET  /balance/{addr}         — read-only token balance
- GET  /plans                  — plan catalog
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.core.errors import SubstreamError
from app.models.schemas import (
    BalanceResponse,
    MySubscriptionResponse,
    PaymentHistoryOut,
    PlanOut,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionIdRequest,
    SubscriptionOut,
    SuccessResponse,
)
from app.services.billing_engine import BillingEngine
from app.services.ledger_client import LedgerError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_billing_engine(request: Request) -> BillingEngine:
    """FastAPI dependency — the engine built during app startup."""
    return request.app.state.billing_engine


@router.post("/subscribe", response_model=SubscribeResponse, summary="Activate a subscription")
async def subscribe(body: SubscribeRequest, engine: BillingEngine = Depends(get_billing_engine)):
    result = await engine.activate(
        user_address=body.user_address,
        plan_id=body.plan_id,
        delegated_key_id=body.delegated_key_id,
        delegated_private_key=body.subscription_private_key,
        authorization_payload=body.signed_authorization.authorization,
        authorization_signature=body.signed_authorization.signature,
    )
    return SubscribeResponse(subscription_id=result.subscription_id, status=result.status)


@router.get("/my-subscription/{address}", response_model=MySubscriptionResponse)
async def my_subscription(address: str, engine: BillingEngine = Depends(get_billing_engine)):
    view = engine.get_subscription(address)
    if view is None:
        logger.info("no_live_subscription", extra={"user_address": address.lower()})
        return MySubscriptionResponse()
    return MySubscriptionResponse(
        subscription=SubscriptionOut.from_record(view.subscription),
        history=[PaymentHistoryOut.from_record(h) for h in view.history],
    )


@router.post("/retry-payment", response_model=SuccessResponse)
async def retry_payment(body: SubscriptionIdRequest, engine: BillingEngine = Depends(get_billing_engine)):
    if await engine.retry_charge(body.subscription_id):
        return SuccessResponse()
    return JSONResponse(status_code=400, content={"error": "Payment still failing. Check logs."})


@router.post("/cancel-subscription", response_model=SuccessResponse)
async def cancel_subscription(body: SubscriptionIdRequest, engine: BillingEngine = Depends(get_billing_engine)):
    return SuccessResponse(success=engine.cancel(body.subscription_id))


@router.get("/balance/{address}", response_model=BalanceResponse)
async def balance(address: str, engine: BillingEngine = Depends(get_billing_engine)):
    try:
        amount = await engine.ledger.balance_of(address)
    except LedgerError as exc:
        raise SubstreamError("SUB-LED-001", detail=str(exc), context={"address": address}) from exc
    return BalanceResponse(usdc=str(amount))


@router.get("/plans", response_model=List[PlanOut])
async def list_plans(engine: BillingEngine = Depends(get_billing_engine)):
    return [
        PlanOut(id=p.id, name=p.name, price=str(p.price), intervalSeconds=p.interval_seconds)
        for p in engine.plans
    ]
