"""
Billing Engine — subscription lifecycle and charge execution.
=============================================================

PURPOSE:
    Owns the subscription state machine and the charge protocol:
    1. **activate()** — validates the request, persists an ``active``
       subscription due one interval from now, then runs the first charge
       inline.
    2. **execute_charge()** — one charge attempt against the ledger, under
       per-subscription ownership. Used by activation, the due sweep and
       manual retry.
    3. **retry_charge()** / **cancel()** / **get_subscription()** — the
       request-facing operations.

STATE MACHINE:
    (none)           → active     activation
    active           → active     confirmed charge
    active|past_due  → past_due   reverted charge, ledger/signing error, timeout
    past_due         → active     confirmed retry
    active|past_due  → cancelled  cancel (terminal, idempotent)

CHARGE RULES:
    - The key authorization is attached iff the subscription's key has not
      been registered yet; the first confirmed charge registers it.
    - next_charge_due_at advances by one interval, measured from the previous
      due time, on every confirmed charge except the activating one (its due
      time was set at creation to cover the first interval).
    - A failed charge never moves next_charge_due_at.
    - Ledger failures are recorded, never raised to callers.
    - Before the ledger call a charge takes a lease on the subscription row,
      so a second worker (or process) reports ``in_flight`` instead of
      charging the same interval twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from app.config import settings
from app.core.errors import InvalidAuthorizationError
from app.core.plans import Plan, PlanCatalog
from app.core.structured_logging import subscription_id_var
from app.models.subscription import (
    ACTIVE,
    CHARGEABLE_STATUSES,
    FAILED,
    PAST_DUE,
    SUCCESS,
    PaymentHistory,
    Subscription,
)
from app.services.charge_locks import ChargeLockRegistry
from app.services.key_vault import KeyVault, KeyVaultError, parse_p256_private_key
from app.services.ledger_client import (
    ChargeInstruction,
    KeyAuthorization,
    LedgerClient,
    instruction_summary,
)
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

__all__ = [
    "BillingEngine",
    "ActivationResult",
    "ChargeResult",
    "SubscriptionView",
    "IN_FLIGHT",
    "SKIPPED",
]

# Charge outcomes beyond SUCCESS / FAILED
IN_FLIGHT = "in_flight"
SKIPPED = "skipped"

# Extra lease time past the ledger timeout before another worker may take over
LEASE_GRACE_S = 30


@dataclass(frozen=True)
class ActivationResult:
    subscription_id: str
    status: str


@dataclass(frozen=True)
class ChargeResult:
    subscription_id: str
    outcome: str
    status: Optional[str] = None
    transaction_ref: str = ""
    reason: Optional[str] = None


@dataclass
class SubscriptionView:
    subscription: Subscription
    history: List[PaymentHistory] = field(default_factory=list)


class BillingEngine:
    """Recurring-billing orchestration over the store, key vault and ledger."""

    def __init__(
        self,
        store: SubscriptionStore,
        vault: KeyVault,
        ledger: LedgerClient,
        plans: PlanCatalog,
        *,
        locks: Optional[ChargeLockRegistry] = None,
        clock: Callable[[], float] = time.time,
        operator_address: Optional[str] = None,
        currency_address: Optional[str] = None,
        currency_decimals: Optional[int] = None,
        chain_id: Optional[int] = None,
        charge_timeout_s: Optional[float] = None,
        history_limit: Optional[int] = None,
    ):
        self.store = store
        self.vault = vault
        self.ledger = ledger
        self.plans = plans
        self.locks = locks or ChargeLockRegistry()
        self._clock = clock
        self.operator_address = operator_address or settings.operator_address
        self.currency_address = currency_address or settings.currency_address
        self.currency_decimals = currency_decimals if currency_decimals is not None else settings.currency_decimals
        self.chain_id = chain_id if chain_id is not None else settings.ledger_chain_id
        self.charge_timeout_s = charge_timeout_s or settings.ledger_confirmation_timeout_s
        self.history_limit = history_limit or settings.history_page_size

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate(
        self,
        user_address: str,
        plan_id: str,
        delegated_key_id: Optional[str],
        delegated_private_key: str,
        authorization_payload: Any,
        authorization_signature: Optional[str],
    ) -> ActivationResult:
        """Create a subscription and run its first charge inline.

        Raises InvalidPlanError / InvalidAuthorizationError before anything
        is persisted. Charge failures do not raise; they show up as the
        returned ``past_due`` status.
        """
        logger.info("subscription_requested", extra={"user_address": user_address, "plan_id": plan_id})

        plan = self.plans.require(plan_id)
        key_id = self._validate_authorization(delegated_key_id, delegated_private_key, authorization_payload, authorization_signature)

        # Due time is set before the charge so an overlapping sweep skips this subscription
        subscription = Subscription(
            user_address=user_address.lower(),
            plan_id=plan.id,
            status=ACTIVE,
            delegated_key_id=key_id,
            authorization_payload=json.dumps(authorization_payload, sort_keys=True),
            authorization_signature=authorization_signature,
            key_registered=False,
            next_charge_due_at=int(self.now()) + plan.interval_seconds,
        )
        self.vault.store(key_id, delegated_private_key)
        subscription = self.store.create(subscription)

        logger.info(
            "subscription_persisted",
            extra={
                "subscription_id": subscription.id,
                "delegated_key_id": key_id,
                "next_charge_due_at": subscription.next_charge_due_at,
            },
        )

        result = await self.execute_charge(subscription.id, activating=True)
        return ActivationResult(subscription_id=subscription.id, status=result.status or ACTIVE)

    def _validate_authorization(
        self,
        delegated_key_id: Optional[str],
        delegated_private_key: str,
        payload: Any,
        signature: Optional[str],
    ) -> str:
        if not isinstance(payload, dict) or not payload.get("address"):
            raise InvalidAuthorizationError(detail="authorization payload missing or has no key address")
        if not signature or not isinstance(signature, str):
            raise InvalidAuthorizationError(detail="authorization signature missing")

        key_id = str(delegated_key_id or payload["address"]).lower()
        if str(payload["address"]).lower() != key_id:
            raise InvalidAuthorizationError(
                detail="authorization was signed for a different key",
                context={"delegated_key_id": key_id},
            )

        try:
            parse_p256_private_key(delegated_private_key or "")
        except KeyVaultError as exc:
            raise InvalidAuthorizationError(detail="delegated private key is malformed") from exc

        try:
            KeyAuthorization.from_payload(payload, signature)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidAuthorizationError(detail=f"authorization payload is malformed: {exc}") from exc

        if self.store.get_by_delegated_key(key_id) is not None:
            raise InvalidAuthorizationError(
                detail="delegated key is already bound to a subscription",
                context={"delegated_key_id": key_id},
            )
        return key_id

    # ------------------------------------------------------------------
    # Charge protocol
    # ------------------------------------------------------------------

    async def execute_charge(self, subscription_id: str, *, activating: bool = False) -> ChargeResult:
        """Run one charge attempt, unless another one is already in flight."""
        async with self.locks.claim(subscription_id) as owned:
            if not owned:
                return ChargeResult(subscription_id=subscription_id, outcome=IN_FLIGHT, reason="charge_in_flight")

            token = subscription_id_var.set(subscription_id)
            try:
                return await self._charge(subscription_id, activating)
            finally:
                subscription_id_var.reset(token)

    async def _charge(self, subscription_id: str, activating: bool) -> ChargeResult:
        sub = self.store.get(subscription_id)
        if sub is None or sub.status not in CHARGEABLE_STATUSES:
            logger.info(
                "charge_skipped",
                extra={"subscription_id": subscription_id, "status": sub.status if sub else None},
            )
            return ChargeResult(
                subscription_id=subscription_id,
                outcome=SKIPPED,
                status=sub.status if sub else None,
                reason="not_chargeable",
            )

        plan = self.plans.get(sub.plan_id)
        if plan is None:
            logger.error("charge_skipped_unknown_plan", extra={"subscription_id": sub.id, "plan_id": sub.plan_id})
            return ChargeResult(subscription_id=sub.id, outcome=SKIPPED, status=sub.status, reason="unknown_plan")

        now = self.now()
        lease_until = now + self.charge_timeout_s + LEASE_GRACE_S
        if not self.store.claim_charge(sub.id, expected_due_at=sub.next_charge_due_at, now=now, lease_until=lease_until):
            return ChargeResult(
                subscription_id=sub.id,
                outcome=IN_FLIGHT,
                status=sub.status,
                reason="charge_claimed_elsewhere",
            )

        try:
            return await self._submit(sub, plan, activating)
        finally:
            self.store.release_claim(sub.id, lease_until)

    async def _submit(self, sub: Subscription, plan: Plan, activating: bool) -> ChargeResult:
        include_authorization = not sub.key_registered
        logger.info(
            "charge_started",
            extra={
                "subscription_id": sub.id,
                "user_address": sub.user_address,
                "activating": activating,
                "with_key_authorization": include_authorization,
            },
        )

        try:
            signer = self.vault.signer_for(sub.delegated_key_id)
            instruction = self._build_instruction(sub, plan, include_authorization)
            logger.debug("charge_instruction", extra={"instruction": instruction_summary(instruction)})
            receipt = await asyncio.wait_for(
                self.ledger.submit_charge(signer, instruction),
                timeout=self.charge_timeout_s,
            )
        except asyncio.TimeoutError:
            return self._record_failure(sub, plan, reason=f"no confirmation within {self.charge_timeout_s}s")
        except Exception as exc:
            # Every pre-outcome error is a failed charge, not a fault of the caller
            return self._record_failure(sub, plan, reason=f"{type(exc).__name__}: {exc}")

        if not receipt.confirmed:
            return self._record_failure(sub, plan, reason=f"transaction {receipt.transaction_ref} reverted")
        return self._record_success(sub, plan, receipt.transaction_ref, activating)

    def _build_instruction(self, sub: Subscription, plan: Plan, include_authorization: bool) -> ChargeInstruction:
        authorization = None
        if include_authorization:
            authorization = KeyAuthorization.from_payload(
                json.loads(sub.authorization_payload),
                sub.authorization_signature,
            )
        return ChargeInstruction(
            sender=sub.user_address,
            token=self.currency_address,
            recipient=self.operator_address,
            amount=plan.amount_minor_units(self.currency_decimals),
            chain_id=self.chain_id,
            key_authorization=authorization,
        )

    def _record_success(self, sub: Subscription, plan: Plan, tx_ref: str, activating: bool) -> ChargeResult:
        self.store.append_history(
            sub.delegated_key_id,
            amount=str(plan.price),
            outcome=SUCCESS,
            transaction_ref=tx_ref,
            recorded_at=self.now(),
        )

        next_due = None if activating else sub.next_charge_due_at + plan.interval_seconds
        applied = self.store.apply_charge_result(
            sub.id,
            status=ACTIVE,
            expected_due_at=sub.next_charge_due_at,
            next_charge_due_at=next_due,
            key_registered=True,
        )

        logger.info(
            "charge_succeeded",
            extra={
                "subscription_id": sub.id,
                "tx_hash": tx_ref,
                "amount": str(plan.price),
                "next_charge_due_at": next_due if next_due is not None else sub.next_charge_due_at,
                "state_applied": applied,
            },
        )
        return ChargeResult(
            subscription_id=sub.id,
            outcome=SUCCESS,
            status=ACTIVE if applied else self._current_status(sub.id),
            transaction_ref=tx_ref,
        )

    def _record_failure(self, sub: Subscription, plan: Plan, *, reason: str) -> ChargeResult:
        self.store.append_history(
            sub.delegated_key_id,
            amount=str(plan.price),
            outcome=FAILED,
            transaction_ref="",
            recorded_at=self.now(),
        )
        applied = self.store.apply_charge_result(
            sub.id,
            status=PAST_DUE,
            expected_due_at=sub.next_charge_due_at,
        )

        logger.warning(
            "charge_failed",
            extra={"subscription_id": sub.id, "reason": reason, "state_applied": applied},
        )
        return ChargeResult(
            subscription_id=sub.id,
            outcome=FAILED,
            status=PAST_DUE if applied else self._current_status(sub.id),
            reason=reason,
        )

    def _current_status(self, subscription_id: str) -> Optional[str]:
        sub = self.store.get(subscription_id)
        return sub.status if sub else None

    # ------------------------------------------------------------------
    # Request-facing operations
    # ------------------------------------------------------------------

    async def retry_charge(self, subscription_id: str) -> bool:
        """Charge now, regardless of due time. True iff the subscription ends up active."""
        logger.info("manual_retry_requested", extra={"subscription_id": subscription_id})
        result = await self.execute_charge(subscription_id, activating=False)
        if result.outcome == IN_FLIGHT:
            return False
        return self._current_status(subscription_id) == ACTIVE

    def cancel(self, subscription_id: str) -> bool:
        """Cancel without charging. Idempotent; unknown ids are a no-op."""
        found = self.store.cancel(subscription_id)
        if found:
            logger.info("subscription_cancelled", extra={"subscription_id": subscription_id})
        else:
            logger.info("cancel_unknown_subscription", extra={"subscription_id": subscription_id})
        return True

    def get_subscription(self, user_address: str) -> Optional[SubscriptionView]:
        sub = self.store.find_current_for_user(user_address)
        if sub is None:
            return None
        return SubscriptionView(
            subscription=sub,
            history=self.store.history(sub.delegated_key_id, limit=self.history_limit),
        )
