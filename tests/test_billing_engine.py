"""
Tests for BillingEngine — activation, the charge protocol, retry and cancel.

All scenarios run against a real (per-test SQLite) store and key vault with
a scripted ledger and a manual clock.
"""

import asyncio
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from app.core.errors import InvalidAuthorizationError, InvalidPlanError
from app.models.subscription import (
    ACTIVE,
    CANCELLED,
    FAILED,
    PAST_DUE,
    PENDING_ACTIVATION,
    SUCCESS,
)
from app.services.billing_engine import IN_FLIGHT, SKIPPED, BillingEngine
from app.services.key_vault import KeyVault
from app.services.ledger_client import CONFIRMED, REVERTED, LedgerTransportError

from tests.fakes import CURRENCY, OPERATOR


async def _activate(engine, request):
    return await engine.activate(**request)


class TestActivation:
    @pytest.mark.asyncio
    async def test_successful_activation(self, engine, ledger, store, activation_request):
        req = activation_request()
        result = await _activate(engine, req)

        assert result.status == ACTIVE
        sub = store.get(result.subscription_id)
        assert sub.status == ACTIVE
        assert sub.next_charge_due_at == 3600
        assert sub.key_registered is True
        assert sub.phase == ACTIVE
        assert sub.user_address == req["user_address"].lower()

        history = store.history(sub.delegated_key_id)
        assert len(history) == 1
        assert history[0].outcome == SUCCESS
        assert history[0].amount == "50"
        assert history[0].transaction_ref == "0xtx0001"

        instruction = ledger.instructions[0]
        assert instruction.key_authorization is not None
        assert instruction.key_authorization.address == req["delegated_key_id"]
        assert instruction.amount == 50_000_000
        assert instruction.recipient == OPERATOR
        assert instruction.token == CURRENCY

    @pytest.mark.asyncio
    async def test_activation_with_reverted_charge(self, engine, ledger, store, activation_request):
        ledger.outcome = REVERTED
        result = await _activate(engine, activation_request())

        assert result.status == PAST_DUE
        sub = store.get(result.subscription_id)
        assert sub.status == PAST_DUE
        assert sub.next_charge_due_at == 3600
        assert sub.key_registered is False
        assert sub.phase == PENDING_ACTIVATION

        history = store.history(sub.delegated_key_id)
        assert len(history) == 1
        assert history[0].outcome == FAILED
        assert history[0].transaction_ref == ""

    @pytest.mark.asyncio
    async def test_unknown_plan_persists_nothing(self, engine, ledger, store, activation_request):
        req = activation_request(plan_id="weekly_rate")
        with pytest.raises(InvalidPlanError):
            await _activate(engine, req)

        assert store.find_current_for_user(req["user_address"]) is None
        assert ledger.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mutate",
        [
            lambda r: r.update(authorization_payload=None),
            lambda r: r.update(authorization_payload={"type": "p256"}),
            lambda r: r.update(authorization_signature=None),
            lambda r: r.update(authorization_signature=""),
            lambda r: r.update(delegated_private_key="0xnot-a-key"),
            lambda r: r.update(delegated_key_id="0xsomeotherkey"),
            lambda r: r["authorization_payload"].update(limits=[{"token": CURRENCY}]),
        ],
        ids=["no-payload", "no-address", "no-signature", "empty-signature", "bad-key", "key-mismatch", "bad-limits"],
    )
    async def test_invalid_authorization(self, engine, ledger, store, activation_request, mutate):
        req = activation_request()
        mutate(req)
        with pytest.raises(InvalidAuthorizationError):
            await _activate(engine, req)

        assert store.find_current_for_user(req["user_address"]) is None
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_key_id_defaults_to_authorization_address(self, engine, store, activation_request):
        req = activation_request()
        expected = req["delegated_key_id"]
        req["delegated_key_id"] = None

        result = await _activate(engine, req)
        assert store.get(result.subscription_id).delegated_key_id == expected

    @pytest.mark.asyncio
    async def test_key_cannot_be_bound_twice(self, engine, activation_request):
        req = activation_request()
        await _activate(engine, req)
        with pytest.raises(InvalidAuthorizationError):
            await _activate(engine, req)


class TestRecurringCharge:
    @pytest.mark.asyncio
    async def test_advances_by_interval_without_authorization(self, engine, ledger, store, clock, activation_request):
        result = await _activate(engine, activation_request())
        sub_id = result.subscription_id

        clock.now = 3601
        charge = await engine.execute_charge(sub_id)

        assert charge.outcome == SUCCESS
        sub = store.get(sub_id)
        assert sub.next_charge_due_at == 7200
        assert sub.status == ACTIVE
        assert ledger.instructions[1].key_authorization is None

    @pytest.mark.asyncio
    async def test_late_charge_does_not_drift(self, engine, store, clock, activation_request):
        result = await _activate(engine, activation_request())

        clock.now = 5000
        await engine.execute_charge(result.subscription_id)
        assert store.get(result.subscription_id).next_charge_due_at == 7200

    @pytest.mark.asyncio
    async def test_failure_keeps_due_time(self, engine, ledger, store, clock, activation_request):
        result = await _activate(engine, activation_request())
        sub = store.get(result.subscription_id)

        ledger.outcome = REVERTED
        clock.now = 3601
        charge = await engine.execute_charge(sub.id)

        assert charge.outcome == FAILED
        after = store.get(sub.id)
        assert after.status == PAST_DUE
        assert after.next_charge_due_at == 3600
        assert after.key_registered is True
        history = store.history(sub.delegated_key_id)
        assert [h.outcome for h in history] == [FAILED, SUCCESS]

    @pytest.mark.asyncio
    async def test_ledger_error_is_recorded_not_raised(self, engine, ledger, store, activation_request):
        result = await _activate(engine, activation_request())

        ledger.outcome = LedgerTransportError("connection refused")
        charge = await engine.execute_charge(result.subscription_id)

        assert charge.outcome == FAILED
        assert "connection refused" in charge.reason
        assert store.get(result.subscription_id).status == PAST_DUE

    @pytest.mark.asyncio
    async def test_undecryptable_key_is_a_failed_charge(self, engine, ledger, store, vault, activation_request):
        result = await _activate(engine, activation_request())

        # a vault holding a different SECRET_KEY cannot decrypt the stored key
        engine.vault = KeyVault(engine=vault.engine, secret_key=Fernet.generate_key().decode())
        charge = await engine.execute_charge(result.subscription_id)

        assert charge.outcome == FAILED
        assert "KeyVaultError" in charge.reason
        assert store.get(result.subscription_id).status == PAST_DUE
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_ledger_timeout(self, store, vault, ledger, plans, clock, activation_request):
        engine = BillingEngine(store, vault, ledger, plans, clock=clock, charge_timeout_s=0.05)
        ledger.delay = 1.0

        result = await _activate(engine, activation_request())

        assert result.status == PAST_DUE
        history = store.history(store.get(result.subscription_id).delegated_key_id)
        assert history[0].outcome == FAILED

    @pytest.mark.asyncio
    async def test_cancelled_is_skipped(self, engine, ledger, activation_request):
        result = await _activate(engine, activation_request())
        engine.cancel(result.subscription_id)

        charge = await engine.execute_charge(result.subscription_id)
        assert charge.outcome == SKIPPED
        assert charge.status == CANCELLED
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_skipped(self, engine, ledger):
        charge = await engine.execute_charge("does-not-exist")
        assert charge.outcome == SKIPPED
        assert ledger.calls == []


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_after_failed_activation(self, engine, ledger, store, clock, activation_request):
        ledger.outcome = REVERTED
        result = await _activate(engine, activation_request())

        ledger.outcome = CONFIRMED
        clock.now = 100
        assert await engine.retry_charge(result.subscription_id) is True

        sub = store.get(result.subscription_id)
        assert sub.status == ACTIVE
        assert sub.next_charge_due_at == 7200
        assert sub.key_registered is True
        # key was never registered, so the retry carries the authorization
        assert ledger.instructions[1].key_authorization is not None

    @pytest.mark.asyncio
    async def test_retry_still_failing(self, engine, ledger, store, activation_request):
        ledger.outcome = REVERTED
        result = await _activate(engine, activation_request())

        assert await engine.retry_charge(result.subscription_id) is False
        sub = store.get(result.subscription_id)
        assert sub.status == PAST_DUE
        assert len(store.history(sub.delegated_key_id)) == 2

    @pytest.mark.asyncio
    async def test_retry_of_cancelled(self, engine, ledger, activation_request):
        result = await _activate(engine, activation_request())
        engine.cancel(result.subscription_id)

        assert await engine.retry_charge(result.subscription_id) is False
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_of_unknown(self, engine):
        assert await engine.retry_charge("does-not-exist") is False


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_twice(self, engine, ledger, store, activation_request):
        result = await _activate(engine, activation_request())
        sub = store.get(result.subscription_id)

        assert engine.cancel(sub.id) is True
        assert engine.cancel(sub.id) is True

        after = store.get(sub.id)
        assert after.status == CANCELLED
        assert after.next_charge_due_at == sub.next_charge_due_at
        assert len(store.history(sub.delegated_key_id)) == 1
        assert len(ledger.calls) == 1

    def test_cancel_unknown(self, engine):
        assert engine.cancel("does-not-exist") is True

    @pytest.mark.asyncio
    async def test_cancel_during_charge_wins(self, engine, ledger, store, clock, activation_request):
        result = await _activate(engine, activation_request())
        sub_id = result.subscription_id

        ledger.gate = asyncio.Event()
        clock.now = 3601
        task = asyncio.create_task(engine.execute_charge(sub_id))
        await asyncio.sleep(0.01)

        engine.cancel(sub_id)
        ledger.gate.set()
        charge = await task

        assert charge.outcome == SUCCESS
        sub = store.get(sub_id)
        assert sub.status == CANCELLED
        assert sub.next_charge_due_at == 3600


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_one_charge_in_flight(self, engine, ledger, store, clock, activation_request):
        result = await _activate(engine, activation_request())
        sub_id = result.subscription_id

        ledger.gate = asyncio.Event()
        clock.now = 3601
        first = asyncio.create_task(engine.execute_charge(sub_id))
        await asyncio.sleep(0.01)
        second = await engine.execute_charge(sub_id)
        ledger.gate.set()
        first_result = await first

        assert second.outcome == IN_FLIGHT
        assert first_result.outcome == SUCCESS

        sub = store.get(sub_id)
        assert sub.next_charge_due_at == 7200
        assert len(store.history(sub.delegated_key_id)) == 2
        assert len(ledger.calls) == 2

    @pytest.mark.asyncio
    async def test_retry_during_charge_reports_failure(self, engine, ledger, activation_request):
        result = await _activate(engine, activation_request())

        ledger.gate = asyncio.Event()
        task = asyncio.create_task(engine.execute_charge(result.subscription_id))
        await asyncio.sleep(0.01)

        assert await engine.retry_charge(result.subscription_id) is False
        ledger.gate.set()
        await task

    @pytest.mark.asyncio
    async def test_two_engines_sharing_a_store_charge_once(
        self, engine, store, vault, ledger, plans, clock, activation_request,
    ):
        # a second worker process: own lock registry, same database
        other = BillingEngine(
            store=store,
            vault=vault,
            ledger=ledger,
            plans=plans,
            clock=clock,
            operator_address=OPERATOR,
            currency_address=CURRENCY,
            currency_decimals=6,
            chain_id=42431,
            charge_timeout_s=5.0,
        )
        result = await _activate(engine, activation_request())
        sub_id = result.subscription_id

        ledger.gate = asyncio.Event()
        clock.now = 3601
        first = asyncio.create_task(engine.execute_charge(sub_id))
        await asyncio.sleep(0.01)
        second = await other.execute_charge(sub_id)
        ledger.gate.set()
        first_result = await first

        assert first_result.outcome == SUCCESS
        assert second.outcome == IN_FLIGHT
        assert len(ledger.calls) == 2

        sub = store.get(sub_id)
        assert sub.next_charge_due_at == 7200
        assert sub.in_flight_until is None
        assert [h.outcome for h in store.history(sub.delegated_key_id)] == [SUCCESS, SUCCESS]

    @pytest.mark.asyncio
    async def test_stale_read_after_other_worker_finished(self, engine, store, clock, activation_request):
        result = await _activate(engine, activation_request())
        stale = store.get(result.subscription_id)

        clock.now = 3601
        await engine.execute_charge(result.subscription_id)

        with patch.object(store, "get", return_value=stale):
            charge = await engine.execute_charge(result.subscription_id)
        assert charge.outcome == IN_FLIGHT
        assert store.get(result.subscription_id).next_charge_due_at == 7200

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, engine, store, clock, activation_request):
        result = await _activate(engine, activation_request())
        clock.now = 3601
        # a worker that died mid-charge left its lease behind
        store.claim_charge(result.subscription_id, expected_due_at=3600, now=3601, lease_until=3650)

        assert (await engine.execute_charge(result.subscription_id)).outcome == IN_FLIGHT
        clock.now = 3651
        assert (await engine.execute_charge(result.subscription_id)).outcome == SUCCESS
        assert store.get(result.subscription_id).next_charge_due_at == 7200

    @pytest.mark.asyncio
    async def test_lease_released_after_failure(self, engine, ledger, store, activation_request):
        ledger.outcome = REVERTED
        result = await _activate(engine, activation_request())
        assert store.get(result.subscription_id).in_flight_until is None


class TestGetSubscription:
    @pytest.mark.asyncio
    async def test_view_with_history(self, engine, clock, activation_request):
        req = activation_request(user_address="0xAAAA000000000000000000000000000000000001")
        result = await _activate(engine, req)
        for _ in range(2):
            clock.advance(3600)
            await engine.execute_charge(result.subscription_id)

        view = engine.get_subscription("0xaaaa000000000000000000000000000000000001")
        assert view.subscription.id == result.subscription_id
        assert len(view.history) == 3
        assert view.history[0].recorded_at >= view.history[-1].recorded_at

    def test_no_subscription(self, engine):
        assert engine.get_subscription("0xnobody") is None

    @pytest.mark.asyncio
    async def test_cancelled_not_returned(self, engine, activation_request):
        req = activation_request()
        result = await _activate(engine, req)
        engine.cancel(result.subscription_id)
        assert engine.get_subscription(req["user_address"]) is None
