"""
Pytest configuration for Substream tests.
Sets environment variables before any app imports and provides fixtures
for a per-test database, the billing engine and its collaborators.
"""

import os
import tempfile
from uuid import uuid4

from cryptography.fernet import Fernet

# Temp data directory and DB so tests never touch /data
_test_data_dir = tempfile.mkdtemp(prefix="substream_test_")
os.environ.setdefault("SUBSTREAM_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")
os.environ.setdefault("SUBSTREAM_SECRET_KEY", Fernet.generate_key().decode())
os.environ["SUBSTREAM_SWEEP_ENABLED"] = "false"

import pytest
from sqlmodel import SQLModel

from app.core.database import _build_engine
from app.core.errors.registry import error_registry
from app.core.plans import PlanCatalog
from app.models.subscription import DelegatedKeyRecord, PaymentHistory, Subscription  # noqa: F401
from app.services.billing_engine import BillingEngine
from app.services.key_vault import KeyVault
from app.services.subscription_store import SubscriptionStore
from tests.fakes import CURRENCY, OPERATOR, FakeLedger, ManualClock, new_private_key_hex

# Load error registry so SubstreamError returns correct HTTP status codes
error_registry.load()


@pytest.fixture
def db_engine(tmp_path):
    engine = _build_engine(f"sqlite:///{tmp_path}/billing.db")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return SubscriptionStore(engine=db_engine)


@pytest.fixture
def vault(db_engine):
    return KeyVault(engine=db_engine, secret_key=Fernet.generate_key().decode())


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def clock():
    return ManualClock(0.0)


@pytest.fixture
def plans():
    return PlanCatalog.load()


@pytest.fixture
def engine(store, vault, ledger, plans, clock):
    return BillingEngine(
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


@pytest.fixture
def activation_request():
    """Factory for a fresh, structurally valid activation request."""

    def _make(user_address: str = "0xAbC0000000000000000000000000000000000001", plan_id: str = "daily_rate") -> dict:
        key_id = "0x" + uuid4().hex + uuid4().hex[:8]
        return {
            "user_address": user_address,
            "plan_id": plan_id,
            "delegated_key_id": key_id,
            "delegated_private_key": new_private_key_hex(),
            "authorization_payload": {
                "address": key_id,
                "type": "p256",
                "chainId": 42431,
                "expiry": 1900000000,
                "limits": [{"token": CURRENCY, "limit": "100000000000"}],
            },
            "authorization_signature": "0x" + "ab" * 65,
        }

    return _make
