"""
Substream Application Configuration
====================================

PURPOSE:
    Pydantic-Settings based configuration for the Substream billing backend.
    All settings can be overridden via environment variables (SUBSTREAM_ prefix).
"""

import logging
from pydantic_settings import BaseSettings
from typing import List, Optional
from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)

_DEFAULT_LEDGER_RPC_URL = "https://rpc.moderato.tempo.xyz/"
_DEFAULT_CURRENCY_ADDRESS = "0x20c0000000000000000000000000000000000001"


def _generate_fernet_key() -> str:
    """Generate a Fernet-compatible key for encryption at rest.

    WARNING: Auto-generated keys are ephemeral — they change on each restart.
    In production, set SUBSTREAM_SECRET_KEY env var to a persistent Fernet key.
    """
    return Fernet.generate_key().decode()


class Settings(BaseSettings):
    app_name: str = "Substream"
    debug: bool = False

    data_directory: str = "/data"

    # Encryption key for delegated private keys at rest.
    # If not set, auto-generates a Fernet key (lost on restart).
    secret_key: Optional[str] = None

    # Ledger gateway
    ledger_rpc_url: str = _DEFAULT_LEDGER_RPC_URL
    ledger_chain_id: int = 42431
    ledger_confirmation_timeout_s: float = 60.0
    ledger_poll_interval_s: float = 1.0
    ledger_request_timeout_s: float = 10.0

    # Operator account that receives every charge
    operator_address: str = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"

    # Billing currency (AlphaUSD, 6 decimals)
    currency_address: str = _DEFAULT_CURRENCY_ADDRESS
    currency_decimals: int = 6

    # Due-payment sweep
    sweep_interval_s: float = 30.0
    sweep_max_concurrency: int = 4
    sweep_enabled: bool = True

    history_page_size: int = 20

    # Optional YAML override for the bundled plan table
    plans_file: Optional[str] = None

    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_prefix = "SUBSTREAM_"

    def get_secret_key(self) -> str:
        """Return the SECRET_KEY, auto-generating if not set."""
        if self.secret_key:
            return self.secret_key

        logger.warning(
            "SECRET_KEY not set — auto-generating ephemeral Fernet key. "
            "Stored delegated keys will be UNREADABLE after restart. "
            "Set SUBSTREAM_SECRET_KEY in production."
        )
        self.secret_key = _generate_fernet_key()
        return self.secret_key


settings = Settings()
