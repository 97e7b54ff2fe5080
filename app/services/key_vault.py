"""
Key Vault — delegated private key custody.
==========================================

Delegated subscription keys are P-256 private scalars handed over once at
activation. They are Fernet-encrypted with SECRET_KEY and stored in their own
table, apart from the subscription record, so that reading subscriptions
never yields signing material.

The only way back to a usable key is ``signer_for()``, which returns a
DelegatedSigner: it can sign charge instructions but does not expose the
secret it wraps.
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy.engine import Engine

from app.config import settings
from app.core.database import get_engine, get_session_context
from app.core.errors import SubstreamError
from app.models.subscription import DelegatedKeyRecord

logger = logging.getLogger(__name__)


class KeyVaultError(SubstreamError):
    """Delegated key missing, undecryptable or malformed."""

    code = "SUB-KEY-001"


def parse_p256_private_key(private_key_hex: str) -> ec.EllipticCurvePrivateKey:
    """Build a P-256 private key from a hex scalar (``0x`` prefix optional)."""
    raw = private_key_hex[2:] if private_key_hex.lower().startswith("0x") else private_key_hex
    try:
        scalar = int(raw, 16)
        return ec.derive_private_key(scalar, ec.SECP256R1())
    except ValueError as exc:
        raise KeyVaultError(detail="delegated private key is not a valid P-256 scalar") from exc


class DelegatedSigner:
    """Signing capability for one delegated key."""

    def __init__(self, key_id: str, private_key: ec.EllipticCurvePrivateKey):
        self.key_id = key_id
        self._private_key = private_key

    @property
    def address(self) -> str:
        return self.key_id

    def sign(self, message: bytes) -> str:
        """ECDSA P-256 / SHA-256 signature over *message*, DER-encoded hex."""
        return self._private_key.sign(message, ec.ECDSA(hashes.SHA256())).hex()

    def verify(self, message: bytes, signature_hex: str) -> bool:
        try:
            self._private_key.public_key().verify(
                bytes.fromhex(signature_hex), message, ec.ECDSA(hashes.SHA256())
            )
            return True
        except (InvalidSignature, ValueError):
            return False

    def __repr__(self) -> str:
        return f"DelegatedSigner(key_id={self.key_id!r})"


class KeyVault:
    """Encrypts, stores and hands out signing capabilities for delegated keys."""

    def __init__(self, engine: Optional[Engine] = None, secret_key: Optional[str] = None):
        self._engine = engine
        self._fernet = Fernet((secret_key or settings.get_secret_key()).encode())

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def store(self, key_id: str, private_key_hex: str) -> None:
        """Encrypt and persist a delegated key. Re-storing the same id overwrites it."""
        parse_p256_private_key(private_key_hex)
        token = self._fernet.encrypt(private_key_hex.encode()).decode()

        with get_session_context(self.engine) as session:
            record = session.get(DelegatedKeyRecord, key_id)
            if record is None:
                record = DelegatedKeyRecord(delegated_key_id=key_id, encrypted_private_key=token)
            else:
                record.encrypted_private_key = token
            session.add(record)
            session.commit()

        logger.info("delegated_key_stored", extra={"delegated_key_id": key_id})

    def signer_for(self, key_id: str) -> DelegatedSigner:
        with get_session_context(self.engine) as session:
            record = session.get(DelegatedKeyRecord, key_id)
            token = record.encrypted_private_key if record else None

        if token is None:
            raise KeyVaultError(detail=f"no delegated key stored for {key_id}", context={"delegated_key_id": key_id})

        try:
            private_key_hex = self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise KeyVaultError(
                detail="delegated key could not be decrypted (SECRET_KEY changed?)",
                context={"delegated_key_id": key_id},
            ) from exc

        return DelegatedSigner(key_id, parse_p256_private_key(private_key_hex))
