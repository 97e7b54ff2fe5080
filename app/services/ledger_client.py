"""
Ledger Client — charge submission against the chain gateway.
=============================================================

The billing core only needs one thing from the chain: submit a transfer
signed by a delegated key (optionally carrying the one-time key
authorization) and learn whether it was confirmed or reverted.

``LedgerClient`` is that contract. ``GatewayLedgerClient`` implements it
over JSON-RPC (httpx): ``substream_submitCharge`` hands the signed
instruction to the gateway, which sponsors fees and broadcasts it, then
``eth_getTransactionReceipt`` is polled until a receipt appears or the
confirmation deadline passes.

Transport failures, JSON-RPC errors and timeouts raise LedgerError
subclasses; the billing engine turns all of them into a failed charge.
"""

from __future__ import annotations

import abc
import asyncio
import itertools
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import httpx

from app.config import settings
from app.services.key_vault import DelegatedSigner

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"
REVERTED = "reverted"

# balanceOf(address)
_BALANCE_OF_SELECTOR = "0x70a08231"


class LedgerError(Exception):
    """Base class for ledger failures that did not produce a terminal outcome."""


class LedgerTransportError(LedgerError):
    """Network-level failure talking to the gateway."""


class LedgerRejectedError(LedgerError):
    """Gateway returned a JSON-RPC error (bad signature, insufficient limit, ...)."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class LedgerTimeoutError(LedgerError):
    """No receipt within the confirmation deadline."""


@dataclass(frozen=True)
class TokenLimit:
    token: str
    limit: int


@dataclass(frozen=True)
class KeyAuthorization:
    """One-time proof granting a delegated key its spending limits."""

    address: str
    signature: str
    key_type: str = "p256"
    chain_id: Optional[int] = None
    expiry: Optional[int] = None
    limits: tuple[TokenLimit, ...] = field(default_factory=tuple)

    @classmethod
    def from_payload(cls, payload: dict, signature: str) -> "KeyAuthorization":
        """Build from the authorization object the storefront signed.

        Missing or zero chain id / expiry are dropped, and limits are only
        kept when at least one is present.
        """
        limits = tuple(
            TokenLimit(token=str(item["token"]), limit=int(item["limit"]))
            for item in (payload.get("limits") or [])
        )
        return cls(
            address=str(payload["address"]),
            signature=signature,
            key_type=str(payload.get("type") or "p256"),
            chain_id=int(payload["chainId"]) if payload.get("chainId") else None,
            expiry=int(payload["expiry"]) if payload.get("expiry") else None,
            limits=limits,
        )

    def to_wire(self) -> dict:
        wire: dict[str, Any] = {
            "address": self.address,
            "type": self.key_type,
            "signature": self.signature,
        }
        if self.chain_id is not None:
            wire["chainId"] = self.chain_id
        if self.expiry is not None:
            wire["expiry"] = self.expiry
        if self.limits:
            wire["limits"] = [{"token": lim.token, "limit": str(lim.limit)} for lim in self.limits]
        return wire


@dataclass(frozen=True)
class ChargeInstruction:
    """Transfer of ``amount`` minor units of ``token`` from the delegated key's account."""

    sender: str
    token: str
    recipient: str
    amount: int
    chain_id: int
    key_authorization: Optional[KeyAuthorization] = None

    def to_wire(self) -> dict:
        wire = {
            "sender": self.sender,
            "token": self.token,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "chainId": self.chain_id,
        }
        if self.key_authorization is not None:
            wire["keyAuthorization"] = self.key_authorization.to_wire()
        return wire

    def signing_bytes(self) -> bytes:
        """Canonical JSON encoding signed by the delegated key."""
        return json.dumps(self.to_wire(), sort_keys=True, separators=(",", ":")).encode()


@dataclass(frozen=True)
class ChargeReceipt:
    status: str
    transaction_ref: str = ""
    block_number: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.status == CONFIRMED


class LedgerClient(abc.ABC):
    """What the billing engine needs from the chain."""

    @abc.abstractmethod
    async def submit_charge(
        self,
        signer: DelegatedSigner,
        instruction: ChargeInstruction,
    ) -> ChargeReceipt:
        """Submit and block until confirmed/reverted. Raises LedgerError otherwise."""

    async def balance_of(self, address: str) -> int:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class GatewayLedgerClient(LedgerClient):
    """JSON-RPC ledger gateway client."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        request_timeout: Optional[float] = None,
        confirmation_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._rpc_url = rpc_url or settings.ledger_rpc_url
        self._confirmation_timeout = (
            confirmation_timeout if confirmation_timeout is not None else settings.ledger_confirmation_timeout_s
        )
        self._poll_interval = poll_interval if poll_interval is not None else settings.ledger_poll_interval_s
        self._client = httpx.AsyncClient(
            timeout=request_timeout or settings.ledger_request_timeout_s,
            transport=transport,
        )
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client.post(self._rpc_url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as exc:
            raise LedgerTransportError(f"{method}: {exc}") from exc
        except ValueError as exc:
            raise LedgerTransportError(f"{method}: invalid JSON response") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise LedgerRejectedError(f"{method}: {error.get('message', error)}", code=error.get("code"))
        return body.get("result")

    async def submit_charge(
        self,
        signer: DelegatedSigner,
        instruction: ChargeInstruction,
    ) -> ChargeReceipt:
        signature = signer.sign(instruction.signing_bytes())
        tx_hash = await self._rpc(
            "substream_submitCharge",
            [{"instruction": instruction.to_wire(), "signature": signature}],
        )
        if not tx_hash:
            raise LedgerRejectedError("substream_submitCharge returned no transaction hash")

        logger.info(
            "ledger_tx_sent",
            extra={"tx_hash": tx_hash, "with_key_authorization": instruction.key_authorization is not None},
        )
        return await self._wait_for_receipt(tx_hash)

    async def _wait_for_receipt(self, tx_hash: str) -> ChargeReceipt:
        deadline = time.monotonic() + self._confirmation_timeout
        while True:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return _parse_receipt(tx_hash, receipt)
            if time.monotonic() >= deadline:
                raise LedgerTimeoutError(f"no receipt for {tx_hash} after {self._confirmation_timeout}s")
            await asyncio.sleep(self._poll_interval)

    async def balance_of(self, address: str) -> int:
        padded = address.lower().removeprefix("0x").rjust(64, "0")
        result = await self._rpc(
            "eth_call",
            [{"to": settings.currency_address, "data": f"{_BALANCE_OF_SELECTOR}{padded}"}, "latest"],
        )
        return int(result or "0x0", 16)

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_receipt(tx_hash: str, receipt: dict) -> ChargeReceipt:
    status = receipt.get("status")
    block = receipt.get("blockNumber")
    block_number = int(block, 16) if isinstance(block, str) else block
    if status in ("0x1", 1, "success"):
        return ChargeReceipt(status=CONFIRMED, transaction_ref=tx_hash, block_number=block_number)
    return ChargeReceipt(status=REVERTED, transaction_ref=tx_hash, block_number=block_number)


def instruction_summary(instruction: ChargeInstruction) -> dict:
    """Loggable view of an instruction (no signatures)."""
    data = asdict(instruction)
    if instruction.key_authorization is not None:
        data["key_authorization"] = {"address": instruction.key_authorization.address}
    return data
