"""
Error registry: code -> HTTP status, safe message and remediation.

Loaded from registry.yaml at startup; the exception handler reads it to
render responses. Codes raised but missing here render as a generic 500.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

import yaml

from app.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

_REGISTRY_FILE = os.path.join(os.path.dirname(__file__), "registry.yaml")

SEVERITIES = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    title: str
    severity: str
    http_status: int
    safe_message: str
    retryable: bool = False
    user_action_required: bool = False
    remediation: List[str] = field(default_factory=list)


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _parse_entry(raw: dict) -> ErrorEntry:
    code = raw.get("code", "")
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")
    if raw.get("severity") not in SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw.get('severity')!r}")
    try:
        return ErrorEntry(
            code=code,
            title=raw["title"],
            severity=raw["severity"],
            http_status=int(raw["http_status"]),
            safe_message=raw["safe_message"],
            retryable=bool(raw.get("retryable", False)),
            user_action_required=bool(raw.get("user_action_required", False)),
            remediation=list(raw.get("remediation") or []),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise RegistryValidationError(f"{code}: malformed entry ({exc})") from exc


class ErrorRegistry:
    """Validated lookup table of error codes."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}

    def load(self, path: str | None = None) -> None:
        with open(path or _REGISTRY_FILE, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for raw in raw_entries:
            entry = _parse_entry(raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        logger.info("error_registry_loaded", extra={"count": len(entries)})

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Like get(), but raises KeyError for unknown codes."""
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def all_codes(self) -> list[str]:
        return list(self._entries)


error_registry = ErrorRegistry()
