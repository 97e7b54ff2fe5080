"""
Error code system.

SubstreamError is the base exception for all structured errors.
Raise it with an error code from the registry, and the error middleware
will produce a structured JSON response.

Usage:
    from app.core.errors import SubstreamError
    raise SubstreamError("SUB-PLN-001", detail="unknown plan 'weekly_rate'")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^SUB-[A-Z]{2,6}-\d{3}$")


class SubstreamError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "SUB-PLN-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    code: str = "SUB-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class InvalidPlanError(SubstreamError):
    """Plan id does not resolve in the plan catalog."""

    code = "SUB-PLN-001"


class InvalidAuthorizationError(SubstreamError):
    """Signed key authorization is missing or structurally incomplete."""

    code = "SUB-AUTH-001"
