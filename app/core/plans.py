"""
Plan Catalog
============

Immutable table of subscription plans, loaded once at process start and
injected into the billing engine. Lookup by id only; no runtime mutation.

The bundled table lives in plans.yaml next to this module. Deployments can
point SUBSTREAM_PLANS_FILE at their own YAML file with the same shape.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

import yaml

from app.core.errors import InvalidPlanError

logger = logging.getLogger(__name__)

_BUNDLED_PLANS = os.path.join(os.path.dirname(__file__), "plans.yaml")


class PlanCatalogError(Exception):
    """Raised when a plan table is malformed."""


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: Decimal
    interval_seconds: int

    def amount_minor_units(self, decimals: int) -> int:
        """Price expressed in the currency's smallest unit (floored)."""
        return int(self.price * (Decimal(10) ** decimals))


class PlanCatalog:
    """Read-only mapping of plan id -> Plan."""

    def __init__(self, plans: Iterable[Plan]):
        table: dict[str, Plan] = {}
        for plan in plans:
            if plan.id in table:
                raise PlanCatalogError(f"Duplicate plan id: {plan.id}")
            if plan.interval_seconds <= 0:
                raise PlanCatalogError(f"{plan.id}: interval_seconds must be positive")
            if plan.price <= 0:
                raise PlanCatalogError(f"{plan.id}: price must be positive")
            table[plan.id] = plan
        self._plans: Mapping[str, Plan] = MappingProxyType(table)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "PlanCatalog":
        """Build a catalog from a YAML plan table (bundled table by default)."""
        path = path or _BUNDLED_PLANS
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_plans = data.get("plans", [])
        if not isinstance(raw_plans, list):
            raise PlanCatalogError("'plans' must be a list")

        plans = []
        for idx, raw in enumerate(raw_plans):
            try:
                plans.append(
                    Plan(
                        id=str(raw["id"]),
                        name=str(raw.get("name", raw["id"])),
                        price=Decimal(str(raw["price"])),
                        interval_seconds=int(raw["interval_seconds"]),
                    )
                )
            except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
                raise PlanCatalogError(f"Plan entry {idx} is invalid: {exc}") from exc

        catalog = cls(plans)
        logger.info("plan_catalog_loaded", extra={"count": len(catalog), "path": path})
        return catalog

    def get(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def require(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise InvalidPlanError(detail=f"unknown plan {plan_id!r}", context={"plan_id": plan_id})
        return plan

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)
