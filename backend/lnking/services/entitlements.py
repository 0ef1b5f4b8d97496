"""Plan catalog and workspace entitlement transitions"""
from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Mapping, Optional

from lnking.core.exceptions import UnknownPlan

# Largest integer that survives a round trip through a JSON number
MAX_LIMIT = 2 ** 53 - 1

FREE_PLAN = "free"


@dataclass(frozen=True)
class PlanLimits:
    usage_limit: int
    links_limit: int
    domains_limit: int
    tags_limit: int
    folders_limit: int
    users_limit: int
    ai_limit: int
    sales_limit: int


PLAN_CATALOG: Mapping[str, PlanLimits] = MappingProxyType({
    "free": PlanLimits(1000, 25, 3, 5, 0, 1, 10, 0),
    "pro": PlanLimits(50000, 1000, 10, 25, 3, 5, 1000, 0),
    "business": PlanLimits(150000, 5000, 40, MAX_LIMIT, 10, 15, 1000, 500000),
    "businessplus": PlanLimits(400000, 15000, 100, MAX_LIMIT, 25, 30, 1000, 1500000),
    "businessextra": PlanLimits(1000000, 40000, 250, MAX_LIMIT, 50, 50, 1000, 4000000),
    "businessmax": PlanLimits(2500000, 100000, 500, MAX_LIMIT, 100, 100, 1000, 10000000),
})


@dataclass(frozen=True)
class AccountPatch:
    """Full replacement of a workspace's plan and limits."""

    plan: str
    limits: PlanLimits
    provider_reference_id: Optional[str] = None
    billing_cycle_start: Optional[int] = None

    def apply_to(self, workspace) -> None:
        workspace.plan = self.plan
        for field in fields(PlanLimits):
            setattr(workspace, field.name, getattr(self.limits, field.name))
        if self.provider_reference_id is not None:
            workspace.flutterwave_subscription_id = self.provider_reference_id
        if self.billing_cycle_start is not None:
            workspace.billing_cycle_start = self.billing_cycle_start


class EntitlementTable:
    """Resolves plan names to limits and builds workspace patches."""

    def __init__(self, catalog: Mapping[str, PlanLimits] = PLAN_CATALOG):
        if FREE_PLAN not in catalog:
            raise ValueError("Plan catalog must define the free plan")
        self._catalog = catalog

    def __contains__(self, plan_name: str) -> bool:
        return plan_name.lower() in self._catalog

    def limits_for(self, plan_name: str) -> PlanLimits:
        try:
            return self._catalog[plan_name.lower()]
        except KeyError:
            raise UnknownPlan(plan_name) from None

    def apply_plan(self, plan_name: str, provider_reference_id: Optional[str] = None,
                   billing_cycle_start: Optional[int] = None) -> AccountPatch:
        plan = plan_name.lower()
        return AccountPatch(
            plan=plan,
            limits=self.limits_for(plan),
            provider_reference_id=provider_reference_id,
            billing_cycle_start=billing_cycle_start
        )

    def free_plan_patch(self) -> AccountPatch:
        return AccountPatch(plan=FREE_PLAN, limits=self._catalog[FREE_PLAN])
