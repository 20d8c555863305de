"""Cost estimation for production plans."""

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, Decimal
from typing import Dict, List, Mapping

from budgetguard.core.errors import ConfigInvalid
from budgetguard.core.plans import PlanCode, PlanDefinition, ResourceKind

# resource -> quality tier -> cents per unit
RateTable = Mapping[str, Mapping[str, Decimal]]


@dataclass(frozen=True)
class CostLine:
    """Cost of one resource component of a plan."""

    resource: ResourceKind
    quantity: Decimal
    unit_cost: Decimal
    subtotal_cents: int


@dataclass(frozen=True)
class CostEstimate:
    """Result of estimating a plan against a rate table."""

    plan_code: PlanCode
    breakdown: List[CostLine] = field(default_factory=list)
    total_cents: int = 0

    def __repr__(self) -> str:
        return (
            f"CostEstimate(plan={self.plan_code.value}, "
            f"total={self.total_cents}c, lines={len(self.breakdown)})"
        )

    def as_dict(self) -> Dict[str, int]:
        """Subtotals keyed by resource name."""
        return {line.resource.value: line.subtotal_cents for line in self.breakdown}


def ceil_cents(amount: Decimal) -> int:
    """Round a fractional cent amount up to a whole cent."""
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def lookup_rate(rates: RateTable, resource: ResourceKind, tier: str) -> Decimal:
    """Get the unit cost of a resource at a quality tier.

    Raises:
        ConfigInvalid: If the rate table has no entry for the resource/tier pair.
    """
    tiers = rates.get(resource.value)
    if not tiers or tier not in tiers:
        raise ConfigInvalid(
            f"Missing rate for resource '{resource.value}' at tier '{tier}'"
        )
    return Decimal(tiers[tier])


def estimate(plan: PlanDefinition, rates: RateTable) -> CostEstimate:
    """Estimate the cost of one episode produced on a plan.

    Each resource subtotal is rounded up to a whole cent before summing, so
    the estimate never undershoots the true cost.

    Args:
        plan: Plan definition with fixed quantities
        rates: Rate table (resource -> tier -> cents per unit)

    Returns:
        CostEstimate with per-resource breakdown and total

    Raises:
        ConfigInvalid: If a rate is missing for a resource the plan consumes.
    """
    lines: List[CostLine] = []
    for resource, quantity in plan.quantities():
        if quantity <= 0:
            continue
        unit_cost = lookup_rate(rates, resource, plan.tier)
        lines.append(
            CostLine(
                resource=resource,
                quantity=quantity,
                unit_cost=unit_cost,
                subtotal_cents=ceil_cents(quantity * unit_cost),
            )
        )
    return CostEstimate(
        plan_code=plan.code,
        breakdown=lines,
        total_cents=sum(line.subtotal_cents for line in lines),
    )
