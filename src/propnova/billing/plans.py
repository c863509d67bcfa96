"""Plan catalog: tiers, prices and per-resource quota limits."""

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from propnova.core.exceptions import PlanNotFoundError

CATALOG_VERSION = "2025-01"

UNLIMITED = -1

FREE_PLAN_ID = "free"


class ResourceType(str, enum.Enum):
    """Independently metered resources."""

    PROPERTIES = "properties"
    AI_GENERATIONS = "ai_generations"
    SAVED_LISTINGS = "saved_listings"


# Only AI generations can be extended beyond the periodic quota with credits.
TOP_UP_RESOURCES: frozenset[ResourceType] = frozenset({ResourceType.AI_GENERATIONS})


@dataclass(frozen=True)
class Plan:
    """A plan tier. Immutable; loaded once per process."""

    id: str
    name: str
    price_minor: int
    currency: str
    limits: Mapping[ResourceType, int]
    period: str = "monthly"
    description: str = ""
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_free(self) -> bool:
        return self.price_minor == 0

    def limit_for(self, resource_type: ResourceType) -> int:
        """Quota limit for a resource (-1 for unlimited)."""
        return self.limits[resource_type]

    def is_unlimited(self, resource_type: ResourceType) -> bool:
        return self.limits[resource_type] == UNLIMITED


def _limits(properties: int, ai_generations: int, saved_listings: int) -> Mapping[ResourceType, int]:
    return MappingProxyType(
        {
            ResourceType.PROPERTIES: properties,
            ResourceType.AI_GENERATIONS: ai_generations,
            ResourceType.SAVED_LISTINGS: saved_listings,
        }
    )


DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        id=FREE_PLAN_ID,
        name="Free",
        price_minor=0,
        currency="ZAR",
        limits=_limits(properties=1, ai_generations=8, saved_listings=10),
        description="Try the platform with a single property",
        features=("1 property", "8 AI generations / month", "10 saved listings"),
    ),
    Plan(
        id="starter",
        name="Starter",
        price_minor=9900,
        currency="ZAR",
        limits=_limits(properties=3, ai_generations=50, saved_listings=50),
        description="Perfect for individual property owners",
        features=("Up to 3 properties", "50 AI generations / month", "Email support"),
    ),
    Plan(
        id="growth",
        name="Growth",
        price_minor=29900,
        currency="ZAR",
        limits=_limits(properties=15, ai_generations=200, saved_listings=250),
        description="Ideal for growing property portfolios",
        features=("Up to 15 properties", "200 AI generations / month", "Priority support"),
    ),
    Plan(
        id="enterprise",
        name="Enterprise",
        price_minor=69900,
        currency="ZAR",
        limits=_limits(properties=UNLIMITED, ai_generations=1000, saved_listings=UNLIMITED),
        description="For property management companies",
        features=("Unlimited properties", "1000 AI generations / month", "Dedicated support"),
    ),
)


class PlanCatalog:
    """Read-only lookup over a versioned set of plans."""

    def __init__(self, plans: Iterable[Plan], version: str = CATALOG_VERSION) -> None:
        self.version = version
        self._plans: dict[str, Plan] = {plan.id: plan for plan in plans}
        if FREE_PLAN_ID not in self._plans:
            raise ValueError("Plan catalog must define the free plan")

    def get_plan(self, plan_id: str) -> Plan:
        """Look up a plan by id.

        Raises:
            PlanNotFoundError: If the id is not in the catalog
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def list_plans(self) -> list[Plan]:
        """All plans ordered by monthly price."""
        return sorted(self._plans.values(), key=lambda plan: plan.price_minor)

    @property
    def free_plan(self) -> Plan:
        return self._plans[FREE_PLAN_ID]

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans


_default_catalog = PlanCatalog(DEFAULT_PLANS)


def get_catalog() -> PlanCatalog:
    """The process-wide plan catalog."""
    return _default_catalog


def supports_top_up(resource_type: ResourceType) -> bool:
    """Check whether credits can extend a resource's periodic quota."""
    return resource_type in TOP_UP_RESOURCES
