from dataclasses import dataclass
from enum import Enum


class Tier(str, Enum):
    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"
    AGENCY = "agency"


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class Plan:
    tier: Tier
    capabilities: frozenset


_FREE_CAPABILITIES = frozenset({"search", "favorites", "messaging", "property_tours"})
_STANDARD_CAPABILITIES = _FREE_CAPABILITIES | {"premium_badge", "featured_listings"}
_PREMIUM_CAPABILITIES = _STANDARD_CAPABILITIES | {"bulk_upload", "agent_analytics"}
_AGENCY_CAPABILITIES = _PREMIUM_CAPABILITIES | {"team_seats", "api_access"}

PLANS = {
    Tier.FREE: Plan(Tier.FREE, _FREE_CAPABILITIES),
    Tier.STANDARD: Plan(Tier.STANDARD, _STANDARD_CAPABILITIES),
    Tier.PREMIUM: Plan(Tier.PREMIUM, _PREMIUM_CAPABILITIES),
    Tier.AGENCY: Plan(Tier.AGENCY, _AGENCY_CAPABILITIES),
}


def get_plan(tier) -> Plan:
    try:
        return PLANS[Tier(tier)]
    except ValueError:
        return PLANS[Tier.FREE]


def parse_tier(value):
    """Return the Tier for a string, or None when it is not a known tier."""
    try:
        return Tier(value)
    except ValueError:
        return None
