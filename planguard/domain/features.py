"""Feature registry vocabulary and typed entitlement values.

Pure domain types. Stored plan limits and overrides are strings
("true", "10", "-1"); they are decoded exactly once into a tagged value
so the resolvers never re-parse strings.
"""

from dataclasses import dataclass
from enum import StrEnum

import structlog

logger = structlog.get_logger(__name__)

UNLIMITED = -1
TEAM_MEMBERS = "team_members"

_TRUTHY = frozenset({"1", "true", "on", "yes"})


class FeatureType(StrEnum):
    BOOLEAN = "boolean"
    LIMIT = "limit"


class TrackingScope(StrEnum):
    ORGANIZATION = "organization"
    WORKSPACE = "workspace"


class Period(StrEnum):
    LIFETIME = "lifetime"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class Flag:
    """Boolean capability."""

    enabled: bool


@dataclass(frozen=True)
class Quota:
    """Finite, non-negative limit."""

    amount: int


@dataclass(frozen=True)
class Unlimited:
    """Limit with no ceiling (stored as "-1")."""


EntitlementValue = Flag | Quota | Unlimited


def decode_value(raw: str | None, feature_type: FeatureType | str) -> EntitlementValue | None:
    """Decode a stored value according to its feature type.

    Boolean: "1", "true", "on", "yes" (any case) are true, everything else false.
    Limit: "-1" is Unlimited, a non-negative integer is a Quota. Anything
    else is logged and decoded as None (treated as undefined).
    """
    if raw is None:
        return None

    text = str(raw).strip()

    if FeatureType(feature_type) == FeatureType.BOOLEAN:
        return Flag(text.lower() in _TRUTHY)

    try:
        amount = int(text)
    except ValueError:
        logger.error("invalid_limit_value", value=text)
        return None

    if amount == UNLIMITED:
        return Unlimited()
    if amount < 0:
        logger.error("invalid_limit_value", value=text)
        return None
    return Quota(amount)


def as_limit(value: EntitlementValue | None) -> int | None:
    """Public limit form: int, -1 for unlimited, None when not a limit."""
    match value:
        case Unlimited():
            return UNLIMITED
        case Quota(amount=amount):
            return amount
        case _:
            return None


def grants_feature(value: EntitlementValue | None) -> bool:
    """Whether a decoded value makes the feature available."""
    match value:
        case Flag(enabled=enabled):
            return enabled
        case Quota(amount=amount):
            return amount > 0
        case Unlimited():
            return True
        case _:
            return False


def encode_value(value: bool | int | str) -> str:
    """Encode a Python value into the stored string form."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
