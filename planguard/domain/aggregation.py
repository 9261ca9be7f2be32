"""Limit aggregation across simultaneously active plans.

Pure domain functions. Which features add up across stacked plans and
which take the most generous plan is an explicit table loaded from
configuration. Features not listed aggregate with MAXIMUM.
"""

from collections.abc import Iterable, Mapping
from enum import StrEnum
from types import MappingProxyType

from planguard.core.exceptions import ConfigurationError
from planguard.domain.features import UNLIMITED, EntitlementValue, Quota, Unlimited


class AggregationRule(StrEnum):
    ADDITIVE = "sum"
    MAXIMUM = "max"


class AggregationTable:
    """Immutable feature -> aggregation rule table."""

    def __init__(self, rules: Mapping[str, AggregationRule]):
        self._rules = MappingProxyType(dict(rules))

    @classmethod
    def from_config(cls, raw: Mapping[str, str]) -> "AggregationTable":
        """Build from a feature -> "sum"/"max" map, rejecting unknown rule names."""
        rules: dict[str, AggregationRule] = {}
        for feature, name in raw.items():
            try:
                rules[feature] = AggregationRule(name)
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown aggregation rule '{name}' for feature '{feature}'"
                ) from e
        return cls(rules)

    def rule_for(self, feature: str) -> AggregationRule:
        return self._rules.get(feature, AggregationRule.MAXIMUM)

    def aggregate(self, feature: str, values: Iterable[EntitlementValue | None]) -> int | None:
        """Combine per-plan limits into one effective limit.

        Returns None when no plan defines a usable limit, -1 when any plan
        is unlimited, otherwise the sum or maximum of the finite limits.
        """
        amounts: list[int] = []
        for value in values:
            if isinstance(value, Unlimited):
                return UNLIMITED
            if isinstance(value, Quota):
                amounts.append(value.amount)

        if not amounts:
            return None

        if self.rule_for(feature) == AggregationRule.ADDITIVE:
            return sum(amounts)
        return max(amounts)
