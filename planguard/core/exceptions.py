class PlanGuardError(Exception):
    """Base exception for planguard."""

    pass


class ConfigurationError(PlanGuardError):
    """Raised when a configured role, permission or aggregation map is invalid."""

    pass


class CatalogError(PlanGuardError):
    """Raised when the plan catalog is inconsistent or a plan cannot be found."""

    pass


class MembershipError(PlanGuardError):
    """Raised when a membership mutation is not permitted."""

    pass


class InvitationValidationError(PlanGuardError):
    """Raised when an invitation request fails validation."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{field}: {message}" for field, message in errors.items()))


class LimitExceededError(PlanGuardError):
    """Raised by callers that require a metered feature to have capacity."""

    def __init__(self, feature: str, current: int, limit: int | None):
        self.feature = feature
        self.current = current
        self.limit = limit
        self.remaining = max(limit - current, 0) if limit is not None and limit >= 0 else 0
        super().__init__(
            f"Limit reached for '{feature}': {current} used of {limit if limit is not None else 0}"
        )
