"""Upwatch exceptions."""

from __future__ import annotations


class UpwatchError(Exception):
    """Base exception for all Upwatch errors."""


class StoreUnavailableError(UpwatchError):
    """Raised when a store operation keeps failing after all retries."""

    operation: str

    def __init__(self, operation: str, *, cause: BaseException | None = None) -> None:
        message = f"Store operation '{operation}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class PlanConfigError(UpwatchError):
    """Raised when the plan catalog cannot be loaded or validated.

    The engine refuses to start without a plan catalog.
    """


class UnknownPlanError(PlanConfigError):
    """Raised when a plan name is not present in the catalog."""

    plan: str

    def __init__(self, plan: str) -> None:
        super().__init__(f"Unknown plan: {plan}")
        self.plan = plan


class QuotaExceededError(UpwatchError):
    """Raised by a store when the transactional quota re-check fails.

    Only the Quota Gate handles this; callers receive a denial decision.
    """

    resource_type: str
    limit: int
    current: int

    def __init__(self, resource_type: str, *, limit: int, current: int) -> None:
        super().__init__(f"{resource_type} limit reached ({current}/{limit})")
        self.resource_type = resource_type
        self.limit = limit
        self.current = current
