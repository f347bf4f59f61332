"""Upwatch: multi-region uptime checks, incidents and plan quotas."""

from upwatch.exceptions import (
    PlanConfigError,
    QuotaExceededError,
    StoreUnavailableError,
    UnknownPlanError,
    UpwatchError,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "UpwatchError",
    "StoreUnavailableError",
    "PlanConfigError",
    "UnknownPlanError",
    "QuotaExceededError",
]
