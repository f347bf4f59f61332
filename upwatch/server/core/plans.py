"""Subscription plan catalog.

Plan limits are configuration data: the packaged ``plans.json`` is the
default and ``PLANS_FILE`` points at an override. A limit of ``-1`` means
unlimited.
"""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from upwatch.exceptions import PlanConfigError, UnknownPlanError
from upwatch.server.core.types import ResourceType

logger = logging.getLogger(__name__)

DEFAULT_PLANS_FILE = Path(__file__).with_name("plans.json")

UNLIMITED = -1


class PlanConfig(BaseModel):
    """Limits for one subscription plan."""

    model_config = ConfigDict(frozen=True)

    name: str
    monitors: int = Field(..., ge=UNLIMITED)
    alert_recipients: int = Field(..., ge=UNLIMITED)
    min_check_interval: float = Field(..., gt=0, description="Minutes")
    data_retention_days: int = Field(..., gt=0)
    allowed_regions: frozenset[str]

    def limit_for(self, resource_type: ResourceType) -> int:
        if resource_type == "monitors":
            return self.monitors
        if resource_type == "alertRecipients":
            return self.alert_recipients
        raise ValueError(f"Unknown resource type: {resource_type}")


class PlanCatalog(BaseModel):
    """All plans plus the plan assumed for users without one."""

    model_config = ConfigDict(frozen=True)

    default_plan: str
    plans: dict[str, PlanConfig]

    @model_validator(mode="after")
    def check_default_plan(self) -> "PlanCatalog":
        if not self.plans:
            raise ValueError("catalog defines no plans")
        if self.default_plan not in self.plans:
            raise ValueError(f"default_plan {self.default_plan!r} is not defined")
        return self

    def get_plan_limits(self, plan: str | None) -> PlanConfig:
        """Return the limits for a plan, falling back to the default plan for None.

        Raises:
            UnknownPlanError: The plan is not in the catalog.
        """
        key = plan or self.default_plan
        try:
            return self.plans[key]
        except KeyError:
            raise UnknownPlanError(key) from None


def load_plan_catalog(path: str | Path | None = None) -> PlanCatalog:
    """Load and validate the plan catalog.

    Args:
        path: JSON file to read. Uses the packaged catalog when None.

    Returns:
        Validated PlanCatalog.

    Raises:
        PlanConfigError: File missing, unreadable, or invalid.
    """
    plans_path = Path(path) if path else DEFAULT_PLANS_FILE
    try:
        raw = json.loads(plans_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PlanConfigError(f"Cannot read plan catalog {plans_path}: {e}") from e

    try:
        catalog = PlanCatalog.model_validate(raw)
    except ValidationError as e:
        raise PlanConfigError(f"Invalid plan catalog {plans_path}: {e}") from e

    logger.info("Loaded %d plans from %s", len(catalog.plans), plans_path)
    return catalog
