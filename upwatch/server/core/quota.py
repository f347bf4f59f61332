"""Plan quota admission control.

``can_create`` answers whether a user may create one more monitor or alert
recipient. ``admit`` couples that answer with the insert: admissions for one
user are serialized by a per-user lock, and the store re-checks the count in
the inserting transaction, so concurrent requests can never overshoot the
plan limit.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

from upwatch.exceptions import QuotaExceededError, UnknownPlanError
from upwatch.server.core.plans import UNLIMITED, PlanCatalog, PlanConfig
from upwatch.server.core.retry import RetryPolicy, with_store_retry
from upwatch.server.core.types import ResourceType
from upwatch.server.stores.base import MonitorStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RESOURCE_NOUNS = {"monitors": "monitors", "alertRecipients": "alert recipients"}


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check.

    Attributes:
        allowed: Whether the action may proceed
        resource_type: What was checked (``monitors``, ``alertRecipients``,
            ``checkInterval`` or ``regions``)
        limit: Plan limit, -1 for unlimited, None if it could not be determined
        current: Current usage, None if not counted
        reason: Human-readable denial reason
    """

    allowed: bool
    resource_type: str
    limit: int | None = None
    current: int | None = None
    reason: str | None = None


@dataclass
class AdmissionResult(Generic[T]):
    decision: QuotaDecision
    created: T | None = None


@dataclass(frozen=True)
class UsageReport:
    """A user's usage against every plan limit."""

    plan: str
    monitors_used: int
    monitors_limit: int
    recipients_used: int
    recipients_limit: int
    min_check_interval: float
    data_retention_days: int
    allowed_regions: frozenset[str]


class UserLocks:
    """Arena of per-user admission locks."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class QuotaGate:
    """Checks plan limits before monitors and alert recipients are created."""

    def __init__(
        self,
        monitor_store: MonitorStore,
        plans: PlanCatalog,
        locks: UserLocks | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.monitor_store = monitor_store
        self.plans = plans
        self.locks = locks or UserLocks()
        self.retry_policy = retry_policy or RetryPolicy()

    async def _user_plan(self, user_id: str) -> tuple[PlanConfig | None, str | None]:
        """Resolve a user's plan, or return the denial reason."""
        plan_name: str | None = await with_store_retry(
            lambda: self.monitor_store.get_user_plan(user_id), "get_user_plan", self.retry_policy
        )
        if plan_name is None:
            return None, f"Unknown user: {user_id}"
        try:
            return self.plans.get_plan_limits(plan_name), None
        except UnknownPlanError as e:
            logger.warning(f"User {user_id} is on a plan missing from the catalog: {e.plan}")
            return None, str(e)

    async def _count(self, user_id: str, resource_type: ResourceType) -> int:
        if resource_type == "monitors":
            operation = lambda: self.monitor_store.count_active_by_user(user_id)  # noqa: E731
        else:
            operation = lambda: self.monitor_store.count_recipients_by_user(user_id)  # noqa: E731
        return await with_store_retry(operation, f"count_{resource_type}", self.retry_policy)

    async def can_create(self, user_id: str, resource_type: ResourceType) -> QuotaDecision:
        """Check whether the user may create one more resource of this type.

        Raises:
            StoreUnavailableError: The monitor store could not be read.
        """
        if resource_type not in _RESOURCE_NOUNS:
            return QuotaDecision(
                allowed=False,
                resource_type=resource_type,
                reason=f"Unknown resource type: {resource_type}",
            )

        plan, reason = await self._user_plan(user_id)
        if plan is None:
            return QuotaDecision(allowed=False, resource_type=resource_type, reason=reason)

        limit = plan.limit_for(resource_type)
        if limit == UNLIMITED:
            return QuotaDecision(allowed=True, resource_type=resource_type, limit=UNLIMITED)

        current = await self._count(user_id, resource_type)
        if current >= limit:
            return QuotaDecision(
                allowed=False,
                resource_type=resource_type,
                limit=limit,
                current=current,
                reason=f"{plan.name} plan allows at most {limit} {_RESOURCE_NOUNS[resource_type]}",
            )
        return QuotaDecision(allowed=True, resource_type=resource_type, limit=limit, current=current)

    async def admit(
        self,
        user_id: str,
        resource_type: ResourceType,
        create: Callable[[int], Awaitable[T]],
    ) -> AdmissionResult[T]:
        """Check the quota and create the resource as one atomic step.

        Args:
            user_id: Owner of the new resource.
            resource_type: ``monitors`` or ``alertRecipients``.
            create: Inserts the resource. Receives the plan limit so the
                store can re-check the count inside its transaction and raise
                QuotaExceededError.

        Returns:
            The decision and, when allowed, whatever ``create`` returned.
        """
        async with self.locks.get(user_id):
            decision = await self.can_create(user_id, resource_type)
            if not decision.allowed:
                logger.info(f"Quota denied {resource_type} for user {user_id}: {decision.reason}")
                return AdmissionResult(decision=decision)

            try:
                created = await create(decision.limit if decision.limit is not None else UNLIMITED)
            except QuotaExceededError as e:
                logger.info(f"Quota re-check denied {resource_type} for user {user_id}: {e}")
                return AdmissionResult(
                    decision=QuotaDecision(
                        allowed=False,
                        resource_type=resource_type,
                        limit=e.limit,
                        current=e.current,
                        reason=str(e),
                    )
                )
            return AdmissionResult(decision=decision, created=created)

    async def check_monitor_settings(
        self, user_id: str, interval_minutes: float, regions: Iterable[str]
    ) -> QuotaDecision:
        """Check a monitor's interval and regions against the user's plan."""
        plan, reason = await self._user_plan(user_id)
        if plan is None:
            return QuotaDecision(allowed=False, resource_type="monitors", reason=reason)

        if interval_minutes < plan.min_check_interval:
            return QuotaDecision(
                allowed=False,
                resource_type="checkInterval",
                reason=(
                    f"{plan.name} plan requires a check interval of at least "
                    f"{plan.min_check_interval:g} minutes"
                ),
            )

        requested = set(regions)
        if not requested:
            return QuotaDecision(
                allowed=False, resource_type="regions", reason="At least one region is required"
            )
        disallowed = sorted(requested - plan.allowed_regions)
        if disallowed:
            return QuotaDecision(
                allowed=False,
                resource_type="regions",
                reason=f"{plan.name} plan does not include regions: {', '.join(disallowed)}",
            )
        return QuotaDecision(allowed=True, resource_type="monitors")

    async def usage(self, user_id: str) -> UsageReport | None:
        """Return the user's usage and limits, or None for an unknown user.

        Raises:
            UnknownPlanError: The user's plan is missing from the catalog.
        """
        plan_name = await with_store_retry(
            lambda: self.monitor_store.get_user_plan(user_id), "get_user_plan", self.retry_policy
        )
        if plan_name is None:
            return None
        plan = self.plans.get_plan_limits(plan_name)
        return UsageReport(
            plan=plan.name,
            monitors_used=await self._count(user_id, "monitors"),
            monitors_limit=plan.monitors,
            recipients_used=await self._count(user_id, "alertRecipients"),
            recipients_limit=plan.alert_recipients,
            min_check_interval=plan.min_check_interval,
            data_retention_days=plan.data_retention_days,
            allowed_regions=plan.allowed_regions,
        )
