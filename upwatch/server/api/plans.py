"""Plan catalog, usage and quota check endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException

from upwatch.exceptions import UnknownPlanError
from upwatch.server.api.deps import get_plan_catalog, get_quota_gate
from upwatch.server.api.schemas.plans import (
    PlanCatalogResponse,
    PlanResponse,
    QuotaCheckRequest,
    QuotaDecisionResponse,
    UsageItem,
    UsageResponse,
)
from upwatch.server.core.plans import PlanCatalog
from upwatch.server.core.quota import QuotaDecision, QuotaGate

router = APIRouter(prefix="/api/v1", tags=["plans"])


def decision_response(decision: QuotaDecision) -> QuotaDecisionResponse:
    return QuotaDecisionResponse(
        allowed=decision.allowed,
        resource_type=decision.resource_type,
        limit=decision.limit,
        current=decision.current,
        reason=decision.reason,
    )


@router.get("/plans", response_model=PlanCatalogResponse)
async def list_plans(plans: PlanCatalog = Depends(get_plan_catalog)) -> PlanCatalogResponse:
    """List the subscription plans and their limits."""
    return PlanCatalogResponse(
        default_plan=plans.default_plan,
        plans=[
            PlanResponse(
                key=key,
                name=plan.name,
                monitors=plan.monitors,
                alert_recipients=plan.alert_recipients,
                min_check_interval=plan.min_check_interval,
                data_retention_days=plan.data_retention_days,
                allowed_regions=sorted(plan.allowed_regions),
            )
            for key, plan in plans.plans.items()
        ],
    )


@router.get("/users/{user_id}/usage", response_model=UsageResponse)
async def get_usage(user_id: uuid.UUID, gate: QuotaGate = Depends(get_quota_gate)) -> UsageResponse:
    """Get a user's current usage against their plan limits."""
    try:
        report = await gate.usage(str(user_id))
    except UnknownPlanError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    if report is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")

    return UsageResponse(
        user_id=user_id,
        plan=report.plan,
        monitors=UsageItem(used=report.monitors_used, limit=report.monitors_limit),
        alert_recipients=UsageItem(used=report.recipients_used, limit=report.recipients_limit),
        min_check_interval=report.min_check_interval,
        data_retention_days=report.data_retention_days,
        allowed_regions=sorted(report.allowed_regions),
    )


@router.post("/quota/check", response_model=QuotaDecisionResponse)
async def check_quota(
    check: QuotaCheckRequest, gate: QuotaGate = Depends(get_quota_gate)
) -> QuotaDecisionResponse:
    """Check whether a user may create one more monitor or alert recipient.

    A denial is a normal response (allowed=false), not an error.
    """
    decision = await gate.can_create(str(check.user_id), check.resource_type)
    return decision_response(decision)
