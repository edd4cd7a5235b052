from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from payrecon.domain.dtos import SubscriptionInfo, SubscriptionResponse
from payrecon.domain.models import AuthenticatedUser
from payrecon.errors import PaymentsError
from payrecon.services.reconciliation import ReconciliationEngine
from payrecon.utils.security import get_current_user

from .deps import get_engine, to_http_error

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
) -> SubscriptionResponse:
    try:
        sub = engine.subscriptions.find_active(user.user_id)
    except PaymentsError as exc:
        logger.error(
            "subscription lookup failed",
            extra={"endpoint": "/api/subscription", "user_id": user.user_id, "error": str(exc)},
        )
        raise to_http_error(exc) from exc
    if sub is None:
        return SubscriptionResponse(subscription=None)
    return SubscriptionResponse(
        subscription=SubscriptionInfo(
            plan_id=sub.plan_id,
            billing_cycle=sub.billing_cycle,
            status=sub.status,
            provider=sub.provider,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            trial_start=sub.trial_start,
            trial_end=sub.trial_end,
            payment_attempts=sub.payment_attempts,
            canceled_at=sub.canceled_at,
        )
    )
