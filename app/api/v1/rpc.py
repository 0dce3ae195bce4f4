"""
RPC API Endpoints
=================

Named procedure endpoints (``POST /api/v1/rpc/<name>``) for subscription
status, feature access and subscription events.

Every response uses the standard ``{"success": true, "data": ...}``
envelope; errors use the error envelope from ``app.core.errors``.
"""

import logging

from fastapi import APIRouter

from app.dependencies import CurrentCaller, Engine, ServiceCaller
from app.schemas.common import BaseResponse
from app.schemas.rpc import (
    CheckFeatureAccessRequest,
    EventLoggedResponse,
    ExpirationSweepResponse,
    FeatureAccessResponse,
    LogSubscriptionEventRequest,
    StatusUpdateResponse,
    TrackFeatureUsageRequest,
    UpdateSubscriptionStatusRequest,
    ValidateSubscriptionStatusRequest,
)
from app.schemas.subscription import SubscriptionStatusSummary, UsageSummary
from app.services.scheduled_jobs import ScheduledJobService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/validate_subscription_status",
    response_model=BaseResponse[SubscriptionStatusSummary],
)
async def validate_subscription_status(
    body: ValidateSubscriptionStatusRequest,
    caller: CurrentCaller,
    engine: Engine,
):
    """
    Current subscription summary for a user.

    Side-effect free. A user without any record reads as ``NONE``.
    """
    caller.ensure_can_act_for(body.user_id)
    summary = await engine.subscription_status(body.user_id)
    return BaseResponse(data=summary)


@router.post(
    "/check_feature_access",
    response_model=BaseResponse[FeatureAccessResponse],
)
async def check_feature_access(
    body: CheckFeatureAccessRequest,
    caller: CurrentCaller,
    engine: Engine,
):
    """
    Grant or deny a premium feature.

    Always answers: backend trouble is reported as
    ``granted=false, reason="unavailable"``.
    """
    caller.ensure_can_act_for(body.user_id)
    decision = await engine.check_feature_access(body.user_id, body.feature_name)
    return BaseResponse(
        data=FeatureAccessResponse(granted=decision.granted, reason=decision.reason),
    )


@router.post(
    "/track_feature_usage",
    response_model=BaseResponse[UsageSummary],
)
async def track_feature_usage(
    body: TrackFeatureUsageRequest,
    caller: CurrentCaller,
    engine: Engine,
):
    """Count one use of a feature for today."""
    caller.ensure_can_act_for(body.user_id)
    usage = await engine.track_feature_usage(body.user_id, body.feature_name)
    return BaseResponse(data=usage)


@router.post(
    "/log_subscription_event",
    response_model=BaseResponse[EventLoggedResponse],
)
async def log_subscription_event(
    body: LogSubscriptionEventRequest,
    caller: CurrentCaller,
    engine: Engine,
):
    """
    Append a client-side subscription event (purchase_initiated, ...).

    Responds 409 FOREIGN_KEY_VIOLATION when the user does not exist.
    """
    caller.ensure_can_act_for(body.user_id)
    event_id = await engine.log_subscription_event(
        body.user_id,
        body.event_type,
        body.event_data,
    )
    return BaseResponse(data=EventLoggedResponse(event_id=event_id))


@router.post(
    "/update_subscription_status",
    response_model=BaseResponse[StatusUpdateResponse],
)
async def update_subscription_status(
    body: UpdateSubscriptionStatusRequest,
    caller: ServiceCaller,
    engine: Engine,
):
    """
    Administrative status override.

    Bypasses receipt validation but never the transition guard: an
    illegal edge answers 409 INVALID_TRANSITION.
    """
    result = await engine.update_subscription_status(
        body.user_id,
        body.product_id,
        body.new_status,
        body.expiration_date,
        actor=caller.label,
    )
    return BaseResponse(
        data=StatusUpdateResponse(
            previous_status=result.previous_status,
            new_status=result.new_status,
        ),
    )


@router.post(
    "/expire_lapsed_subscriptions",
    response_model=BaseResponse[ExpirationSweepResponse],
)
async def expire_lapsed_subscriptions(
    caller: ServiceCaller,
    engine: Engine,
):
    """Run the expiration sweep (called by the scheduler)."""
    jobs = ScheduledJobService(engine.ledger.session_factory, engine.ledger)
    summary = await jobs.expire_lapsed_subscriptions()
    logger.info(
        "Expiration sweep: expired=%d skipped=%d errors=%d",
        summary["expired"],
        summary["skipped"],
        len(summary["errors"]),
    )
    return BaseResponse(data=ExpirationSweepResponse(**summary))
