"""
Webhooks API Endpoints
======================

Receipt delivery from platform relays (App Store server notifications,
Play real-time developer notifications, web checkout).

Authentication:
    The relay sends the configured secret in the ``X-Webhook-Secret``
    header. We compare it against WEBHOOK_SECRET.

Idempotency:
    Deliveries are keyed by transaction id in the receipt store, so a
    redelivered notification is a no-op. Out-of-order deliveries are
    resolved by the ledger's freshness check.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Header, status

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes
from app.core.security import secret_matches
from app.dependencies import Engine
from app.models.subscription import Platform
from app.schemas.common import BaseResponse
from app.schemas.receipt import ReceiptSubmission
from app.schemas.rpc import ReceiptIngestResponse
from app.api.v1.receipts import to_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/{platform}",
    response_model=BaseResponse[ReceiptIngestResponse],
    status_code=status.HTTP_200_OK,
)
async def receive_receipt(
    platform: Platform,
    body: ReceiptSubmission,
    engine: Engine,
    webhook_secret: Annotated[Optional[str], Header(alias="X-Webhook-Secret")] = None,
):
    """
    Ingest a receipt pushed by a platform relay.

    Transient failures answer 503 so the relay retries; duplicate and
    stale deliveries answer 200 with ``applied=false``.
    """
    # ── Verify authorization ──────────────────────────────────────────────
    if not settings.auth_disabled and not secret_matches(webhook_secret, settings.WEBHOOK_SECRET):
        logger.warning("Unauthorized %s webhook attempt", platform.value)
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid webhook authorization",
        )

    submission = body.model_copy(update={"platform": platform.value})

    logger.info(
        "Webhook received: platform=%s transaction=%s user=%s",
        platform.value,
        submission.transaction_id,
        submission.user_id,
    )

    ingested = await engine.ingest(submission)
    return BaseResponse(data=to_response(ingested))
