"""
Receipts API Endpoints
======================

Client submission of platform purchase receipts.

Submitting the same transaction twice is safe: the second call returns
``created=false`` and ``applied=false`` without changing anything.
"""

import logging

from fastapi import APIRouter

from app.core.errors import InvalidReceiptFormat
from app.dependencies import CurrentCaller, Engine
from app.schemas.common import BaseResponse
from app.schemas.receipt import ReceiptSubmission
from app.schemas.rpc import ReceiptIngestResponse
from app.schemas.subscription import IngestResult

logger = logging.getLogger(__name__)

router = APIRouter()


def to_response(ingested: IngestResult) -> ReceiptIngestResponse:
    record = ingested.record
    return ReceiptIngestResponse(
        transaction_id=ingested.receipt.transaction_id,
        created=ingested.receipt.created,
        applied=ingested.result.applied,
        reason=ingested.result.reason,
        status=ingested.result.new_status,
        product_id=ingested.outcome.product_id,
        expiration_date=record.expiration_date if record else ingested.outcome.expiration_date,
        is_trial=record.is_trial_period if record else ingested.outcome.is_trial,
    )


@router.post(
    "",
    response_model=BaseResponse[ReceiptIngestResponse],
)
async def submit_receipt(
    body: ReceiptSubmission,
    caller: CurrentCaller,
    engine: Engine,
):
    """
    Store, verify and apply a purchase receipt.

    Errors:
    - 400 INVALID_RECEIPT_FORMAT / MALFORMED_PAYLOAD
    - 422 SIGNATURE_INVALID
    - 409 USER_PRODUCT_MISMATCH / INVALID_TRANSITION
    - 503 VERIFICATION_UNAVAILABLE / STORAGE_UNAVAILABLE (retry later)
    """
    if body.user_id is None:
        raise InvalidReceiptFormat("Missing required receipt fields: user_id", fields=["user_id"])
    caller.ensure_can_act_for(body.user_id)

    ingested = await engine.ingest(body)
    logger.info(
        "Receipt %s from %s: created=%s applied=%s status=%s",
        body.transaction_id,
        caller.label,
        ingested.receipt.created,
        ingested.result.applied,
        ingested.result.new_status.value,
    )
    return BaseResponse(data=to_response(ingested))
