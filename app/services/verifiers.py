"""
Platform Verifiers
==================

Structural parsing and authenticity checks for each receipt platform.

- app-store: remote ``verifyReceipt`` call, production first with a
  sandbox fallback on status 21007. The only network call in the engine.
- play-store: RSA PKCS#1 v1.5 / SHA-1 signature over the purchase JSON,
  checked offline against the Google Play public key.
- web: HMAC-SHA256 over the receipt JSON with the web signing secret.

Every verifier returns a normalized ``VerifiedPurchase``.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from app.config import Settings, settings as default_settings
from app.core.concurrency import retry_with_backoff
from app.core.errors import MalformedPayload, SignatureInvalid, VerificationUnavailable
from app.models.subscription import Platform, ReceiptEnvironment
from app.schemas.receipt import StoredReceipt, VerifiedPurchase

logger = logging.getLogger(__name__)


class PlatformVerifier(Protocol):
    """Parses and authenticates receipts of one platform."""

    platform: Platform

    async def verify(self, receipt: StoredReceipt) -> VerifiedPurchase:
        """
        Raises:
            MalformedPayload: The payload cannot be parsed.
            SignatureInvalid: The payload is not authentic.
            VerificationUnavailable: The check could not be completed.
        """
        ...


# =============================================================================
# Payload helpers
# =============================================================================

def ms_to_datetime(value: Any, field: str) -> datetime:
    """Parse an epoch-milliseconds value (int or numeric string)."""
    try:
        millis = int(value)
    except (TypeError, ValueError):
        raise MalformedPayload(f"{field} must be epoch milliseconds", field=field)
    if millis < 0:
        raise MalformedPayload(f"{field} must not be negative", field=field)
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedPayload(f"{field} is out of range", field=field)


def optional_ms(payload: dict[str, Any], field: str) -> Optional[datetime]:
    value = payload.get(field)
    if value in (None, ""):
        return None
    return ms_to_datetime(value, field)


def parse_json_document(raw: str, required: tuple[str, ...]) -> dict[str, Any]:
    """Decode a JSON object and check that ``required`` keys are present."""
    try:
        document = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedPayload("Receipt payload is not valid JSON")
    if not isinstance(document, dict):
        raise MalformedPayload("Receipt payload must be a JSON object")

    missing = [key for key in required if document.get(key) in (None, "")]
    if missing:
        raise MalformedPayload(
            f"Receipt payload missing fields: {', '.join(missing)}",
            fields=missing,
        )
    return document


# =============================================================================
# App Store
# =============================================================================

# Apple verifyReceipt statuses
APPLE_STATUS_OK = 0
APPLE_STATUS_MALFORMED = 21002
APPLE_STATUS_SANDBOX_RECEIPT = 21007
APPLE_RETRYABLE_STATUSES = frozenset({21005, 21009})


def _apple_status_is_retryable(code: int) -> bool:
    return code in APPLE_RETRYABLE_STATUSES or 21100 <= code <= 21199


class AppStoreVerifier:
    """Verifies App Store receipts through Apple's verifyReceipt endpoint."""

    platform = Platform.APP_STORE

    def __init__(
        self,
        settings: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.client = client
        self.sleep = sleep
        self.log = log or logger

    async def verify(self, receipt: StoredReceipt) -> VerifiedPurchase:
        blob = (receipt.receipt_data or "").strip()
        if not blob:
            raise MalformedPayload("App Store receipt is empty")
        try:
            base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError):
            raise MalformedPayload("App Store receipt is not valid base64")

        body, environment = await self._verify_with_fallback(blob, receipt.environment)
        return self._extract_purchase(body, receipt.transaction_id, environment)

    async def _verify_with_fallback(
        self,
        blob: str,
        declared: ReceiptEnvironment,
    ) -> tuple[dict[str, Any], ReceiptEnvironment]:
        if declared is ReceiptEnvironment.SANDBOX:
            body = await self._post_with_retry(self.settings.APPLE_VERIFY_URL_SANDBOX, blob)
            return body, ReceiptEnvironment.SANDBOX

        body = await self._post_with_retry(self.settings.APPLE_VERIFY_URL_PRODUCTION, blob)
        if body.get("status") == APPLE_STATUS_SANDBOX_RECEIPT:
            self.log.info("Sandbox receipt sent to production, retrying against sandbox")
            body = await self._post_with_retry(self.settings.APPLE_VERIFY_URL_SANDBOX, blob)
            return body, ReceiptEnvironment.SANDBOX
        return body, ReceiptEnvironment.PRODUCTION

    async def _post_with_retry(self, url: str, blob: str) -> dict[str, Any]:
        kwargs = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return await retry_with_backoff(
            lambda: self._post_once(url, blob),
            attempts=self.settings.VERIFY_MAX_ATTEMPTS,
            base_delay=self.settings.VERIFY_BACKOFF_BASE_SECONDS,
            max_delay=self.settings.VERIFY_BACKOFF_MAX_SECONDS,
            retry_on=(VerificationUnavailable,),
            operation="App Store verification",
            log=self.log,
            **kwargs,
        )

    async def _post_once(self, url: str, blob: str) -> dict[str, Any]:
        payload = {
            "receipt-data": blob,
            "password": self.settings.APPLE_SHARED_SECRET,
            "exclude-old-transactions": False,
        }
        try:
            if self.client is not None:
                response = await self.client.post(
                    url, json=payload, timeout=self.settings.VERIFY_TIMEOUT_SECONDS
                )
            else:
                async with httpx.AsyncClient(timeout=self.settings.VERIFY_TIMEOUT_SECONDS) as client:
                    response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise VerificationUnavailable(f"App Store unreachable: {type(e).__name__}")

        if response.status_code >= 500:
            raise VerificationUnavailable(f"App Store returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise SignatureInvalid(f"App Store rejected the request (HTTP {response.status_code})")

        try:
            body = response.json()
        except ValueError:
            raise VerificationUnavailable("App Store returned a non-JSON body")

        code = body.get("status")
        if not isinstance(code, int):
            raise VerificationUnavailable("App Store response has no status")
        if code in (APPLE_STATUS_OK, APPLE_STATUS_SANDBOX_RECEIPT):
            return body
        if _apple_status_is_retryable(code):
            raise VerificationUnavailable(f"App Store temporarily unavailable (status {code})")
        if code == APPLE_STATUS_MALFORMED:
            raise MalformedPayload("App Store could not read the receipt", apple_status=code)
        raise SignatureInvalid("App Store rejected the receipt", apple_status=code)

    def _extract_purchase(
        self,
        body: dict[str, Any],
        transaction_id: str,
        environment: ReceiptEnvironment,
    ) -> VerifiedPurchase:
        entries = list(body.get("latest_receipt_info") or [])
        entries += (body.get("receipt") or {}).get("in_app") or []
        entry = next(
            (item for item in entries if str(item.get("transaction_id")) == transaction_id),
            None,
        )
        if entry is None:
            raise SignatureInvalid(
                "Receipt does not contain the declared transaction",
                transaction_id=transaction_id,
            )

        original_id = str(entry.get("original_transaction_id") or transaction_id)
        renewal = next(
            (
                item for item in body.get("pending_renewal_info") or []
                if str(item.get("original_transaction_id")) == original_id
            ),
            {},
        )

        purchased_at = ms_to_datetime(entry.get("purchase_date_ms"), "purchase_date_ms")
        expires_at = optional_ms(entry, "expires_date_ms")
        is_trial = str(entry.get("is_trial_period", "false")).lower() == "true"

        return VerifiedPurchase(
            transaction_id=transaction_id,
            original_transaction_id=original_id,
            product_id=str(entry.get("product_id") or ""),
            purchased_at=purchased_at,
            expires_at=expires_at,
            is_trial=is_trial,
            trial_ends_at=expires_at if is_trial else None,
            canceled_at=optional_ms(entry, "cancellation_date_ms"),
            in_billing_retry=str(renewal.get("is_in_billing_retry_period", "0")) == "1",
            grace_expires_at=optional_ms(renewal, "grace_period_expires_date_ms"),
            environment=environment,
            raw=entry,
        )


# =============================================================================
# Play Store
# =============================================================================

PLAY_REQUIRED_FIELDS = (
    "orderId",
    "productId",
    "purchaseToken",
    "startTimeMillis",
    "expiryTimeMillis",
)

# paymentState values
PLAY_PAYMENT_PENDING = 0
PLAY_PAYMENT_FREE_TRIAL = 2


def load_play_public_key(value: str) -> rsa.RSAPublicKey:
    """Accept a PEM block or the bare base64 DER key from the Play Console."""
    value = value.strip()
    if value.startswith("-----BEGIN"):
        key = serialization.load_pem_public_key(value.encode())
    else:
        key = serialization.load_der_public_key(base64.b64decode(value))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Google Play public key must be an RSA key")
    return key


class PlayStoreVerifier:
    """Verifies signed Play Store purchase documents."""

    platform = Platform.PLAY_STORE

    def __init__(self, settings: Settings = default_settings, log: Optional[logging.Logger] = None):
        self.log = log or logger
        self._public_key: Optional[rsa.RSAPublicKey] = None
        if settings.GOOGLE_PLAY_PUBLIC_KEY:
            self._public_key = load_play_public_key(settings.GOOGLE_PLAY_PUBLIC_KEY)

    async def verify(self, receipt: StoredReceipt) -> VerifiedPurchase:
        document = parse_json_document(receipt.receipt_data, PLAY_REQUIRED_FIELDS)
        if not receipt.receipt_signature:
            raise MalformedPayload("Play Store receipt requires a signature", field="receipt_signature")
        try:
            signature = base64.b64decode(receipt.receipt_signature, validate=True)
        except (binascii.Error, ValueError):
            raise MalformedPayload("Play Store signature is not valid base64", field="receipt_signature")

        if self._public_key is None:
            self.log.error("GOOGLE_PLAY_PUBLIC_KEY is not configured")
            raise VerificationUnavailable("Play Store verification is not configured")

        try:
            self._public_key.verify(
                signature,
                receipt.receipt_data.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA1(),
            )
        except InvalidSignature:
            raise SignatureInvalid("Play Store signature does not match")

        return self._extract_purchase(document)

    @staticmethod
    def _extract_purchase(document: dict[str, Any]) -> VerifiedPurchase:
        order_id = str(document["orderId"])
        payment_state = document.get("paymentState")
        if payment_state is not None:
            try:
                payment_state = int(payment_state)
            except (TypeError, ValueError):
                raise MalformedPayload("paymentState must be an integer", field="paymentState")
        grace_end = optional_ms(document, "gracePeriodEndMillis")
        awaiting_payment = payment_state is not None and payment_state == PLAY_PAYMENT_PENDING
        is_trial = payment_state is not None and payment_state == PLAY_PAYMENT_FREE_TRIAL
        expires_at = ms_to_datetime(document["expiryTimeMillis"], "expiryTimeMillis")

        return VerifiedPurchase(
            transaction_id=order_id,
            # Renewals are suffixed "..N" onto the first order id
            original_transaction_id=order_id.split("..", 1)[0],
            product_id=str(document["productId"]),
            purchased_at=ms_to_datetime(document["startTimeMillis"], "startTimeMillis"),
            expires_at=expires_at,
            is_trial=is_trial,
            trial_ends_at=expires_at if is_trial else None,
            canceled_at=optional_ms(document, "userCancellationTimeMillis"),
            pending=awaiting_payment and grace_end is None,
            in_billing_retry=awaiting_payment and grace_end is not None,
            grace_expires_at=grace_end,
            environment=ReceiptEnvironment.SANDBOX if document.get("purchaseType") == 0 else None,
            raw=document,
        )


# =============================================================================
# Web
# =============================================================================

WEB_REQUIRED_FIELDS = (
    "transaction_id",
    "product_id",
    "sequence",
    "purchased_at_ms",
    "expires_at_ms",
)

WEB_STATUS_PENDING = "pending"
WEB_STATUS_BILLING_RETRY = "billing_retry"


def sign_web_receipt(receipt_data: str, secret: str) -> str:
    """Hex HMAC-SHA256 of a web receipt document."""
    return hmac.new(secret.encode("utf-8"), receipt_data.encode("utf-8"), hashlib.sha256).hexdigest()


class WebReceiptVerifier:
    """Verifies receipts issued by the web checkout."""

    platform = Platform.WEB

    def __init__(self, settings: Settings = default_settings, log: Optional[logging.Logger] = None):
        self.secret = settings.WEB_RECEIPT_SECRET
        self.log = log or logger

    async def verify(self, receipt: StoredReceipt) -> VerifiedPurchase:
        document = parse_json_document(receipt.receipt_data, WEB_REQUIRED_FIELDS)
        signature = (receipt.receipt_signature or "").strip().lower()
        if not signature:
            raise MalformedPayload("Web receipt requires a signature", field="receipt_signature")

        try:
            sequence = int(document["sequence"])
        except (TypeError, ValueError):
            raise MalformedPayload("sequence must be an integer", field="sequence")
        if sequence < 0:
            raise MalformedPayload("sequence must not be negative", field="sequence")

        if not self.secret:
            self.log.error("WEB_RECEIPT_SECRET is not configured")
            raise VerificationUnavailable("Web receipt verification is not configured")

        expected = sign_web_receipt(receipt.receipt_data, self.secret)
        if not hmac.compare_digest(signature, expected):
            raise SignatureInvalid("Web receipt signature does not match")

        status = str(document.get("status") or "").lower()
        expires_at = ms_to_datetime(document["expires_at_ms"], "expires_at_ms")
        is_trial = bool(document.get("trial", False))

        return VerifiedPurchase(
            transaction_id=str(document["transaction_id"]),
            original_transaction_id=(
                str(document["original_transaction_id"])
                if document.get("original_transaction_id") else None
            ),
            product_id=str(document["product_id"]),
            purchased_at=ms_to_datetime(document["purchased_at_ms"], "purchased_at_ms"),
            expires_at=expires_at,
            is_trial=is_trial,
            trial_ends_at=expires_at if is_trial else None,
            canceled_at=optional_ms(document, "canceled_at_ms"),
            pending=status == WEB_STATUS_PENDING,
            in_billing_retry=status == WEB_STATUS_BILLING_RETRY,
            grace_expires_at=optional_ms(document, "grace_expires_at_ms"),
            sequence=sequence,
            raw=document,
        )


def default_verifiers(
    settings: Settings = default_settings,
    client: Optional[httpx.AsyncClient] = None,
) -> dict[Platform, PlatformVerifier]:
    """One verifier per platform, configured from ``settings``."""
    return {
        Platform.APP_STORE: AppStoreVerifier(settings, client=client),
        Platform.PLAY_STORE: PlayStoreVerifier(settings),
        Platform.WEB: WebReceiptVerifier(settings),
    }
