"""
API Tests
=========

Tests for the RPC, receipt and webhook endpoints:
- response envelopes and error codes
- service key vs. end-user token authorization
"""

import uuid

import pytest
from httpx import AsyncClient

from app.core.security import create_access_token

from conftest import SERVICE_KEY, WEBHOOK_SECRET, web_submission

SERVICE = {"X-Service-Key": SERVICE_KEY}


def bearer(user_id: uuid.UUID) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


class TestValidateSubscriptionStatus:
    @pytest.mark.asyncio
    async def test_new_user_reads_none(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/validate_subscription_status",
            json={"user_id": str(user_id)},
            headers=SERVICE,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["status"] == "NONE"
        assert body["data"]["has_active_subscription"] is False

    @pytest.mark.asyncio
    async def test_user_reads_own_status(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/validate_subscription_status",
            json={"user_id": str(user_id)},
            headers=bearer(user_id),
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_user_cannot_read_another_user(self, client: AsyncClient, user_id, other_user_id):
        response = await client.post(
            "/api/v1/rpc/validate_subscription_status",
            json={"user_id": str(other_user_id)},
            headers=bearer(user_id),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_requires_credentials(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/validate_subscription_status",
            json={"user_id": str(user_id)},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_service_key(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/validate_subscription_status",
            json={"user_id": str(user_id)},
            headers={"X-Service-Key": "guess"},
        )

        assert response.status_code == 401


class TestFeatureAccess:
    @pytest.mark.asyncio
    async def test_denied_without_subscription(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/check_feature_access",
            json={"user_id": str(user_id), "feature_name": "unlimited_reviews"},
            headers=bearer(user_id),
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"granted": False, "reason": "no-subscription"}

    @pytest.mark.asyncio
    async def test_granted_after_receipt(self, client: AsyncClient, user_id):
        await client.post("/api/v1/receipts", json=web_submission(user_id).model_dump(mode="json"), headers=SERVICE)

        response = await client.post(
            "/api/v1/rpc/check_feature_access",
            json={"user_id": str(user_id), "feature_name": "unlimited_reviews"},
            headers=bearer(user_id),
        )

        assert response.json()["data"] == {"granted": True, "reason": "entitled"}

    @pytest.mark.asyncio
    async def test_track_usage(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/track_feature_usage",
            json={"user_id": str(user_id), "feature_name": "unlimited_reviews"},
            headers=bearer(user_id),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["usage_count"] == 1
        assert data["remaining_free_uses"] == 2


class TestLogSubscriptionEvent:
    @pytest.mark.asyncio
    async def test_logs_event(self, client: AsyncClient, engine, user_id):
        response = await client.post(
            "/api/v1/rpc/log_subscription_event",
            json={"user_id": str(user_id), "event_type": "purchase_initiated", "event_data": {"source": "paywall"}},
            headers=bearer(user_id),
        )

        assert response.status_code == 200
        events = await engine.event_log.list_for_user(user_id, event_type="purchase_initiated")
        assert str(events[0].id) == response.json()["data"]["event_id"]
        assert events[0].event_data == {"source": "paywall"}

    @pytest.mark.asyncio
    async def test_unknown_user(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/rpc/log_subscription_event",
            json={"user_id": str(uuid.uuid4()), "event_type": "purchase_initiated"},
            headers=SERVICE,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "FOREIGN_KEY_VIOLATION"

    @pytest.mark.asyncio
    async def test_event_type_format(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/log_subscription_event",
            json={"user_id": str(user_id), "event_type": "Purchase Initiated!"},
            headers=SERVICE,
        )

        assert response.status_code == 422


class TestUpdateSubscriptionStatus:
    @pytest.mark.asyncio
    async def test_service_override(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/update_subscription_status",
            json={
                "user_id": str(user_id),
                "product_id": "premium_monthly",
                "new_status": "ACTIVE",
                "expiration_date": "2030-01-01T00:00:00Z",
            },
            headers=SERVICE,
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"previous_status": "NONE", "new_status": "ACTIVE"}

    @pytest.mark.asyncio
    async def test_users_cannot_override(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/update_subscription_status",
            json={"user_id": str(user_id), "product_id": "premium_monthly", "new_status": "ACTIVE"},
            headers=bearer(user_id),
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_illegal_edge(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/update_subscription_status",
            json={"user_id": str(user_id), "product_id": "premium_monthly", "new_status": "GRACE"},
            headers=SERVICE,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_none_is_not_a_target(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/rpc/update_subscription_status",
            json={"user_id": str(user_id), "product_id": "premium_monthly", "new_status": "NONE"},
            headers=SERVICE,
        )

        assert response.status_code == 422


@pytest.mark.asyncio
async def test_expiration_sweep_endpoint(client: AsyncClient):
    response = await client.post("/api/v1/rpc/expire_lapsed_subscriptions", headers=SERVICE)

    assert response.status_code == 200
    assert response.json()["data"]["expired"] == 0


class TestReceipts:
    @pytest.mark.asyncio
    async def test_submit(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/receipts",
            json=web_submission(user_id).model_dump(mode="json"),
            headers=bearer(user_id),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["created"] is True
        assert data["applied"] is True
        assert data["status"] == "ACTIVE"
        assert data["expiration_date"].startswith("2025-12-31")

    @pytest.mark.asyncio
    async def test_resubmit(self, client: AsyncClient, user_id):
        payload = web_submission(user_id).model_dump(mode="json")
        await client.post("/api/v1/receipts", json=payload, headers=SERVICE)

        response = await client.post("/api/v1/receipts", json=payload, headers=SERVICE)

        data = response.json()["data"]
        assert data["created"] is False
        assert data["applied"] is False
        assert data["reason"] == "stale-receipt"

    @pytest.mark.asyncio
    async def test_forged_signature(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/receipts",
            json=web_submission(user_id, secret="forged").model_dump(mode="json"),
            headers=SERVICE,
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_receipt_reuse(self, client: AsyncClient, user_id, other_user_id):
        await client.post("/api/v1/receipts", json=web_submission(user_id).model_dump(mode="json"), headers=SERVICE)

        response = await client.post(
            "/api/v1/receipts",
            json=web_submission(other_user_id).model_dump(mode="json"),
            headers=SERVICE,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "USER_PRODUCT_MISMATCH"

    @pytest.mark.asyncio
    async def test_missing_user(self, client: AsyncClient, user_id):
        payload = web_submission(user_id).model_dump(mode="json")
        payload["user_id"] = None

        response = await client.post("/api/v1/receipts", json=payload, headers=SERVICE)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_RECEIPT_FORMAT"


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_requires_secret(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/webhooks/web",
            json=web_submission(user_id).model_dump(mode="json"),
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_delivery(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/webhooks/web",
            json=web_submission(user_id).model_dump(mode="json"),
            headers={"X-Webhook-Secret": WEBHOOK_SECRET},
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_unknown_platform(self, client: AsyncClient, user_id):
        response = await client.post(
            "/api/v1/webhooks/blackberry",
            json=web_submission(user_id).model_dump(mode="json"),
            headers={"X-Webhook-Secret": WEBHOOK_SECRET},
        )

        assert response.status_code == 422
