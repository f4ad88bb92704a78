"""
Tests for the HTTP surface: webhook route, checkout routes and admin routes.
"""

import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import webhook_body, signed_headers
from paycore.api.deps import get_session_factory, get_payplus_service, get_alert_service
from paycore.main import app
from paycore.models.transaction import Transaction
from paycore.models.webhook_log import WebhookLog
from paycore.services.webhook_service import WebhookService

ADMIN = {"X-Admin-Key": "test-admin-key"}


@pytest_asyncio.fixture
async def client(session_factory, payplus, alerts):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payplus_service] = lambda: payplus
    app.dependency_overrides[get_alert_service] = lambda: alerts

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestWebhookRoute:

    @pytest.mark.asyncio
    async def test_valid_callback(self, client, payplus, session_factory, make_checkout):
        transaction = await make_checkout(page_request_uid="page-api")
        body = webhook_body("page-api")

        response = await client.post("/webhooks/payplus", content=body, headers=signed_headers(payplus, body))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["outcome"] == "applied"
        async with session_factory() as db:
            assert (await db.get(Transaction, transaction.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_invalid_signature_is_401(self, client, make_checkout):
        await make_checkout(page_request_uid="page-forged")
        body = webhook_body("page-forged")

        response = await client.post(
            "/webhooks/payplus",
            content=body,
            headers={"user-agent": "PayPlus", "hash": "forged"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_key_is_acknowledged(self, client, payplus):
        body = webhook_body("page-unknown")

        response = await client.post("/webhooks/payplus", content=body, headers=signed_headers(payplus, body))

        assert response.status_code == 200
        assert response.json()["processing_status"] == "failed"

    @pytest.mark.asyncio
    async def test_unstored_callback_is_503(self, client, payplus, session_factory, make_checkout):
        await make_checkout(page_request_uid="page-db-down")
        body = webhook_body("page-db-down")

        with patch.object(AsyncSession, "commit", new=AsyncMock(side_effect=RuntimeError("database unavailable"))):
            response = await client.post("/webhooks/payplus", content=body, headers=signed_headers(payplus, body))

        assert response.status_code == 503
        async with session_factory() as db:
            assert (await db.execute(select(func.count(WebhookLog.id)))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_processing_error_after_storing_is_acknowledged(self, client, payplus, session_factory, make_checkout):
        await make_checkout(page_request_uid="page-settle-error")
        body = webhook_body("page-settle-error")

        with patch.object(WebhookService, "settle", new=AsyncMock(side_effect=RuntimeError("arbiter down"))):
            response = await client.post("/webhooks/payplus", content=body, headers=signed_headers(payplus, body))

        assert response.status_code == 200
        assert response.json()["status"] == "error"
        async with session_factory() as db:
            assert (await db.execute(select(func.count(WebhookLog.id)))).scalar_one() == 1


class TestCheckoutRoutes:

    @pytest.mark.asyncio
    async def test_checkout_and_status(self, client, make_product):
        course = await make_product("course", "120.00")
        user = {"X-User-Id": str(uuid.uuid4())}

        response = await client.post(
            "/payments/checkout",
            json={"purchase_intents": [{"entity_type": "course", "entity_id": str(course.id)}]},
            headers=user,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["payment_page_url"].startswith("https://payments.payplus.test/")
        assert data["total_amount"] == "120.00"

        status = await client.get(f"/payments/sessions/{data['session_id']}", headers=user)
        assert status.status_code == 200
        assert status.json()["status"] == "created"
        assert status.json()["transaction_status"] == "pending"

    @pytest.mark.asyncio
    async def test_checkout_requires_user(self, client):
        response = await client.post(
            "/payments/checkout",
            json={"purchase_intents": [{"entity_type": "course", "entity_id": str(uuid.uuid4())}]},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_checkout_rejects_unknown_product(self, client):
        response = await client.post(
            "/payments/checkout",
            json={"purchase_intents": [{"entity_type": "course", "entity_id": str(uuid.uuid4())}]},
            headers={"X-User-Id": str(uuid.uuid4())},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_provider_down_is_502_with_session(self, client, payplus_api, make_product):
        course = await make_product()
        payplus_api.link_status = 503

        response = await client.post(
            "/payments/checkout",
            json={"purchase_intents": [{"entity_type": "course", "entity_id": str(course.id)}]},
            headers={"X-User-Id": str(uuid.uuid4())},
        )

        assert response.status_code == 502
        assert response.json()["detail"]["session_id"]

    @pytest.mark.asyncio
    async def test_session_of_other_user_is_404(self, client, make_checkout):
        transaction = await make_checkout()
        response = await client.get(
            f"/payments/sessions/{transaction.session_id}",
            headers={"X-User-Id": str(uuid.uuid4())},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_payment_methods(self, client, session_factory):
        from paycore.services.customer_token_service import CustomerTokenService

        user_id = uuid.uuid4()
        async with session_factory() as db:
            token = await CustomerTokenService(db).capture_from_payload(
                user_id, {"token": "tok_listed_0001", "card": {"last4": "4444", "brand": "visa"}},
            )
            await db.commit()
        user = {"X-User-Id": str(user_id)}

        listed = await client.get("/payments/methods", headers=user)
        assert listed.status_code == 200
        assert listed.json()["payment_methods"][0]["card_mask"] == "****4444"
        assert "token_value" not in listed.json()["payment_methods"][0]

        removed = await client.delete(f"/payments/methods/{token.id}", headers=user)
        assert removed.status_code == 200
        assert (await client.get("/payments/methods", headers=user)).json()["payment_methods"] == []

        missing = await client.post(f"/payments/methods/{token.id}/default", headers=user)
        assert missing.status_code == 404


class TestAdminRoutes:

    @pytest.mark.asyncio
    async def test_requires_admin_key(self, client, make_checkout):
        transaction = await make_checkout()
        url = f"/admin/payments/transactions/{transaction.id}/resolve"

        assert (await client.post(url, json={"status": "completed"})).status_code == 401
        assert (await client.post(url, json={"status": "completed"}, headers={"X-Admin-Key": "wrong"})).status_code == 401

    @pytest.mark.asyncio
    async def test_manual_resolution_and_refund(self, client, session_factory, make_checkout):
        transaction = await make_checkout()

        resolved = await client.post(
            f"/admin/payments/transactions/{transaction.id}/resolve",
            json={"status": "completed"},
            headers=ADMIN,
        )
        assert resolved.status_code == 200
        assert resolved.json()["resolution_method"] == "manual"

        conflicting = await client.post(
            f"/admin/payments/transactions/{transaction.id}/resolve",
            json={"status": "failed", "reason": "operator error"},
            headers=ADMIN,
        )
        assert conflicting.status_code == 409

        refunded = await client.post(
            f"/admin/payments/transactions/{transaction.id}/refund",
            json={"reason": "Customer request"},
            headers=ADMIN,
        )
        assert refunded.status_code == 200
        assert refunded.json()["transaction_status"] == "refunded"

        again = await client.post(
            f"/admin/payments/transactions/{transaction.id}/refund",
            json={"reason": "Twice"},
            headers=ADMIN,
        )
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_404(self, client):
        response = await client.post(
            f"/admin/payments/transactions/{uuid.uuid4()}/resolve",
            json={"status": "completed"},
            headers=ADMIN,
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_poll_endpoints(self, client, make_checkout):
        transaction = await make_checkout()

        single = await client.post(f"/admin/payments/transactions/{transaction.id}/poll", headers=ADMIN)
        assert single.status_code == 200
        assert single.json()["result"]["attempts"] == 1

        missing = await client.post(f"/admin/payments/transactions/{uuid.uuid4()}/poll", headers=ADMIN)
        assert missing.status_code == 404

        batch = await client.post("/admin/payments/poll", headers=ADMIN)
        assert batch.status_code == 200
        # Still inside the grace period
        assert batch.json()["summary"]["selected"] == 0

    @pytest.mark.asyncio
    async def test_webhook_logs_and_replay(self, client, payplus, make_checkout):
        await make_checkout(page_request_uid="page-logs")
        body = webhook_body("page-logs")
        await client.post("/webhooks/payplus", content=body, headers=signed_headers(payplus, body))

        logs = await client.get("/admin/payments/webhook-logs", params={"page_request_uid": "page-logs"}, headers=ADMIN)
        assert logs.status_code == 200
        entries = logs.json()["webhook_logs"]
        assert len(entries) == 1
        assert entries[0]["resolution_outcome"] == "applied"

        replay = await client.post(f"/admin/payments/webhook-logs/{entries[0]['id']}/replay", headers=ADMIN)
        assert replay.status_code == 200
        assert replay.json()["outcome"] == "duplicate"

        missing = await client.post(f"/admin/payments/webhook-logs/{uuid.uuid4()}/replay", headers=ADMIN)
        assert missing.status_code == 404
