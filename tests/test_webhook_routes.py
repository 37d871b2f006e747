import json
import time

from api.v1.infra.webhooks.signature import SIGNATURE_HEADER, compute_signature

SECRET = "whsec_route_test"


def billing_event(event_id="evt_1", event_type="customer.subscription.updated"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": "sub_1", "status": "active"}},
    }


def signed_headers(body: bytes, secret: str = SECRET) -> dict[str, str]:
    timestamp = int(time.time())
    return {
        SIGNATURE_HEADER: f"t={timestamp},v1={compute_signature(secret, timestamp, body)}",
        "Content-Type": "application/json",
    }


async def test_receive_event(async_client):
    response = await async_client.post("/v1/webhooks/billing", json=billing_event())

    assert response.status_code == 200
    receipt = response.json()["data"]
    assert receipt["is_new"] is True
    assert receipt["processed"] is True


async def test_redelivery_is_acknowledged_once(async_client):
    first = (
        await async_client.post("/v1/webhooks/billing", json=billing_event())
    ).json()["data"]
    second = (
        await async_client.post("/v1/webhooks/billing", json=billing_event())
    ).json()["data"]

    assert second["event_id"] == first["event_id"]
    assert second["is_new"] is False
    assert second["processed"] is True


async def test_invalid_payload(async_client):
    response = await async_client.post(
        "/v1/webhooks/billing",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422

    response = await async_client.post("/v1/webhooks/billing", json={"type": "x"})
    assert response.status_code == 422
    assert response.json()["error"]["message"] == "Invalid webhook payload"


async def test_signature_required_when_secret_configured(async_client, test_settings):
    test_settings.webhook_signing_secret = SECRET
    body = json.dumps(billing_event()).encode()

    response = await async_client.post(
        "/v1/webhooks/billing",
        content=body,
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 401

    response = await async_client.post(
        "/v1/webhooks/billing", content=body, headers=signed_headers(body, "wrong")
    )
    assert response.status_code == 401

    response = await async_client.post(
        "/v1/webhooks/billing", content=body, headers=signed_headers(body)
    )
    assert response.status_code == 200
    assert response.json()["data"]["is_new"] is True


class TestAdminEndpoints:
    async def test_require_service_credentials(self, async_client, auth_headers):
        for path in ("/v1/admin/webhooks/retry", "/v1/admin/webhooks/purge"):
            response = await async_client.post(path, headers=auth_headers)
            assert response.status_code == 403

    async def test_retry_with_nothing_pending(self, async_client, service_headers):
        response = await async_client.post(
            "/v1/admin/webhooks/retry", headers=service_headers
        )

        assert response.status_code == 200
        assert response.json()["data"] == {
            "attempted": 0,
            "succeeded": 0,
            "failed": 0,
            "event_ids": [],
        }

    async def test_purge(self, async_client, service_headers):
        await async_client.post("/v1/webhooks/billing", json=billing_event())

        response = await async_client.post(
            "/v1/admin/webhooks/purge", params={"days": 30}, headers=service_headers
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"retention_days": 30, "count": 0}

    async def test_purge_rejects_zero_days(self, async_client, service_headers):
        response = await async_client.post(
            "/v1/admin/webhooks/purge", params={"days": 0}, headers=service_headers
        )
        assert response.status_code == 422
