"""
HTTP surface:
- gateway headers or Bearer JWT identify the caller, nothing else does
- domain errors map to their status and error code (402 for payment setup)
- webhook answers 400 only for unverifiable payloads
- internal routes require the internal API key
"""
from datetime import timedelta

import pytest

from auth import create_access_token
from conftest import seed_record, stripe_event


def gateway_headers(user_id="user-1", username="one", email="one@example.com"):
    return {
        "x-gateway-authenticated": "true",
        "x-user-id": user_id,
        "x-username": username,
        "x-user-email": email,
        "x-roles": "USER",
    }


INTERNAL = {"x-internal-api-key": "internal-secret"}


def test_requests_without_identity_are_rejected(client):
    response = client.get("/api/v1/payments/subscription")
    assert response.status_code == 401
    assert response.json()["error"] == "AUTHENTICATION_REQUIRED"

    # Identity headers without the gateway flag are not trusted
    response = client.get("/api/v1/payments/subscription", headers={"x-user-id": "user-1"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_subscription_with_gateway_headers(client, services, gateway):
    await seed_record(services, gateway, plan="PRO", addons=("promotedBeat",))

    response = client.get("/api/v1/payments/subscription", headers=gateway_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["planType"] == "PRO"
    assert body["activeAddOns"] == ["promotedBeat"]
    assert "schedule_ref" not in str(body)


@pytest.mark.asyncio
async def test_bearer_token_identifies_caller(client, services, gateway):
    await seed_record(services, gateway, user_id="user-42", plan="STUDIO")
    token = create_access_token({"id": "user-42", "username": "fortytwo"})

    response = client.get("/api/v1/payments/subscription", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["planType"] == "STUDIO"


def test_expired_and_invalid_tokens(client):
    expired = create_access_token({"id": "user-1"}, expires_delta=timedelta(seconds=-5))
    response = client.get("/api/v1/payments/subscription", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401
    assert response.json()["error"] == "TOKEN_EXPIRED"

    response = client.get("/api/v1/payments/subscription", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 403
    assert response.json()["error"] == "INVALID_TOKEN"


def test_missing_subscription_is_404(client):
    response = client.get("/api/v1/payments/subscription", headers=gateway_headers(user_id="nobody"))
    assert response.status_code == 404
    assert response.json()["error"] == "SUBSCRIPTION_NOT_FOUND"


def test_checkout_returns_session(client, gateway):
    response = client.post(
        "/api/v1/payments/checkout", json={"planType": "PRO"}, headers=gateway_headers(user_id="user-8")
    )

    assert response.status_code == 200
    assert response.json()["sessionId"].startswith("cs_")
    assert gateway.called("get_or_create_customer")[0][1] == "one@example.com"


def test_checkout_invalid_plan_is_400(client):
    response = client.post("/api/v1/payments/checkout", json={"planType": "GOLD"}, headers=gateway_headers())
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PLAN"


def test_checkout_body_validation_is_422(client):
    response = client.post("/api/v1/payments/checkout", json={}, headers=gateway_headers())
    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_plan_change_upgrade(client, services, gateway):
    await seed_record(services, gateway, plan="PRO", addons=("decoratives",))

    response = client.put(
        "/api/v1/payments/subscription",
        json={"planType": "STUDIO", "prorationBehavior": "always-invoice"},
        headers=gateway_headers(),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["change"] == {"type": "upgrade", "from": "PRO", "to": "STUDIO"}
    assert body["removedAddOns"]["names"] == ["decoratives"]
    assert body["proration"] == {"behavior": "always_invoice"}


@pytest.mark.asyncio
async def test_plan_change_downgrade_reports_effective_date(client, services, gateway):
    await seed_record(services, gateway, plan="STUDIO")

    response = client.put("/api/v1/payments/subscription", json={"planType": "FREE"}, headers=gateway_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["change"]["type"] == "downgrade"
    assert body["change"]["effectiveDate"]
    assert body["subscription"]["planType"] == "STUDIO"
    assert body["subscription"]["pendingChange"]["targetPlan"] == "FREE"


@pytest.mark.asyncio
async def test_plan_change_without_payment_method_is_402(client, services, gateway):
    await seed_record(services, gateway, plan="FREE")
    gateway.has_default_method = False

    response = client.put("/api/v1/payments/subscription", json={"planType": "PRO"}, headers=gateway_headers())

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "PAYMENT_METHOD_REQUIRED"
    assert body["setupSessionId"] in gateway.setup_sessions

    gateway.finish_setup(body["setupSessionId"])
    response = client.post(
        "/api/v1/payments/subscription/complete-upgrade",
        json={"sessionId": body["setupSessionId"]},
        headers=gateway_headers(),
    )
    assert response.status_code == 200
    assert response.json()["change"]["to"] == "PRO"


@pytest.mark.asyncio
async def test_cancel_subscription_routes(client, services, gateway):
    await seed_record(services, gateway, plan="PRO")

    response = client.delete("/api/v1/payments/subscription", headers=gateway_headers())
    assert response.status_code == 200
    assert response.json()["subscription"]["cancelAtPeriodEnd"] is True

    response = client.delete("/api/v1/payments/subscription?immediate=true", headers=gateway_headers())
    assert response.status_code == 200
    assert response.json()["subscription"]["planType"] == "FREE"


@pytest.mark.asyncio
async def test_addon_routes(client, services, gateway):
    await seed_record(services, gateway, plan="FREE")

    listing = client.get("/api/v1/payments/addons", headers=gateway_headers()).json()
    assert {a["name"] for a in listing["addOns"]} >= {"decoratives", "promotedBeat", "extraDashboard"}

    response = client.post(
        "/api/v1/payments/addons/purchase", json={"addOnName": "promotedBeat"}, headers=gateway_headers()
    )
    assert response.status_code == 400
    assert response.json()["error"] == "ADDON_NOT_AVAILABLE"

    response = client.post(
        "/api/v1/payments/addons/purchase", json={"addOnName": "decoratives"}, headers=gateway_headers()
    )
    assert response.status_code == 200
    assert response.json()["subscription"]["activeAddOns"] == ["decoratives"]

    response = client.delete("/api/v1/payments/addons/decoratives", headers=gateway_headers())
    assert response.status_code == 200
    assert response.json()["subscription"]["activeAddOns"] == []

    response = client.delete("/api/v1/payments/addons/decoratives", headers=gateway_headers())
    assert response.status_code == 404


def test_webhook_rejects_invalid_signature(client):
    response = client.post(
        "/api/v1/payments/webhook",
        content=stripe_event("invoice.paid", {"id": "in_1"}),
        headers={"Stripe-Signature": "invalid"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_WEBHOOK"


def test_webhook_acknowledges_unknown_events(client):
    response = client.post(
        "/api/v1/payments/webhook",
        content=stripe_event("customer.created", {"id": "cus_1"}),
        headers={"Stripe-Signature": "t=1,v1=abc"},
    )
    assert response.status_code == 200
    assert response.json()["received"] is True


def test_internal_routes_require_key(client, space):
    body = {"userId": "user-9", "username": "nine", "email": "nine@example.com"}

    response = client.post("/api/v1/payments/internal/free-contract", json=body)
    assert response.status_code == 401
    assert response.json()["error"] == "INVALID_INTERNAL_KEY"

    response = client.post(
        "/api/v1/payments/internal/free-contract", json=body, headers={"x-internal-api-key": "wrong"}
    )
    assert response.status_code == 401

    response = client.post("/api/v1/payments/internal/free-contract", json=body, headers=INTERNAL)
    assert response.status_code == 201
    assert response.json()["subscription"]["planType"] == "FREE"
    space.upsert_contract.assert_awaited_once_with("user-9", "nine", "FREE", [])


def test_internal_user_events_route(client, space):
    response = client.post(
        "/api/v1/payments/internal/user-events",
        content=b'{"type": "USER_DELETED", "payload": {"userId": "user-3"}}',
        headers=INTERNAL,
    )
    assert response.status_code == 200
    assert response.json()["handled"] is True
    space.delete_contract.assert_awaited_once_with("user-3")

    response = client.post("/api/v1/payments/internal/user-events", content=b"{}")
    assert response.status_code == 401
