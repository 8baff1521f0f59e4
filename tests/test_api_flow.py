# tests/test_api_flow.py
from __future__ import annotations

from fastapi.testclient import TestClient

from quoteflow.main import create_app


def _headers(tenant_id: int, role: str = "contractor") -> dict[str, str]:
    return {"X-Tenant-Id": str(tenant_id), "X-User-Id": "11", "X-User-Role": role}


def _client() -> TestClient:
    return TestClient(create_app())


def test_quote_to_deposit_over_http(tenant_id):
    client = _client()
    h = _headers(tenant_id)

    r = client.post(
        "/api/pricing/schemes",
        json={"name": "Turnkey", "definition": {"type": "turnkey", "rates": {"walls": "7.50"}}},
        headers=h,
    )
    assert r.status_code == 200, r.text
    scheme_id = r.json()["id"]
    assert r.json()["scheme_type"] == "turnkey"

    r = client.put("/api/pricing/settings", json={"markup_percent": "0", "deposit_percent": "50"}, headers=h)
    assert r.status_code == 200, r.text

    r = client.post(
        "/api/quotes",
        json={
            "pricing_scheme_id": scheme_id,
            "areas": [
                {"id": "living", "name": "Living Room", "surfaces": [{"id": "walls", "category": "walls", "quantity": "400"}]}
            ],
            "customer": {"name": "Dana Whitfield", "email": "dana@example.com"},
        },
        headers=h,
    )
    assert r.status_code == 200, r.text
    quote = r.json()
    assert quote["status"] == "draft"
    assert quote["total"] == "3000.00"
    qid = quote["id"]

    assert client.post(f"/api/quotes/{qid}/send", headers=h).json()["status"] == "sent"

    customer = _headers(tenant_id, role="customer")
    assert client.post(f"/api/quotes/{qid}/view", headers=customer).json()["status"] == "viewed"

    r = client.post(f"/api/quotes/{qid}/accept", json={}, headers=customer)
    assert r.status_code == 200, r.text
    job = r.json()["job"]
    assert job["status"] == "accepted"

    ref = f"cs_http_{tenant_id}"
    r = client.post(
        "/api/payments", json={"kind": "deposit", "reference_id": ref, "quote_id": qid}, headers=customer
    )
    assert r.status_code == 200, r.text
    assert r.json()["amount"] == "1500.00"

    event = {"reference_id": ref, "amount": "1500.00", "currency": "usd", "metadata": {"quote_id": qid}}
    r = client.post("/api/payments/webhooks/succeeded", json=event)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["applied"] is True
    assert body["job"]["status"] == "deposit_paid"

    r = client.post("/api/payments/webhooks/succeeded", json=event)
    assert r.json()["idempotent_replay"] is True

    r = client.get("/api/audit", params={"entity_type": "job", "action": "deposit_verified"}, headers=h)
    assert r.status_code == 200
    assert len(r.json()) == 1

    r = client.get(f"/api/jobs/{job['id']}", headers=h)
    assert r.json()["balance_remaining"] == "1500.00"


def test_domain_errors_render_as_json(tenant_id):
    client = _client()
    h = _headers(tenant_id)

    r = client.get("/api/quotes/999999999", headers=h)
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"
    assert "X-Request-ID" in r.headers

    r = client.post(
        "/api/payments/webhooks/succeeded",
        json={"reference_id": f"cs_missing_{tenant_id}", "amount": "10.00"},
    )
    assert r.status_code == 404
    assert r.json()["error"] == "payment_record_not_found"


def test_identity_headers_enforced(tenant_id):
    client = _client()

    assert client.get("/api/quotes").status_code == 401
    assert client.get("/api/quotes", headers=_headers(tenant_id, role="customer")).status_code == 403
    assert client.get("/api/quotes", headers=_headers(tenant_id)).status_code == 200


def test_invalid_transition_is_409(tenant_id):
    client = _client()
    h = _headers(tenant_id)
    scheme = client.post(
        "/api/pricing/schemes",
        json={"name": "Turnkey", "definition": {"type": "turnkey", "rates": {"walls": "2"}}},
        headers=h,
    ).json()
    quote = client.post(
        "/api/quotes",
        json={
            "pricing_scheme_id": scheme["id"],
            "areas": [{"id": "a", "name": "A", "surfaces": [{"id": "w", "category": "walls", "quantity": "10"}]}],
        },
        headers=h,
    ).json()

    r = client.post(f"/api/quotes/{quote['id']}/accept", json={}, headers=h)
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"
    assert r.json()["from"] == "draft"


def test_health():
    r = _client().get("/api/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
