import pytest
from fastapi.testclient import TestClient

from subscription_pricing.api import state
from subscription_pricing.api.main import app
from subscription_pricing.services.quotation_service import QuotationStore


@pytest.fixture
def client(store, settings):
    state.reset(store, settings, QuotationStore())
    return TestClient(app)


def test_root_and_status(client):
    assert client.get("/").json()["status"] == "online"
    status = client.get("/system/status").json()
    assert status["tiers_count"] == 4
    assert status["master_currency"] == "GBP"


def test_resolved_tier_price(client):
    usd = client.get("/api/admin/subscription-tiers/tier-growth/resolved-price", params={"currency": "USD"}).json()
    assert usd["price"]["price_monthly"] == 24900
    assert usd["is_fallback"] is False

    eur = client.get("/api/admin/subscription-tiers/tier-growth/resolved-price", params={"currency": "EUR"}).json()
    assert eur["price"]["price_monthly"] == 19900
    assert eur["price"]["currency_code"] == "GBP"
    assert eur["is_fallback"] is True


def test_unknown_tier_is_404(client):
    response = client.get("/api/admin/subscription-tiers/tier-missing/pricing")
    assert response.status_code == 404


def test_pack_pricing_total_is_server_derived(client):
    response = client.put("/api/admin/addon-packs/pack-20/pricing", json={
        "tier_id": "tier-growth", "currency_code": "GBP", "price_per_inspection": 500,
    })
    assert response.status_code == 200
    assert response.json()["total_pack_price"] == 10000

    client.put("/api/admin/addon-packs/pack-20", json={"inspection_quantity": 30})
    rows = client.get("/api/admin/addon-packs/pack-20/pricing").json()
    growth_gbp = next(r for r in rows if r["tier_id"] == "tier-growth" and r["currency_code"] == "GBP")
    assert growth_gbp["total_pack_price"] == 15000


def test_invalid_tier_is_400(client):
    response = client.post("/api/admin/subscription-tiers", json={
        "name": "Broken", "code": "broken", "tier_order": 9, "included_inspections": 10,
        "base_price_monthly": -100, "base_price_annual": 0,
    })
    assert response.status_code == 400
    assert "'base_price_monthly' cannot be negative" in response.json()["detail"]["errors"]


def test_currency_delete_conflict_then_cascade(client):
    response = client.delete("/api/admin/currencies/USD")
    assert response.status_code == 409
    assert "tier_pricing" in response.json()["detail"]["dependents"]

    response = client.delete("/api/admin/currencies/USD", params={"cascade": True})
    assert response.status_code == 200
    assert response.json()["removed"]["tier_pricing"] == 3


def test_pricing_preview_display(client):
    preview = client.get("/api/admin/pricing-preview", params={"currency": "USD", "display": True}).json()
    assert [p["id"] for p in preview["addon_packs"]] == ["pack-10", "pack-20"]
    growth = next(t for t in preview["tiers"] if t["id"] == "tier-growth")
    assert growth["monthly"] == "$249.00"

    raw = client.get("/api/admin/pricing-preview", params={"currency": "EUR"}).json()
    assert raw["addon_packs"] == []
    assert all(t["price"]["source"] == "base_price" for t in raw["tiers"])


def test_calculate_endpoint(client):
    response = client.post("/api/pricing/calculate", json={"inspection_count": 40, "currency_code": "GBP"})
    assert response.status_code == 200
    body = response.json()
    assert body["tier_id"] == "tier-starter"
    assert body["total"] == 21900
    assert body["upgrade_recommendation"]["tier_id"] == "tier-growth"

    summary = client.post(
        "/api/pricing/calculate", params={"summary": True},
        json={"inspection_count": 70, "currency_code": "GBP"},
    ).json()
    assert summary["total"] == "£299.00"

    bad = client.post("/api/pricing/calculate", json={
        "inspection_count": 40, "currency_code": "GBP", "billing_period": "weekly",
    })
    assert bad.status_code == 400


def test_bundle_and_module_admin(client):
    module = client.post("/api/admin/modules", json={"name": "Heatmaps", "module_key": "heatmaps"}).json()
    response = client.put("/api/admin/module-bundles/bundle-insights/modules", json={
        "module_ids": ["mod-api", module["id"]],
    })
    assert sorted(response.json()["module_ids"]) == sorted(["mod-api", module["id"]])

    response = client.put(f"/api/admin/modules/{module['id']}/pricing", json={
        "currency_code": "GBP", "price_monthly": 1500, "price_annual": 15000,
    })
    assert response.status_code == 200


def test_quotation_flow(client):
    created = client.post("/api/quotations", json={
        "organization_id": "org-acme", "requested_inspections": 2500, "currency": "GBP",
    })
    assert created.status_code == 201
    request_id = created.json()["id"]

    quote = client.post(f"/api/admin/quotations/{request_id}/quote", json={
        "admin_id": "admin-1",
        "quoted_price": 450000,
        "quoted_inspections": 2500,
        "admin_notes": "internal margin 30%",
        "customer_notes": "Includes onboarding",
    })
    assert quote.status_code == 200
    assert quote.json()["admin_notes"] == "internal margin 30%"

    view = client.get(f"/api/quotations/{request_id}").json()
    assert view["status"] == "quoted"
    assert "admin_notes" not in view["quotation"]
    assert "internal margin" not in str(view)

    accepted = client.post(f"/api/quotations/{request_id}/accept", json={"customer_id": "cust-1"})
    assert accepted.json()["status"] == "accepted"

    requote = client.post(f"/api/admin/quotations/{request_id}/quote", json={
        "admin_id": "admin-1", "quoted_price": 1, "quoted_inspections": 2500,
    })
    assert requote.status_code == 409

    details = client.get(f"/api/admin/quotations/{request_id}").json()
    assert [e["action"] for e in details["activity"]] == ["requested", "quote_created", "accepted"]

    stats = client.get("/api/admin/quotations/stats").json()
    assert stats["accepted"] == 1

    export = client.get("/api/admin/quotations/export")
    assert export.headers["content-type"].startswith("text/csv")
    assert request_id in export.text


def test_unknown_quotation_is_404(client):
    assert client.get("/api/quotations/nope").status_code == 404


def test_preview_currency_checks(client):
    assert client.get("/api/pricing/preview", params={"currency": "ZZZ"}).status_code == 404
    assert client.get("/api/admin/pricing-preview", params={"currency": "ZZZ"}).status_code == 404

    client.put("/api/admin/currencies/EUR", json={"is_active": False})
    assert client.get("/api/pricing/preview", params={"currency": "EUR"}).status_code == 400
    assert client.get("/api/admin/pricing-preview", params={"currency": "EUR"}).status_code == 200


def test_calculate_reports_mixed_currency(client):
    body = client.post("/api/pricing/calculate", json={"inspection_count": 50, "currency_code": "EUR"}).json()
    assert body["total"] == 0
    assert body["mixed_currency"] is True
    assert body["other_currency_totals"] == {"GBP": 19900}

    usd = client.post("/api/pricing/calculate", json={"inspection_count": 50, "currency_code": "USD"}).json()
    assert usd["mixed_currency"] is False


def test_quotation_currency_must_exist(client):
    response = client.post("/api/quotations", json={
        "organization_id": "org-acme", "requested_inspections": 2500, "currency": "QQQ",
    })
    assert response.status_code == 400

    created = client.post("/api/quotations", json={
        "organization_id": "org-acme", "requested_inspections": 2500, "currency": "GBP",
    }).json()
    assert client.delete("/api/admin/currencies/GBP", params={"cascade": True}).status_code == 409
    assert client.get(f"/api/quotations/{created['id']}").status_code == 200


def test_customer_view_marks_quote_viewed(client):
    request_id = client.post("/api/quotations", json={
        "organization_id": "org-acme", "requested_inspections": 2500, "currency": "GBP",
    }).json()["id"]

    assert client.get(f"/api/quotations/{request_id}").json()["viewed_by_customer_at"] is None

    client.post(f"/api/admin/quotations/{request_id}/quote", json={
        "admin_id": "admin-1", "quoted_price": 450000, "quoted_inspections": 2500,
    })
    first = client.get(f"/api/quotations/{request_id}").json()["viewed_by_customer_at"]
    assert first is not None
    assert client.get(f"/api/quotations/{request_id}").json()["viewed_by_customer_at"] == first


def test_organisation_pricing_routes(client):
    response = client.put("/api/admin/instances/org-acme", json={
        "registration_currency": "GBP", "current_tier_id": "tier-growth", "override_monthly_fee": 15000,
    })
    assert response.status_code == 200

    price = client.get("/api/admin/instances/org-acme/price").json()
    assert (price["amount"], price["source"]) == (15000, "instance_override")

    assert client.put("/api/admin/instances/org-acme/modules/mod-api", json={"is_enabled": True}).status_code == 200
    client.put("/api/admin/instances/org-acme/modules/mod-api/override", json={"override_monthly_price": 1000})
    module = client.get("/api/admin/instances/org-acme/modules/mod-api/price").json()
    assert module["available"] is True
    assert module["price"]["amount"] == 1000

    quote = client.post("/api/pricing/calculate", json={
        "inspection_count": 50, "currency_code": "GBP", "organization_id": "org-acme",
    }).json()
    assert quote["total"] == 16000

    details = client.get("/api/admin/instances/org-acme").json()
    assert [m["module_id"] for m in details["module_overrides"]] == ["mod-api"]

    assert client.put("/api/admin/instances/org-acme/bundles/bundle-missing").status_code == 404
    assert client.delete("/api/admin/instances/org-acme").status_code == 200
    assert client.get("/api/admin/instances/org-acme/price").status_code == 404
    assert client.get("/api/admin/instances").json() == []
