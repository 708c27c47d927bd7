"""HTTP-level tests against the FastAPI app."""

import pytest
import pytest_asyncio

from factories import make_line_item, make_order
from floristcards import settings_store
from floristcards.main import app, get_shopify_client
from floristcards.models import ProductLabel
from floristcards.schemas import ShopifyOrder
from floristcards.shopify import ShopifyError, ShopifyThrottled

TENANT = "tenant-1"
DATE = "27/06/2025"


class FakeShopify:
    def __init__(self, orders=(), error=None, details=None):
        self.orders = [ShopifyOrder.model_validate(o) for o in orders]
        self.error = error
        self.details = details or {}
        self.fetch_calls = []

    async def fetch_orders(self, **kwargs):
        self.fetch_calls.append(kwargs)
        if self.error:
            raise self.error
        return list(self.orders)

    async def fetch_order_detail(self, order_id):
        if self.error:
            raise self.error
        return self.details.get(order_id)


def _use_shopify(fake):
    app.dependency_overrides[get_shopify_client] = lambda: fake
    return fake


def _rose_order():
    return make_order(1001, f"VIP, {DATE}", [
        make_line_item(11, 501, "Rose Bouquet", quantity=3),
        make_line_item(12, 900, "Card"),
    ])


@pytest_asyncio.fixture
async def seeded(db):
    db.add(ProductLabel(tenant_id=TENANT, product_id="900", name="Card", category="add-on"))
    await db.commit()


async def _classify(client, headers, date=DATE):
    return await client.post(f"/api/tenants/{TENANT}/orders/classify", params={"date": date}, headers=headers)


async def test_health(async_client):
    r = await async_client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


async def test_me(async_client, auth_headers):
    r = await async_client.get("/api/auth/me", headers=auth_headers())
    assert r.status_code == 200
    assert r.json()["tenant_id"] == TENANT
    assert r.json()["name"] == "Alice"


async def test_missing_or_bad_token_is_401(async_client):
    r = await async_client.get(f"/api/tenants/{TENANT}/card-states", params={"deliveryDate": DATE})
    assert r.status_code == 401
    r = await async_client.get(
        f"/api/tenants/{TENANT}/card-states",
        params={"deliveryDate": DATE},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert r.status_code == 401


async def test_other_tenant_is_403(async_client, auth_headers):
    r = await async_client.get(
        f"/api/tenants/{TENANT}/card-states", params={"deliveryDate": DATE}, headers=auth_headers("tenant-2"),
    )
    assert r.status_code == 403


async def test_admin_reaches_any_tenant(async_client, auth_headers):
    r = await async_client.get(
        f"/api/tenants/{TENANT}/card-states",
        params={"deliveryDate": DATE},
        headers=auth_headers("tenant-2", role="admin"),
    )
    assert r.status_code == 200
    assert r.json() == []


async def test_classify_creates_cards_and_states(async_client, auth_headers, seeded):
    fake = _use_shopify(FakeShopify([_rose_order()]))
    headers = auth_headers()

    r = await _classify(async_client, headers, date="27-06-2025")
    assert r.status_code == 200
    cards = r.json()
    assert [c["cardId"] for c in cards] == ["1001-11-0", "1001-11-1", "1001-11-2"]
    assert all([a["title"] for a in c["addOns"]] == ["Card"] for c in cards)
    assert fake.fetch_calls[0]["status_filter"] == "any"

    r = await _classify(async_client, headers)
    assert r.status_code == 200

    r = await async_client.get(f"/api/tenants/{TENANT}/card-states", params={"deliveryDate": DATE}, headers=headers)
    states = r.json()
    assert [s["cardId"] for s in states] == ["1001-11-0", "1001-11-1", "1001-11-2"]
    assert [s["sortOrder"] for s in states] == [10, 20, 30]
    assert {s["status"] for s in states} == {"unassigned"}


async def test_classify_without_sync_leaves_store_alone(async_client, auth_headers):
    _use_shopify(FakeShopify([_rose_order()]))
    headers = auth_headers()
    r = await async_client.post(
        f"/api/tenants/{TENANT}/orders/classify", params={"date": DATE, "sync": "false"}, headers=headers,
    )
    assert len(r.json()) == 4
    r = await async_client.get(f"/api/tenants/{TENANT}/card-states", params={"deliveryDate": DATE}, headers=headers)
    assert r.json() == []


async def test_no_orders_is_empty_list(async_client, auth_headers):
    _use_shopify(FakeShopify([]))
    r = await _classify(async_client, auth_headers())
    assert r.status_code == 200
    assert r.json() == []


async def test_upstream_failure_is_502(async_client, auth_headers):
    _use_shopify(FakeShopify(error=ShopifyError("Shopify API error: 500", status_code=500)))
    r = await _classify(async_client, auth_headers())
    assert r.status_code == 502


async def test_upstream_throttle_is_429(async_client, auth_headers):
    _use_shopify(FakeShopify(error=ShopifyThrottled("slow down", status_code=429)))
    r = await _classify(async_client, auth_headers())
    assert r.status_code == 429


async def test_bad_date_is_400(async_client, auth_headers):
    _use_shopify(FakeShopify([]))
    r = await _classify(async_client, auth_headers(), date="2025-06-27")
    assert r.status_code == 400


async def test_no_store_configured_is_404(async_client, auth_headers, monkeypatch):
    monkeypatch.setattr(settings_store, "DEFAULT_STORE_DOMAIN", "")
    r = await _classify(async_client, auth_headers())
    assert r.status_code == 404


async def test_patch_defaults_assigned_by_to_caller(async_client, auth_headers):
    headers = auth_headers()
    r = await async_client.patch(
        f"/api/tenants/{TENANT}/card-states/1001-11-0",
        json={"assignedTo": "Bob", "deliveryDate": DATE},
        headers=headers,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["assignedTo"] == "Bob"
    assert body["assignedBy"] == "Alice"
    assert body["status"] == "unassigned"


async def test_patch_is_partial_and_keeps_extra_fields(async_client, auth_headers):
    headers = auth_headers()
    url = f"/api/tenants/{TENANT}/card-states/1001-11-0"
    await async_client.patch(url, json={"notes": "ring bell", "timeslot": "AM", "deliveryDate": DATE}, headers=headers)

    r = await async_client.patch(url, json={"status": "completed"}, headers=headers)
    body = r.json()
    assert body["status"] == "completed"
    assert body["notes"] == "ring bell"
    assert body["timeslot"] == "AM"
    assert body["version"] == 3

    r = await async_client.get(f"/api/tenants/{TENANT}/card-states", params={"deliveryDate": DATE}, headers=headers)
    assert r.json()[0]["timeslot"] == "AM"


async def test_patch_flags_lost_update(async_client, auth_headers):
    headers = auth_headers()
    url = f"/api/tenants/{TENANT}/card-states/1001-11-0"
    r = await async_client.patch(url, json={"deliveryDate": DATE, "assignedTo": "Ann"}, headers=headers)
    version = r.json()["version"]

    r = await async_client.patch(url, json={"assignedTo": "Bob", "expectedVersion": version}, headers=headers)
    assert "X-Card-Lost-Update" not in r.headers
    r = await async_client.patch(url, json={"assignedTo": "Cat", "expectedVersion": version}, headers=headers)
    assert r.status_code == 200
    assert r.headers["X-Card-Lost-Update"] == "1"
    assert r.json()["assignedTo"] == "Cat"


async def test_patch_unknown_card_without_date_is_404(async_client, auth_headers):
    r = await async_client.patch(
        f"/api/tenants/{TENANT}/card-states/nope", json={"status": "assigned"}, headers=auth_headers(),
    )
    assert r.status_code == 404


async def test_patch_invalid_status_is_422(async_client, auth_headers):
    r = await async_client.patch(
        f"/api/tenants/{TENANT}/card-states/1001-11-0",
        json={"status": "lost", "deliveryDate": DATE},
        headers=auth_headers(),
    )
    assert r.status_code == 422


async def test_realtime_check_returns_recent_changes(async_client, auth_headers):
    headers = auth_headers()
    await async_client.patch(
        f"/api/tenants/{TENANT}/card-states/1001-11-0", json={"deliveryDate": DATE, "status": "assigned"}, headers=headers,
    )
    r = await async_client.get(f"/api/tenants/{TENANT}/card-states/realtime-check", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert [c["cardId"] for c in body["changes"]] == ["1001-11-0"]
    assert body["changes"][0]["status"] == "assigned"
    assert body["queryWindow"]["seconds"] == 10
    assert body["timestamp"]

    r = await async_client.get(
        f"/api/tenants/{TENANT}/card-states/realtime-check", params={"deliveryDate": "28/06/2025"}, headers=headers,
    )
    assert r.json()["changes"] == []


async def test_reorder(async_client, auth_headers):
    headers = auth_headers()
    for cid in ("a-1-0", "a-1-1"):
        await async_client.patch(f"/api/tenants/{TENANT}/card-states/{cid}", json={"deliveryDate": DATE}, headers=headers)

    r = await async_client.post(
        f"/api/tenants/{TENANT}/card-states/reorder",
        json={"deliveryDate": DATE, "cardIds": ["a-1-1", "a-1-0"]},
        headers=headers,
    )
    assert r.status_code == 200
    assert [(s["cardId"], s["sortOrder"]) for s in r.json()] == [("a-1-1", 10), ("a-1-0", 20)]

    r = await async_client.post(
        f"/api/tenants/{TENANT}/card-states/reorder",
        json={"deliveryDate": DATE, "cardIds": ["missing"]},
        headers=headers,
    )
    assert r.status_code == 404


async def test_card_config_round_trip(async_client, auth_headers):
    headers = auth_headers()
    url = f"/api/tenants/{TENANT}/card-config"
    assert (await async_client.get(url, headers=headers)).json() == []

    fields = [{"id": "note", "isVisible": True, "shopifyFields": ["note"], "label": "Message"}]
    r = await async_client.put(url, json=fields, headers=headers)
    assert r.status_code == 200
    assert r.json() == fields
    assert (await async_client.get(url, headers=headers)).json() == fields


async def test_card_config_feeds_classification(async_client, auth_headers):
    headers = auth_headers()
    await async_client.put(
        f"/api/tenants/{TENANT}/card-config",
        json=[{"id": "note", "isVisible": True, "shopifyFields": ["note"]}],
        headers=headers,
    )
    _use_shopify(FakeShopify([make_order(7, DATE, [make_line_item(70, 501, "Tulips")])]))
    r = await _classify(async_client, headers)
    assert r.json()[0]["fields"] == {"note": "Leave at the door"}

    r = await async_client.get(f"/api/tenants/{TENANT}/card-states", params={"deliveryDate": DATE}, headers=headers)
    assert r.json()[0]["note"] == "Leave at the door"


async def test_order_detail(async_client, auth_headers):
    _use_shopify(FakeShopify(details={"1001": {"id": "gid://shopify/Order/1001", "name": "#1001"}}))
    headers = auth_headers()
    r = await async_client.get(f"/api/tenants/{TENANT}/orders/1001", headers=headers)
    assert r.status_code == 200
    assert r.json()["name"] == "#1001"

    r = await async_client.get(f"/api/tenants/{TENANT}/orders/999", headers=headers)
    assert r.status_code == 404


async def test_store_credentials_per_tenant(db, monkeypatch):
    monkeypatch.setattr(settings_store, "DEFAULT_STORE_DOMAIN", "")
    assert await settings_store.get_store_credentials(db, TENANT) is None

    await settings_store.set_store_credentials(db, TENANT, shop=" Flowers.myshopify.com ", access_token="shpat_1")
    assert await settings_store.get_store_credentials(db, TENANT) == ("flowers.myshopify.com", "shpat_1")

    client = await get_shopify_client(TENANT, db)
    assert client.base_url.startswith("https://flowers.myshopify.com/admin/api/")
