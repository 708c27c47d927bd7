import os
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from .auth_routes import StaffUser, router as auth_router, tenant_user
from .card_state_routes import router as card_state_router
from .card_states import sync_definitions
from .classifier import classify_orders
from .db import get_session, init_db
from .settings_store import get_card_config, get_labels, get_store_credentials, set_card_config
from .shopify import ShopifyClient, ShopifyError, ShopifyThrottled
from .tags import normalize_date_param

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ORDERS_STATUS_FILTER = os.environ.get("ORDERS_STATUS_FILTER", "any").strip() or None
ORDERS_MAX_TOTAL = int(os.environ.get("ORDERS_MAX_TOTAL", "2000").strip() or 2000)
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "").split(",") if os.getenv("ALLOWED_ORIGINS") else ["*"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await init_db()
    except Exception as e:
        logger.error("[DB] Failed to init tables: %s", e)
    yield


app = FastAPI(title="Florist Order Cards API", version="1.0.0", lifespan=lifespan)
app.include_router(auth_router)
app.include_router(card_state_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Compress JSON responses to reduce payload sizes for large card lists
app.add_middleware(GZipMiddleware, minimum_size=500)


async def get_shopify_client(tenant_id: str, db: AsyncSession = Depends(get_session)) -> ShopifyClient:
    creds = await get_store_credentials(db, tenant_id)
    if not creds:
        raise HTTPException(status_code=404, detail="No Shopify store configured for this tenant")
    domain, token = creds
    return ShopifyClient(domain, token)


def _upstream_http_error(e: ShopifyError) -> HTTPException:
    if isinstance(e, ShopifyThrottled):
        return HTTPException(status_code=429, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


# ---------- Routes ----------
@app.get("/api/health")
async def health():
    return {"ok": True}


@app.post("/api/tenants/{tenant_id}/orders/classify")
async def classify_orders_for_date(
    tenant_id: str,
    date: str = Query(..., description="Delivery date tag, DD/MM/YYYY"),
    sync: bool = Query(True, description="Create card states for newly seen cards"),
    _: StaffUser = Depends(tenant_user),
    db: AsyncSession = Depends(get_session),
    shopify: ShopifyClient = Depends(get_shopify_client),
):
    """Turn the tenant's orders tagged with `date` into card definitions.

    An empty list means no orders for that date; upstream trouble is an error status.
    """
    try:
        delivery_date = normalize_date_param(date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    labels = await get_labels(db, tenant_id)
    field_config = await get_card_config(db, tenant_id)
    try:
        orders = await shopify.fetch_orders(status_filter=ORDERS_STATUS_FILTER, max_total=ORDERS_MAX_TOTAL)
    except ShopifyError as e:
        logger.error("Order fetch failed for tenant %s: %s", tenant_id, e)
        raise _upstream_http_error(e)

    cards = classify_orders(
        orders,
        labels,
        tenant_id=tenant_id,
        delivery_date=delivery_date,
        field_config=field_config,
    )
    if sync and cards:
        await sync_definitions(db, cards)
    return [c.model_dump(mode="json", by_alias=True) for c in cards]


@app.get("/api/tenants/{tenant_id}/orders/{order_id}")
async def get_order_detail(
    tenant_id: str,
    order_id: str,
    _: StaffUser = Depends(tenant_user),
    shopify: ShopifyClient = Depends(get_shopify_client),
):
    try:
        order = await shopify.fetch_order_detail(order_id)
    except ShopifyError as e:
        raise _upstream_http_error(e)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return order


@app.get("/api/tenants/{tenant_id}/card-config")
async def read_card_config(
    tenant_id: str,
    db: AsyncSession = Depends(get_session),
    _: StaffUser = Depends(tenant_user),
):
    return await get_card_config(db, tenant_id)


@app.put("/api/tenants/{tenant_id}/card-config")
async def write_card_config(
    tenant_id: str,
    fields: List[Dict[str, Any]] = Body(...),
    db: AsyncSession = Depends(get_session),
    _: StaffUser = Depends(tenant_user),
):
    await set_card_config(db, tenant_id, fields)
    return await get_card_config(db, tenant_id)
