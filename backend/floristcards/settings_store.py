from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AppSetting, ProductLabel

DEFAULT_STORE_DOMAIN = os.environ.get("SHOPIFY_STORE_DOMAIN", "").strip().lower()
DEFAULT_ACCESS_TOKEN = os.environ.get("SHOPIFY_ACCESS_TOKEN", "").strip()


async def get_setting(db: AsyncSession, key: str) -> Any:
    row = await db.scalar(select(AppSetting).where(AppSetting.key == key))
    return None if not row else row.value


async def set_setting(db: AsyncSession, key: str, value: Any) -> None:
    row = await db.scalar(select(AppSetting).where(AppSetting.key == key))
    if not row:
        row = AppSetting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
    await db.commit()


def card_config_key(tenant_id: str) -> str:
    return f"card_config:{(tenant_id or '').strip()}"


def shopify_store_key(tenant_id: str) -> str:
    return f"shopify_store:{(tenant_id or '').strip()}"


async def get_card_config(db: AsyncSession, tenant_id: str) -> List[Dict[str, Any]]:
    val = await get_setting(db, card_config_key(tenant_id))
    if not isinstance(val, list):
        return []
    return [f for f in val if isinstance(f, dict)]


async def set_card_config(db: AsyncSession, tenant_id: str, fields: List[Dict[str, Any]]) -> None:
    await set_setting(db, card_config_key(tenant_id), list(fields or []))


async def get_store_credentials(db: AsyncSession, tenant_id: str) -> Optional[Tuple[str, str]]:
    """Return (shop_domain, access_token) for the tenant, or None when not configured.

    Falls back to the single-store environment variables.
    """
    val = await get_setting(db, shopify_store_key(tenant_id))
    if isinstance(val, dict):
        shop = (val.get("shop") or "").strip().lower()
        token = (val.get("access_token") or "").strip()
        if shop and token:
            return shop, token
    if DEFAULT_STORE_DOMAIN and DEFAULT_ACCESS_TOKEN:
        return DEFAULT_STORE_DOMAIN, DEFAULT_ACCESS_TOKEN
    return None


async def set_store_credentials(db: AsyncSession, tenant_id: str, *, shop: str, access_token: str) -> None:
    payload: Dict[str, Any] = {
        "shop": (shop or "").strip().lower(),
        "access_token": (access_token or "").strip(),
    }
    await set_setting(db, shopify_store_key(tenant_id), payload)


async def get_labels(db: AsyncSession, tenant_id: str) -> List[Dict[str, Any]]:
    """Label catalog for a tenant as plain dicts (the classifier's input shape)."""
    rows = (await db.scalars(select(ProductLabel).where(ProductLabel.tenant_id == tenant_id))).all()
    return [
        {
            "product_id": r.product_id,
            "variant_id": r.variant_id,
            "category": r.category,
            "name": r.name,
        }
        for r in rows
    ]
