import os
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from . import card_states
from .auth_routes import StaffUser, tenant_user
from .card_states import CardStateNotFound, utcnow
from .db import get_session
from .schemas import CardStateOut, CardStatePatch, ReorderBody
from .tags import normalize_date_param

router = APIRouter()

CHANGE_FEED_WINDOW_SECONDS = float(os.environ.get("CHANGE_FEED_WINDOW_SECONDS", "10").strip() or 10)


def _date_or_400(value: Optional[str]) -> str:
    try:
        return normalize_date_param(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/api/tenants/{tenant_id}/card-states")
async def list_card_states(
    tenant_id: str,
    delivery_date: str = Query(..., alias="deliveryDate", description="DD/MM/YYYY"),
    since: Optional[datetime] = Query(None, description="Only rows updated after this ISO timestamp"),
    db: AsyncSession = Depends(get_session),
    _: StaffUser = Depends(tenant_user),
):
    rows = await card_states.list_since(db, tenant_id, _date_or_400(delivery_date), since)
    return [CardStateOut.from_row(r).to_json() for r in rows]


@router.get("/api/tenants/{tenant_id}/card-states/realtime-check")
async def realtime_check(
    tenant_id: str,
    delivery_date: Optional[str] = Query(None, alias="deliveryDate"),
    db: AsyncSession = Depends(get_session),
    _: StaffUser = Depends(tenant_user),
):
    """Every card touched in the trailing window. Pollers dedupe on their side."""
    now = utcnow()
    date = _date_or_400(delivery_date) if delivery_date else None
    rows, since = await card_states.list_changes(
        db, tenant_id, CHANGE_FEED_WINDOW_SECONDS, delivery_date=date, now=now,
    )
    return {
        "changes": [CardStateOut.from_row(r).to_json() for r in rows],
        "timestamp": now.isoformat(),
        "queryWindow": {"seconds": CHANGE_FEED_WINDOW_SECONDS, "since": since.isoformat()},
    }


@router.post("/api/tenants/{tenant_id}/card-states/reorder")
async def reorder_card_states(
    tenant_id: str,
    body: ReorderBody,
    db: AsyncSession = Depends(get_session),
    _: StaffUser = Depends(tenant_user),
):
    try:
        rows = await card_states.reorder(db, tenant_id, _date_or_400(body.delivery_date), body.card_ids)
    except CardStateNotFound as e:
        raise HTTPException(status_code=404, detail=f"unknown cards: {e}")
    return [CardStateOut.from_row(r).to_json() for r in rows]


@router.patch("/api/tenants/{tenant_id}/card-states/{card_id}")
async def patch_card_state(
    tenant_id: str,
    card_id: str,
    body: CardStatePatch,
    response: Response,
    db: AsyncSession = Depends(get_session),
    user: StaffUser = Depends(tenant_user),
):
    changes = body.changes()
    if changes.get("assigned_to") and "assigned_by" not in changes:
        changes["assigned_by"] = user.display_name
    date = _date_or_400(body.delivery_date) if body.delivery_date else None
    try:
        result = await card_states.update(
            db,
            tenant_id,
            card_id,
            changes,
            extra=body.extra_fields(),
            delivery_date=date,
            expected_version=body.expected_version,
        )
    except CardStateNotFound:
        raise HTTPException(status_code=404, detail="card state not found")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if result.lost_update:
        response.headers["X-Card-Lost-Update"] = "1"
    return CardStateOut.from_row(result.state).to_json()
