"""
Card State store: one row per (tenant_id, card_id).

Rows are created the first time a card definition is seen and mutated only by
explicit staff updates. Concurrent updates to the same card are not detected
as conflicts: the last write wins. Every mutation moves updated_at strictly
forward, which is what the change feed orders by.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import CARD_STATUSES, CardState
from .schemas import CardDefinition, as_utc

logger = logging.getLogger(__name__)

SORT_STEP = 10
UPDATABLE_FIELDS = ("status", "assigned_to", "assigned_by", "notes", "sort_order")


class CardStateNotFound(Exception):
    pass


@dataclass
class UpdateResult:
    state: CardState
    # Set when the caller's expected_version was already superseded; the write still went through
    lost_update: bool = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    now = utcnow()
    prev = as_utc(previous)
    if prev is not None and now <= prev:
        return prev + timedelta(microseconds=1)
    return now


async def get_state(db: AsyncSession, tenant_id: str, card_id: str) -> Optional[CardState]:
    return await db.scalar(
        select(CardState).where(CardState.tenant_id == tenant_id, CardState.card_id == card_id)
    )


async def _tail_sort_order(db: AsyncSession, tenant_id: str, delivery_date: str) -> int:
    current = await db.scalar(
        select(func.max(CardState.sort_order)).where(
            CardState.tenant_id == tenant_id,
            CardState.delivery_date == delivery_date,
        )
    )
    return (current or 0) + SORT_STEP


async def upsert(
    db: AsyncSession,
    tenant_id: str,
    card_id: str,
    delivery_date: str,
    initial: Optional[Dict[str, Any]] = None,
    *,
    commit: bool = True,
) -> Tuple[CardState, bool]:
    """Create the card's row if absent. An existing row is returned untouched.

    Returns (row, created).
    """
    existing = await get_state(db, tenant_id, card_id)
    if existing is not None:
        return existing, False
    initial = dict(initial or {})
    row = CardState(
        tenant_id=tenant_id,
        card_id=card_id,
        delivery_date=delivery_date,
        status=initial.pop("status", None) or "unassigned",
        assigned_to=initial.pop("assigned_to", None),
        assigned_by=initial.pop("assigned_by", None),
        notes=initial.pop("notes", None),
        sort_order=await _tail_sort_order(db, tenant_id, delivery_date),
        extra=initial or None,
        version=1,
        updated_at=utcnow(),
    )
    try:
        async with db.begin_nested():
            db.add(row)
    except IntegrityError:
        # Lost an insert race to another request; theirs is the row
        existing = await get_state(db, tenant_id, card_id)
        if existing is None:
            raise
        return existing, False
    if commit:
        await db.commit()
    return row, True


async def sync_definitions(db: AsyncSession, definitions: Iterable[CardDefinition]) -> int:
    """Upsert a state row for every definition. Returns how many rows were created."""
    created = 0
    for d in definitions:
        _, was_created = await upsert(
            db,
            d.tenant_id,
            d.card_id,
            d.delivery_date,
            dict(d.fields) or None,
            commit=False,
        )
        created += int(was_created)
    await db.commit()
    if created:
        logger.info("Created %d new card states", created)
    return created


async def update(
    db: AsyncSession,
    tenant_id: str,
    card_id: str,
    changes: Dict[str, Any],
    *,
    extra: Optional[Dict[str, Any]] = None,
    delivery_date: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> UpdateResult:
    """Merge the supplied fields into the card's state and bump updated_at.

    Only keys present in `changes` are written; `extra` keys merge into the
    extra-fields bag. A card that does not exist yet is created first when a
    delivery_date is supplied.
    """
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")
    if changes.get("status") is not None and changes["status"] not in CARD_STATUSES:
        raise ValueError(f"invalid status: {changes['status']!r}")

    row = await get_state(db, tenant_id, card_id)
    if row is None:
        if not delivery_date:
            raise CardStateNotFound(card_id)
        row, _ = await upsert(db, tenant_id, card_id, delivery_date, commit=False)

    lost_update = expected_version is not None and expected_version != row.version
    if lost_update:
        logger.warning(
            "Card %s/%s written over version %s (caller expected %s); last write wins",
            tenant_id, card_id, row.version, expected_version,
        )
    for key, value in changes.items():
        # Not nullable; an explicit null means "leave as is"
        if key in ("status", "sort_order") and value is None:
            continue
        setattr(row, key, value)
    if extra:
        merged = dict(row.extra or {})
        merged.update(extra)
        row.extra = merged
    row.version = (row.version or 0) + 1
    row.updated_at = _next_timestamp(row.updated_at)
    await db.commit()
    return UpdateResult(state=row, lost_update=lost_update)


async def reorder(db: AsyncSession, tenant_id: str, delivery_date: str, card_ids: List[str]) -> List[CardState]:
    """Rewrite sort_order for the given cards in the given order (drag-and-drop)."""
    rows = (await db.scalars(
        select(CardState).where(
            CardState.tenant_id == tenant_id,
            CardState.delivery_date == delivery_date,
            CardState.card_id.in_(card_ids),
        )
    )).all()
    by_id = {r.card_id: r for r in rows}
    missing = [c for c in card_ids if c not in by_id]
    if missing:
        raise CardStateNotFound(", ".join(missing))
    for i, cid in enumerate(card_ids):
        row = by_id[cid]
        row.sort_order = (i + 1) * SORT_STEP
        row.version = (row.version or 0) + 1
        row.updated_at = _next_timestamp(row.updated_at)
    await db.commit()
    return await list_since(db, tenant_id, delivery_date)


async def list_since(
    db: AsyncSession,
    tenant_id: str,
    delivery_date: str,
    since: Optional[datetime] = None,
) -> List[CardState]:
    q = select(CardState).where(
        CardState.tenant_id == tenant_id,
        CardState.delivery_date == delivery_date,
    )
    if since is not None:
        q = q.where(CardState.updated_at > as_utc(since))
    q = q.order_by(CardState.sort_order, CardState.card_id)
    return list((await db.scalars(q)).all())


async def list_changes(
    db: AsyncSession,
    tenant_id: str,
    window_seconds: float,
    *,
    delivery_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[List[CardState], datetime]:
    """Rows touched within the trailing window; returns (rows, window_start)."""
    since = (now or utcnow()) - timedelta(seconds=window_seconds)
    q = select(CardState).where(
        CardState.tenant_id == tenant_id,
        CardState.updated_at >= since,
    )
    if delivery_date:
        q = q.where(CardState.delivery_date == delivery_date)
    q = q.order_by(CardState.updated_at, CardState.card_id)
    return list((await db.scalars(q)).all()), since
