from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CardStatus = Literal["unassigned", "assigned", "completed"]


def _id_to_str(v: Any) -> Any:
    # Shopify REST ids are integers; card ids and label lookups work on strings
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return str(int(v))
    return v


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------- Upstream (Shopify REST) payloads ----------
class LineItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    title: Optional[str] = None
    variant_title: Optional[str] = None
    quantity: int = 1

    @field_validator("id", "product_id", "variant_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _id_to_str(v)


class ShopifyOrder(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    tags: Union[str, List[str]] = ""
    line_items: List[LineItem] = []
    customer: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return _id_to_str(v)

    @property
    def customer_name(self) -> Optional[str]:
        c = self.customer or {}
        name = " ".join(p for p in [(c.get("first_name") or "").strip(), (c.get("last_name") or "").strip()] if p)
        return name or None


# ---------- Engine output ----------
class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddOn(_CamelModel):
    title: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: int = 1


class CardDefinition(_CamelModel):
    card_id: str
    tenant_id: str
    order_id: str
    order_number: Optional[str] = None
    delivery_date: str
    primary_product_title: Optional[str] = None
    variant_title: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    line_item_id: Optional[str] = None
    quantity_position: int
    quantity_total: int
    add_ons: List[AddOn] = []
    customer_name: Optional[str] = None
    raw_line_item: Dict[str, Any] = {}
    fields: Dict[str, Any] = {}


class CardStateOut(_CamelModel):
    """Persisted card state plus any configuration-driven fields, flattened at top level."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    tenant_id: str
    card_id: str
    delivery_date: str
    status: str
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    notes: Optional[str] = None
    sort_order: int = 0
    version: int = 1
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> "CardStateOut":
        known = {
            "tenant_id": row.tenant_id,
            "card_id": row.card_id,
            "delivery_date": row.delivery_date,
            "status": row.status,
            "assigned_to": row.assigned_to,
            "assigned_by": row.assigned_by,
            "notes": row.notes,
            "sort_order": row.sort_order or 0,
            "version": row.version or 1,
            "updated_at": as_utc(row.updated_at),
        }
        reserved = set(known) | {to_camel(k) for k in known}
        extra = {k: v for k, v in (row.extra or {}).items() if k not in reserved}
        return cls.model_validate({**extra, **known})

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------- Request bodies ----------
class CardStatePatch(BaseModel):
    """Partial update. Only fields present in the body are applied; unknown keys land in the extra bag."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    status: Optional[CardStatus] = None
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    notes: Optional[str] = None
    sort_order: Optional[int] = None
    delivery_date: Optional[str] = None
    expected_version: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        """Supplied known fields (explicit nulls included) minus control fields."""
        out = {k: getattr(self, k) for k in self.model_fields_set if k in type(self).model_fields}
        out.pop("expected_version", None)
        out.pop("delivery_date", None)
        return out

    def extra_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ReorderBody(_CamelModel):
    delivery_date: str
    card_ids: List[str] = Field(default_factory=list)
