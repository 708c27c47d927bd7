from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    JSON,
    func,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from .db import Base

CARD_STATUSES = ("unassigned", "assigned", "completed")


def _json_type():
    """JSON type compatible with Postgres and SQLite."""
    return JSON().with_variant(JSONB, "postgresql")


class CardState(Base):
    """
    Mutable fulfillment state of one card (one unit of one primary line item).

    card_id is "{order_id}-{line_item_id}-{quantity_index}" but is treated as opaque here.
    updated_at is the only ordering signal of the change feed; it is set by the
    application (never by the database) so it can be kept strictly increasing per card.
    """

    __tablename__ = "order_card_states"
    __table_args__ = (
        UniqueConstraint("tenant_id", "card_id", name="uq_order_card_states_tenant_card"),
        Index("ix_order_card_states_tenant_date_sort", "tenant_id", "delivery_date", "sort_order"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    card_id = Column(String(255), nullable=False)
    delivery_date = Column(String(10), nullable=False)  # DD/MM/YYYY, verbatim from the order tag
    status = Column(String(16), nullable=False, default="unassigned")
    assigned_to = Column(String(255), nullable=True)
    assigned_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    # Configuration-driven card fields the engine does not interpret
    extra = Column(_json_type(), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)


class ProductLabel(Base):
    """
    Label catalog entry for a tenant's product (or one of its variants).

    Owned by the product management side; the classifier only reads it.
    A null variant_id applies to every variant of the product.
    """

    __tablename__ = "product_labels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    variant_id = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=False)


class AppSetting(Base):
    """
    Simple key/value settings store (JSON value) for per-tenant configuration.

      key = "card_config:{tenant_id}"    value = [{"id": "...", "isVisible": true, ...}, ...]
      key = "shopify_store:{tenant_id}"  value = {"shop": "...myshopify.com", "access_token": "..."}
    """

    __tablename__ = "app_settings"

    key = Column(String(255), primary_key=True)
    value = Column(_json_type(), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
