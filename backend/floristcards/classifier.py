import os
import json
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .card_config import extract_card_fields
from .schemas import AddOn, CardDefinition, LineItem, ShopifyOrder
from .tags import extract_delivery_date, filter_orders_by_delivery_date

logger = logging.getLogger(__name__)

ADD_ON_CATEGORY = "add-on"


class AddOnPolicy(str, Enum):
    """How an order's add-ons attach to its primary cards.

    The source data has no per-unit linkage between add-ons and primary items.
    """

    ALL_CARDS = "all"
    FIRST_CARD = "first"


def _policy_from_env() -> AddOnPolicy:
    raw = os.environ.get("ADDON_ATTACHMENT_POLICY", "all").strip().lower()
    try:
        return AddOnPolicy(raw)
    except ValueError:
        logger.warning("Unknown ADDON_ATTACHMENT_POLICY %r, using 'all'", raw)
        return AddOnPolicy.ALL_CARDS


DEFAULT_ADD_ON_POLICY = _policy_from_env()


def make_card_id(order_id: str, line_item_id: Optional[str], quantity_index: int) -> str:
    return f"{order_id}-{line_item_id}-{quantity_index}"


def line_item_key(item: LineItem, position: int) -> str:
    """Shopify's line-item id, or "li{position}" for items that arrive without one."""
    return item.id or f"li{position}"


class LabelCatalog:
    """(product_id, variant_id) -> label categories. A None variant matches every variant."""

    def __init__(self):
        self._categories: Dict[Tuple[str, Optional[str]], Set[str]] = {}

    def add(self, product_id: Any, variant_id: Any, category: Optional[str]) -> None:
        if product_id is None or not category:
            return
        key = (str(product_id), None if variant_id in (None, "") else str(variant_id))
        self._categories.setdefault(key, set()).add(category.strip().lower())

    def categories(self, product_id: Optional[str], variant_id: Optional[str]) -> Set[str]:
        if not product_id:
            return set()
        found = set(self._categories.get((product_id, None), set()))
        if variant_id:
            found |= self._categories.get((product_id, variant_id), set())
        return found

    def is_add_on(self, product_id: Optional[str], variant_id: Optional[str]) -> bool:
        # Unknown items are primary: missing label data must never hide work
        return ADD_ON_CATEGORY in self.categories(product_id, variant_id)

    def __len__(self) -> int:
        return len(self._categories)


def build_label_catalog(labels: Iterable[Dict[str, Any]]) -> LabelCatalog:
    catalog = LabelCatalog()
    for label in labels or []:
        catalog.add(label.get("product_id"), label.get("variant_id"), label.get("category"))
    return catalog


def partition_line_items(order: ShopifyOrder, catalog: LabelCatalog) -> Tuple[List[LineItem], List[LineItem]]:
    """Split an order's line items into (primary, add_ons), keeping source order."""
    primary: List[LineItem] = []
    add_ons: List[LineItem] = []
    for item in order.line_items:
        if catalog.is_add_on(item.product_id, item.variant_id):
            add_ons.append(item)
        else:
            primary.append(item)
    return primary, add_ons


def classify_order(
    order: ShopifyOrder,
    catalog: LabelCatalog,
    *,
    tenant_id: str,
    delivery_date: Optional[str] = None,
    add_on_policy: Optional[AddOnPolicy] = None,
    field_config: Optional[List[Dict[str, Any]]] = None,
) -> List[CardDefinition]:
    """Expand an order into one CardDefinition per unit of each primary line item.

    Cards come out in line-item order, then unit index. An order without primary
    items yields no cards (its add-ons are dropped with it).
    """
    policy = add_on_policy or DEFAULT_ADD_ON_POLICY
    date = delivery_date or extract_delivery_date(order.tags)
    if not date:
        return []
    _, add_on_items = partition_line_items(order, catalog)
    add_ons = [
        AddOn(title=a.title, product_id=a.product_id, variant_id=a.variant_id, quantity=a.quantity)
        for a in add_on_items
    ]
    card_fields = extract_card_fields(order.model_dump(), field_config) if field_config else {}

    cards: List[CardDefinition] = []
    for position, item in enumerate(order.line_items):
        if catalog.is_add_on(item.product_id, item.variant_id):
            continue
        line_item_id = line_item_key(item, position)
        for i in range(max(item.quantity, 0)):
            if policy == AddOnPolicy.FIRST_CARD and cards:
                attached: List[AddOn] = []
            else:
                attached = list(add_ons)
            cards.append(CardDefinition(
                card_id=make_card_id(order.id, line_item_id, i),
                tenant_id=tenant_id,
                order_id=order.id,
                order_number=order.name,
                delivery_date=date,
                primary_product_title=item.title,
                variant_title=item.variant_title,
                product_id=item.product_id,
                variant_id=item.variant_id,
                line_item_id=line_item_id,
                quantity_position=i,
                quantity_total=item.quantity,
                add_ons=attached,
                customer_name=order.customer_name,
                raw_line_item=item.model_dump(),
                fields=dict(card_fields),
            ))
    return cards


def classify_orders(
    orders: Iterable[ShopifyOrder],
    labels: Iterable[Dict[str, Any]],
    *,
    tenant_id: str,
    delivery_date: Optional[str] = None,
    add_on_policy: Optional[AddOnPolicy] = None,
    field_config: Optional[List[Dict[str, Any]]] = None,
) -> List[CardDefinition]:
    """Classify a batch of orders against one label catalog.

    Orders with no delivery-date tag are skipped; when delivery_date is given,
    so are orders tagged with a different date.
    """
    catalog = build_label_catalog(labels)
    cards: List[CardDefinition] = []
    orders = list(orders)
    kept = filter_orders_by_delivery_date(orders, delivery_date)
    for order in kept:
        cards.extend(classify_order(
            order,
            catalog,
            tenant_id=tenant_id,
            delivery_date=extract_delivery_date(order.tags),
            add_on_policy=add_on_policy,
            field_config=field_config,
        ))
    logger.info(json.dumps({
        "component": "classifier",
        "tenant_id": tenant_id,
        "delivery_date": delivery_date,
        "orders": len(orders),
        "skipped": len(orders) - len(kept),
        "cards": len(cards),
        "labels": len(catalog),
    }))
    return cards
