"""
Tenant card configuration: opaque display field descriptors.

The engine does not interpret descriptors beyond pulling configured values out of
the raw order so they travel with each card. Descriptor shape (as stored by the UI):

    {"id": "orderDate", "isVisible": true, "shopifyFields": ["tags"],
     "transformation": "extract", "transformationRule": "\\d{2}/\\d{2}/\\d{4}"}
"""
import logging
import re
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def resolve_field_value(order: Dict[str, Any], path: str) -> Any:
    """Walk a dotted path like "line_items.title"; lists resolve through their first element."""
    value: Any = order
    for part in (path or "").split("."):
        if isinstance(value, list):
            if not value:
                return None
            value = value[0]
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def apply_transformation(value: Any, transformation: Optional[str], rule: Optional[str]) -> Any:
    if not transformation or not rule or value is None:
        return value
    if transformation != "extract":
        return value
    try:
        m = re.search(rule, str(value))
    except re.error as e:
        logger.warning("Bad transformation rule %r: %s", rule, e)
        return value
    return m.group(0) if m else None


def _is_visible(descriptor: Dict[str, Any]) -> bool:
    v = descriptor.get("isVisible", descriptor.get("is_visible", True))
    return bool(v)


def extract_card_fields(order: Dict[str, Any], config: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """Values of every visible, mapped descriptor, keyed by descriptor id."""
    out: Dict[str, Any] = {}
    for descriptor in config or []:
        if not isinstance(descriptor, dict) or not _is_visible(descriptor):
            continue
        field_id = descriptor.get("id") or descriptor.get("field_id")
        paths = descriptor.get("shopifyFields") or []
        if not field_id or not paths:
            continue
        value = resolve_field_value(order, paths[0])
        out[field_id] = apply_transformation(
            value,
            descriptor.get("transformation"),
            descriptor.get("transformationRule"),
        )
    return out
