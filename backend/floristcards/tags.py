import re
from typing import Iterable, List, Optional, Union

DATE_TAG_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")


def normalize_tags(tags: Union[str, Iterable[str], None]) -> List[str]:
    """Return a clean list of tags from either a list or Shopify's comma-separated string."""
    if not tags:
        return []
    if isinstance(tags, str):
        parts = tags.split(",")
    else:
        parts = [str(t) for t in tags if t is not None]
    return [p.strip() for p in parts if p and p.strip()]


def extract_delivery_date(tags: Union[str, Iterable[str], None]) -> Optional[str]:
    """First DD/MM/YYYY-shaped tag, verbatim, or None.

    The shape is all that is checked: "31/02/2025" comes back as-is.
    """
    for tag in normalize_tags(tags):
        if DATE_TAG_RE.match(tag):
            return tag
    return None


def normalize_date_param(value: Optional[str]) -> str:
    """Accept DD/MM/YYYY or DD-MM-YYYY and return DD/MM/YYYY; raise ValueError otherwise."""
    s = (value or "").strip().replace("-", "/")
    if not DATE_TAG_RE.match(s):
        raise ValueError(f"expected a DD/MM/YYYY date, got {value!r}")
    return s


def filter_orders_by_delivery_date(orders, date: Optional[str] = None):
    """Keep orders carrying a delivery-date tag, optionally only those equal to `date`."""
    out = []
    for o in orders:
        found = extract_delivery_date(getattr(o, "tags", None))
        if not found:
            continue
        if date and found != date:
            continue
        out.append(o)
    return out
