import os
import asyncio
import logging
import random
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .schemas import ShopifyOrder

logger = logging.getLogger(__name__)

SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-01").strip()
SHOPIFY_PAGE_SIZE = int(os.environ.get("SHOPIFY_PAGE_SIZE", "250").strip() or 250)
SHOPIFY_PAGE_DELAY_SECONDS = float(os.environ.get("SHOPIFY_PAGE_DELAY_SECONDS", "0.5").strip() or 0.5)
SHOPIFY_MAX_THROTTLE_RETRIES = int(os.environ.get("SHOPIFY_MAX_THROTTLE_RETRIES", "10").strip() or 10)

DEFAULT_RETRY_AFTER = 1.0


class ShopifyError(Exception):
    """Upstream call failed. Orders gathered before the failure ride along in partial_orders."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, partial_orders: Optional[List[ShopifyOrder]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.partial_orders: List[ShopifyOrder] = list(partial_orders or [])


class ShopifyThrottled(ShopifyError):
    """Still rate limited after the configured number of retries."""


def parse_retry_after(value: Optional[str]) -> float:
    try:
        wait = float((value or "").strip())
    except ValueError:
        return DEFAULT_RETRY_AFTER
    return wait if wait >= 0 else DEFAULT_RETRY_AFTER


def next_page_info(response: httpx.Response) -> Optional[str]:
    """page_info cursor of the rel="next" Link, if any."""
    nxt = response.links.get("next") or {}
    url = nxt.get("url")
    if not url:
        return None
    return httpx.URL(url).params.get("page_info")


def order_gid(order_id: str) -> str:
    s = str(order_id).strip()
    if s.startswith("gid://"):
        return s
    return f"gid://shopify/Order/{s.lstrip('#')}"


ORDER_DETAIL_QUERY = """
query OrderDetail($id: ID!) {
  order(id: $id) {
    id
    name
    createdAt
    displayFulfillmentStatus
    displayFinancialStatus
    tags
    note
    email
    phone
    customer { firstName lastName email }
    shippingAddress { name address1 address2 city province country zip phone }
    customAttributes { key value }
    lineItems(first: 50) {
      edges {
        node {
          id
          title
          quantity
          variant { id title sku }
          product { id productType }
        }
      }
    }
    totalPriceSet { shopMoney { amount currencyCode } }
  }
}
"""


class ShopifyClient:
    """Orders API of one Shopify store (REST listing + GraphQL detail lookup)."""

    def __init__(
        self,
        domain: str,
        access_token: str,
        *,
        api_version: str = SHOPIFY_API_VERSION,
        page_size: int = SHOPIFY_PAGE_SIZE,
        page_delay: float = SHOPIFY_PAGE_DELAY_SECONDS,
        max_throttle_retries: Optional[int] = SHOPIFY_MAX_THROTTLE_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        timeout: float = 30,
    ):
        self.domain = (domain or "").strip().lower()
        self.access_token = (access_token or "").strip()
        self.api_version = api_version
        self.page_size = max(1, min(int(page_size), 250))
        self.page_delay = page_delay
        self.max_throttle_retries = max_throttle_retries
        self.transport = transport
        self.sleep = sleep
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}/admin/api/{self.api_version}"

    def _headers(self) -> Dict[str, str]:
        # Always use header token auth; do not embed credentials in URL
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Shopify-Access-Token": self.access_token,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport, headers=self._headers())

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one request, sleeping out 429s and retrying the identical request."""
        throttled = 0
        while True:
            try:
                r = await client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                raise ShopifyError(f"Shopify request failed: {e}") from e
            if r.status_code != 429:
                break
            throttled += 1
            if self.max_throttle_retries is not None and throttled > self.max_throttle_retries:
                raise ShopifyThrottled(
                    "Shopify API is throttling requests. Please try again shortly.",
                    status_code=429,
                )
            wait = parse_retry_after(r.headers.get("Retry-After"))
            logger.info("Shopify rate limited; waiting %.2fs before retrying %s", wait, url)
            await self.sleep(wait)
        if r.is_success:
            return r
        raise ShopifyError(
            f"Shopify API error: {r.status_code} {r.reason_phrase} - {r.text[:500]}",
            status_code=r.status_code,
        )

    async def fetch_orders(
        self,
        *,
        date_range: Optional[Tuple[str, str]] = None,
        status_filter: Optional[str] = None,
        name: Optional[str] = None,
        max_total: Optional[int] = None,
        allow_partial: bool = False,
    ) -> List[ShopifyOrder]:
        """Page through /orders.json until a short page, no cursor, or max_total.

        Filters only go on the first page: Shopify rejects them next to page_info.
        On failure the whole fetch raises, unless allow_partial is set, in which case
        the orders gathered so far are returned.
        """
        orders: List[ShopifyOrder] = []
        page_info: Optional[str] = None
        url = f"{self.base_url}/orders.json"
        async with self._client() as client:
            while True:
                params: Dict[str, Any] = {"limit": self.page_size}
                if page_info:
                    params["page_info"] = page_info
                else:
                    if status_filter:
                        params["status"] = status_filter
                    if name:
                        params["name"] = name
                    if date_range:
                        params["created_at_min"], params["created_at_max"] = date_range
                    params["order"] = "created_at desc"
                try:
                    r = await self._send(client, "GET", url, params=params)
                except ShopifyError as e:
                    e.partial_orders = list(orders)
                    if allow_partial:
                        logger.warning("Order fetch stopped early (%s); returning %d orders", e, len(orders))
                        return orders
                    raise
                page = [ShopifyOrder.model_validate(o) for o in (r.json().get("orders") or [])]
                if max_total is not None and len(orders) + len(page) >= max_total:
                    orders.extend(page[: max(0, max_total - len(orders))])
                    break
                orders.extend(page)
                page_info = next_page_info(r)
                if len(page) < self.page_size or not page_info:
                    break
                if self.page_delay:
                    await self.sleep(self.page_delay)
        logger.info("Fetched %d orders from %s", len(orders), self.domain)
        return orders

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None, *, max_retries: int = 5) -> Dict[str, Any]:
        url = f"{self.base_url}/graphql.json"
        base_delay = 0.35
        async with self._client() as client:
            for attempt in range(max_retries):
                r = await self._send(client, "POST", url, json={"query": query, "variables": variables or {}})
                data = r.json()
                errs = data.get("errors") or []
                if not errs:
                    return data.get("data") or {}
                # If throttled at GraphQL layer, backoff and retry
                is_throttled = any(((e.get("extensions") or {}).get("code") or "").upper() == "THROTTLED" for e in errs)
                if is_throttled and attempt < max_retries - 1:
                    await self.sleep(base_delay * (2 ** attempt) + random.uniform(0, 0.15))
                    continue
                if is_throttled:
                    raise ShopifyThrottled("Shopify GraphQL throttled", status_code=429)
                raise ShopifyError(f"Shopify GraphQL errors: {errs}", status_code=502)
        raise ShopifyError("Shopify GraphQL request gave up", status_code=502)

    async def fetch_order_detail(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Full order by id (numeric or GID) via GraphQL; None when Shopify has no such order."""
        data = await self.graphql(ORDER_DETAIL_QUERY, {"id": order_gid(order_id)})
        return data.get("order")
