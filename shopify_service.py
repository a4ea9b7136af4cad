# shopify_service.py
import re
import time
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from config import settings
from utils import canonical_id, get_logger

logger = get_logger("shopify")

ORDER_FIELDS = ",".join([
    "id", "order_number", "name", "email", "phone", "created_at", "updated_at",
    "cancelled_at", "closed_at", "cancel_reason", "financial_status", "fulfillment_status",
    "gateway", "payment_gateway_names", "total_price", "subtotal_price", "total_tax",
    "total_discounts", "total_shipping_price_set", "currency", "tags", "note", "customer_note",
    "line_items", "shipping_address", "billing_address", "customer", "fulfillments",
    "shipping_lines", "refunds", "total_outstanding", "current_total_price",
    "current_subtotal_price", "current_total_tax", "current_total_discounts",
    "current_total_duties", "payment_transactions",
])

PRODUCT_FIELDS = "id,title,image,images,variants"

_LINK_NEXT_RE = re.compile(r'<([^>]+)>;\s*rel="?next"?')
_PAGE_INFO_RE = re.compile(r"[?&]page_info=([^&]+)")


class ApiStatus(str, Enum):
    OK = "ok"
    VERSION_MISMATCH = "version_mismatch"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    UNREACHABLE = "unreachable"
    AUTH = "auth"
    ERROR = "error"


@dataclass
class ApiResult:
    """Outcome of one upstream call; version fallback is driven off `status`."""
    status: ApiStatus
    data: Any = None
    status_code: Optional[int] = None
    headers: Any = field(default_factory=dict)
    version: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is ApiStatus.OK


@dataclass
class OrderListing:
    orders: List[Dict[str, Any]] = field(default_factory=list)
    pages_ok: int = 0
    pages_failed: int = 0
    errors: List[str] = field(default_factory=list)
    api_version: Optional[str] = None


class ShopifyError(Exception):
    pass


class ShopifyAuthError(ShopifyError):
    def __init__(self, status_code: Optional[int], message: str, hints: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.hints = hints or {}
        super().__init__(message)


class ShopifyUnavailableError(ShopifyError):
    pass


def token_hints(token: Optional[str]) -> Dict[str, Any]:
    """Token-format diagnostics for auth failures; never exposes the token itself."""
    token = token or ""
    hints: Dict[str, Any] = {
        "token_present": bool(token),
        "token_length": len(token),
        "token_prefix": token[:6] + "..." if len(token) > 6 else "",
        "starts_with_shpat": token.startswith("shpat_"),
    }
    if not token:
        hints["hint"] = "SHOPIFY_ACCESS_TOKEN is not set."
    elif not token.startswith("shpat_"):
        hints["hint"] = "Admin API access tokens usually start with 'shpat_'. Check that the Admin API token (not the API key or secret) is configured."
    elif len(token) < 30:
        hints["hint"] = "Token looks truncated."
    else:
        hints["hint"] = "Token format looks valid; check the app's API scopes (read_orders, read_products)."
    return hints


def next_page_info(link_header: Optional[str]) -> Optional[str]:
    if not link_header:
        return None
    match = _LINK_NEXT_RE.search(link_header)
    if not match:
        return None
    info = _PAGE_INFO_RE.search(match.group(1))
    return info.group(1) if info else None


class ShopifyService:
    def __init__(
        self,
        store_url: Optional[str] = None,
        token: Optional[str] = None,
        api_versions: Optional[List[str]] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        request_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        raw_url = store_url if store_url is not None else settings.shopify_store_url
        self.store_url = re.sub(r"^https?://", "", raw_url or "").rstrip("/")
        self.token = token if token is not None else settings.shopify_access_token
        self.api_versions = list(api_versions or settings.api_versions)
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else settings.shopify_timeout_seconds
        self.max_retries = max(1, max_retries if max_retries is not None else settings.shopify_max_retries)
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.shopify_retry_base_delay
        self.request_delay = request_delay if request_delay is not None else settings.shopify_request_delay_seconds
        self.page_limit = settings.shopify_page_limit
        self.max_pages = settings.shopify_max_pages
        self.max_empty_pages = max(1, settings.shopify_max_empty_pages)
        self._sleep = sleep
        self._working_version: Optional[str] = None
        self.headers = {
            "X-Shopify-Access-Token": self.token,
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _versions_to_try(self) -> List[str]:
        if self._working_version and self._working_version in self.api_versions:
            return [self._working_version] + [v for v in self.api_versions if v != self._working_version]
        return list(self.api_versions)

    def _backoff(self, attempt: int, retry_after: Optional[str] = None) -> float:
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return self.retry_base_delay * (2 ** attempt) + random.uniform(0, 1) * min(1.0, self.retry_base_delay)

    def _attempt(self, version: str, path: str, params: Optional[Dict[str, Any]] = None) -> ApiResult:
        """One API version, retrying transient failures with exponential backoff."""
        url = f"https://{self.store_url}/admin/api/{version}/{path}"
        result = ApiResult(ApiStatus.ERROR, version=version, error="no attempt made")
        for attempt in range(self.max_retries):
            retry_after = None
            try:
                response = self.session.get(url, headers=self.headers, params=params, timeout=self.timeout)
            except requests.exceptions.ConnectionError as e:
                result = ApiResult(ApiStatus.UNREACHABLE, version=version, error=str(e))
            except requests.exceptions.RequestException as e:
                # Timeouts and other transport hiccups are retryable.
                result = ApiResult(ApiStatus.TRANSIENT, version=version, error=str(e))
            else:
                code = response.status_code
                if 200 <= code < 300:
                    try:
                        data = response.json()
                    except ValueError as e:
                        return ApiResult(ApiStatus.ERROR, status_code=code, version=version, error=f"Invalid JSON: {e}")
                    return ApiResult(ApiStatus.OK, data=data, status_code=code, headers=response.headers, version=version)
                if code == 404:
                    return ApiResult(ApiStatus.VERSION_MISMATCH, status_code=code, version=version, error=response.text[:500])
                if code in (401, 403):
                    return ApiResult(ApiStatus.AUTH, status_code=code, version=version, error=response.text[:500])
                if code == 429 or code >= 500:
                    retry_after = response.headers.get("Retry-After")
                    result = ApiResult(ApiStatus.TRANSIENT, status_code=code, version=version, error=response.text[:500])
                else:
                    return ApiResult(ApiStatus.ERROR, status_code=code, version=version, error=response.text[:500])

            if attempt < self.max_retries - 1:
                wait_time = self._backoff(attempt, retry_after)
                logger.warning("GET %s failed (%s), retrying in %.1fs", path, result.error or result.status_code, wait_time)
                self._sleep(wait_time)
        return result

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> ApiResult:
        """Walk the version list; only a 404 moves on to the next version."""
        for version in self._versions_to_try():
            result = self._attempt(version, path, params)
            if result.status is ApiStatus.VERSION_MISMATCH:
                logger.warning("API version %s returned 404 for %s, trying next version", version, path)
                continue
            if result.ok:
                self._working_version = version
            return result
        return ApiResult(
            ApiStatus.NOT_FOUND, status_code=404,
            error=f"All API versions returned 404 for {path} on {self.store_url}",
        )

    def throttle(self, seconds: Optional[float] = None) -> None:
        self._sleep(self.request_delay if seconds is None else seconds)

    def _raise_for_auth(self, result: ApiResult) -> None:
        if result.status is ApiStatus.AUTH:
            hints = token_hints(self.token)
            logger.error("Shopify auth failure (%s): %s", result.status_code, hints["hint"])
            raise ShopifyAuthError(
                result.status_code,
                f"Shopify rejected the access token ({result.status_code}). {hints['hint']}",
                hints,
            )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def list_orders(self, updated_at_min: Optional[str] = None, max_pages: Optional[int] = None) -> OrderListing:
        """
        Fetch every order (optionally only those updated since `updated_at_min`).

        Pages on `since_id`, switching to the cursor from the `link` header when
        Shopify sends one. Stops on a short page, after a bounded run of empty
        pages, or on the first page that fails after retries; orders gathered
        before a failing page are kept.
        """
        listing = OrderListing()
        max_pages = max_pages or self.max_pages
        since_id: Optional[str] = None
        page_info: Optional[str] = None
        empty_pages = 0
        requested = 0

        while requested < max_pages:
            requested += 1
            if page_info:
                params: Dict[str, Any] = {"limit": self.page_limit, "fields": ORDER_FIELDS, "page_info": page_info}
            else:
                params = {"limit": self.page_limit, "status": "any", "fields": ORDER_FIELDS}
                if since_id:
                    params["since_id"] = since_id
                if updated_at_min:
                    params["updated_at_min"] = updated_at_min

            result = self._get("orders.json", params)
            self._raise_for_auth(result)
            if not result.ok:
                listing.pages_failed += 1
                message = f"Order page {requested} failed ({result.status.value}): {result.error}"
                logger.error(message)
                listing.errors.append(message)
                if result.status is ApiStatus.UNREACHABLE and not listing.orders:
                    raise ShopifyUnavailableError(f"Cannot reach {self.store_url}: {result.error}")
                break

            listing.pages_ok += 1
            listing.api_version = result.version
            orders = [o for o in (result.data or {}).get("orders") or [] if isinstance(o, dict)]
            if not orders:
                empty_pages += 1
                if empty_pages >= self.max_empty_pages:
                    break
                self._sleep(self.request_delay)
                continue
            empty_pages = 0

            listing.orders.extend(orders)
            logger.info("Page %d: fetched %d orders (total so far: %d)", requested, len(orders), len(listing.orders))

            if len(orders) < self.page_limit:
                break
            headers = result.headers or {}
            page_info = next_page_info(headers.get("link") or headers.get("Link"))
            since_id = canonical_id(orders[-1].get("id")) or since_id
            self._sleep(self.request_delay)

        return listing

    def get_order(self, order_id: Any) -> Optional[Dict[str, Any]]:
        """Single order by upstream id; None when Shopify has no such order."""
        oid = canonical_id(order_id)
        result = self._get(f"orders/{oid}.json")
        self._raise_for_auth(result)
        if result.status is ApiStatus.NOT_FOUND:
            return None
        if result.status is ApiStatus.UNREACHABLE:
            raise ShopifyUnavailableError(f"Cannot reach {self.store_url}: {result.error}")
        if not result.ok:
            raise ShopifyError(f"Fetching order {oid} failed ({result.status.value}): {result.error}")
        return (result.data or {}).get("order")

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def fetch_products(self, product_ids: List[str]) -> ApiResult:
        """Batch lookup; Shopify caps `ids` at 50 regardless of `limit`."""
        result = self._get("products.json", {
            "ids": ",".join(product_ids),
            "limit": 250,
            "fields": PRODUCT_FIELDS,
        })
        self._raise_for_auth(result)
        if result.ok:
            result.data = (result.data or {}).get("products") or []
        return result

    def fetch_product(self, product_id: str) -> ApiResult:
        result = self._get(f"products/{product_id}.json", {"fields": PRODUCT_FIELDS})
        self._raise_for_auth(result)
        if result.ok:
            product = (result.data or {}).get("product")
            result.data = [product] if product else []
        return result

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def test_connection(self) -> Dict[str, Any]:
        """Try each API version against shop.json and report which one answers."""
        attempts = []
        for version in self.api_versions:
            result = self._attempt(version, "shop.json")
            attempts.append({"version": version, "status": result.status.value, "status_code": result.status_code})
            if result.ok:
                shop = (result.data or {}).get("shop") or {}
                return {
                    "success": True,
                    "api_version": version,
                    "shop": {"name": shop.get("name"), "domain": shop.get("domain"), "currency": shop.get("currency")},
                    "attempts": attempts,
                }
            if result.status is ApiStatus.AUTH:
                break
        return {"success": False, "attempts": attempts, "token": token_hints(self.token)}
