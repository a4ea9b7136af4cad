# services/image_resolver.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional

from config import settings
from schemas import image_src
from shopify_service import ApiResult, ApiStatus, ShopifyService, ShopifyUnavailableError
from utils import canonical_id, chunked, clean_image_url, get_logger

logger = get_logger("image-resolver")

PLACEHOLDER_MARKERS = ("placeholder", "no-image")


class ImageMap(dict):
    """
    id -> image URL. Keys are canonicalized on the way in and out, so
    product 111 and product "111" are the same entry.
    """

    def __init__(self, *args, **kwargs):
        super().__init__()
        self.update(*args, **kwargs)

    def __setitem__(self, key, value):
        ck = canonical_id(key)
        if ck is not None:
            super().__setitem__(ck, value)

    def __getitem__(self, key):
        return super().__getitem__(canonical_id(key))

    def __delitem__(self, key):
        super().__delitem__(canonical_id(key))

    def __contains__(self, key):
        return super().__contains__(canonical_id(key))

    def get(self, key, default=None):
        return super().get(canonical_id(key), default)

    def update(self, *args, **kwargs):
        for k, v in dict(*args, **kwargs).items():
            self[k] = v


def pick_product_image(product: Dict[str, Any]) -> Optional[str]:
    """First non-placeholder image, else the first image at all."""
    srcs = [s for s in (image_src(img) for img in product.get("images") or []) if s]
    for src in srcs:
        lowered = src.lower()
        if not any(marker in lowered for marker in PLACEHOLDER_MARKERS):
            return src
    if srcs:
        return srcs[0]
    return image_src(product.get("image"))


def index_product(image_map: ImageMap, product: Dict[str, Any], cdn_host: Optional[str] = None) -> None:
    """Record the product's image and one per variant (own image wins over the product's)."""
    if not isinstance(product, dict) or canonical_id(product.get("id")) is None:
        return
    best = clean_image_url(pick_product_image(product), cdn_host)
    if best:
        image_map[product["id"]] = best

    by_image_id: Dict[str, str] = {}
    for img in product.get("images") or []:
        if isinstance(img, dict):
            src = clean_image_url(image_src(img), cdn_host)
            img_id = canonical_id(img.get("id"))
            if src and img_id:
                by_image_id[img_id] = src

    for variant in product.get("variants") or []:
        if not isinstance(variant, dict):
            continue
        own = by_image_id.get(canonical_id(variant.get("image_id")) or "")
        url = own or best
        if url:
            image_map[variant.get("id")] = url


class ImageResolver:
    def __init__(
        self,
        service: ShopifyService,
        batch_size: Optional[int] = None,
        individual_cap: Optional[int] = None,
        concurrency: Optional[int] = None,
        cdn_host: Optional[str] = None,
    ):
        self.service = service
        self.batch_size = min(50, batch_size or settings.image_batch_size)
        self.individual_cap = settings.image_individual_fetch_cap if individual_cap is None else individual_cap
        self.concurrency = max(1, concurrency or settings.image_individual_concurrency)
        self.cdn_host = cdn_host or settings.shopify_cdn_host

    def resolve(self, product_ids: Iterable[Any], variant_ids: Iterable[Any] = ()) -> ImageMap:
        """
        Best-effort id -> URL map for the given products and their variants.

        Batch failures are logged and skipped. Raises ShopifyUnavailableError
        only when every request failed because the host could not be reached.
        Auth failures propagate as ShopifyAuthError.
        """
        image_map = ImageMap()
        pids = sorted({pid for pid in (canonical_id(p) for p in product_ids) if pid})
        wanted_variants = {vid for vid in (canonical_id(v) for v in variant_ids) if vid}
        if not pids:
            return image_map

        attempted = 0
        unreachable = 0

        for n, batch in enumerate(chunked(pids, self.batch_size)):
            if n:
                self.service.throttle()
            attempted += 1
            result = self.service.fetch_products(batch)
            if not result.ok:
                unreachable += result.status is ApiStatus.UNREACHABLE
                logger.warning("Product batch %d (%d ids) failed: %s", n + 1, len(batch), result.error)
                continue
            for product in result.data:
                index_product(image_map, product, self.cdn_host)

        missing = [pid for pid in pids if pid not in image_map][: self.individual_cap]
        if missing:
            logger.info("Re-fetching %d products individually", len(missing))
            for n, group in enumerate(chunked(missing, self.concurrency)):
                if n:
                    self.service.throttle(settings.image_individual_delay_seconds)
                with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                    results: List[ApiResult] = list(pool.map(self.service.fetch_product, group))
                for pid, result in zip(group, results):
                    attempted += 1
                    if not result.ok:
                        unreachable += result.status is ApiStatus.UNREACHABLE
                        logger.warning("Product %s fetch failed: %s", pid, result.error)
                        continue
                    for product in result.data:
                        index_product(image_map, product, self.cdn_host)

        if attempted and unreachable == attempted:
            raise ShopifyUnavailableError(f"Cannot reach {self.service.store_url} for product images")

        unresolved_variants = [v for v in wanted_variants if v not in image_map]
        logger.info(
            "Resolved images for %d/%d products (%d variants without an image)",
            sum(1 for pid in pids if pid in image_map), len(pids), len(unresolved_variants),
        )
        return image_map
