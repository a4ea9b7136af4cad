# services/order_sync_runner.py
from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from database import SessionLocal

import models
import schemas
from config import settings
from crud import order as crud_order
from services.image_resolver import ImageMap, ImageResolver
from services.order_normalizer import LineItemRecord, normalize
from services.order_upsert import INSERTED, OrderLocks, upsert_order
from services.sync_tracker import DedupeStore, SyncTracker
from shopify_service import ShopifyAuthError, ShopifyError, ShopifyService, ShopifyUnavailableError
from utils import canonical_id, get_logger, now_utc, parse_dt

logger = get_logger("orders-sync")

ORDER_TOPICS = {
    "orders/create",
    "orders/updated",
    "orders/paid",
    "orders/cancelled",
    "orders/fulfilled",
    "orders/partially_fulfilled",
    "orders/edited",
}


def collect_image_ids(raw_orders: Iterable[Dict[str, Any]]) -> Tuple[Set[str], Set[str]]:
    """Product and variant ids referenced anywhere in the payloads (line items, fulfillments, refunds)."""
    product_ids: Set[str] = set()
    variant_ids: Set[str] = set()

    def take(item: Any) -> None:
        if not isinstance(item, dict):
            return
        pid = canonical_id(item.get("product_id"))
        vid = canonical_id(item.get("variant_id"))
        if pid:
            product_ids.add(pid)
        if vid:
            variant_ids.add(vid)

    for raw in raw_orders:
        for item in raw.get("line_items") or []:
            take(item)
        for fulfillment in raw.get("fulfillments") or []:
            for item in (fulfillment or {}).get("line_items") or []:
                take(item)
        for refund in raw.get("refunds") or []:
            for rli in (refund or {}).get("refund_line_items") or []:
                take((rli or {}).get("line_item"))
    return product_ids, variant_ids


class OrderSyncRunner:
    """
    Drives Shopify -> datastore syncs: polling runs, webhooks, single-order
    resync, bulk resync and image backfill. Orders are processed one at a
    time; each order is committed on its own so one failure never rolls back
    the others.
    """

    def __init__(
        self,
        db_factory: Callable[[], Session] = SessionLocal,
        service_factory: Callable[[], ShopifyService] = ShopifyService,
        tracker: Optional[SyncTracker] = None,
        dedupe: Optional[DedupeStore] = None,
        locks: Optional[OrderLocks] = None,
        resync_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_factory = db_factory
        self.service_factory = service_factory
        self.tracker = tracker or SyncTracker()
        self.dedupe = dedupe or DedupeStore(settings.webhook_dedupe_capacity)
        self.locks = locks or OrderLocks()
        self.resync_delay = settings.resync_delay_seconds if resync_delay is None else resync_delay
        self._sleep = sleep

    # ------------------------------------------------------------------
    # shared pipeline
    # ------------------------------------------------------------------

    def _image_map(self, service: ShopifyService, raw_orders: List[Dict[str, Any]]) -> ImageMap:
        product_ids, variant_ids = collect_image_ids(raw_orders)
        return ImageResolver(service).resolve(product_ids, variant_ids)

    def _process(self, db: Session, raw: Dict[str, Any], image_map: ImageMap, summary: schemas.SyncSummary) -> Optional[str]:
        ref = str(raw.get("name") or raw.get("id") or "?")
        try:
            normalized = normalize(raw, image_map)
        except ValueError as e:
            summary.skipped += 1
            summary.errors.append(schemas.SyncError(order_id=ref, error=f"Invalid order payload: {e}"))
            logger.warning("Skipping order %s: %s", ref, e)
            return None

        try:
            with self.locks.hold(normalized.shopify_order_id):
                outcome = upsert_order(db, normalized)
                db.commit()
        except Exception as e:
            db.rollback()
            logger.exception("Order %s failed to save", normalized.order_id)
            summary.errors.append(schemas.SyncError(order_id=normalized.order_id, error=str(e)))
            return None

        if outcome == INSERTED:
            summary.imported += 1
        else:
            summary.updated += 1
        return outcome

    def _sync_raw_orders(
        self,
        db: Session,
        service: ShopifyService,
        raw_orders: List[Dict[str, Any]],
        summary: schemas.SyncSummary,
        task_id: Optional[str] = None,
    ) -> None:
        image_map = self._image_map(service, raw_orders)
        for n, raw in enumerate(raw_orders, start=1):
            self._process(db, raw, image_map, summary)
            if task_id and (n % 25 == 0 or n == len(raw_orders)):
                self.tracker.step(task_id, n, note=f"Synced {n}/{len(raw_orders)} orders", total=len(raw_orders))

    # ------------------------------------------------------------------
    # polling
    # ------------------------------------------------------------------

    def run_sync(
        self,
        updated_at_min: Optional[str] = None,
        source: str = "manual",
        task_id: Optional[str] = None,
    ) -> schemas.SyncSummary:
        """
        Full pass over Shopify orders (or those updated since `updated_at_min`).
        Auth failures and an unreachable host end the run and propagate.
        """
        db: Session = self.db_factory()
        summary = schemas.SyncSummary(success=True)
        run = models.SyncRun(source=source, status="running", updated_at_min=parse_dt(updated_at_min))
        db.add(run)
        db.commit()
        pages = (0, 0)
        try:
            service = self.service_factory()
            self.tracker.step(task_id, 0, note="Fetching orders from Shopify...")
            listing = service.list_orders(updated_at_min=updated_at_min)
            pages = (listing.pages_ok, listing.pages_failed)
            summary.errors.extend(schemas.SyncError(error=msg) for msg in listing.errors)
            summary.total = len(listing.orders)
            logger.info("Fetched %d orders (%d pages, %d failed)", summary.total, listing.pages_ok, listing.pages_failed)

            self._sync_raw_orders(db, service, listing.orders, summary, task_id)
            run.status = "completed_with_errors" if summary.errors else "completed"
        except Exception as e:
            summary.success = False
            summary.errors.append(schemas.SyncError(error=str(e)))
            run.status = "failed"
            raise
        finally:
            run.pages_ok, run.pages_failed = pages
            run.imported, run.updated = summary.imported, summary.updated
            run.skipped, run.total = summary.skipped, summary.total
            run.errors = [err.model_dump() for err in summary.errors]
            run.finished_at = now_utc()
            db.commit()
            self.tracker.finish_task(
                task_id, ok=summary.success,
                note=f"Imported {summary.imported}, updated {summary.updated}, errors {len(summary.errors)}",
            )
            db.close()
            logger.info(
                "Sync run (%s) finished: imported=%d updated=%d skipped=%d errors=%d",
                source, summary.imported, summary.updated, summary.skipped, len(summary.errors),
            )
        return summary

    def sync_recent(self, hours: Optional[int] = None, source: str = "poll") -> schemas.SyncSummary:
        since = now_utc() - timedelta(hours=hours or settings.sync_poll_window_hours)
        return self.run_sync(updated_at_min=since.isoformat(), source=source)

    # ------------------------------------------------------------------
    # single order / webhook
    # ------------------------------------------------------------------

    def sync_single_order(self, shopify_order_id: Any) -> schemas.SyncSummary:
        service = self.service_factory()
        raw = service.get_order(shopify_order_id)
        if raw is None:
            raise crud_order.OrderNotFoundError(f"Shopify order {shopify_order_id} not found")
        return self.sync_payload(raw, service=service)

    def sync_payload(self, raw: Dict[str, Any], service: Optional[ShopifyService] = None) -> schemas.SyncSummary:
        db: Session = self.db_factory()
        summary = schemas.SyncSummary(success=True, total=1)
        try:
            self._sync_raw_orders(db, service or self.service_factory(), [raw], summary)
        finally:
            db.close()
        summary.success = not summary.errors
        return summary

    def handle_webhook(self, topic: Optional[str], payload: Dict[str, Any], webhook_id: Optional[str] = None) -> Dict[str, Any]:
        """
        One order-changed event, processed synchronously. Duplicate deliveries
        (same webhook id) are acknowledged without work; a failed delivery is
        forgotten again so Shopify's retry gets processed.
        """
        if not self.dedupe.add(webhook_id):
            logger.info("Webhook %s already handled, skipping", webhook_id)
            return {"success": True, "duplicate": True}
        if topic not in ORDER_TOPICS:
            logger.info("Ignoring webhook topic %s", topic)
            return {"success": True, "ignored": True, "topic": topic}

        try:
            if topic == "orders/edited" or not payload.get("line_items"):
                order_ref = (payload.get("order_edit") or {}).get("order_id") or payload.get("id")
                summary = self.sync_single_order(order_ref)
            else:
                summary = self.sync_payload(payload)
        except Exception:
            self.dedupe.discard(webhook_id)
            raise
        if not summary.success:
            self.dedupe.discard(webhook_id)
        return {"topic": topic, **summary.model_dump()}

    # ------------------------------------------------------------------
    # bulk maintenance
    # ------------------------------------------------------------------

    def resync_known_orders(self, task_id: Optional[str] = None) -> schemas.SyncSummary:
        """Re-fetch every stored Shopify order one by one, pausing between calls."""
        db: Session = self.db_factory()
        try:
            ids = crud_order.shopify_order_ids(db)
        finally:
            db.close()

        summary = schemas.SyncSummary(success=True, total=len(ids))
        self.tracker.step(task_id, 0, note=f"Resyncing {len(ids)} orders", total=len(ids))
        try:
            for n, sid in enumerate(ids, start=1):
                if n > 1:
                    self._sleep(self.resync_delay)
                try:
                    result = self.sync_single_order(sid)
                except crud_order.OrderNotFoundError as e:
                    summary.skipped += 1
                    summary.errors.append(schemas.SyncError(order_id=sid, error=str(e)))
                    continue
                except (ShopifyAuthError, ShopifyUnavailableError):
                    raise
                except ShopifyError as e:
                    logger.warning("Order %s: resync failed: %s", sid, e)
                    summary.errors.append(schemas.SyncError(order_id=sid, error=str(e)))
                    continue
                finally:
                    self.tracker.step(task_id, n, note=f"Resynced {n}/{len(ids)}")
                summary.imported += result.imported
                summary.updated += result.updated
                summary.errors.extend(result.errors)
        except Exception as e:
            summary.success = False
            summary.errors.append(schemas.SyncError(error=str(e)))
            raise
        finally:
            self.tracker.finish_task(
                task_id, ok=summary.success,
                note=f"Updated {summary.updated}, errors {len(summary.errors)}",
            )
        return summary

    def resync_images(self, task_id: Optional[str] = None) -> Dict[str, Any]:
        """Fill in missing item images; an order's image set only ever grows."""
        db: Session = self.db_factory()
        updated = 0
        try:
            orders = crud_order.orders_with_missing_images(db)
            rows = [item for order in orders for item in order.items if not item.image_url]
            product_ids = {r.product_id for r in rows if r.product_id}
            variant_ids = {r.variant_id for r in rows if r.variant_id}
            self.tracker.step(task_id, 0, note=f"Resolving images for {len(orders)} orders", total=len(orders))
            image_map = ImageResolver(self.service_factory()).resolve(product_ids, variant_ids)

            for n, order in enumerate(orders, start=1):
                changed = False
                images = dict(order.product_images or {})
                for item in order.items:
                    if item.image_url:
                        continue
                    url = image_map.get(item.variant_id) or image_map.get(item.product_id)
                    if url:
                        item.image_url = url
                        changed = True
                        for key in (item.product_id, item.variant_id):
                            if key:
                                images.setdefault(key, url)
                if not changed:
                    continue
                if len(images) > len(order.product_images or {}):
                    order.product_images = images
                order.line_items = [LineItemRecord.from_row(row).summary() for row in order.items]
                try:
                    db.commit()
                    updated += 1
                except Exception:
                    db.rollback()
                    logger.exception("Order %s: image update failed", order.order_id)
                self.tracker.step(task_id, n)
        finally:
            db.close()
        self.tracker.finish_task(task_id, ok=True, note=f"Updated images on {updated} orders")
        return {"success": True, "updated": updated, "total": len(orders)}
