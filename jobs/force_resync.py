# jobs/force_resync.py
"""
Re-sync every stored Shopify order through the running server's per-order
endpoint, one call at a time with a pause in between.

Usage:
    python -m jobs.force_resync [--base-url http://localhost:8000] [--delay 1.0]
"""
import argparse
import time
from typing import Any, Callable, Dict, Optional

import requests
from sqlalchemy.orm import Session

from config import settings
from crud import order as crud_order
from database import SessionLocal


def force_resync_all(
    db_factory=SessionLocal,
    base_url: Optional[str] = None,
    delay: Optional[float] = None,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    base_url = (base_url or settings.sync_server_url).rstrip("/")
    delay = settings.resync_delay_seconds if delay is None else delay
    http = session or requests.Session()

    db: Session = db_factory()
    try:
        ids = crud_order.shopify_order_ids(db)
    finally:
        db.close()

    print(f"--- Force resync of {len(ids)} orders via {base_url} ---")
    results: Dict[str, Any] = {"total": len(ids), "updated": 0, "imported": 0, "failed": 0, "errors": []}

    for n, sid in enumerate(ids, start=1):
        if n > 1:
            sleep(delay)
        try:
            response = http.post(f"{base_url}/api/shopify/sync-order/{sid}", timeout=settings.shopify_timeout_seconds)
            response.raise_for_status()
            body = response.json()
            results["updated"] += body.get("updated", 0)
            results["imported"] += body.get("imported", 0)
        except (requests.exceptions.RequestException, ValueError) as e:
            results["failed"] += 1
            results["errors"].append({"order_id": sid, "error": str(e)})
            print(f"[{n}/{len(ids)}] {sid}: FAILED {e}")
            continue
        if n % 25 == 0 or n == len(ids):
            print(f"[{n}/{len(ids)}] done")

    print(f"--- Force resync finished: updated={results['updated']} imported={results['imported']} failed={results['failed']} ---")
    return results


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Re-sync all stored Shopify orders")
    parser.add_argument("--base-url", default=None, help="Sync server URL (default: SYNC_SERVER_URL)")
    parser.add_argument("--delay", type=float, default=None, help="Seconds between calls")
    args = parser.parse_args(argv)
    results = force_resync_all(base_url=args.base_url, delay=args.delay)
    return 1 if results["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
