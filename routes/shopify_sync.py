from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from config import settings
from crud.order import OrderNotFoundError
from schemas import SyncSummary
from services.order_sync_runner import OrderSyncRunner
from shopify_service import ShopifyAuthError, ShopifyError, ShopifyUnavailableError, token_hints

router = APIRouter(prefix="/api/shopify", tags=["Shopify Sync"])


def get_runner(request: Request) -> OrderSyncRunner:
    return request.app.state.sync_runner


def _upstream_error(e: ShopifyError) -> HTTPException:
    if isinstance(e, ShopifyAuthError):
        return HTTPException(status_code=401, detail={"error": str(e), "token": e.hints})
    if isinstance(e, ShopifyUnavailableError):
        return HTTPException(status_code=502, detail={"error": str(e)})
    return HTTPException(status_code=502, detail={"error": f"Shopify error: {e}"})


@router.get("/sync", response_model=SyncSummary)
def trigger_full_sync(
    hours: Optional[int] = Query(None, ge=1, description="Only orders updated in the last N hours"),
    runner: OrderSyncRunner = Depends(get_runner),
) -> SyncSummary:
    try:
        if hours:
            return runner.sync_recent(hours=hours, source="manual")
        return runner.run_sync(source="manual")
    except ShopifyError as e:
        raise _upstream_error(e)


@router.post("/sync-order/{shopify_order_id}", response_model=SyncSummary)
def trigger_order_sync(shopify_order_id: str, runner: OrderSyncRunner = Depends(get_runner)) -> SyncSummary:
    try:
        summary = runner.sync_single_order(shopify_order_id)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail={"error": str(e)})
    except ShopifyError as e:
        raise _upstream_error(e)
    if not summary.success:
        raise HTTPException(status_code=500, detail=summary.model_dump())
    return summary


@router.post("/resync-all")
def trigger_resync_all(background_tasks: BackgroundTasks, runner: OrderSyncRunner = Depends(get_runner)) -> Dict[str, Any]:
    task_id = runner.tracker.add_task("Resync all Shopify orders")
    background_tasks.add_task(runner.resync_known_orders, task_id)
    return {"status": "ok", "message": "Resync of all orders started.", "task_id": task_id}


@router.get("/resync-images")
def trigger_image_resync(runner: OrderSyncRunner = Depends(get_runner)) -> Dict[str, Any]:
    try:
        return runner.resync_images()
    except ShopifyError as e:
        raise _upstream_error(e)


@router.get("/sync/status")
def get_sync_status(runner: OrderSyncRunner = Depends(get_runner)) -> Dict[str, Any]:
    runner.tracker.clear_finished(older_than_seconds=3600)
    return {"tasks": runner.tracker.list_tasks()}


@router.get("/health")
def shopify_health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "store_url": settings.shopify_store_url or None,
        "store_configured": bool(settings.shopify_store_url),
        "api_versions": settings.api_versions,
        "poll_enabled": settings.sync_poll_enabled,
        "poll_interval_minutes": settings.sync_poll_interval_minutes,
        "token": token_hints(settings.shopify_access_token),
    }


@router.get("/test")
def shopify_test_connection(runner: OrderSyncRunner = Depends(get_runner)) -> Dict[str, Any]:
    return runner.service_factory().test_connection()
