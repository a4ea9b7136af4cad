# routes/webhooks.py
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Header, HTTPException

from crud.order import OrderNotFoundError
from routes.shopify_sync import get_runner
from services.order_sync_runner import OrderSyncRunner
from shopify_service import ShopifyError
from utils import get_logger

logger = get_logger("webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/shopify")
def receive_order_webhook(
    payload: Dict[str, Any] = Body(...),
    x_shopify_topic: str = Header(None),
    x_shopify_webhook_id: str = Header(None),
    runner: OrderSyncRunner = Depends(get_runner),
) -> Dict[str, Any]:
    """
    Order webhooks are processed synchronously so Shopify sees the outcome:
    any non-2xx response makes it redeliver. Signature checks happen in front
    of this service.
    """
    try:
        result = runner.handle_webhook(x_shopify_topic, payload, x_shopify_webhook_id)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail={"error": str(e)})
    except ShopifyError as e:
        logger.error("Webhook %s (%s) failed upstream: %s", x_shopify_webhook_id, x_shopify_topic, e)
        raise HTTPException(status_code=502, detail={"error": str(e)})

    if not result.get("success", False):
        raise HTTPException(status_code=500, detail=result)
    return result
