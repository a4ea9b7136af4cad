# main.py
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

ROOT_DIR = Path(__file__).resolve().parent
sys.path.append(str(ROOT_DIR))

import models  # noqa: F401  (registers tables on Base)
from config import settings
from database import engine, Base, SessionLocal
from routes import orders, shopify_sync, webhooks
from services.order_sync_runner import OrderSyncRunner
from services.order_upsert import OrderLocks
from services.scheduler import start_scheduler, stop_scheduler
from services.sync_tracker import DedupeStore, SyncTracker
from shopify_service import ShopifyService
from utils import get_logger

logger = get_logger("main")


def build_runner() -> OrderSyncRunner:
    return OrderSyncRunner(
        db_factory=SessionLocal,
        service_factory=ShopifyService,
        tracker=SyncTracker(),
        dedupe=DedupeStore(settings.webhook_dedupe_capacity),
        locks=OrderLocks(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    scheduler = None
    if settings.sync_poll_enabled:
        if settings.shopify_store_url and settings.shopify_access_token:
            scheduler = start_scheduler(app.state.sync_runner, settings)
        else:
            logger.warning("Shopify credentials missing; polling disabled")
    try:
        yield
    finally:
        stop_scheduler(scheduler)


app = FastAPI(title="Orderflow Sync", lifespan=lifespan)
app.state.sync_runner = build_runner()

app.include_router(shopify_sync.router)
app.include_router(webhooks.router)
app.include_router(orders.router)


@app.get("/", response_class=RedirectResponse, include_in_schema=False)
async def read_root():
    return RedirectResponse(url="/api/shopify/health")
