# utils.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, List, Optional, TypeVar

from config import settings

T = TypeVar("T")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def get_logger(name: str) -> logging.Logger:
    """Named logger with a single stream handler attached."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(settings.log_level.upper())
    return logger


# ---------------------------------------------------------------------------
# Upstream identifiers
# ---------------------------------------------------------------------------

def canonical_id(value: Any) -> Optional[str]:
    """
    Single canonical form for upstream ids.

    Shopify hands out the same id as an int (REST), a float after a JSON
    round-trip through some clients, a numeric string, or a GraphQL gid
    (gid://shopify/Product/123). All of them become the plain digit string.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else None
    s = str(value).strip()
    if not s or s.lower() in ("null", "undefined", "none"):
        return None
    if s.startswith("gid://"):
        s = s.rsplit("/", 1)[-1].split("?", 1)[0]
    if s.endswith(".0") and s[:-2].isdigit():
        s = s[:-2]
    return s or None


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def to_float(val: Any, default: float = 0.0) -> float:
    if val is None or val == "":
        return default
    try:
        return float(val)
    except (TypeError, ValueError):
        return default


def parse_dt(val) -> Optional[datetime]:
    """
    Parse ISO/Shopify timestamps and return TZ-aware UTC datetimes.
    """
    if not val:
        return None
    if isinstance(val, datetime):
        return val.astimezone(timezone.utc) if val.tzinfo else val.replace(tzinfo=timezone.utc)
    try:
        s = str(val).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        if " " in s and "T" not in s:
            s = s.replace(" ", "T")
        dt = datetime.fromisoformat(s)
        return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


# ---------------------------------------------------------------------------
# Image URLs
# ---------------------------------------------------------------------------

def clean_image_url(url: Any, cdn_host: Optional[str] = None) -> Optional[str]:
    """
    Drop empty/sentinel values and make relative CDN paths absolute.
    data: URLs are returned as-is.
    """
    if url is None or not isinstance(url, str):
        return None
    s = url.strip()
    if not s or s.lower() in ("null", "undefined"):
        return None
    if s.startswith(("http://", "https://", "data:")):
        return s
    if s.startswith("//"):
        return "https:" + s
    host = (cdn_host or settings.shopify_cdn_host).rstrip("/")
    if not s.startswith("/"):
        s = "/" + s
    return host + s
