"""
Dashboard aggregate counts (pending / applied / ...).

Counts are derived from change_records, never stored. They are cached per
merchant for a short TTL and every status transition drops the merchant's
entry, so observers never see a count that predates a transition.
"""
import logging
import threading
import time

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import ChangeRecord
from app.settings import settings

logger = logging.getLogger(__name__)

_counts_cache: dict[str, dict] = {}
# bumped on every invalidation; a query started before a bump must not be cached
_generations: dict[str, int] = {}
_cache_lock = threading.Lock()

# dashboard label -> stored status
_STATUS_KEYS = {
    "pending": "pending",
    "running": "running",
    "applied": "completed",
    "dry_run": "dry_run",
    "failed": "failed",
    "rolled_back": "rolled_back",
    "rejected": "rejected",
}


def invalidate_counts(merchant_id: str | None = None) -> None:
    with _cache_lock:
        if merchant_id is None:
            _counts_cache.clear()
            for key in _generations:
                _generations[key] += 1
        else:
            _counts_cache.pop(merchant_id, None)
            _generations[merchant_id] = _generations.get(merchant_id, 0) + 1
    logger.debug(f"[ChangeStats] Invalidated counts cache (merchant={merchant_id or '*'})")


def get_counts(db: Session, merchant_id: str, ttl: int | None = None) -> dict[str, int]:
    ttl = settings.stats_cache_ttl if ttl is None else ttl
    now = time.monotonic()
    with _cache_lock:
        entry = _counts_cache.get(merchant_id)
        if entry is not None and (now - entry["timestamp"]) < ttl:
            return dict(entry["data"])
        generation = _generations.get(merchant_id, 0)

    stmt = (
        select(ChangeRecord.status, func.count(ChangeRecord.id))
        .where(ChangeRecord.merchant_id == merchant_id)
        .group_by(ChangeRecord.status)
    )
    by_status = {status: count for status, count in db.execute(stmt).all()}
    data = {label: int(by_status.get(status, 0)) for label, status in _STATUS_KEYS.items()}

    with _cache_lock:
        if _generations.get(merchant_id, 0) == generation:
            _counts_cache[merchant_id] = {"data": data, "timestamp": now}
    return dict(data)
