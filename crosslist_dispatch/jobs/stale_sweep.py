from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from crosslist_dispatch.core.platforms import STALE_DELIVERY_MESSAGE

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def is_stale(job: dict[str, Any], now: datetime | None = None, *, max_age_seconds: int = 900) -> bool:
    if job.get("status") != "processing":
        return False
    started_at = _parse_timestamp(job.get("started_at"))
    if started_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return started_at <= now - timedelta(seconds=max_age_seconds)


async def sweep_stale_processing(
    store: Any,
    *,
    max_age_seconds: int = 900,
    limit: int = 100,
    now: datetime | None = None,
) -> list[str]:
    """Fail jobs that were handed out but never reported back.

    Jobs are failed rather than re-queued: an agent that went silent may still
    have acted on the marketplace.
    """
    now = now or datetime.now(timezone.utc)
    rows = await store.list_stale_processing(
        started_before=now - timedelta(seconds=max_age_seconds),
        limit=limit,
    )
    stale_ids = [row["job_id"] for row in rows if is_stale(row, now, max_age_seconds=max_age_seconds)]
    if not stale_ids:
        return []

    failed = await store.transition(stale_ids, "processing", "failed", {"error_message": STALE_DELIVERY_MESSAGE})
    if failed:
        logger.warning("failed stale processing jobs count=%s job_ids=%s", len(failed), ",".join(failed))
    return failed
