"""Age-based retention for staged raw objects.

Policy model:
- An object whose creation time is older than `now - retention` is deleted
- Anything newer is left untouched
- Deleting an object that is already gone counts as pruned, so the pass is
  idempotent and safe to run from more than one scheduler

Readers select inputs with `list_safe_objects`, which stops short of the
retention edge by a safety margin, so a prune pass never removes an object
that a concurrent transform has just selected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from utils.gcs import GCSClient, GCSError, RAW_PREFIX
from utils.schemas import StagedObject

logger = logging.getLogger(__name__)


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def prune_staged(
    gcs: GCSClient,
    bucket: str,
    *,
    prefix: str = RAW_PREFIX,
    retention: timedelta = timedelta(hours=24),
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Delete objects under `prefix` created before `now - retention`.

    Returns:
        Dict with examined, expired, deleted, already_gone, kept, errors
        counts and the cutoff used
    """
    if retention <= timedelta(0):
        raise ValueError(f"Retention must be positive, got {retention}")

    cutoff = _now(now) - retention
    objects = gcs.list_blobs(bucket, prefix=prefix)

    counts = {"examined": len(objects), "expired": 0, "deleted": 0, "already_gone": 0, "kept": 0, "errors": 0}

    for obj in objects:
        if obj.created is None:
            # No creation time means we cannot prove it expired.
            logger.warning(f"[Retention] No creation time for {obj.gs_uri}, keeping")
            counts["kept"] += 1
            continue

        if obj.created >= cutoff:
            counts["kept"] += 1
            continue

        counts["expired"] += 1
        if dry_run:
            logger.info(f"[Retention] Would delete {obj.gs_uri} (created {obj.created.isoformat()})")
            continue

        try:
            if gcs.delete_blob(obj.gs_uri):
                counts["deleted"] += 1
                logger.info(f"[Retention] Deleted {obj.gs_uri} (created {obj.created.isoformat()})")
            else:
                counts["already_gone"] += 1
        except GCSError as e:
            counts["errors"] += 1
            logger.error(f"[Retention] Failed to delete {obj.gs_uri}: {e}")

    logger.info(
        f"[Retention] gs://{bucket}/{prefix}: examined={counts['examined']} "
        f"expired={counts['expired']} deleted={counts['deleted']} kept={counts['kept']} "
        f"errors={counts['errors']}{' (dry run)' if dry_run else ''}"
    )
    return {**counts, "cutoff": cutoff.isoformat(), "dry_run": dry_run}


def list_safe_objects(
    gcs: GCSClient,
    bucket: str,
    *,
    prefix: str,
    retention: timedelta,
    safety_margin: timedelta,
    now: Optional[datetime] = None,
) -> List[StagedObject]:
    """Objects young enough to outlive a transform run started now.

    Selects objects created within `retention - safety_margin` of `now`,
    oldest first.
    """
    window = retention - safety_margin
    if window <= timedelta(0):
        raise ValueError(
            f"Safety margin {safety_margin} must be shorter than retention {retention}"
        )

    earliest = _now(now) - window
    selected = [
        obj for obj in gcs.list_blobs(bucket, prefix=prefix)
        if obj.created is not None and obj.created >= earliest
    ]
    selected.sort(key=lambda obj: (obj.created, obj.name))
    logger.info(f"[Retention] {len(selected)} objects under gs://{bucket}/{prefix} inside the safe window")
    return selected
