"""Stage newly published GDELT files in GCS.

One `run_once()` call is one scheduler tick:
1. Fetch the current listing
2. For each file of a configured kind not already staged: download,
   verify, decompress, upload gzipped with a create-only precondition
3. Delete the local working copies whatever the outcome

"Already staged" is the only dedup: a file that fails is retried on the
next tick, and re-fetching a staged file is harmless because the upload is
create-only.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from extractor.gdelt import GdeltFetchError, GdeltSource, SourceFile
from utils.config import Settings
from utils.gcs import GCSClient, GCSError, GCSPreconditionError, build_raw_path

logger = logging.getLogger(__name__)


class Extractor:
    """Stages GDELT files from the source endpoint into the raw/ namespace."""

    def __init__(
        self,
        settings: Settings,
        gcs: GCSClient,
        *,
        source_factory: Callable[[str], GdeltSource] = GdeltSource,
        work_dir: Optional[str | Path] = None,
    ) -> None:
        self._settings = settings
        self._gcs = gcs
        self._source_factory = source_factory
        self._work_dir = Path(work_dir) if work_dir else None

    def target_uri(self, source_file: SourceFile) -> str:
        return build_raw_path(
            bucket=self._settings.gcs_bucket,
            kind=source_file.kind,
            batch_timestamp=source_file.batch_timestamp,
            filename=source_file.csv_name,
        )

    async def run_once(self) -> Dict[str, Any]:
        """Stage every published file not yet in the bucket.

        Returns:
            Dict with published, staged, skipped, failed counts and the
            list of staged object URIs
        """
        started = datetime.now(timezone.utc)
        staged: List[str] = []
        skipped = 0
        failed = 0

        async with self._source_factory(self._settings.gdelt_lastupdate_url) as source:
            published = [
                f for f in await source.list_published()
                if f.kind in self._settings.gdelt_file_kinds
            ]

            for source_file in published:
                uri = self.target_uri(source_file)
                try:
                    if await asyncio.to_thread(self._gcs.exists, uri):
                        logger.info(f"[Extractor] Already staged: {uri}")
                        skipped += 1
                        continue

                    if await self._stage(source, source_file, uri):
                        staged.append(uri)
                    else:
                        skipped += 1
                except (GdeltFetchError, GCSError, OSError) as e:
                    failed += 1
                    logger.error(f"[Extractor] Failed to stage {source_file.name}: {e}", exc_info=True)

        duration = (datetime.now(timezone.utc) - started).total_seconds()
        result = {
            "published": len(published),
            "staged": len(staged),
            "skipped": skipped,
            "failed": failed,
            "objects": staged,
            "duration_seconds": duration,
        }
        logger.info(
            f"[Extractor] Tick complete: staged={len(staged)} skipped={skipped} "
            f"failed={failed} in {duration:.1f}s"
        )
        return result

    async def _stage(self, source: GdeltSource, source_file: SourceFile, uri: str) -> bool:
        """Download one file and upload it; False if another writer got there first."""
        with tempfile.TemporaryDirectory(prefix="gdelt_", dir=self._work_dir) as tmp:
            local_csv = await source.download(source_file, tmp)
            try:
                metadata = await asyncio.to_thread(
                    self._gcs.upload_file, local_csv, uri, compress=True, if_absent=True
                )
                logger.info(f"[Extractor] Staged {source_file.name} → {metadata['gs_uri']}")
                return True
            except GCSPreconditionError:
                logger.info(f"[Extractor] Staged concurrently by another run: {uri}")
                return False
            finally:
                local_csv.unlink(missing_ok=True)
