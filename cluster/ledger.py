"""Transform ledger: which staged GKG files have already been aggregated.

The ledger is one JSON document in the staging bucket mapping each
transformed input URI to the run that consumed it. A tick reads it, selects
only inputs it does not list, and commits the run's inputs after the Spark
job succeeds. Every input therefore lands in exactly one committed run, and
the sum across runs in the store counts each record once.

Commits are conditional on the generation read at selection time. A second
worker that selected the same backlog loses the race with
`LedgerConflictError`, and its run is never marked loadable.

After the ledger commit, a `_MANIFEST` object is written into the run's
output directory. Loading keys on that marker rather than Spark's
`_SUCCESS`, so uncommitted output never reaches BigQuery.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional, Sequence

from utils.gcs import GCSClient, GCSPreconditionError, STATE_PREFIX

logger = logging.getLogger(__name__)

LEDGER_NAME = "transform_ledger.json"
MANIFEST_NAME = "_MANIFEST"


class LedgerConflictError(Exception):
    """Raised when the ledger changed between selection and commit."""


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    run_id: str
    committed_at: datetime


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """The ledger as read at selection time."""

    entries: Mapping[str, LedgerEntry] = field(default_factory=dict)
    generation: int = 0  # 0: no ledger yet

    def __contains__(self, uri: object) -> bool:
        return uri in self.entries


class TransformLedger:
    def __init__(self, gcs: GCSClient, bucket: str) -> None:
        self._gcs = gcs
        self.uri = f"gs://{bucket}/{STATE_PREFIX}{LEDGER_NAME}"

    def read(self) -> LedgerSnapshot:
        document, generation = self._gcs.read_json(self.uri)
        if document is None:
            logger.info(f"[Ledger] No ledger at {self.uri}; starting empty")
            return LedgerSnapshot()

        entries = {
            uri: LedgerEntry(
                run_id=entry["run_id"],
                committed_at=datetime.fromisoformat(entry["committed_at"]),
            )
            for uri, entry in document.get("transformed", {}).items()
        }
        logger.info(f"[Ledger] {len(entries)} transformed inputs (generation {generation})")
        return LedgerSnapshot(entries=entries, generation=generation)

    def commit(
        self,
        snapshot: LedgerSnapshot,
        run_id: str,
        inputs: Sequence[str],
        *,
        retention: timedelta,
        now: Optional[datetime] = None,
    ) -> int:
        """Record `inputs` as consumed by `run_id`; returns the new generation.

        Entries committed more than `retention` ago are dropped: their
        inputs were created before that, so retention has removed them and
        they can no longer be selected.

        Raises:
            LedgerConflictError: Another run committed since `snapshot` was read.
        """
        now = now or datetime.now(timezone.utc)
        horizon = now - retention

        entries: Dict[str, LedgerEntry] = {
            uri: entry for uri, entry in snapshot.entries.items() if entry.committed_at >= horizon
        }
        already = [uri for uri in inputs if uri in entries]
        if already:
            raise LedgerConflictError(f"{len(already)} inputs already committed, e.g. {already[0]}")
        for uri in inputs:
            entries[uri] = LedgerEntry(run_id=run_id, committed_at=now)

        document = {
            "updated": now.isoformat(),
            "transformed": {
                uri: {"run_id": entry.run_id, "committed_at": entry.committed_at.isoformat()}
                for uri, entry in sorted(entries.items())
            },
        }
        try:
            generation = self._gcs.write_json(self.uri, document, if_generation_match=snapshot.generation)
        except GCSPreconditionError as e:
            raise LedgerConflictError(
                f"Ledger {self.uri} changed since generation {snapshot.generation}; "
                f"run {run_id} is not committed"
            ) from e

        logger.info(f"[Ledger] Committed {len(inputs)} inputs for run {run_id} (generation {generation})")
        return generation


def write_manifest(
    gcs: GCSClient,
    output_uri: str,
    run_id: str,
    inputs: Sequence[str],
    now: Optional[datetime] = None,
) -> str:
    """Mark a committed run's output as ready to load; returns the marker URI."""
    manifest_uri = f"{output_uri.rstrip('/')}/{MANIFEST_NAME}"
    gcs.write_json(
        manifest_uri,
        {
            "run_id": run_id,
            "output_uri": output_uri,
            "inputs": list(inputs),
            "committed_at": (now or datetime.now(timezone.utc)).isoformat(),
        },
        if_generation_match=0,
    )
    return manifest_uri
