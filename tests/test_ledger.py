"""Transform ledger tests (in-memory GCS)."""

from datetime import datetime, timedelta, timezone

import pytest

from cluster.ledger import LedgerConflictError, TransformLedger, write_manifest
from utils.gcs import GCSPreconditionError

NOW = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(hours=24)
A = "gs://bucket/raw/gkg/20240102100000/20240102100000.gkg.csv.gz"
B = "gs://bucket/raw/gkg/20240102110000/20240102110000.gkg.csv.gz"


@pytest.fixture
def ledger(fake_gcs):
    return TransformLedger(fake_gcs, "bucket")


def test_missing_ledger_reads_empty(ledger):
    snapshot = ledger.read()
    assert snapshot.generation == 0
    assert A not in snapshot


def test_commit_then_read(ledger):
    ledger.commit(ledger.read(), "run-1", [A], retention=DAY, now=NOW)

    snapshot = ledger.read()
    assert A in snapshot and B not in snapshot
    assert snapshot.entries[A].run_id == "run-1"
    assert snapshot.entries[A].committed_at == NOW


def test_commits_accumulate(ledger):
    ledger.commit(ledger.read(), "run-1", [A], retention=DAY, now=NOW)
    ledger.commit(ledger.read(), "run-2", [B], retention=DAY, now=NOW + timedelta(hours=1))

    entries = ledger.read().entries
    assert {uri: e.run_id for uri, e in entries.items()} == {A: "run-1", B: "run-2"}


def test_stale_snapshot_conflicts(ledger):
    stale = ledger.read()
    ledger.commit(ledger.read(), "run-1", [A], retention=DAY, now=NOW)

    with pytest.raises(LedgerConflictError, match="run-2 is not committed"):
        ledger.commit(stale, "run-2", [B], retention=DAY, now=NOW)

    assert B not in ledger.read()


def test_recommitting_an_input_conflicts(ledger):
    ledger.commit(ledger.read(), "run-1", [A], retention=DAY, now=NOW)
    with pytest.raises(LedgerConflictError):
        ledger.commit(ledger.read(), "run-2", [A], retention=DAY, now=NOW)


def test_entries_older_than_retention_are_dropped(ledger):
    ledger.commit(ledger.read(), "run-1", [A], retention=DAY, now=NOW)
    ledger.commit(ledger.read(), "run-2", [B], retention=DAY, now=NOW + timedelta(hours=25))

    assert set(ledger.read().entries) == {B}


def test_manifest_is_create_only(fake_gcs):
    uri = write_manifest(fake_gcs, "gs://bucket/aggregates/run-1/", "run-1", [A], NOW)

    assert uri == "gs://bucket/aggregates/run-1/_MANIFEST"
    assert fake_gcs.read_json(uri)[0]["inputs"] == [A]
    with pytest.raises(GCSPreconditionError):
        write_manifest(fake_gcs, "gs://bucket/aggregates/run-1", "run-1", [A], NOW)
