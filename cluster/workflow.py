"""Cluster workflow: provision → wait ready → submit transform → terminate → commit.

The cluster is held by `ClusterLease`, an async context manager that tears
it down exactly once on every exit path: success, job failure, timeout,
cancellation token and task cancellation. Every wait is bounded by
`poll_until` and observes the same cancellation token.

A scheduled tick only submits inputs the transform ledger does not list yet
and commits them once the job succeeds (see `cluster.ledger`).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Container, Dict, Optional, Sequence

from cluster.ledger import TransformLedger, write_manifest
from cluster.livy import LivyClient
from cluster.package import verify_job_package
from cluster.provider import ClusterHandle, ClusterProvider
from etl.gkg import ThemeFieldSpec
from extractor.retention import list_safe_objects
from utils.config import Settings
from utils.gcs import GCSClient, RAW_PREFIX, build_aggregate_path
from utils.retry import RetryPolicy, poll_until, retry_async_call

logger = logging.getLogger(__name__)

SESSION_CLOSE_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class TransformJob:
    """One submission of the Spark transform."""

    input_uris: tuple[str, ...]
    output_uri: str
    precision: int = 7
    field_spec: ThemeFieldSpec = ThemeFieldSpec()


def build_statement(job: TransformJob) -> str:
    """Render the PySpark statement posted to the Livy session.

    The job package is shipped with the session's pyFiles; `spark` is the
    session's SparkSession. Values are embedded with repr() so they are
    valid Python literals.
    """
    theme_field = job.field_spec
    return (
        "from etl.spark_job import run_job\n"
        "result = run_job(\n"
        "    spark,\n"
        f"    {list(job.input_uris)!r},\n"
        f"    {job.output_uri!r},\n"
        f"    precision={job.precision!r},\n"
        f"    field_index={theme_field.index!r},\n"
        f"    token_separator={theme_field.token_separator!r},\n"
        f"    score_separator={theme_field.score_separator!r},\n"
        f"    skip_count_tags={theme_field.skip_count_tags!r},\n"
        ")\n"
        "print(result)\n"
    )


class ClusterLease:
    """Holds one cluster for the duration of an `async with` block.

    Entering creates the cluster and waits until it is ready; if either
    step fails the cluster is torn down before the error propagates.
    Teardown runs at most once per lease. A teardown failure is re-raised
    only when nothing else failed, so it never masks the original error.
    """

    def __init__(
        self,
        provider: ClusterProvider,
        name: str,
        *,
        ready_timeout_seconds: float,
        poll_interval_seconds: float,
        cancel_event: Optional[asyncio.Event] = None,
        teardown_policy: RetryPolicy = RetryPolicy(max_attempts=3, base_delay_seconds=5.0),
    ) -> None:
        self._provider = provider
        self._name = name
        self._ready_timeout = ready_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._cancel_event = cancel_event
        self._teardown_policy = teardown_policy
        self._released = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def released(self) -> bool:
        return self._released

    async def __aenter__(self) -> ClusterHandle:
        try:
            handle = await self._provider.create(self._name)
            await poll_until(
                lambda: self._provider.is_ready(self._name),
                timeout_seconds=self._ready_timeout,
                interval_seconds=self._poll_interval,
                cancel_event=self._cancel_event,
                description=f"cluster {self._name} to become ready",
            )
        except BaseException:
            # create() may have failed after the request was accepted.
            await self._teardown(suppress=True)
            raise
        logger.info(f"[Cluster] {self._name} is ready (master {handle.master_host})")
        return handle

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self._teardown(suppress=exc_type is not None)

    async def _teardown(self, *, suppress: bool) -> None:
        if self._released:
            return
        self._released = True

        try:
            # Shielded so a second cancellation cannot abort the delete.
            await asyncio.shield(
                retry_async_call(
                    lambda: self._provider.delete(self._name),
                    policy=self._teardown_policy,
                    on_retry=lambda attempt, exc: logger.warning(
                        f"[Cluster] Teardown retry {attempt} for {self._name}: {exc}"
                    ),
                )
            )
            logger.info(f"[Cluster] {self._name} torn down")
        except Exception as e:
            logger.error(f"[Cluster] Teardown of {self._name} failed: {e}", exc_info=True)
            if not suppress:
                raise


def cluster_name(prefix: str, now: Optional[datetime] = None) -> str:
    """Dataproc names: lowercase letters, digits and hyphens, at most 51 chars."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d-%H%M%S")
    return f"{prefix.lower()}-{stamp}"[:51].rstrip("-")


async def run_transform_workflow(
    settings: Settings,
    provider: ClusterProvider,
    job: TransformJob,
    *,
    livy_factory: Callable[[str], LivyClient] = LivyClient,
    cancel_event: Optional[asyncio.Event] = None,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """Lease a cluster, run `job` through Livy, and always release the cluster.

    Raises:
        PollTimeoutError: Cluster, session or job did not finish in time.
        WorkflowCancelledError: `cancel_event` was set.
        TransformJobError / LivySessionError: The job failed (not retried).
        ClusterProvisionError: The cluster failed to start.
    """
    started = datetime.now(timezone.utc)
    name = name or cluster_name(settings.cluster_name_prefix, started)

    lease = ClusterLease(
        provider,
        name,
        ready_timeout_seconds=settings.cluster_ready_timeout_seconds,
        poll_interval_seconds=settings.poll_interval_seconds,
        cancel_event=cancel_event,
    )
    logger.info(f"[Workflow] Starting transform of {len(job.input_uris)} files on {name}")

    async with lease as handle:
        async with livy_factory(f"http://{handle.master_host}:{settings.livy_port}") as livy:
            session_id = await livy.create_session(
                kind="pyspark",
                py_files=settings.transform_py_files,
                name=name,
            )
            try:
                await poll_until(
                    lambda: livy.session_ready(session_id),
                    timeout_seconds=settings.cluster_ready_timeout_seconds,
                    interval_seconds=settings.poll_interval_seconds,
                    cancel_event=cancel_event,
                    description=f"Livy session {session_id}",
                )

                statement_id = await livy.submit_statement(session_id, build_statement(job))
                output = await poll_until(
                    lambda: livy.statement_result(session_id, statement_id),
                    timeout_seconds=settings.job_timeout_seconds,
                    interval_seconds=settings.poll_interval_seconds,
                    cancel_event=cancel_event,
                    description=f"transform statement {statement_id}",
                )
            finally:
                await _close_session(livy, session_id)

    duration = (datetime.now(timezone.utc) - started).total_seconds()
    logger.info(f"[Workflow] Transform complete on {name} in {duration:.1f}s → {job.output_uri}")
    return {
        "cluster": name,
        "session_id": session_id,
        "statement_id": statement_id,
        "output": (output.get("data") or {}).get("text/plain", ""),
        "output_uri": job.output_uri,
        "duration_seconds": duration,
    }


async def _close_session(livy: LivyClient, session_id: int) -> None:
    # Cluster teardown removes the session anyway; a failed delete only delays it.
    try:
        await asyncio.wait_for(livy.delete_session(session_id), timeout=SESSION_CLOSE_TIMEOUT_SECONDS)
    except Exception as e:
        logger.warning(f"[Workflow] Could not delete Livy session {session_id}: {e}")


def select_inputs(
    settings: Settings,
    gcs: GCSClient,
    now: Optional[datetime] = None,
    transformed: Container[str] = frozenset(),
) -> Sequence[str]:
    """Staged GKG objects inside the safe window not yet transformed, oldest first."""
    objects = list_safe_objects(
        gcs,
        settings.gcs_bucket,
        prefix=f"{RAW_PREFIX}gkg/",
        retention=timedelta(hours=settings.raw_retention_hours),
        safety_margin=timedelta(minutes=settings.transform_safety_margin_minutes),
        now=now,
    )
    return [obj.gs_uri for obj in objects if obj.gs_uri not in transformed]


async def run_transform_tick(
    settings: Settings,
    gcs: GCSClient,
    provider: ClusterProvider,
    *,
    livy_factory: Callable[[str], LivyClient] = LivyClient,
    cancel_event: Optional[asyncio.Event] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """One scheduled transform: select the new backlog, run it, commit it.

    Only inputs missing from the ledger are submitted. After the job
    succeeds, the inputs are committed to the ledger and the run's
    `_MANIFEST` is written; only then is the output loadable. A tick with
    nothing new staged does not provision a cluster.

    Raises:
        JobPackageError: The session's pyFiles are not configured or uploaded.
        LedgerConflictError: Another run committed the same backlog first.
    """
    now = now or datetime.now(timezone.utc)
    await asyncio.to_thread(verify_job_package, settings, gcs)

    ledger = TransformLedger(gcs, settings.gcs_bucket)
    snapshot = await asyncio.to_thread(ledger.read)
    inputs = await asyncio.to_thread(select_inputs, settings, gcs, now, snapshot)
    if not inputs:
        logger.info("[Workflow] No new GKG files in the safe window; skipping")
        return {"status": "skipped", "inputs": 0}

    run_id = now.strftime("%Y%m%dT%H%M%SZ")
    job = TransformJob(
        input_uris=tuple(inputs),
        output_uri=build_aggregate_path(settings.gcs_bucket, run_id),
        precision=settings.geohash_precision,
        field_spec=ThemeFieldSpec(
            settings.theme_field_index,
            settings.theme_token_separator,
            settings.theme_score_separator,
            settings.theme_skip_count_tags,
        ),
    )
    result = await run_transform_workflow(
        settings,
        provider,
        job,
        livy_factory=livy_factory,
        cancel_event=cancel_event,
    )

    await asyncio.to_thread(
        ledger.commit,
        snapshot,
        run_id,
        inputs,
        retention=timedelta(hours=settings.raw_retention_hours),
        now=now,
    )
    try:
        manifest_uri = await asyncio.to_thread(write_manifest, gcs, job.output_uri, run_id, inputs, now)
    except Exception:
        # Inputs are committed, so no later run will aggregate them again
        logger.error(f"[Workflow] Run {run_id} committed but its manifest was not written; "
                     f"load {job.output_uri} by hand", exc_info=True)
        raise
    logger.info(f"[Workflow] Run {run_id} committed: {manifest_uri}")
    return {"status": "succeeded", "inputs": len(inputs), "run_id": run_id, "manifest_uri": manifest_uri, **result}
