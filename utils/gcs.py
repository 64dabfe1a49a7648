"""GCS access for the staging bucket.

Bucket layout:

    raw/<kind>/<batch YYYYMMDDHHMMSS>/<file>.gz     staged GDELT files (24 h)
    aggregates/<run id>/part-*.json.gz, _SUCCESS    transform output
    aggregates/<run id>/_MANIFEST                   written once the run is committed
    state/transform_ledger.json                     inputs already transformed

Data objects are write-once: names are keyed by the GDELT batch timestamp or
the transform run id, and uploads can be made create-only. The ledger is the
one document rewritten in place, always under a generation precondition.
Deletion (retention) treats a missing object as done.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Callable, NoReturn, Optional, Tuple, TypeVar

from google.cloud import storage
from google.cloud.exceptions import NotFound, Forbidden
from google.api_core import retry
from google.api_core.exceptions import (
    InternalServerError,
    PreconditionFailed,
    ServiceUnavailable,
    TooManyRequests,
)

from utils.retry import RetryPolicy, retry_call
from utils.schemas import StagedObject


logger = logging.getLogger(__name__)

T = TypeVar("T")

RAW_PREFIX = "raw/"
AGGREGATES_PREFIX = "aggregates/"
STATE_PREFIX = "state/"

TRANSIENT_ERRORS = (
    ServiceUnavailable,
    InternalServerError,
    TooManyRequests,
    ConnectionError,
)
_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=1.0)


class GCSError(Exception):
    """Base exception for GCS operations."""


class GCSPermissionError(GCSError):
    """Raised when IAM permissions are insufficient."""


class GCSNotFoundError(GCSError):
    """Raised when the bucket does not exist."""


class GCSPreconditionError(GCSError):
    """Raised when a create-only upload finds the object already present."""


def _with_retry(func: Callable[[], T], what: str) -> T:
    return retry_call(
        func,
        policy=_POLICY,
        retry_on=TRANSIENT_ERRORS,
        on_retry=lambda attempt, exc: logger.warning(f"[GCS] {what} retry {attempt}: {exc}"),
    )


def _raise_as_gcs_error(e: Exception, action: str, target: str, role: str) -> NoReturn:
    if isinstance(e, Forbidden):
        raise GCSPermissionError(
            f"Permission denied to {action} {target}. Check IAM role: {role}"
        ) from e
    logger.error(f"[GCS] Failed to {action} {target}: {e}")
    raise GCSError(f"Failed to {action} {target}: {e}") from e


class GCSClient:
    """Staging-bucket operations with retries on transient errors."""

    def __init__(self, project_id: Optional[str] = None, client: Optional[storage.Client] = None) -> None:
        try:
            self._client = client or storage.Client(project=project_id)
        except Exception as e:
            logger.error(f"[GCS] Failed to initialize client: {e}")
            raise GCSError(f"Failed to initialize GCS client: {e}") from e
        logger.info(f"[GCS] Client ready for project: {project_id or 'default'}")

    def _blob(self, gcs_uri: str) -> storage.Blob:
        bucket_name, blob_name = parse_gcs_uri(gcs_uri)
        return self._client.bucket(bucket_name).blob(blob_name)

    def upload_file(
        self,
        local_path: str | Path,
        gcs_uri: str,
        compress: bool = False,
        if_absent: bool = False,
    ) -> dict[str, str]:
        """Upload a local file, optionally gzipped and create-only.

        Args:
            local_path: File to upload
            gcs_uri: Destination (gs://bucket/path); with `compress`, ".gz"
                is appended unless present
            compress: Gzip into a sibling temp file first
            if_absent: Succeed only if no live object has this name

        Returns:
            Dict with size, created and gs_uri of the stored object

        Raises:
            GCSPreconditionError: `if_absent` and the object already exists
            GCSPermissionError: IAM permissions are insufficient
            GCSError: Any other failure
        """
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"Local file not found: {local_path}")

        if compress and not gcs_uri.endswith(".gz"):
            gcs_uri += ".gz"
        blob = self._blob(gcs_uri)

        upload_kwargs = {"retry": retry.Retry(deadline=300.0)}
        if if_absent:
            # Generation 0 means "no live object": an atomic create.
            upload_kwargs["if_generation_match"] = 0

        upload_path = local_path
        try:
            if compress:
                upload_path = local_path.with_name(local_path.name + ".gz")
                with open(local_path, "rb") as f_in, gzip.open(upload_path, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)

            _with_retry(lambda: blob.upload_from_filename(str(upload_path), **upload_kwargs), "Upload")
            blob.reload()
        except PreconditionFailed as e:
            raise GCSPreconditionError(f"Object already exists: {gcs_uri}") from e
        except Exception as e:
            _raise_as_gcs_error(e, "upload to", gcs_uri, "roles/storage.objectCreator")
        finally:
            if upload_path != local_path:
                upload_path.unlink(missing_ok=True)

        logger.info(f"[GCS] Uploaded {local_path.name} to {gcs_uri} ({blob.size} bytes)")
        return {
            "size": str(blob.size),
            "created": blob.time_created.isoformat() if blob.time_created else "unknown",
            "gs_uri": gcs_uri,
        }

    def list_blobs(self, bucket_name: str, prefix: str = "") -> list[StagedObject]:
        """All objects under `prefix`, with their server-side creation time.

        Raises:
            GCSNotFoundError: The bucket does not exist
        """
        try:
            objects = [
                StagedObject(
                    name=blob.name,
                    gs_uri=f"gs://{bucket_name}/{blob.name}",
                    size=int(blob.size or 0),
                    created=blob.time_created,
                )
                for blob in _with_retry(
                    lambda: list(self._client.list_blobs(bucket_name, prefix=prefix)), "List"
                )
            ]
        except NotFound as e:
            raise GCSNotFoundError(f"Bucket not found: gs://{bucket_name}") from e
        except Exception as e:
            _raise_as_gcs_error(e, "list", f"gs://{bucket_name}/{prefix}", "roles/storage.objectViewer")

        logger.info(f"[GCS] Listed {len(objects)} objects in gs://{bucket_name}/{prefix}")
        return objects

    def exists(self, gcs_uri: str) -> bool:
        """Whether an object exists.

        Lookup errors propagate instead of answering either way: "absent"
        would re-stage the file and "present" would silently skip it.
        """
        blob = self._blob(gcs_uri)
        try:
            return _with_retry(blob.exists, "Exists")
        except Exception as e:
            _raise_as_gcs_error(e, "check", gcs_uri, "roles/storage.objectViewer")

    def read_json(self, gcs_uri: str) -> Tuple[Optional[Any], int]:
        """A JSON document and its generation; (None, 0) if it does not exist.

        Generation 0 is the precondition for creating the document, so the
        pair can be passed straight back to `write_json`.
        """
        bucket_name, blob_name = parse_gcs_uri(gcs_uri)
        try:
            blob = _with_retry(lambda: self._client.bucket(bucket_name).get_blob(blob_name), "Read")
            if blob is None:
                return None, 0
            raw = _with_retry(
                lambda: blob.download_as_bytes(if_generation_match=blob.generation), "Read"
            )
        except (NotFound, PreconditionFailed):
            # Replaced or deleted between metadata and content reads
            raise GCSPreconditionError(f"Object changed while reading: {gcs_uri}") from None
        except Exception as e:
            _raise_as_gcs_error(e, "read", gcs_uri, "roles/storage.objectViewer")
        return json.loads(raw), int(blob.generation)

    def write_json(self, gcs_uri: str, data: Any, if_generation_match: Optional[int] = None) -> int:
        """Write a JSON document and return its new generation.

        With `if_generation_match` the write only succeeds if the live
        object still has that generation (0: does not exist yet). It is not
        retried here, since a retry after an ambiguous failure would report
        a conflict with its own first attempt.

        Raises:
            GCSPreconditionError: The object changed since it was read
        """
        blob = self._blob(gcs_uri)
        kwargs = {}
        if if_generation_match is not None:
            kwargs["if_generation_match"] = if_generation_match
        try:
            blob.upload_from_string(
                json.dumps(data, indent=2, sort_keys=True),
                content_type="application/json",
                **kwargs,
            )
        except PreconditionFailed as e:
            raise GCSPreconditionError(f"Generation mismatch writing {gcs_uri}") from e
        except Exception as e:
            _raise_as_gcs_error(e, "write", gcs_uri, "roles/storage.objectAdmin")
        logger.info(f"[GCS] Wrote {gcs_uri} (generation {blob.generation})")
        return int(blob.generation)

    def delete_blob(self, gcs_uri: str) -> bool:
        """Delete an object; False if it was already gone."""
        blob = self._blob(gcs_uri)
        try:
            _with_retry(blob.delete, "Delete")
            return True
        except NotFound:
            logger.debug(f"[GCS] Already deleted: {gcs_uri}")
            return False
        except Exception as e:
            _raise_as_gcs_error(e, "delete", gcs_uri, "roles/storage.objectAdmin")


# =============================================================================
# Path Helper Functions
# =============================================================================

def parse_gcs_uri(gcs_uri: str) -> tuple[str, str]:
    """Split gs://bucket/path into (bucket, path).

    Raises:
        ValueError: If URI format is invalid
    """
    if not gcs_uri.startswith("gs://"):
        raise ValueError(f"Invalid GCS URI (must start with gs://): {gcs_uri}")

    bucket, _, name = gcs_uri[5:].partition("/")
    if not bucket or not name:
        raise ValueError(f"Invalid GCS URI format (expected gs://bucket/path): {gcs_uri}")
    return bucket, name


def build_raw_path(bucket: str, kind: str, batch_timestamp: str, filename: str) -> str:
    """URI of a staged GDELT file.

    Args:
        bucket: GCS bucket name
        kind: File kind (export, mentions, gkg)
        batch_timestamp: GDELT publication batch (YYYYMMDDHHMMSS)
        filename: Decompressed file name; ".gz" is appended

    Returns:
        e.g. gs://bucket/raw/gkg/20240101001500/20240101001500.gkg.csv.gz
    """
    if not filename.endswith(".gz"):
        filename += ".gz"
    return f"gs://{bucket}/{RAW_PREFIX}{kind}/{batch_timestamp}/{filename}"


def build_aggregate_path(bucket: str, run_id: str) -> str:
    """Directory URI for one transform run's aggregate output."""
    return f"gs://{bucket}/{AGGREGATES_PREFIX}{run_id}/"
