"""Configuration loader.

Loads required settings from environment variables and optional local `.env`.
Pipeline tunables (retention, geohash precision, cluster timeouts) have
defaults and only need to be set to override them.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Tuple

from dotenv import load_dotenv


DEFAULT_LASTUPDATE_URL = "http://data.gdeltproject.org/gdeltv2/lastupdate.txt"
JOB_PACKAGE_PATH = "jobs/gdelt_pipeline.zip"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Env var {name} must be an integer, got: {raw!r}") from e


def _str_env(name: str, default: str) -> str:
    # Separators may legitimately be whitespace-free punctuation, so only
    # fall back when the variable is unset or empty.
    value = os.getenv(name, "")
    return value if value != "" else default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes"):
        return True
    if raw in ("0", "false", "no"):
        return False
    raise ValueError(f"Env var {name} must be true or false, got: {raw!r}")


@dataclass(frozen=True, slots=True)
class Settings:
    """Project settings required by all pipeline components."""

    gcp_project_id: str
    bigquery_dataset_id: str
    gcp_region: str
    gcs_bucket: str

    # Extractor
    gdelt_lastupdate_url: str = DEFAULT_LASTUPDATE_URL
    gdelt_file_kinds: Tuple[str, ...] = ("export", "mentions", "gkg")
    raw_retention_hours: int = 24
    extract_interval_seconds: int = 900

    # Transformer
    geohash_precision: int = 7
    theme_field_index: int = 17
    theme_token_separator: str = ","
    theme_score_separator: str = ":"
    theme_skip_count_tags: bool = True
    transform_safety_margin_minutes: int = 60
    transform_py_files: Tuple[str, ...] = ()
    aggregate_table_id: str = "theme_sentiment"

    # Cluster manager
    livy_port: int = 8998
    cluster_name_prefix: str = "gdelt-transform"
    cluster_ready_timeout_seconds: int = 900
    job_timeout_seconds: int = 3600
    poll_interval_seconds: int = 15
    transform_interval_seconds: int = 3600

    @staticmethod
    def load(*, env_file: str = ".env") -> "Settings":
        """Load settings from environment; raises ValueError if required vars are missing."""
        load_dotenv(env_file, override=False)

        gcp_project_id = os.getenv("GCP_PROJECT_ID", "").strip()
        bigquery_dataset_id = os.getenv("BIGQUERY_DATASET_ID", "").strip()
        gcp_region = os.getenv("GCP_REGION", "").strip()
        gcs_bucket = os.getenv("GCS_BUCKET", "").strip()

        missing = [
            name
            for name, value in (
                ("GCP_PROJECT_ID", gcp_project_id),
                ("BIGQUERY_DATASET_ID", bigquery_dataset_id),
                ("GCP_REGION", gcp_region),
                ("GCS_BUCKET", gcs_bucket),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing required env var(s): {', '.join(missing)}")

        kinds = tuple(
            kind.strip().lower()
            for kind in os.getenv("GDELT_FILE_KINDS", "export,mentions,gkg").split(",")
            if kind.strip()
        )
        py_files = tuple(
            uri.strip()
            for uri in os.getenv("TRANSFORM_PY_FILES", "").split(",")
            if uri.strip()
        ) or (f"gs://{gcs_bucket}/{JOB_PACKAGE_PATH}",)

        precision = _int_env("GEOHASH_PRECISION", 7)
        if not 1 <= precision <= 12:
            raise ValueError(f"GEOHASH_PRECISION must be between 1 and 12, got: {precision}")

        return Settings(
            gcp_project_id=gcp_project_id,
            bigquery_dataset_id=bigquery_dataset_id,
            gcp_region=gcp_region,
            gcs_bucket=gcs_bucket,
            gdelt_lastupdate_url=os.getenv("GDELT_LASTUPDATE_URL", "").strip() or DEFAULT_LASTUPDATE_URL,
            gdelt_file_kinds=kinds,
            raw_retention_hours=_int_env("RAW_RETENTION_HOURS", 24),
            extract_interval_seconds=_int_env("EXTRACT_INTERVAL_SECONDS", 900),
            geohash_precision=precision,
            theme_field_index=_int_env("THEME_FIELD_INDEX", 17),
            theme_token_separator=_str_env("THEME_TOKEN_SEPARATOR", ","),
            theme_score_separator=_str_env("THEME_SCORE_SEPARATOR", ":"),
            theme_skip_count_tags=_bool_env("THEME_SKIP_COUNT_TAGS", True),
            transform_safety_margin_minutes=_int_env("TRANSFORM_SAFETY_MARGIN_MINUTES", 60),
            transform_py_files=py_files,
            aggregate_table_id=os.getenv("AGGREGATE_TABLE_ID", "").strip() or "theme_sentiment",
            livy_port=_int_env("LIVY_PORT", 8998),
            cluster_name_prefix=os.getenv("CLUSTER_NAME_PREFIX", "").strip() or "gdelt-transform",
            cluster_ready_timeout_seconds=_int_env("CLUSTER_READY_TIMEOUT_SECONDS", 900),
            job_timeout_seconds=_int_env("JOB_TIMEOUT_SECONDS", 3600),
            poll_interval_seconds=_int_env("POLL_INTERVAL_SECONDS", 15),
            transform_interval_seconds=_int_env("TRANSFORM_INTERVAL_SECONDS", 3600),
        )
