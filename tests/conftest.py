"""Shared fixtures: in-memory GCS and test settings."""

import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tests.fakes import FakeGCS
from utils.config import Settings


@pytest.fixture
def fake_gcs() -> FakeGCS:
    return FakeGCS()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        gcp_project_id="test-project",
        bigquery_dataset_id="gdelt",
        gcp_region="us-central1",
        gcs_bucket="bucket",
        cluster_ready_timeout_seconds=1,
        job_timeout_seconds=1,
        poll_interval_seconds=0,
        transform_py_files=("gs://bucket/jobs/gdelt_pipeline.zip",),
    )
