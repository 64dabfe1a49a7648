"""Job package build/upload tests."""

import zipfile
from dataclasses import replace

import pytest

from cluster.package import (
    JobPackageError,
    build_job_package,
    package_uri,
    upload_job_package,
    verify_job_package,
)


def test_package_contains_job_imports(tmp_path):
    dest = tmp_path / "job.zip"

    entries = build_job_package(dest)

    with zipfile.ZipFile(dest) as zf:
        names = set(zf.namelist())
    assert set(entries) == names
    for module in ("etl/spark_job.py", "etl/transform.py", "etl/gkg.py", "etl/geohash.py",
                   "utils/schemas.py", "utils/logging.py"):
        assert module in names
    # Regular packages inside the zip
    assert {"etl/__init__.py", "utils/__init__.py"} <= names
    assert not any("__pycache__" in name or name.startswith("tests/") for name in names)


def test_package_skips_caches_and_other_dirs(tmp_path):
    (tmp_path / "etl" / "__pycache__").mkdir(parents=True)
    (tmp_path / "etl" / "job.py").write_text("X = 1\n")
    (tmp_path / "etl" / "__pycache__" / "job.cpython-311.pyc").write_bytes(b"\0")
    (tmp_path / "etl" / "notes.txt").write_text("n")
    (tmp_path / "utils").mkdir()
    (tmp_path / "utils" / "__init__.py").write_text("")
    (tmp_path / "other").mkdir()
    (tmp_path / "other" / "x.py").write_text("")

    entries = build_job_package(tmp_path / "job.zip", root=tmp_path)

    assert sorted(entries) == ["etl/__init__.py", "etl/job.py", "utils/__init__.py"]


def test_missing_package_dir(tmp_path):
    with pytest.raises(JobPackageError):
        build_job_package(tmp_path / "job.zip", root=tmp_path)


def test_upload_to_configured_uri(settings, fake_gcs):
    target = upload_job_package(settings, fake_gcs)

    assert target == "gs://bucket/jobs/gdelt_pipeline.zip"
    assert fake_gcs.exists(target)
    name, uri, compress, _ = fake_gcs.uploads[0]
    assert (name, uri, compress) == ("gdelt_pipeline.zip", target, False)


def test_package_uri_needs_a_gcs_zip(settings):
    with pytest.raises(JobPackageError):
        package_uri(replace(settings, transform_py_files=("local.py",)))


def test_verify(settings, fake_gcs):
    with pytest.raises(JobPackageError, match="not found"):
        verify_job_package(settings, fake_gcs)

    upload_job_package(settings, fake_gcs)
    verify_job_package(settings, fake_gcs)

    with pytest.raises(JobPackageError, match="empty"):
        verify_job_package(replace(settings, transform_py_files=()), fake_gcs)
