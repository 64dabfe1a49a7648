"""Job package: the `etl` and `utils` sources the Livy session imports.

The transform statement runs `from etl.spark_job import run_job` on the
cluster, so those packages travel as a zip in the session's pyFiles. Build
and upload it with

    python -m cluster package

before the first transform, and again after changing `etl/` or `utils/`.
Third-party imports of the package (pygeohash) are installed on the
cluster by `DataprocClusterProvider`.
"""

from __future__ import annotations

import logging
import tempfile
import zipfile
from pathlib import Path
from typing import List, Sequence

from utils.config import Settings
from utils.gcs import GCSClient

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
PACKAGE_DIRS = ("etl", "utils")


class JobPackageError(Exception):
    """Raised when the job package is not configured or not uploaded."""


def build_job_package(
    dest: str | Path,
    root: str | Path = PROJECT_ROOT,
    packages: Sequence[str] = PACKAGE_DIRS,
) -> List[str]:
    """Zip the Python sources of `packages` under `root`; returns the entries.

    The packages are namespace packages locally. Empty `__init__.py` files
    are added in the zip, since zipimport only finds regular packages.
    """
    root = Path(root)
    entries: List[str] = []

    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for package in packages:
            package_dir = root / package
            if not package_dir.is_dir():
                raise JobPackageError(f"Package directory not found: {package_dir}")

            sources = sorted(
                path for path in package_dir.rglob("*.py") if "__pycache__" not in path.parts
            )
            for path in sources:
                arcname = path.relative_to(root).as_posix()
                zf.write(path, arcname)
                entries.append(arcname)

            init = f"{package}/__init__.py"
            if init not in entries:
                zf.writestr(init, "")
                entries.append(init)

    logger.info(f"[Package] Built {dest} with {len(entries)} files")
    return entries


def package_uri(settings: Settings) -> str:
    """The configured pyFiles entry the package is uploaded to."""
    for uri in settings.transform_py_files:
        if uri.startswith("gs://") and uri.endswith(".zip"):
            return uri
    raise JobPackageError(
        "TRANSFORM_PY_FILES has no gs://...zip entry to upload the job package to"
    )


def upload_job_package(settings: Settings, gcs: GCSClient, root: str | Path = PROJECT_ROOT) -> str:
    """Build the package and upload it to `package_uri(settings)`."""
    target = package_uri(settings)
    with tempfile.TemporaryDirectory(prefix="gdelt-package-") as tmp:
        local = Path(tmp) / Path(target).name
        build_job_package(local, root)
        gcs.upload_file(local, target)
    logger.info(f"[Package] Uploaded job package to {target}")
    return target


def verify_job_package(settings: Settings, gcs: GCSClient) -> None:
    """Fail before leasing a cluster if the session could not import the job.

    Raises:
        JobPackageError: No pyFiles configured, or a gs:// entry is missing
    """
    if not settings.transform_py_files:
        raise JobPackageError(
            "TRANSFORM_PY_FILES is empty; the transform session cannot import etl.spark_job"
        )
    missing = [
        uri for uri in settings.transform_py_files
        if uri.startswith("gs://") and not gcs.exists(uri)
    ]
    if missing:
        raise JobPackageError(
            f"Job package not found: {', '.join(missing)}. Run `python -m cluster package` first."
        )
