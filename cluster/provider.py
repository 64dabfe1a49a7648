"""Compute cluster provisioning.

`ClusterProvider` is the seam between the workflow and the cloud API;
`DataprocClusterProvider` implements it on Google Cloud Dataproc. Livy is
installed by the public Dataproc initialization action and listens on the
master node (`<cluster>-m`).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from google.api_core.exceptions import GoogleAPICallError, NotFound
from google.cloud import dataproc_v1

from utils.config import Settings

logger = logging.getLogger(__name__)

CLUSTER_PIP_PACKAGES = ("pygeohash>=1.2",)


class ClusterError(Exception):
    """Base exception for cluster lifecycle operations."""


class ClusterProvisionError(ClusterError):
    """Raised when a cluster cannot be created or fails while starting."""


@dataclass(frozen=True, slots=True)
class ClusterHandle:
    name: str
    master_host: str


class ClusterProvider(ABC):
    """Create, inspect and delete clusters by name."""

    @abstractmethod
    async def create(self, name: str) -> ClusterHandle:
        """Request a new cluster; returns before it is ready."""

    @abstractmethod
    async def is_ready(self, name: str) -> bool:
        """True once the cluster accepts jobs; raises ClusterProvisionError if it failed."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Delete the cluster and wait for deletion; a missing cluster is not an error."""


class DataprocClusterProvider(ClusterProvider):
    """Ephemeral Dataproc clusters in one project/region."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[dataproc_v1.ClusterControllerClient] = None,
        master_machine_type: str = "n2-standard-4",
        worker_machine_type: str = "n2-standard-4",
        num_workers: int = 2,
        image_version: str = "2.1-debian11",
        initialization_actions: Optional[Sequence[str]] = None,
        idle_delete_ttl_seconds: int = 7200,
        pip_packages: Sequence[str] = CLUSTER_PIP_PACKAGES,
        delete_timeout_seconds: float = 600.0,
    ) -> None:
        self._project_id = settings.gcp_project_id
        self._region = settings.gcp_region
        self._client = client or dataproc_v1.ClusterControllerClient(
            client_options={"api_endpoint": f"{self._region}-dataproc.googleapis.com:443"}
        )
        self._master_machine_type = master_machine_type
        self._worker_machine_type = worker_machine_type
        self._num_workers = num_workers
        self._image_version = image_version
        self._initialization_actions = list(
            initialization_actions
            if initialization_actions is not None
            else [f"gs://goog-dataproc-initialization-actions-{self._region}/livy/livy.sh"]
        )
        self._idle_delete_ttl_seconds = idle_delete_ttl_seconds
        self._pip_packages = list(pip_packages)
        self._delete_timeout_seconds = delete_timeout_seconds

    def cluster_spec(self, name: str) -> dict:
        return {
            "project_id": self._project_id,
            "cluster_name": name,
            "config": {
                "master_config": {"num_instances": 1, "machine_type_uri": self._master_machine_type},
                "worker_config": {"num_instances": self._num_workers, "machine_type_uri": self._worker_machine_type},
                "software_config": {
                    "image_version": self._image_version,
                    # Third-party imports of the job package not on the image
                    "properties": {"dataproc:pip.packages": ",".join(self._pip_packages)},
                },
                "initialization_actions": [
                    {"executable_file": uri} for uri in self._initialization_actions
                ],
                # Server-side backstop in case the driving process dies mid-run.
                "lifecycle_config": {"idle_delete_ttl": {"seconds": self._idle_delete_ttl_seconds}},
            },
        }

    async def create(self, name: str) -> ClusterHandle:
        logger.info(f"[Cluster] Creating {name} in {self._project_id}/{self._region}")
        try:
            # The long-running operation is not awaited; readiness is polled.
            await asyncio.to_thread(
                self._client.create_cluster,
                request={
                    "project_id": self._project_id,
                    "region": self._region,
                    "cluster": self.cluster_spec(name),
                },
            )
        except GoogleAPICallError as e:
            raise ClusterProvisionError(f"Failed to create cluster {name}: {e}") from e
        return ClusterHandle(name=name, master_host=f"{name}-m")

    async def is_ready(self, name: str) -> bool:
        cluster = await asyncio.to_thread(
            self._client.get_cluster,
            project_id=self._project_id,
            region=self._region,
            cluster_name=name,
        )
        state = cluster.status.state
        if state == dataproc_v1.ClusterStatus.State.ERROR:
            raise ClusterProvisionError(f"Cluster {name} failed to start: {cluster.status.detail}")
        logger.debug(f"[Cluster] {name} state: {state.name}")
        return state == dataproc_v1.ClusterStatus.State.RUNNING

    async def delete(self, name: str) -> None:
        logger.info(f"[Cluster] Deleting {name}")
        try:
            operation = await asyncio.to_thread(
                self._client.delete_cluster,
                project_id=self._project_id,
                region=self._region,
                cluster_name=name,
            )
            await asyncio.to_thread(operation.result, timeout=self._delete_timeout_seconds)
        except NotFound:
            logger.info(f"[Cluster] {name} already gone")
            return
        logger.info(f"[Cluster] Deleted {name}")
