"""
Storage Driver Base - Abstract interface for storage drivers.

A driver supplies the storage-specific pieces the operator needs: defaults
for the StorageCluster spec, inputs for the components (Stork) and the
teardown of the storage when the cluster is deleted.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from events import EventRecorder
from models import StorageCluster, StorageClusterDeleteStatus
from store import ObjectStore


class Driver(ABC):
    """Abstract base class for storage drivers."""

    store: Optional[ObjectStore] = None
    recorder: Optional[EventRecorder] = None
    config: Optional[Any] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique driver name."""
        pass

    def __str__(self) -> str:
        return self.name

    def init(
        self, store: ObjectStore, recorder: EventRecorder, config: Any = None
    ) -> None:
        """
        Wire the driver to its collaborators.

        Args:
            store: Object store for the driver's own objects.
            recorder: Event sink.
            config: Driver configuration (``config.DriverConfig``).
        """
        self.store = store
        self.recorder = recorder
        self.config = config

    @abstractmethod
    def get_selector_labels(self) -> Dict[str, str]:
        """Labels selecting the driver's storage pods."""
        pass

    @abstractmethod
    def set_defaults_on_storage_cluster(self, cluster: StorageCluster) -> None:
        """Fill unset spec fields with driver defaults, in place."""
        pass

    def get_stork_driver_name(self) -> str:
        """
        Name Stork uses for this driver.

        Raises:
            NotImplementedError: If the driver does not support Stork.
        """
        raise NotImplementedError(f"Stork is not supported by the {self} driver")

    def get_stork_env_list(self, cluster: StorageCluster) -> List[Dict[str, Any]]:
        """Environment variables the driver needs in the Stork container."""
        return []

    @abstractmethod
    async def delete_storage(
        self, cluster: StorageCluster
    ) -> StorageClusterDeleteStatus:
        """
        Advance the teardown of the cluster's storage by one step.

        Called on every reconcile while the cluster is being deleted.
        """
        pass
