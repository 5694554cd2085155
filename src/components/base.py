"""
Component Base - Abstract interface for reconciling components.

A component owns one slice of the cluster's desired state (a schema, an
auxiliary scheduler, ...). The controller only talks to components through
this interface, calling them in registration order on every reconcile.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from events import EventRecorder
from models import StorageCluster
from store import KindRegistry, ObjectStore


class ErrorKind(Enum):
    """Classification of component failures."""

    # Halts the remaining components and fails the reconcile
    CRITICAL = "critical"
    # Recorded as a warning event; the remaining components still run
    RECOVERABLE = "recoverable"


class ComponentError(Exception):
    """Failure raised by a component's reconcile, wrapping its cause."""

    def __init__(self, kind: ErrorKind, cause: BaseException):
        super().__init__(str(cause))
        self.kind = kind
        self.cause = cause

    @property
    def critical(self) -> bool:
        return self.kind == ErrorKind.CRITICAL

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.cause}"


class Component(ABC):
    """
    Abstract base class for components.

    Instances live for the whole process. They may keep small flags for
    one-time actions, which ``mark_deleted`` resets.
    """

    store: Optional[ObjectStore] = None
    k8s_version: Optional[str] = None
    kinds: Optional[KindRegistry] = None
    recorder: Optional[EventRecorder] = None

    def initialize(
        self,
        store: ObjectStore,
        k8s_version: str,
        kinds: KindRegistry,
        recorder: EventRecorder,
    ) -> None:
        """
        Wire the component to its collaborators.

        Only stores references, so calling it again is harmless.

        Args:
            store: Object store for reading and writing children.
            k8s_version: API server version as ``major.minor.patch``.
            kinds: Kind registry of the object store.
            recorder: Event sink for the parent object.
        """
        self.store = store
        self.k8s_version = k8s_version
        self.kinds = kinds
        self.recorder = recorder

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique component name."""
        pass

    @abstractmethod
    def is_enabled(self, cluster: StorageCluster) -> bool:
        """Whether the component should be running for this cluster."""
        pass

    @abstractmethod
    async def reconcile(self, cluster: StorageCluster) -> None:
        """
        Converge everything the component owns.

        Raises:
            ComponentError: Classified failure.
        """
        pass

    @abstractmethod
    async def delete(self, cluster: StorageCluster) -> None:
        """Remove everything the component owns, ignoring what is already gone."""
        pass

    @abstractmethod
    def mark_deleted(self) -> None:
        """Forget one-time actions so a recreated cluster redoes them."""
        pass
