"""
StorageCluster models.

Parsed view of the StorageCluster custom resource plus the delete status
types reported during teardown. Unknown fields are preserved so a parsed
cluster can be written back without losing data.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

STORAGE_CLUSTER_API_VERSION = "core.libopenstorage.org/v1alpha1"
STORAGE_CLUSTER_KIND = "StorageCluster"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class DeleteStrategyType(str, Enum):
    """What to do with the storage when the cluster is deleted."""

    UNINSTALL = "Uninstall"
    UNINSTALL_AND_WIPE = "UninstallAndWipe"


class DeleteStrategy(_Model):
    type: DeleteStrategyType


class KvdbSpec(_Model):
    internal: bool = False
    endpoints: List[str] = Field(default_factory=list)


class StorkSpec(_Model):
    enabled: bool = False
    image: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    env: List[Dict[str, Any]] = Field(default_factory=list)


class StorageClusterSpec(_Model):
    image: Optional[str] = None
    image_pull_policy: Optional[str] = None
    image_pull_secret: Optional[str] = None
    custom_image_registry: Optional[str] = None
    secrets_provider: Optional[str] = None
    start_port: Optional[int] = None
    kvdb: Optional[KvdbSpec] = None
    placement: Optional[Dict[str, Any]] = None
    delete_strategy: Optional[DeleteStrategy] = None
    stork: Optional[StorkSpec] = None


class ObjectMeta(_Model):
    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[str] = None


class StorageCluster(_Model):
    """A StorageCluster custom resource."""

    api_version: str = STORAGE_CLUSTER_API_VERSION
    kind: str = STORAGE_CLUSTER_KIND
    metadata: ObjectMeta
    spec: StorageClusterSpec = Field(default_factory=StorageClusterSpec)
    status: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "StorageCluster":
        return cls.model_validate(obj)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.annotations

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def owner_reference(self) -> Dict[str, Any]:
        """Owner reference that makes children cascade with this cluster."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid or "",
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def object_reference(self) -> Dict[str, Any]:
        """Reference used as the involved object of events."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "namespace": self.metadata.namespace,
            "uid": self.metadata.uid or "",
            "resourceVersion": self.metadata.resource_version or "",
        }


class DeleteStatusType(str, Enum):
    """Status of the storage teardown."""

    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass
class StorageClusterDeleteStatus:
    """Teardown status reported to the controller on each tick."""

    status: DeleteStatusType
    message: str = ""
