"""
Event Recording - Kubernetes events attached to the StorageCluster.

All soft failures (bad override annotations, missing driver support, failed
components) are surfaced to users as events on the parent object rather than
as reconcile errors.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum

from models import StorageCluster
from store import ObjectStore, ObjectStoreError

logger = logging.getLogger(__name__)

# Event reasons
FAILED_COMPONENT_REASON = "FailedComponent"
FAILED_SYNC_REASON = "FailedSync"
FAILED_VALIDATION_REASON = "FailedValidation"
DELETE_IN_PROGRESS_REASON = "DeleteInProgress"
DELETE_COMPLETED_REASON = "DeleteCompleted"
DELETE_FAILED_REASON = "DeleteFailed"


class EventType(Enum):
    """Kubernetes event types."""

    NORMAL = "Normal"
    WARNING = "Warning"


class EventRecorder:
    """
    Records events against a StorageCluster.

    Events are written through the object store as ``v1 Event`` objects in
    the cluster's namespace. A failure to record an event is logged and
    never fails the caller.
    """

    def __init__(self, store: ObjectStore, component: str = "storagecluster-operator"):
        self._store = store
        self._component = component

    async def event(
        self,
        cluster: StorageCluster,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        """
        Record an event.

        Args:
            cluster: The object the event is about.
            event_type: Normal or Warning.
            reason: Short CamelCase reason code.
            message: Human-readable message.
        """
        log = logger.warning if event_type == EventType.WARNING else logger.info
        log(f"{cluster.key}: {event_type.value} {reason} {message}")

        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{cluster.name}.{uuid.uuid4().hex[:16]}",
                "namespace": cluster.namespace,
            },
            "involvedObject": cluster.object_reference(),
            "type": event_type.value,
            "reason": reason,
            "message": message,
            "source": {"component": self._component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            await self._store.create(body)
        except ObjectStoreError as e:
            logger.error(f"Failed to record event for {cluster.key}: {e}")

    async def warning(
        self, cluster: StorageCluster, reason: str, message: str
    ) -> None:
        await self.event(cluster, EventType.WARNING, reason, message)

    async def normal(
        self, cluster: StorageCluster, reason: str, message: str
    ) -> None:
        await self.event(cluster, EventType.NORMAL, reason, message)
