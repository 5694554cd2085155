"""
StorageCluster Controller - Main reconciliation loop.

Level triggered: every ``reconcile_interval`` seconds all StorageCluster
objects are listed and each is driven toward its desired state by running
the registered components in order. A cluster being deleted is torn down
through the components and the storage driver instead.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from components.base import Component, ComponentError
from components.registry import ComponentRegistry, get_registry
from config import ControllerConfig
from drivers.base import Driver
from events import (
    DELETE_COMPLETED_REASON,
    DELETE_FAILED_REASON,
    DELETE_IN_PROGRESS_REASON,
    FAILED_COMPONENT_REASON,
    FAILED_SYNC_REASON,
    FAILED_VALIDATION_REASON,
    EventRecorder,
)
from models import DeleteStatusType, StorageCluster, StorageClusterDeleteStatus
from store import ObjectStore, ObjectStoreError
from validation import validate_storage_cluster_spec

logger = logging.getLogger(__name__)

DELETE_FINALIZER = "operator.libopenstorage.org/delete"
DELETE_CONDITION_TYPE = "Delete"


@dataclass
class ReconcileResult:
    """Outcome of one reconcile of one cluster."""

    success: bool = True
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.success = False
        self.errors.append(message)


def set_delete_condition(
    cluster: StorageCluster, status: StorageClusterDeleteStatus
) -> bool:
    """
    Record a delete status as the ``Delete`` condition of the cluster.

    Returns:
        True if the status changed.
    """
    condition = {
        "type": DELETE_CONDITION_TYPE,
        "status": status.status.value,
        "reason": status.message,
    }
    conditions: List[Dict[str, Any]] = cluster.status.get("conditions") or []
    for i, existing in enumerate(conditions):
        if existing.get("type") == DELETE_CONDITION_TYPE:
            if existing == condition:
                return False
            conditions[i] = condition
            break
    else:
        conditions.append(condition)
    cluster.status["conditions"] = conditions
    return True


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Components are run in registration order. A critical component failure
    aborts the reconcile; any other failure is surfaced as a warning event
    and the remaining components still run.
    """

    def __init__(
        self,
        store: ObjectStore,
        driver: Driver,
        recorder: EventRecorder,
        registry: Optional[ComponentRegistry] = None,
        config: Optional[ControllerConfig] = None,
        namespace: str = "",
    ):
        self.store = store
        self.driver = driver
        self.recorder = recorder
        self.registry = registry if registry is not None else get_registry()
        self.config = config or ControllerConfig()
        self.namespace = namespace
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False
        self._shutdown_event = asyncio.Event()
        self._in_flight: Set[str] = set()

    async def start(self):
        """Start the controller reconciliation loop."""
        logger.info("Starting StorageCluster controller")
        self.running = True
        self._shutdown_event.clear()
        await self._reconciliation_loop()

    async def stop(self):
        """Stop the controller after the current cycle."""
        logger.info("Stopping StorageCluster controller")
        self.running = False
        self._shutdown_event.set()

    async def _reconciliation_loop(self):
        while self.running:
            try:
                await self.reconcile_all()
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.reconcile_interval
                )
            except asyncio.TimeoutError:
                pass

    async def reconcile_all(self) -> None:
        """List every StorageCluster and reconcile them concurrently."""
        objects = await self.store.list("StorageCluster", self.namespace or None)
        if not objects:
            return
        logger.debug(f"Reconciling {len(objects)} storage clusters")
        await asyncio.gather(
            *(self._reconcile_object(obj) for obj in objects), return_exceptions=True
        )

    async def _reconcile_object(self, obj: Dict[str, Any]) -> None:
        metadata = obj.get("metadata", {})
        key = f"{metadata.get('namespace')}/{metadata.get('name')}"
        if key in self._in_flight:
            logger.debug(f"Reconcile of {key} still in progress, skipping")
            return

        self._in_flight.add(key)
        try:
            async with self.semaphore:
                try:
                    cluster = StorageCluster.from_dict(obj)
                except ValidationError as e:
                    logger.error(f"Cannot parse StorageCluster {key}: {e}")
                    return
                result = await self.reconcile_cluster(cluster)
                if not result.success:
                    logger.warning(
                        f"Reconcile of {key} finished with errors: {result.errors}"
                    )
        except ComponentError as e:
            logger.error(f"Reconcile of {key} aborted: {e}")
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
        finally:
            self._in_flight.discard(key)

    async def reconcile_cluster(self, cluster: StorageCluster) -> ReconcileResult:
        """
        Reconcile one StorageCluster.

        Raises:
            ComponentError: If a component failed critically.
        """
        if cluster.being_deleted:
            return await self._delete_cluster(cluster)

        result = ReconcileResult()

        valid, error = validate_storage_cluster_spec(
            cluster.to_dict().get("spec", {})
        )
        if not valid:
            message = f"Invalid StorageCluster spec: {error}"
            await self.recorder.warning(cluster, FAILED_VALIDATION_REASON, message)
            result.add_error(error)
            return result

        try:
            cluster = await self._apply_defaults(cluster)
        except ObjectStoreError as e:
            await self.recorder.warning(
                cluster, FAILED_SYNC_REASON, f"Failed to update StorageCluster: {e}"
            )
            result.add_error(str(e))
            return result

        for component in self.registry.list_components():
            try:
                if component.is_enabled(cluster):
                    await component.reconcile(cluster)
                else:
                    await component.delete(cluster)
            except ComponentError as e:
                if e.critical:
                    logger.error(
                        f"{cluster.key}: component {component.name} failed: {e}"
                    )
                    raise
                await self._component_failed(cluster, component, e.cause, result)
            except Exception as e:
                await self._component_failed(cluster, component, e, result)

        return result

    async def _apply_defaults(self, cluster: StorageCluster) -> StorageCluster:
        """Apply driver defaults and the finalizer, writing the cluster if changed."""
        before = cluster.to_dict()
        self.driver.set_defaults_on_storage_cluster(cluster)
        if DELETE_FINALIZER not in cluster.metadata.finalizers:
            cluster.metadata.finalizers.append(DELETE_FINALIZER)
        if cluster.to_dict() == before:
            return cluster
        logger.info(f"{cluster.key}: updating defaults and finalizer")
        updated = await self.store.update(cluster.to_dict())
        return StorageCluster.from_dict(updated)

    async def _component_failed(
        self,
        cluster: StorageCluster,
        component: Component,
        cause: BaseException,
        result: ReconcileResult,
    ) -> None:
        message = f"Failed to setup {component.name}. {cause}"
        logger.error(f"{cluster.key}: {message}")
        await self.recorder.warning(cluster, FAILED_COMPONENT_REASON, message)
        result.add_error(message)

    async def _delete_cluster(self, cluster: StorageCluster) -> ReconcileResult:
        result = ReconcileResult()
        if DELETE_FINALIZER not in cluster.metadata.finalizers:
            return result

        for component in self.registry.list_components():
            try:
                await component.delete(cluster)
            except Exception as e:
                message = f"Failed to delete {component.name}. {e}"
                logger.error(f"{cluster.key}: {message}")
                await self.recorder.warning(cluster, DELETE_FAILED_REASON, message)
                result.add_error(message)
        if not result.success:
            return result

        completed = True
        # Status comes from wipe progress, never from the stored condition
        if cluster.spec.delete_strategy is not None:
            try:
                status = await self.driver.delete_storage(cluster)
                completed = status.status == DeleteStatusType.COMPLETED
                cluster = await self._record_delete_status(cluster, status)
            except ObjectStoreError as e:
                message = f"Failed to delete storage: {e}"
                await self.recorder.warning(cluster, DELETE_FAILED_REASON, message)
                result.add_error(message)
                return result
            if status.status == DeleteStatusType.FAILED:
                result.add_error(status.message)

        if not completed:
            return result

        for component in self.registry.list_components():
            component.mark_deleted()

        cluster.metadata.finalizers = [
            f for f in cluster.metadata.finalizers if f != DELETE_FINALIZER
        ]
        try:
            await self.store.update(cluster.to_dict())
        except ObjectStoreError as e:
            result.add_error(f"Failed to remove finalizer: {e}")
            return result
        logger.info(f"{cluster.key}: removed finalizer {DELETE_FINALIZER}")
        return result

    async def _record_delete_status(
        self, cluster: StorageCluster, status: StorageClusterDeleteStatus
    ) -> StorageCluster:
        if not set_delete_condition(cluster, status):
            return cluster

        # Events only on transitions
        if status.status == DeleteStatusType.FAILED:
            await self.recorder.warning(cluster, DELETE_FAILED_REASON, status.message)
        elif status.status == DeleteStatusType.COMPLETED:
            await self.recorder.normal(
                cluster, DELETE_COMPLETED_REASON, "Storage cluster teardown completed"
            )
        else:
            await self.recorder.normal(
                cluster, DELETE_IN_PROGRESS_REASON, status.message
            )
        updated = await self.store.update_status(cluster.to_dict())
        return StorageCluster.from_dict(updated)
