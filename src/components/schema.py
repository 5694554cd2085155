"""
Schema installer component.

Registers the cluster-scoped VolumePlacementStrategy custom resource
definition and waits for the API server to report it established. The
definition is shared by every StorageCluster, so it is never removed.
"""

import asyncio
import copy
import logging
from typing import Any, Dict

from components.base import Component, ComponentError, ErrorKind
from models import StorageCluster
from store import KindInfo, ObjectStoreError, is_already_exists, is_not_found
from validation import validate_openapi_schema

logger = logging.getLogger(__name__)

COMPONENT_NAME = "Portworx CRDs"

VPS_GROUP = "portworx.io"
VPS_PLURAL = "volumeplacementstrategies"
VPS_KIND = "VolumePlacementStrategy"
VPS_STORAGE_VERSION = "v1beta2"
VPS_LEGACY_VERSION = "v1beta1"
VPS_CRD_NAME = f"{VPS_PLURAL}.{VPS_GROUP}"

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_TIMEOUT = 60.0

_OPEN_SCHEMA = {
    "openAPIV3Schema": {
        "type": "object",
        "x-kubernetes-preserve-unknown-fields": True,
    }
}


def volume_placement_strategy_crd() -> Dict[str, Any]:
    """Manifest of the VolumePlacementStrategy definition."""
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": VPS_CRD_NAME},
        "spec": {
            "group": VPS_GROUP,
            "scope": "Cluster",
            "names": {
                "singular": "volumeplacementstrategy",
                "plural": VPS_PLURAL,
                "kind": VPS_KIND,
                "shortNames": ["vps", "vp"],
            },
            "versions": [
                {
                    "name": VPS_STORAGE_VERSION,
                    "served": True,
                    "storage": True,
                    "schema": copy.deepcopy(_OPEN_SCHEMA),
                },
                {
                    "name": VPS_LEGACY_VERSION,
                    "served": False,
                    "storage": False,
                    "schema": copy.deepcopy(_OPEN_SCHEMA),
                },
            ],
        },
    }


def is_established(crd: Dict[str, Any]) -> bool:
    """Whether a definition reports the Established condition."""
    for condition in crd.get("status", {}).get("conditions") or []:
        if condition.get("type") == "Established":
            return condition.get("status") == "True"
    return False


class SchemaInstaller(Component):
    """
    Installs the VolumePlacementStrategy definition once per process.

    The first reconcile creates the definition (an existing one counts as
    success) and blocks until it is established or ``timeout`` seconds have
    passed, polling every ``poll_interval`` seconds. Later reconciles are
    no-ops until ``mark_deleted`` is called.
    """

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._crd_created = False

    @property
    def name(self) -> str:
        return COMPONENT_NAME

    def is_enabled(self, cluster: StorageCluster) -> bool:
        return True

    async def reconcile(self, cluster: StorageCluster) -> None:
        if self._crd_created:
            return
        try:
            await self._create_crd()
        except Exception as e:
            raise ComponentError(ErrorKind.CRITICAL, e) from e
        self._crd_created = True

    async def delete(self, cluster: StorageCluster) -> None:
        # Other clusters may still use the definition
        return None

    def mark_deleted(self) -> None:
        self._crd_created = False

    async def _create_crd(self) -> None:
        logger.debug(f"Creating {VPS_KIND} CRD")
        crd = volume_placement_strategy_crd()
        for version in crd["spec"]["versions"]:
            valid, error = validate_openapi_schema(
                version["schema"]["openAPIV3Schema"]
            )
            if not valid:
                raise ValueError(f"{VPS_CRD_NAME} {version['name']}: {error}")

        try:
            await self.store.create(crd)
        except ObjectStoreError as e:
            if not is_already_exists(e):
                raise
            logger.debug(f"{VPS_CRD_NAME} already exists")

        await self._wait_established(VPS_CRD_NAME)
        self.kinds.register(
            KindInfo(
                VPS_KIND,
                f"{VPS_GROUP}/{VPS_STORAGE_VERSION}",
                VPS_PLURAL,
                namespaced=False,
            )
        )
        logger.info(f"{VPS_CRD_NAME} is established")

    async def _wait_established(self, name: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while True:
            try:
                crd = await self.store.get("CustomResourceDefinition", name)
            except ObjectStoreError as e:
                if not is_not_found(e):
                    raise
                # Creation may not be visible yet
                crd = {}
            if is_established(crd):
                return
            if loop.time() >= deadline:
                raise TimeoutError(
                    f"{name} was not established within {self.timeout} seconds"
                )
            await asyncio.sleep(self.poll_interval)
