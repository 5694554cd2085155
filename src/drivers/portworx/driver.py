"""
Portworx storage driver.
"""

import logging
from typing import Any, Dict, List

from drivers.base import Driver
from drivers.portworx.wiper import NodeWiper
from models import KvdbSpec, StorageCluster, StorageClusterDeleteStatus
from teardown import TeardownWorkflow

logger = logging.getLogger(__name__)

DRIVER_NAME = "portworx"
STORK_DRIVER_NAME = "pxd"

DEFAULT_SECRETS_PROVIDER = "k8s"
DEFAULT_START_PORT = 9001
DEFAULT_NODE_WIPER_IMAGE = "adityadani/px-node-wiper"
DEFAULT_NODE_WIPER_TAG = "latest"

ENV_KEY_PX_NAMESPACE = "PX_NAMESPACE"


def default_node_affinity() -> Dict[str, Any]:
    """Run on every node except masters and nodes opted out with px/enabled=false."""
    return {
        "requiredDuringSchedulingIgnoredDuringExecution": {
            "nodeSelectorTerms": [
                {
                    "matchExpressions": [
                        {
                            "key": "px/enabled",
                            "operator": "NotIn",
                            "values": ["false"],
                        },
                        {
                            "key": "node-role.kubernetes.io/master",
                            "operator": "DoesNotExist",
                        },
                    ]
                }
            ]
        }
    }


class PortworxDriver(Driver):
    """Driver for Portworx storage clusters."""

    @property
    def name(self) -> str:
        return DRIVER_NAME

    def get_selector_labels(self) -> Dict[str, str]:
        return {"name": DRIVER_NAME}

    def set_defaults_on_storage_cluster(self, cluster: StorageCluster) -> None:
        spec = cluster.spec
        if spec.kvdb is None or not spec.kvdb.endpoints:
            spec.kvdb = KvdbSpec(internal=True)
        if not spec.secrets_provider:
            spec.secrets_provider = DEFAULT_SECRETS_PROVIDER
        if not spec.start_port:
            spec.start_port = DEFAULT_START_PORT
        placement = spec.placement or {}
        if not placement.get("nodeAffinity"):
            placement["nodeAffinity"] = default_node_affinity()
            spec.placement = placement

    def get_stork_driver_name(self) -> str:
        return STORK_DRIVER_NAME

    def get_stork_env_list(self, cluster: StorageCluster) -> List[Dict[str, Any]]:
        return [{"name": ENV_KEY_PX_NAMESPACE, "value": cluster.namespace}]

    async def delete_storage(
        self, cluster: StorageCluster
    ) -> StorageClusterDeleteStatus:
        image = getattr(self.config, "node_wiper_image", DEFAULT_NODE_WIPER_IMAGE)
        tag = getattr(self.config, "node_wiper_tag", DEFAULT_NODE_WIPER_TAG)
        workflow = TeardownWorkflow(NodeWiper(self.store, cluster), image, tag)
        status = await workflow.run(cluster)
        logger.debug(f"{cluster.key}: delete status {status.status.value}")
        return status
