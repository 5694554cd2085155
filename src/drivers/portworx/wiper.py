"""
Portworx node wiper.

Runs a privileged DaemonSet on every storage node that removes the
Portworx installation (and, optionally, the data on its drives). Each
wiper pod turns ready once its node is clean.
"""

import logging
from typing import Any, Dict, List

from converge import create_or_update, delete_object
from models import StorageCluster
from podspec import image_for_cluster, pull_secrets
from store import ObjectStore
from teardown import NodeWiperProgress, WipeTask

logger = logging.getLogger(__name__)

NODE_WIPER_NAME = "px-node-wiper"
NODE_WIPER_LABELS = {"name": NODE_WIPER_NAME}
NODE_WIPER_DONE_FILE = "/tmp/px-node-wipe-done"

METADATA_NAMESPACE = "kube-system"
BOOTSTRAP_CONFIG_MAP_PREFIX = "px-bootstrap-"
CLOUD_DRIVE_CONFIG_MAP_PREFIX = "px-cloud-drive-"

_HOST_PATHS = [
    ("etcpwx", "/etc/pwx"),
    ("hostproc", "/proc"),
    ("optpwx", "/opt/pwx"),
    ("dev", "/dev"),
    ("sys", "/sys"),
    ("run", "/run"),
    ("dbus", "/var/run/dbus"),
    ("varlibosd", "/var/lib/osd"),
]


def cluster_id(cluster: StorageCluster) -> str:
    return cluster.name.lower().replace("_", "")


def node_wiper_daemon_set(
    cluster: StorageCluster, image: str, tag: str, remove_data: bool
) -> Dict[str, Any]:
    """Manifest of the wiper DaemonSet for a cluster."""
    container: Dict[str, Any] = {
        "name": NODE_WIPER_NAME,
        "image": image_for_cluster(f"{image}:{tag}", cluster.spec.custom_image_registry),
        "imagePullPolicy": cluster.spec.image_pull_policy or "Always",
        "args": ["-w"] if remove_data else [],
        "securityContext": {"privileged": True},
        "readinessProbe": {
            "initialDelaySeconds": 30,
            "exec": {"command": ["cat", NODE_WIPER_DONE_FILE]},
        },
        "volumeMounts": [
            {"name": name, "mountPath": path} for name, path in _HOST_PATHS
        ],
    }
    pod_spec: Dict[str, Any] = {
        "serviceAccountName": NODE_WIPER_NAME,
        "restartPolicy": "Always",
        "containers": [container],
        "volumes": [
            {"name": name, "hostPath": {"path": path}} for name, path in _HOST_PATHS
        ],
    }
    secrets = pull_secrets(cluster.spec.image_pull_secret)
    if secrets:
        pod_spec["imagePullSecrets"] = secrets
    node_affinity = (cluster.spec.placement or {}).get("nodeAffinity")
    if node_affinity:
        pod_spec["affinity"] = {"nodeAffinity": node_affinity}

    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {
            "name": NODE_WIPER_NAME,
            "namespace": cluster.namespace,
            "labels": dict(NODE_WIPER_LABELS),
        },
        "spec": {
            "selector": {"matchLabels": dict(NODE_WIPER_LABELS)},
            "template": {
                "metadata": {"labels": dict(NODE_WIPER_LABELS)},
                "spec": pod_spec,
            },
        },
    }


def node_wiper_rbac(cluster: StorageCluster) -> List[Dict[str, Any]]:
    """Service account, cluster role and binding the wiper pods run as."""
    return [
        {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": NODE_WIPER_NAME, "namespace": cluster.namespace},
        },
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": NODE_WIPER_NAME},
            "rules": [
                {
                    "apiGroups": [""],
                    "resources": ["configmaps"],
                    "verbs": ["get", "list", "delete"],
                },
                {
                    "apiGroups": ["policy"],
                    "resources": ["podsecuritypolicies"],
                    "resourceNames": ["privileged"],
                    "verbs": ["use"],
                },
            ],
        },
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRoleBinding",
            "metadata": {"name": NODE_WIPER_NAME},
            "subjects": [
                {
                    "kind": "ServiceAccount",
                    "name": NODE_WIPER_NAME,
                    "namespace": cluster.namespace,
                }
            ],
            "roleRef": {
                "kind": "ClusterRole",
                "name": NODE_WIPER_NAME,
                "apiGroup": "rbac.authorization.k8s.io",
            },
        },
    ]


def pod_ready(pod: Dict[str, Any]) -> bool:
    statuses = (pod.get("status") or {}).get("containerStatuses") or []
    return bool(statuses) and all(s.get("ready") for s in statuses)


class NodeWiper(WipeTask):
    """Node wiper DaemonSet for one StorageCluster."""

    def __init__(self, store: ObjectStore, cluster: StorageCluster):
        self.store = store
        self.cluster = cluster

    async def get_progress(self) -> NodeWiperProgress:
        daemon_set = await self.store.get(
            "DaemonSet", NODE_WIPER_NAME, self.cluster.namespace
        )
        pods = await self.store.list(
            "Pod", self.cluster.namespace, labels=NODE_WIPER_LABELS
        )
        completed = sum(1 for pod in pods if pod_ready(pod))
        total = (daemon_set.get("status") or {}).get("desiredNumberScheduled") or 0
        return NodeWiperProgress(
            completed=completed, in_progress=len(pods) - completed, total=total
        )

    async def launch(self, image: str, tag: str, remove_data: bool) -> None:
        for obj in node_wiper_rbac(self.cluster):
            await create_or_update(self.store, obj)
        await create_or_update(
            self.store, node_wiper_daemon_set(self.cluster, image, tag, remove_data)
        )
        logger.info(
            f"{self.cluster.key}: launched node wiper (remove data: {remove_data})"
        )

    async def delete_task(self) -> None:
        namespace = self.cluster.namespace
        await delete_object(self.store, "DaemonSet", NODE_WIPER_NAME, namespace)
        await delete_object(self.store, "ClusterRoleBinding", NODE_WIPER_NAME)
        await delete_object(self.store, "ClusterRole", NODE_WIPER_NAME)
        await delete_object(self.store, "ServiceAccount", NODE_WIPER_NAME, namespace)

    async def wipe_metadata(self) -> None:
        kvdb = self.cluster.spec.kvdb
        # Without endpoints the cluster defaults to the internal kvdb
        if kvdb is not None and kvdb.endpoints and not kvdb.internal:
            return
        name = cluster_id(self.cluster)
        for prefix in (BOOTSTRAP_CONFIG_MAP_PREFIX, CLOUD_DRIVE_CONFIG_MAP_PREFIX):
            await delete_object(
                self.store, "ConfigMap", f"{prefix}{name}", METADATA_NAMESPACE
            )
