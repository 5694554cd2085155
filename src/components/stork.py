"""
Stork component.

Stork is the storage-aware scheduler extender. Enabling it deploys the
Stork controller, a dedicated kube-scheduler configured to call Stork as an
extender, the RBAC both need, the extender Service and the snapshot
StorageClass. Every child is owned by the StorageCluster.
"""

import json
import logging
from typing import Any, Dict, List, Tuple

from components.base import Component, ComponentError, ErrorKind
from converge import (
    CONTAINER_PATH,
    create_or_update,
    delete_object,
    get_object,
    get_path,
)
from events import FAILED_COMPONENT_REASON
from models import StorageCluster
from podspec import (
    build_args,
    image_for_cluster,
    merge_env,
    parse_cpu,
    pull_secrets,
)
from store import ObjectStoreError

logger = logging.getLogger(__name__)

COMPONENT_NAME = "Stork"

STORK_CONFIG_MAP_NAME = "stork-config"
STORK_SERVICE_ACCOUNT_NAME = "stork-account"
STORK_SCHED_SERVICE_ACCOUNT_NAME = "stork-scheduler-account"
STORK_CLUSTER_ROLE_NAME = "stork-role"
STORK_SCHED_CLUSTER_ROLE_NAME = "stork-scheduler-role"
STORK_CLUSTER_ROLE_BINDING_NAME = "stork-role-binding"
STORK_SCHED_CLUSTER_ROLE_BINDING_NAME = "stork-scheduler-role-binding"
STORK_SERVICE_NAME = "stork-service"
STORK_DEPLOYMENT_NAME = "stork"
STORK_SCHED_DEPLOYMENT_NAME = "stork-scheduler"
STORK_SNAPSHOT_STORAGE_CLASS_NAME = "stork-snapshot-sc"
STORK_SNAPSHOT_PROVISIONER = "stork-snapshot"

STORK_SCHEDULER_NAME = "stork"
STORK_SERVICE_PORT = 8099
STORK_WEBHOOK_PORT = 443
STORK_REPLICAS = 3

DEFAULT_STORK_CPU = "0.1"
DEFAULT_IMAGE_PULL_POLICY = "Always"
DEFAULT_STORK_SCHED_IMAGE = "gcr.io/google_containers/kube-scheduler-amd64"

ANNOTATION_STORK_CPU = "operator.libopenstorage.org/stork-cpu"
ANNOTATION_STORK_SCHED_CPU = "operator.libopenstorage.org/stork-scheduler-cpu"

STORK_LABELS = {"name": "stork", "tier": "control-plane"}
STORK_SCHED_LABELS = {
    "component": "scheduler",
    "tier": "control-plane",
    "name": STORK_SCHED_DEPLOYMENT_NAME,
}
CRITICAL_POD_ANNOTATIONS = {"scheduler.alpha.kubernetes.io/critical-pod": ""}

# Every child as (kind, name, namespaced), in creation order
STORK_CHILDREN: List[Tuple[str, str, bool]] = [
    ("ConfigMap", STORK_CONFIG_MAP_NAME, True),
    ("ServiceAccount", STORK_SERVICE_ACCOUNT_NAME, True),
    ("ServiceAccount", STORK_SCHED_SERVICE_ACCOUNT_NAME, True),
    ("ClusterRole", STORK_CLUSTER_ROLE_NAME, False),
    ("ClusterRole", STORK_SCHED_CLUSTER_ROLE_NAME, False),
    ("ClusterRoleBinding", STORK_CLUSTER_ROLE_BINDING_NAME, False),
    ("ClusterRoleBinding", STORK_SCHED_CLUSTER_ROLE_BINDING_NAME, False),
    ("Service", STORK_SERVICE_NAME, True),
    ("Deployment", STORK_DEPLOYMENT_NAME, True),
    ("Deployment", STORK_SCHED_DEPLOYMENT_NAME, True),
    ("StorageClass", STORK_SNAPSHOT_STORAGE_CLASS_NAME, False),
]

STORK_CLUSTER_ROLE_RULES = [
    {"apiGroups": ["*"], "resources": ["*"], "verbs": ["*"]},
]

STORK_SCHED_CLUSTER_ROLE_RULES = [
    {
        "apiGroups": [""],
        "resources": ["endpoints"],
        "verbs": ["get", "create", "update"],
    },
    {
        "apiGroups": [""],
        "resources": ["configmaps"],
        "verbs": ["get", "list", "watch"],
    },
    {
        "apiGroups": [""],
        "resources": ["events"],
        "verbs": ["create", "patch", "update"],
    },
    {
        "apiGroups": [""],
        "resources": ["endpoints"],
        "resourceNames": ["kube-scheduler"],
        "verbs": ["get", "delete", "update", "patch"],
    },
    {
        "apiGroups": [""],
        "resources": ["bindings", "pods/binding"],
        "verbs": ["create"],
    },
    {
        "apiGroups": [""],
        "resources": ["pods/status"],
        "verbs": ["patch", "update"],
    },
    {
        "apiGroups": [""],
        "resources": ["pods"],
        "verbs": ["get", "list", "watch", "delete"],
    },
    {
        "apiGroups": [""],
        "resources": [
            "nodes",
            "persistentvolumeclaims",
            "persistentvolumes",
            "replicationcontrollers",
            "services",
        ],
        "verbs": ["get", "list", "watch"],
    },
    {
        "apiGroups": ["apps", "extensions"],
        "resources": ["replicasets", "statefulsets"],
        "verbs": ["get", "list", "watch"],
    },
    {
        "apiGroups": ["policy"],
        "resources": ["poddisruptionbudgets"],
        "verbs": ["get", "list", "watch"],
    },
    {
        "apiGroups": ["storage.k8s.io"],
        "resources": ["storageclasses"],
        "verbs": ["get", "list", "watch"],
    },
    {
        "apiGroups": ["coordination.k8s.io"],
        "resources": ["leases"],
        "verbs": ["get", "list", "watch", "create", "update"],
    },
]


def stork_default_args(driver_name: str) -> Dict[str, str]:
    return {
        "driver": driver_name,
        "verbose": "true",
        "leader-elect": "true",
        "health-monitor-interval": "120",
    }


def scheduler_policy(namespace: str) -> Dict[str, Any]:
    """Scheduler policy routing filter and prioritize calls to Stork."""
    return {
        "kind": "Policy",
        "apiVersion": "v1",
        "extenders": [
            {
                "urlPrefix": (
                    f"http://{STORK_SERVICE_NAME}.{namespace}:{STORK_SERVICE_PORT}"
                ),
                "apiVersion": "v1beta1",
                "filterVerb": "filter",
                "prioritizeVerb": "prioritize",
                "weight": 5,
                "enableHttps": False,
                "nodeCacheCapable": False,
            }
        ],
    }


def _cluster_role_binding(
    name: str, role: str, service_account: str, namespace: str
) -> Dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": name},
        "subjects": [
            {"kind": "ServiceAccount", "name": service_account, "namespace": namespace}
        ],
        "roleRef": {
            "kind": "ClusterRole",
            "name": role,
            "apiGroup": "rbac.authorization.k8s.io",
        },
    }


def _deployment(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    service_account: str,
    container: Dict[str, Any],
    image_pull_secret: Any,
    anti_affinity_value: str,
) -> Dict[str, Any]:
    pod_spec: Dict[str, Any] = {
        "serviceAccountName": service_account,
        "containers": [container],
        "affinity": {
            "podAntiAffinity": {
                "requiredDuringSchedulingIgnoredDuringExecution": [
                    {
                        "labelSelector": {
                            "matchExpressions": [
                                {
                                    "key": "name",
                                    "operator": "In",
                                    "values": [anti_affinity_value],
                                }
                            ]
                        },
                        "topologyKey": "kubernetes.io/hostname",
                    }
                ]
            }
        },
    }
    secrets = pull_secrets(image_pull_secret)
    if secrets:
        pod_spec["imagePullSecrets"] = secrets
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels),
            "annotations": dict(CRITICAL_POD_ANNOTATIONS),
        },
        "spec": {
            "replicas": STORK_REPLICAS,
            "selector": {"matchLabels": dict(labels)},
            "strategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {"maxSurge": 1, "maxUnavailable": 1},
            },
            "template": {
                "metadata": {
                    "labels": dict(labels),
                    "annotations": dict(CRITICAL_POD_ANNOTATIONS),
                },
                "spec": pod_spec,
            },
        },
    }


class StorkComponent(Component):
    """Deploys and maintains Stork for clusters that enable it."""

    def __init__(self, driver):
        self.driver = driver

    @property
    def name(self) -> str:
        return COMPONENT_NAME

    def is_enabled(self, cluster: StorageCluster) -> bool:
        stork = cluster.spec.stork
        return stork is not None and stork.enabled and not cluster.being_deleted

    async def reconcile(self, cluster: StorageCluster) -> None:
        try:
            driver_name = self.driver.get_stork_driver_name()
        except NotImplementedError as e:
            logger.info(f"{cluster.key}: removing Stork: {e}")
            await self.delete(cluster)
            return

        if not cluster.spec.stork or not cluster.spec.stork.image:
            await self.recorder.warning(
                cluster,
                FAILED_COMPONENT_REASON,
                "Failed to setup Stork. stork image cannot be empty",
            )
            return

        try:
            await self._setup(cluster, driver_name)
        except ObjectStoreError as e:
            raise ComponentError(ErrorKind.RECOVERABLE, e) from e

    async def delete(self, cluster: StorageCluster) -> None:
        owner = cluster.owner_reference()
        for kind, name, namespaced in STORK_CHILDREN:
            namespace = cluster.namespace if namespaced else None
            await delete_object(self.store, kind, name, namespace, owner=owner)

    def mark_deleted(self) -> None:
        pass

    async def _setup(self, cluster: StorageCluster, driver_name: str) -> None:
        owner = cluster.owner_reference()
        namespace = cluster.namespace

        stork_cpu = await self._cpu(cluster, ANNOTATION_STORK_CPU, STORK_DEPLOYMENT_NAME)
        sched_cpu = await self._cpu(
            cluster, ANNOTATION_STORK_SCHED_CPU, STORK_SCHED_DEPLOYMENT_NAME
        )

        children = [
            self._config_map(namespace),
            self._service_account(STORK_SERVICE_ACCOUNT_NAME, namespace),
            self._service_account(STORK_SCHED_SERVICE_ACCOUNT_NAME, namespace),
            self._cluster_role(STORK_CLUSTER_ROLE_NAME, STORK_CLUSTER_ROLE_RULES),
            self._cluster_role(
                STORK_SCHED_CLUSTER_ROLE_NAME, STORK_SCHED_CLUSTER_ROLE_RULES
            ),
            _cluster_role_binding(
                STORK_CLUSTER_ROLE_BINDING_NAME,
                STORK_CLUSTER_ROLE_NAME,
                STORK_SERVICE_ACCOUNT_NAME,
                namespace,
            ),
            _cluster_role_binding(
                STORK_SCHED_CLUSTER_ROLE_BINDING_NAME,
                STORK_SCHED_CLUSTER_ROLE_NAME,
                STORK_SCHED_SERVICE_ACCOUNT_NAME,
                namespace,
            ),
            self._service(namespace),
            self._stork_deployment(cluster, driver_name, stork_cpu),
            self._scheduler_deployment(cluster, sched_cpu),
            self._storage_class(),
        ]
        for child in children:
            await create_or_update(self.store, child, owner)

    async def _cpu(
        self, cluster: StorageCluster, annotation: str, deployment_name: str
    ) -> str:
        """
        CPU request for a deployment.

        An invalid annotation is reported once per reconcile and the CPU of
        the running deployment (or the default) is kept.
        """
        value = cluster.annotations.get(annotation)
        if value is None:
            return DEFAULT_STORK_CPU
        try:
            parse_cpu(value)
            return value
        except ValueError as e:
            await self.recorder.warning(
                cluster,
                FAILED_COMPONENT_REASON,
                f"Failed to setup Stork. Invalid CPU quantity {value!r} "
                f"in annotation {annotation}: {e}",
            )
        live = await get_object(
            self.store, "Deployment", deployment_name, cluster.namespace
        )
        cpu = get_path(live, CONTAINER_PATH + ("resources", "requests", "cpu"))
        return str(cpu) if cpu is not None else DEFAULT_STORK_CPU

    def _config_map(self, namespace: str) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": STORK_CONFIG_MAP_NAME, "namespace": namespace},
            "data": {"policy.cfg": json.dumps(scheduler_policy(namespace))},
        }

    def _service_account(self, name: str, namespace: str) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": name, "namespace": namespace},
        }

    def _cluster_role(self, name: str, rules: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": name},
            "rules": [dict(rule) for rule in rules],
        }

    def _service(self, namespace: str) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": STORK_SERVICE_NAME,
                "namespace": namespace,
                "labels": {"name": "stork"},
            },
            "spec": {
                "selector": {"name": "stork"},
                "type": "ClusterIP",
                "ports": [
                    {
                        "name": "extender",
                        "protocol": "TCP",
                        "port": STORK_SERVICE_PORT,
                        "targetPort": STORK_SERVICE_PORT,
                    },
                    {
                        "name": "webhook",
                        "protocol": "TCP",
                        "port": STORK_WEBHOOK_PORT,
                        "targetPort": STORK_WEBHOOK_PORT,
                    },
                ],
            },
        }

    def _storage_class(self) -> Dict[str, Any]:
        return {
            "apiVersion": "storage.k8s.io/v1",
            "kind": "StorageClass",
            "metadata": {"name": STORK_SNAPSHOT_STORAGE_CLASS_NAME},
            "provisioner": STORK_SNAPSHOT_PROVISIONER,
        }

    def _stork_deployment(
        self, cluster: StorageCluster, driver_name: str, cpu: str
    ) -> Dict[str, Any]:
        stork = cluster.spec.stork
        args = build_args(stork_default_args(driver_name), stork.args)
        env = merge_env(self.driver.get_stork_env_list(cluster), stork.env)
        container = {
            "name": "stork",
            "image": image_for_cluster(stork.image, cluster.spec.custom_image_registry),
            "imagePullPolicy": cluster.spec.image_pull_policy
            or DEFAULT_IMAGE_PULL_POLICY,
            "command": ["/stork"] + args,
            "env": env,
            "resources": {"requests": {"cpu": cpu}},
        }
        return _deployment(
            STORK_DEPLOYMENT_NAME,
            cluster.namespace,
            STORK_LABELS,
            STORK_SERVICE_ACCOUNT_NAME,
            container,
            cluster.spec.image_pull_secret,
            "stork",
        )

    def _scheduler_deployment(
        self, cluster: StorageCluster, cpu: str
    ) -> Dict[str, Any]:
        namespace = cluster.namespace
        command = ["/usr/local/bin/kube-scheduler"] + build_args(
            {
                "address": "0.0.0.0",
                "leader-elect": "true",
                "scheduler-name": STORK_SCHEDULER_NAME,
                "policy-configmap": STORK_CONFIG_MAP_NAME,
                "policy-configmap-namespace": namespace,
                "lock-object-name": STORK_SCHED_DEPLOYMENT_NAME,
            }
        )
        image = f"{DEFAULT_STORK_SCHED_IMAGE}:v{self.k8s_version}"
        container = {
            "name": "stork-scheduler",
            "image": image_for_cluster(image, cluster.spec.custom_image_registry),
            "imagePullPolicy": cluster.spec.image_pull_policy
            or DEFAULT_IMAGE_PULL_POLICY,
            "command": command,
            "resources": {"requests": {"cpu": cpu}},
            "livenessProbe": {
                "initialDelaySeconds": 15,
                "httpGet": {"path": "/healthz", "port": 10251},
            },
            "readinessProbe": {
                "httpGet": {"path": "/healthz", "port": 10251},
            },
        }
        return _deployment(
            STORK_SCHED_DEPLOYMENT_NAME,
            namespace,
            STORK_SCHED_LABELS,
            STORK_SCHED_SERVICE_ACCOUNT_NAME,
            container,
            cluster.spec.image_pull_secret,
            STORK_SCHED_DEPLOYMENT_NAME,
        )
