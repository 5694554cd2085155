"""
Object Store - Kind-addressed access to Kubernetes objects.

Wraps the kubernetes_asyncio typed APIs (and CustomObjectsApi for custom
resources) behind a small get/list/create/update/delete interface operating
on plain manifest dicts. API errors are converted into store exceptions so
that callers can distinguish "absent" from "failed".
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, ApiException

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """Error returned by the object store."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        kind: Optional[str] = None,
        name: Optional[str] = None,
        namespace: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.kind = kind
        self.name = name
        self.namespace = namespace


class NotFoundError(ObjectStoreError):
    """The requested object does not exist."""


class AlreadyExistsError(ObjectStoreError):
    """An object with the same name already exists."""


class ConflictError(ObjectStoreError):
    """The object was modified concurrently (stale resourceVersion)."""


def is_not_found(err: BaseException) -> bool:
    """Check whether an error means the object is absent."""
    return isinstance(err, NotFoundError)


def is_already_exists(err: BaseException) -> bool:
    """Check whether an error means the object already exists."""
    return isinstance(err, AlreadyExistsError)


@dataclass(frozen=True)
class KindInfo:
    """
    How to address one object kind through the API.

    Typed kinds name the kubernetes_asyncio API class and the snake_case
    object name used in its method names (``read_namespaced_<method>``).
    Custom resources leave both unset and go through CustomObjectsApi.
    """

    kind: str
    api_version: str
    plural: str
    namespaced: bool = True
    api: Optional[str] = None
    method: Optional[str] = None

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def is_custom(self) -> bool:
        return self.api is None


DEFAULT_KINDS = [
    KindInfo("ConfigMap", "v1", "configmaps", True, "CoreV1Api", "config_map"),
    KindInfo("Event", "v1", "events", True, "CoreV1Api", "event"),
    KindInfo("Pod", "v1", "pods", True, "CoreV1Api", "pod"),
    KindInfo("Service", "v1", "services", True, "CoreV1Api", "service"),
    KindInfo(
        "ServiceAccount", "v1", "serviceaccounts", True, "CoreV1Api", "service_account"
    ),
    KindInfo("DaemonSet", "apps/v1", "daemonsets", True, "AppsV1Api", "daemon_set"),
    KindInfo("Deployment", "apps/v1", "deployments", True, "AppsV1Api", "deployment"),
    KindInfo(
        "ClusterRole",
        "rbac.authorization.k8s.io/v1",
        "clusterroles",
        False,
        "RbacAuthorizationV1Api",
        "cluster_role",
    ),
    KindInfo(
        "ClusterRoleBinding",
        "rbac.authorization.k8s.io/v1",
        "clusterrolebindings",
        False,
        "RbacAuthorizationV1Api",
        "cluster_role_binding",
    ),
    KindInfo(
        "StorageClass",
        "storage.k8s.io/v1",
        "storageclasses",
        False,
        "StorageV1Api",
        "storage_class",
    ),
    KindInfo(
        "CustomResourceDefinition",
        "apiextensions.k8s.io/v1",
        "customresourcedefinitions",
        False,
        "ApiextensionsV1Api",
        "custom_resource_definition",
    ),
    KindInfo("StorageCluster", "core.libopenstorage.org/v1alpha1", "storageclusters"),
]


class KindRegistry:
    """
    Registry of object kinds the store can address.

    Components may register additional kinds at runtime, e.g. once a
    custom resource definition they installed is established.
    """

    def __init__(self, kinds: Optional[Iterable[KindInfo]] = None):
        self._kinds: Dict[str, KindInfo] = {}
        for info in DEFAULT_KINDS if kinds is None else kinds:
            self.register(info)

    def register(self, info: KindInfo) -> None:
        if info.kind in self._kinds and self._kinds[info.kind] != info:
            logger.warning(f"Overwriting existing kind registration: {info.kind}")
        self._kinds[info.kind] = info

    def get(self, kind: str) -> KindInfo:
        if kind not in self._kinds:
            available = ", ".join(sorted(self._kinds)) or "none"
            raise KeyError(f"Unknown kind: {kind}. Registered kinds: {available}")
        return self._kinds[kind]

    def has(self, kind: str) -> bool:
        return kind in self._kinds

    def list_kinds(self) -> List[str]:
        return list(self._kinds.keys())


def format_label_selector(labels: Optional[Dict[str, str]]) -> Optional[str]:
    """Render a label map as an equality-based selector string."""
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class ObjectStore(ABC):
    """
    Abstract kind-addressed object store.

    All objects are plain manifest dicts (``apiVersion``, ``kind``,
    ``metadata``, ...). Cluster-scoped kinds ignore ``namespace``.
    """

    kinds: KindRegistry

    @abstractmethod
    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Read one object.

        Raises:
            NotFoundError: If the object does not exist.
        """
        pass

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of a kind, optionally filtered by namespace and labels."""
        pass

    @abstractmethod
    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an object.

        Raises:
            AlreadyExistsError: If an object with that name exists.
        """
        pass

    @abstractmethod
    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an existing object."""
        pass

    @abstractmethod
    async def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the status subresource of an existing object."""
        pass

    @abstractmethod
    async def delete(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> None:
        """
        Delete an object.

        Raises:
            NotFoundError: If the object does not exist.
        """
        pass


class KubernetesObjectStore(ObjectStore):
    """Object store backed by the Kubernetes API server."""

    def __init__(self, api_client: ApiClient, kinds: Optional[KindRegistry] = None):
        self._api_client = api_client
        self.kinds = kinds or KindRegistry()
        self._apis: Dict[str, Any] = {}

    def _api(self, name: str) -> Any:
        if name not in self._apis:
            self._apis[name] = getattr(client, name)(self._api_client)
        return self._apis[name]

    def _to_dict(self, info: KindInfo, obj: Any) -> Dict[str, Any]:
        if not isinstance(obj, dict):
            obj = self._api_client.sanitize_for_serialization(obj)
        # List items come back without type information
        obj.setdefault("apiVersion", info.api_version)
        obj.setdefault("kind", info.kind)
        return obj

    def _convert_error(
        self,
        e: ApiException,
        verb: str,
        info: KindInfo,
        name: Optional[str],
        namespace: Optional[str],
    ) -> ObjectStoreError:
        where = f"{namespace}/{name}" if namespace and info.namespaced else name
        message = f"Failed to {verb} {info.kind} {where}: {e.status} {e.reason}"
        if e.status == 404:
            error_class = NotFoundError
        elif e.status == 409 and verb == "create":
            error_class = AlreadyExistsError
        elif e.status == 409:
            error_class = ConflictError
        else:
            error_class = ObjectStoreError
        return error_class(
            message, status=e.status, kind=info.kind, name=name, namespace=namespace
        )

    async def _call(
        self,
        verb: str,
        info: KindInfo,
        name: Optional[str] = None,
        namespace: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Any:
        if not info.namespaced:
            namespace = None
        try:
            if info.is_custom:
                return await self._call_custom(
                    verb, info, name, namespace, body, **kwargs
                )
            return await self._call_typed(verb, info, name, namespace, body, **kwargs)
        except ApiException as e:
            raise self._convert_error(e, verb, info, name, namespace) from e

    async def _call_typed(
        self,
        verb: str,
        info: KindInfo,
        name: Optional[str],
        namespace: Optional[str],
        body: Optional[Dict[str, Any]],
        **kwargs: Any,
    ) -> Any:
        api = self._api(info.api)
        prefix = {
            "get": "read",
            "list": "list",
            "create": "create",
            "update": "replace",
            "update_status": "replace",
            "delete": "delete",
        }[verb]
        suffix = "_status" if verb == "update_status" else ""

        if verb == "list":
            if info.namespaced and not namespace:
                method = getattr(api, f"list_{info.method}_for_all_namespaces")
                return await method(**kwargs)
            if info.namespaced:
                method = getattr(api, f"list_namespaced_{info.method}")
                return await method(namespace, **kwargs)
            return await getattr(api, f"list_{info.method}")(**kwargs)

        args: List[Any] = []
        if verb != "create":
            args.append(name)
        if info.namespaced:
            method = getattr(api, f"{prefix}_namespaced_{info.method}{suffix}")
            args.append(namespace)
        else:
            method = getattr(api, f"{prefix}_{info.method}{suffix}")
        if body is not None:
            args.append(body)
        return await method(*args, **kwargs)

    async def _call_custom(
        self,
        verb: str,
        info: KindInfo,
        name: Optional[str],
        namespace: Optional[str],
        body: Optional[Dict[str, Any]],
        **kwargs: Any,
    ) -> Any:
        api = self._api("CustomObjectsApi")
        scope = "namespaced" if info.namespaced else "cluster"
        prefix = {
            "get": "get",
            "list": "list",
            "create": "create",
            "update": "replace",
            "update_status": "replace",
            "delete": "delete",
        }[verb]
        suffix = "_status" if verb == "update_status" else ""

        if verb == "list" and info.namespaced and not namespace:
            scope = "cluster"
        method = getattr(api, f"{prefix}_{scope}_custom_object{suffix}")

        args: List[Any] = [info.group, info.version]
        if scope == "namespaced":
            args.append(namespace)
        args.append(info.plural)
        if verb not in ("create", "list"):
            args.append(name)
        if body is not None:
            args.append(body)
        return await method(*args, **kwargs)

    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        info = self.kinds.get(kind)
        obj = await self._call("get", info, name=name, namespace=namespace)
        return self._to_dict(info, obj)

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        info = self.kinds.get(kind)
        kwargs = {}
        selector = format_label_selector(labels)
        if selector:
            kwargs["label_selector"] = selector
        result = await self._call("list", info, namespace=namespace, **kwargs)
        items = result["items"] if isinstance(result, dict) else result.items
        return [self._to_dict(info, item) for item in items]

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        info = self.kinds.get(obj["kind"])
        metadata = obj.get("metadata", {})
        created = await self._call(
            "create",
            info,
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            body=obj,
        )
        logger.debug(f"Created {info.kind} {metadata.get('name')}")
        return self._to_dict(info, created)

    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        info = self.kinds.get(obj["kind"])
        metadata = obj.get("metadata", {})
        updated = await self._call(
            "update",
            info,
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            body=obj,
        )
        logger.debug(f"Updated {info.kind} {metadata.get('name')}")
        return self._to_dict(info, updated)

    async def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        info = self.kinds.get(obj["kind"])
        metadata = obj.get("metadata", {})
        updated = await self._call(
            "update_status",
            info,
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            body=obj,
        )
        return self._to_dict(info, updated)

    async def delete(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> None:
        info = self.kinds.get(kind)
        await self._call("delete", info, name=name, namespace=namespace)
        logger.debug(f"Deleted {info.kind} {name}")


_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)(?:\.(\d+))?")


def parse_server_version(git_version: str) -> str:
    """
    Normalize a server version string to ``major.minor.patch``.

    ``v1.11.0`` and ``v1.27.3-gke.100`` become ``1.11.0`` and ``1.27.3``.
    """
    match = _VERSION_RE.match(git_version.strip())
    if not match:
        raise ValueError(f"Cannot parse Kubernetes version: {git_version!r}")
    major, minor, patch = match.groups()
    return f"{major}.{minor}.{patch or 0}"


async def get_server_version(api_client: ApiClient) -> str:
    """Fetch the API server version as ``major.minor.patch``."""
    info = await client.VersionApi(api_client).get_code()
    return parse_server_version(info.git_version)
