"""
Resource Convergence - Drive owned child objects toward their desired state.

Every child object the operator manages goes through the same cycle: read
the live object by its fixed name, create it when absent, otherwise compare
only the fields the operator owns and write those back when they drifted.
Fields owned by somebody else (defaults filled in by the API server, other
controllers, users) are left untouched.
"""

import copy
import logging
import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from podspec import env_equal, quantity_equal
from store import ObjectStore, ObjectStoreError, is_not_found

logger = logging.getLogger(__name__)

PathKey = Union[str, int]
FieldPath = Tuple[PathKey, ...]

_MISSING = object()


@dataclass(frozen=True)
class OwnedField:
    """
    A field the operator owns on a child object.

    Attributes:
        path: Location of the field inside the manifest.
        compare: Equality used to detect drift.
        merge: For map fields, only the desired keys are owned; other keys
            on the live object are kept.
    """

    path: FieldPath
    compare: Callable[[Any, Any], bool] = operator.eq
    merge: bool = False

    def differs(self, live: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        want = get_path(desired, self.path)
        have = get_path(live, self.path)
        if self.merge:
            want = want or {}
            have = have or {}
            return any(k not in have or have[k] != v for k, v in want.items())
        return not self.compare(have, want)

    def apply(self, live: Dict[str, Any], desired: Dict[str, Any]) -> None:
        want = copy.deepcopy(get_path(desired, self.path))
        if self.merge:
            have = get_path(live, self.path) or {}
            have.update(want or {})
            want = have
        set_path(live, self.path, want)


@dataclass(frozen=True)
class KindPolicy:
    """Owned and immutable fields for one kind of child object."""

    owned: Sequence[OwnedField] = ()
    # Fields the API server refuses to change; drift forces a recreate
    immutable: Sequence[FieldPath] = ()


CONTAINER_PATH = ("spec", "template", "spec", "containers", 0)

DEPLOYMENT_POLICY = KindPolicy(
    owned=(
        OwnedField(("metadata", "labels"), merge=True),
        OwnedField(("metadata", "annotations"), merge=True),
        OwnedField(("spec", "replicas")),
        OwnedField(("spec", "template", "metadata", "labels"), merge=True),
        OwnedField(("spec", "template", "metadata", "annotations"), merge=True),
        OwnedField(("spec", "template", "spec", "serviceAccountName")),
        OwnedField(("spec", "template", "spec", "imagePullSecrets")),
        OwnedField(CONTAINER_PATH + ("name",)),
        OwnedField(CONTAINER_PATH + ("image",)),
        OwnedField(CONTAINER_PATH + ("imagePullPolicy",)),
        OwnedField(CONTAINER_PATH + ("command",)),
        OwnedField(CONTAINER_PATH + ("args",)),
        OwnedField(CONTAINER_PATH + ("env",), compare=env_equal),
        OwnedField(
            CONTAINER_PATH + ("resources", "requests", "cpu"), compare=quantity_equal
        ),
    ),
    immutable=(("spec", "selector"),),
)

DAEMON_SET_POLICY = KindPolicy(
    owned=DEPLOYMENT_POLICY.owned[:2] + DEPLOYMENT_POLICY.owned[3:],
    immutable=(("spec", "selector"),),
)

KIND_POLICIES: Dict[str, KindPolicy] = {
    "ServiceAccount": KindPolicy(),
    "ClusterRole": KindPolicy(owned=(OwnedField(("rules",)),)),
    "ClusterRoleBinding": KindPolicy(
        owned=(OwnedField(("subjects",)),),
        immutable=(("roleRef",),),
    ),
    "ConfigMap": KindPolicy(owned=(OwnedField(("data",)),)),
    "Service": KindPolicy(
        owned=(
            OwnedField(("metadata", "labels"), merge=True),
            OwnedField(("spec", "selector")),
            OwnedField(("spec", "ports")),
            OwnedField(("spec", "type")),
        )
    ),
    "StorageClass": KindPolicy(
        owned=(OwnedField(("metadata", "labels"), merge=True),),
        immutable=(("provisioner",), ("parameters",)),
    ),
    "Deployment": DEPLOYMENT_POLICY,
    "DaemonSet": DAEMON_SET_POLICY,
}


def get_path(obj: Any, path: FieldPath, default: Any = None) -> Any:
    """Read a nested field; missing keys and short lists yield ``default``."""
    current = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return default
            current = current[key]
        else:
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
    return current


def set_path(obj: Dict[str, Any], path: FieldPath, value: Any) -> None:
    """Write a nested field, creating parents; ``None`` removes the field."""
    current: Any = obj
    for key, next_key in zip(path[:-1], path[1:]):
        empty: Any = [] if isinstance(next_key, int) else {}
        if isinstance(key, int):
            while len(current) <= key:
                current.append(copy.copy(empty))
            current = current[key]
        else:
            if current.get(key) is None:
                current[key] = empty
            current = current[key]

    last = path[-1]
    if isinstance(last, int):
        while len(current) <= last:
            current.append({})
        current[last] = value
    elif value is None:
        current.pop(last, None)
    else:
        current[last] = value


def _owner_matches(ref: Dict[str, Any], owner: Dict[str, Any]) -> bool:
    if owner.get("uid") and ref.get("uid"):
        return ref["uid"] == owner["uid"]
    return ref.get("kind") == owner.get("kind") and ref.get("name") == owner.get(
        "name"
    )


def has_owner(obj: Dict[str, Any], owner: Dict[str, Any]) -> bool:
    refs = get_path(obj, ("metadata", "ownerReferences")) or []
    return any(_owner_matches(ref, owner) for ref in refs)


def add_owner(obj: Dict[str, Any], owner: Dict[str, Any]) -> None:
    metadata = obj.setdefault("metadata", {})
    refs = metadata.get("ownerReferences") or []
    if not any(_owner_matches(ref, owner) for ref in refs):
        refs.append(dict(owner))
    metadata["ownerReferences"] = refs


def _location(obj: Dict[str, Any]) -> Tuple[str, str, Optional[str]]:
    metadata = obj.get("metadata", {})
    return obj["kind"], metadata["name"], metadata.get("namespace")


async def get_object(
    store: ObjectStore, kind: str, name: str, namespace: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """Read an object, returning ``None`` when it does not exist."""
    try:
        return await store.get(kind, name, namespace)
    except ObjectStoreError as e:
        if is_not_found(e):
            return None
        raise


def drifted_fields(
    live: Dict[str, Any], desired: Dict[str, Any], policy: KindPolicy
) -> List[FieldPath]:
    """Owned fields whose live value differs from the desired value."""
    return [field.path for field in policy.owned if field.differs(live, desired)]


async def create_or_update(
    store: ObjectStore,
    desired: Dict[str, Any],
    owner: Optional[Dict[str, Any]] = None,
    policy: Optional[KindPolicy] = None,
) -> bool:
    """
    Converge one child object onto its desired manifest.

    Args:
        store: Object store to read and write through.
        desired: Full desired manifest, used as is when creating.
        owner: Owner reference to attach to the object.
        policy: Owned fields of the kind; defaults to ``KIND_POLICIES``.

    Returns:
        True if anything was written.
    """
    kind, name, namespace = _location(desired)
    if policy is None:
        policy = KIND_POLICIES.get(kind, KindPolicy())
    desired = copy.deepcopy(desired)
    if owner:
        add_owner(desired, owner)

    live = await get_object(store, kind, name, namespace)
    if live is None:
        logger.info(f"Creating {kind} {name}")
        await store.create(desired)
        return True

    for path in policy.immutable:
        if get_path(live, path, _MISSING) != get_path(desired, path, _MISSING):
            field_name = ".".join(map(str, path))
            logger.info(f"Recreating {kind} {name}: {field_name} changed")
            await store.delete(kind, name, namespace)
            await store.create(desired)
            return True

    drifted = drifted_fields(live, desired, policy)
    needs_owner = owner is not None and not has_owner(live, owner)
    if not drifted and not needs_owner:
        return False

    for field in policy.owned:
        if field.path in drifted:
            field.apply(live, desired)
    if needs_owner:
        add_owner(live, owner)
    logger.info(
        f"Updating {kind} {name}: "
        + (", ".join(".".join(map(str, p)) for p in drifted) or "owner reference")
    )
    await store.update(live)
    return True


async def delete_object(
    store: ObjectStore,
    kind: str,
    name: str,
    namespace: Optional[str] = None,
    owner: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Remove a child object, tolerating its absence.

    When ``owner`` is given and the object is shared with other owners, only
    the owner reference is dropped. Objects owned solely by someone else are
    left alone.

    Returns:
        True if anything was written.
    """
    live = await get_object(store, kind, name, namespace)
    if live is None:
        return False

    if owner is not None:
        refs = get_path(live, ("metadata", "ownerReferences")) or []
        others = [ref for ref in refs if not _owner_matches(ref, owner)]
        if others and len(others) == len(refs):
            logger.debug(f"Not deleting {kind} {name}: owned by someone else")
            return False
        if others:
            live["metadata"]["ownerReferences"] = others
            await store.update(live)
            return True

    try:
        await store.delete(kind, name, namespace)
    except ObjectStoreError as e:
        if is_not_found(e):
            return False
        raise
    logger.info(f"Deleted {kind} {name}")
    return True
