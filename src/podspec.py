"""
Pod template helpers shared by the components.

Image reference rewriting, environment merging, argument rendering and
compute-resource quantity handling.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from kubernetes.utils import parse_quantity


def split_custom_registry(custom: Optional[str]) -> Tuple[str, str]:
    """
    Split a custom image registry value into (registry, repository).

    ``"reg:1111"`` is a bare registry; ``"reg:1111/repo"`` also carries a
    repository, which replaces the image's own path.
    """
    custom = (custom or "").strip().strip("/")
    if not custom:
        return "", ""
    registry, _, repository = custom.partition("/")
    return registry, repository


def get_image_urn(image: str, registry: str = "", repository: str = "") -> str:
    """
    Rewrite an image reference for a custom registry and/or repository.

    A repository keeps only the last path segment of the image
    (``osd/stork:1`` -> ``<repository>/stork:1``). A registry prefixes the
    whole reference, including any registry the image already names.

    Args:
        image: Base image reference.
        registry: Optional registry host[:port].
        repository: Optional repository path.

    Returns:
        The rewritten reference, or ``image`` unchanged when no overrides
        are set.
    """
    if not image:
        return ""
    registry = registry.strip("/")
    repository = repository.strip("/")
    if repository:
        image = f"{repository}/{image.rsplit('/', 1)[-1]}"
    if registry:
        image = f"{registry}/{image}"
    return image


def image_for_cluster(image: str, custom_image_registry: Optional[str]) -> str:
    """Apply a cluster's ``customImageRegistry`` to an image."""
    registry, repository = split_custom_registry(custom_image_registry)
    return get_image_urn(image, registry, repository)


def merge_env(
    driver_env: Iterable[Dict[str, Any]], user_env: Iterable[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """
    Merge driver-supplied and user-supplied environment variables.

    Driver variables come first in their own order. A user variable with
    the same name replaces the driver one in place; other user variables
    are appended in order.
    """
    merged: List[Dict[str, Any]] = []
    index: Dict[str, int] = {}
    for env in list(driver_env) + list(user_env):
        name = env["name"]
        if name in index:
            merged[index[name]] = dict(env)
        else:
            index[name] = len(merged)
            merged.append(dict(env))
    return merged


def _env_key(env: Dict[str, Any]) -> str:
    return json.dumps(env, sort_keys=True)


def env_equal(
    left: Optional[Iterable[Dict[str, Any]]], right: Optional[Iterable[Dict[str, Any]]]
) -> bool:
    """Compare env lists by name and value, ignoring order."""
    return sorted(_env_key(e) for e in left or []) == sorted(
        _env_key(e) for e in right or []
    )


def build_args(
    defaults: Dict[str, str], overrides: Optional[Dict[str, str]] = None
) -> List[str]:
    """
    Render ``--key=value`` flags from defaults merged with overrides.

    Keys are sorted so the rendered list is stable across reconciles.
    """
    merged = dict(defaults)
    merged.update(overrides or {})
    return [f"--{key}={merged[key]}" for key in sorted(merged)]


def parse_cpu(value: str) -> Decimal:
    """
    Parse a CPU quantity ("0.2", "200m", "1").

    Raises:
        ValueError: If the value is not a valid quantity.
    """
    return parse_quantity(value)


def quantity_equal(left: Any, right: Any) -> bool:
    """Compare two quantities by value; unparseable values compare as text."""
    if left is None or right is None:
        return left is right
    try:
        return parse_quantity(left) == parse_quantity(right)
    except ValueError:
        return str(left) == str(right)


def pull_secrets(secret: Optional[str]) -> Optional[List[Dict[str, str]]]:
    """Image pull secret list for a pod template."""
    return [{"name": secret}] if secret else None
