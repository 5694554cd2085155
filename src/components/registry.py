"""
Component Registry - Registration of reconciling components.

Components are registered once at startup and iterated in registration
order by the controller on every reconcile. There is no runtime
de-registration.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, List, Optional

from components.base import Component

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "storage_operator.components"


class ComponentRegistry:
    """Ordered mapping of component name to component instance."""

    def __init__(self):
        # Insertion ordered
        self._components: Dict[str, Component] = {}

    def register(self, name: str, component: Component) -> None:
        """
        Register a component instance.

        Args:
            name: Unique component name
            component: The component instance

        Raises:
            ValueError: If the name is already registered
        """
        if name in self._components:
            raise ValueError(f"Component '{name}' is already registered")
        self._components[name] = component
        logger.info(f"Registered component: {name}")

    def get(self, name: str) -> Component:
        """
        Get a registered component.

        Raises:
            ValueError: If the name is not registered
        """
        if name not in self._components:
            available = ", ".join(self._components.keys()) or "none"
            raise ValueError(
                f"Unknown component: {name}. Available components: {available}"
            )
        return self._components[name]

    def has(self, name: str) -> bool:
        return name in self._components

    def list_names(self) -> List[str]:
        """List registered component names in registration order."""
        return list(self._components.keys())

    def list_components(self) -> List[Component]:
        """List registered components in registration order."""
        return list(self._components.values())

    def __len__(self) -> int:
        return len(self._components)


# Global registry instance
_registry: Optional[ComponentRegistry] = None


def get_registry() -> ComponentRegistry:
    """Get the global component registry singleton."""
    global _registry
    if _registry is None:
        _registry = ComponentRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_components(driver, config=None) -> ComponentRegistry:
    """
    Register the built-in components and discover installed ones.

    The schema installer goes first so later components can rely on the
    schema. Extra components are discovered through the
    ``storage_operator.components`` entry point group; each entry point
    must resolve to a zero-argument Component factory.

    Args:
        driver: The storage driver the components work for.
        config: Optional ``config.ComponentConfig``.

    Returns:
        The populated global registry.
    """
    from components.schema import SchemaInstaller
    from components.stork import StorkComponent

    registry = get_registry()
    if config is not None:
        schema = SchemaInstaller(config.schema_poll_interval, config.schema_timeout)
    else:
        schema = SchemaInstaller()
    registry.register(schema.name, schema)
    stork = StorkComponent(driver)
    registry.register(stork.name, stork)

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            component = ep.load()()
        except Exception as e:
            logger.warning(f"Could not load component {ep.name}: {e}")
            continue
        registry.register(component.name, component)

    return registry
