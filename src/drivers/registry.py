"""
Driver Registry - Registration and lookup of storage drivers.
"""

import logging
from typing import Dict, List

from drivers.base import Driver

logger = logging.getLogger(__name__)

_drivers: Dict[str, Driver] = {}


def register(name: str, driver: Driver) -> None:
    """
    Register a storage driver.

    Raises:
        ValueError: If a driver with that name is already registered
    """
    if name in _drivers:
        raise ValueError(f"Storage driver '{name}' is already registered")
    _drivers[name] = driver
    logger.info(f"Registered storage driver: {name}")


def get(name: str) -> Driver:
    """
    Get a registered storage driver.

    Raises:
        ValueError: If the driver name is not registered
    """
    if name not in _drivers:
        available = ", ".join(_drivers.keys()) or "none"
        raise ValueError(
            f"Unknown storage driver: {name}. Available drivers: {available}"
        )
    return _drivers[name]


def list_drivers() -> List[str]:
    return list(_drivers.keys())


def reset_drivers() -> None:
    """Forget all drivers (mainly for testing)."""
    _drivers.clear()


def register_builtin_drivers() -> None:
    """Register the drivers that ship with the operator."""
    from drivers.portworx import DRIVER_NAME, PortworxDriver

    if DRIVER_NAME not in _drivers:
        register(DRIVER_NAME, PortworxDriver())
