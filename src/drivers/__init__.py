"""
Storage drivers.

Drivers are registered by name at startup and selected through the
``STORAGE_DRIVER`` setting.
"""

from drivers.base import Driver
from drivers.registry import (
    get,
    list_drivers,
    register,
    register_builtin_drivers,
    reset_drivers,
)

__all__ = [
    "Driver",
    "get",
    "list_drivers",
    "register",
    "register_builtin_drivers",
    "reset_drivers",
]
