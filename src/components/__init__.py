"""
Cluster components package.

Components install and maintain one slice of a StorageCluster's
infrastructure. Built-in components are registered in a fixed order;
others are discovered via Python entry points
(group: 'storage_operator.components').
"""

from components.base import Component, ComponentError, ErrorKind

__all__ = ["Component", "ComponentError", "ErrorKind"]
