"""
Configuration module for the StorageCluster operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class KubernetesConfig:
    """Kubernetes API access configuration."""

    # Empty means in-cluster config, falling back to the default kubeconfig
    kubeconfig: str = ""
    # Empty means all namespaces
    watch_namespace: str = ""

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG", ""),
            watch_namespace=os.getenv("WATCH_NAMESPACE", ""),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    reconcile_interval: int = 30  # seconds
    max_concurrent_reconciles: int = 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "30")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
        )


@dataclass
class DriverConfig:
    """Storage driver configuration."""

    name: str = "portworx"
    node_wiper_image: str = "adityadani/px-node-wiper"
    node_wiper_tag: str = "latest"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            name=os.getenv("STORAGE_DRIVER", "portworx"),
            node_wiper_image=os.getenv("NODE_WIPER_IMAGE", "adityadani/px-node-wiper"),
            node_wiper_tag=os.getenv("NODE_WIPER_TAG", "latest"),
        )


@dataclass
class ComponentConfig:
    """Component configuration."""

    schema_poll_interval: float = 5.0  # seconds
    schema_timeout: float = 60.0  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            schema_poll_interval=float(os.getenv("SCHEMA_POLL_INTERVAL", "5")),
            schema_timeout=float(os.getenv("SCHEMA_TIMEOUT", "60")),
        )


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    controller: ControllerConfig
    driver: DriverConfig
    components: ComponentConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            driver=DriverConfig.from_env(),
            components=ComponentConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
            driver=DriverConfig(),
            components=ComponentConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
