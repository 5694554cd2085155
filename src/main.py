"""
Main entry point for the StorageCluster operator.

Connects to the Kubernetes API, wires the storage driver and the components
together and runs the controller until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import Optional

from kubernetes_asyncio import config as kube_config
from kubernetes_asyncio.client import ApiClient

import drivers
from components.registry import ComponentRegistry, register_builtin_components
from config import get_config
from controller import Controller
from events import EventRecorder
from store import KubernetesObjectStore, get_server_version

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def load_kubernetes_config(kubeconfig: str = "") -> None:
    """Use the in-cluster service account, falling back to a kubeconfig file."""
    if not kubeconfig:
        try:
            kube_config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
            return
        except kube_config.ConfigException:
            logger.info("Not running in a cluster, loading kubeconfig")
    await kube_config.load_kube_config(config_file=kubeconfig or None)


class Application:
    """Main application that orchestrates the controller and components."""

    def __init__(self):
        self.config = get_config()
        self.api_client: Optional[ApiClient] = None
        self.registry: Optional[ComponentRegistry] = None
        self.controller: Optional[Controller] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.log_level)
        logger.info("Initializing StorageCluster operator")

        await load_kubernetes_config(self.config.kubernetes.kubeconfig)
        self.api_client = ApiClient()
        store = KubernetesObjectStore(self.api_client)
        k8s_version = await get_server_version(self.api_client)
        logger.info(f"Kubernetes version: {k8s_version}")

        recorder = EventRecorder(store)

        drivers.register_builtin_drivers()
        driver = drivers.get(self.config.driver.name)
        driver.init(store, recorder, self.config.driver)
        logger.info(f"Using storage driver: {driver}")

        self.registry = register_builtin_components(driver, self.config.components)
        for component in self.registry.list_components():
            component.initialize(store, k8s_version, store.kinds, recorder)

        self.controller = Controller(
            store=store,
            driver=driver,
            recorder=recorder,
            registry=self.registry,
            config=self.config.controller,
            namespace=self.config.kubernetes.watch_namespace,
        )
        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        try:
            await self.controller.start()
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping StorageCluster operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.api_client:
            await self.api_client.close()

        logger.info("StorageCluster operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
