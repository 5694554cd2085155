"""
Teardown - Node wipe state machine run while a StorageCluster is deleted.

The wipe itself is an external per-node task (a DaemonSet). It is never
awaited: each reconcile looks at its aggregate progress once and reports
InProgress, Completed or Failed, launching the task if it does not exist
yet.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from models import (
    DeleteStatusType,
    DeleteStrategyType,
    StorageCluster,
    StorageClusterDeleteStatus,
)
from store import ObjectStoreError, is_not_found

logger = logging.getLogger(__name__)


class TeardownState(Enum):
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"


class TeardownAction(Enum):
    LAUNCH = "launch"
    DELETE_TASK = "delete_task"
    WIPE_METADATA = "wipe_metadata"


@dataclass
class NodeWiperProgress:
    """Aggregate progress of the wipe task across nodes."""

    completed: int = 0
    in_progress: int = 0
    total: int = 0

    @property
    def done(self) -> bool:
        return self.total > 0 and self.completed == self.total


@dataclass
class TeardownDecision:
    """Outcome of evaluating wipe progress, with the side effects it calls for."""

    state: TeardownState
    message: str = ""
    actions: List[TeardownAction] = field(default_factory=list)


def progress_message(progress: NodeWiperProgress) -> str:
    return (
        f"Wipe operation still in progress: Completed [{progress.completed}] "
        f"In Progress [{progress.in_progress}] Total [{progress.total}]"
    )


def evaluate_progress(progress: Optional[NodeWiperProgress]) -> TeardownDecision:
    """
    Decide the teardown state from the wipe task's progress.

    Args:
        progress: Current progress, or None if the task does not exist.

    Returns:
        The resulting state and the actions to perform on entering it.
    """
    if progress is None:
        return TeardownDecision(
            TeardownState.NOT_STARTED, actions=[TeardownAction.LAUNCH]
        )
    if progress.done:
        return TeardownDecision(
            TeardownState.COMPLETED,
            actions=[TeardownAction.DELETE_TASK, TeardownAction.WIPE_METADATA],
        )
    return TeardownDecision(TeardownState.IN_PROGRESS, progress_message(progress))


class WipeTask(ABC):
    """External per-node cleanup task for one StorageCluster."""

    @abstractmethod
    async def get_progress(self) -> NodeWiperProgress:
        """
        Read the task's aggregate progress.

        Raises:
            NotFoundError: If the task has not been launched.
        """
        pass

    @abstractmethod
    async def launch(self, image: str, tag: str, remove_data: bool) -> None:
        """Start the task on every storage node."""
        pass

    @abstractmethod
    async def delete_task(self) -> None:
        """Remove the task and everything it needed to run."""
        pass

    @abstractmethod
    async def wipe_metadata(self) -> None:
        """Remove cluster metadata left behind on the platform."""
        pass


class TeardownWorkflow:
    """Drives a WipeTask toward completion, one step per call to ``run``."""

    def __init__(self, task: WipeTask, image: str, tag: str):
        self.task = task
        self.image = image
        self.tag = tag

    async def run(self, cluster: StorageCluster) -> StorageClusterDeleteStatus:
        """
        Advance the teardown of a cluster by one step.

        Raises:
            ObjectStoreError: If progress could not be read for a reason
                other than the task being absent; retry on the next tick.
        """
        try:
            progress: Optional[NodeWiperProgress] = await self.task.get_progress()
        except ObjectStoreError as e:
            if not is_not_found(e):
                raise
            progress = None

        decision = evaluate_progress(progress)

        if decision.state == TeardownState.NOT_STARTED:
            strategy = cluster.spec.delete_strategy
            remove_data = (
                strategy is not None
                and strategy.type == DeleteStrategyType.UNINSTALL_AND_WIPE
            )
            try:
                await self.task.launch(self.image, self.tag, remove_data)
            except ObjectStoreError as e:
                return StorageClusterDeleteStatus(
                    DeleteStatusType.FAILED, f"Failed to run node wiper: {e}"
                )
            return StorageClusterDeleteStatus(
                DeleteStatusType.IN_PROGRESS, "Started node wiper daemonset"
            )

        if decision.state == TeardownState.COMPLETED:
            for action in decision.actions:
                await self._best_effort(action, cluster)
            return StorageClusterDeleteStatus(DeleteStatusType.COMPLETED)

        return StorageClusterDeleteStatus(
            DeleteStatusType.IN_PROGRESS, decision.message
        )

    async def _best_effort(self, action: TeardownAction, cluster: StorageCluster):
        try:
            if action == TeardownAction.DELETE_TASK:
                await self.task.delete_task()
            elif action == TeardownAction.WIPE_METADATA:
                await self.task.wipe_metadata()
        except ObjectStoreError as e:
            logger.error(f"{cluster.key}: failed to {action.value}: {e}")
