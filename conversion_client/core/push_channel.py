"""
Push channel boundary.

The wire protocol lives in a collaborator implementing PushChannel. The
router here decides which inbound events are allowed through: only
identifiers the submission manager has explicitly joined after their
server mapping was persisted.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from conversion_client.core.constants import TaskPhase
from conversion_client.core.progress import UnifiedProgressManager

logger = logging.getLogger(__name__)


class PushChannel(Protocol):
    def join(self, task_id: str) -> None: ...
    def leave(self, task_id: str) -> None: ...


@dataclass(frozen=True)
class PushProgressEvent:
    current_task_id: str
    percent: float
    speed: Optional[float] = None
    eta: Optional[float] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class PushCompletedEvent:
    current_task_id: str
    success: bool
    message: Optional[str] = None


class PushEventRouter:
    """Gates push events on joined identifiers and feeds the progress manager."""

    def __init__(self, progress: UnifiedProgressManager, channel: PushChannel | None = None):
        self.progress = progress
        self.channel = channel
        self._joined: set[str] = set()
        self._lock = threading.Lock()

    def join(self, task_id: str):
        with self._lock:
            if task_id in self._joined:
                return
            self._joined.add(task_id)
        if self.channel is not None:
            try:
                self.channel.join(task_id)
            except Exception:
                # Reconciliation still picks up the task's progress
                logger.exception("Push channel join failed for %s", task_id)
        logger.debug("Joined push updates for %s", task_id)

    def leave(self, task_id: str):
        with self._lock:
            if task_id not in self._joined:
                return
            self._joined.discard(task_id)
        if self.channel is not None:
            try:
                self.channel.leave(task_id)
            except Exception:
                logger.exception("Push channel leave failed for %s", task_id)

    def is_joined(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._joined

    def joined(self) -> set[str]:
        with self._lock:
            return set(self._joined)

    def leave_all(self):
        for task_id in self.joined():
            self.leave(task_id)

    def on_progress(self, event: PushProgressEvent) -> bool:
        if not self.is_joined(event.current_task_id):
            logger.debug("Dropping push progress for unjoined task %s", event.current_task_id)
            return False
        return self.progress.update_progress(
            event.current_task_id, event.percent, TaskPhase.CONVERTING,
            speed=event.speed, eta=event.eta, message=event.message,
        )

    def on_completed(self, event: PushCompletedEvent) -> bool:
        if not self.is_joined(event.current_task_id):
            logger.debug("Dropping push completion for unjoined task %s", event.current_task_id)
            return False
        accepted = self.progress.on_task_completed(
            event.current_task_id, event.success, event.message,
        )
        self.leave(event.current_task_id)
        return accepted


class InMemoryPushChannel:
    """Records joins; events are injected by calling the router directly."""

    def __init__(self):
        self.joined: list[str] = []
        self.left: list[str] = []

    def join(self, task_id: str):
        self.joined.append(task_id)

    def leave(self, task_id: str):
        self.left.append(task_id)
