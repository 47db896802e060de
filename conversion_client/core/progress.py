"""
Unified progress manager.

The single owner of each task's displayed status/progress. Three uncoordinated
sources feed it: transfer progress from the submission call, processing
progress from the push channel, and terminal completion notices. Every
accepted transition is persisted and then published to subscribers.
"""

import logging
import threading
from typing import Callable, Optional

from conversion_client.core.constants import (
    ProgressState, TaskPhase, TaskStatus, TERMINAL_STATUSES,
    PROGRESS_STATE_RANK, PROGRESS_STATE_TO_STATUS, PHASE_TO_PROGRESS_STATE,
)
from conversion_client.core.error_codes import IdentityError
from conversion_client.core.keyed_lock import StripedLock
from conversion_client.core.models import LocalTaskRecord, ProgressSnapshot, BatchProgress
from conversion_client.core.task_store import TaskStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]
BatchCallback = Callable[[BatchProgress], None]

_TERMINAL_STATES = {ProgressState.COMPLETED, ProgressState.FAILED, ProgressState.CANCELLED}

_STATE_TO_PHASE = {
    ProgressState.PENDING: TaskPhase.PENDING,
    ProgressState.UPLOADING: TaskPhase.UPLOADING,
    ProgressState.UPLOAD_COMPLETED: TaskPhase.UPLOAD_COMPLETED,
    ProgressState.CONVERTING: TaskPhase.CONVERTING,
    ProgressState.COMPLETED: TaskPhase.COMPLETED,
    ProgressState.FAILED: TaskPhase.FAILED,
    ProgressState.CANCELLED: TaskPhase.CANCELLED,
}


def clamp_percent(percent: float) -> float:
    try:
        percent = float(percent)
    except (TypeError, ValueError):
        return 0.0
    if percent != percent:  # NaN
        return 0.0
    return max(0.0, min(100.0, percent))


def state_of(record: LocalTaskRecord) -> str:
    """Displayed state of a persisted record."""
    if record.status in TERMINAL_STATUSES:
        return record.status
    state = PHASE_TO_PROGRESS_STATE.get((record.phase or '').lower())
    if state is None or state in _TERMINAL_STATES:
        return record.status
    # Phase and status disagree only after an external status write; status wins.
    if PROGRESS_STATE_TO_STATUS[state] != record.status:
        return record.status
    return state


class _Registry:
    """Typed callback registry; subscribe() hands back the unsubscribe function."""

    def __init__(self, name: str):
        self._name = name
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable] = {}
        self._next = 0

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        with self._lock:
            token = self._next
            self._next += 1
            self._callbacks[token] = callback

        def unsubscribe():
            with self._lock:
                self._callbacks.pop(token, None)
        return unsubscribe

    def clear(self):
        with self._lock:
            self._callbacks.clear()

    def __len__(self):
        with self._lock:
            return len(self._callbacks)

    def publish(self, event):
        with self._lock:
            callbacks = list(self._callbacks.values())
        for cb in callbacks:
            try:
                cb(event)
            except Exception:
                logger.exception("%s subscriber failed", self._name)


class UnifiedProgressManager:
    """
    Per-task state machine keyed by current_task_id:

        Pending -> Uploading -> UploadCompleted -> Converting -> Completed | Failed | Cancelled

    Terminal states are sticky. The phase tag of an event decides its state,
    so a late "uploading" event can never pull a converting task backwards.
    """

    def __init__(self, store: TaskStore, locks: StripedLock | None = None):
        self.store = store
        self.locks = locks or StripedLock()
        self._task_subscribers = _Registry("progress")
        self._batch_subscribers = _Registry("batch progress")
        self._batches: dict[str, BatchProgress] = {}
        self._batches_lock = threading.Lock()

    # ── Subscription ──────────────────────────────────────────────────

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        return self._task_subscribers.subscribe(callback)

    def subscribe_batch(self, callback: BatchCallback) -> Callable[[], None]:
        return self._batch_subscribers.subscribe(callback)

    def unsubscribe_all(self):
        self._task_subscribers.clear()
        self._batch_subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._task_subscribers) + len(self._batch_subscribers)

    # ── Task progress ─────────────────────────────────────────────────

    def update_progress(self, current_task_id: str, percent: float, phase: str,
                        speed: Optional[float] = None, eta: Optional[float] = None,
                        message: Optional[str] = None) -> bool:
        """
        Apply one progress event. Returns True if a transition was accepted.
        Unknown identifiers, terminal tasks and stale phases are no-ops.
        """
        percent = clamp_percent(percent)
        phase = (phase or '').lower()

        with self.locks.hold(current_task_id):
            record = self.store.find_by_current_id(current_task_id)
            if record is None:
                logger.warning("Progress for unknown task %s (phase=%s) dropped",
                               current_task_id, phase)
                return False

            current = state_of(record)
            if current in _TERMINAL_STATES:
                logger.debug("Ignoring %s progress for %s task %s",
                             phase, current, current_task_id)
                return False

            target = PHASE_TO_PROGRESS_STATE.get(phase, current)
            if target in _TERMINAL_STATES:
                return self._finish_locked(record, target, message, percent)
            if target == ProgressState.UPLOADING and percent >= 100:
                target = ProgressState.UPLOAD_COMPLETED

            if PROGRESS_STATE_RANK[target] < PROGRESS_STATE_RANK[current]:
                logger.debug("Stale %s event for %s (already %s)",
                             phase, current_task_id, current)
                return False

            if target == current:
                # Within a phase the displayed value only moves forward
                percent = max(percent, float(record.progress))
            elif target == ProgressState.UPLOAD_COMPLETED:
                percent = 100.0

            try:
                self.store.update_progress(
                    current_task_id, percent, _STATE_TO_PHASE[target],
                    status=PROGRESS_STATE_TO_STATUS[target], speed=speed, eta=eta,
                )
            except IdentityError as e:
                logger.warning("Progress update lost its record: %s", e.message)
                return False

            if target != current:
                logger.info("Task %s: %s -> %s", current_task_id, current, target)

            self._task_subscribers.publish(ProgressSnapshot(
                current_task_id=current_task_id,
                local_id=record.local_id,
                state=target,
                percent=percent,
                phase=_STATE_TO_PHASE[target],
                speed=speed,
                eta=eta,
                message=message,
            ))
            return True

    def on_task_completed(self, current_task_id: str, success: bool,
                          message: Optional[str] = None) -> bool:
        """Move a task to Completed or Failed from whatever phase it was in."""
        target = ProgressState.COMPLETED if success else ProgressState.FAILED
        with self.locks.hold(current_task_id):
            record = self.store.find_by_current_id(current_task_id)
            if record is None:
                logger.warning("Completion for unknown task %s dropped", current_task_id)
                return False
            return self._finish_locked(record, target, message)

    def mark_cancelled(self, current_task_id: str, message: Optional[str] = None) -> bool:
        with self.locks.hold(current_task_id):
            record = self.store.find_by_current_id(current_task_id)
            if record is None:
                logger.warning("Cancel for unknown task %s dropped", current_task_id)
                return False
            return self._finish_locked(record, ProgressState.CANCELLED, message)

    def _finish_locked(self, record: LocalTaskRecord, target: str,
                       message: Optional[str], percent: float | None = None) -> bool:
        current = state_of(record)
        if current in _TERMINAL_STATES:
            if current != target:
                logger.info("Task %s already %s; ignoring %s",
                            record.current_task_id, current, target)
            return False

        status = PROGRESS_STATE_TO_STATUS[target]
        error = message if target == ProgressState.FAILED else None
        try:
            updated = self.store.update_status(
                record.current_task_id, status, error=error, phase=_STATE_TO_PHASE[target],
            )
        except IdentityError as e:
            logger.warning("Terminal update lost its record: %s", e.message)
            return False

        if target == ProgressState.COMPLETED:
            shown = 100.0
        else:
            shown = float(updated.progress if percent is None else max(percent, updated.progress))
        logger.info("Task %s: %s -> %s%s", record.current_task_id, current, target,
                    f" ({message})" if message else "")
        self._task_subscribers.publish(ProgressSnapshot(
            current_task_id=record.current_task_id,
            local_id=record.local_id,
            state=target,
            percent=shown,
            phase=_STATE_TO_PHASE[target],
            message=message,
        ))
        return True

    def sync_from_record(self, record: LocalTaskRecord, message: Optional[str] = None):
        """
        Publish the persisted state of a record that was corrected outside the
        state machine (reconciliation, retry, identifier remapping).
        """
        state = state_of(record)
        self._task_subscribers.publish(ProgressSnapshot(
            current_task_id=record.current_task_id,
            local_id=record.local_id,
            state=state,
            percent=100.0 if state == ProgressState.COMPLETED else float(record.progress),
            phase=record.phase,
            message=message,
        ))

    def get_snapshot(self, current_task_id: str) -> ProgressSnapshot | None:
        record = self.store.find_by_current_id(current_task_id)
        if record is None:
            return None
        state = state_of(record)
        return ProgressSnapshot(
            current_task_id=record.current_task_id,
            local_id=record.local_id,
            state=state,
            percent=100.0 if state == ProgressState.COMPLETED else float(record.progress),
            phase=record.phase,
            speed=record.speed,
            eta=record.eta_sec,
            message=record.last_error,
        )

    def active_count(self) -> int:
        return sum(1 for r in self.store.list_all()
                   if r.status in (TaskStatus.UPLOADING, TaskStatus.CONVERTING))

    def count_by_status(self, status: str) -> int:
        return sum(1 for r in self.store.list_all() if r.status == status)

    # ── Batch progress ────────────────────────────────────────────────

    def update_batch_progress(self, batch_id: str, overall_percent: float,
                              completed_count: int, total_count: int,
                              current_file: Optional[str] = None,
                              current_file_progress: float = 0.0) -> BatchProgress:
        """Aggregate view over a batch; individual task records are untouched."""
        progress = BatchProgress(
            batch_id=batch_id,
            overall_percent=clamp_percent(overall_percent),
            completed_count=max(0, completed_count),
            total_count=max(0, total_count),
            current_file=current_file,
            current_file_progress=clamp_percent(current_file_progress),
        )
        with self._batches_lock:
            self._batches[batch_id] = progress
        logger.debug("Batch %s: %d/%d files, %.1f%%", batch_id,
                     progress.completed_count, progress.total_count, progress.overall_percent)
        self._batch_subscribers.publish(progress)
        return progress

    def get_batch_progress(self, batch_id: str) -> BatchProgress | None:
        with self._batches_lock:
            return self._batches.get(batch_id)
