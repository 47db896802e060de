"""
Application-session composition root.

Constructs the store, API client, progress manager, push router, submission
manager, reconciliation engine and integrity checker once, wires them
together, and exposes the operations the rendering layer calls.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

from conversion_client.core.constants import DB_PATH, TaskStatus, TaskPhase
from conversion_client.core.api_client import RemoteApiClient
from conversion_client.core.config import AppConfig
from conversion_client.core.error_codes import IdentityError, TransportFailure
from conversion_client.core.integrity import IntegrityChecker
from conversion_client.core.keyed_lock import StripedLock
from conversion_client.core.models import (
    FileDescriptor, ReconciledTaskView, ProgressSnapshot, BatchProgress, SweepResult,
)
from conversion_client.core.progress import UnifiedProgressManager
from conversion_client.core.push_channel import (
    PushChannel, PushEventRouter, PushProgressEvent, PushCompletedEvent,
)
from conversion_client.core.reconcile import ReconciliationEngine
from conversion_client.core.source_files import process_source_file
from conversion_client.core.submission import SubmissionManager, BatchOutcome
from conversion_client.core.task_store import TaskStore

logger = logging.getLogger(__name__)


class ConversionSession:
    """One instance per application session; pass it by reference."""

    def __init__(self, config: AppConfig, store: TaskStore | None = None,
                 api: RemoteApiClient | None = None,
                 push_channel: PushChannel | None = None,
                 db_path: Path | None = None):
        self.config = config
        self.store = store or TaskStore(db_path or DB_PATH)
        self.api = api or RemoteApiClient(config.server_url,
                                          config.get('request_timeout_sec'))
        self.locks = StripedLock()
        self.progress = UnifiedProgressManager(self.store, self.locks)
        self.router = PushEventRouter(self.progress, push_channel)
        self.submissions = SubmissionManager(
            self.store, self.api, self.progress, self.router,
            max_retries=config.max_retries,
            default_timeout=config.get('submit_timeout_sec'),
        )
        self.reconciler = ReconciliationEngine(
            self.store, self.api, self.progress, self.router,
            page_size=config.get('page_size'),
            in_flight=self.submissions.in_flight,
        )
        self.integrity = IntegrityChecker(self.store, self.progress)
        self.submissions.on_cancelled_upload = self._cancel_remote

        self._unsubscribers: list[Callable[[], None]] = []
        self._refresh_stop = threading.Event()
        self._refresh_thread: Optional[threading.Thread] = None
        self._closed = False

        self._recover_interrupted_uploads()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ── Startup ───────────────────────────────────────────────────────

    def _recover_interrupted_uploads(self):
        """Uploads cut off by a previous exit never got an answer; make them Pending again."""
        for record in self.store.list_all():
            if record.status == TaskStatus.UPLOADING and record.current_task_id == record.local_id:
                try:
                    self.store.update_progress(record.local_id, 0, TaskPhase.PENDING,
                                               status=TaskStatus.PENDING)
                    logger.info("Upload of %s was interrupted; back to Pending", record.file_name)
                except IdentityError:
                    continue

    # ── Subscription ──────────────────────────────────────────────────

    def subscribe(self, callback: Callable[[ProgressSnapshot], None]) -> Callable[[], None]:
        unsubscribe = self.progress.subscribe(callback)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    def subscribe_batch(self, callback: Callable[[BatchProgress], None]) -> Callable[[], None]:
        unsubscribe = self.progress.subscribe_batch(callback)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    # ── Submission ────────────────────────────────────────────────────

    def _descriptors(self, files: Iterable) -> list[FileDescriptor]:
        descriptors = []
        for f in files:
            if isinstance(f, FileDescriptor):
                descriptors.append(f)
                continue
            try:
                descriptors.append(FileDescriptor.from_path(f))
            except OSError as e:
                logger.warning("Skipping %s: %s", f, e)
        return descriptors

    def submit(self, files: Iterable, params, timeout: float | None = None) -> list[str]:
        """Persist and submit in the background. Returns the new local ids."""
        descriptors = self._descriptors(files)
        if not descriptors:
            return []
        return self.submissions.submit(descriptors, params, timeout=timeout)

    def submit_and_wait(self, files: Iterable, params,
                        timeout: float | None = None) -> BatchOutcome | None:
        descriptors = self._descriptors(files)
        if not descriptors:
            return None
        return self.submissions.submit_and_wait(descriptors, params, timeout=timeout)

    def retry(self, local_id: str, wait: bool = False) -> bool:
        return self.submissions.retry(local_id, timeout=self.config.get('submit_timeout_sec'),
                                      wait=wait)

    def resume_pending(self, timeout: float | None = None) -> list[BatchOutcome]:
        return self.submissions.resume_pending(timeout=timeout)

    # ── Push channel entry points ─────────────────────────────────────

    def on_push_progress(self, event: PushProgressEvent) -> bool:
        return self.router.on_progress(event)

    def on_push_completed(self, event: PushCompletedEvent) -> bool:
        return self.router.on_completed(event)

    # ── Cancel / delete ───────────────────────────────────────────────

    def cancel(self, task_id: str) -> bool:
        """
        Cancel locally right away, then tell the service. If the service does
        not honour it, the next reconciliation puts the real status back.
        `task_id` may be the current, server or local identifier.
        """
        record = self.store.find_by_any_id(task_id)
        if record is None:
            logger.warning("Cancel for unknown task %s", task_id)
            return False
        if not self.progress.mark_cancelled(record.current_task_id, "Cancelled by user"):
            return False
        if record.server_task_id:
            self.router.leave(record.server_task_id)
            self._cancel_remote(record.server_task_id)
        return True

    def _cancel_remote(self, server_task_id: str):
        try:
            ok, message = self.api.cancel_task(server_task_id)
        except TransportFailure as e:
            logger.warning("Cancel of %s not delivered: %s", server_task_id, e.message)
            return
        if not ok:
            logger.warning("Service refused to cancel %s: %s", server_task_id, message)

    def delete(self, task_id: str) -> bool:
        """Remove a task remotely (when it has a server id) and then locally."""
        record = self.store.find_by_any_id(task_id)
        if record is None:
            logger.warning("Delete for unknown task %s", task_id)
            return False
        local_id = record.local_id
        if record.server_task_id:
            try:
                ok, message = self.api.delete_task(record.server_task_id)
            except TransportFailure as e:
                logger.warning("Delete of %s failed: %s", record.server_task_id, e.message)
                return False
            if not ok:
                logger.warning("Service refused to delete %s: %s", record.server_task_id, message)
                return False
            self.router.leave(record.server_task_id)
        try:
            self.store.delete(local_id)
        except IdentityError:
            return False
        logger.info("Deleted task %s (%s)", local_id, record.file_name)
        return True

    def cleanup_old(self, days: int = 30) -> int:
        return self.store.delete_completed_before(days)

    # ── Reconciliation ────────────────────────────────────────────────

    def reconcile_now(self) -> list[ReconciledTaskView]:
        """
        Fetch the remote list and reconcile. On transport failure the views
        from the last good fetch are returned and the error is logged.
        """
        try:
            views = self.reconciler.refresh()
        except TransportFailure as e:
            logger.warning("Reconciliation fetch failed: %s", e.message)
            return self.reconciler.current_views()
        if self.config.get('sweep_after_refresh', True):
            self.integrity.sweep_in_background()
        return views

    def list_all(self) -> list[ReconciledTaskView]:
        """Every known task: remote-backed views plus local-only records."""
        return self.reconciler.current_views()

    def sweep(self) -> SweepResult | None:
        return self.integrity.sweep()

    def start_auto_refresh(self, interval: float | None = None):
        if self._refresh_thread and self._refresh_thread.is_alive():
            return
        interval = interval or self.config.get('refresh_interval_sec')
        self._refresh_stop.clear()
        self._refresh_thread = threading.Thread(
            target=self._refresh_loop, args=(interval,), name="reconcile", daemon=True,
        )
        self._refresh_thread.start()

    def stop_auto_refresh(self):
        self._refresh_stop.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=5)
            self._refresh_thread = None

    def _refresh_loop(self, interval: float):
        while not self._refresh_stop.is_set():
            try:
                self.reconcile_now()
            except Exception:
                logger.error("Reconciliation pass failed", exc_info=True)
            self._refresh_stop.wait(interval)

    # ── Download ──────────────────────────────────────────────────────

    def download(self, task_id: str, dest_dir: Path | None = None) -> Path | None:
        record = self.store.find_by_any_id(task_id)
        if record is None:
            logger.warning("Download for unknown task %s", task_id)
            return None
        current_task_id = record.current_task_id
        if record.status != TaskStatus.COMPLETED or not record.server_task_id:
            logger.info("Task %s is not ready for download (%s)", current_task_id, record.status)
            return None

        output_name = None
        for remote in self.reconciler.last_remote:
            if remote.task_id == record.server_task_id:
                output_name = remote.output_file_name
                break

        dest_dir = dest_dir or self.config.download_dir
        try:
            path = self.api.download_output(record.server_task_id, dest_dir, output_name)
        except TransportFailure as e:
            logger.warning("Download of %s failed: %s", current_task_id, e.message)
            return None

        try:
            updated = self.store.update_download_state(current_task_id, str(path))
        except IdentityError:
            logger.warning("Task %s removed while downloading", current_task_id)
            return path
        process_source_file(self.store, updated, self.config.source_file_action,
                            self.config.archive_dir)
        self.progress.sync_from_record(updated, message="Downloaded")
        return path

    # ── Teardown ──────────────────────────────────────────────────────

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.stop_auto_refresh()
        # Running uploads stop at their next read; the store refuses writes once closed
        self.submissions.shutdown()
        self.submissions.wait_idle(timeout=5)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.progress.unsubscribe_all()
        self.router.leave_all()
        self.api.close()
        self.store.close()
