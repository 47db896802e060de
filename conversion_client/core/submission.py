"""
Identity & submission manager.

Creates local records before anything goes over the wire, submits the batch,
and switches each record over to its server identifier only once the server
has confirmed it. After a crash every persisted record is either Pending and
local-keyed, or fully mapped.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from conversion_client.core.constants import (
    TaskStatus, TaskPhase, ErrorCode, DEFAULT_MAX_RETRIES, DEFAULT_SUBMIT_TIMEOUT_SEC,
)
from conversion_client.core.api_client import RemoteApiClient
from conversion_client.core.error_codes import (
    ConversionClientError, IdentityError, SubmissionError, TransportFailure,
)
from conversion_client.core.models import FileDescriptor, LocalTaskRecord, SubmissionResult
from conversion_client.core.progress import UnifiedProgressManager
from conversion_client.core.push_channel import PushEventRouter
from conversion_client.core.task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    batch_id: str
    mapped: list[str] = field(default_factory=list)      # local ids
    failed: list[str] = field(default_factory=list)
    unanswered: list[str] = field(default_factory=list)
    error: Optional[ConversionClientError] = None


def serialize_params(params) -> str:
    """Conversion parameters are stored as an opaque JSON snapshot."""
    if params is None:
        return "{}"
    if isinstance(params, str):
        return params
    return json.dumps(params, sort_keys=True, ensure_ascii=False)


class SubmissionManager:
    """Persist-before-submit, rewrite-after-confirm."""

    def __init__(self, store: TaskStore, api: RemoteApiClient,
                 progress: UnifiedProgressManager, router: PushEventRouter,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 default_timeout: float = DEFAULT_SUBMIT_TIMEOUT_SEC):
        self.store = store
        self.api = api
        self.progress = progress
        self.router = router
        self.max_retries = max_retries
        self.default_timeout = default_timeout
        self._workers: list[threading.Thread] = []
        self._workers_lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._cancel_events: set[threading.Event] = set()
        self._shutting_down = False
        # Called with the server id when a task was cancelled while its upload ran
        self.on_cancelled_upload: Optional[Callable[[str], None]] = None

    # ── Record creation ───────────────────────────────────────────────

    def create_records(self, files: list[FileDescriptor], params,
                       batch_id: str | None = None) -> list[LocalTaskRecord]:
        """Persist one Pending, local-keyed record per file in a single transaction."""
        snapshot = serialize_params(params)
        records = []
        for f in files:
            local_id = str(uuid.uuid4())
            records.append(LocalTaskRecord(
                local_id=local_id,
                current_task_id=local_id,
                file_path=f.path,
                file_name=f.name,
                file_size=f.size,
                params=snapshot,
                batch_id=batch_id,
                max_retries=self.max_retries,
            ))
        self.store.put_many(records)
        for r in records:
            self.progress.sync_from_record(r)
        logger.info("Created %d local task(s) for batch %s", len(records), batch_id)
        return records

    # ── Submission ────────────────────────────────────────────────────

    def submit(self, files: list[FileDescriptor], params,
               timeout: float | None = None,
               cancel_event: threading.Event | None = None) -> list[str]:
        """Create the records and submit them on a worker thread. Returns local ids."""
        batch_id = str(uuid.uuid4())
        records = self.create_records(files, params, batch_id)
        worker = threading.Thread(
            target=self.run_batch,
            args=(batch_id, records),
            kwargs={'timeout': timeout, 'cancel_event': cancel_event},
            name=f"submit-{batch_id[:8]}",
            daemon=True,
        )
        with self._workers_lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        return [r.local_id for r in records]

    def submit_and_wait(self, files: list[FileDescriptor], params,
                        timeout: float | None = None,
                        cancel_event: threading.Event | None = None) -> BatchOutcome:
        batch_id = str(uuid.uuid4())
        records = self.create_records(files, params, batch_id)
        return self.run_batch(batch_id, records, timeout=timeout, cancel_event=cancel_event)

    def in_flight(self) -> set[str]:
        """Local ids whose submission has not been answered yet."""
        with self._in_flight_lock:
            return set(self._in_flight)

    def wait_idle(self, timeout: float | None = None):
        """Join running submission workers (used at shutdown)."""
        with self._workers_lock:
            workers = list(self._workers)
        for w in workers:
            w.join(timeout)

    def shutdown(self):
        """Cancel every running upload; batches started afterwards are cancelled at once."""
        with self._workers_lock:
            self._shutting_down = True
            events = list(self._cancel_events)
        for event in events:
            event.set()
        if events:
            logger.info("Cancelling %d running submission(s) for shutdown", len(events))

    def run_batch(self, batch_id: str, records: list[LocalTaskRecord],
                  timeout: float | None = None,
                  cancel_event: threading.Event | None = None) -> BatchOutcome:
        """
        Submit already-persisted records as one batch. Never raises: transport
        failures leave unanswered records Pending so they can be retried.
        """
        outcome = BatchOutcome(batch_id=batch_id)
        total = len(records)
        if not total:
            return outcome

        cancel_event = cancel_event or threading.Event()
        with self._workers_lock:
            if self._shutting_down:
                cancel_event.set()
            self._cancel_events.add(cancel_event)

        timeout = timeout or self.default_timeout
        deadline = time.monotonic() + timeout
        answered: set[int] = set()
        sizes = [max(1, r.file_size) for r in records]
        total_bytes = sum(sizes)
        sent_by_file = [0] * total
        last_reported = [-1] * total

        def on_transfer(index: int, sent: int, file_total: int):
            record = records[index]
            pct = (sent / file_total * 100) if file_total else 100.0
            # One store write per whole percent, not per socket read
            if int(pct) == last_reported[index]:
                return
            last_reported[index] = int(pct)
            self.progress.update_progress(record.local_id, pct, TaskPhase.UPLOADING)
            sent_by_file[index] = min(sent, sizes[index])
            self.progress.update_batch_progress(
                batch_id,
                sum(sent_by_file) / total_bytes * 100,
                len(answered), total,
                current_file=record.file_name,
                current_file_progress=pct,
            )

        with self._in_flight_lock:
            self._in_flight.update(r.local_id for r in records)
        self.progress.update_batch_progress(batch_id, 0, 0, total)
        files = [FileDescriptor(r.file_path, r.file_name, r.file_size) for r in records]
        try:
            for index, result in self.api.submit_batch(
                    batch_id, files, records[0].params,
                    on_transfer=on_transfer, cancel_event=cancel_event, deadline=deadline):
                answered.add(index)
                sent_by_file[index] = sizes[index]
                if self._apply_result(records[index], result, batch_id):
                    outcome.mapped.append(records[index].local_id)
                else:
                    outcome.failed.append(records[index].local_id)
                self.progress.update_batch_progress(
                    batch_id, sum(sent_by_file) / total_bytes * 100,
                    len(answered), total,
                    current_file=records[index].file_name, current_file_progress=100,
                )
        except (TransportFailure, SubmissionError) as e:
            logger.warning("Batch %s interrupted: %s", batch_id, e)
            outcome.error = e
        finally:
            with self._in_flight_lock:
                self._in_flight.difference_update(r.local_id for r in records)
            with self._workers_lock:
                self._cancel_events.discard(cancel_event)

        for index, record in enumerate(records):
            if index not in answered:
                outcome.unanswered.append(record.local_id)
                self._leave_pending(record, outcome.error)
        if outcome.unanswered and outcome.error is None:
            outcome.error = TransportFailure(
                ErrorCode.SUBMISSION_TIMEOUT,
                f"{len(outcome.unanswered)} file(s) not submitted before timeout/cancel",
            )

        logger.info("Batch %s: %d mapped, %d failed, %d unanswered",
                    batch_id, len(outcome.mapped), len(outcome.failed), len(outcome.unanswered))
        return outcome

    def _apply_result(self, record: LocalTaskRecord, result: SubmissionResult,
                      batch_id: str | None) -> bool:
        local_id = record.local_id
        if not result.success or not result.server_task_id:
            message = result.error_message or "Rejected by server"
            logger.warning("Submission of %s rejected: %s", record.file_name, message)
            self.progress.on_task_completed(local_id, False, message)
            return False

        server_id = result.server_task_id
        with self.progress.locks.hold(local_id, server_id):
            try:
                updated = self.store.update_identifier_mapping(local_id, server_id, batch_id)
            except IdentityError:
                # Record was deleted by the user while the upload ran
                logger.warning("Task %s vanished before mapping to %s", local_id, server_id)
                return False
        if updated.status == TaskStatus.CANCELLED:
            logger.info("Task %s was cancelled during upload; cancelling %s remotely",
                        local_id, server_id)
            if self.on_cancelled_upload:
                self.on_cancelled_upload(server_id)
            return True
        self.progress.update_progress(server_id, 100, TaskPhase.UPLOAD_COMPLETED)
        self.progress.sync_from_record(self.store.get(local_id) or updated)
        # Push events for the server id are only accepted from here on
        self.router.join(server_id)
        return True

    def _leave_pending(self, record: LocalTaskRecord, error: ConversionClientError | None):
        """Put an unanswered record back to Pending, still keyed by its local id."""
        with self.progress.locks.hold(record.local_id):
            current = self.store.get(record.local_id)
            if current is None or current.status != TaskStatus.UPLOADING \
                    or current.current_task_id != record.local_id:
                return
            try:
                updated = self.store.update_progress(
                    record.local_id, 0, TaskPhase.PENDING, status=TaskStatus.PENDING,
                )
            except IdentityError:
                return
        self.progress.sync_from_record(updated, message=error.message if error else None)

    # ── Retry ─────────────────────────────────────────────────────────

    def retry(self, local_id: str, timeout: float | None = None,
              wait: bool = False) -> bool:
        """
        Explicit user retry of a Failed (or never-answered Pending) record.
        Exhausted retries leave the record Failed; nothing is auto-cancelled.
        """
        record = self.store.get(local_id)
        if record is None:
            logger.warning("Retry for unknown task %s", local_id)
            return False
        if record.status not in (TaskStatus.FAILED, TaskStatus.PENDING):
            logger.info("Task %s is %s; nothing to retry", local_id, record.status)
            return False
        if record.status == TaskStatus.FAILED and record.retry_count >= record.max_retries:
            logger.warning("Task %s has used all %d retries", local_id, record.max_retries)
            return False
        if record.status == TaskStatus.PENDING and record.current_task_id != local_id:
            return False

        if record.status == TaskStatus.FAILED:
            if record.server_task_id:
                self.router.leave(record.server_task_id)
            record = self.store.reset_for_retry(local_id)
            self.progress.sync_from_record(record)

        batch_id = record.batch_id or str(uuid.uuid4())
        if not Path(record.file_path).exists():
            self.progress.on_task_completed(local_id, False,
                                            f"Source file not found: {record.file_path}")
            return False

        if wait:
            outcome = self.run_batch(batch_id, [record], timeout=timeout)
            return bool(outcome.mapped)
        worker = threading.Thread(target=self.run_batch, args=(batch_id, [record]),
                                  kwargs={'timeout': timeout}, daemon=True,
                                  name=f"retry-{local_id[:8]}")
        with self._workers_lock:
            self._workers.append(worker)
        worker.start()
        return True

    def resume_pending(self, timeout: float | None = None) -> list[BatchOutcome]:
        """Resubmit records left Pending and local-keyed by an earlier session."""
        groups: dict[tuple, list[LocalTaskRecord]] = {}
        for r in self.store.list_all():
            if r.status == TaskStatus.PENDING and r.current_task_id == r.local_id:
                groups.setdefault((r.batch_id, r.params), []).append(r)
        if not groups:
            return []
        logger.info("Resuming %d pending task(s) from a previous session",
                    sum(len(g) for g in groups.values()))
        return [self.run_batch(batch_id or str(uuid.uuid4()), records, timeout=timeout)
                for (batch_id, _), records in groups.items()]
