#!/usr/bin/env python3
"""
Unit tests for persist-before-submit / rewrite-after-confirm submission.
"""

import sys
import json
import tempfile
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from conversion_client.core.constants import TaskStatus, ErrorCode
from conversion_client.core.models import FileDescriptor, SubmissionResult
from conversion_client.core.progress import UnifiedProgressManager
from conversion_client.core.push_channel import (
    PushEventRouter, PushProgressEvent, InMemoryPushChannel,
)
from conversion_client.core.submission import SubmissionManager, serialize_params
from conversion_client.core.task_store import TaskStore

from fakes import FakeApi


class SubmissionTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.store = TaskStore(self.root / "tasks.db")
        self.api = FakeApi()
        self.progress = UnifiedProgressManager(self.store)
        self.channel = InMemoryPushChannel()
        self.router = PushEventRouter(self.progress, self.channel)
        self.manager = SubmissionManager(self.store, self.api, self.progress, self.router,
                                         max_retries=2)
        self.files = [self._make_file(n, 2048) for n in ("a.mp4", "b.mp4", "c.mp4")]

    def tearDown(self):
        self.store.close()
        self.tmpdir.cleanup()

    def _make_file(self, name: str, size: int) -> FileDescriptor:
        path = self.root / name
        path.write_bytes(b"x" * size)
        return FileDescriptor.from_path(path)

    def _by_name(self):
        return {r.file_name: r for r in self.store.list_all()}


class TestSubmission(SubmissionTestCase):

    def test_records_persisted_before_upload(self):
        seen = []

        def check_store(index, result):
            seen.append(self.store.count())
        self.api.before_yield = check_store
        self.manager.submit_and_wait(self.files, {"format": "mp3"})
        self.assertEqual(seen, [3, 3, 3])

    def test_partial_rejection(self):
        self.api.responses["b.mp4"] = SubmissionResult(success=False,
                                                       error_message="Unsupported format")
        outcome = self.manager.submit_and_wait(self.files, {"format": "mp3"})

        records = self._by_name()
        a, b, c = records["a.mp4"], records["b.mp4"], records["c.mp4"]
        self.assertNotEqual(a.current_task_id, a.local_id)
        self.assertNotEqual(c.current_task_id, c.local_id)
        self.assertEqual(a.current_task_id, "srv-a.mp4")
        self.assertEqual(c.server_task_id, "srv-c.mp4")
        self.assertEqual(b.status, TaskStatus.FAILED)
        self.assertEqual(b.current_task_id, b.local_id)
        self.assertEqual(b.last_error, "Unsupported format")

        self.assertEqual(outcome.mapped, [a.local_id, c.local_id])
        self.assertEqual(outcome.failed, [b.local_id])
        self.assertEqual(outcome.unanswered, [])
        self.assertIsNone(outcome.error)

    def test_mapped_tasks_joined_after_mapping(self):
        self.manager.submit_and_wait(self.files, {})
        self.assertEqual(self.channel.joined, ["srv-a.mp4", "srv-b.mp4", "srv-c.mp4"])

    def test_upload_completes_before_conversion(self):
        self.manager.submit_and_wait(self.files[:1], {})
        record = self.store.find_by_current_id("srv-a.mp4")
        self.assertEqual(record.status, TaskStatus.UPLOADING)
        self.assertEqual(record.progress, 100)

    def test_params_snapshot_stored(self):
        self.manager.submit_and_wait(self.files[:1], {"format": "mp3", "bitrate": 192})
        record = self.store.list_all()[0]
        self.assertEqual(json.loads(record.params), {"bitrate": 192, "format": "mp3"})

    def test_batch_progress_reported(self):
        outcome = self.manager.submit_and_wait(self.files, {})
        progress = self.progress.get_batch_progress(outcome.batch_id)
        self.assertEqual(progress.completed_count, 3)
        self.assertEqual(progress.overall_percent, 100)

    def test_background_submit(self):
        local_ids = self.manager.submit(self.files, {})
        self.assertEqual(len(local_ids), 3)
        self.manager.wait_idle(timeout=5)
        for local_id in local_ids:
            self.assertTrue(self.store.get(local_id).is_mapped)
        self.assertEqual(self.manager.in_flight(), set())


class TestInterruptedSubmission(SubmissionTestCase):

    def test_timeout_leaves_unanswered_pending(self):
        self.api.stop_after = 1
        outcome = self.manager.submit_and_wait(self.files, {})
        records = self._by_name()
        self.assertTrue(records["a.mp4"].is_mapped)
        for name in ("b.mp4", "c.mp4"):
            self.assertEqual(records[name].status, TaskStatus.PENDING)
            self.assertEqual(records[name].current_task_id, records[name].local_id)
        self.assertEqual(len(outcome.unanswered), 2)
        self.assertEqual(outcome.error.code, ErrorCode.SUBMISSION_TIMEOUT)

    def test_transport_failure_mid_upload(self):
        self.api.fail_at = 1
        outcome = self.manager.submit_and_wait(self.files, {})
        records = self._by_name()
        self.assertTrue(records["a.mp4"].is_mapped)
        b = records["b.mp4"]
        self.assertEqual(b.status, TaskStatus.PENDING)
        self.assertEqual(b.progress, 0)
        self.assertEqual(b.current_task_id, b.local_id)
        self.assertEqual(outcome.error.code, ErrorCode.NETWORK_TRANSIENT)
        self.assertEqual(self.manager.in_flight(), set())

    def test_resume_pending(self):
        self.api.stop_after = 1
        self.manager.submit_and_wait(self.files, {})
        self.api.stop_after = None
        outcomes = self.manager.resume_pending()
        self.assertEqual(len(outcomes), 1)
        self.assertEqual(len(outcomes[0].mapped), 2)
        self.assertTrue(all(r.is_mapped for r in self.store.list_all()))


    def test_shutdown_stops_running_batch(self):
        def stop_after_first(index, result):
            if index == 0:
                self.manager.shutdown()
        self.api.before_yield = stop_after_first
        outcome = self.manager.submit_and_wait(self.files, {})
        records = self._by_name()
        self.assertTrue(records["a.mp4"].is_mapped)
        for name in ("b.mp4", "c.mp4"):
            self.assertEqual(records[name].status, TaskStatus.PENDING)
            self.assertEqual(records[name].current_task_id, records[name].local_id)
        self.assertEqual(len(outcome.unanswered), 2)
        self.assertEqual(self.api.submitted, ["a.mp4"])

    def test_batches_after_shutdown_send_nothing(self):
        self.manager.shutdown()
        outcome = self.manager.submit_and_wait(self.files[:1], {})
        self.assertEqual(self.api.submitted, [])
        self.assertEqual(len(outcome.unanswered), 1)
        self.assertEqual(self.store.list_all()[0].status, TaskStatus.PENDING)


class TestPushBeforeMapping(SubmissionTestCase):

    def test_early_push_event_dropped_then_resumes(self):
        early = []

        def push_first(index, result):
            early.append(self.router.on_progress(PushProgressEvent(result.server_task_id, 40)))
        self.api.before_yield = push_first
        self.manager.submit_and_wait(self.files[:1], {})

        self.assertEqual(early, [False])
        record = self.store.list_all()[0]
        self.assertEqual(record.status, TaskStatus.UPLOADING)
        self.assertEqual(record.current_task_id, "srv-a.mp4")

        self.assertTrue(self.router.on_progress(PushProgressEvent("srv-a.mp4", 10)))
        record = self.store.get(record.local_id)
        self.assertEqual(record.status, TaskStatus.CONVERTING)
        self.assertEqual(record.progress, 10)


class TestRetry(SubmissionTestCase):

    def test_retry_failed_submission(self):
        self.api.responses["b.mp4"] = SubmissionResult(success=False, error_message="busy")
        self.manager.submit_and_wait(self.files, {})
        failed = self._by_name()["b.mp4"]

        del self.api.responses["b.mp4"]
        self.assertTrue(self.manager.retry(failed.local_id, wait=True))
        record = self.store.get(failed.local_id)
        self.assertEqual(record.server_task_id, "srv-b.mp4")
        self.assertEqual(record.retry_count, 1)
        self.assertIsNone(record.last_error)

    def test_exhausted_retries_stay_failed(self):
        self.api.responses["a.mp4"] = SubmissionResult(success=False, error_message="busy")
        self.manager.submit_and_wait(self.files[:1], {})
        local_id = self.store.list_all()[0].local_id
        self.assertTrue(self.manager.retry(local_id, wait=True) is False)
        self.manager.retry(local_id, wait=True)
        self.assertFalse(self.manager.retry(local_id, wait=True))
        record = self.store.get(local_id)
        self.assertEqual(record.status, TaskStatus.FAILED)
        self.assertEqual(record.retry_count, 2)

    def test_retry_missing_source_fails(self):
        self.api.responses["a.mp4"] = SubmissionResult(success=False, error_message="busy")
        self.manager.submit_and_wait(self.files[:1], {})
        local_id = self.store.list_all()[0].local_id
        Path(self.files[0].path).unlink()
        self.assertFalse(self.manager.retry(local_id, wait=True))
        record = self.store.get(local_id)
        self.assertEqual(record.status, TaskStatus.FAILED)
        self.assertIn("not found", record.last_error)

    def test_retry_rejects_active_task(self):
        self.manager.submit_and_wait(self.files[:1], {})
        local_id = self.store.list_all()[0].local_id
        self.assertFalse(self.manager.retry(local_id, wait=True))

    def test_retry_unknown(self):
        self.assertFalse(self.manager.retry("nope"))


class TestSerializeParams(unittest.TestCase):

    def test_variants(self):
        self.assertEqual(serialize_params(None), "{}")
        self.assertEqual(serialize_params('{"a": 1}'), '{"a": 1}')
        self.assertEqual(serialize_params({"b": 2, "a": 1}), '{"a": 1, "b": 2}')


if __name__ == "__main__":
    unittest.main()
