#!/usr/bin/env python3
"""
Unit tests for the unified progress state machine, batch progress and the
push event router.
"""

import sys
import tempfile
import threading
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from conversion_client.core.constants import TaskStatus, TaskPhase, ProgressState
from conversion_client.core.keyed_lock import StripedLock
from conversion_client.core.models import LocalTaskRecord
from conversion_client.core.progress import UnifiedProgressManager, clamp_percent
from conversion_client.core.push_channel import (
    PushEventRouter, PushProgressEvent, PushCompletedEvent, InMemoryPushChannel,
)
from conversion_client.core.task_store import TaskStore

from fakes import RecordingSubscriber


class ProgressTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = TaskStore(Path(self.tmpdir.name) / "tasks.db")
        self.progress = UnifiedProgressManager(self.store)
        self.events = RecordingSubscriber()
        self.unsubscribe = self.progress.subscribe(self.events)
        self.store.put(LocalTaskRecord(local_id="t1", current_task_id="t1",
                                       file_path="/tmp/a.mp4", file_name="a.mp4",
                                       file_size=1000))

    def tearDown(self):
        self.store.close()
        self.tmpdir.cleanup()


class TestClampPercent(unittest.TestCase):

    def test_bounds(self):
        self.assertEqual(clamp_percent(-5), 0.0)
        self.assertEqual(clamp_percent(150), 100.0)
        self.assertEqual(clamp_percent(42.5), 42.5)

    def test_garbage(self):
        self.assertEqual(clamp_percent(None), 0.0)
        self.assertEqual(clamp_percent("abc"), 0.0)
        self.assertEqual(clamp_percent(float("nan")), 0.0)


class TestStateMachine(ProgressTestCase):

    def test_upload_progress(self):
        self.assertTrue(self.progress.update_progress("t1", 30, TaskPhase.UPLOADING))
        record = self.store.get("t1")
        self.assertEqual(record.status, TaskStatus.UPLOADING)
        self.assertEqual(record.progress, 30)
        self.assertEqual(self.events.states("t1"), [ProgressState.UPLOADING])

    def test_upload_saturates_to_upload_completed(self):
        self.progress.update_progress("t1", 150, TaskPhase.UPLOADING)
        snapshot = self.progress.get_snapshot("t1")
        self.assertEqual(snapshot.state, ProgressState.UPLOAD_COMPLETED)
        self.assertEqual(snapshot.percent, 100.0)
        self.assertEqual(self.store.get("t1").status, TaskStatus.UPLOADING)

    def test_converting_resets_percent(self):
        self.progress.update_progress("t1", 100, TaskPhase.UPLOADING)
        self.progress.update_progress("t1", 5, TaskPhase.CONVERTING)
        record = self.store.get("t1")
        self.assertEqual(record.status, TaskStatus.CONVERTING)
        self.assertEqual(record.progress, 5)

    def test_percent_moves_forward_within_phase(self):
        self.progress.update_progress("t1", 50, TaskPhase.CONVERTING)
        self.progress.update_progress("t1", 30, TaskPhase.CONVERTING)
        self.assertEqual(self.store.get("t1").progress, 50)

    def test_phase_tag_beats_arrival_order(self):
        self.progress.update_progress("t1", 40, TaskPhase.UPLOADING)
        self.progress.update_progress("t1", 10, TaskPhase.CONVERTING)
        accepted = self.progress.update_progress("t1", 90, TaskPhase.UPLOADING)
        self.assertFalse(accepted)
        record = self.store.get("t1")
        self.assertEqual(record.status, TaskStatus.CONVERTING)
        self.assertEqual(record.progress, 10)

    def test_terminal_is_sticky(self):
        self.progress.update_progress("t1", 60, TaskPhase.CONVERTING)
        self.assertTrue(self.progress.on_task_completed("t1", True))
        self.assertFalse(self.progress.update_progress("t1", 10, TaskPhase.CONVERTING))
        self.assertFalse(self.progress.update_progress("t1", 20, TaskPhase.UPLOADING))
        record = self.store.get("t1")
        self.assertEqual(record.status, TaskStatus.COMPLETED)
        self.assertEqual(record.progress, 100)
        self.assertEqual(self.progress.get_snapshot("t1").percent, 100.0)

    def test_completion_is_idempotent(self):
        self.assertTrue(self.progress.on_task_completed("t1", False, "codec error"))
        self.assertFalse(self.progress.on_task_completed("t1", False, "codec error"))
        record = self.store.get("t1")
        self.assertEqual(record.status, TaskStatus.FAILED)
        self.assertEqual(record.last_error, "codec error")
        self.assertEqual(self.events.states("t1").count(ProgressState.FAILED), 1)

    def test_completion_from_any_phase(self):
        self.progress.update_progress("t1", 20, TaskPhase.UPLOADING)
        self.assertTrue(self.progress.on_task_completed("t1", True))
        self.assertEqual(self.store.get("t1").status, TaskStatus.COMPLETED)

    def test_cancel_is_terminal(self):
        self.progress.update_progress("t1", 20, TaskPhase.CONVERTING)
        self.assertTrue(self.progress.mark_cancelled("t1"))
        self.assertFalse(self.progress.on_task_completed("t1", True))
        self.assertEqual(self.store.get("t1").status, TaskStatus.CANCELLED)

    def test_unknown_identifier_is_noop(self):
        self.assertFalse(self.progress.update_progress("ghost", 10, TaskPhase.UPLOADING))
        self.assertFalse(self.progress.on_task_completed("ghost", True))
        self.assertEqual(self.store.count(), 1)
        self.assertEqual(self.events.events, [])

    def test_unsubscribe_stops_notifications(self):
        self.unsubscribe()
        self.progress.update_progress("t1", 10, TaskPhase.UPLOADING)
        self.assertEqual(self.events.events, [])

    def test_failing_subscriber_does_not_block_others(self):
        def broken(_event):
            raise RuntimeError("render failed")
        self.progress.subscribe(broken)
        self.progress.update_progress("t1", 10, TaskPhase.UPLOADING)
        self.assertEqual(len(self.events.events), 1)

    def test_unsubscribe_all(self):
        self.progress.subscribe_batch(lambda _b: None)
        self.progress.unsubscribe_all()
        self.assertEqual(self.progress.subscriber_count, 0)

    def test_concurrent_updates_keep_highest(self):
        def worker(values):
            for v in values:
                self.progress.update_progress("t1", v, TaskPhase.CONVERTING)
        threads = [threading.Thread(target=worker, args=(range(i, 90, 4),)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.store.get("t1").progress, 89)

    def test_counts(self):
        self.progress.update_progress("t1", 10, TaskPhase.CONVERTING)
        self.assertEqual(self.progress.active_count(), 1)
        self.assertEqual(self.progress.count_by_status(TaskStatus.CONVERTING), 1)


class TestBatchProgress(ProgressTestCase):

    def test_batch_view_does_not_touch_records(self):
        batches = RecordingSubscriber()
        self.progress.subscribe_batch(batches)
        self.progress.update_batch_progress("b1", 55, 1, 3, "a.mp4", 120)
        progress = self.progress.get_batch_progress("b1")
        self.assertEqual(progress.overall_percent, 55)
        self.assertEqual(progress.current_file_progress, 100)
        self.assertEqual(progress.total_count, 3)
        self.assertEqual(len(batches.events), 1)
        record = self.store.get("t1")
        self.assertEqual(record.status, TaskStatus.PENDING)
        self.assertEqual(record.progress, 0)

    def test_unknown_batch(self):
        self.assertIsNone(self.progress.get_batch_progress("nope"))


class TestPushRouter(ProgressTestCase):

    def setUp(self):
        super().setUp()
        self.channel = InMemoryPushChannel()
        self.router = PushEventRouter(self.progress, self.channel)

    def test_unjoined_events_are_dropped(self):
        self.assertFalse(self.router.on_progress(PushProgressEvent("t1", 50)))
        self.assertFalse(self.router.on_completed(PushCompletedEvent("t1", True)))
        self.assertEqual(self.store.get("t1").status, TaskStatus.PENDING)

    def test_joined_events_flow_through(self):
        self.router.join("t1")
        self.assertEqual(self.channel.joined, ["t1"])
        self.assertTrue(self.router.on_progress(PushProgressEvent("t1", 50, speed=2.0)))
        self.assertEqual(self.store.get("t1").status, TaskStatus.CONVERTING)
        self.assertTrue(self.router.on_completed(PushCompletedEvent("t1", True)))
        self.assertEqual(self.store.get("t1").status, TaskStatus.COMPLETED)
        self.assertFalse(self.router.is_joined("t1"))
        self.assertEqual(self.channel.left, ["t1"])

    def test_join_twice_subscribes_once(self):
        self.router.join("t1")
        self.router.join("t1")
        self.assertEqual(self.channel.joined, ["t1"])

    def test_leave_all(self):
        self.router.join("t1")
        self.router.join("t2")
        self.router.leave_all()
        self.assertEqual(self.router.joined(), set())


class TestStripedLock(unittest.TestCase):

    def test_same_key_serialised_across_threads(self):
        locks = StripedLock(8)
        entered = threading.Event()

        def other():
            with locks.hold("abc"):
                entered.set()

        with locks.hold("abc"):
            worker = threading.Thread(target=other)
            worker.start()
            self.assertFalse(entered.wait(0.1))
        worker.join(2)
        self.assertTrue(entered.is_set())

    def test_hold_is_reentrant(self):
        locks = StripedLock(1)
        with locks.hold("a", "b"):
            with locks.hold("a"):
                pass

    def test_invalid_stripes(self):
        with self.assertRaises(ValueError):
            StripedLock(0)


if __name__ == "__main__":
    unittest.main()
