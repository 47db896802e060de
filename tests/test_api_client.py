#!/usr/bin/env python3
"""
Unit tests for the HTTP client: response parsing and error translation.
The requests.Session is replaced with a mock; nothing touches the network.
"""

import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

import requests

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from conversion_client.core.constants import ErrorCode, TaskStatus
from conversion_client.core.api_client import RemoteApiClient, _CountingReader
from conversion_client.core.error_codes import TransportFailure, SubmissionError
from conversion_client.core.models import FileDescriptor


def fake_response(status_code=200, payload=None, text=None, headers=None, chunks=None):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.headers = headers or {}
    if payload is not None:
        resp.json.return_value = payload
        resp.text = text if text is not None else str(payload)
    else:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
    resp.iter_content.return_value = chunks or []
    return resp


def task_json(task_id, status=1, name="a.wav"):
    return {'id': task_id, 'taskName': name, 'originalFileName': name,
            'originalFileSize': 100, 'status': status, 'progress': 10}


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self.http = mock.Mock(spec=requests.Session)
        self.api = RemoteApiClient("http://server:5065/", timeout=5, session=self.http)
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def make_file(self, name="a.wav", size=64) -> FileDescriptor:
        path = self.root / name
        path.write_bytes(b"x" * size)
        return FileDescriptor.from_path(path)


class TestTransportErrors(ApiTestCase):

    def test_timeout_translated(self):
        self.http.request.side_effect = requests.exceptions.Timeout()
        with self.assertRaises(TransportFailure) as ctx:
            self.api.fetch_task_list()
        self.assertEqual(ctx.exception.code, ErrorCode.REQUEST_TIMEOUT)
        self.assertTrue(ctx.exception.retryable)

    def test_connection_error_translated(self):
        self.http.request.side_effect = requests.exceptions.ConnectionError()
        with self.assertRaises(TransportFailure) as ctx:
            self.api.cancel_task("t1")
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)

    def test_server_error(self):
        self.http.request.return_value = fake_response(502, text="Bad gateway")
        with self.assertRaises(TransportFailure) as ctx:
            self.api.fetch_task_list()
        self.assertEqual(ctx.exception.code, ErrorCode.SERVER_ERROR)
        self.assertEqual(ctx.exception.status_code, 502)

    def test_non_json_body(self):
        self.http.request.return_value = fake_response(200, text="<html>")
        with self.assertRaises(TransportFailure) as ctx:
            self.api.fetch_task_list()
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_RESPONSE)

    @mock.patch("conversion_client.core.api_client.time.sleep")
    def test_rate_limit_retried(self, sleep):
        self.http.request.side_effect = [fake_response(429), fake_response(200, {})]
        ok, _ = self.api.check_health()
        self.assertTrue(ok)
        self.assertEqual(sleep.call_count, 1)

    @mock.patch("conversion_client.core.api_client.time.sleep")
    def test_rate_limit_gives_up(self, sleep):
        self.http.request.return_value = fake_response(429)
        with self.assertRaises(TransportFailure) as ctx:
            self.api.fetch_task_list()
        self.assertEqual(ctx.exception.code, ErrorCode.RATE_LIMITED)

    def test_health_unreachable(self):
        self.http.request.side_effect = requests.exceptions.ConnectionError()
        ok, message = self.api.check_health()
        self.assertFalse(ok)
        self.assertIn("server:5065", message)


class TestTaskList(ApiTestCase):

    def test_single_page(self):
        self.http.request.return_value = fake_response(200, {
            'success': True,
            'data': [task_json("t1"), task_json("t2", status=2)],
            'pagination': {'page': 1, 'totalPages': 1},
        })
        records, has_more = self.api.fetch_task_list(1, 50)
        self.assertFalse(has_more)
        self.assertEqual([r.task_id for r in records], ["t1", "t2"])
        self.assertEqual(records[1].status, TaskStatus.COMPLETED)
        args, kwargs = self.http.request.call_args
        self.assertEqual(args, ("GET", "http://server:5065/api/task/list"))
        self.assertEqual(kwargs['params'], {'page': 1, 'pageSize': 50})

    def test_malformed_entries_skipped(self):
        self.http.request.return_value = fake_response(200, {
            'success': True, 'data': [{'status': 1}, task_json("t1")],
        })
        records, _ = self.api.fetch_task_list(1, 50)
        self.assertEqual([r.task_id for r in records], ["t1"])

    def test_fetch_all_pages_dedupes(self):
        self.http.request.side_effect = [
            fake_response(200, {'success': True, 'data': [task_json("t1"), task_json("t2")],
                                'pagination': {'totalPages': 2}}),
            fake_response(200, {'success': True, 'data': [task_json("t2"), task_json("t3")],
                                'pagination': {'totalPages': 2}}),
        ]
        records = self.api.fetch_all_tasks(page_size=2)
        self.assertEqual([r.task_id for r in records], ["t1", "t2", "t3"])

    def test_unsuccessful_payload(self):
        self.http.request.return_value = fake_response(200, {'success': False, 'message': 'nope'})
        with self.assertRaises(TransportFailure):
            self.api.fetch_task_list()


class TestSubmit(ApiTestCase):

    def test_accepted(self):
        self.http.request.return_value = fake_response(200, {
            'success': True, 'data': {'taskId': 'srv-1'},
        })
        result = self.api.submit_file(self.make_file(), '{"format": "mp3"}', batch_id="b1")
        self.assertTrue(result.success)
        self.assertEqual(result.server_task_id, "srv-1")
        kwargs = self.http.request.call_args[1]
        self.assertEqual(kwargs['params']['fileName'], "a.wav")
        self.assertEqual(kwargs['params']['batchId'], "b1")
        self.assertEqual(len(kwargs['data']), 64)

    def test_rejected(self):
        self.http.request.return_value = fake_response(400, {
            'success': False, 'message': 'Unsupported format',
        })
        result = self.api.submit_file(self.make_file(), "{}")
        self.assertFalse(result.success)
        self.assertEqual(result.error_message, "Unsupported format")

    def test_missing_file_rejected_locally(self):
        fd = FileDescriptor(str(self.root / "gone.wav"), "gone.wav", 10)
        result = self.api.submit_file(fd, "{}")
        self.assertFalse(result.success)
        self.http.request.assert_not_called()

    def test_upload_streams_with_progress(self):
        seen = []

        def consume(method, url, timeout=None, data=None, **kwargs):
            while data.read(16):
                pass
            return fake_response(200, {'success': True, 'data': {'taskId': 'srv-1'}})
        self.http.request.side_effect = consume
        self.api.submit_file(self.make_file(size=64), "{}",
                             on_transfer=lambda sent, total: seen.append((sent, total)))
        self.assertEqual(seen[-1], (64, 64))
        self.assertEqual(len(seen), 4)

    def test_batch_yields_per_file(self):
        self.http.request.side_effect = [
            fake_response(200, {'success': True, 'data': {'taskId': 'srv-1'}}),
            fake_response(200, {'success': False, 'message': 'bad'}),
        ]
        files = [self.make_file("a.wav"), self.make_file("b.wav")]
        results = list(self.api.submit_batch("b1", files, "{}"))
        self.assertEqual([i for i, _ in results], [0, 1])
        self.assertTrue(results[0][1].success)
        self.assertFalse(results[1][1].success)

    def test_batch_stops_on_cancel(self):
        cancel = threading.Event()
        cancel.set()
        results = list(self.api.submit_batch("b1", [self.make_file()], "{}", cancel_event=cancel))
        self.assertEqual(results, [])
        self.http.request.assert_not_called()

    def test_batch_stops_at_deadline(self):
        results = list(self.api.submit_batch("b1", [self.make_file()], "{}", deadline=0))
        self.assertEqual(results, [])

    def test_deadline_interrupts_upload_in_progress(self):
        clock = [0.0]
        transfers = []

        def on_transfer(index, sent, total):
            transfers.append(sent)
            clock[0] += 10

        def consume(method, url, timeout=None, data=None, **kwargs):
            while data.read(16):
                pass
            return fake_response(200, {'success': True, 'data': {'taskId': 'srv-1'}})
        self.http.request.side_effect = consume

        with mock.patch("conversion_client.core.api_client.time") as fake_time:
            fake_time.monotonic.side_effect = lambda: clock[0]
            with self.assertRaises(SubmissionError) as ctx:
                list(self.api.submit_batch("b1", [self.make_file(size=64)], "{}",
                                           on_transfer=on_transfer, deadline=25))
        self.assertEqual(ctx.exception.code, ErrorCode.SUBMISSION_TIMEOUT)
        self.assertEqual(transfers, [16, 32, 48])

    def test_reader_refuses_reads_past_deadline(self):
        path = self.root / "a.wav"
        path.write_bytes(b"x" * 8)
        with open(path, 'rb') as f:
            reader = _CountingReader(f, 8, None, deadline=time.monotonic() - 1)
            with self.assertRaises(SubmissionError):
                reader.read(4)
        with open(path, 'rb') as f:
            reader = _CountingReader(f, 8, None, deadline=time.monotonic() + 60)
            self.assertEqual(reader.read(4), b"xxxx")


class TestTaskCommands(ApiTestCase):

    def test_cancel(self):
        self.http.request.return_value = fake_response(200, {'success': True})
        self.assertEqual(self.api.cancel_task("t1"), (True, ""))
        args = self.http.request.call_args[0]
        self.assertEqual(args, ("POST", "http://server:5065/api/conversion/cancel/t1"))

    def test_delete_missing_counts_as_done(self):
        self.http.request.return_value = fake_response(404)
        ok, _ = self.api.delete_task("t1")
        self.assertTrue(ok)

    def test_download_writes_inside_dest(self):
        self.http.request.return_value = fake_response(
            200, headers={'Content-Disposition': 'attachment; filename="../../out.mp3"'},
            chunks=[b"abc", b"def"],
        )
        path = self.api.download_output("t1", self.root / "dl")
        self.assertEqual(path, self.root / "dl" / "out.mp3")
        self.assertEqual(path.read_bytes(), b"abcdef")
        self.assertFalse(path.with_name("out.mp3.part").exists())

    def test_download_error_status(self):
        self.http.request.return_value = fake_response(404)
        with self.assertRaises(TransportFailure):
            self.api.download_output("t1", self.root)


if __name__ == "__main__":
    unittest.main()
