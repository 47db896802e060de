"""
HTTP client for the remote conversion service.
Includes exponential backoff for rate-limit (429) responses.
"""

import json
import logging
import os
import random
import threading
import time
from pathlib import Path
from typing import Callable, Iterator, Optional

import requests

from conversion_client.core.constants import (
    ErrorCode, DEFAULT_REQUEST_TIMEOUT_SEC, DEFAULT_PAGE_SIZE, MAX_TASK_LIST_PAGES,
    API_HEALTH, API_START_CONVERSION, API_TASK_LIST, API_CANCEL_TASK,
    API_DELETE_TASK, API_DOWNLOAD, UPLOAD_READ_CHUNK,
)
from conversion_client.core.error_codes import TransportFailure, SubmissionError
from conversion_client.core.models import FileDescriptor, RemoteTaskRecord, SubmissionResult
from conversion_client.core.security_utils import safe_output_path

logger = logging.getLogger(__name__)

# (file_index, bytes_sent, total_bytes)
TransferCallback = Callable[[int, int, int], None]

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubled each retry with jitter


class _CountingReader:
    """File wrapper that reports how many bytes requests has pulled from it."""

    def __init__(self, fileobj, total: int, on_read: Callable[[int, int], None] | None,
                 cancel_event: threading.Event | None = None,
                 deadline: float | None = None):
        self._f = fileobj
        self._total = total
        self._sent = 0
        self._on_read = on_read
        self._cancel_event = cancel_event
        self._deadline = deadline   # time.monotonic() value

    def __len__(self):
        return self._total

    def read(self, size: int = -1) -> bytes:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise SubmissionError("Upload cancelled", code=ErrorCode.SUBMISSION_TIMEOUT,
                                  retryable=True)
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise SubmissionError("Upload exceeded submission timeout",
                                  code=ErrorCode.SUBMISSION_TIMEOUT, retryable=True)
        if size is None or size < 0:
            size = UPLOAD_READ_CHUNK
        chunk = self._f.read(size)
        if chunk:
            self._sent += len(chunk)
            if self._on_read:
                self._on_read(self._sent, self._total)
        return chunk


class RemoteApiClient:
    """Thin wrapper over the conversion service's REST endpoints."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC,
                 session: requests.Session | None = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.http = session or requests.Session()

    def close(self):
        self.http.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # ── Low-level request with translation to TransportFailure ────────

    def _request(self, method: str, path: str, timeout: float | None = None,
                 **kwargs) -> requests.Response:
        url = self._url(path)
        timeout = timeout or self.timeout

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                resp = self.http.request(method, url, timeout=timeout, **kwargs)
            except requests.exceptions.Timeout:
                raise TransportFailure(ErrorCode.REQUEST_TIMEOUT,
                                       f"{method} {path} timed out after {timeout}s")
            except requests.exceptions.ConnectionError:
                raise TransportFailure(ErrorCode.NETWORK_TRANSIENT,
                                       f"Network error connecting to {self.base_url}")
            except requests.exceptions.RequestException as e:
                raise TransportFailure(ErrorCode.NETWORK_TRANSIENT,
                                       f"{method} {path} failed: {e}")

            if resp.status_code == 429 and 'data' not in kwargs:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # Exponential backoff with jitter: 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Rate limited (429) on %s — retrying in %.1fs (attempt %d/%d)",
                        path, delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    time.sleep(delay)
                    continue
                raise TransportFailure(ErrorCode.RATE_LIMITED,
                                       f"Rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries",
                                       status_code=429)
            return resp

        # Should never reach here
        raise TransportFailure(ErrorCode.RATE_LIMITED, f"{method} {path} exhausted retries")

    @staticmethod
    def _json(resp: requests.Response, path: str) -> dict:
        if resp.status_code >= 500:
            body = resp.text[:300] if resp.text else "No response body"
            raise TransportFailure(ErrorCode.SERVER_ERROR,
                                   f"{path} returned {resp.status_code}: {body}",
                                   status_code=resp.status_code)
        try:
            payload = resp.json()
        except (json.JSONDecodeError, ValueError):
            raise TransportFailure(ErrorCode.INVALID_RESPONSE,
                                   f"{path} returned non-JSON ({resp.status_code})",
                                   status_code=resp.status_code)
        if not isinstance(payload, dict):
            raise TransportFailure(ErrorCode.INVALID_RESPONSE,
                                   f"{path} returned unexpected JSON",
                                   status_code=resp.status_code)
        return payload

    # ── Health ────────────────────────────────────────────────────────

    def check_health(self) -> tuple[bool, str]:
        """Returns (reachable: bool, message: str)."""
        try:
            resp = self._request("GET", API_HEALTH, timeout=10)
        except TransportFailure as e:
            return False, e.message
        if resp.status_code == 200:
            return True, "Server reachable"
        return False, f"Unexpected response: {resp.status_code}"

    # ── Submission ────────────────────────────────────────────────────

    def submit_file(self, file: FileDescriptor, params: str, batch_id: str | None = None,
                    on_transfer: Callable[[int, int], None] | None = None,
                    cancel_event: threading.Event | None = None,
                    timeout: float | None = None,
                    deadline: float | None = None) -> SubmissionResult:
        """
        Stream one file to the service. Rejections come back as an
        unsuccessful SubmissionResult; transport problems raise TransportFailure.
        """
        if not os.path.isfile(file.path):
            return SubmissionResult(success=False,
                                    error_message=f"Source file not found: {file.path}")

        query = {
            'fileName': file.name,
            'fileSize': file.size,
            'parameters': params,
        }
        if batch_id:
            query['batchId'] = batch_id

        size = os.path.getsize(file.path)
        with open(file.path, 'rb') as f:
            body = _CountingReader(f, size, on_transfer, cancel_event, deadline)
            resp = self._request(
                "POST", API_START_CONVERSION,
                timeout=timeout,
                params=query,
                data=body,
                headers={"Content-Type": "application/octet-stream"},
            )

        if resp.status_code == 429:
            raise TransportFailure(ErrorCode.RATE_LIMITED, "Upload rate limited (429)",
                                   status_code=429)
        payload = self._json(resp, API_START_CONVERSION)
        data = payload.get('data') or {}
        task_id = data.get('taskId') if isinstance(data, dict) else None
        if resp.ok and payload.get('success') and task_id:
            return SubmissionResult(success=True, server_task_id=str(task_id))

        message = payload.get('message') or f"Rejected with HTTP {resp.status_code}"
        return SubmissionResult(success=False, error_message=message)

    def submit_batch(self, batch_id: str, files: list[FileDescriptor], params: str,
                     on_transfer: TransferCallback | None = None,
                     cancel_event: threading.Event | None = None,
                     deadline: float | None = None,
                     ) -> Iterator[tuple[int, SubmissionResult]]:
        """
        Submit a batch, yielding (index, result) as each file's response
        arrives. Stops early once cancel_event is set or the monotonic
        deadline passes, including part-way through a file's upload; files
        not yet yielded were never answered.
        """
        for index, file in enumerate(files):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Batch %s stopped before file %d", batch_id, index)
                return
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Batch %s hit its deadline before file %d", batch_id, index)
                    return

            def report(sent, total, _i=index):
                if on_transfer:
                    on_transfer(_i, sent, total)

            result = self.submit_file(
                file, params, batch_id=batch_id, on_transfer=report,
                cancel_event=cancel_event,
                timeout=min(self.timeout, remaining) if remaining else None,
                deadline=deadline,
            )
            yield index, result

    # ── Authoritative task list ───────────────────────────────────────

    def fetch_task_list(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
                        ) -> tuple[list[RemoteTaskRecord], bool]:
        """Returns (records, has_more) for one page."""
        resp = self._request("GET", API_TASK_LIST,
                             params={'page': page, 'pageSize': page_size})
        payload = self._json(resp, API_TASK_LIST)
        if not resp.ok or not payload.get('success', True):
            raise TransportFailure(ErrorCode.SERVER_ERROR,
                                   payload.get('message') or f"Task list HTTP {resp.status_code}",
                                   status_code=resp.status_code)

        items = payload.get('data') or []
        records = []
        for item in items:
            try:
                records.append(RemoteTaskRecord.from_api(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed remote task entry: %s", e)

        pagination = payload.get('pagination') or {}
        total_pages = pagination.get('totalPages')
        if total_pages is not None:
            has_more = page < int(total_pages)
        else:
            has_more = len(items) >= page_size
        return records, has_more

    def fetch_all_tasks(self, page_size: int = DEFAULT_PAGE_SIZE,
                        max_pages: int = MAX_TASK_LIST_PAGES) -> list[RemoteTaskRecord]:
        records: list[RemoteTaskRecord] = []
        seen: set[str] = set()
        for page in range(1, max_pages + 1):
            batch, has_more = self.fetch_task_list(page, page_size)
            for r in batch:
                # Pages can shift while new tasks arrive; keep the first copy
                if r.task_id not in seen:
                    seen.add(r.task_id)
                    records.append(r)
            if not has_more:
                break
        else:
            logger.warning("Task list truncated at %d pages", max_pages)
        return records

    # ── Task commands ─────────────────────────────────────────────────

    def cancel_task(self, task_id: str) -> tuple[bool, str]:
        path = API_CANCEL_TASK.format(task_id=task_id)
        payload = self._json(self._request("POST", path), path)
        return bool(payload.get('success')), payload.get('message') or ''

    def delete_task(self, task_id: str) -> tuple[bool, str]:
        path = API_DELETE_TASK.format(task_id=task_id)
        resp = self._request("DELETE", path)
        if resp.status_code == 404:
            return True, "Task already gone"
        payload = self._json(resp, path)
        return bool(payload.get('success')), payload.get('message') or ''

    def download_output(self, task_id: str, dest_dir: Path,
                        file_name: str | None = None) -> Path:
        """Stream a task's output to dest_dir through a .part file."""
        path = API_DOWNLOAD.format(task_id=task_id)
        resp = self._request("GET", path, stream=True)
        try:
            if resp.status_code != 200:
                raise TransportFailure(
                    ErrorCode.SERVER_ERROR if resp.status_code >= 500 else ErrorCode.INVALID_RESPONSE,
                    f"Download of {task_id} returned {resp.status_code}",
                    status_code=resp.status_code,
                )
            name = file_name or _filename_from_headers(resp) or f"{task_id}.out"
            target = safe_output_path(dest_dir, name, task_id)
            target.parent.mkdir(parents=True, exist_ok=True)
            part = target.with_name(target.name + ".part")
            try:
                with open(part, 'wb') as f:
                    for chunk in resp.iter_content(chunk_size=UPLOAD_READ_CHUNK):
                        if chunk:
                            f.write(chunk)
            except requests.exceptions.RequestException as e:
                part.unlink(missing_ok=True)
                raise TransportFailure(ErrorCode.NETWORK_TRANSIENT,
                                       f"Download of {task_id} interrupted: {e}")
            os.replace(part, target)
        finally:
            resp.close()
        logger.info("Downloaded %s -> %s", task_id, target)
        return target


def _filename_from_headers(resp: requests.Response) -> Optional[str]:
    disposition = resp.headers.get('Content-Disposition', '')
    for part in disposition.split(';'):
        part = part.strip()
        if part.lower().startswith('filename='):
            return part.split('=', 1)[1].strip().strip('"') or None
    return None
