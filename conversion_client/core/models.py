"""
Data models (plain dataclasses) for ConversionClient.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from conversion_client.core.constants import (
    TaskStatus, TaskPhase, RemoteStatus, REMOTE_STATUS_TO_TASK_STATUS,
    DEFAULT_MAX_RETRIES,
)


@dataclass(frozen=True)
class FileDescriptor:
    path: str
    name: str
    size: int

    @classmethod
    def from_path(cls, path: str | Path) -> "FileDescriptor":
        p = Path(path)
        return cls(path=str(p), name=p.name, size=os.path.getsize(p))


@dataclass
class LocalTaskRecord:
    local_id: str                     # UUID, primary key, never changes
    current_task_id: str              # local_id until the server id is known
    file_path: str
    file_name: str
    file_size: int = 0
    params: str = "{}"                # opaque conversion parameter snapshot
    server_task_id: Optional[str] = None
    batch_id: Optional[str] = None
    status: str = TaskStatus.PENDING
    phase: str = TaskPhase.PENDING
    progress: int = 0
    speed: Optional[float] = None
    eta_sec: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    server_created_at: Optional[str] = None
    completed_at: Optional[str] = None
    downloaded_at: Optional[str] = None
    is_downloaded: bool = False
    local_output_path: Optional[str] = None
    source_file_processed: bool = False
    source_file_action: Optional[str] = None
    archive_path: Optional[str] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    last_error: Optional[str] = None
    superseded_ids: Optional[str] = None   # comma-separated server ids given up on by retries

    @property
    def is_mapped(self) -> bool:
        return self.server_task_id is not None

    @property
    def superseded(self) -> set[str]:
        return {s for s in (self.superseded_ids or "").split(",") if s}


@dataclass(frozen=True)
class RemoteTaskRecord:
    """One entry of the remote service's authoritative task list."""
    task_id: str
    task_name: str
    original_file_name: str
    original_file_size: Optional[int] = None
    status: str = TaskStatus.PENDING
    progress: int = 0
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output_file_name: Optional[str] = None
    output_file_size: Optional[int] = None
    error_message: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "RemoteTaskRecord":
        raw_status = data.get('status', RemoteStatus.PENDING)
        if isinstance(raw_status, str) and not raw_status.isdigit():
            # Some endpoints send the enum name instead of its value
            status = raw_status.capitalize()
            if status not in REMOTE_STATUS_TO_TASK_STATUS.values():
                status = TaskStatus.PENDING
        else:
            status = REMOTE_STATUS_TO_TASK_STATUS.get(int(raw_status), TaskStatus.PENDING)

        size = data.get('originalFileSize')
        out_size = data.get('outputFileSize')
        return cls(
            task_id=str(data['id']),
            task_name=data.get('taskName') or '',
            original_file_name=data.get('originalFileName') or '',
            original_file_size=int(size) if size is not None else None,
            status=status,
            progress=max(0, min(100, int(data.get('progress') or 0))),
            created_at=data.get('createdAt'),
            started_at=data.get('startedAt'),
            completed_at=data.get('completedAt'),
            output_file_name=data.get('outputFileName'),
            output_file_size=int(out_size) if out_size is not None else None,
            error_message=data.get('errorMessage') or None,
        )


@dataclass(frozen=True)
class ReconciledTaskView:
    """Remote authoritative fields merged with a matched local record."""
    task_id: str
    task_name: str
    file_name: str
    file_size: Optional[int]
    status: str
    progress: int
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output_file_name: Optional[str] = None
    output_file_size: Optional[int] = None
    error_message: Optional[str] = None
    # local-only fields
    local_id: Optional[str] = None
    match_kind: Optional[str] = field(default=None, compare=False)
    is_downloaded: bool = False
    local_output_path: Optional[str] = None
    retry_count: int = 0
    local_error: Optional[str] = None
    remote_known: bool = True

    @classmethod
    def merge(cls, remote: RemoteTaskRecord, local: LocalTaskRecord | None = None,
              match_kind: str | None = None) -> "ReconciledTaskView":
        return cls(
            task_id=remote.task_id,
            task_name=remote.task_name,
            file_name=remote.original_file_name,
            file_size=remote.original_file_size,
            status=remote.status,
            progress=remote.progress,
            created_at=remote.created_at,
            started_at=remote.started_at,
            completed_at=remote.completed_at,
            output_file_name=remote.output_file_name,
            output_file_size=remote.output_file_size,
            error_message=remote.error_message,
            local_id=local.local_id if local else None,
            match_kind=match_kind if local else None,
            is_downloaded=local.is_downloaded if local else False,
            local_output_path=local.local_output_path if local else None,
            retry_count=local.retry_count if local else 0,
            local_error=local.last_error if local else None,
        )

    @classmethod
    def from_local(cls, local: LocalTaskRecord) -> "ReconciledTaskView":
        """View for a local record the remote list does not reference."""
        return cls(
            task_id=local.current_task_id,
            task_name=local.file_name,
            file_name=local.file_name,
            file_size=local.file_size,
            status=local.status,
            progress=local.progress,
            created_at=local.created_at,
            completed_at=local.completed_at,
            local_id=local.local_id,
            is_downloaded=local.is_downloaded,
            local_output_path=local.local_output_path,
            retry_count=local.retry_count,
            local_error=local.last_error,
            remote_known=False,
        )


@dataclass
class SubmissionResult:
    success: bool
    server_task_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class ProgressSnapshot:
    """Change notification published by the progress manager."""
    current_task_id: str
    local_id: str
    state: str
    percent: float
    phase: str
    speed: Optional[float] = None
    eta: Optional[float] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class BatchProgress:
    batch_id: str
    overall_percent: float
    completed_count: int
    total_count: int
    current_file: Optional[str] = None
    current_file_progress: float = 0.0


@dataclass
class SweepResult:
    checked: int = 0
    missing: int = 0
    missing_ids: list[str] = field(default_factory=list)
