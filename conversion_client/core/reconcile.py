"""
Reconciliation of the local task store against the remote task list.

`reconcile_lists` is a pure function over two lists. `ReconciliationEngine`
fetches the remote list, runs the matcher, and repairs identifier drift and
stale statuses in the store.

Matching priority for each remote task, first hit wins:
  1. local.server_task_id == remote.task_id
  2. local.current_task_id == remote.task_id
  3. same file name and size within FUZZY_SIZE_TOLERANCE_BYTES, only for
     local records that never got a server id (lost mapping write) and
     never gave up on this remote task through a retry
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional

from conversion_client.core.constants import (
    TaskStatus, TaskPhase, MatchKind, TERMINAL_STATUSES,
    FUZZY_SIZE_TOLERANCE_BYTES, DEFAULT_PAGE_SIZE,
)
from conversion_client.core.api_client import RemoteApiClient
from conversion_client.core.error_codes import IdentityError, ReconciliationAmbiguity
from conversion_client.core.models import LocalTaskRecord, RemoteTaskRecord, ReconciledTaskView
from conversion_client.core.progress import UnifiedProgressManager
from conversion_client.core.push_channel import PushEventRouter
from conversion_client.core.task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Match:
    remote: RemoteTaskRecord
    local: LocalTaskRecord
    kind: str


@dataclass(frozen=True)
class ReconciliationResult:
    views: tuple[ReconciledTaskView, ...]
    matches: tuple[Match, ...]
    orphans: tuple[LocalTaskRecord, ...]
    ambiguities: tuple[tuple[str, tuple[str, ...]], ...]  # (remote id, candidate local ids)

    def all_views(self) -> list[ReconciledTaskView]:
        """Remote-backed views followed by local-only views for orphans."""
        return list(self.views) + [ReconciledTaskView.from_local(o) for o in self.orphans]


def _sort_key(record: LocalTaskRecord):
    return (record.created_at or '', record.local_id)


def _fuzzy_candidates(remote: RemoteTaskRecord, pool: list[LocalTaskRecord],
                      tolerance: int) -> list[LocalTaskRecord]:
    """Best fuzzy candidates: smallest size difference, earliest first."""
    if remote.original_file_size is None or not remote.original_file_name:
        return []
    scored = []
    for local in pool:
        if local.file_name != remote.original_file_name:
            continue
        diff = abs(local.file_size - remote.original_file_size)
        if diff < tolerance:
            scored.append((diff, _sort_key(local), local))
    if not scored:
        return []
    scored.sort(key=lambda t: (t[0], t[1]))
    best = scored[0][0]
    return [local for diff, _, local in scored if diff == best]


def reconcile_lists(remote_list: list[RemoteTaskRecord],
                    local_list: list[LocalTaskRecord],
                    tolerance: int = FUZZY_SIZE_TOLERANCE_BYTES,
                    no_fuzzy: frozenset[str] = frozenset()) -> ReconciliationResult:
    """
    Pair every remote task with at most one local record. Deterministic for
    the same inputs regardless of local_list order; each local record is
    claimed by at most one remote task. Local ids in `no_fuzzy` (uploads
    still in flight) only take part in exact matching.
    """
    locals_sorted = sorted(local_list, key=_sort_key)
    by_server: dict[str, LocalTaskRecord] = {}
    by_current: dict[str, LocalTaskRecord] = {}
    for local in locals_sorted:
        if local.server_task_id:
            by_server.setdefault(local.server_task_id, local)
        by_current.setdefault(local.current_task_id, local)

    claimed: set[str] = set()
    paired: list[Optional[tuple[LocalTaskRecord, str]]] = [None] * len(remote_list)

    # Exact passes run over the whole list first so a weaker match for one
    # remote task can never take a record another task matches exactly.
    for kind, index in ((MatchKind.SERVER_ID, by_server), (MatchKind.CURRENT_ID, by_current)):
        for i, remote in enumerate(remote_list):
            if paired[i] is not None:
                continue
            local = index.get(remote.task_id)
            if local is not None and local.local_id not in claimed:
                paired[i] = (local, kind)
                claimed.add(local.local_id)

    ambiguities = []
    for i, remote in enumerate(remote_list):
        if paired[i] is not None:
            continue
        pool = [l for l in locals_sorted
                if l.local_id not in claimed and not l.server_task_id
                and l.local_id not in no_fuzzy
                and remote.task_id not in l.superseded]
        candidates = _fuzzy_candidates(remote, pool, tolerance)
        if not candidates:
            continue
        if len(candidates) > 1:
            ambiguity = ReconciliationAmbiguity(remote.task_id, [c.local_id for c in candidates])
            logger.warning("%s; choosing earliest %s", ambiguity.message, candidates[0].local_id)
            ambiguities.append((remote.task_id, tuple(ambiguity.candidate_ids)))
        paired[i] = (candidates[0], MatchKind.FUZZY)
        claimed.add(candidates[0].local_id)

    views = []
    matches = []
    for remote, pair in zip(remote_list, paired):
        if pair is None:
            views.append(ReconciledTaskView.merge(remote))
        else:
            local, kind = pair
            views.append(ReconciledTaskView.merge(remote, local, kind))
            matches.append(Match(remote=remote, local=local, kind=kind))

    orphans = tuple(l for l in locals_sorted if l.local_id not in claimed)
    return ReconciliationResult(
        views=tuple(views),
        matches=tuple(matches),
        orphans=orphans,
        ambiguities=tuple(ambiguities),
    )


class ReconciliationEngine:
    """Fetches the authoritative list and corrects the store against it."""

    def __init__(self, store: TaskStore, api: RemoteApiClient,
                 progress: UnifiedProgressManager, router: PushEventRouter,
                 page_size: int = DEFAULT_PAGE_SIZE,
                 in_flight: Callable[[], set[str]] | None = None):
        self.store = store
        self.in_flight = in_flight
        self.api = api
        self.progress = progress
        self.router = router
        self.page_size = page_size
        self._last_remote: list[RemoteTaskRecord] = []
        self._last_remote_lock = threading.Lock()
        self.last_result: ReconciliationResult | None = None

    @property
    def last_remote(self) -> list[RemoteTaskRecord]:
        with self._last_remote_lock:
            return list(self._last_remote)

    def refresh(self) -> list[ReconciledTaskView]:
        """Fetch every page of the remote list and reconcile. Raises TransportFailure."""
        remote = self.api.fetch_all_tasks(page_size=self.page_size)
        logger.info("Fetched %d remote task(s)", len(remote))
        return self.reconcile(remote)

    def reconcile(self, remote_list: list[RemoteTaskRecord]) -> list[ReconciledTaskView]:
        with self._last_remote_lock:
            self._last_remote = list(remote_list)
        result = reconcile_lists(remote_list, self.store.list_all(),
                                 no_fuzzy=self._in_flight())
        for match in result.matches:
            try:
                self._repair(match)
            except IdentityError as e:
                # Deleted locally mid-pass; the next pass will not see it
                logger.info("Skipping repair: %s", e.message)
        if result.matches:
            # Views reflect the store after repairs, so a repeat pass returns the same list
            repaired = reconcile_lists(remote_list, self.store.list_all(),
                                       no_fuzzy=self._in_flight())
            result = replace(repaired, ambiguities=result.ambiguities)
        if result.orphans:
            logger.debug("%d local-only task(s) not in remote list", len(result.orphans))
        self.last_result = result
        return list(result.views)

    def current_views(self) -> list[ReconciledTaskView]:
        """Views from the last fetched remote list and the current store, no I/O."""
        return reconcile_lists(self.last_remote, self.store.list_all(),
                               no_fuzzy=self._in_flight()).all_views()

    def _in_flight(self) -> frozenset[str]:
        return frozenset(self.in_flight()) if self.in_flight else frozenset()

    # ── Repairs ───────────────────────────────────────────────────────

    def _repair(self, match: Match):
        remote, local = match.remote, match.local

        if local.server_task_id != remote.task_id:
            with self.progress.locks.hold(local.current_task_id, remote.task_id):
                local = self.store.update_identifier_mapping(local.local_id, remote.task_id)
            logger.info("Recovered identifier mapping %s -> %s via %s match",
                        local.local_id, remote.task_id, match.kind)
            self.progress.sync_from_record(local)

        if remote.status in TERMINAL_STATUSES:
            self.router.leave(remote.task_id)
        else:
            self.router.join(remote.task_id)

        self._repair_status(local, remote)

    def _repair_status(self, local: LocalTaskRecord, remote: RemoteTaskRecord):
        task_id = local.current_task_id
        if remote.status in TERMINAL_STATUSES:
            if local.status == remote.status:
                return
            with self.progress.locks.hold(task_id):
                updated = self.store.update_status(
                    task_id, remote.status,
                    error=remote.error_message if remote.status == TaskStatus.FAILED else None,
                    phase=remote.status.lower(),
                )
            logger.info("Task %s status %s corrected to remote %s",
                        task_id, local.status, remote.status)
            self.progress.sync_from_record(updated)
            return

        if local.status == TaskStatus.CANCELLED:
            # Optimistic local cancel that the service did not honour
            phase = TaskPhase.CONVERTING if remote.status == TaskStatus.CONVERTING \
                else TaskPhase.UPLOAD_COMPLETED
            with self.progress.locks.hold(task_id):
                updated = self.store.update_progress(
                    task_id, remote.progress, phase, status=remote.status,
                )
            logger.warning("Cancellation of %s was not applied remotely; now %s",
                           task_id, remote.status)
            self.progress.sync_from_record(updated, message="Cancellation rejected by server")
            return

        if local.status in TERMINAL_STATUSES:
            return

        if remote.status == TaskStatus.CONVERTING:
            # Forward-only; the state machine ignores it if the push channel is ahead
            self.progress.update_progress(task_id, remote.progress, TaskPhase.CONVERTING)
