"""
Local file integrity sweep: records marked downloaded whose output file is
gone get their download flags cleared.
"""

import logging
import os
import threading

from conversion_client.core.error_codes import IdentityError, IntegrityMismatch
from conversion_client.core.models import SweepResult
from conversion_client.core.progress import UnifiedProgressManager
from conversion_client.core.task_store import TaskStore

logger = logging.getLogger(__name__)


class IntegrityChecker:
    def __init__(self, store: TaskStore, progress: UnifiedProgressManager | None = None):
        self.store = store
        self.progress = progress
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def sweep(self) -> SweepResult | None:
        """
        Check every downloaded record once. Returns None without doing
        anything when another sweep is already in progress.
        """
        if not self._running.acquire(blocking=False):
            logger.debug("Integrity sweep already running; trigger dropped")
            return None
        try:
            return self._sweep()
        finally:
            self._running.release()

    def _sweep(self) -> SweepResult:
        result = SweepResult()
        for record in self.store.list_downloaded():
            result.checked += 1
            path = record.local_output_path
            if path and os.path.exists(path):
                continue

            mismatch = IntegrityMismatch(record.current_task_id, path or '')
            try:
                updated = self.store.clear_download_state(record.current_task_id)
            except IdentityError:
                # Removed or remapped since the listing; nothing left to fix here
                continue
            result.missing += 1
            result.missing_ids.append(record.local_id)
            logger.info("%s; download flag cleared", mismatch.message)
            if self.progress is not None:
                self.progress.sync_from_record(updated, message="Downloaded file missing")

        logger.info("Integrity sweep: %d checked, %d missing", result.checked, result.missing)
        return result

    def sweep_in_background(self) -> threading.Thread | None:
        if self.is_running:
            logger.debug("Integrity sweep already running; trigger dropped")
            return None
        t = threading.Thread(target=self._safe_sweep, name="integrity-sweep", daemon=True)
        t.start()
        return t

    def _safe_sweep(self):
        try:
            self.sweep()
        except Exception:
            logger.exception("Integrity sweep failed")
