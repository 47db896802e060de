"""
Source file post-processing after a converted output has been downloaded.
"""

import shutil
import logging
from pathlib import Path

from conversion_client.core.constants import SourceFileAction
from conversion_client.core.task_store import TaskStore
from conversion_client.core.models import LocalTaskRecord

logger = logging.getLogger(__name__)


def _unique_target(directory: Path, name: str) -> Path:
    target = directory / name
    stem, suffix = target.stem, target.suffix
    n = 1
    while target.exists():
        target = directory / f"{stem} ({n}){suffix}"
        n += 1
    return target


def process_source_file(store: TaskStore, record: LocalTaskRecord, action: str,
                        archive_dir: Path | None = None) -> bool:
    """
    Apply `action` to the record's original input file and record the outcome.
    Returns False (source untouched, nothing recorded) on failure.
    """
    if record.source_file_processed:
        return True

    source = Path(record.file_path)
    archive_path = None

    if action == SourceFileAction.DELETE:
        try:
            source.unlink(missing_ok=True)
            logger.debug("Deleted source: %s", source)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", source, e)
            return False

    elif action == SourceFileAction.ARCHIVE:
        if archive_dir is None:
            logger.warning("No archive directory configured; keeping %s", source)
            return False
        if not source.exists():
            logger.warning("Source already gone, nothing to archive: %s", source)
        else:
            try:
                archive_dir.mkdir(parents=True, exist_ok=True)
                target = _unique_target(archive_dir, source.name)
                shutil.move(str(source), str(target))
                archive_path = str(target)
                logger.debug("Archived %s -> %s", source, target)
            except OSError as e:
                logger.warning("Failed to archive %s: %s", source, e)
                return False

    store.update_source_processing(record.local_id, action, archive_path)
    return True
