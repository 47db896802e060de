"""
Path safety for files written by ConversionClient.
- Filename sanitization for server-provided output names
- Path traversal protection for download targets
"""

import re
import pathlib
import logging

from conversion_client.core.constants import UNSAFE_FILENAME_CHARS, MAX_FILENAME_LEN

logger = logging.getLogger(__name__)


def sanitize_filename(name: str) -> str:
    """Sanitize a server-provided file name for local use."""
    if not name:
        return ""
    # Only the final component of whatever path the server sent
    name = re.split(r'[/\\]', name)[-1]
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', name)
    safe = safe.replace('..', '')
    safe = re.sub(r'[_\s]+', ' ', safe).strip()
    if len(safe) > MAX_FILENAME_LEN:
        stem, dot, ext = safe.rpartition('.')
        if dot and len(ext) <= 10:
            safe = stem[:MAX_FILENAME_LEN - len(ext) - 1].rstrip() + '.' + ext
        else:
            safe = safe[:MAX_FILENAME_LEN].rstrip()
    # Leading dots would make hidden files
    safe = safe.lstrip('.')
    return safe if safe else ""


def safe_output_path(output_root: pathlib.Path, name: str, task_id: str) -> pathlib.Path:
    """
    Build a download target inside output_root.  Enforces that
    realpath(result) is under realpath(output_root).  Falls back to
    'task_<task_id>' on failure.
    """
    sanitized = sanitize_filename(name)
    if not sanitized:
        sanitized = f"task_{task_id}"

    candidate = output_root / sanitized
    real_root = output_root.resolve(strict=False)
    real_candidate = candidate.resolve(strict=False)
    if real_root != real_candidate.parent:
        logger.warning("Rejected output name %r for task %s", name, task_id)
        candidate = output_root / f"task_{sanitize_filename(task_id) or 'output'}"

    return candidate
