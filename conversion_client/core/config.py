"""
Application configuration manager.
Stores settings in a JSON file under the application support directory.
"""

import json
import logging
from pathlib import Path

from conversion_client.core.constants import (
    CONFIG_PATH, DEFAULT_SERVER_URL, DEFAULT_DOWNLOAD_DIR, DEFAULT_ARCHIVE_DIR,
    DEFAULT_REQUEST_TIMEOUT_SEC, DEFAULT_SUBMIT_TIMEOUT_SEC,
    DEFAULT_REFRESH_INTERVAL_SEC, DEFAULT_PAGE_SIZE, DEFAULT_MAX_RETRIES,
    SourceFileAction, SOURCE_FILE_ACTIONS,
)

logger = logging.getLogger(__name__)

# Validation bounds: key -> (type, min, max)
_BOUNDS = {
    'request_timeout_sec': (float, 1, 600),
    'submit_timeout_sec': (float, 1, 86400),
    'refresh_interval_sec': (float, 5, 3600),
    'page_size': (int, 1, 500),
    'max_retries': (int, 0, 10),
}

_DEFAULTS = {
    'server_url': DEFAULT_SERVER_URL,
    'download_dir': str(DEFAULT_DOWNLOAD_DIR),
    'archive_dir': str(DEFAULT_ARCHIVE_DIR),
    'request_timeout_sec': DEFAULT_REQUEST_TIMEOUT_SEC,
    'submit_timeout_sec': DEFAULT_SUBMIT_TIMEOUT_SEC,
    'refresh_interval_sec': DEFAULT_REFRESH_INTERVAL_SEC,
    'page_size': DEFAULT_PAGE_SIZE,
    'max_retries': DEFAULT_MAX_RETRIES,
    'source_file_action': SourceFileAction.KEEP,
    'sweep_after_refresh': True,
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)
                return
            if not isinstance(saved, dict):
                logger.warning("Ignoring config file %s: not a JSON object", self.path)
                return
            for key, value in saved.items():
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def override(self, key: str, value):
        """Set a value for this process only, without writing it to disk."""
        self._data[key] = self._validate(key, value)

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _BOUNDS:
            kind, lo, hi = _BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key == 'server_url':
            value = str(value or '').strip().rstrip('/')
            if not value:
                logger.warning("Empty server_url — using default")
                return DEFAULT_SERVER_URL
            return value

        if key == 'source_file_action':
            if value not in SOURCE_FILE_ACTIONS:
                logger.warning("Invalid source_file_action %r — using keep", value)
                return SourceFileAction.KEEP

        if key == 'sweep_after_refresh':
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def server_url(self) -> str:
        return self._data.get('server_url', DEFAULT_SERVER_URL)

    @server_url.setter
    def server_url(self, value: str):
        self.set('server_url', value)

    @property
    def download_dir(self) -> Path:
        return Path(self._data.get('download_dir', str(DEFAULT_DOWNLOAD_DIR)))

    @property
    def archive_dir(self) -> Path:
        return Path(self._data.get('archive_dir', str(DEFAULT_ARCHIVE_DIR)))

    @property
    def max_retries(self) -> int:
        return self._data.get('max_retries', DEFAULT_MAX_RETRIES)

    @property
    def source_file_action(self) -> str:
        return self._data.get('source_file_action', SourceFileAction.KEEP)
