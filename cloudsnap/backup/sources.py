"""
Local file discovery for backups.

Supports:
- Folder scanning (regular files only, optional hidden-file skipping)
- Explicitly included single files
- Size and exclude-glob filtering
- Relative path resolution against scan roots
- Cloud placeholder handling through a Materializer
"""

import os
import sys
import stat
import time
import shutil
import logging
import threading
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import List, Optional, Iterable

from cloudsnap.config import AppConfig, FiltersConfig, ConfigError


logger = logging.getLogger(__name__)

# st_flags bit for files whose content is not on local disk (macOS)
SF_DATALESS = 0x40000000
MATERIALIZE_POLL_SECONDS = 0.5
GLOB_META = ('*', '?', '[')


class SourceError(Exception):
    """Raised when source acquisition fails."""
    pass


@dataclass
class FileItem:
    """A file found by scanning."""
    path: str
    size: Optional[int]
    modification_time: Optional[datetime]
    is_local: bool = True
    scan_root: Optional[str] = None


def is_dataless(st: os.stat_result) -> bool:
    return bool(getattr(st, 'st_flags', 0) & SF_DATALESS)


def _is_hidden(name: str) -> bool:
    return name.startswith('.')


def _item_from_stat(path: str, st: os.stat_result, scan_root: Optional[str]) -> FileItem:
    return FileItem(
        path=path,
        size=st.st_size,
        modification_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        is_local=not is_dataless(st),
        scan_root=scan_root,
    )


def scan_folder(root: str, exclude_hidden: bool = True) -> List[FileItem]:
    """
    Recursively list regular files under root.

    Symlinks are not followed. Unreadable entries are logged and skipped.

    Args:
        root: Folder to scan
        exclude_hidden: Skip files and folders whose name starts with '.'

    Returns:
        List of FileItem
    """
    root = os.path.abspath(os.path.expanduser(root))
    items = []

    if not os.path.isdir(root):
        logger.warning(f"Folder not found, skipping: {root}")
        return items

    def on_error(error):
        logger.warning(f"Cannot read {error.filename}: {error.strerror}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        if exclude_hidden:
            dirnames[:] = [d for d in dirnames if not _is_hidden(d)]
        dirnames.sort()

        for name in sorted(filenames):
            if exclude_hidden and _is_hidden(name):
                continue
            path = os.path.join(dirpath, name)
            try:
                st = os.lstat(path)
            except OSError as e:
                logger.warning(f"Cannot stat {path}: {e}")
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            items.append(_item_from_stat(path, st, root))

    return items


def scan_file(path: str) -> Optional[FileItem]:
    """Stat a single included file; None if it is missing or not regular."""
    path = os.path.abspath(os.path.expanduser(path))
    try:
        st = os.stat(path)
    except OSError:
        logger.warning(f"Included file not found, skipping: {path}")
        return None
    if not stat.S_ISREG(st.st_mode):
        logger.warning(f"Included path is not a regular file, skipping: {path}")
        return None
    return _item_from_stat(path, st, None)


def matches_exclude_glob(path: str, raw_pattern: str) -> bool:
    """
    Check one exclude pattern against an absolute path.

    - '~' expands to the home directory
    - 'dir/**' and 'dir/' exclude everything below dir
    - patterns without glob characters match the exact path or anything below it
    - anything else is a case-insensitive glob where '*' also matches '/'
    """
    pattern = os.path.expanduser(raw_pattern)

    if pattern.endswith('/**'):
        base = pattern[:-3].rstrip('/')
        return path.startswith(base + '/')

    if pattern.endswith('/'):
        base = os.path.normpath(pattern)
        return path.startswith(base.rstrip('/') + '/')

    pattern = os.path.normpath(pattern)

    if not any(meta in pattern for meta in GLOB_META):
        return path == pattern or path.startswith(pattern + '/')

    return fnmatchcase(path.lower(), pattern.lower())


def should_exclude(path: str, patterns: Iterable[str]) -> bool:
    return any(matches_exclude_glob(path, pattern) for pattern in patterns)


def apply_filters(items: List[FileItem], filters: Optional[FiltersConfig]) -> List[FileItem]:
    """
    Apply size limits and exclude globs.

    Files of unknown size count as 0 bytes for the size limits.
    """
    if filters is None:
        return list(items)

    result = list(items)
    if filters.min_size_bytes is not None:
        result = [i for i in result if (i.size or 0) >= filters.min_size_bytes]
    if filters.max_size_bytes is not None:
        result = [i for i in result if (i.size or 0) <= filters.max_size_bytes]
    if filters.exclude_globs:
        result = [i for i in result if not should_exclude(i.path, filters.exclude_globs)]
    return result


def scan_roots(config: AppConfig) -> List[str]:
    """
    Folders to scan from the include section.

    Raises:
        ConfigError: If neither folders nor files are configured
    """
    if not config.include.folders and not config.include.files:
        raise ConfigError("Nothing to back up: include.folders and include.files are both empty")
    return [os.path.abspath(os.path.expanduser(f)) for f in config.include.folders]


def collect_files(config: AppConfig) -> List[FileItem]:
    """Scan every configured folder and file, then apply filters."""
    items = []
    seen = set()

    for root in scan_roots(config):
        for item in scan_folder(root, config.filters.exclude_hidden):
            if item.path not in seen:
                seen.add(item.path)
                items.append(item)

    for path in config.include.files:
        item = scan_file(path)
        if item and item.path not in seen:
            seen.add(item.path)
            items.append(item)

    filtered = apply_filters(items, config.filters)
    logger.info(f"Scanned {len(items)} files, {len(filtered)} after filters")
    return filtered


def relative_path(path: str, roots: Iterable[str]) -> str:
    """
    Path used as the manifest key for a local file.

    Relative to the first scan root that contains it, else relative to the
    home directory, else just the file name.
    """
    path = os.path.abspath(path)

    for root in roots:
        root = os.path.abspath(os.path.expanduser(root)).rstrip(os.sep)
        if path.startswith(root + os.sep):
            return path[len(root) + 1:].replace(os.sep, '/')

    home = os.path.expanduser('~').rstrip(os.sep)
    if path.startswith(home + os.sep):
        return path[len(home) + 1:].replace(os.sep, '/')

    return os.path.basename(path)


class Materializer:
    """
    Makes cloud-synced placeholder files readable and evicts them again.

    The default implementation treats macOS dataless files as off-disk and
    uses `brctl` when it is available.
    """

    def __init__(self, poll_interval: float = MATERIALIZE_POLL_SECONDS):
        self.poll_interval = poll_interval

    def is_local(self, path: str) -> bool:
        try:
            return not is_dataless(os.stat(path))
        except OSError:
            return False

    def ensure_local(self, path: str):
        """Start materializing path without blocking."""
        if sys.platform == 'darwin' and shutil.which('brctl'):
            try:
                subprocess.Popen(['brctl', 'download', path],
                                 stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
                return
            except OSError as e:
                logger.debug(f"brctl download failed for {path}: {e}")

        # Reading the file triggers a download on file providers
        def touch():
            try:
                with open(path, 'rb') as f:
                    f.read(1)
            except OSError as e:
                logger.debug(f"Materialization read failed for {path}: {e}")

        threading.Thread(target=touch, daemon=True).start()

    def wait_until_local(self, path: str, timeout: float, shutdown=None) -> bool:
        """
        Poll until path is local or timeout elapses.

        Args:
            path: File to wait for
            timeout: Seconds to wait
            shutdown: Optional ShutdownToken that cancels the wait

        Returns:
            True if the file is now local
        """
        waited = 0.0
        while waited < timeout:
            if self.is_local(path):
                return True
            if shutdown is not None:
                if shutdown.wait(self.poll_interval):
                    return False
            else:
                time.sleep(self.poll_interval)
            waited += self.poll_interval
        return self.is_local(path)

    def evict(self, path: str):
        """Release the local copy of a file that was off-disk before backup."""
        if sys.platform != 'darwin' or not shutil.which('brctl'):
            return
        try:
            subprocess.run(['brctl', 'evict', path], check=True, capture_output=True, timeout=60)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Failed to evict {path}: {e}")
