"""
Restore executor - brings files from a snapshot back to disk.

Workflow:
1. Pick the snapshot (explicit timestamp, or interactive choice)
2. Filter its files by path
3. Prepare the output directory and check free space
4. Confirm restoring over original locations and existing files
5. Stream each file to disk (decrypting if needed) and restore its mtime
"""

import os
import shutil
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable

from cloudsnap.config import AppConfig
from cloudsnap.models import FileVersion, FileConflict, SnapshotManifest, RemoteLayout
from cloudsnap.utils.crypto import EncryptionError
from cloudsnap.utils.notifications import Notifier, NullNotifier
from cloudsnap.utils.progress import ProgressTracker, format_bytes
from cloudsnap.utils.shutdown import ShutdownToken
from .snapshots import SnapshotStore
from .storage import StorageError


logger = logging.getLogger(__name__)

MAX_LISTED_SNAPSHOTS = 10
MAX_LISTED_CONFLICTS = 10


class RestoreError(Exception):
    """Raised when a restore cannot proceed."""
    pass


class NoSnapshotsFoundError(RestoreError):
    def __init__(self):
        super().__init__("No snapshots found in backup")


class InvalidSnapshotError(RestoreError):
    def __init__(self, timestamp: str):
        super().__init__(f"Invalid snapshot: {timestamp}")
        self.timestamp = timestamp


class InvalidSelectionError(RestoreError):
    def __init__(self):
        super().__init__("Invalid selection")


class PathNotFoundError(RestoreError):
    def __init__(self, path: str):
        super().__init__(f"Path not found in snapshot: {path}")
        self.path = path


class RestoreCancelledError(RestoreError):
    def __init__(self):
        super().__init__("Restore cancelled by user")


class DownloadFailedError(RestoreError):
    def __init__(self, path: str, reason):
        super().__init__(f"Failed to download {path}: {reason}")
        self.path = path


class WriteFailedError(RestoreError):
    def __init__(self, path: str, reason):
        super().__init__(f"Failed to write {path}: {reason}")
        self.path = path


class DestinationNotWritableError(RestoreError):
    def __init__(self, path: str):
        super().__init__(f"Destination not writable: {path}")
        self.path = path


class InsufficientDiskSpaceError(RestoreError):
    def __init__(self, needed: int):
        super().__init__(f"Insufficient disk space (need {format_bytes(needed)})")
        self.needed = needed


class IntegrityCheckFailedError(RestoreError):
    def __init__(self, path: str):
        super().__init__(f"Integrity check failed: {path}")
        self.path = path


@dataclass
class RestoreOptions:
    snapshot_timestamp: Optional[str] = None
    paths: List[str] = field(default_factory=list)
    output_dir: Optional[str] = None
    force: bool = False
    list_snapshots: bool = False
    dry_run: bool = False


@dataclass
class RestoreResult:
    """Outcome of one restore run."""
    timestamp: Optional[str] = None
    output_dir: Optional[str] = None
    restored: int = 0
    failed: int = 0
    skipped: int = 0
    skipped_encrypted: int = 0
    restored_bytes: int = 0
    planned: int = 0
    planned_bytes: int = 0
    conflicts: List[FileConflict] = field(default_factory=list)
    interrupted: bool = False
    dry_run: bool = False
    logs: List[str] = field(default_factory=list)


def filter_files_to_restore(manifest: SnapshotManifest, filters: List[str]) -> List[FileVersion]:
    """
    Select manifest entries matching any filter.

    A filter matches a path that equals it, lies below it, starts with the
    same path components, or contains it as a whole segment sequence.
    A trailing '/' on a filter is ignored. No filters selects everything.
    """
    if not filters:
        return list(manifest.files)

    normalized = [f[:-1] if f.endswith('/') else f for f in filters]
    normalized = [f for f in normalized if f]

    def matches(path: str, flt: str) -> bool:
        if path == flt or path.startswith(flt + '/'):
            return True
        path_parts = path.split('/')
        filter_parts = flt.split('/')
        if len(filter_parts) <= len(path_parts) and path_parts[:len(filter_parts)] == filter_parts:
            return True
        return f"/{flt}/" in path

    return [f for f in manifest.files if any(matches(f.path, flt) for flt in normalized)]


def local_path_for(output_dir: str, relative_path: str) -> str:
    """
    Destination path of a restored file.

    Raises:
        WriteFailedError: If the relative path escapes the output directory
    """
    root = os.path.abspath(output_dir)
    destination = os.path.abspath(os.path.join(root, *relative_path.split('/')))
    if destination != root and not destination.startswith(root.rstrip(os.sep) + os.sep):
        raise WriteFailedError(relative_path, "path escapes the output directory")
    return destination


def check_for_conflicts(files: List[FileVersion], output_dir: str) -> List[FileConflict]:
    """Files that already exist under output_dir."""
    conflicts = []
    for version in files:
        try:
            existing = local_path_for(output_dir, version.path)
        except WriteFailedError:
            continue
        if not os.path.lexists(existing):
            continue
        try:
            st = os.stat(existing)
            existing_size = st.st_size
            existing_mtime = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
        except OSError:
            existing_size = None
            existing_mtime = None
        conflicts.append(FileConflict(
            relative_path=version.path,
            existing_path=existing,
            existing_size=existing_size,
            existing_mtime=existing_mtime,
            restore_size=version.size,
            restore_mtime=version.modification_time,
        ))
    return conflicts


def format_relative_time(date: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    seconds = (now - date).total_seconds()
    hours = int(seconds / 3600)
    days = int(seconds / 86400)

    if hours < 1:
        return "just now"
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    if days < 7:
        return f"{days} day{'s' if days != 1 else ''} ago"
    if days < 30:
        weeks = days // 7
        return f"{weeks} week{'s' if weeks != 1 else ''} ago"
    months = days // 30
    return f"{months} month{'s' if months != 1 else ''} ago"


class RestoreExecutor:
    """
    Restores files from one snapshot.

    Interactive decisions (snapshot choice, overwrite confirmation) go
    through the `prompt` callable so they can be scripted.
    """

    def __init__(self, config: AppConfig, storage, encryption=None,
                 prompt: Optional[Callable[[str], str]] = None,
                 output: Optional[Callable[[str], None]] = None,
                 notifier: Optional[Notifier] = None,
                 shutdown: Optional[ShutdownToken] = None):
        """
        Initialize restore executor.

        Args:
            config: Application config
            storage: B2Storage (or compatible) client
            encryption: EncryptionManager, or None when no key is configured
            prompt: Reads one line of user input (default: input)
            output: Writes one line for the user (default: print)
            notifier: Run notification sink
            shutdown: Token polled between files
        """
        self.config = config
        self.storage = storage
        self.encryption = encryption
        self.prompt = prompt or input
        self.output = output or print
        self.notifier = notifier or NullNotifier()
        self.shutdown = shutdown or ShutdownToken()

        self.layout = RemoteLayout(config.remote_prefix)
        self.snapshots = SnapshotStore(storage, self.layout, encryption)
        self.progress = ProgressTracker(label='Restore')
        self.logs = []

    # -- Snapshot selection ------------------------------------------------

    def list_snapshots(self, paths: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        Describe every snapshot, newest first.

        Args:
            paths: Only include snapshots with files matching these filters

        Returns:
            List of dicts: timestamp, date, files, bytes (matching files only
            when paths are given)
        """
        described = []
        for info in reversed(self.snapshots.list_snapshots()):
            manifest = self.snapshots.try_fetch_manifest(info.timestamp)
            if manifest is None:
                continue
            files = filter_files_to_restore(manifest, paths or [])
            if paths and not files:
                continue
            described.append({
                'timestamp': info.timestamp,
                'date': info.date,
                'files': len(files),
                'bytes': sum(f.size for f in files),
            })
        return described

    def _fetch_snapshot(self, timestamp: str) -> SnapshotManifest:
        try:
            return self.snapshots.fetch_manifest(timestamp)
        except (StorageError, EncryptionError) as e:
            logger.debug(f"Manifest {timestamp} unavailable: {e}")
            raise InvalidSnapshotError(timestamp)

    def _select_interactively(self) -> SnapshotManifest:
        snapshots = list(reversed(self.snapshots.list_snapshots()))
        if not snapshots:
            raise NoSnapshotsFoundError()

        shown = snapshots[:MAX_LISTED_SNAPSHOTS]
        self.output("Available snapshots:")
        for number, info in enumerate(shown, start=1):
            manifest = self.snapshots.try_fetch_manifest(info.timestamp)
            if manifest is None:
                details = "manifest unavailable"
            else:
                details = f"Files: {manifest.total_files} | Size: {format_bytes(manifest.total_bytes)}"
            self.output(f"  {number}. {info.timestamp}  {details} | {format_relative_time(info.date)}")
        if len(snapshots) > len(shown):
            self.output(f"  ... and {len(snapshots) - len(shown)} more snapshots")

        answer = (self.prompt(f"Select snapshot number (1-{len(shown)}), or 'latest': ") or '').strip().lower()
        if answer == 'latest':
            selected = snapshots[0]
        elif answer.isdigit() and 1 <= int(answer) <= len(shown):
            selected = shown[int(answer) - 1]
        else:
            raise InvalidSelectionError()

        self._log(f"Selected snapshot {selected.timestamp}")
        return self._fetch_snapshot(selected.timestamp)

    def select_snapshot(self, timestamp: Optional[str] = None) -> SnapshotManifest:
        """
        Load the snapshot to restore.

        Raises:
            InvalidSnapshotError: If an explicit timestamp has no readable manifest
            NoSnapshotsFoundError: If the backup holds no snapshots
            InvalidSelectionError: If the interactive answer is not valid
        """
        if timestamp:
            return self._fetch_snapshot(timestamp)
        return self._select_interactively()

    # -- Preparation -------------------------------------------------------

    def _prepare_output_dir(self, options: RestoreOptions) -> str:
        output_dir = os.path.abspath(os.path.expanduser(options.output_dir or '~'))

        if os.path.exists(output_dir):
            if not os.path.isdir(output_dir):
                raise DestinationNotWritableError(output_dir)
        elif not options.dry_run:
            try:
                os.makedirs(output_dir, exist_ok=True)
                self._log(f"Created output directory: {output_dir}")
            except OSError as e:
                logger.debug(f"Cannot create {output_dir}: {e}")
                raise DestinationNotWritableError(output_dir)

        if os.path.exists(output_dir) and not os.access(output_dir, os.W_OK):
            raise DestinationNotWritableError(output_dir)
        return output_dir

    def _check_disk_space(self, output_dir: str, needed: int):
        free = shutil.disk_usage(output_dir).free
        if free < needed:
            raise InsufficientDiskSpaceError(needed)

    def _confirm_original_location(self):
        self.output("Warning: restoring to the home directory may overwrite your current files.")
        self.output("Use --output <directory> to restore somewhere else.")
        answer = (self.prompt("Continue (c) or cancel (s)? ") or '').strip().lower()
        if answer in ('c', 'continue'):
            return
        if answer in ('s', 'skip', 'cancel'):
            raise RestoreCancelledError()
        raise InvalidSelectionError()

    def _confirm_overwrite(self, conflicts: List[FileConflict]):
        self.output(f"Warning: {len(conflicts)} file(s) will be overwritten:")
        for conflict in conflicts[:MAX_LISTED_CONFLICTS]:
            existing = format_bytes(conflict.existing_size) if conflict.existing_size is not None else 'unknown'
            self.output(f"  {conflict.relative_path}  {existing} -> {format_bytes(conflict.restore_size)}")
        if len(conflicts) > MAX_LISTED_CONFLICTS:
            self.output(f"  ... and {len(conflicts) - MAX_LISTED_CONFLICTS} more")

        answer = (self.prompt("Overwrite all (o) or skip all and cancel (s)? ") or '').strip().lower()
        if answer in ('o', 'overwrite'):
            return
        if answer in ('s', 'skip', 'cancel'):
            raise RestoreCancelledError()
        raise InvalidSelectionError()

    # -- Execution ---------------------------------------------------------

    def execute(self, options: RestoreOptions) -> RestoreResult:
        """
        Run the restore.

        Returns:
            RestoreResult

        Raises:
            RestoreError: If the restore cannot start or is cancelled
        """
        result = RestoreResult(dry_run=options.dry_run, logs=self.logs)
        self._log("Starting restore" + (" (dry run)" if options.dry_run else ""))

        try:
            self._execute_workflow(options, result)
        except RestoreCancelledError:
            self._log("Restore cancelled")
            raise
        except Exception as e:
            self._log(f"Restore failed: {e}")
            if not options.dry_run:
                self.notifier.notify_failure('Restore', str(e))
            raise

        if options.dry_run or result.planned == 0:
            return result

        details = f"{result.restored} restored, {result.failed} failed, {result.skipped} skipped"
        if result.failed or result.skipped_encrypted or result.interrupted:
            self.notifier.notify_warning('Restore', details)
        else:
            self.notifier.notify_success('Restore', details)
        return result

    def _execute_workflow(self, options: RestoreOptions, result: RestoreResult):
        manifest = self.select_snapshot(options.snapshot_timestamp)
        result.timestamp = manifest.timestamp
        self._log(f"Snapshot {manifest.timestamp}: {manifest.total_files} files")

        files = filter_files_to_restore(manifest, options.paths)
        if options.paths and not files:
            raise PathNotFoundError(', '.join(options.paths))
        if not files:
            self._log("No files to restore")
            return

        total_bytes = sum(f.size for f in files)
        result.planned = len(files)
        result.planned_bytes = total_bytes
        self._log(f"Files to restore: {len(files)} ({format_bytes(total_bytes)})")

        output_dir = self._prepare_output_dir(options)
        result.output_dir = output_dir
        self._log(f"Restore location: {output_dir}")

        if not options.dry_run:
            self._check_disk_space(output_dir, total_bytes)
            if options.output_dir is None and not options.force:
                self._confirm_original_location()

        conflicts = check_for_conflicts(files, output_dir)
        result.conflicts = conflicts
        if conflicts:
            self._log(f"Conflicts: {len(conflicts)} files already exist")
            if options.dry_run:
                for conflict in conflicts[:MAX_LISTED_CONFLICTS]:
                    self._log(f"Would overwrite: {conflict.relative_path}")
            elif not options.force:
                self._confirm_overwrite(conflicts)

        if options.dry_run:
            for version in files:
                self._log(f"Would restore: {version.path} ({format_bytes(version.size)})")
            return

        self._download_files(files, output_dir, result)

    def _download_files(self, files: List[FileVersion], output_dir: str, result: RestoreResult):
        self.progress.start(len(files), sum(f.size for f in files))

        for version in files:
            if self.shutdown.requested:
                self._log("Shutdown requested, stopping restore")
                result.interrupted = True
                break

            if version.is_encrypted and self.encryption is None:
                self._log(f"Skipping encrypted file {version.path}: no encryption key available")
                result.skipped += 1
                result.skipped_encrypted += 1
                self.progress.file_skipped()
                continue

            try:
                self.restore_file(version, output_dir)
            except (RestoreError, StorageError, EncryptionError, OSError) as e:
                self._log(f"Failed to restore {version.path}: {e}")
                result.failed += 1
                self.progress.file_failed()
                continue

            result.restored += 1
            result.restored_bytes += version.size
            self.progress.file_completed(version.size)

        self._log(self.progress.summary())
        if result.skipped_encrypted:
            self._log(
                f"Skipped {result.skipped_encrypted} encrypted file(s): encryption key not available. "
                "Configure encryption in your config file and try again"
            )

    def restore_file(self, version: FileVersion, output_dir: str) -> str:
        """
        Download one file version to output_dir.

        Returns:
            Local path of the restored file

        Raises:
            DownloadFailedError: If the download fails
            WriteFailedError: If the destination cannot be written
            IntegrityCheckFailedError: If the restored size does not match
            EncryptionError: If decryption fails
        """
        remote_key = self.layout.version_path_for(version)
        destination = local_path_for(output_dir, version.path)
        parent = os.path.dirname(destination)

        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as e:
            raise WriteFailedError(version.path, e)

        if version.is_encrypted:
            self._download_encrypted(remote_key, version, destination)
        else:
            try:
                self.storage.download_file_streaming(remote_key, destination)
            except StorageError as e:
                raise DownloadFailedError(version.path, e)
            except OSError as e:
                raise WriteFailedError(version.path, e)

        if os.path.getsize(destination) != version.size:
            raise IntegrityCheckFailedError(version.path)

        mtime = version.modification_time.timestamp()
        try:
            os.utime(destination, (mtime, mtime))
        except OSError as e:
            raise WriteFailedError(version.path, e)

        logger.debug(f"Restored {version.path}")
        return destination

    def _download_encrypted(self, remote_key: str, version: FileVersion, destination: str):
        parent = os.path.dirname(destination)
        fd, encrypted_path = tempfile.mkstemp(prefix='.cloudsnap-', suffix='.encrypted', dir=parent)
        os.close(fd)
        fd, plain_path = tempfile.mkstemp(prefix='.cloudsnap-', suffix='.restore', dir=parent)
        os.close(fd)

        try:
            try:
                self.storage.download_file_streaming(remote_key, encrypted_path)
            except StorageError as e:
                raise DownloadFailedError(version.path, e)

            self.encryption.decrypt_file(encrypted_path, plain_path)
            try:
                os.replace(plain_path, destination)
            except OSError as e:
                raise WriteFailedError(version.path, e)
        finally:
            for path in (encrypted_path, plain_path):
                if os.path.exists(path):
                    os.remove(path)

    def _log(self, message: str):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
