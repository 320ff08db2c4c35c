"""
Backup executor - orchestrates an incremental snapshot backup.

Workflow:
1. Scan configured folders and files, apply filters
2. Fetch the latest manifest and pick files whose size or mtime changed
3. Write the initial manifest for the new snapshot (seeded from the latest)
4. Upload changed files, checkpointing the manifest every N uploads
5. Drop manifest entries for files that no longer exist locally
6. Write the final manifest, then the success marker

A shutdown request stops the loop between files; the manifest is then saved
without a success marker and the result is flagged as interrupted.
"""

import os
import shutil
import logging
import tempfile
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Tuple

from cloudsnap.config import AppConfig
from cloudsnap.models import FileVersion, SnapshotManifest, RemoteLayout, generate_timestamp
from cloudsnap.utils.crypto import EncryptionError, FilenameTooLongError
from cloudsnap.utils.notifications import Notifier, NullNotifier
from cloudsnap.utils.progress import ProgressTracker, format_bytes
from cloudsnap.utils.shutdown import ShutdownToken
from .sources import FileItem, Materializer, SourceError, collect_files, relative_path, scan_roots
from .snapshots import SnapshotStore, file_needs_backup
from .storage import (
    StorageError,
    DEFAULT_CONTENT_TYPE,
    FALLBACK_MINIMUM_PART_SIZE,
    FALLBACK_RECOMMENDED_PART_SIZE,
)


logger = logging.getLogger(__name__)

MAX_REMOTE_KEY_BYTES = 950
SMALL_FILE_THRESHOLD = 5 * 1024 * 1024 * 1024
DISK_SPACE_HEADROOM = 1.2
MIB = 1024 * 1024

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


@dataclass
class BackupResult:
    """Outcome of one backup run."""
    timestamp: str
    uploaded: int = 0
    failed: int = 0
    skipped: int = 0
    unchanged: int = 0
    removed: int = 0
    uploaded_bytes: int = 0
    pending: int = 0
    pending_bytes: int = 0
    interrupted: bool = False
    dry_run: bool = False
    logs: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return EXIT_INTERRUPTED if self.interrupted else EXIT_SUCCESS


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or DEFAULT_CONTENT_TYPE


class BackupExecutor:
    """
    Runs one incremental backup into a new snapshot.
    """

    def __init__(self, config: AppConfig, storage, encryption=None,
                 materializer: Optional[Materializer] = None,
                 shutdown: Optional[ShutdownToken] = None,
                 notifier: Optional[Notifier] = None,
                 timestamp: Optional[str] = None):
        """
        Initialize backup executor.

        Args:
            config: Application config
            storage: B2Storage (or compatible) client
            encryption: EncryptionManager when encryption is enabled
            materializer: Cloud placeholder handler
            shutdown: Token polled between files
            notifier: Run notification sink
            timestamp: Snapshot timestamp (default: now)
        """
        self.config = config
        self.storage = storage
        self.encryption = encryption
        self.materializer = materializer or Materializer()
        self.shutdown = shutdown or ShutdownToken()
        self.notifier = notifier or NullNotifier()
        self.timestamp = timestamp or generate_timestamp()

        self.layout = RemoteLayout(config.remote_prefix)
        self.snapshots = SnapshotStore(storage, self.layout, encryption)
        self.progress = ProgressTracker(label='Backup')
        self.temp_dir = None
        self.logs = []
        self._since_checkpoint = 0

    def execute(self, dry_run: bool = False) -> BackupResult:
        """
        Execute the backup.

        Args:
            dry_run: Only report what would be uploaded

        Returns:
            BackupResult

        Raises:
            StorageError: If the latest manifest cannot be read, or the
                initial or final manifest cannot be written
            ConfigError: If nothing is configured for backup
        """
        self._log(f"Starting backup {self.timestamp}" + (" (dry run)" if dry_run else ""))
        result = BackupResult(timestamp=self.timestamp, dry_run=dry_run, logs=self.logs)

        try:
            self._execute_workflow(result)
        except Exception as e:
            self._log(f"Backup failed: {e}")
            if not dry_run:
                self.notifier.notify_failure('Backup', str(e))
            raise
        finally:
            self._cleanup()

        if dry_run:
            return result

        details = (
            f"{result.uploaded} uploaded ({format_bytes(result.uploaded_bytes)}), "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        if result.interrupted:
            self.notifier.notify_warning('Backup', f"Interrupted: {details}")
        elif result.failed:
            self.notifier.notify_warning('Backup', details)
        else:
            self.notifier.notify_success('Backup', details)

        return result

    def _execute_workflow(self, result: BackupResult):
        # Step 1: Scan
        roots = scan_roots(self.config)
        items = collect_files(self.config)
        self._log(f"Found {len(items)} files in {len(roots)} folders and {len(self.config.include.files)} files")

        # Step 2: Diff against the latest snapshot
        latest = self.snapshots.latest_manifest()
        if latest is None:
            self._log("No previous snapshot, backing up everything")
        else:
            self._log(f"Comparing against snapshot {latest.timestamp} ({latest.total_files} files)")

        candidates, scanned_paths = self._select_candidates(items, roots, latest, result)
        pending_bytes = sum(item.size or 0 for item, _ in candidates)
        result.pending = len(candidates)
        result.pending_bytes = pending_bytes
        self._log(
            f"{len(candidates)} files to upload ({format_bytes(pending_bytes)}), "
            f"{result.unchanged} unchanged"
        )

        if result.dry_run:
            for item, rel in candidates:
                self._log(f"Would upload: {rel}" + ("" if item.is_local else " (needs download)"))
            if latest is not None:
                gone = [p for p in latest.paths() if p not in scanned_paths]
                for path in gone:
                    self._log(f"Would remove from snapshot: {path}")
                result.removed = len(gone)
            return

        part_size = self._resolve_part_size()
        self.temp_dir = tempfile.mkdtemp(prefix='cloudsnap_backup_')

        # Step 3: Initial manifest so the snapshot exists before any upload
        manifest = SnapshotManifest.seeded_from(self.timestamp, latest)
        self.snapshots.upload_manifest(manifest)
        self._log(f"Created snapshot {self.timestamp}")

        # Step 4: Upload
        self.progress.start(len(candidates), pending_bytes)
        for index, (item, rel) in enumerate(candidates):
            if self.shutdown.requested:
                self._log("Shutdown requested, stopping before the next file")
                result.interrupted = True
                break

            try:
                version = self._backup_file(index, item, rel, part_size)
            except (StorageError, EncryptionError, SourceError, OSError) as e:
                self._log(f"Failed: {rel}: {e}")
                self.progress.file_failed()
                result.failed += 1
                continue

            if version is None:
                self.progress.file_skipped()
                result.skipped += 1
                continue

            manifest.upsert(version)
            self.progress.file_completed(version.size)
            result.uploaded += 1
            result.uploaded_bytes += version.size
            self._checkpoint(manifest)

        # Loop may have seen the flag on the last file
        if self.shutdown.requested:
            result.interrupted = True

        # Step 5: Local deletions
        removed = manifest.prune(scanned_paths)
        result.removed = len(removed)
        if removed:
            self._log(f"Removed {len(removed)} deleted files from snapshot")

        self._log(self.progress.summary())

        # Step 6: Finalize
        if result.interrupted:
            self.snapshots.upload_manifest(manifest)
            self._log(f"Saved partial snapshot {self.timestamp} ({manifest.total_files} files); no success marker written")
            return

        self.snapshots.upload_manifest(manifest)
        self.snapshots.upload_success_marker(self.timestamp)
        self._log(
            f"Backup completed: snapshot {self.timestamp} with {manifest.total_files} files "
            f"({format_bytes(manifest.total_bytes)})"
        )

    def _select_candidates(self, items: List[FileItem], roots: List[str],
                           latest: Optional[SnapshotManifest],
                           result: BackupResult) -> Tuple[List[Tuple[FileItem, str]], set]:
        """
        Resolve relative paths and keep files that changed.

        Returns:
            (sorted candidates, every scanned relative path)
        """
        candidates = []
        scanned_paths = set()

        for item in items:
            rel = relative_path(item.path, roots)
            if rel in scanned_paths:
                self._log(f"Skipping {item.path}: relative path {rel} already used by another file")
                result.skipped += 1
                continue
            scanned_paths.add(rel)

            if file_needs_backup(item, latest, rel):
                candidates.append((item, rel))
            else:
                result.unchanged += 1

        # Files already on disk first, then by path
        candidates.sort(key=lambda c: (not c[0].is_local, c[1]))
        return candidates, scanned_paths

    def _resolve_part_size(self) -> int:
        try:
            minimum = self.storage.absolute_minimum_part_size()
            recommended = self.storage.recommended_part_size()
        except StorageError as e:
            self._log(f"Could not read part sizes from storage, using defaults: {e}")
            minimum = FALLBACK_MINIMUM_PART_SIZE
            recommended = FALLBACK_RECOMMENDED_PART_SIZE

        configured = self.config.b2.part_size_mb
        part_size = configured * MIB if configured else recommended
        return max(part_size, minimum)

    def _ensure_materialized(self, item: FileItem):
        """
        Bring an off-disk file local, checking free space first.

        Raises:
            SourceError: On insufficient space, timeout or cancellation
        """
        needed = int((item.size or 0) * DISK_SPACE_HEADROOM)
        free = shutil.disk_usage(os.path.dirname(item.path)).free
        if free < needed:
            raise SourceError(
                f"Insufficient disk space to download {item.path} "
                f"(need {format_bytes(needed)}, have {format_bytes(free)})"
            )

        self._log(f"Downloading from cloud: {item.path}")
        self.materializer.ensure_local(item.path)
        timeout = self.config.timeouts.materialize_seconds
        if not self.materializer.wait_until_local(item.path, timeout, self.shutdown):
            if self.shutdown.requested:
                raise SourceError(f"Download of {item.path} cancelled")
            raise SourceError(f"Timed out after {timeout}s waiting for {item.path} to download")

    def _remote_key(self, rel: str) -> Tuple[str, Optional[str]]:
        """
        Build the remote key for a new version of rel.

        Returns:
            (remote key, encrypted path or None)

        Raises:
            FilenameTooLongError: If the encrypted name is too long
        """
        component = rel
        encrypted_path = None
        if self.encryption is not None and self.encryption.encrypt_filenames:
            encrypted_path = self.encryption.encrypt_filename(rel)
            component = encrypted_path

        key = self.layout.file_version_path(component, self.timestamp, self.encryption is not None)
        return key, encrypted_path

    def _backup_file(self, index: int, item: FileItem, rel: str, part_size: int) -> Optional[FileVersion]:
        """
        Upload one file.

        Returns:
            The new FileVersion, or None if the file was skipped
        """
        try:
            remote_key, encrypted_path = self._remote_key(rel)
        except FilenameTooLongError as e:
            self._log(f"Skipped: {rel}: {e}")
            return None

        if len(remote_key.encode('utf-8')) > MAX_REMOTE_KEY_BYTES:
            self._log(f"Skipped: {rel}: remote path exceeds {MAX_REMOTE_KEY_BYTES} bytes")
            return None

        was_local = item.is_local
        if not was_local:
            self._ensure_materialized(item)

        try:
            return self._upload_version(index, item, rel, part_size, remote_key, encrypted_path)
        finally:
            if not was_local:
                self.materializer.evict(item.path)

    def _upload_version(self, index: int, item: FileItem, rel: str, part_size: int,
                        remote_key: str, encrypted_path: Optional[str]) -> FileVersion:
        st = os.stat(item.path)
        encrypted = self.encryption is not None
        upload_path = item.path
        encrypted_size = None

        try:
            if encrypted:
                upload_path = os.path.join(self.temp_dir, f"{index}.encrypted")
                encrypted_size = self.encryption.encrypt_file(item.path, upload_path)
                content_type = 'application/octet-stream'
            else:
                content_type = guess_content_type(item.path)

            upload_size = os.path.getsize(upload_path)
            if upload_size > SMALL_FILE_THRESHOLD:
                self.storage.upload_large_file(
                    upload_path,
                    remote_key,
                    content_type,
                    part_size=part_size,
                    concurrency=self.config.b2.upload_concurrency,
                )
            else:
                self.storage.upload_small_file(upload_path, remote_key, content_type)
        finally:
            if encrypted and upload_path != item.path and os.path.exists(upload_path):
                os.remove(upload_path)

        self._log(f"Uploaded: {rel} ({format_bytes(st.st_size)})")

        return FileVersion(
            path=rel,
            size=st.st_size,
            modification_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            version_timestamp=self.timestamp,
            encrypted=True if encrypted else None,
            encrypted_path=encrypted_path,
            encrypted_size=encrypted_size,
        )

    def _checkpoint(self, manifest: SnapshotManifest):
        self._since_checkpoint += 1
        if self._since_checkpoint < self.config.backup.manifest_update_interval:
            return

        try:
            self.snapshots.upload_manifest(manifest)
        except (StorageError, EncryptionError) as e:
            self._log(f"Warning: manifest checkpoint failed, continuing: {e}")
            return

        self._since_checkpoint = 0
        self._log(f"Checkpoint: manifest saved with {manifest.total_files} files")

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
