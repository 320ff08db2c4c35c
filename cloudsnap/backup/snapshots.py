"""
Snapshot manifests on remote storage, and change detection.

SnapshotStore reads and writes manifests and success markers through the
storage client, encrypting manifests when an EncryptionManager is given.
"""

import logging
from datetime import datetime
from typing import Optional, List, Set

from cloudsnap.models import (
    FileVersion,
    SnapshotManifest,
    SnapshotInfo,
    RemoteLayout,
    SUCCESS_MARKER_CONTENT,
    parse_timestamp,
)
from cloudsnap.utils.crypto import EncryptionError
from .storage import StorageError, InvalidResponseError


logger = logging.getLogger(__name__)

MTIME_TOLERANCE_SECONDS = 1.0


def needs_backup(observed_size: Optional[int], observed_mtime: Optional[datetime],
                 previous: Optional[FileVersion]) -> bool:
    """
    Decide whether a file must be uploaded again.

    This compares size and modification time only, with a 1 second mtime
    tolerance for filesystems that store coarse timestamps. A file whose
    content changed while both values stayed the same is not detected;
    content is never hashed.

    Args:
        observed_size: Current size, or None if it could not be read
        observed_mtime: Current mtime, or None if it could not be read
        previous: Entry from the latest manifest, or None

    Returns:
        True if the file should be uploaded
    """
    if previous is None:
        return True
    if observed_size is None or observed_mtime is None:
        return True
    if observed_size != previous.size:
        return True
    delta = abs((observed_mtime - previous.modification_time).total_seconds())
    return delta >= MTIME_TOLERANCE_SECONDS


def file_needs_backup(item, latest_manifest: Optional[SnapshotManifest], relative_path: str) -> bool:
    """needs_backup() for a scanned FileItem against the latest manifest."""
    if item.size is None or item.modification_time is None:
        return True
    if latest_manifest is None:
        return True
    return needs_backup(item.size, item.modification_time, latest_manifest.find(relative_path))


class SnapshotStore:
    """Remote manifest and success marker access for one backup prefix."""

    def __init__(self, storage, layout: RemoteLayout, encryption=None):
        """
        Args:
            storage: B2Storage (or compatible) client
            layout: Remote key layout
            encryption: Optional EncryptionManager for manifest payloads
        """
        self.storage = storage
        self.layout = layout
        self.encryption = encryption

    def upload_manifest(self, manifest: SnapshotManifest):
        """
        Write a manifest under its timestamp, replacing earlier checkpoints.

        Raises:
            StorageError: If the upload fails
            EncryptionError: If encryption fails
        """
        payload = manifest.to_json()
        content_type = 'application/json'
        if self.encryption is not None:
            payload = self.encryption.encrypt_manifest(payload)
            content_type = 'application/octet-stream'

        self.storage.upload_bytes(payload, self.layout.manifest_path(manifest.timestamp), content_type)
        logger.debug(f"Uploaded manifest {manifest.timestamp} ({manifest.total_files} files)")

    def upload_success_marker(self, timestamp: str):
        self.storage.upload_bytes(
            SUCCESS_MARKER_CONTENT,
            self.layout.success_marker_path(timestamp),
            'text/plain',
        )
        logger.debug(f"Uploaded success marker {timestamp}")

    def fetch_manifest(self, timestamp: str) -> SnapshotManifest:
        """
        Download and parse the manifest of one snapshot.

        Raises:
            StorageError: If the download fails or the manifest is malformed
            EncryptionError: If an encrypted manifest cannot be decrypted
        """
        payload = self.storage.download_file(self.layout.manifest_path(timestamp))
        if self.encryption is not None:
            payload = self.encryption.decrypt_manifest(payload)

        try:
            return SnapshotManifest.from_json(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidResponseError(f"Malformed manifest {timestamp}: {e}")

    def list_snapshots(self) -> List[SnapshotInfo]:
        """All snapshots with a manifest, oldest first."""
        snapshots = []
        for entry in self.storage.list_files(self.layout.snapshots_prefix):
            name = entry.get('fileName', '')
            timestamp = self.layout.parse_manifest_key(name)
            if timestamp is None:
                continue
            snapshots.append(SnapshotInfo(
                timestamp=timestamp,
                date=parse_timestamp(timestamp),
                manifest_path=name,
            ))

        snapshots.sort(key=lambda s: s.timestamp)
        return snapshots

    def list_success_markers(self) -> Set[str]:
        markers = set()
        for entry in self.storage.list_files(self.layout.markers_prefix):
            timestamp = self.layout.parse_marker_key(entry.get('fileName', ''))
            if timestamp is not None:
                markers.add(timestamp)
        return markers

    def latest_manifest(self) -> Optional[SnapshotManifest]:
        """
        The manifest with the greatest timestamp, or None if there is none.

        Raises:
            StorageError: If listing or the download fails
        """
        snapshots = self.list_snapshots()
        if not snapshots:
            return None

        latest = snapshots[-1]
        logger.info(f"Latest snapshot: {latest.timestamp}")
        return self.fetch_manifest(latest.timestamp)

    def try_fetch_manifest(self, timestamp: str) -> Optional[SnapshotManifest]:
        """fetch_manifest(), returning None and logging on storage errors."""
        try:
            return self.fetch_manifest(timestamp)
        except (StorageError, EncryptionError) as e:
            logger.warning(f"Could not read manifest {timestamp}: {e}")
            return None
