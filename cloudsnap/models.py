"""
Snapshot data model.

A snapshot is identified by a local-time timestamp string
(yyyy-MM-dd_HHmmss). Its manifest records every file path known at that
point together with the snapshot that last uploaded the file's content.
Remote objects are laid out as:

    <prefix>/snapshots/<timestamp>/manifest.json
    <prefix>/.success-markers/<timestamp>
    <prefix>/files/<relativePath>/<timestamp>[.encrypted]
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable, Tuple


TIMESTAMP_FORMAT = '%Y-%m-%d_%H%M%S'
ENCRYPTED_SUFFIX = '.encrypted'
MANIFEST_FILENAME = 'manifest.json'
SUCCESS_MARKER_CONTENT = b'completed'


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Return a snapshot timestamp for `now` (default: current local time)."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse a snapshot timestamp.

    Returns:
        Naive local datetime, or None if the string is not a valid timestamp
    """
    if not value or len(value) != 17:
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return None


def format_iso8601(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with a 'Z' suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = value.strftime('%Y-%m-%dT%H:%M:%S')
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip('0')
    return text + 'Z'


def parse_iso8601(value: str) -> datetime:
    """
    Parse an ISO-8601 date written by format_iso8601 (or any offset form).

    Raises:
        ValueError: If the string is not a valid date
    """
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'

    # fromisoformat is strict about fraction width on older interpreters
    if '.' in text:
        head, rest = text.split('.', 1)
        digits = ''
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{(digits + '000000')[:6]}{rest}"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class FileVersion:
    """One file's state as recorded by a snapshot."""
    path: str
    size: int
    modification_time: datetime
    version_timestamp: str
    encrypted: Optional[bool] = None
    encrypted_path: Optional[str] = None
    encrypted_size: Optional[int] = None

    @property
    def remote_path_component(self) -> str:
        """Path component used in the remote key (encrypted name when present)."""
        return self.encrypted_path or self.path

    @property
    def is_encrypted(self) -> bool:
        return bool(self.encrypted)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'path': self.path,
            'size': self.size,
            'modificationDate': format_iso8601(self.modification_time),
            'versionTimestamp': self.version_timestamp,
        }
        if self.encrypted is not None:
            data['encrypted'] = self.encrypted
        if self.encrypted_path is not None:
            data['encryptedPath'] = self.encrypted_path
        if self.encrypted_size is not None:
            data['encryptedSize'] = self.encrypted_size
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileVersion':
        try:
            return cls(
                path=data['path'],
                size=int(data['size']),
                modification_time=parse_iso8601(data['modificationDate']),
                version_timestamp=data['versionTimestamp'],
                encrypted=data.get('encrypted'),
                encrypted_path=data.get('encryptedPath'),
                encrypted_size=data.get('encryptedSize'),
            )
        except KeyError as e:
            raise ValueError(f"File entry missing field {e}")
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Invalid file entry: {e}")


@dataclass
class SnapshotManifest:
    """
    The file list of one snapshot.

    totalFiles and totalBytes are derived from the file list, so the
    aggregates always agree with it. Paths are unique; use upsert() to add
    or replace entries.
    """
    timestamp: str
    created_at: datetime
    files: List[FileVersion] = field(default_factory=list)
    _index: Dict[str, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        self._reindex()

    def _reindex(self):
        self._index = {}
        unique = []
        for version in self.files:
            if version.path in self._index:
                unique[self._index[version.path]] = version
            else:
                self._index[version.path] = len(unique)
                unique.append(version)
        self.files = unique

    @property
    def total_files(self) -> int:
        return len(self.files)

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)

    @classmethod
    def seeded_from(cls, timestamp: str, previous: Optional['SnapshotManifest'] = None,
                    created_at: Optional[datetime] = None) -> 'SnapshotManifest':
        """Create a new manifest carrying over the previous snapshot's file list."""
        files = [replace(f) for f in previous.files] if previous else []
        return cls(
            timestamp=timestamp,
            created_at=created_at or datetime.now(timezone.utc),
            files=files,
        )

    def find(self, path: str) -> Optional[FileVersion]:
        position = self._index.get(path)
        return self.files[position] if position is not None else None

    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    def upsert(self, version: FileVersion):
        """Replace the entry for version.path, or append it."""
        position = self._index.get(version.path)
        if position is None:
            self._index[version.path] = len(self.files)
            self.files.append(version)
        else:
            self.files[position] = version

    def prune(self, existing_paths: Iterable[str]) -> List[str]:
        """
        Drop entries whose path is not in existing_paths.

        Returns:
            Paths that were removed
        """
        keep = set(existing_paths)
        removed = [f.path for f in self.files if f.path not in keep]
        if removed:
            self.files = [f for f in self.files if f.path in keep]
            self._reindex()
        return removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'createdAt': format_iso8601(self.created_at),
            'files': [f.to_dict() for f in self.files],
            'totalFiles': self.total_files,
            'totalBytes': self.total_bytes,
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True).encode('utf-8')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SnapshotManifest':
        if not isinstance(data, dict):
            raise ValueError("Manifest must be a JSON object")
        try:
            return cls(
                timestamp=data['timestamp'],
                created_at=parse_iso8601(data['createdAt']),
                files=[FileVersion.from_dict(f) for f in data.get('files') or []],
            )
        except KeyError as e:
            raise ValueError(f"Manifest missing field {e}")
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Invalid manifest: {e}")

    @classmethod
    def from_json(cls, payload: bytes) -> 'SnapshotManifest':
        """
        Parse manifest JSON.

        Raises:
            ValueError: If the payload is not a valid manifest
        """
        if isinstance(payload, bytes):
            payload = payload.decode('utf-8')
        return cls.from_dict(json.loads(payload))


@dataclass
class SnapshotInfo:
    """A snapshot discovered by listing the remote snapshots namespace."""
    timestamp: str
    date: datetime
    manifest_path: str


@dataclass
class FileConflict:
    """A local file that would be overwritten by a restore."""
    relative_path: str
    existing_path: str
    existing_size: Optional[int]
    existing_mtime: Optional[datetime]
    restore_size: int
    restore_mtime: datetime


class RemoteLayout:
    """
    Remote key layout under a prefix.

    Keys are plain strings; the prefix never carries leading or trailing
    slashes.
    """

    def __init__(self, prefix: str = 'backup'):
        self.prefix = prefix.strip('/') or 'backup'

    @property
    def snapshots_prefix(self) -> str:
        return f"{self.prefix}/snapshots/"

    @property
    def files_prefix(self) -> str:
        return f"{self.prefix}/files/"

    @property
    def markers_prefix(self) -> str:
        return f"{self.prefix}/.success-markers/"

    def manifest_path(self, timestamp: str) -> str:
        return f"{self.snapshots_prefix}{timestamp}/{MANIFEST_FILENAME}"

    def success_marker_path(self, timestamp: str) -> str:
        return f"{self.markers_prefix}{timestamp}"

    def file_version_path(self, component: str, timestamp: str, encrypted: bool = False) -> str:
        suffix = ENCRYPTED_SUFFIX if encrypted else ''
        return f"{self.files_prefix}{component}/{timestamp}{suffix}"

    def version_path_for(self, version: FileVersion) -> str:
        return self.file_version_path(
            version.remote_path_component,
            version.version_timestamp,
            version.is_encrypted,
        )

    def parse_file_version_key(self, key: str) -> Optional[Tuple[str, str]]:
        """
        Split a files-namespace key into (path component, version timestamp).

        Returns:
            Tuple, or None if the key is not a file version object
        """
        if not key.startswith(self.files_prefix):
            return None
        remainder = key[len(self.files_prefix):]
        if '/' not in remainder:
            return None
        component, last = remainder.rsplit('/', 1)
        if last.endswith(ENCRYPTED_SUFFIX):
            last = last[:-len(ENCRYPTED_SUFFIX)]
        if not component or parse_timestamp(last) is None:
            return None
        return component, last

    def parse_manifest_key(self, key: str) -> Optional[str]:
        """Return the snapshot timestamp for a manifest key, else None."""
        if not key.startswith(self.snapshots_prefix):
            return None
        remainder = key[len(self.snapshots_prefix):]
        suffix = '/' + MANIFEST_FILENAME
        if not remainder.endswith(suffix):
            return None
        timestamp = remainder[:-len(suffix)]
        return timestamp if parse_timestamp(timestamp) is not None else None

    def parse_marker_key(self, key: str) -> Optional[str]:
        if not key.startswith(self.markers_prefix):
            return None
        timestamp = key[len(self.markers_prefix):]
        return timestamp if parse_timestamp(timestamp) is not None else None
