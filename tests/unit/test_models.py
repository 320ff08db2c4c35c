"""
Unit tests for the snapshot data model (cloudsnap/models.py).

Tests FileVersion and SnapshotManifest serialization, manifest aggregates,
timestamps and the remote key layout.
"""

import json
from datetime import datetime, timezone

import pytest

from cloudsnap.models import (
    FileVersion,
    SnapshotManifest,
    RemoteLayout,
    generate_timestamp,
    parse_timestamp,
    format_iso8601,
    parse_iso8601,
)


def version(path, size=10, ts='2024-01-15_120000', **kwargs):
    return FileVersion(
        path=path,
        size=size,
        modification_time=datetime(2024, 1, 15, 11, 0, 0, tzinfo=timezone.utc),
        version_timestamp=ts,
        **kwargs
    )


class TestTimestamps:
    """Test snapshot timestamp helpers."""

    def test_generate_timestamp_format(self):
        """Timestamps use yyyy-MM-dd_HHmmss."""
        assert generate_timestamp(datetime(2024, 1, 15, 9, 5, 3)) == '2024-01-15_090503'

    def test_parse_timestamp(self):
        assert parse_timestamp('2024-01-15_090503') == datetime(2024, 1, 15, 9, 5, 3)

    def test_parse_timestamp_rejects_garbage(self):
        """Invalid or wrongly sized strings parse to None."""
        assert parse_timestamp('2024-01-15') is None
        assert parse_timestamp('2024-13-15_090503') is None
        assert parse_timestamp('not-a-timestamp!!') is None
        assert parse_timestamp('') is None

    def test_timestamps_sort_chronologically(self):
        """Lexicographic order equals chronological order."""
        stamps = [generate_timestamp(datetime(2023, 12, 31, 23, 59, 59)),
                  generate_timestamp(datetime(2024, 1, 1, 0, 0, 0)),
                  generate_timestamp(datetime(2024, 1, 1, 10, 0, 0))]
        assert sorted(stamps) == stamps

    def test_iso8601_utc_suffix(self):
        """Dates are written in UTC with a Z suffix."""
        value = datetime(2024, 1, 15, 12, 30, 0, tzinfo=timezone.utc)
        assert format_iso8601(value) == '2024-01-15T12:30:00Z'

    def test_iso8601_fractional_seconds(self):
        """Fractions are kept and parsed back regardless of width."""
        value = datetime(2024, 1, 15, 12, 30, 0, 250000, tzinfo=timezone.utc)
        text = format_iso8601(value)
        assert text == '2024-01-15T12:30:00.25Z'
        assert parse_iso8601(text) == value
        assert parse_iso8601('2024-01-15T12:30:00.123Z').microsecond == 123000

    def test_parse_iso8601_with_offset(self):
        parsed = parse_iso8601('2024-01-15T14:30:00+02:00')
        assert parsed == datetime(2024, 1, 15, 12, 30, 0, tzinfo=timezone.utc)


class TestFileVersion:
    """Test FileVersion serialization."""

    def test_to_dict_uses_wire_names(self):
        """Plaintext entries omit encryption fields."""
        data = version('docs/a.txt').to_dict()

        assert data == {
            'path': 'docs/a.txt',
            'size': 10,
            'modificationDate': '2024-01-15T11:00:00Z',
            'versionTimestamp': '2024-01-15_120000',
        }

    def test_encrypted_fields(self):
        """Encrypted entries carry encrypted, encryptedPath and encryptedSize."""
        entry = version('docs/a.txt', encrypted=True, encrypted_path='QUJD', encrypted_size=80)
        data = entry.to_dict()

        assert data['encrypted'] is True
        assert data['encryptedPath'] == 'QUJD'
        assert data['encryptedSize'] == 80
        assert entry.remote_path_component == 'QUJD'
        assert FileVersion.from_dict(data) == entry

    def test_from_dict_missing_field(self):
        with pytest.raises(ValueError, match='versionTimestamp'):
            FileVersion.from_dict({'path': 'a', 'size': 1, 'modificationDate': '2024-01-15T11:00:00Z'})

    @pytest.mark.parametrize('data', [
        {'path': 'a', 'size': None, 'modificationDate': '2024-01-15T11:00:00Z', 'versionTimestamp': 'x'},
        {'path': 'a', 'size': 1, 'modificationDate': 12345, 'versionTimestamp': 'x'},
        ['a', 1],
        None,
    ])
    def test_from_dict_wrong_types(self, data):
        with pytest.raises(ValueError):
            FileVersion.from_dict(data)


class TestSnapshotManifest:
    """Test manifest invariants and JSON format."""

    def test_aggregates_follow_files(self):
        """totalFiles and totalBytes always match the file list."""
        manifest = SnapshotManifest('2024-01-15_120000', datetime.now(timezone.utc))
        manifest.upsert(version('a', size=5))
        manifest.upsert(version('b', size=7))
        manifest.upsert(version('a', size=20))

        assert manifest.total_files == 2
        assert manifest.total_bytes == 27
        data = manifest.to_dict()
        assert data['totalFiles'] == 2
        assert data['totalBytes'] == 27

    def test_duplicate_paths_collapse(self):
        """Constructing with duplicate paths keeps the last entry."""
        manifest = SnapshotManifest(
            '2024-01-15_120000',
            datetime.now(timezone.utc),
            files=[version('a', size=1), version('a', size=2)],
        )

        assert manifest.total_files == 1
        assert manifest.find('a').size == 2

    def test_seeded_from_copies_entries(self):
        """A seeded manifest carries over entries with their version timestamps."""
        previous = SnapshotManifest('2024-01-14_120000', datetime.now(timezone.utc),
                                    files=[version('a', ts='2024-01-14_120000')])

        manifest = SnapshotManifest.seeded_from('2024-01-15_120000', previous)
        manifest.upsert(version('a', size=99, ts='2024-01-15_120000'))

        assert manifest.timestamp == '2024-01-15_120000'
        assert previous.find('a').version_timestamp == '2024-01-14_120000'
        assert manifest.find('a').version_timestamp == '2024-01-15_120000'

    def test_seeded_from_nothing(self):
        manifest = SnapshotManifest.seeded_from('2024-01-15_120000')
        assert manifest.files == []
        assert manifest.total_bytes == 0

    def test_prune_removes_missing_paths(self):
        """prune() drops entries that no longer exist locally."""
        manifest = SnapshotManifest('2024-01-15_120000', datetime.now(timezone.utc),
                                    files=[version('a'), version('b'), version('c')])

        removed = manifest.prune({'a', 'c'})

        assert removed == ['b']
        assert manifest.paths() == ['a', 'c']
        assert manifest.find('b') is None
        assert manifest.find('c') is not None

    def test_json_round_trip(self):
        manifest = SnapshotManifest(
            '2024-01-15_120000',
            datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc),
            files=[version('a'), version('b', encrypted=True, encrypted_size=48)],
        )

        restored = SnapshotManifest.from_json(manifest.to_json())

        assert restored == manifest
        assert json.loads(manifest.to_json())['createdAt'] == '2024-01-15T12:00:00Z'

    def test_from_json_rejects_invalid(self):
        with pytest.raises(ValueError):
            SnapshotManifest.from_json(b'[]')
        with pytest.raises(ValueError):
            SnapshotManifest.from_json(b'{"files": []}')

    def test_from_json_rejects_wrong_types(self):
        """Wrongly typed fields raise ValueError, not TypeError."""
        with pytest.raises(ValueError):
            SnapshotManifest.from_json(b'{"timestamp": "t", "createdAt": 5, "files": []}')
        with pytest.raises(ValueError):
            SnapshotManifest.from_json(b'{"timestamp": "t", "createdAt": "2024-01-15T12:00:00Z", "files": [7]}')


class TestRemoteLayout:
    """Test remote key construction and parsing."""

    def test_keys(self):
        layout = RemoteLayout('backup')

        assert layout.manifest_path('2024-01-15_120000') == 'backup/snapshots/2024-01-15_120000/manifest.json'
        assert layout.success_marker_path('2024-01-15_120000') == 'backup/.success-markers/2024-01-15_120000'
        assert layout.file_version_path('docs/a.txt', '2024-01-15_120000') == \
            'backup/files/docs/a.txt/2024-01-15_120000'
        assert layout.file_version_path('docs/a.txt', '2024-01-15_120000', encrypted=True) == \
            'backup/files/docs/a.txt/2024-01-15_120000.encrypted'

    def test_prefix_slashes_are_stripped(self):
        assert RemoteLayout('/my/prefix/').files_prefix == 'my/prefix/files/'

    def test_version_path_for_encrypted_name(self):
        layout = RemoteLayout('backup')
        entry = version('docs/a.txt', encrypted=True, encrypted_path='ZW5j')

        assert layout.version_path_for(entry) == 'backup/files/ZW5j/2024-01-15_120000.encrypted'

    def test_parse_file_version_key(self):
        """Keys split at the last slash; the encrypted suffix is ignored."""
        layout = RemoteLayout('backup')

        assert layout.parse_file_version_key('backup/files/docs/a.txt/2024-01-15_120000') == \
            ('docs/a.txt', '2024-01-15_120000')
        assert layout.parse_file_version_key('backup/files/docs/a.txt/2024-01-15_120000.encrypted') == \
            ('docs/a.txt', '2024-01-15_120000')
        assert layout.parse_file_version_key('backup/files/docs/a.txt/latest') is None
        assert layout.parse_file_version_key('backup/snapshots/2024-01-15_120000/manifest.json') is None

    def test_parse_manifest_and_marker_keys(self):
        layout = RemoteLayout('backup')

        assert layout.parse_manifest_key('backup/snapshots/2024-01-15_120000/manifest.json') == '2024-01-15_120000'
        assert layout.parse_manifest_key('backup/snapshots/2024-01-15_120000/other.json') is None
        assert layout.parse_marker_key('backup/.success-markers/2024-01-15_120000') == '2024-01-15_120000'
        assert layout.parse_marker_key('backup/.success-markers/junk') is None
