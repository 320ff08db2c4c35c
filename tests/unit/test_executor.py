"""
Unit tests for the backup executor (cloudsnap/backup/executor.py).

Backups run against real temporary folders and the in-memory storage.
"""

import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from cloudsnap.models import RemoteLayout
from cloudsnap.backup import executor as executor_module
from cloudsnap.backup.executor import BackupExecutor
from cloudsnap.backup.snapshots import SnapshotStore
from cloudsnap.backup.sources import FileItem
from cloudsnap.backup.storage import StorageError
from cloudsnap.utils.shutdown import ShutdownToken


LAYOUT = RemoteLayout('backup')
FIRST = '2024-01-01_100000'
SECOND = '2024-01-02_100000'
ALL_FILES = ['docs/nested/data.csv', 'docs/report.pdf', 'notes.txt']


def run_backup(config, storage, timestamp=FIRST, dry_run=False, **kwargs):
    return BackupExecutor(config, storage, timestamp=timestamp, **kwargs).execute(dry_run=dry_run)


def manifest(storage, timestamp, encryption=None):
    return SnapshotStore(storage, LAYOUT, encryption).fetch_manifest(timestamp)


class TestFirstBackup:
    """Test a backup with no previous snapshot."""

    def test_uploads_everything(self, make_config, fake_storage, notifier):
        result = run_backup(make_config(), fake_storage, notifier=notifier)

        assert result.uploaded == 3
        assert result.failed == 0
        assert result.unchanged == 0
        assert result.exit_code == 0
        assert sorted(fake_storage.names(LAYOUT.files_prefix)) == [
            LAYOUT.file_version_path(path, FIRST) for path in ALL_FILES
        ]
        assert fake_storage.content(LAYOUT.file_version_path('notes.txt', FIRST)) == b'Some notes'
        assert notifier.kinds == ['success']

    def test_manifest_and_marker(self, make_config, fake_storage, source_dir):
        run_backup(make_config(), fake_storage)

        snapshot = manifest(fake_storage, FIRST)
        assert sorted(snapshot.paths()) == ALL_FILES
        notes = snapshot.find('notes.txt')
        assert notes.size == 10
        assert notes.version_timestamp == FIRST
        assert notes.encrypted is None
        assert fake_storage.content(LAYOUT.success_marker_path(FIRST)) == b'completed'

    def test_manifest_written_before_files(self, make_config, fake_storage):
        """The initial manifest is the first object uploaded; the marker is the last."""
        run_backup(make_config(), fake_storage)

        assert fake_storage.uploads[0] == LAYOUT.manifest_path(FIRST)
        assert fake_storage.uploads[-2] == LAYOUT.manifest_path(FIRST)
        assert fake_storage.uploads[-1] == LAYOUT.success_marker_path(FIRST)

    def test_content_type_from_extension(self, make_config, fake_storage):
        run_backup(make_config(), fake_storage)

        assert fake_storage.latest(LAYOUT.file_version_path('docs/report.pdf', FIRST))['contentType'] == 'application/pdf'

    def test_dry_run_uploads_nothing(self, make_config, fake_storage, notifier):
        result = run_backup(make_config(), fake_storage, dry_run=True, notifier=notifier)

        assert result.dry_run is True
        assert result.pending == 3
        assert result.uploaded == 0
        assert fake_storage.uploads == []
        assert notifier.events == []
        assert any('Would upload: notes.txt' in line for line in result.logs)


class TestIncrementalBackup:
    """Test backups on top of an existing snapshot."""

    def test_only_changed_files_uploaded(self, make_config, fake_storage, source_dir):
        config = make_config()
        run_backup(config, fake_storage)
        (source_dir / 'notes.txt').write_text('Some notes, now longer')

        result = run_backup(config, fake_storage, timestamp=SECOND)

        assert result.uploaded == 1
        assert result.unchanged == 2
        snapshot = manifest(fake_storage, SECOND)
        assert snapshot.find('notes.txt').version_timestamp == SECOND
        assert snapshot.find('docs/report.pdf').version_timestamp == FIRST
        assert LAYOUT.file_version_path('docs/report.pdf', SECOND) not in fake_storage.names()

    def test_nothing_changed(self, make_config, fake_storage):
        config = make_config()
        run_backup(config, fake_storage)

        result = run_backup(config, fake_storage, timestamp=SECOND)

        assert result.uploaded == 0
        assert result.unchanged == 3
        assert sorted(manifest(fake_storage, SECOND).paths()) == ALL_FILES
        assert LAYOUT.success_marker_path(SECOND) in fake_storage.names()

    def test_mtime_change_triggers_upload(self, make_config, fake_storage, source_dir):
        config = make_config()
        run_backup(config, fake_storage)
        os.utime(str(source_dir / 'docs' / 'report.pdf'), (1600000000, 1600000000))

        result = run_backup(config, fake_storage, timestamp=SECOND)

        assert result.uploaded == 1
        assert manifest(fake_storage, SECOND).find('docs/report.pdf').modification_time == \
            datetime.fromtimestamp(1600000000, tz=timezone.utc)

    def test_deleted_files_pruned(self, make_config, fake_storage, source_dir):
        config = make_config()
        run_backup(config, fake_storage)
        os.remove(str(source_dir / 'docs' / 'nested' / 'data.csv'))

        result = run_backup(config, fake_storage, timestamp=SECOND)

        assert result.removed == 1
        assert 'docs/nested/data.csv' not in manifest(fake_storage, SECOND).paths()
        # The older snapshot still lists it
        assert 'docs/nested/data.csv' in manifest(fake_storage, FIRST).paths()

    def test_unreadable_latest_manifest_aborts(self, make_config, fake_storage, notifier):
        config = make_config()
        run_backup(config, fake_storage)
        fake_storage.download_error = lambda name: StorageError('unavailable')

        with pytest.raises(StorageError):
            run_backup(config, fake_storage, timestamp=SECOND, notifier=notifier)

        assert notifier.kinds == ['failure']
        assert LAYOUT.manifest_path(SECOND) not in fake_storage.names()


class TestEncryptedBackup:
    """Test backups with encryption enabled."""

    def test_encrypted_objects(self, make_config, fake_storage, encryption, tmp_path):
        run_backup(make_config(), fake_storage, encryption=encryption)

        key = LAYOUT.file_version_path('notes.txt', FIRST, encrypted=True)
        assert key.endswith('.encrypted')
        data = fake_storage.content(key)
        assert data != b'Some notes'
        assert encryption.decrypt_data(data) == b'Some notes'
        assert fake_storage.latest(key)['contentType'] == 'application/octet-stream'

    def test_encrypted_manifest(self, make_config, fake_storage, encryption):
        run_backup(make_config(), fake_storage, encryption=encryption)

        raw = fake_storage.content(LAYOUT.manifest_path(FIRST))
        assert not raw.startswith(b'{')
        notes = manifest(fake_storage, FIRST, encryption).find('notes.txt')
        assert notes.encrypted is True
        assert notes.size == 10
        assert notes.encrypted_size == len(fake_storage.content(LAYOUT.version_path_for(notes)))

    def test_encrypted_filenames(self, make_config, fake_storage, filename_encryption):
        run_backup(make_config(), fake_storage, encryption=filename_encryption)

        notes = manifest(fake_storage, FIRST, filename_encryption).find('notes.txt')
        assert notes.encrypted_path
        assert filename_encryption.decrypt_filename(notes.encrypted_path) == 'notes.txt'
        assert not any('notes.txt' in name for name in fake_storage.names(LAYOUT.files_prefix))

    def test_temporary_files_removed(self, make_config, fake_storage, encryption):
        executor = BackupExecutor(make_config(), fake_storage, encryption=encryption, timestamp=FIRST)
        executor.execute()

        assert not os.path.exists(executor.temp_dir)


class TestFailures:
    """Test per-file failures and interruption."""

    def test_upload_failure_is_counted(self, make_config, fake_storage, notifier):
        failing = LAYOUT.file_version_path('notes.txt', FIRST)
        fake_storage.upload_error = lambda name: StorageError('upload rejected') if name == failing else None

        result = run_backup(make_config(), fake_storage, notifier=notifier)

        assert result.failed == 1
        assert result.uploaded == 2
        assert result.exit_code == 0
        assert 'notes.txt' not in manifest(fake_storage, FIRST).paths()
        assert LAYOUT.success_marker_path(FIRST) in fake_storage.names()
        assert notifier.kinds == ['warning']

    def test_long_remote_keys_skipped(self, make_config, fake_storage):
        """Keys longer than the limit are skipped, not failed."""
        with patch.object(executor_module, 'MAX_REMOTE_KEY_BYTES', 40):
            result = run_backup(make_config(), fake_storage)

        assert result.uploaded == 1
        assert result.skipped == 2
        assert manifest(fake_storage, FIRST).paths() == ['notes.txt']

    def test_checkpoint_failure_continues(self, make_config, fake_storage):
        """A failed intermediate manifest upload does not stop the backup."""
        manifest_key = LAYOUT.manifest_path(FIRST)
        attempts = []

        def fail_checkpoints(name):
            if name == manifest_key:
                attempts.append(name)
                # First upload is the initial manifest, the last is the final one
                if 1 < len(attempts) <= 4:
                    return StorageError('checkpoint rejected')
            return None

        fake_storage.upload_error = fail_checkpoints

        result = run_backup(make_config(manifest_update_interval=1), fake_storage)

        assert result.uploaded == 3
        assert len(attempts) == 5
        assert any('checkpoint failed' in line for line in result.logs)
        assert sorted(manifest(fake_storage, FIRST).paths()) == ALL_FILES
        assert LAYOUT.success_marker_path(FIRST) in fake_storage.names()

    def test_checkpoints_every_interval(self, make_config, fake_storage):
        run_backup(make_config(manifest_update_interval=2), fake_storage)

        manifest_uploads = [n for n in fake_storage.uploads if n == LAYOUT.manifest_path(FIRST)]
        # initial, one checkpoint after two files, final
        assert len(manifest_uploads) == 3

    def test_interrupted_backup(self, make_config, fake_storage, notifier):
        """Shutdown after the first file leaves a manifest but no marker."""
        token = ShutdownToken()

        def stop_after_upload(name):
            if name.startswith(LAYOUT.files_prefix):
                token.request('SIGTERM')
            return None

        fake_storage.upload_error = stop_after_upload

        result = run_backup(make_config(), fake_storage, shutdown=token, notifier=notifier)

        assert result.interrupted is True
        assert result.exit_code == 130
        assert result.uploaded == 1
        assert LAYOUT.success_marker_path(FIRST) not in fake_storage.names()
        assert len(manifest(fake_storage, FIRST).paths()) == 1
        assert notifier.kinds == ['warning']

    def test_nothing_configured(self, make_config, fake_storage):
        from cloudsnap.config import ConfigError

        with pytest.raises(ConfigError):
            run_backup(make_config(folders=[], files=[]), fake_storage)


class TestUploadPaths:
    """Test small versus large uploads."""

    def test_large_file_uses_recommended_part_size(self, make_config, fake_storage):
        with patch.object(executor_module, 'SMALL_FILE_THRESHOLD', 12):
            run_backup(make_config(), fake_storage)

        # Only report.pdf (15 bytes) is above the threshold
        assert fake_storage.large_uploads == [
            (LAYOUT.file_version_path('docs/report.pdf', FIRST), 100 * 1024 * 1024)
        ]

    def test_configured_part_size_clamped_to_minimum(self, make_config, fake_storage):
        with patch.object(executor_module, 'SMALL_FILE_THRESHOLD', 12):
            run_backup(make_config(part_size_mb=1), fake_storage)

        assert fake_storage.large_uploads[0][1] == 5 * 1024 * 1024

    def test_configured_part_size(self, make_config, fake_storage):
        with patch.object(executor_module, 'SMALL_FILE_THRESHOLD', 12):
            run_backup(make_config(part_size_mb=50), fake_storage)

        assert fake_storage.large_uploads[0][1] == 50 * 1024 * 1024


class TestOffDiskFiles:
    """Test files that are only placeholders for cloud content."""

    @pytest.fixture
    def placeholder(self, source_dir):
        path = str(source_dir / 'notes.txt')
        st = os.stat(path)
        return FileItem(
            path=path,
            size=st.st_size,
            modification_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            is_local=False,
            scan_root=str(source_dir),
        )

    def test_materialized_then_evicted(self, make_config, fake_storage, placeholder):
        materializer = MagicMock()
        materializer.wait_until_local.return_value = True

        with patch.object(executor_module, 'collect_files', return_value=[placeholder]):
            result = run_backup(make_config(), fake_storage, materializer=materializer)

        assert result.uploaded == 1
        materializer.ensure_local.assert_called_once_with(placeholder.path)
        materializer.evict.assert_called_once_with(placeholder.path)

    def test_materialize_timeout_fails_file(self, make_config, fake_storage, placeholder):
        materializer = MagicMock()
        materializer.wait_until_local.return_value = False

        with patch.object(executor_module, 'collect_files', return_value=[placeholder]):
            result = run_backup(make_config(), fake_storage, materializer=materializer)

        assert result.failed == 1
        assert result.uploaded == 0
        materializer.evict.assert_not_called()
        assert any('Timed out' in line for line in result.logs)

    def test_long_key_skipped_before_download(self, make_config, fake_storage, placeholder):
        materializer = MagicMock()

        with patch.object(executor_module, 'collect_files', return_value=[placeholder]), \
                patch.object(executor_module, 'MAX_REMOTE_KEY_BYTES', 20):
            result = run_backup(make_config(), fake_storage, materializer=materializer)

        assert result.skipped == 1
        materializer.ensure_local.assert_not_called()
        materializer.evict.assert_not_called()

    def test_evicted_after_upload_failure(self, make_config, fake_storage, placeholder):
        materializer = MagicMock()
        materializer.wait_until_local.return_value = True
        fake_storage.upload_error = lambda name: StorageError('upload rejected') if name.startswith(LAYOUT.files_prefix) else None

        with patch.object(executor_module, 'collect_files', return_value=[placeholder]):
            result = run_backup(make_config(), fake_storage, materializer=materializer)

        assert result.failed == 1
        materializer.evict.assert_called_once_with(placeholder.path)
