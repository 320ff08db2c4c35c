"""
Shared pytest fixtures for cloudsnap tests.

This module provides fixtures for:
- An in-memory B2 storage double
- Application config pointing at temporary folders
- Encryption key material and managers
- Recording notifier
- Temporary file fixtures
"""

import os
import shutil
from unittest.mock import MagicMock

import pytest

from cloudsnap.config import (
    AppConfig,
    B2Config,
    IncludeConfig,
    BackupSettings,
    RetentionConfig,
)
from cloudsnap.backup.storage import ClientError
from cloudsnap.utils.crypto import EncryptionManager, KeyMaterial
from cloudsnap.utils.notifications import Notifier


class FakeB2Storage:
    """
    In-memory stand-in for B2Storage.

    Every upload creates a new version; list_files returns the newest
    version per name, list_file_versions returns all of them.
    """

    def __init__(self, recommended_part_size=100 * 1024 * 1024, minimum_part_size=5 * 1024 * 1024):
        self.versions = []
        self.deleted = []
        self.uploads = []
        self.large_uploads = []
        self.upload_error = None
        self.delete_error = None
        self.download_error = None
        self._counter = 0
        self._recommended = recommended_part_size
        self._minimum = minimum_part_size

    # -- Helpers for tests --------------------------------------------------

    def put(self, name, data=b'', content_type='b2/x-auto', upload_timestamp=None):
        self._counter += 1
        entry = {
            'fileName': name,
            'fileId': f"id-{self._counter}",
            'contentLength': len(data),
            'contentType': content_type,
            'uploadTimestamp': upload_timestamp if upload_timestamp is not None else self._counter,
            'action': 'upload',
            'data': data,
        }
        self.versions.append(entry)
        return entry

    def names(self, prefix=''):
        return sorted({v['fileName'] for v in self.versions if v['fileName'].startswith(prefix)})

    def latest(self, name):
        matches = [v for v in self.versions if v['fileName'] == name]
        if not matches:
            return None
        return max(matches, key=lambda v: v['uploadTimestamp'])

    def content(self, name):
        return self.latest(name)['data']

    # -- Storage API --------------------------------------------------------

    def _check_upload(self, file_name):
        if self.upload_error is not None:
            error = self.upload_error(file_name)
            if error is not None:
                raise error

    def upload_small_file(self, local_path, file_name, content_type='b2/x-auto', sha1=None):
        self._check_upload(file_name)
        with open(local_path, 'rb') as f:
            data = f.read()
        self.uploads.append(file_name)
        return self.put(file_name, data, content_type)

    def upload_large_file(self, local_path, file_name, content_type='b2/x-auto',
                          part_size=None, concurrency=1):
        self._check_upload(file_name)
        with open(local_path, 'rb') as f:
            data = f.read()
        self.uploads.append(file_name)
        self.large_uploads.append((file_name, part_size))
        return self.put(file_name, data, content_type)

    def upload_bytes(self, data, file_name, content_type='b2/x-auto'):
        self._check_upload(file_name)
        self.uploads.append(file_name)
        return self.put(file_name, bytes(data), content_type)

    def list_files(self, prefix='', max_file_count=10000):
        result = []
        for name in self.names(prefix):
            entry = dict(self.latest(name))
            entry.pop('data')
            result.append(entry)
        return result

    def list_file_versions(self, prefix='', max_file_count=10000):
        matching = [v for v in self.versions if v['fileName'].startswith(prefix)]
        matching.sort(key=lambda v: (v['fileName'], -v['uploadTimestamp']))
        result = []
        for entry in matching:
            entry = dict(entry)
            entry.pop('data')
            result.append(entry)
        return result

    def delete_file_version(self, file_name, file_id):
        if self.delete_error is not None:
            error = self.delete_error(file_name)
            if error is not None:
                raise error
        self.versions = [
            v for v in self.versions
            if not (v['fileName'] == file_name and v['fileId'] == file_id)
        ]
        self.deleted.append(file_name)

    def download_file(self, file_name):
        if self.download_error is not None:
            error = self.download_error(file_name)
            if error is not None:
                raise error
        entry = self.latest(file_name)
        if entry is None:
            raise ClientError(404, f"File not present: {file_name}")
        return entry['data']

    def download_file_streaming(self, file_name, destination):
        data = self.download_file(file_name)
        os.makedirs(os.path.dirname(os.path.abspath(destination)), exist_ok=True)
        with open(destination, 'wb') as f:
            f.write(data)
        return len(data)

    def recommended_part_size(self):
        return self._recommended

    def absolute_minimum_part_size(self):
        return self._minimum

    def test_connection(self):
        return True


class RecordingNotifier(Notifier):
    """Collects notifications instead of showing them."""

    def __init__(self):
        self.events = []

    def notify_success(self, operation, details=''):
        self.events.append(('success', operation, details))

    def notify_failure(self, operation, details=''):
        self.events.append(('failure', operation, details))

    def notify_warning(self, operation, details=''):
        self.events.append(('warning', operation, details))

    @property
    def kinds(self):
        return [kind for kind, _, _ in self.events]


@pytest.fixture
def fake_storage():
    """In-memory B2 storage double."""
    return FakeB2Storage()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def source_dir(tmp_path):
    """
    Create a source folder with a few files.

    Creates:
    - notes.txt
    - docs/report.pdf
    - docs/nested/data.csv
    - .hidden (skipped by default)
    """
    source = tmp_path / 'source'
    (source / 'docs' / 'nested').mkdir(parents=True)
    (source / 'notes.txt').write_text('Some notes')
    (source / 'docs' / 'report.pdf').write_bytes(b'%PDF-1.4 report')
    (source / 'docs' / 'nested' / 'data.csv').write_text('a,b\n1,2\n')
    (source / '.hidden').write_text('secret')
    return source


@pytest.fixture
def make_config(source_dir):
    """
    Factory for AppConfig instances backed by source_dir.

    Keyword arguments override the backup settings.
    """
    def factory(folders=None, files=None, manifest_update_interval=50,
                retention=None, part_size_mb=None):
        return AppConfig(
            b2=B2Config(
                key_id='test-key-id',
                application_key='test-application-key',
                bucket_name='test-bucket',
                part_size_mb=part_size_mb,
            ),
            include=IncludeConfig(
                folders=[str(source_dir)] if folders is None else folders,
                files=files or [],
            ),
            backup=BackupSettings(
                remote_prefix='backup',
                manifest_update_interval=manifest_update_interval,
                retention=retention or RetentionConfig(),
            ),
        )

    return factory


@pytest.fixture
def key_material():
    """Fixed raw key pair."""
    return KeyMaterial(encryption_key=b'k' * 32, hmac_key=b'h' * 32)


@pytest.fixture
def encryption(key_material):
    """EncryptionManager with a fixed key pair, plaintext file names."""
    return EncryptionManager(lambda: key_material)


@pytest.fixture
def filename_encryption(key_material):
    """EncryptionManager with a fixed key pair and encrypted file names."""
    return EncryptionManager(lambda: key_material, encrypt_filenames=True)


@pytest.fixture
def mock_session():
    """MagicMock standing in for a requests.Session."""
    return MagicMock()


@pytest.fixture
def restore_dir(tmp_path):
    path = tmp_path / 'restore'
    yield path
    shutil.rmtree(path, ignore_errors=True)
