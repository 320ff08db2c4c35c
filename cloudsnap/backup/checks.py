"""Configuration self-test used by the test-config command."""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from cloudsnap.config import AppConfig, ConfigError
from cloudsnap.models import RemoteLayout, generate_timestamp
from cloudsnap.utils.crypto import MAX_ENCRYPTED_FILENAME_BYTES, EncryptionError
from cloudsnap.utils.progress import format_bytes
from .executor import MAX_REMOTE_KEY_BYTES
from .sources import SourceError, collect_files, relative_path, scan_roots
from .storage import StorageError


logger = logging.getLogger(__name__)


@dataclass
class CheckReport:
    """Result of a configuration check."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)
    total_files: int = 0
    total_bytes: int = 0
    long_paths: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def info(self, message: str):
        self.messages.append(message)
        logger.info(message)

    def error(self, message: str):
        self.errors.append(message)
        logger.error(message)

    def warning(self, message: str):
        self.warnings.append(message)
        logger.warning(message)


class ConfigChecker:
    """Checks storage access, backup sources and encryption keys."""

    def __init__(self, config: AppConfig, storage, encryption=None):
        self.config = config
        self.storage = storage
        self.encryption = encryption

    def run(self) -> CheckReport:
        report = CheckReport()
        self.check_storage(report)
        self.check_sources(report)
        self.check_encryption(report)
        self.check_retention(report)
        return report

    def check_storage(self, report: CheckReport):
        try:
            self.storage.test_connection()
        except StorageError as e:
            report.error(f"Storage check failed: {e}")
            return
        report.info(f"Connected to bucket {self.config.b2.bucket_name}")

    def check_sources(self, report: CheckReport):
        include = self.config.include
        for folder in include.folders:
            path = os.path.expanduser(folder)
            if not os.path.isdir(path):
                report.error(f"Folder not found: {folder}")
        for file_path in include.files:
            path = os.path.expanduser(file_path)
            if not os.path.isfile(path):
                report.error(f"File not found: {file_path}")

        try:
            roots = scan_roots(self.config)
            items = collect_files(self.config)
        except (ConfigError, SourceError) as e:
            report.error(str(e))
            return

        layout = RemoteLayout(self.config.remote_prefix)
        sample_timestamp = generate_timestamp()
        for item in items:
            report.total_files += 1
            report.total_bytes += item.size or 0
            if self._remote_key_length(layout, relative_path(item.path, roots), sample_timestamp) > MAX_REMOTE_KEY_BYTES:
                report.long_paths += 1

        report.info(f"Files to back up: {report.total_files} ({format_bytes(report.total_bytes)})")
        if report.long_paths:
            report.warning(
                f"{report.long_paths} file(s) have paths too long for remote storage and will be skipped"
            )

    def _remote_key_length(self, layout: RemoteLayout, rel: str, timestamp: str) -> int:
        if self.encryption is None or not self.encryption.encrypt_filenames:
            key = layout.file_version_path(rel, timestamp, self.encryption is not None)
            return len(key.encode('utf-8'))

        try:
            name_length = self.encryption.encrypted_filename_length(rel)
        except EncryptionError:
            return MAX_REMOTE_KEY_BYTES + 1
        if name_length > MAX_ENCRYPTED_FILENAME_BYTES:
            return MAX_REMOTE_KEY_BYTES + 1
        # Encrypted names are ASCII, so a same-length placeholder sizes the key
        key = layout.file_version_path('x' * name_length, timestamp, True)
        return len(key.encode('utf-8'))

    def check_encryption(self, report: CheckReport):
        if not self.config.encryption.enabled:
            report.info("Encryption: disabled")
            return
        if self.encryption is None:
            report.error("Encryption is enabled but no key provider is configured")
            return
        try:
            self.encryption.key
        except EncryptionError as e:
            report.error(f"Encryption key unavailable: {e}")
            return
        report.info(f"Encryption: enabled (key source: {self.config.encryption.key_source})")

    def check_retention(self, report: CheckReport):
        retention = self.config.backup.retention
        if retention is None or not retention.is_configured:
            report.warning("No retention policy configured; cleanup will keep everything")
            return
        report.info(f"Retention: {retention.describe()}")


def check_config(config: AppConfig, storage, encryption=None) -> CheckReport:
    """Run every check. Returns the report; never raises for check failures."""
    return ConfigChecker(config, storage, encryption).run()
