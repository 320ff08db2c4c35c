"""
cloudsnap command line.

Usage:
    cloudsnap [-c CONFIG] [--debug] backup [--dry-run]
    cloudsnap restore [--snapshot TS] [--path P]... [--output DIR] [--force]
                      [--list-snapshots] [--dry-run]
    cloudsnap cleanup [--dry-run]
    cloudsnap test-config
    cloudsnap keygen [--force]
    cloudsnap version
"""

import sys
import logging
import argparse
from typing import List, Optional

from cloudsnap import __version__, configure_logging
from cloudsnap.config import AppConfig, ConfigError, load_config
from cloudsnap.models import RemoteLayout
from cloudsnap.backup.checks import ConfigChecker
from cloudsnap.backup.executor import BackupExecutor, EXIT_SUCCESS, EXIT_FAILURE, EXIT_INTERRUPTED
from cloudsnap.backup.restore import RestoreExecutor, RestoreOptions, RestoreError, RestoreCancelledError
from cloudsnap.backup.retention import RetentionManager
from cloudsnap.backup.sources import SourceError
from cloudsnap.backup.storage import B2Storage, StorageError
from cloudsnap.utils.crypto import EncryptionError, EncryptionManager
from cloudsnap.utils.keys import create_key_provider, generate_and_store_keys
from cloudsnap.utils.notifications import create_notifier
from cloudsnap.utils.progress import format_bytes
from cloudsnap.utils.shutdown import ShutdownToken, install_signal_handlers


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cloudsnap',
        description='Incremental snapshot backups to Backblaze B2',
    )
    parser.add_argument('-c', '--config', help='Config file (default: $CLOUDSNAP_CONFIG or ~/.config/cloudsnap/config.yml)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    sub = parser.add_subparsers(dest='command', metavar='<command>')
    sub.required = True

    backup = sub.add_parser('backup', help='Create a new snapshot')
    backup.add_argument('--dry-run', action='store_true', help='Only report what would be uploaded')

    restore = sub.add_parser('restore', help='Restore files from a snapshot')
    restore.add_argument('--snapshot', metavar='TS', help='Snapshot timestamp (default: choose interactively)')
    restore.add_argument('--path', dest='paths', action='append', default=[], metavar='P',
                         help='Restore only this path (repeatable)')
    restore.add_argument('--output', metavar='DIR', help='Restore into DIR (default: home directory)')
    restore.add_argument('--force', action='store_true', help='Overwrite without asking')
    restore.add_argument('--list-snapshots', action='store_true', help='List snapshots and exit')
    restore.add_argument('--dry-run', action='store_true', help='Only report what would be restored')

    cleanup = sub.add_parser('cleanup', help='Apply the retention policy')
    cleanup.add_argument('--dry-run', action='store_true', help='Only report what would be deleted')

    sub.add_parser('test-config', help='Check configuration, credentials and sources')

    keygen = sub.add_parser('keygen', help='Generate and store encryption keys')
    keygen.add_argument('--force', action='store_true', help='Replace existing keys')

    sub.add_parser('version', help='Show version')
    return parser


def create_storage(config: AppConfig) -> B2Storage:
    return B2Storage(
        key_id=config.b2.key_id,
        application_key=config.b2.application_key,
        bucket_name=config.b2.bucket_name,
        bucket_id=config.b2.bucket_id,
        max_retries=config.b2.max_retries,
        timeout=config.timeouts.network_seconds,
    )


def create_encryption(config: AppConfig) -> Optional[EncryptionManager]:
    if not config.encryption.enabled:
        return None
    provider = create_key_provider(config.encryption)
    return EncryptionManager(provider, encrypt_filenames=config.encryption.encrypt_filenames)


def ask(prompt: str) -> str:
    """input() that treats a closed stdin as an empty answer."""
    try:
        return input(prompt)
    except EOFError:
        return ''


def confirm_yes(prompt: str) -> bool:
    return ask(prompt).strip().lower() == 'yes'


def cmd_backup(args, config: AppConfig) -> int:
    shutdown = ShutdownToken()
    install_signal_handlers(shutdown)

    executor = BackupExecutor(
        config,
        create_storage(config),
        encryption=create_encryption(config),
        shutdown=shutdown,
        notifier=create_notifier(config.notifications.enabled),
    )
    result = executor.execute(dry_run=args.dry_run)

    if result.dry_run:
        print(f"Would upload {result.pending} files ({format_bytes(result.pending_bytes)}), "
              f"{result.unchanged} unchanged")
    else:
        print(f"Snapshot {result.timestamp}: {result.uploaded} uploaded "
              f"({format_bytes(result.uploaded_bytes)}), {result.unchanged} unchanged, "
              f"{result.failed} failed, {result.skipped} skipped, {result.removed} removed")
        if result.interrupted:
            print("Backup interrupted; partial manifest saved without a success marker")
    return result.exit_code


def cmd_restore(args, config: AppConfig) -> int:
    shutdown = ShutdownToken()
    install_signal_handlers(shutdown)

    executor = RestoreExecutor(
        config,
        create_storage(config),
        encryption=create_encryption(config),
        prompt=ask,
        notifier=create_notifier(config.notifications.enabled),
        shutdown=shutdown,
    )

    if args.list_snapshots:
        snapshots = executor.list_snapshots(args.paths)
        if not snapshots:
            print("No snapshots found")
            return EXIT_SUCCESS
        for entry in snapshots:
            print(f"{entry['timestamp']}  {entry['files']:>8} files  {format_bytes(entry['bytes']):>12}")
        return EXIT_SUCCESS

    options = RestoreOptions(
        snapshot_timestamp=args.snapshot,
        paths=args.paths,
        output_dir=args.output,
        force=args.force,
        dry_run=args.dry_run,
    )
    try:
        result = executor.execute(options)
    except RestoreCancelledError as e:
        print(str(e))
        return EXIT_SUCCESS

    if result.dry_run:
        print(f"Would restore {result.planned} files ({format_bytes(result.planned_bytes)}) "
              f"to {result.output_dir}, {len(result.conflicts)} would be overwritten")
        return EXIT_SUCCESS

    print(f"Restored {result.restored} files ({format_bytes(result.restored_bytes)}), "
          f"{result.failed} failed, {result.skipped} skipped")
    if result.interrupted:
        return EXIT_INTERRUPTED
    return EXIT_FAILURE if result.failed else EXIT_SUCCESS


def cmd_cleanup(args, config: AppConfig) -> int:
    shutdown = ShutdownToken()
    install_signal_handlers(shutdown)

    manager = RetentionManager(
        create_storage(config),
        RemoteLayout(config.remote_prefix),
        config.backup.retention,
        encryption=create_encryption(config),
        confirm=confirm_yes,
        notifier=create_notifier(config.notifications.enabled),
        shutdown=shutdown,
    )
    summary = manager.run(dry_run=args.dry_run)

    prefix = "Would delete" if summary['dry_run'] else "Deleted"
    print(f"{prefix} {summary['snapshots_deleted']} snapshots and {summary['orphans_deleted']} "
          f"orphaned file versions; kept {summary['snapshots_kept']} of {summary['snapshots_found']}")
    for error in summary['errors']:
        print(f"  error: {error}")
    return EXIT_FAILURE if summary['errors'] else EXIT_SUCCESS


def cmd_test_config(args, config: AppConfig) -> int:
    report = ConfigChecker(config, create_storage(config), create_encryption(config)).run()

    for message in report.messages:
        print(f"  ok: {message}")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    for error in report.errors:
        print(f"  error: {error}")

    print("Configuration OK" if report.ok else f"Configuration has {len(report.errors)} error(s)")
    return EXIT_SUCCESS if report.ok else EXIT_FAILURE


def cmd_keygen(args, config: AppConfig) -> int:
    location = generate_and_store_keys(config.encryption, overwrite=args.force)
    print(f"Generated new encryption keys in {location}")
    print("Keep a copy of these keys somewhere safe: encrypted backups cannot be restored without them")
    return EXIT_SUCCESS


COMMANDS = {
    'backup': cmd_backup,
    'restore': cmd_restore,
    'cleanup': cmd_cleanup,
    'test-config': cmd_test_config,
    'keygen': cmd_keygen,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == 'version':
        print(f"cloudsnap {__version__}")
        return EXIT_SUCCESS

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    configure_logging(config.logging.level, config.logging.directory, debug=args.debug)

    try:
        return COMMANDS[args.command](args, config)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    except (ConfigError, StorageError, EncryptionError, RestoreError, SourceError) as e:
        logger.error(f"Fatal error: {e}")
        return EXIT_FAILURE
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
