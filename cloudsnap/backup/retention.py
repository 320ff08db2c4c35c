"""
Retention policy enforcement for snapshots.

Snapshots are sorted into hourly, daily, weekly and monthly buckets by age.
Every hourly snapshot is kept; the other buckets keep the latest snapshot
per calendar day, ISO week and calendar month. Snapshots outside every
bucket are deleted together with the file versions nothing else references.
"""

import logging
from datetime import datetime, timezone
from typing import List, Dict, Any, Set, Tuple, Optional, Callable

from cloudsnap.config import RetentionConfig
from cloudsnap.models import SnapshotInfo, RemoteLayout
from cloudsnap.utils.notifications import Notifier, NullNotifier
from cloudsnap.utils.shutdown import ShutdownToken
from .snapshots import SnapshotStore
from .storage import StorageError


logger = logging.getLogger(__name__)

HOURLY = 'hourly'
DAILY = 'daily'
WEEKLY = 'weekly'
MONTHLY = 'monthly'
TOO_OLD = 'too_old'

DAYS_PER_MONTH = 30.44


def classify_snapshot(date: datetime, now: datetime, retention: RetentionConfig) -> str:
    """
    Return the first retention bucket whose limit covers the snapshot's age.

    Args:
        date: Snapshot date
        now: Reference time
        retention: Limits per bucket (None disables a bucket)

    Returns:
        One of HOURLY, DAILY, WEEKLY, MONTHLY, TOO_OLD
    """
    seconds = (now - date).total_seconds()
    hours = seconds / 3600
    days = seconds / 86400
    weeks = days / 7
    months = days / DAYS_PER_MONTH

    if retention.hourly is not None and hours < retention.hourly:
        return HOURLY
    if retention.daily is not None and days < retention.daily:
        return DAILY
    if retention.weekly is not None and weeks < retention.weekly:
        return WEEKLY
    if retention.monthly is not None and months < retention.monthly:
        return MONTHLY
    return TOO_OLD


def _group_key(bucket: str, date: datetime):
    if bucket == DAILY:
        return date.year, date.month, date.day
    if bucket == WEEKLY:
        iso = date.isocalendar()
        return iso[0], iso[1]
    return date.year, date.month


def select_snapshots_to_keep(snapshots: List[SnapshotInfo], retention: RetentionConfig,
                             now: Optional[datetime] = None) -> Set[str]:
    """
    Compute the timestamps that survive the retention policy.

    Args:
        snapshots: Snapshots to evaluate
        retention: Retention limits
        now: Reference time (default: current local time)

    Returns:
        Set of timestamps to keep
    """
    now = now or datetime.now()
    keep = set()
    latest_per_group = {}

    for snapshot in snapshots:
        if snapshot.date is None:
            continue
        bucket = classify_snapshot(snapshot.date, now, retention)

        if bucket == HOURLY:
            keep.add(snapshot.timestamp)
        elif bucket != TOO_OLD:
            group = (bucket, _group_key(bucket, snapshot.date))
            current = latest_per_group.get(group)
            if current is None or snapshot.timestamp > current.timestamp:
                latest_per_group[group] = snapshot

    keep.update(s.timestamp for s in latest_per_group.values())
    return keep


def _upload_time(entry: Dict[str, Any]) -> int:
    return int(entry.get('uploadTimestamp') or 0)


class RetentionManager:
    """
    Deletes expired snapshots and orphaned file versions.

    A stored file version is protected when its timestamp belongs to a kept
    snapshot that has a success marker, or when a kept snapshot's manifest
    lists it. Kept snapshots without a success marker protect only what
    their manifest lists; if that manifest cannot be read, every version
    with its timestamp is protected instead.
    """

    def __init__(self, storage, layout: RemoteLayout, retention: RetentionConfig,
                 encryption=None, confirm: Optional[Callable[[str], bool]] = None,
                 notifier: Optional[Notifier] = None,
                 shutdown: Optional[ShutdownToken] = None):
        """
        Initialize retention manager.

        Args:
            storage: B2Storage (or compatible) client
            layout: Remote key layout
            retention: Retention limits
            encryption: EncryptionManager for encrypted manifests
            confirm: Called with a prompt before deleting; must return True
            notifier: Run notification sink
            shutdown: Token polled between deletions
        """
        self.storage = storage
        self.layout = layout
        self.retention = retention
        self.snapshots = SnapshotStore(storage, layout, encryption)
        self.confirm = confirm or (lambda prompt: False)
        self.notifier = notifier or NullNotifier()
        self.shutdown = shutdown or ShutdownToken()
        self.logs = []

    def run(self, dry_run: bool = False, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Enforce the retention policy.

        Args:
            dry_run: Only report what would be deleted
            now: Reference time for bucket classification

        Returns:
            Dict with summary of cleanup operations:
            {
                'snapshots_found': int,
                'snapshots_kept': int,
                'snapshots_deleted': int,
                'markers_deleted': int,
                'superseded_deleted': int,
                'orphans_found': int,
                'orphans_deleted': int,
                'errors': List[str],
                'logs': List[str],
                'dry_run': bool,
                'cancelled': bool
            }

        Raises:
            StorageError: If listing snapshots or versions fails
        """
        summary = {
            'snapshots_found': 0,
            'snapshots_kept': 0,
            'snapshots_deleted': 0,
            'markers_deleted': 0,
            'superseded_deleted': 0,
            'orphans_found': 0,
            'orphans_deleted': 0,
            'errors': [],
            'logs': self.logs,
            'dry_run': dry_run,
            'cancelled': False,
        }

        if not self.retention.is_configured:
            self._log("No retention policy configured, nothing to clean up")
            return summary

        self._log(f"Retention policy: {self.retention.describe()}" + (" (dry run)" if dry_run else ""))

        snapshots = self.snapshots.list_snapshots()
        summary['snapshots_found'] = len(snapshots)
        if not snapshots:
            self._log("No snapshots found")
            return summary

        keep = select_snapshots_to_keep(snapshots, self.retention, now)
        to_delete = [s for s in snapshots if s.timestamp not in keep]
        summary['snapshots_kept'] = len(keep)
        self._log(f"Found {len(snapshots)} snapshots: keep {len(keep)}, delete {len(to_delete)}")
        for snapshot in to_delete:
            self._log(f"Expired snapshot: {snapshot.timestamp}")

        versions = self.storage.list_file_versions(self.layout.prefix + '/')
        plan = self._plan(snapshots, keep, to_delete, versions)
        summary['orphans_found'] = len(plan['orphans'])

        total = len(plan['markers']) + len(plan['manifests']) + len(plan['superseded']) + len(plan['orphans'])
        self._log(
            f"Plan: {len(plan['markers'])} markers, {len(plan['manifests'])} manifest versions, "
            f"{len(plan['superseded'])} superseded checkpoints, {len(plan['orphans'])} orphaned file versions"
        )

        if total == 0:
            self._log("Nothing to clean up")
            return summary

        if dry_run:
            summary['snapshots_deleted'] = len(to_delete)
            summary['markers_deleted'] = len(plan['markers'])
            summary['superseded_deleted'] = len(plan['superseded'])
            summary['orphans_deleted'] = len(plan['orphans'])
            self._log("Dry run - nothing deleted")
            return summary

        prompt = (
            f"This will permanently delete {len(to_delete)} snapshots and "
            f"{len(plan['orphans'])} file versions. Type 'yes' to continue: "
        )
        if not self.confirm(prompt):
            summary['cancelled'] = True
            self._log("Cleanup cancelled")
            return summary

        # Markers first, then manifests, then file versions
        summary['markers_deleted'], _ = self._delete_all(plan['markers'], summary)
        deleted_manifests, failed_names = self._delete_all(plan['manifests'], summary)
        summary['superseded_deleted'], _ = self._delete_all(plan['superseded'], summary)
        summary['orphans_deleted'], _ = self._delete_all(plan['orphans'], summary)

        failed_snapshots = {self.layout.parse_manifest_key(name) for name in failed_names}
        summary['snapshots_deleted'] = len([s for s in to_delete if s.timestamp not in failed_snapshots])

        self._log(
            f"Cleanup complete. Snapshots deleted: {summary['snapshots_deleted']}, "
            f"manifest versions: {deleted_manifests}, "
            f"orphans deleted: {summary['orphans_deleted']}, "
            f"errors: {len(summary['errors'])}"
        )
        self.notifier.notify_success(
            'Cleanup',
            f"Removed {summary['snapshots_deleted']} old snapshots, retained {len(keep)}"
        )
        return summary

    def _plan(self, snapshots: List[SnapshotInfo], keep: Set[str], to_delete: List[SnapshotInfo],
              versions: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Split stored versions into deletion groups."""
        delete_timestamps = {s.timestamp for s in to_delete}
        markers_by_timestamp = {}
        manifests_by_name = {}
        file_versions = []

        for entry in versions:
            if entry.get('action', 'upload') != 'upload':
                continue
            name = entry.get('fileName', '')
            marker_ts = self.layout.parse_marker_key(name)
            if marker_ts is not None:
                markers_by_timestamp.setdefault(marker_ts, []).append(entry)
                continue
            manifest_ts = self.layout.parse_manifest_key(name)
            if manifest_ts is not None:
                manifests_by_name.setdefault(name, []).append(entry)
                continue
            parsed = self.layout.parse_file_version_key(name)
            if parsed is not None:
                file_versions.append((parsed, entry))

        plan = {'markers': [], 'manifests': [], 'superseded': [], 'orphans': []}

        for timestamp, entries in markers_by_timestamp.items():
            if timestamp in delete_timestamps:
                plan['markers'].extend(entries)

        for name, entries in manifests_by_name.items():
            timestamp = self.layout.parse_manifest_key(name)
            if timestamp in delete_timestamps:
                plan['manifests'].extend(entries)
            elif len(entries) > 1:
                # Older checkpoints of a kept manifest
                entries = sorted(entries, key=_upload_time, reverse=True)
                plan['superseded'].extend(entries[1:])

        protection = self._protected_versions(snapshots, keep, set(markers_by_timestamp))
        if protection is None:
            self._log("Skipping orphan cleanup: a retained snapshot's manifest could not be read")
            return plan

        trusted_timestamps, referenced = protection
        for (component, version_ts), entry in file_versions:
            if version_ts in trusted_timestamps:
                continue
            if (component, version_ts) in referenced:
                continue
            plan['orphans'].append(entry)

        return plan

    def _protected_versions(self, snapshots: List[SnapshotInfo], keep: Set[str],
                            markers: Set[str]) -> Optional[Tuple[Set[str], Set[Tuple[str, str]]]]:
        """
        Work out which stored file versions retained snapshots still use.

        Returns:
            (timestamps whose versions are all protected,
             protected (path component, version timestamp) pairs),
            or None if a completed snapshot's manifest is unreadable
        """
        trusted_timestamps = set()
        referenced = set()

        for snapshot in snapshots:
            if snapshot.timestamp not in keep:
                continue

            complete = snapshot.timestamp in markers
            manifest = self.snapshots.try_fetch_manifest(snapshot.timestamp)

            if complete:
                # Every version stamped with a completed snapshot is trusted as-is
                trusted_timestamps.add(snapshot.timestamp)
                if manifest is None:
                    return None
            else:
                self._log(f"Incomplete snapshot {snapshot.timestamp}: checking manifest")
                if manifest is None:
                    self._log(f"Could not read manifest {snapshot.timestamp}, keeping all of its files")
                    trusted_timestamps.add(snapshot.timestamp)
                    continue

            # Carried-over entries point at versions from older snapshots
            for version in manifest.files:
                referenced.add((version.remote_path_component, version.version_timestamp))

        return trusted_timestamps, referenced

    def _delete_all(self, entries: List[Dict[str, Any]], summary: Dict[str, Any]) -> Tuple[int, List[str]]:
        """
        Delete versions one by one; failures are logged and skipped.

        Returns:
            (number deleted, names that failed)
        """
        deleted = 0
        failed = []
        for position, entry in enumerate(entries):
            if self.shutdown.requested:
                self._log("Shutdown requested, stopping cleanup")
                failed.extend(e['fileName'] for e in entries[position:])
                break
            try:
                self.storage.delete_file_version(entry['fileName'], entry['fileId'])
                deleted += 1
                if deleted % 100 == 0:
                    self._log(f"Deleted {deleted}/{len(entries)} objects")
            except StorageError as e:
                failed.append(entry['fileName'])
                error_msg = f"Failed to delete {entry['fileName']}: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)
        return deleted, failed

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
