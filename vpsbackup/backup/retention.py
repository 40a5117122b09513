"""
Retention policy enforcement for remote snapshots.

Keeps the newest N encrypted artifacts of one host and deletes the rest,
together with their checksum companions. Artifact names embed a zero-padded
`YYYYMMDD-HHMMSS` timestamp, so sorting by name descending is newest first.
"""

import logging
from typing import Dict, Any, List, Optional

from vpsbackup.models import RemoteObject, is_host_snapshot, snapshot_prefix, CHECKSUM_SUFFIX
from vpsbackup.errors import PruneWarning, StorageError
from .storage import RemoteStorage

logger = logging.getLogger(__name__)


def select_prune_candidates(names: List[str], keep: int, protect: Optional[str] = None) -> List[str]:
    """
    Pick the snapshots beyond position `keep` in newest-first order.

    Args:
        names: Encrypted artifact names of one host
        keep: Retention count; `keep <= 0` disables pruning
        protect: Name that must never be selected (the artifact just uploaded)

    Returns:
        Names to delete, newest first
    """
    if keep <= 0:
        return []

    ordered = sorted(set(names), reverse=True)
    return [name for name in ordered[keep:] if name != protect]


class RetentionManager:
    """
    Manages retention policy enforcement for one host's snapshots.
    """

    def __init__(self, storage: RemoteStorage, hostname: str, keep: int):
        """
        Initialize retention manager.

        Args:
            storage: Transport holding the snapshots
            hostname: Host whose snapshots are pruned
            keep: Number of most recent snapshots to keep (<= 0 keeps all)
        """
        self.storage = storage
        self.hostname = hostname
        self.keep = keep

    def list_snapshots(self) -> List[RemoteObject]:
        """
        List this host's encrypted artifacts, newest first.

        Raises:
            StorageError: If listing fails
        """
        objects = self.storage.list_objects(prefix=snapshot_prefix(self.hostname))
        snapshots = [obj for obj in objects if is_host_snapshot(obj.name, self.hostname)]
        return sorted(snapshots, key=lambda obj: obj.name, reverse=True)

    def enforce(self, protect: Optional[str] = None) -> Dict[str, Any]:
        """
        Delete snapshots beyond the retention count.

        Per-object delete failures are logged, recorded as PruneWarning in
        the summary and do not stop the remaining deletions.

        Args:
            protect: Artifact name that must survive regardless of ordering

        Returns:
            Dict with summary:
            {
                'deleted': List[str],
                'failed': List[str],
                'remaining': int,
                'warnings': List[PruneWarning]
            }

        Raises:
            StorageError: If the snapshot listing fails
        """
        summary = {
            'deleted': [],
            'failed': [],
            'remaining': 0,
            'warnings': []
        }

        snapshots = self.list_snapshots()

        if self.keep <= 0:
            logger.info("Retention disabled, keeping all snapshots")
            summary['remaining'] = len(snapshots)
            return summary

        candidates = select_prune_candidates([s.name for s in snapshots], self.keep, protect)

        for name in candidates:
            try:
                self.storage.delete(name)
            except StorageError as e:
                self._warn(summary, f"Failed to delete old backup {name}: {e}")
                summary['failed'].append(name)
                continue

            try:
                self.storage.delete(name + CHECKSUM_SUFFIX)
            except StorageError as e:
                self._warn(summary, f"Failed to delete checksum {name}{CHECKSUM_SUFFIX}: {e}")

            summary['deleted'].append(name)
            logger.info(f"Deleted old backup: {name}")

        summary['remaining'] = len(snapshots) - len(summary['deleted'])
        return summary

    def count_snapshots(self) -> Optional[int]:
        """Number of this host's snapshots on the remote, or None if listing fails."""
        try:
            return len(self.list_snapshots())
        except StorageError as e:
            logger.warning(f"Warning: Failed to count remote backups: {e}")
            return None

    def _warn(self, summary: Dict[str, Any], message: str):
        logger.warning(f"Warning: {message}")
        summary['warnings'].append(PruneWarning(message))
