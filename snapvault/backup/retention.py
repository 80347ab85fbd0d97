"""
Retention enforcement for captures and archives.

Captures are pruned by count per tier: the newest ``keep`` survive and the
rest are destroyed oldest first. Archives are pruned by borg itself, once
per repository, across all three tiers.
"""

import logging

from .policy import Tier
from .snapshots import SnapshotManager
from .repository import BorgRepository

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Prunes old captures and archives.
    """

    def __init__(self, snapshots: SnapshotManager):
        """
        Initialize retention manager.

        Args:
            snapshots: SnapshotManager used to list and destroy captures
        """
        self.snapshots = snapshots

    def prune_captures(self, dataset: str, tier: Tier, keep: int, recursive: bool = False) -> int:
        """
        Destroy all but the ``keep`` newest captures of a tier.

        Args:
            dataset: Dataset name
            tier: Tier to prune
            keep: Number of newest captures to keep
            recursive: Destroy descendants' captures too

        Returns:
            Number of captures destroyed

        Raises:
            CaptureError: If listing or destroying fails (captures destroyed
                before the failure stay destroyed)
        """
        labels = self.snapshots.find_all(dataset, tier)  # newest first

        if len(labels) <= keep:
            logger.debug(f"[{dataset}] {tier}: {len(labels)} capture(s), keeping {keep}, nothing to prune")
            return 0

        expired = labels[keep:]
        expired.reverse()  # oldest first

        for label in expired:
            self.snapshots.destroy(dataset, label, recursive=recursive)

        logger.info(f"[{dataset}] {tier}: pruned {len(expired)} capture(s), kept {keep}")
        return len(expired)

    def prune_archives(self, repository: BorgRepository, keep_daily: int, keep_weekly: int, keep_monthly: int):
        """
        Prune a repository across all tiers in one borg call.

        Raises:
            ArchiveError: If borg prune fails
        """
        repository.prune(keep_daily=keep_daily, keep_weekly=keep_weekly, keep_monthly=keep_monthly)
