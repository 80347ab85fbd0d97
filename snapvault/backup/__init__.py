"""
Backup module for snapvault.

This module handles the snapshot rotation and retention lifecycle:
- Rotation policy (tier and label selection)
- ZFS capture management
- Mounting captures as working trees
- Repository bootstrapping and archiving (local and remote borg targets)
- Retention enforcement
- Tidy (rollback of a partial cycle)
"""

from .policy import Tier, decide
from .snapshots import SnapshotManager
from .mounts import MountOrchestrator
from .bootstrap import RepositoryBootstrapper
from .executor import BackupExecutor
from .retention import RetentionManager
from .context import BackupContext
from .pipeline import DatasetPipeline, run_cycle, run_snap
from .tidy import TidyController

__all__ = [
    'Tier',
    'decide',
    'SnapshotManager',
    'MountOrchestrator',
    'RepositoryBootstrapper',
    'BackupExecutor',
    'RetentionManager',
    'BackupContext',
    'DatasetPipeline',
    'run_cycle',
    'run_snap',
    'TidyController'
]
