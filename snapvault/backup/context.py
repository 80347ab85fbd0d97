"""
Wiring of the backup components for one invocation.
"""

from dataclasses import dataclass
from typing import List

from .commands import CommandRunner
from .snapshots import SnapshotManager
from .mounts import MountOrchestrator
from .bootstrap import RepositoryBootstrapper
from .executor import BackupExecutor
from .retention import RetentionManager
from .repository import BorgRepository


@dataclass
class BackupContext:
    """
    Components shared by the pipeline and tidy for one invocation.

    ``settings`` is the BackupSettings value loaded from the configuration
    file; every component receives what it needs from it explicitly.
    """
    settings: object
    runner: CommandRunner
    snapshots: SnapshotManager
    mounts: MountOrchestrator
    bootstrapper: RepositoryBootstrapper
    executor: BackupExecutor
    retention: RetentionManager

    @classmethod
    def from_settings(cls, settings, runner: CommandRunner = None) -> 'BackupContext':
        """
        Build the components for a settings value.

        Args:
            settings: BackupSettings
            runner: CommandRunner to use (defaults to one with the configured timeout)
        """
        if runner is None:
            runner = CommandRunner(timeout=settings.command_timeout)

        snapshots = SnapshotManager(runner, timeout=settings.command_timeout)
        mounts = MountOrchestrator(runner, snapshots, settings.mount_base, timeout=settings.command_timeout)
        bootstrapper = RepositoryBootstrapper()

        return cls(
            settings=settings,
            runner=runner,
            snapshots=snapshots,
            mounts=mounts,
            bootstrapper=bootstrapper,
            executor=BackupExecutor(bootstrapper, parallel=settings.parallel_targets),
            retention=RetentionManager(snapshots),
        )

    def repositories(self, dataset: str) -> List[BorgRepository]:
        """One repository per enabled target for the dataset, local first."""
        return [
            BorgRepository(target, dataset, self.settings.archive_options, self.runner)
            for target in self.settings.targets
        ]
