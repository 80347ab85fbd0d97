"""
Backup executor - archives a working tree into every configured target.

Targets are independent: a failure on one is recorded in its TargetResult
and the next target is still attempted.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from typing import List, Optional

from .bootstrap import RepositoryBootstrapper
from .repository import BorgRepository, ArchiveError, BootstrapError

logger = logging.getLogger(__name__)


@dataclass
class TargetResult:
    """Outcome of archiving one capture into one target."""
    target: str
    location: str
    ok: bool
    stage: str  # bootstrap or create
    error: Optional[str] = None

    def to_dict(self):
        return asdict(self)


class BackupExecutor:
    """
    Fans an archive operation out to the configured targets.
    """

    def __init__(self, bootstrapper: RepositoryBootstrapper, parallel: bool = False):
        """
        Initialize backup executor.

        Args:
            bootstrapper: RepositoryBootstrapper run before each target's first archive
            parallel: Archive into targets concurrently instead of one after another
        """
        self.bootstrapper = bootstrapper
        self.parallel = parallel

    def execute(self, working_root: str, label: str, repositories: List[BorgRepository]) -> List[TargetResult]:
        """
        Archive ``working_root`` as ``label`` into each repository.

        Args:
            working_root: Mounted working tree
            label: Archive name
            repositories: One BorgRepository per enabled target

        Returns:
            One TargetResult per repository, in the given order
        """
        if self.parallel and len(repositories) > 1:
            with ThreadPoolExecutor(max_workers=len(repositories)) as pool:
                futures = [pool.submit(self._archive_one, working_root, label, repo) for repo in repositories]
                return [f.result() for f in futures]

        return [self._archive_one(working_root, label, repo) for repo in repositories]

    def _archive_one(self, working_root: str, label: str, repository: BorgRepository) -> TargetResult:
        try:
            self.bootstrapper.ensure(repository)
        except BootstrapError as e:
            logger.error(f"[{repository.dataset}] {label}: {e}")
            return TargetResult(repository.target_name, repository.location, False, 'bootstrap', str(e))

        try:
            repository.create_archive(label, working_root)
        except ArchiveError as e:
            logger.error(f"[{repository.dataset}] {label}: {e}")
            return TargetResult(repository.target_name, repository.location, False, 'create', str(e))

        return TargetResult(repository.target_name, repository.location, True, 'create')
