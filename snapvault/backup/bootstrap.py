"""
Repository bootstrapping: make sure a target can receive archives.
"""

import logging

from .remote import RemoteError
from .repository import BorgRepository, ArchiveError, BootstrapError

logger = logging.getLogger(__name__)


class RepositoryBootstrapper:
    """
    Ensures repositories exist and are initialized before first use.

    Repositories already ensured by this instance are skipped without any
    external call.
    """

    def __init__(self):
        self._ready = set()

    def ensure(self, repository: BorgRepository):
        """
        Create the target root if needed and initialize the repository.

        Args:
            repository: BorgRepository to prepare

        Raises:
            BootstrapError: If the root cannot be created or borg init fails
        """
        key = (repository.target_name, repository.location)
        if key in self._ready:
            return

        try:
            if not repository.root_exists():
                logger.info(f"Creating {repository.target_name} target directory {repository.target.root}")
                repository.create_root()

            if repository.is_initialized():
                logger.debug(f"Repository {repository.location} already initialized")
            else:
                repository.init()

        except (RemoteError, ArchiveError, OSError) as e:
            raise BootstrapError(
                f"Failed to bootstrap {repository.target_name} repository {repository.location}: {e}"
            ) from e

        self._ready.add(key)
