"""
Backup targets and the borg repositories inside them.

Each target (local directory or remote location) holds one borg repository
per dataset, named after the dataset with ``/`` replaced by ``_``. Archives
inside a repository are named exactly after the capture label.
"""

import os
import shlex
import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .commands import CommandRunner, CommandError
from .remote import RemoteShell, RemoteError

logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Raised when a borg archive operation (create/prune/list/delete) fails."""
    pass


class BootstrapError(Exception):
    """Raised when a repository target cannot be created or initialized."""
    pass


@dataclass(frozen=True)
class ArchiveOptions:
    """
    Options shared by every borg call of an invocation.

    Passed explicitly to each repository; nothing here is read from or
    written to the process environment.
    """
    passphrase: Optional[str] = None
    compression: str = 'lz4'
    files_cache: str = 'ctime,size,inode'
    exclude_marker: str = '.nobackup'
    encryption: str = 'repokey'
    borg_command: str = 'borg'
    remote_borg_command: Optional[str] = None
    command_timeout: Optional[float] = 600
    archive_timeout: Optional[float] = None

    def environment(self) -> Dict[str, str]:
        """Child environment for borg: the inherited one plus the passphrase."""
        env = dict(os.environ)
        env.pop('BORG_PASSCOMMAND', None)
        if self.passphrase is not None:
            env['BORG_PASSPHRASE'] = self.passphrase
        env['BORG_RELOCATED_REPO_ACCESS_IS_OK'] = 'no'
        env['BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK'] = 'no'
        return env


@dataclass(frozen=True)
class LocalTarget:
    """Repositories under a local directory."""
    root: str

    name = 'local'

    def repository_location(self, repo_name: str) -> str:
        return os.path.join(self.root, repo_name)


@dataclass(frozen=True)
class RemoteTarget:
    """Repositories under a directory on an SSH-reachable host."""
    remote: object  # SimpleRemote or PortedRemote
    check: Optional[str] = None
    key_file: Optional[str] = None
    timeout: Optional[float] = 30

    name = 'remote'

    @property
    def root(self) -> str:
        return self.remote.directory

    def repository_location(self, repo_name: str) -> str:
        return self.remote.repository_url(repo_name)

    def open_shell(self) -> RemoteShell:
        return RemoteShell(self.remote, check=self.check, key_file=self.key_file, timeout=self.timeout)

    def ssh_command(self) -> Optional[str]:
        """ssh invocation for borg (BORG_RSH) when a key file is configured."""
        if not self.key_file:
            return None
        key_path = os.path.expanduser(self.key_file)
        return f"ssh -i {shlex.quote(key_path)} -o BatchMode=yes"


def repository_name(dataset: str) -> str:
    """Repository directory name for a dataset: ``pool/data`` -> ``pool_data``."""
    return dataset.strip('/').replace('/', '_')


class BorgRepository:
    """
    One borg repository: the archives of one dataset in one target.
    """

    def __init__(self, target, dataset: str, options: ArchiveOptions, runner: CommandRunner):
        """
        Initialize repository handle.

        Args:
            target: LocalTarget or RemoteTarget
            dataset: Dataset whose archives live in this repository
            options: ArchiveOptions for every borg call
            runner: CommandRunner used for borg calls
        """
        self.target = target
        self.dataset = dataset
        self.options = options
        self.runner = runner
        self.name = repository_name(dataset)
        self.location = target.repository_location(self.name)

    @property
    def is_remote(self) -> bool:
        return isinstance(self.target, RemoteTarget)

    @property
    def target_name(self) -> str:
        return self.target.name

    def __repr__(self):
        return f'<BorgRepository {self.target_name} {self.location}>'

    # Target preparation

    def root_exists(self) -> bool:
        """Whether the target root directory exists."""
        if not self.is_remote:
            return os.path.isdir(self.target.root)

        with self.target.open_shell() as shell:
            return shell.directory_exists(self.target.root)

    def create_root(self):
        """Create the target root directory (and parents)."""
        if not self.is_remote:
            os.makedirs(self.target.root, exist_ok=True)
            return

        with self.target.open_shell() as shell:
            shell.create_directory(self.target.root)

    def is_initialized(self, shell: RemoteShell = None) -> bool:
        """Whether a borg repository already exists at this location."""
        if not self.is_remote:
            return (Path(self.location) / 'config').is_file()

        config_path = posixpath.join(self.target.root, self.name, 'config')
        if shell is not None:
            return shell.file_exists(config_path)
        with self.target.open_shell() as shell:
            return shell.file_exists(config_path)

    def init(self):
        """
        Initialize an empty encrypted repository.

        Raises:
            ArchiveError: If borg init fails
        """
        self._borg(['init', f'--encryption={self.options.encryption}', self.location], 'init')
        logger.info(f"Initialized {self.target_name} repository {self.location}")

    # Archive operations

    def create_archive(self, label: str, source_dir: str):
        """
        Archive the contents of a working tree under ``label``.

        Args:
            label: Archive name
            source_dir: Working root to archive (paths are stored relative to it)

        Raises:
            ArchiveError: If borg create fails
        """
        args = [
            'create',
            '--compression', self.options.compression,
            '--files-cache', self.options.files_cache,
        ]
        if self.options.exclude_marker:
            args += ['--exclude-if-present', self.options.exclude_marker]
        args += [f'{self.location}::{label}', '.']

        self._borg(args, 'create', timeout=self.options.archive_timeout, cwd=source_dir)
        logger.info(f"Created archive {label} in {self.target_name} repository {self.location}")

    def prune(self, keep_daily: int, keep_weekly: int, keep_monthly: int):
        """
        Prune archives with borg's own per-period retention.

        Raises:
            ArchiveError: If borg prune fails
        """
        self._borg([
            'prune',
            f'--keep-daily={keep_daily}',
            f'--keep-weekly={keep_weekly}',
            f'--keep-monthly={keep_monthly}',
            self.location
        ], 'prune')
        logger.info(f"Pruned {self.target_name} repository {self.location}")

    def list_archives(self) -> List[str]:
        """
        Archive names in the repository.

        Raises:
            ArchiveError: If borg list fails
        """
        result = self._borg(['list', '--short', self.location], 'list')
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def has_archive(self, label: str, shell: RemoteShell = None) -> bool:
        """
        Whether an archive named ``label`` exists (False for uninitialized repositories).

        Args:
            label: Archive name
            shell: Open RemoteShell to reuse for the remote lookup
        """
        try:
            if not self.is_initialized(shell):
                return False
        except RemoteError as e:
            raise ArchiveError(f"Cannot inspect {self.target_name} repository {self.location}: {e}") from e
        return label in self.list_archives()

    def delete_archive(self, label: str):
        """
        Delete the archive named ``label``.

        Raises:
            ArchiveError: If borg delete fails
        """
        self._borg(['delete', f'{self.location}::{label}'], 'delete')
        logger.info(f"Deleted archive {label} from {self.target_name} repository {self.location}")

    def _borg(self, args: List[str], operation: str, timeout: Optional[float] = None, cwd: str = None):
        command = [self.options.borg_command]
        if self.is_remote and self.options.remote_borg_command:
            command.append(f'--remote-path={self.options.remote_borg_command}')
        command += args

        if timeout is None:
            timeout = self.options.command_timeout

        env = self.options.environment()
        if self.is_remote:
            rsh = self.target.ssh_command()
            if rsh:
                env['BORG_RSH'] = rsh

        try:
            return self.runner.run(command, timeout=timeout, env=env, cwd=cwd)
        except CommandError as e:
            raise ArchiveError(
                f"borg {operation} failed for {self.dataset} on {self.target_name} ({self.location}): {e}"
            ) from e
