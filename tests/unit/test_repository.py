"""
Unit tests for borg repositories (snapvault/backup/repository.py).
"""

import os
import subprocess
from unittest.mock import MagicMock

import pytest

from snapvault.backup.commands import CommandError
from snapvault.backup.remote import SimpleRemote, PortedRemote
from snapvault.backup.repository import (
    ArchiveOptions,
    ArchiveError,
    BorgRepository,
    LocalTarget,
    RemoteTarget,
    repository_name
)


@pytest.fixture
def runner():
    runner = MagicMock()
    runner.run.return_value = subprocess.CompletedProcess([], 0, '', '')
    return runner


@pytest.fixture
def options():
    return ArchiveOptions(passphrase='s3cret', compression='zstd,3', command_timeout=60, archive_timeout=3600)


@pytest.fixture
def local_repo(tmp_path, options, runner):
    return BorgRepository(LocalTarget(str(tmp_path / 'borg')), 'pool/data', options, runner)


@pytest.fixture
def remote_repo(options, runner):
    target = RemoteTarget(SimpleRemote('backup@nas', '/srv/borg'))
    return BorgRepository(target, 'pool/data', options, runner)


def borg_args(runner):
    return runner.run.call_args[0][0]


class TestNaming:
    """Test repository naming and locations."""

    def test_repository_name(self):
        assert repository_name('pool/data') == 'pool_data'
        assert repository_name('tank') == 'tank'
        assert repository_name('pool/data/a') != repository_name('pool/data_a/b')

    def test_local_location(self, local_repo, tmp_path):
        assert local_repo.location == str(tmp_path / 'borg' / 'pool_data')
        assert local_repo.is_remote is False
        assert local_repo.target_name == 'local'

    def test_remote_locations(self, options, runner):
        simple = BorgRepository(RemoteTarget(SimpleRemote('backup@nas', '/srv/borg')), 'pool/data', options, runner)
        ported = BorgRepository(RemoteTarget(PortedRemote('nas', 2222, '/srv/borg')), 'pool/data', options, runner)

        assert simple.location == 'backup@nas:/srv/borg/pool_data'
        assert ported.location == 'ssh://nas:2222/srv/borg/pool_data'
        assert simple.target_name == 'remote'


class TestBorgCommands:
    """Test borg command construction."""

    def test_init(self, local_repo, runner):
        local_repo.init()

        assert borg_args(runner) == ['borg', 'init', '--encryption=repokey', local_repo.location]

    def test_create_archive(self, local_repo, runner):
        local_repo.create_archive('daily-20240110', '/run/snapvault/pool/data')

        assert borg_args(runner) == [
            'borg', 'create',
            '--compression', 'zstd,3',
            '--files-cache', 'ctime,size,inode',
            '--exclude-if-present', '.nobackup',
            f'{local_repo.location}::daily-20240110', '.'
        ]
        kwargs = runner.run.call_args[1]
        assert kwargs['cwd'] == '/run/snapvault/pool/data'
        assert kwargs['timeout'] == 3600

    def test_prune(self, local_repo, runner):
        local_repo.prune(keep_daily=7, keep_weekly=4, keep_monthly=0)

        assert borg_args(runner) == [
            'borg', 'prune', '--keep-daily=7', '--keep-weekly=4', '--keep-monthly=0', local_repo.location
        ]
        assert runner.run.call_args[1]['timeout'] == 60

    def test_delete_archive(self, local_repo, runner):
        local_repo.delete_archive('weekly-20240107')

        assert borg_args(runner) == ['borg', 'delete', f'{local_repo.location}::weekly-20240107']

    def test_list_archives(self, local_repo, runner):
        runner.run.return_value = subprocess.CompletedProcess([], 0, 'monthly-20240101\ndaily-20240102\n\n', '')

        assert local_repo.list_archives() == ['monthly-20240101', 'daily-20240102']
        assert borg_args(runner) == ['borg', 'list', '--short', local_repo.location]

    def test_passphrase_passed_per_call(self, local_repo, runner, monkeypatch):
        """Test the passphrase reaches borg without touching os.environ."""
        monkeypatch.delenv('BORG_PASSPHRASE', raising=False)
        monkeypatch.setenv('BORG_PASSCOMMAND', 'cat /elsewhere')

        local_repo.list_archives()

        env = runner.run.call_args[1]['env']
        assert env['BORG_PASSPHRASE'] == 's3cret'
        assert 'BORG_PASSCOMMAND' not in env
        assert 'BORG_PASSPHRASE' not in os.environ

    def test_remote_path_only_for_remote(self, tmp_path, runner):
        options = ArchiveOptions(remote_borg_command='/usr/local/bin/borg1')
        local = BorgRepository(LocalTarget(str(tmp_path)), 'pool/data', options, runner)
        remote = BorgRepository(RemoteTarget(SimpleRemote('nas', '/srv')), 'pool/data', options, runner)

        local.list_archives()
        assert '--remote-path=/usr/local/bin/borg1' not in borg_args(runner)

        remote.list_archives()
        assert borg_args(runner)[:2] == ['borg', '--remote-path=/usr/local/bin/borg1']

    def test_key_file_reaches_borg(self, options, runner, monkeypatch):
        """Test the remote key file is handed to borg through BORG_RSH for that call only."""
        monkeypatch.setenv('HOME', '/home/backup')
        monkeypatch.delenv('BORG_RSH', raising=False)
        target = RemoteTarget(SimpleRemote('backup@nas', '/srv/borg'), key_file='~/.ssh/id_ed25519')
        repo = BorgRepository(target, 'pool/data', options, runner)

        repo.list_archives()

        env = runner.run.call_args[1]['env']
        assert env['BORG_RSH'] == 'ssh -i /home/backup/.ssh/id_ed25519 -o BatchMode=yes'
        assert 'BORG_RSH' not in os.environ

    def test_no_rsh_without_key_file(self, tmp_path, remote_repo, runner, monkeypatch):
        monkeypatch.delenv('BORG_RSH', raising=False)
        remote_repo.list_archives()
        assert 'BORG_RSH' not in runner.run.call_args[1]['env']

        options = ArchiveOptions()
        local = BorgRepository(LocalTarget(str(tmp_path)), 'pool/data', options, runner)
        local.list_archives()
        assert 'BORG_RSH' not in runner.run.call_args[1]['env']

    def test_no_remote_path_when_unset(self, remote_repo, runner):
        remote_repo.list_archives()

        assert not any(arg.startswith('--remote-path') for arg in borg_args(runner))

    def test_failure_wrapped(self, local_repo, runner):
        runner.run.side_effect = CommandError(['borg'], 2, 'Failed to create/acquire the lock')

        with pytest.raises(ArchiveError, match='borg create failed for pool/data on local'):
            local_repo.create_archive('daily-20240110', '/tmp')


class TestRepositoryState:
    """Test initialization and archive lookups."""

    def test_local_is_initialized(self, local_repo):
        assert local_repo.is_initialized() is False

        os.makedirs(local_repo.location)
        with open(os.path.join(local_repo.location, 'config'), 'w') as f:
            f.write('[repository]\n')

        assert local_repo.is_initialized() is True

    def test_local_root(self, local_repo):
        assert local_repo.root_exists() is False

        local_repo.create_root()

        assert local_repo.root_exists() is True

    def test_remote_is_initialized_uses_shell(self, remote_repo, monkeypatch):
        shell = MagicMock()
        shell.__enter__.return_value = shell
        shell.file_exists.return_value = True
        monkeypatch.setattr(RemoteTarget, 'open_shell', lambda self: shell)

        assert remote_repo.is_initialized() is True
        shell.file_exists.assert_called_once_with('/srv/borg/pool_data/config')

    def test_has_archive_reuses_open_shell(self, remote_repo, runner, monkeypatch):
        """Test a caller-provided shell is used instead of opening a new session."""
        opener = MagicMock()
        monkeypatch.setattr(RemoteTarget, 'open_shell', opener)
        shell = MagicMock()
        shell.file_exists.return_value = True
        runner.run.return_value = subprocess.CompletedProcess([], 0, 'daily-20240110\n', '')

        assert remote_repo.has_archive('daily-20240110', shell=shell) is True
        opener.assert_not_called()
        shell.close.assert_not_called()

    def test_has_archive_uninitialized(self, local_repo, runner):
        """Test an uninitialized repository has no archives and borg is not called."""
        assert local_repo.has_archive('daily-20240110') is False
        runner.run.assert_not_called()

    def test_has_archive(self, local_repo, runner):
        os.makedirs(local_repo.location)
        open(os.path.join(local_repo.location, 'config'), 'w').close()
        runner.run.return_value = subprocess.CompletedProcess([], 0, 'daily-20240110\n', '')

        assert local_repo.has_archive('daily-20240110') is True
        assert local_repo.has_archive('daily-20240111') is False
