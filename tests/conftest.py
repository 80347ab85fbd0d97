"""
Shared pytest fixtures for snapvault tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- FakeSystem: an in-memory stand-in for zfs, mount/umount and borg
- Backup settings and a wired BackupContext
"""

import os
import subprocess
from pathlib import Path

import pytest

from snapvault import create_app, db as _db
from snapvault.backup.commands import CommandError
from snapvault.backup.context import BackupContext
from snapvault.backup.remote import SimpleRemote
from snapvault.backup.repository import ArchiveOptions, LocalTarget, RemoteTarget
from snapvault.settings import BackupSettings, DatasetSpec, RetentionPolicy


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables inside an app context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


class FakeSystem:
    """
    In-memory zfs, mount and borg, used in place of CommandRunner.

    Commands are interpreted just far enough for the backup components:
    snapshots carry a creation counter, ``umount`` refuses while something is
    still mounted beneath the path, and borg keeps archive names per
    repository location. ``fail_on`` makes commands exit non-zero when every
    fragment matches the start or end of one of their arguments.
    """

    def __init__(self, datasets=()):
        self.datasets = set(datasets)
        self.snapshots = {}
        self.mounted = {}
        self.repos = {}
        self.pruned = []
        self.calls = []
        self.failures = []
        self._clock = 1700000000

    # Test helpers

    def fail_on(self, *fragments, stderr='simulated failure', returncode=1):
        self.failures.append((fragments, stderr, returncode))

    def clear_failures(self):
        self.failures = []

    def add_snapshot(self, name):
        self._clock += 1
        self.snapshots[name] = self._clock

    def is_mounted(self, path):
        return path in self.mounted

    def calls_of(self, command):
        return [c for c in self.calls if c[0] == command]

    # CommandRunner interface

    def run(self, args, timeout=None, env=None, cwd=None, check=True):
        args = list(args)
        self.calls.append(args)

        for fragments, stderr, returncode in self.failures:
            if all(self._matches(fragment, args) for fragment in fragments):
                return self._result(args, returncode, '', stderr, check)

        handler = {
            'zfs': self._zfs,
            'mount': self._mount,
            'umount': self._umount,
            'borg': self._borg,
        }.get(args[0])

        if handler is None:
            return self._result(args, 0, '', '', check)

        returncode, stdout, stderr = handler(args[1:])
        return self._result(args, returncode, stdout, stderr, check)

    @staticmethod
    def _matches(fragment, args):
        # Whole argument, or its start or end; never the middle of a tmp path
        return any(arg == fragment or arg.startswith(fragment) or arg.endswith(fragment) for arg in args)

    def _result(self, args, returncode, stdout, stderr, check):
        if check and returncode != 0:
            raise CommandError(args, returncode, stderr)
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)

    def _children(self, dataset):
        return sorted(d for d in self.datasets if d.startswith(dataset + '/'))

    def _zfs(self, args):
        sub = args[0]
        target = args[-1]

        if sub == 'snapshot':
            if target in self.snapshots:
                return 1, '', f"cannot create snapshot '{target}': dataset already exists"
            dataset, _, label = target.partition('@')
            self.add_snapshot(target)
            if '-r' in args:
                for child in self._children(dataset):
                    self.add_snapshot(f"{child}@{label}")
            return 0, '', ''

        if sub == 'destroy':
            if target not in self.snapshots:
                return 1, '', f"could not find any snapshots to destroy; check snapshot names."
            dataset, _, label = target.partition('@')
            del self.snapshots[target]
            if '-r' in args:
                for child in self._children(dataset):
                    self.snapshots.pop(f"{child}@{label}", None)
            return 0, '', ''

        if sub == 'list':
            if '-d' in args:
                own = sorted(
                    (created, name) for name, created in self.snapshots.items()
                    if name.partition('@')[0] == target
                )
                return 0, ''.join(f"{name}\t{created}\n" for created, name in own), ''
            if '-r' in args:
                names = sorted(
                    name for name in self.snapshots
                    if name.partition('@')[0] == target or name.startswith(target + '/')
                )
                return 0, ''.join(f"{name}\n" for name in names), ''
            if target in self.snapshots:
                return 0, f"{target}\n", ''
            return 1, '', f"cannot open '{target}': dataset does not exist"

        return 1, '', f"unsupported zfs command: {args}"

    def _mount(self, args):
        capture, path = args[-2], args[-1]
        if path in self.mounted:
            return 32, '', f"{path}: already mounted"
        self.mounted[path] = capture
        return 0, '', ''

    def _umount(self, args):
        path = args[-1]
        if path not in self.mounted:
            return 32, '', f"{path}: not mounted"
        if any(other.startswith(path + '/') for other in self.mounted):
            return 32, '', f"{path}: target is busy"
        del self.mounted[path]
        return 0, '', ''

    def _borg(self, args):
        args = [a for a in args if not a.startswith('--remote-path')]
        sub = args[0]

        if sub == 'init':
            location = args[-1]
            if location in self.repos:
                return 2, '', 'A repository already exists'
            self.repos[location] = []
            if location.startswith('/'):
                Path(location).mkdir(parents=True, exist_ok=True)
                (Path(location) / 'config').write_text('[repository]\n')
            return 0, '', ''

        if sub in ('create', 'delete'):
            spec = args[-2] if sub == 'create' else args[-1]
            location, _, label = spec.partition('::')
            if location not in self.repos:
                return 2, '', f"Repository {location} does not exist."
            archives = self.repos[location]
            if sub == 'create':
                if label in archives:
                    return 1, '', f"Archive {label} already exists"
                archives.append(label)
            else:
                if label not in archives:
                    return 1, '', f"Archive {label} does not exist"
                archives.remove(label)
            return 0, '', ''

        if sub == 'list':
            location = args[-1]
            if location not in self.repos:
                return 2, '', f"Repository {location} does not exist."
            return 0, ''.join(f"{name}\n" for name in self.repos[location]), ''

        if sub == 'prune':
            self.pruned.append(args[-1])
            return 0, '', ''

        return 1, '', f"unsupported borg command: {args}"


class FakeShell:
    """RemoteShell stand-in backed by a set of existing remote paths."""

    def __init__(self, paths):
        self.paths = paths

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def directory_exists(self, path):
        return path in self.paths

    def file_exists(self, path):
        return path in self.paths

    def create_directory(self, path):
        self.paths.add(path)

    def close(self):
        pass


DATASETS = ['pool/data', 'pool/data/a', 'pool/data/b', 'pool/data/c', 'pool/other']


@pytest.fixture
def fake_system():
    """FakeSystem knowing a recursive dataset tree and a standalone dataset."""
    return FakeSystem(datasets=DATASETS)


@pytest.fixture
def remote_paths():
    """Existing paths on the fake remote host."""
    return set()


@pytest.fixture
def fake_remote(monkeypatch, remote_paths):
    """Route RemoteTarget shells to a FakeShell."""
    monkeypatch.setattr(RemoteTarget, 'open_shell', lambda self: FakeShell(remote_paths))
    return remote_paths


@pytest.fixture
def make_settings(tmp_path):
    """
    Factory for BackupSettings pointing into tmp_path.

    Defaults to one non-recursive dataset, a local and a remote target.
    """
    def _make(datasets=None, local=True, remote=True, **overrides):
        if datasets is None:
            datasets = [DatasetSpec('pool/other')]
        values = dict(
            datasets=tuple(datasets),
            mount_base=str(tmp_path / 'mnt'),
            retention=RetentionPolicy(daily=7, weekly=4, monthly=1),
            archive_options=ArchiveOptions(passphrase='correct horse', command_timeout=30),
            local=LocalTarget(root=str(tmp_path / 'borg')) if local else None,
            remote=RemoteTarget(remote=SimpleRemote('backup@host', '/srv/borg'), check='ssh') if remote else None,
            command_timeout=30,
        )
        values.update(overrides)
        return BackupSettings(**values)

    return _make


@pytest.fixture
def backup_context(db, fake_system, fake_remote, make_settings):
    """
    Factory for a BackupContext wired to the FakeSystem.

    The remote target's per-dataset repositories are pre-initialized on the
    fake remote so that borg create/list work against them.
    """
    def _make(**kwargs):
        settings = kwargs.pop('settings', None) or make_settings(**kwargs)
        context = BackupContext.from_settings(settings, runner=fake_system)
        context.mounts.is_mounted = fake_system.is_mounted

        if settings.remote is not None:
            fake_remote.add(settings.remote.root)
            for dataset in settings.datasets:
                for repository in context.repositories(dataset.name):
                    if repository.is_remote:
                        fake_system.repos.setdefault(repository.location, [])
                        fake_remote.add(f"{settings.remote.root}/{repository.name}/config")
        return context

    return _make


@pytest.fixture
def hook_script(tmp_path):
    """Executable hook script path."""
    script = tmp_path / 'hook.sh'
    script.write_text('#!/bin/sh\nexit 0\n')
    os.chmod(script, 0o755)
    return str(script)
