"""
Unit tests for hooks (snapvault/backup/hooks.py).
"""

import os

import pytest

from snapvault.backup.commands import CommandRunner
from snapvault.backup.hooks import run_hook, HookError


@pytest.fixture
def recording_hook(tmp_path):
    """Hook script that appends its argument to a file."""
    output = tmp_path / 'hook.out'
    script = tmp_path / 'record.sh'
    script.write_text(f'#!/bin/sh\necho "$1" >> {output}\n')
    os.chmod(script, 0o755)
    return str(script), output


class TestRunHook:
    """Test running hook executables."""

    def test_no_hook(self, fake_system):
        assert run_hook(fake_system, None, 'pool/data') is False
        assert fake_system.calls == []

    def test_passes_dataset(self, recording_hook):
        script, output = recording_hook

        assert run_hook(CommandRunner(timeout=10), script, 'pool/data') is True
        assert output.read_text() == 'pool/data\n'

    def test_failure_raises_hook_error(self, tmp_path):
        script = tmp_path / 'fail.sh'
        script.write_text('#!/bin/sh\necho "database locked" >&2\nexit 4\n')
        os.chmod(script, 0o755)

        with pytest.raises(HookError, match='database locked'):
            run_hook(CommandRunner(timeout=10), str(script), 'pool/data')

    def test_timeout_raises_hook_error(self, tmp_path):
        script = tmp_path / 'slow.sh'
        script.write_text('#!/bin/sh\nsleep 5\n')
        os.chmod(script, 0o755)

        with pytest.raises(HookError, match='timed out'):
            run_hook(CommandRunner(), str(script), 'pool/data', timeout=0.2)

    def test_missing_hook(self, tmp_path):
        with pytest.raises(HookError):
            run_hook(CommandRunner(), str(tmp_path / 'missing.sh'), 'pool/data')
