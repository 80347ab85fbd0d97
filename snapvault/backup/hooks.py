"""
Pre/post hook executables.

A hook receives the dataset name as its only argument. Hook failures are
reported to the caller as HookError and never stop a backup.
"""

from typing import Optional

from .commands import CommandRunner, CommandError


class HookError(Exception):
    """Raised when a hook exits non-zero, times out or cannot be run."""
    pass


def run_hook(runner: CommandRunner, hook: Optional[str], dataset: str, timeout: Optional[float] = None) -> bool:
    """
    Run a hook for a dataset.

    Args:
        runner: CommandRunner used to execute the hook
        hook: Path to the hook executable (None means no hook configured)
        dataset: Dataset name passed as the sole argument
        timeout: Timeout in seconds

    Returns:
        True if a hook ran, False if none is configured

    Raises:
        HookError: If the hook fails
    """
    if not hook:
        return False

    try:
        runner.run([hook, dataset], timeout=timeout)
    except CommandError as e:
        raise HookError(f"Hook {hook} failed for {dataset}: {e}") from e

    return True
