"""
External command execution.

Every ZFS, mount, borg and hook invocation goes through CommandRunner so that
each call carries an explicit timeout and failures surface as CommandError
(or CommandTimeout when the call was cancelled for running too long).
"""

import logging
import subprocess
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Raised when an external command fails or cannot be started."""

    def __init__(self, args: List[str], returncode: Optional[int] = None, stderr: str = '', message: str = None):
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = (stderr or '').strip()

        if message is None:
            message = f"Command failed ({returncode}): {' '.join(self.cmd)}"
            if self.stderr:
                message = f"{message}: {self.stderr}"
        super().__init__(message)


class CommandTimeout(CommandError):
    """Raised when an external command is killed after exceeding its timeout."""

    def __init__(self, args: List[str], timeout: float):
        self.timeout = timeout
        super().__init__(
            args,
            message=f"Command timed out after {timeout}s: {' '.join(args)}"
        )


class CommandRunner:
    """
    Runs external commands as blocking calls with a timeout.

    The runner holds no credentials. Anything a command needs (passphrase,
    remote executable) is passed per call through ``env`` or its arguments.
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize command runner.

        Args:
            timeout: Default timeout in seconds (None waits forever)
        """
        self.timeout = timeout

    def run(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        check: bool = True
    ) -> subprocess.CompletedProcess:
        """
        Run a command and capture its output.

        Args:
            args: Command and arguments
            timeout: Timeout in seconds, overrides the runner default
            env: Complete environment for the child process (None inherits)
            cwd: Working directory for the child process
            check: Raise CommandError on non-zero exit status

        Returns:
            CompletedProcess with text stdout/stderr

        Raises:
            CommandTimeout: If the command exceeded its timeout
            CommandError: If the command could not start or exited non-zero
        """
        if timeout is None:
            timeout = self.timeout

        logger.debug(f"Running: {' '.join(args)}")

        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                cwd=cwd
            )
        except subprocess.TimeoutExpired:
            raise CommandTimeout(args, timeout)
        except FileNotFoundError as e:
            raise CommandError(args, message=f"Command not found: {args[0]} ({e})")
        except PermissionError as e:
            raise CommandError(args, message=f"Permission denied running {args[0]}: {e}")

        if check and result.returncode != 0:
            raise CommandError(args, result.returncode, result.stderr)

        return result
