"""
Remote repository locations and the SSH transport used to prepare them.

Two address shapes are accepted:

- SimpleRemote: ``[user@]host:directory`` (scp style, port 22)
- PortedRemote: ``ssh://[user@]host[:port]/directory``

Directory checks run either as a remote command over SSH (``ssh`` mode) or
through SFTP (``sftp`` mode); the mode comes from configuration and
defaults to ``ssh`` for simple addresses and ``sftp`` for ported ones.
"""

import re
import stat
import shlex
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy


class RemoteError(Exception):
    """Raised when a remote location is invalid or cannot be reached."""
    pass


CHECK_MODES = ('ssh', 'sftp')

_PORTED_RE = re.compile(r'^ssh://(?P<host>[^/:]+)(?::(?P<port>\d+))?(?P<dir>/.*)$')
_SIMPLE_RE = re.compile(r'^(?P<host>[^/:]+):(?P<dir>.+)$')


def _split_user(host: str) -> Tuple[Optional[str], str]:
    user, sep, hostname = host.rpartition('@')
    return (user if sep else None), hostname


@dataclass(frozen=True)
class SimpleRemote:
    """scp-style remote: ``[user@]host:directory``."""
    host: str
    directory: str

    default_check: ClassVar[str] = 'ssh'

    @property
    def port(self) -> int:
        return 22

    def connect_kwargs(self) -> dict:
        username, hostname = _split_user(self.host)
        return {'hostname': hostname, 'port': self.port, 'username': username}

    def repository_url(self, name: str) -> str:
        return f"{self.host}:{posixpath.join(self.directory, name)}"

    def __str__(self):
        return f"{self.host}:{self.directory}"


@dataclass(frozen=True)
class PortedRemote:
    """URL-style remote: ``ssh://[user@]host[:port]/directory``."""
    host: str
    port: int
    directory: str

    default_check: ClassVar[str] = 'sftp'

    def connect_kwargs(self) -> dict:
        username, hostname = _split_user(self.host)
        return {'hostname': hostname, 'port': self.port, 'username': username}

    def repository_url(self, name: str) -> str:
        return f"ssh://{self.host}:{self.port}{posixpath.join(self.directory, name)}"

    def __str__(self):
        return f"ssh://{self.host}:{self.port}{self.directory}"


def parse_remote(location: str):
    """
    Parse a remote location string.

    Args:
        location: ``ssh://[user@]host[:port]/dir`` or ``[user@]host:dir``

    Returns:
        PortedRemote or SimpleRemote

    Raises:
        RemoteError: If the location matches neither shape
    """
    location = location.strip()

    match = _PORTED_RE.match(location)
    if match:
        port = int(match.group('port') or 22)
        directory = match.group('dir').rstrip('/') or '/'
        return PortedRemote(host=match.group('host'), port=port, directory=directory)

    if location.startswith('ssh://'):
        raise RemoteError(f"Invalid remote location (expected ssh://[user@]host[:port]/dir): {location}")

    match = _SIMPLE_RE.match(location)
    if match:
        directory = match.group('dir')
        if directory != '/':
            directory = directory.rstrip('/')
        return SimpleRemote(host=match.group('host'), directory=directory)

    raise RemoteError(f"Invalid remote location (expected [user@]host:dir): {location}")


class RemoteShell:
    """
    SSH session used to check and create directories on a remote.

    Usable as a context manager; the connection opens lazily on first use.
    """

    def __init__(self, remote, check: str = None, key_file: str = None, timeout: Optional[float] = 30):
        """
        Initialize remote shell.

        Args:
            remote: SimpleRemote or PortedRemote
            check: 'ssh' (remote command) or 'sftp'; defaults per address shape
            key_file: Private key file (otherwise agent and default keys are used)
            timeout: Connect and command timeout in seconds
        """
        check = check or remote.default_check
        if check not in CHECK_MODES:
            raise RemoteError(f"Invalid check mode: {check}")

        self.remote = remote
        self.check = check
        self.key_file = key_file
        self.timeout = timeout

        self.ssh_client = None
        self.sftp_client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            RemoteError: If connection fails
        """
        if self.ssh_client is not None:
            return

        connect_kwargs = self.remote.connect_kwargs()
        if connect_kwargs['username'] is None:
            del connect_kwargs['username']
        connect_kwargs['timeout'] = self.timeout

        if self.key_file:
            key_path = Path(self.key_file).expanduser()
            if not key_path.exists():
                raise RemoteError(f"Private key not found: {self.key_file}")
            connect_kwargs['key_filename'] = str(key_path)

        try:
            client = SSHClient()
            client.load_system_host_keys()
            client.set_missing_host_key_policy(AutoAddPolicy())
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            raise RemoteError(f"SSH authentication to {self.remote} failed: {e}") from e
        except paramiko.SSHException as e:
            raise RemoteError(f"SSH connection to {self.remote} failed: {e}") from e
        except OSError as e:
            raise RemoteError(f"Failed to connect to {self.remote}: {e}") from e

        self.ssh_client = client

    def _sftp(self):
        self._connect()
        if self.sftp_client is None:
            try:
                self.sftp_client = self.ssh_client.open_sftp()
            except paramiko.SSHException as e:
                raise RemoteError(f"Failed to open SFTP session to {self.remote}: {e}") from e
        return self.sftp_client

    def _exec(self, command: str) -> Tuple[int, str]:
        """Run a remote command, returning (exit status, stderr)."""
        self._connect()
        try:
            _, stdout, stderr = self.ssh_client.exec_command(command, timeout=self.timeout)
            channel = stdout.channel
            # exec_command's timeout covers reads only; the exit status wait needs its own bound
            if not channel.status_event.wait(self.timeout):
                channel.close()
                raise RemoteError(
                    f"Remote command on {self.remote} timed out after {self.timeout}s: {command}"
                )
            status = channel.recv_exit_status()
            return status, stderr.read().decode(errors='replace').strip()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteError(f"Remote command failed on {self.remote}: {command}: {e}") from e

    def _stat_mode(self, path: str) -> Optional[int]:
        try:
            return self._sftp().stat(path).st_mode
        except FileNotFoundError:
            return None
        except (IOError, paramiko.SSHException) as e:
            raise RemoteError(f"SFTP stat of {path} on {self.remote} failed: {e}") from e

    def directory_exists(self, path: str) -> bool:
        """Check whether a directory exists on the remote."""
        if self.check == 'ssh':
            status, _ = self._exec(f"test -d {shlex.quote(path)}")
            return status == 0

        mode = self._stat_mode(path)
        return mode is not None and stat.S_ISDIR(mode)

    def file_exists(self, path: str) -> bool:
        """Check whether a regular file exists on the remote."""
        if self.check == 'ssh':
            status, _ = self._exec(f"test -f {shlex.quote(path)}")
            return status == 0

        mode = self._stat_mode(path)
        return mode is not None and stat.S_ISREG(mode)

    def create_directory(self, path: str):
        """
        Create a directory (and missing parents) on the remote.

        Raises:
            RemoteError: If creation fails
        """
        if self.check == 'ssh':
            status, err = self._exec(f"mkdir -p {shlex.quote(path)}")
            if status != 0:
                raise RemoteError(f"Failed to create {path} on {self.remote}: {err or status}")
            return

        sftp = self._sftp()
        current = '/' if path.startswith('/') else ''
        for part in [p for p in path.split('/') if p]:
            current = posixpath.join(current, part) if current else part
            mode = self._stat_mode(current)
            if mode is None:
                try:
                    sftp.mkdir(current)
                except (IOError, paramiko.SSHException) as e:
                    raise RemoteError(f"Failed to create {current} on {self.remote}: {e}") from e
            elif not stat.S_ISDIR(mode):
                raise RemoteError(f"{current} on {self.remote} exists and is not a directory")

    def close(self):
        """Close SFTP/SSH connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException):
                pass
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, paramiko.SSHException):
                pass
            self.ssh_client = None
