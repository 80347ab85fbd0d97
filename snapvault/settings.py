"""
Backup configuration file loading and validation.

The configuration file is INI formatted. Each ``[dataset <name>]`` section
declares one dataset; sections are processed in file order.

Example::

    [snapvault]
    mount_base = /run/snapvault
    passphrase_file = /root/snapvault.key
    compression = lz4

    [retention]
    daily = 7
    weekly = 4
    monthly = 1

    [local]
    path = /backup/borg

    [remote]
    location = ssh://backup@host:2222/srv/borg
    check = sftp

    [dataset pool/data]
    recursive = true
"""

import os
import configparser
from dataclasses import dataclass
from typing import List, Optional, Tuple

from snapvault.backup.remote import parse_remote, RemoteError, CHECK_MODES
from snapvault.backup.repository import ArchiveOptions, LocalTarget, RemoteTarget


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""
    pass


DATASET_SECTION_PREFIX = 'dataset '


@dataclass(frozen=True)
class DatasetSpec:
    """A configured backup unit."""
    name: str
    recursive: bool = False


@dataclass(frozen=True)
class RetentionPolicy:
    """Keep counts per tier."""
    daily: int = 7
    weekly: int = 4
    monthly: int = 1


@dataclass(frozen=True)
class BackupSettings:
    """Immutable configuration for one invocation."""
    datasets: Tuple[DatasetSpec, ...]
    mount_base: str
    retention: RetentionPolicy
    archive_options: ArchiveOptions
    local: Optional[LocalTarget] = None
    remote: Optional[RemoteTarget] = None
    pre_hook: Optional[str] = None
    post_hook: Optional[str] = None
    parallel_targets: bool = False
    command_timeout: Optional[float] = 600
    source_path: Optional[str] = None

    @property
    def targets(self) -> List:
        """Enabled targets in archive order (local first)."""
        return [t for t in (self.local, self.remote) if t is not None]


def load_settings(path: str) -> BackupSettings:
    """
    Load and validate a configuration file.

    Args:
        path: Path to the INI configuration file

    Returns:
        BackupSettings instance

    Raises:
        ConfigError: If the file cannot be read or a value is invalid
    """
    parser = configparser.ConfigParser(inline_comment_prefixes=(';', '#'))

    try:
        with open(path, 'r') as f:
            parser.read_file(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except (OSError, configparser.Error) as e:
        raise ConfigError(f"Failed to read configuration file {path}: {e}")

    return settings_from_parser(parser, source_path=path)


def settings_from_parser(parser: configparser.ConfigParser, source_path: str = None) -> BackupSettings:
    """Build BackupSettings from an already parsed configuration."""
    if not parser.has_section('snapvault'):
        raise ConfigError("Missing [snapvault] section")

    main = parser['snapvault']

    datasets = _read_datasets(parser)
    if not datasets:
        raise ConfigError("No datasets configured (add a [dataset <name>] section)")

    mount_base = main.get('mount_base', '/run/snapvault').strip()
    if not os.path.isabs(mount_base):
        raise ConfigError(f"mount_base must be an absolute path: {mount_base}")

    command_timeout = _read_timeout(main, 'command_timeout', 600)
    archive_timeout = _read_timeout(main, 'archive_timeout', None)

    local = None
    if parser.has_section('local'):
        local_path = parser['local'].get('path', '').strip()
        if not local_path:
            raise ConfigError("[local] section requires a path")
        local = LocalTarget(root=local_path)

    remote = None
    remote_borg_command = None
    if parser.has_section('remote'):
        remote, remote_borg_command = _read_remote(parser['remote'], command_timeout)

    passphrase = None
    if local is not None or remote is not None:
        passphrase_file = main.get('passphrase_file', '').strip()
        if not passphrase_file:
            raise ConfigError("passphrase_file is required when a backup target is configured")
        passphrase = read_passphrase(passphrase_file)

    archive_options = ArchiveOptions(
        passphrase=passphrase,
        compression=main.get('compression', 'lz4').strip(),
        files_cache=main.get('files_cache', 'ctime,size,inode').strip(),
        exclude_marker=main.get('exclude_marker', '.nobackup').strip(),
        remote_borg_command=remote_borg_command,
        command_timeout=command_timeout,
        archive_timeout=archive_timeout,
    )

    return BackupSettings(
        datasets=tuple(datasets),
        mount_base=mount_base,
        retention=_read_retention(parser),
        archive_options=archive_options,
        local=local,
        remote=remote,
        pre_hook=_read_hook(main, 'pre_hook'),
        post_hook=_read_hook(main, 'post_hook'),
        parallel_targets=_read_bool(main, 'parallel_targets', False),
        command_timeout=command_timeout,
        source_path=source_path,
    )


def read_passphrase(path: str) -> str:
    """
    Read the repository passphrase from a file.

    Only the first line is used, trailing whitespace stripped.

    Raises:
        ConfigError: If the file is missing, unreadable or empty
    """
    try:
        with open(path, 'r') as f:
            passphrase = f.readline().rstrip('\r\n')
    except FileNotFoundError:
        raise ConfigError(f"Passphrase file not found: {path}")
    except OSError as e:
        raise ConfigError(f"Failed to read passphrase file {path}: {e}")

    if not passphrase:
        raise ConfigError(f"Passphrase file is empty: {path}")

    return passphrase


def _read_datasets(parser) -> List[DatasetSpec]:
    datasets = []
    seen = set()

    for section in parser.sections():
        if not section.startswith(DATASET_SECTION_PREFIX):
            continue

        name = section[len(DATASET_SECTION_PREFIX):].strip().strip('/')
        if not name or '@' in name or ' ' in name:
            raise ConfigError(f"Invalid dataset name in section [{section}]")
        if name in seen:
            raise ConfigError(f"Dataset configured twice: {name}")
        seen.add(name)

        recursive = _read_bool(parser[section], 'recursive', False)
        datasets.append(DatasetSpec(name=name, recursive=recursive))

    return datasets


def _read_retention(parser) -> RetentionPolicy:
    if not parser.has_section('retention'):
        return RetentionPolicy()

    section = parser['retention']
    defaults = RetentionPolicy()
    values = {}

    for tier in ('daily', 'weekly', 'monthly'):
        try:
            value = section.getint(tier, fallback=getattr(defaults, tier))
        except ValueError:
            raise ConfigError(f"[retention] {tier} must be an integer")
        if value < 0:
            raise ConfigError(f"[retention] {tier} must not be negative")
        values[tier] = value

    return RetentionPolicy(**values)


def _read_remote(section, command_timeout):
    location = section.get('location', '').strip()
    if not location:
        raise ConfigError("[remote] section requires a location")

    try:
        remote = parse_remote(location)
    except RemoteError as e:
        raise ConfigError(str(e))

    check = section.get('check', '').strip() or remote.default_check
    if check not in CHECK_MODES:
        raise ConfigError(f"[remote] check must be one of {', '.join(CHECK_MODES)}: {check}")

    key_file = section.get('key_file', '').strip() or None
    if key_file and not os.path.exists(os.path.expanduser(key_file)):
        raise ConfigError(f"Remote key file not found: {key_file}")

    borg_command = section.get('borg_command', '').strip() or None

    target = RemoteTarget(
        remote=remote,
        check=check,
        key_file=key_file,
        timeout=command_timeout,
    )
    return target, borg_command


def _read_hook(section, key) -> Optional[str]:
    value = section.get(key, '').strip()
    if not value:
        return None
    if not os.path.isfile(value):
        raise ConfigError(f"{key} not found: {value}")
    if not os.access(value, os.X_OK):
        raise ConfigError(f"{key} is not executable: {value}")
    return value


def _read_bool(section, key, default) -> bool:
    try:
        return section.getboolean(key, fallback=default)
    except ValueError:
        raise ConfigError(f"{key} must be a boolean (true/false)")


def _read_timeout(section, key, default) -> Optional[float]:
    raw = section.get(key, '').strip()
    if not raw:
        return default
    if raw.lower() == 'none':
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number of seconds")
    if value <= 0:
        raise ConfigError(f"{key} must be positive")
    return value
