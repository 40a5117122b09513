"""
Backup configuration.

The configuration is read once from the env file written by the setup wizard
(`KEY="value"` lines) and handed to every component as an immutable object.
Nothing downstream reads the process environment.
"""

import os
import shlex
import socket
from dataclasses import dataclass, field, fields, replace
from typing import Dict, Optional, Tuple

from vpsbackup.errors import ConfigError

DEFAULT_CONFIG_PATH = '/usr/local/bin/vps-backup.env'

STORAGE_BACKENDS = ('rclone', 's3', 'sftp', 'local')


@dataclass(frozen=True)
class BackupConfig:
    """Immutable backup configuration."""

    # Backup
    sources: Tuple[str, ...] = ()
    remote_dir: str = ''
    password: str = field(default='', repr=False)
    max_keep: int = 2
    hostname: str = ''

    # Local paths
    log_file: str = '/var/log/vps-backup.log'
    tmp_dir: str = '/tmp/vps-backups'
    lock_file: str = '/var/lock/vps-backup.lock'

    # Transport
    storage: str = 'rclone'

    # Telegram
    tg_bot_token: str = field(default='', repr=False)
    tg_chat_id: str = ''

    # S3
    aws_access_key_id: str = field(default='', repr=False)
    aws_secret_access_key: str = field(default='', repr=False)
    aws_region: str = 'us-east-1'
    s3_endpoint_url: str = ''

    # SFTP
    sftp_port: int = 22
    sftp_username: str = ''
    sftp_password: str = field(default='', repr=False)
    sftp_private_key: str = ''

    # Pipeline constants
    min_free_space: int = 1024 * 1024 * 1024  # 1GB
    upload_attempts: int = 3
    upload_retry_delay: float = 5.0

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.tg_bot_token and self.tg_chat_id)

    @property
    def pruning_enabled(self) -> bool:
        return self.max_keep > 0

    def validate_for_backup(self):
        """
        Check that everything a pipeline run needs is present.

        Raises:
            ConfigError: If a required setting is missing
        """
        if not self.sources:
            raise ConfigError("BACKUP_SRCS is not configured")
        if not self.remote_dir:
            raise ConfigError("BACKUP_REMOTE_DIR is not configured")
        if not self.password:
            raise ConfigError("BACKUP_PASSWORD is not configured")

    def validate_for_restore(self):
        """
        Check the settings needed to list and fetch snapshots.

        Raises:
            ConfigError: If the remote destination is missing
        """
        if not self.remote_dir:
            raise ConfigError("BACKUP_REMOTE_DIR is not configured")

    def with_password(self, password: str) -> 'BackupConfig':
        """Copy of this configuration using another passphrase."""
        return replace(self, password=password)


# env key -> (field name, converter)
ENV_KEYS = {
    'BACKUP_SRCS': ('sources', 'sources'),
    'BACKUP_REMOTE_DIR': ('remote_dir', 'str'),
    'BACKUP_PASSWORD': ('password', 'str'),
    'BACKUP_MAX_KEEP': ('max_keep', 'int'),
    'BACKUP_LOG_FILE': ('log_file', 'str'),
    'BACKUP_TMP_DIR': ('tmp_dir', 'str'),
    'BACKUP_LOCK_FILE': ('lock_file', 'str'),
    'BACKUP_STORAGE': ('storage', 'str'),
    'BACKUP_HOSTNAME': ('hostname', 'str'),
    'TG_BOT_TOKEN': ('tg_bot_token', 'str'),
    'TG_CHAT_ID': ('tg_chat_id', 'str'),
    'AWS_ACCESS_KEY_ID': ('aws_access_key_id', 'str'),
    'AWS_SECRET_ACCESS_KEY': ('aws_secret_access_key', 'str'),
    'AWS_REGION': ('aws_region', 'str'),
    'S3_ENDPOINT_URL': ('s3_endpoint_url', 'str'),
    'SFTP_PORT': ('sftp_port', 'int'),
    'SFTP_USERNAME': ('sftp_username', 'str'),
    'SFTP_PASSWORD': ('sftp_password', 'str'),
    'SFTP_PRIVATE_KEY': ('sftp_private_key', 'str'),
}


def parse_env_file(path: str) -> Dict[str, str]:
    """
    Parse a shell env file without executing it.

    Supports `KEY=value`, `KEY="value"`, `export KEY=value` and `#` comments.

    Args:
        path: Path of the env file

    Returns:
        Dict of raw string values

    Raises:
        ConfigError: If the file cannot be read or a line cannot be parsed
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {path}: {e}")

    values = {}
    for lineno, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue

        try:
            tokens = shlex.split(stripped, comments=True)
        except ValueError as e:
            raise ConfigError(f"{path}:{lineno}: {e}")

        if tokens and tokens[0] == 'export':
            tokens = tokens[1:]
        if not tokens:
            continue
        if len(tokens) != 1 or '=' not in tokens[0]:
            raise ConfigError(f"{path}:{lineno}: expected KEY=value")

        key, value = tokens[0].split('=', 1)
        values[key.strip()] = value

    return values


def _split_sources(raw: str) -> Tuple[str, ...]:
    # Duplicates carry no meaning; keep the first occurrence's position
    sources = []
    for item in raw.split('|'):
        item = item.strip()
        if item and item not in sources:
            sources.append(item)
    return tuple(sources)


def _to_int(key: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def config_from_mapping(values: Dict[str, str], **overrides) -> BackupConfig:
    """
    Build a BackupConfig from raw env values.

    Args:
        values: Raw `KEY -> value` strings (unknown keys are ignored)
        **overrides: Field values that take precedence over the file

    Returns:
        Validated BackupConfig

    Raises:
        ConfigError: If a value is malformed
    """
    kwargs = {}
    for key, (name, kind) in ENV_KEYS.items():
        raw = values.get(key)
        if raw is None or raw == '':
            continue
        if kind == 'sources':
            kwargs[name] = _split_sources(raw)
        elif kind == 'int':
            kwargs[name] = _to_int(key, raw)
        else:
            kwargs[name] = raw

    known = {f.name for f in fields(BackupConfig)}
    for name, value in overrides.items():
        if name not in known:
            raise ConfigError(f"Unknown configuration field: {name}")
        if value is not None:
            kwargs[name] = tuple(value) if name == 'sources' else value

    if not kwargs.get('hostname'):
        kwargs['hostname'] = socket.gethostname()

    config = BackupConfig(**kwargs)

    if config.storage not in STORAGE_BACKENDS:
        raise ConfigError(
            f"Invalid storage backend: {config.storage}. "
            f"Valid options: {list(STORAGE_BACKENDS)}"
        )
    if config.max_keep < 0:
        raise ConfigError(f"BACKUP_MAX_KEEP must be >= 0, got {config.max_keep}")
    if '/' in config.hostname or not config.hostname:
        raise ConfigError(f"Invalid hostname for artifact names: {config.hostname!r}")

    return config


def load_config(path: Optional[str] = None, **overrides) -> BackupConfig:
    """
    Load configuration from the wizard's env file.

    Args:
        path: Env file path (default: /usr/local/bin/vps-backup.env)
        **overrides: Field values that take precedence over the file

    Returns:
        BackupConfig instance
    """
    path = path or DEFAULT_CONFIG_PATH
    values = parse_env_file(os.path.expanduser(path))
    return config_from_mapping(values, **overrides)
