"""
Command line interface for the backup pipeline.

    vpsbackup run                 run one backup (what cron calls)
    vpsbackup list                list remote snapshots
    vpsbackup restore [NAME]      download, decrypt and extract a snapshot
    vpsbackup verify [NAME]       check a snapshot without writing plaintext
    vpsbackup check               configuration self-test
    vpsbackup status              configuration and last completed run
    vpsbackup logs                tail of the run log
"""

import os
import sys
import signal
import logging
import tempfile
from collections import deque

import click

from vpsbackup import configure_logging, __version__
from vpsbackup.config import DEFAULT_CONFIG_PATH, load_config
from vpsbackup.models import format_size
from vpsbackup.errors import BackupError, ConfigError
from vpsbackup.backup.executor import BackupExecutor, COMPLETION_MARKER
from vpsbackup.backup.restore import RestoreManager
from vpsbackup.backup.storage import create_storage
from vpsbackup.utils.crypto import FileCipher
from vpsbackup.utils.notify import TelegramNotifier

logger = logging.getLogger(__name__)


def _raise_system_exit(signum, frame):
    # Route SIGTERM through the same finally blocks as a normal exit
    raise SystemExit(128 + signum)


def _load(ctx, require=None):
    """Load configuration once per invocation and set up logging."""
    if 'config' not in ctx.obj:
        try:
            config = load_config(ctx.obj['config_path'])
        except ConfigError as e:
            raise click.ClickException(str(e))
        configure_logging(config.log_file, debug=ctx.obj['debug'])
        ctx.obj['config'] = config

    config = ctx.obj['config']
    try:
        if require == 'backup':
            config.validate_for_backup()
        elif require == 'restore':
            config.validate_for_restore()
    except ConfigError as e:
        raise click.ClickException(str(e))
    return config


def _restore_manager(config) -> RestoreManager:
    if not config.password:
        password = click.prompt('Enter decryption password', hide_input=True)
        config = config.with_password(password)
    try:
        return RestoreManager(config)
    except BackupError as e:
        raise click.ClickException(str(e))


def _select_backup(manager: RestoreManager, name, latest: bool, action: str) -> str:
    if name:
        return name

    try:
        backups = manager.list_backups()
    except BackupError as e:
        raise click.ClickException(str(e))

    if not backups:
        raise click.ClickException("No backups found")
    if latest:
        return backups[0].name

    click.echo("Available backups:")
    for index, obj in enumerate(backups, start=1):
        click.echo(f"  {index}) {obj.name}  ({format_size(obj.size)})")

    selection = click.prompt(
        f"Select backup number to {action}",
        type=click.IntRange(1, len(backups))
    )
    return backups[selection - 1].name


@click.group()
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_PATH, show_default=True,
              type=click.Path(dir_okay=False), help='Backup configuration env file')
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.version_option(__version__, prog_name='vpsbackup')
@click.pass_context
def cli(ctx, config_path, debug):
    """Encrypted VPS backups to remote storage."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['debug'] = debug


@cli.command()
@click.pass_context
def run(ctx):
    """Run the backup pipeline once."""
    config = _load(ctx, require='backup')

    previous = signal.signal(signal.SIGTERM, _raise_system_exit)
    try:
        result = BackupExecutor(config).execute()
    finally:
        signal.signal(signal.SIGTERM, previous)

    if not result.succeeded:
        click.echo(f"Backup failed: {result.error_message}", err=True)
        ctx.exit(1)

    click.echo(f"Backup completed: {result.artifact.encrypted_name} ({format_size(result.artifact_size)})")


@cli.command('list')
@click.option('--host', 'hostname', default=None, help='Only snapshots of this host')
@click.pass_context
def list_command(ctx, hostname):
    """List remote snapshots, newest first."""
    config = _load(ctx, require='restore')

    try:
        manager = RestoreManager(config)
        backups = manager.list_backups(hostname)
    except BackupError as e:
        raise click.ClickException(str(e))

    if not backups:
        click.echo("No backups found")
        return

    total = 0
    for obj in backups:
        modified = obj.modified.strftime('%Y-%m-%d %H:%M:%S') if obj.modified else '-'
        click.echo(f"{modified}  {format_size(obj.size):>10}  {obj.name}")
        total += obj.size
    click.echo(f"\n{len(backups)} backup(s), {format_size(total)} total")


@cli.command()
@click.argument('name', required=False)
@click.option('--target', 'target_dir', default=None, type=click.Path(file_okay=False),
              help='Directory to restore into')
@click.option('--latest', is_flag=True, help='Restore the most recent snapshot')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def restore(ctx, name, target_dir, latest, yes):
    """Download, decrypt and extract a snapshot."""
    config = _load(ctx, require='restore')
    manager = _restore_manager(config)
    name = _select_backup(manager, name, latest, 'restore')

    if target_dir is None:
        default_dir = os.path.join(tempfile.gettempdir(), f"vps-restore-{os.getpid()}")
        target_dir = default_dir if yes else click.prompt('Restore to directory', default=default_dir)

    click.echo(f"Selected backup: {name}")
    if not yes:
        click.confirm(f"Restore into {target_dir}?", abort=True)

    try:
        members = manager.restore(name, target_dir)
    except BackupError as e:
        raise click.ClickException(str(e))

    click.echo(f"Extracted to: {target_dir}")
    for member in members:
        click.echo(f"  {member}")
    click.echo("Verify the restored files before copying them to their original locations.")


@cli.command()
@click.argument('name', required=False)
@click.option('--latest', is_flag=True, help='Verify the most recent snapshot')
@click.pass_context
def verify(ctx, name, latest):
    """Check that a snapshot downloads, matches its checksum and decrypts."""
    config = _load(ctx, require='restore')
    manager = _restore_manager(config)
    name = _select_backup(manager, name, latest, 'verify')

    try:
        count = manager.verify(name)
    except BackupError as e:
        raise click.ClickException(f"Verification failed: {e}")

    click.echo(f"OK: {name} ({count} entries)")


@cli.command()
@click.option('--send-test', is_flag=True, help='Send a Telegram test message')
@click.pass_context
def check(ctx, send_test):
    """Test sources, remote storage, encryption and notifications."""
    config = _load(ctx)
    ok = True

    click.echo("Test 1: Checking backup sources...")
    if not config.sources:
        click.echo("  ✗ BACKUP_SRCS is empty")
        ok = False
    for src in config.sources:
        if os.path.exists(src):
            click.echo(f"  ✓ {src}")
        else:
            click.echo(f"  ✗ {src} (not found)")
            ok = False

    click.echo("Test 2: Checking remote storage...")
    try:
        with create_storage(config) as storage:
            storage.test_connection()
            click.echo(f"  ✓ {storage.description} is accessible")
    except BackupError as e:
        click.echo(f"  ✗ {e}")
        ok = False

    click.echo("Test 3: Testing encryption...")
    if config.password:
        if _encryption_round_trip(config.password):
            click.echo("  ✓ Encryption works")
        else:
            click.echo("  ✗ Encryption test failed")
            ok = False
    else:
        click.echo("  ✗ Encryption password not set")
        ok = False

    click.echo("Test 4: Checking Telegram notifications...")
    notifier = TelegramNotifier(config.tg_bot_token, config.tg_chat_id)
    if not notifier.enabled:
        click.echo("  ⚠ Telegram notifications disabled")
    elif send_test:
        if notifier.notify_test(config.hostname):
            click.echo("  ✓ Test message sent")
        else:
            click.echo("  ✗ Failed to send message")
            ok = False
    else:
        click.echo("  ✓ Telegram credentials configured")

    if not ok:
        ctx.exit(1)


def _encryption_round_trip(password: str) -> bool:
    cipher = FileCipher(password)
    with tempfile.TemporaryDirectory(prefix='vps-backup-check-') as temp_dir:
        plain = os.path.join(temp_dir, 'test')
        encrypted = plain + '.enc'
        decrypted = plain + '.out'
        with open(plain, 'wb') as f:
            f.write(b'test\n')
        try:
            cipher.encrypt_file(plain, encrypted)
            cipher.decrypt_file(encrypted, decrypted)
        except BackupError as e:
            logger.debug(f"Encryption round trip failed: {e}")
            return False
        with open(decrypted, 'rb') as f:
            return f.read() == b'test\n'


@cli.command()
@click.pass_context
def status(ctx):
    """Show configuration and the last completed run."""
    config = _load(ctx)

    click.echo(f"Hostname:          {config.hostname}")
    click.echo(f"Sources:           {', '.join(config.sources) or '-'}")
    click.echo(f"Remote:            {config.remote_dir or '-'} ({config.storage})")
    click.echo(f"Max backups:       {config.max_keep if config.pruning_enabled else 'unlimited'}")
    click.echo(f"Encryption:        {'configured' if config.password else 'NOT SET'}")
    click.echo(f"Telegram:          {'enabled' if config.notifications_enabled else 'disabled'}")
    click.echo(f"Log file:          {config.log_file}")

    last = last_completed_run(config.log_file)
    click.echo(f"Last backup:       {last or 'never'}")


def last_completed_run(log_file: str):
    """Return the last completion line of the run log, or None."""
    if not os.path.exists(log_file):
        return None

    last = None
    with open(log_file, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            if COMPLETION_MARKER in line:
                last = line.strip()
    return last


@cli.command()
@click.option('--lines', '-n', default=50, show_default=True, type=click.IntRange(min=1),
              help='Number of lines to show')
@click.pass_context
def logs(ctx, lines):
    """Show the tail of the run log."""
    config = _load(ctx)

    if not os.path.exists(config.log_file):
        raise click.ClickException(f"Log file not found: {config.log_file}")

    with open(config.log_file, 'r', encoding='utf-8', errors='replace') as f:
        tail = deque(f, maxlen=lines)
    click.echo(''.join(tail), nl=False)


def main():
    cli(obj={})


if __name__ == '__main__':
    sys.exit(main())
