"""
Shared pytest fixtures for vpsbackup tests.

This module provides fixtures for:
- Backup configuration pointing into tmp_path
- A fast FileCipher (low KDF iteration count)
- An in-memory remote storage with failure injection
- Mock fixtures for external services (S3, SSH)
- Temporary source trees
"""

import os
import logging
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from vpsbackup.config import BackupConfig
from vpsbackup.errors import StorageError
from vpsbackup.models import RemoteObject
from vpsbackup.backup.storage import RemoteStorage
from vpsbackup.utils.crypto import FileCipher

TEST_PASSWORD = 'test_password_123'
TEST_ITERATIONS = 1000


class FakeStorage(RemoteStorage):
    """
    In-memory remote store.

    `size_mismatches` makes get_size() report a wrong size for the first N checks;
    `upload_failures` makes the first N uploads raise StorageError.
    """

    def __init__(self, size_mismatches=0, upload_failures=0, fail_delete=()):
        self.objects = {}
        self.size_mismatches = size_mismatches
        self.upload_failures = upload_failures
        self.fail_delete = set(fail_delete)
        self.uploads = []
        self.deleted = []
        self.closed = False

    def upload(self, local_path):
        name = os.path.basename(local_path)
        self.uploads.append(name)
        if self.upload_failures > 0:
            self.upload_failures -= 1
            raise StorageError("connection reset")
        with open(local_path, 'rb') as f:
            self.objects[name] = f.read()
        return name

    def download(self, name, local_dir):
        if name not in self.objects:
            raise StorageError(f"Remote object not found: {name}")
        os.makedirs(local_dir, exist_ok=True)
        local_path = os.path.join(local_dir, name)
        with open(local_path, 'wb') as f:
            f.write(self.objects[name])
        return local_path

    def list_objects(self, prefix=''):
        return [
            RemoteObject(name=name, size=len(data), modified=datetime(2025, 1, 1))
            for name, data in self.objects.items()
            if name.startswith(prefix)
        ]

    def get_size(self, name):
        if name not in self.objects:
            return None
        if self.size_mismatches > 0:
            self.size_mismatches -= 1
            return len(self.objects[name]) - 1
        return len(self.objects[name])

    def delete(self, name):
        if name in self.fail_delete:
            raise StorageError(f"delete refused: {name}")
        self.deleted.append(name)
        self.objects.pop(name, None)

    def test_connection(self):
        return True

    def close(self):
        self.closed = True

    def put(self, name, data=b'x'):
        self.objects[name] = data


@pytest.fixture(autouse=True)
def reset_package_logger():
    """
    Undo configure_logging() between tests.

    configure_logging() disables propagation, which would hide records from caplog.
    """
    yield
    package_logger = logging.getLogger('vpsbackup')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def cipher():
    """FileCipher with a low iteration count so tests stay fast."""
    return FileCipher(TEST_PASSWORD, iterations=TEST_ITERATIONS)


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def source_tree(tmp_path):
    """
    Create source paths for a backup.

    Creates:
    - src/nginx/nginx.conf
    - src/nginx/sites/default
    - src/.bashrc
    """
    src = tmp_path / 'src'
    nginx = src / 'nginx'
    (nginx / 'sites').mkdir(parents=True)
    (nginx / 'nginx.conf').write_text('worker_processes auto;\n')
    (nginx / 'sites' / 'default').write_text('server { listen 80; }\n')
    (src / '.bashrc').write_text('alias ll="ls -l"\n')
    return src


@pytest.fixture
def backup_config(tmp_path, source_tree):
    """Configuration with every path inside tmp_path."""
    return BackupConfig(
        sources=(str(source_tree / 'nginx'), str(source_tree / '.bashrc')),
        remote_dir=str(tmp_path / 'remote'),
        password=TEST_PASSWORD,
        max_keep=2,
        hostname='host1',
        log_file=str(tmp_path / 'logs' / 'vps-backup.log'),
        tmp_dir=str(tmp_path / 'scratch'),
        lock_file=str(tmp_path / 'lock' / 'vps-backup.lock'),
        storage='local',
        min_free_space=0,
        upload_retry_delay=0,
    )


@pytest.fixture
def env_file(tmp_path, source_tree):
    """Env file in the format the setup wizard writes."""
    path = tmp_path / 'vps-backup.env'
    path.write_text(
        '# VPS Backup Configuration\n'
        '\n'
        '# Backup sources (separated by |)\n'
        f'BACKUP_SRCS="{source_tree / "nginx"}|{source_tree / ".bashrc"}"\n'
        f'BACKUP_REMOTE_DIR="{tmp_path / "remote"}"\n'
        'BACKUP_PASSWORD="s3cr3t pass"\n'
        'TG_BOT_TOKEN=""\n'
        'TG_CHAT_ID=""\n'
        'BACKUP_MAX_KEEP="3"\n'
        f'BACKUP_LOG_FILE="{tmp_path / "vps-backup.log"}"\n'
        f'BACKUP_TMP_DIR="{tmp_path / "scratch"}"\n'
        f'BACKUP_LOCK_FILE="{tmp_path / "vps-backup.lock"}"\n'
        'BACKUP_STORAGE="local"\n'
        'BACKUP_HOSTNAME="host1"\n'
    )
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('vpsbackup.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def mock_notifier():
    notifier = MagicMock()
    notifier.enabled = True
    return notifier


@pytest.fixture
def storage_factory():
    """FakeStorage class, for tests that need failure injection."""
    return FakeStorage
