"""
Remote storage transports for backup artifacts.

Supports:
- RcloneStorage: Any rclone remote (`remote-name:path`), via the rclone CLI
- S3Storage: AWS S3 or an S3 compatible endpoint (`bucket:prefix`)
- SFTPStorage: A directory on an SSH host (`host:path`)
- LocalStorage: A mounted directory (`path` or `local:path`)

Objects are stored flat under the destination path; no directory nesting.
"""

import os
import json
import shutil
import logging
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from vpsbackup.models import RemoteObject
from vpsbackup.errors import StorageError

logger = logging.getLogger(__name__)


def split_destination(destination: str) -> Tuple[str, str]:
    """
    Split `<namespace>:<path>` into its two parts.

    A destination without a colon has an empty namespace.
    """
    if ':' not in destination:
        return '', destination
    namespace, path = destination.split(':', 1)
    return namespace, path


class RemoteStorage(ABC):
    """Operations the pipeline and restore need from a transport."""

    @abstractmethod
    def upload(self, local_path: str) -> str:
        """Copy a local file to the destination; returns the object name."""

    @abstractmethod
    def download(self, name: str, local_dir: str) -> str:
        """Copy an object into `local_dir`; returns the local path."""

    @abstractmethod
    def list_objects(self, prefix: str = '') -> List[RemoteObject]:
        """List objects whose name starts with `prefix`."""

    @abstractmethod
    def get_size(self, name: str) -> Optional[int]:
        """Size of an object in bytes, or None if it does not exist."""

    @abstractmethod
    def delete(self, name: str):
        """Delete an object."""

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the destination is reachable."""

    def close(self):
        """Release connections held by the transport."""

    @property
    def description(self) -> str:
        return self.__class__.__name__

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class RcloneStorage(RemoteStorage):
    """
    Handler for rclone remotes.

    Shells out to the rclone binary; remote configuration lives in rclone's
    own config file.
    """

    def __init__(self, remote_dir: str, rclone_binary: str = 'rclone', timeout: Optional[int] = None):
        """
        Initialize rclone storage handler.

        Args:
            remote_dir: rclone destination, e.g. `gdrive:backups`
            rclone_binary: rclone executable
            timeout: Per-command timeout in seconds (None for no limit)
        """
        self.remote_dir = remote_dir
        self.rclone_binary = rclone_binary
        self.timeout = timeout

    @property
    def description(self) -> str:
        return f"rclone {self.remote_dir}"

    def _remote_path(self, name: str) -> str:
        if self.remote_dir.endswith((':', '/')):
            return f"{self.remote_dir}{name}"
        return f"{self.remote_dir}/{name}"

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self.rclone_binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise StorageError(f"rclone is not installed ({self.rclone_binary} not found)")
        except subprocess.TimeoutExpired:
            raise StorageError(f"rclone {args[0]} timed out after {self.timeout} seconds")

        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            raise StorageError(f"rclone {args[0]} failed (exit code {result.returncode}): {stderr}")

        return result

    def upload(self, local_path: str) -> str:
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        self._run(['copy', local_path, self.remote_dir, '--retries', '3', '--low-level-retries', '10'])
        return os.path.basename(local_path)

    def download(self, name: str, local_dir: str) -> str:
        os.makedirs(local_dir, exist_ok=True)
        self._run(['copyto', self._remote_path(name), os.path.join(local_dir, name)])

        local_path = os.path.join(local_dir, name)
        if not os.path.exists(local_path):
            raise StorageError(f"Remote object not found: {name}")
        return local_path

    def list_objects(self, prefix: str = '') -> List[RemoteObject]:
        result = self._run(['lsjson', self.remote_dir, '--files-only'])

        try:
            entries = json.loads(result.stdout or '[]')
        except json.JSONDecodeError as e:
            raise StorageError(f"Unexpected rclone lsjson output: {e}")

        objects = []
        for entry in entries:
            name = entry.get('Name') or entry.get('Path')
            if not name or not name.startswith(prefix):
                continue
            objects.append(RemoteObject(
                name=name,
                size=int(entry.get('Size', 0)),
                modified=_parse_rclone_time(entry.get('ModTime')),
            ))
        return objects

    def get_size(self, name: str) -> Optional[int]:
        try:
            result = self._run(['size', self._remote_path(name), '--json'])
        except StorageError:
            logger.debug(f"rclone size failed for {name}", exc_info=True)
            return None

        try:
            info = json.loads(result.stdout or '{}')
        except json.JSONDecodeError:
            return None

        if not info.get('count'):
            return None
        return int(info.get('bytes', 0))

    def delete(self, name: str):
        self._run(['deletefile', self._remote_path(name), '--drive-use-trash=false'])

    def test_connection(self) -> bool:
        namespace, _ = split_destination(self.remote_dir)
        result = self._run(['listremotes'])
        remotes = [line.strip() for line in result.stdout.splitlines()]
        if namespace and f"{namespace}:" not in remotes:
            raise StorageError(f"Remote '{namespace}' not found in rclone configuration")

        self._run(['lsjson', self.remote_dir, '--max-depth', '1'])
        return True


def _parse_rclone_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # rclone emits RFC3339 with nanoseconds; trim to what fromisoformat accepts
    value = value.replace('Z', '+00:00')
    if '.' in value:
        head, tail = value.split('.', 1)
        digits = ''.join(c for c in tail if c.isdigit())
        zone = tail[len(digits):]
        value = f"{head}.{digits[:6]}{zone}"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class S3Storage(RemoteStorage):
    """
    Handler for AWS S3 and S3 compatible object stores.

    Objects are stored as `{prefix}/{name}` in the bucket.
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

    def __init__(self, bucket_name: str, prefix: str = '', access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix objects are stored under
            access_key: AWS access key ID (None uses the default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3 compatible stores
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region,
                endpoint_url=endpoint_url or None
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @property
    def description(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}"

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def upload(self, local_path: str) -> str:
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        name = os.path.basename(local_path)
        s3_key = self._key(name)

        try:
            file_size = os.path.getsize(local_path)

            # Use multipart upload for files larger than 100MB
            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            return name

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            # Abort so the store does not keep orphaned parts
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Warning: Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def download(self, name: str, local_dir: str) -> str:
        os.makedirs(local_dir, exist_ok=True)
        local_path = os.path.join(local_dir, name)

        try:
            self.s3_client.download_file(self.bucket_name, self._key(name), local_path)
            return local_path
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if os.path.exists(local_path):
                os.remove(local_path)
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 download failed: {e}")

    def list_objects(self, prefix: str = '') -> List[RemoteObject]:
        base = self._key('')
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=base + prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(base):]
                    # Flat layout: ignore anything in sub-"directories"
                    if not name or '/' in name:
                        continue
                    objects.append(RemoteObject(
                        name=name,
                        size=obj['Size'],
                        modified=obj['LastModified']
                    ))

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def get_size(self, name: str) -> Optional[int]:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(name))
            return response['ContentLength']
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return None
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}")

    def delete(self, name: str):
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._key(name)
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def test_connection(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class SFTPStorage(RemoteStorage):
    """
    Handler for a directory on a remote host via SSH/SFTP.

    The connection is opened on first use and kept until close().
    """

    def __init__(self, host: str, path: str, port: int = 22, username: Optional[str] = None,
                 password: Optional[str] = None, private_key: Optional[str] = None):
        """
        Initialize SFTP storage handler.

        Args:
            host: SSH hostname or IP
            path: Remote directory artifacts are stored in
            port: SSH port (default 22)
            username: SSH username
            password: SSH password (optional if using key)
            private_key: Path to private key file (optional)
        """
        self.host = host
        self.path = path.rstrip('/') or '/'
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key

        self.ssh_client = None
        self.sftp_client = None

    @property
    def description(self) -> str:
        return f"sftp://{self.host}:{self.port}{self.path}"

    def _remote_path(self, name: str) -> str:
        return f"{self.path}/{name}".replace('//', '/')

    def _connect(self):
        """
        Establish SSH connection if not already connected.

        Raises:
            StorageError: If connection fails
        """
        if self.sftp_client is not None:
            return self.sftp_client

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise StorageError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            return self.sftp_client

        except StorageError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def _ensure_directory(self, sftp):
        current = ''
        for part in self.path.strip('/').split('/'):
            current = f"{current}/{part}" if self.path.startswith('/') or current else part
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def upload(self, local_path: str) -> str:
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        sftp = self._connect()
        name = os.path.basename(local_path)
        try:
            self._ensure_directory(sftp)
            sftp.put(local_path, self._remote_path(name))
            return name
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP upload failed: {e}")

    def download(self, name: str, local_dir: str) -> str:
        sftp = self._connect()
        os.makedirs(local_dir, exist_ok=True)
        local_path = os.path.join(local_dir, name)
        try:
            sftp.get(self._remote_path(name), local_path)
            return local_path
        except FileNotFoundError:
            raise StorageError(f"Remote object not found: {name}")
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP download failed: {e}")

    def list_objects(self, prefix: str = '') -> List[RemoteObject]:
        sftp = self._connect()
        try:
            entries = sftp.listdir_attr(self.path)
        except FileNotFoundError:
            return []
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP list failed: {e}")

        objects = []
        for item in entries:
            # Skip directories (S_ISDIR)
            if item.st_mode is not None and item.st_mode & 0o040000:
                continue
            if not item.filename.startswith(prefix):
                continue
            objects.append(RemoteObject(
                name=item.filename,
                size=item.st_size or 0,
                modified=datetime.fromtimestamp(item.st_mtime) if item.st_mtime else None
            ))
        return objects

    def get_size(self, name: str) -> Optional[int]:
        sftp = self._connect()
        try:
            return sftp.stat(self._remote_path(name)).st_size
        except FileNotFoundError:
            return None
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP stat failed: {e}")

    def delete(self, name: str):
        sftp = self._connect()
        try:
            sftp.remove(self._remote_path(name))
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP delete failed: {e}")

    def test_connection(self) -> bool:
        sftp = self._connect()
        try:
            sftp.stat(self.path)
        except FileNotFoundError:
            raise StorageError(f"Remote directory does not exist: {self.path}")
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP connection test failed: {e}")
        return True

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException):
                logger.debug("Error closing SFTP client", exc_info=True)
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, paramiko.SSHException):
                logger.debug("Error closing SSH client", exc_info=True)
            self.ssh_client = None


class LocalStorage(RemoteStorage):
    """
    Handler for a locally mounted directory (NFS, external disk).
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory artifacts are stored in
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    @property
    def description(self) -> str:
        return f"local {self.base_path}"

    def upload(self, local_path: str) -> str:
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        name = os.path.basename(local_path)
        dest_path = self.base_path / name

        try:
            shutil.copy2(local_path, dest_path)
            return name
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def download(self, name: str, local_dir: str) -> str:
        source = self.base_path / name
        if not source.is_file():
            raise StorageError(f"Remote object not found: {name}")

        os.makedirs(local_dir, exist_ok=True)
        local_path = os.path.join(local_dir, name)
        try:
            shutil.copy2(source, local_path)
            return local_path
        except OSError as e:
            raise StorageError(f"Failed to copy {name}: {e}")

    def list_objects(self, prefix: str = '') -> List[RemoteObject]:
        if not self.base_path.exists():
            return []

        try:
            objects = []
            for file_path in self.base_path.iterdir():
                if file_path.is_file() and file_path.name.startswith(prefix):
                    stat = file_path.stat()
                    objects.append(RemoteObject(
                        name=file_path.name,
                        size=stat.st_size,
                        modified=datetime.fromtimestamp(stat.st_mtime)
                    ))
            return objects
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def get_size(self, name: str) -> Optional[int]:
        path = self.base_path / name
        if not path.is_file():
            return None
        return path.stat().st_size

    def delete(self, name: str):
        full_path = self.base_path / name

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def test_connection(self) -> bool:
        if not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Local storage directory is not writable: {self.base_path}")
        return True


def create_storage(config) -> RemoteStorage:
    """
    Factory function to create the transport named by the configuration.

    Args:
        config: BackupConfig

    Returns:
        RemoteStorage instance

    Raises:
        StorageError: If the destination cannot be used with the backend
    """
    namespace, path = split_destination(config.remote_dir)

    if config.storage == 'rclone':
        return RcloneStorage(config.remote_dir)
    elif config.storage == 's3':
        if not namespace:
            raise StorageError(f"S3 destination must be 'bucket:prefix', got {config.remote_dir!r}")
        return S3Storage(
            bucket_name=namespace,
            prefix=path,
            access_key=config.aws_access_key_id,
            secret_key=config.aws_secret_access_key,
            region=config.aws_region,
            endpoint_url=config.s3_endpoint_url
        )
    elif config.storage == 'sftp':
        if not namespace:
            raise StorageError(f"SFTP destination must be 'host:path', got {config.remote_dir!r}")
        return SFTPStorage(
            host=namespace,
            path=path or '.',
            port=config.sftp_port,
            username=config.sftp_username or None,
            password=config.sftp_password or None,
            private_key=config.sftp_private_key or None
        )
    elif config.storage == 'local':
        return LocalStorage(path or config.remote_dir)
    else:
        raise StorageError(f"Invalid storage backend: {config.storage}")
