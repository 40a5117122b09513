"""
Restore counterpart of the backup pipeline.

Downloads a snapshot, checks it against its `.sha256` companion, decrypts and
extracts it. Verification decrypts and lists the archive as a stream without
ever writing plaintext to disk. Restore takes no lock; it only reads the
remote store.
"""

import os
import shutil
import logging
import tarfile
import tempfile
from typing import List, Optional

from vpsbackup.config import BackupConfig
from vpsbackup.errors import RestoreError, StorageError
from vpsbackup.models import RemoteObject, parse_snapshot_name, snapshot_prefix, CHECKSUM_SUFFIX
from vpsbackup.utils.crypto import FileCipher
from .checksum import compute_checksum, read_checksum_file
from .storage import RemoteStorage, create_storage

logger = logging.getLogger(__name__)


class RestoreManager:
    """
    Lists, restores and verifies remote snapshots.
    """

    def __init__(self, config: BackupConfig, storage: Optional[RemoteStorage] = None,
                 cipher: Optional[FileCipher] = None):
        """
        Initialize restore manager.

        Args:
            config: Backup configuration (passphrase may be empty if `cipher` is given)
            storage: Remote transport (default: built from the configuration)
            cipher: Decryption engine (default: FileCipher with the configured passphrase)
        """
        self.config = config
        self.storage = storage or create_storage(config)
        self.cipher = cipher

    def _get_cipher(self) -> FileCipher:
        if self.cipher is None:
            if not self.config.password:
                raise RestoreError("Decryption passphrase is required")
            self.cipher = FileCipher(self.config.password)
        return self.cipher

    def list_backups(self, hostname: Optional[str] = None) -> List[RemoteObject]:
        """
        List encrypted artifacts, newest first.

        Args:
            hostname: Only this host's snapshots (default: all hosts)

        Raises:
            StorageError: If listing fails
        """
        prefix = snapshot_prefix(hostname) if hostname else 'backup-'
        objects = self.storage.list_objects(prefix=prefix)

        snapshots = []
        for obj in objects:
            parsed = parse_snapshot_name(obj.name)
            if parsed is None:
                continue
            if hostname and parsed[0] != hostname:
                continue
            snapshots.append(obj)

        # Timestamp first so snapshots of different hosts interleave by age
        return sorted(
            snapshots,
            key=lambda obj: (parse_snapshot_name(obj.name)[1], obj.name),
            reverse=True
        )

    def latest(self, hostname: Optional[str] = None) -> RemoteObject:
        """
        Most recent snapshot.

        Raises:
            RestoreError: If there are no snapshots
        """
        backups = self.list_backups(hostname)
        if not backups:
            raise RestoreError("No backups found")
        return backups[0]

    def restore(self, name: str, restore_dir: str) -> List[str]:
        """
        Download, verify, decrypt and extract one snapshot.

        Args:
            name: Encrypted artifact name
            restore_dir: Directory to extract into (created if missing)

        Returns:
            Top-level names extracted into restore_dir

        Raises:
            RestoreError: On download failure, checksum mismatch, bad archive
            DecryptionError: On wrong passphrase or corrupted ciphertext
        """
        self._check_name(name)
        cipher = self._get_cipher()
        os.makedirs(restore_dir, exist_ok=True)

        encrypted_path = os.path.join(restore_dir, name)
        decrypted_path = encrypted_path[:-len('.enc')]

        try:
            logger.info(f"Downloading {name}...")
            self._download(name, restore_dir)
            self._verify_checksum(name, encrypted_path)

            logger.info("Decrypting backup...")
            cipher.decrypt_file(encrypted_path, decrypted_path)
            os.remove(encrypted_path)

            logger.info(f"Extracting to {restore_dir}...")
            members = self._extract(decrypted_path, restore_dir)

        finally:
            for path in (encrypted_path, decrypted_path):
                if os.path.exists(path):
                    os.remove(path)

        logger.info(f"Restore completed: {name} -> {restore_dir}")
        return members

    def verify(self, name: str) -> int:
        """
        Check that a snapshot downloads, matches its checksum and decrypts
        into a readable archive. No plaintext is written to disk.

        Args:
            name: Encrypted artifact name

        Returns:
            Number of archive members

        Raises:
            RestoreError: On download failure, checksum mismatch, bad archive
            DecryptionError: On wrong passphrase or corrupted ciphertext
        """
        self._check_name(name)
        cipher = self._get_cipher()
        temp_dir = tempfile.mkdtemp(prefix='vps-backup-verify-')

        try:
            logger.info(f"Verifying: {name}")
            encrypted_path = self._download(name, temp_dir)
            self._verify_checksum(name, encrypted_path)

            with cipher.open_decrypted(encrypted_path) as stream:
                try:
                    with tarfile.open(fileobj=stream, mode='r|gz') as tar:
                        count = sum(1 for _ in tar)
                    # Drain padding after the end-of-archive marker so the tag is checked
                    while stream.read(1024 * 1024):
                        pass
                except (tarfile.TarError, EOFError, OSError) as e:
                    # Authenticate the rest first: a wrong key also yields garbage
                    while stream.read(1024 * 1024):
                        pass
                    raise RestoreError(f"Backup decrypts but the archive is corrupt: {e}")

            logger.info(f"Backup verified: {count} entries")
            return count

        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _check_name(self, name: str):
        if parse_snapshot_name(name) is None or os.path.basename(name) != name:
            raise RestoreError(f"Not a backup artifact name: {name}")

    def _download(self, name: str, local_dir: str) -> str:
        try:
            return self.storage.download(name, local_dir)
        except StorageError as e:
            raise RestoreError(f"Download failed: {e}")

    def _verify_checksum(self, name: str, encrypted_path: str):
        """Compare against the remote companion; its absence is only a warning."""
        checksum_name = name + CHECKSUM_SUFFIX
        checksum_dir = tempfile.mkdtemp(prefix='vps-backup-sum-')

        try:
            try:
                checksum_path = self.storage.download(checksum_name, checksum_dir)
            except StorageError:
                logger.warning(f"Warning: Checksum file {checksum_name} not found, skipping verification")
                return

            try:
                expected = read_checksum_file(checksum_path)
            except ValueError as e:
                raise RestoreError(str(e))

            actual = compute_checksum(encrypted_path)
            if actual != expected:
                raise RestoreError(
                    f"Checksum mismatch for {name} (expected: {expected}, actual: {actual})"
                )
            logger.info("Checksum verified")

        finally:
            shutil.rmtree(checksum_dir, ignore_errors=True)

    def _extract(self, archive_path: str, restore_dir: str) -> List[str]:
        try:
            with tarfile.open(archive_path, 'r:gz') as tar:
                members = tar.getmembers()
                tar.extractall(restore_dir, filter='data')
        except (tarfile.TarError, EOFError) as e:
            raise RestoreError(f"Failed to extract archive: {e}")

        top_level = []
        for member in members:
            head = member.name.split('/', 1)[0]
            if head and head not in top_level:
                top_level.append(head)
        return top_level
