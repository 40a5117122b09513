"""
Backup executor - orchestrates one pipeline run.

Workflow (each step advances the run state):
1. Acquire the host lock                      INIT      -> LOCKED
2. Check free space in the scratch area       LOCKED    -> SPACE_OK
3. Pack the sources into a tar.gz             SPACE_OK  -> ARCHIVED
4. Encrypt it, delete the plaintext           ARCHIVED  -> ENCRYPTED
5. Write the SHA-256 companion                ENCRYPTED -> HASHED
6. Upload with size verification              HASHED    -> UPLOADED
7. Prune snapshots beyond the retention count UPLOADED  -> PRUNED
8. Notify success                             PRUNED    -> DONE

Any failure moves the run to FAILED, notifies, and still removes the scratch
directory and releases the lock.
"""

import os
import time
import shutil
import logging
import tempfile
from datetime import datetime
from typing import Callable, Optional

from vpsbackup.config import BackupConfig
from vpsbackup.errors import BackupError, EncryptionFailed, InsufficientSpace, StorageError
from vpsbackup.models import RunResult, RunState, SnapshotArtifact, format_size
from vpsbackup.utils.crypto import FileCipher
from vpsbackup.utils.notify import TelegramNotifier
from .checksum import write_checksum_file
from .compression import create_archive, get_archive_size
from .encryption import encrypt_archive
from .lock import LockManager
from .retention import RetentionManager
from .storage import RemoteStorage, create_storage
from .upload import UploadController

logger = logging.getLogger(__name__)

COMPLETION_MARKER = 'pipeline completed'

# Forward transitions; FAILED is reachable from every non-terminal state
TRANSITIONS = {
    RunState.INIT: RunState.LOCKED,
    RunState.LOCKED: RunState.SPACE_OK,
    RunState.SPACE_OK: RunState.ARCHIVED,
    RunState.ARCHIVED: RunState.ENCRYPTED,
    RunState.ENCRYPTED: RunState.HASHED,
    RunState.HASHED: RunState.UPLOADED,
    RunState.UPLOADED: RunState.PRUNED,
    RunState.PRUNED: RunState.DONE,
}


def get_free_space(path: str) -> int:
    """Free bytes on the filesystem holding `path`."""
    return shutil.disk_usage(path).free


class _RunLogCollector(logging.Handler):
    """Copies every package log record of a run into RunResult.logs."""

    def __init__(self, logs):
        super().__init__(logging.DEBUG)
        self.logs = logs
        self.setFormatter(logging.Formatter('[%(asctime)s] %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))

    def emit(self, record):
        self.logs.append(self.format(record))


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one host.
    """

    def __init__(self, config: BackupConfig, storage: Optional[RemoteStorage] = None,
                 notifier: Optional[TelegramNotifier] = None, cipher: Optional[FileCipher] = None,
                 lock: Optional[LockManager] = None, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize backup executor.

        Args:
            config: Backup configuration
            storage: Remote transport (default: built from the configuration)
            notifier: Notification channel (default: Telegram from the configuration)
            cipher: Encryption engine (default: FileCipher with the configured passphrase)
            lock: Lock manager (default: the configured lock file)
            sleep: Delay function used between upload attempts
        """
        self.config = config
        self.storage = storage
        self.notifier = notifier or TelegramNotifier(config.tg_bot_token, config.tg_chat_id)
        self.cipher = cipher
        self.lock = lock or LockManager(config.lock_file)
        self.sleep = sleep

        self.result = None
        self.temp_dir = None
        self._owns_storage = storage is None

    @property
    def state(self) -> RunState:
        return self.result.state if self.result else RunState.INIT

    def execute(self) -> RunResult:
        """
        Execute one pipeline run.

        Returns:
            RunResult in state DONE or FAILED

        Raises:
            KeyboardInterrupt, SystemExit: Re-raised after cleanup when the
                run is interrupted by a signal
        """
        self.result = RunResult()
        collector = _RunLogCollector(self.result.logs)
        package_logger = logging.getLogger('vpsbackup')
        package_logger.addHandler(collector)

        try:
            self._execute_workflow()

        except BackupError as e:
            self._fail(e)

        except (KeyboardInterrupt, SystemExit):
            self._fail("Backup interrupted")
            raise

        except Exception as e:
            logger.exception("Unexpected error during backup")
            self._fail(f"Unexpected error: {e}")

        finally:
            self._cleanup()
            package_logger.removeHandler(collector)

        return self.result

    def _execute_workflow(self):
        config = self.config

        # Step 1: Lock
        self.lock.acquire()
        self._advance(RunState.LOCKED)

        # Step 2: Free space
        os.makedirs(config.tmp_dir, exist_ok=True)
        available = get_free_space(config.tmp_dir)
        if available < config.min_free_space:
            raise InsufficientSpace(available, config.min_free_space)
        self._advance(RunState.SPACE_OK)

        artifact = SnapshotArtifact.create(config.hostname, datetime.now())
        self.result.artifact = artifact

        logger.info(f"Starting backup process - {artifact.timestamp}")
        self.notifier.notify_start(config.hostname, artifact.timestamp)

        self.temp_dir = tempfile.mkdtemp(prefix='vps-backup-', dir=config.tmp_dir)
        archive_path = os.path.join(self.temp_dir, artifact.archive_name)
        encrypted_path = os.path.join(self.temp_dir, artifact.encrypted_name)
        checksum_path = os.path.join(self.temp_dir, artifact.checksum_name)

        # Step 3: Archive
        logger.info("Compressing backup...")
        archive = create_archive(list(config.sources), self.temp_dir, artifact.archive_name)
        self.result.skipped_sources = archive.skipped
        logger.info(f"Archive created ({format_size(get_archive_size(archive.path))})")
        self._advance(RunState.ARCHIVED)

        # Step 4: Encrypt
        logger.info("Encrypting backup...")
        encrypt_archive(self._get_cipher(), archive_path, encrypted_path)
        self._advance(RunState.ENCRYPTED)

        # Step 5: Checksum
        logger.info("Generating checksum...")
        write_checksum_file(encrypted_path, checksum_path)
        self.result.artifact_size = os.path.getsize(encrypted_path)
        self._advance(RunState.HASHED)

        # Step 6: Upload
        storage = self._get_storage()
        logger.info(f"Uploading to {config.remote_dir}...")
        uploader = UploadController(
            storage,
            max_attempts=config.upload_attempts,
            retry_delay=config.upload_retry_delay,
            sleep=self.sleep
        )
        uploader.upload(encrypted_path, checksum_path)
        os.remove(encrypted_path)
        os.remove(checksum_path)
        self._advance(RunState.UPLOADED)

        # Step 7: Retention
        retention = RetentionManager(storage, config.hostname, config.max_keep)
        if config.pruning_enabled:
            logger.info("Cleaning up old backups...")
            try:
                summary = retention.enforce(protect=artifact.encrypted_name)
                self.result.pruned = summary['deleted']
                self.result.warnings.extend(str(w) for w in summary['warnings'])
            except StorageError as e:
                logger.warning(f"Warning: Failed to list remote backups for pruning: {e}")
        else:
            logger.info("Retention disabled (BACKUP_MAX_KEEP=0), skipping cleanup")
        self._advance(RunState.PRUNED)

        # Step 8: Done
        self.result.snapshots_kept = retention.count_snapshots()
        self._advance(RunState.DONE)
        self.notifier.notify_success(
            config.hostname,
            artifact.encrypted_name,
            self.result.artifact_size,
            self.result.snapshots_kept
        )
        logger.info(
            f"Backup {COMPLETION_MARKER}: {artifact.encrypted_name} "
            f"({format_size(self.result.artifact_size)})"
        )

    def _advance(self, target: RunState):
        expected = TRANSITIONS.get(self.result.state)
        if expected is not target:
            raise RuntimeError(f"Invalid state transition {self.result.state.name} -> {target.name}")
        logger.debug(f"State: {self.result.state.name} -> {target.name}")
        self.result.state = target

    def _fail(self, error):
        message = str(error)
        self.result.failed_from = self.result.state
        self.result.state = RunState.FAILED
        self.result.error_message = message

        logger.error(f"Backup failed: {message}")
        self.notifier.notify_failure(self.config.hostname, message)

    def _get_storage(self) -> RemoteStorage:
        if self.storage is None:
            self.storage = create_storage(self.config)
        return self.storage

    def _get_cipher(self) -> FileCipher:
        if self.cipher is None:
            if not self.config.password:
                raise EncryptionFailed("Encryption passphrase is not configured")
            self.cipher = FileCipher(self.config.password)
        return self.cipher

    def _cleanup(self):
        """Remove the scratch directory and release everything the run holds."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                logger.debug("Cleaned up temporary directory")
            except OSError as e:
                logger.warning(f"Warning: Failed to cleanup temp directory: {e}")

        if self._owns_storage and self.storage is not None:
            self.storage.close()

        # A busy lock belongs to the other run; only release our own
        if self.lock.acquired:
            self.lock.release()


def run_backup(config: BackupConfig) -> RunResult:
    """
    Run the pipeline with default collaborators.

    Args:
        config: Backup configuration

    Returns:
        RunResult of the run
    """
    config.validate_for_backup()
    executor = BackupExecutor(config)
    return executor.execute()
