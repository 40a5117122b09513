"""
Upload controller: bounded, size-verified transfer of one artifact.
"""

import os
import time
import logging
from typing import Callable, Optional

from vpsbackup.errors import StorageError, UploadFailed
from .storage import RemoteStorage

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY = 5  # seconds


class UploadController:
    """
    Transfers an artifact and its checksum companion to remote storage.

    Each attempt copies the artifact and then compares the remote size with
    the local size. A size mismatch consumes the attempt and is retried; it
    is never treated as success.
    """

    def __init__(self, storage: RemoteStorage, max_attempts: int = MAX_ATTEMPTS,
                 retry_delay: float = RETRY_DELAY, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize upload controller.

        Args:
            storage: Transport to upload to
            max_attempts: Number of transfer attempts before giving up
            retry_delay: Seconds to wait between attempts
            sleep: Blocking sleep function (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.storage = storage
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.attempts = 0

    def upload(self, artifact_path: str, checksum_path: Optional[str] = None) -> str:
        """
        Upload the artifact, then (best-effort) its checksum companion.

        Args:
            artifact_path: Local encrypted artifact
            checksum_path: Local checksum companion (optional)

        Returns:
            Remote object name of the artifact

        Raises:
            UploadFailed: If no attempt produced a size-verified copy
        """
        name = self.upload_verified(artifact_path)

        # The companion only ever follows a verified artifact
        if checksum_path:
            self.upload_companion(checksum_path)

        return name

    def upload_verified(self, artifact_path: str) -> str:
        """
        Upload with retry until the remote size matches the local size.

        Raises:
            UploadFailed: If all attempts are exhausted
        """
        local_size = os.path.getsize(artifact_path)
        name = os.path.basename(artifact_path)
        self.attempts = 0

        while self.attempts < self.max_attempts:
            self.attempts += 1

            if self._attempt(artifact_path, name, local_size):
                logger.info(f"Upload succeeded, size verified ({local_size} bytes)")
                return name

            if self.attempts < self.max_attempts:
                logger.info(f"Upload failed, retrying {self.attempts}/{self.max_attempts}...")
                self.sleep(self.retry_delay)

        raise UploadFailed(f"Upload failed after {self.max_attempts} attempts")

    def _attempt(self, artifact_path: str, name: str, local_size: int) -> bool:
        try:
            self.storage.upload(artifact_path)
        except StorageError as e:
            logger.warning(f"Warning: Upload attempt {self.attempts} failed: {e}")
            return False

        try:
            remote_size = self.storage.get_size(name)
        except StorageError as e:
            logger.warning(f"Warning: Could not read remote size of {name}: {e}")
            return False

        if remote_size != local_size:
            logger.warning(
                f"Warning: File size mismatch (local: {local_size}, remote: {remote_size})"
            )
            return False

        return True

    def upload_companion(self, checksum_path: str) -> bool:
        """Upload the checksum companion; failure is logged, never raised."""
        try:
            self.storage.upload(checksum_path)
            logger.debug(f"Checksum uploaded: {os.path.basename(checksum_path)}")
            return True
        except StorageError as e:
            logger.warning(f"Warning: Failed to upload checksum file: {e}")
            return False
