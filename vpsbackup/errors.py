"""
Error taxonomy for the backup pipeline and its restore counterpart.

Fatal kinds abort a run. `PruneWarning` and `NotifyWarning` are never raised
or passed to `warnings.warn`; the component that hits one logs it and keeps
it as a record (retention summary, `TelegramNotifier.last_error`).
"""


class BackupError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigError(BackupError):
    """Raised when the backup configuration is missing or invalid."""
    pass


class AlreadyRunning(BackupError):
    """Raised when another pipeline process holds the lock."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Another backup process is running (PID: {pid})")


class InsufficientSpace(BackupError):
    """Raised when the scratch filesystem has less free space than required."""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient disk space (available: {available // 1024 // 1024}MB, "
            f"required: {required // 1024 // 1024}MB)"
        )


class ArchiveFailed(BackupError):
    """Raised when archive creation fails."""
    pass


class EncryptionFailed(BackupError):
    """Raised when the archive cannot be encrypted."""
    pass


class DecryptionError(BackupError):
    """Raised on wrong passphrase, corrupted or truncated ciphertext."""
    pass


class ChecksumFailed(BackupError):
    """Raised when the checksum companion cannot be produced."""
    pass


class StorageError(BackupError):
    """Raised when a remote storage operation fails."""
    pass


class UploadFailed(BackupError):
    """Raised when all upload attempts are exhausted without a verified copy."""
    pass


class RestoreError(BackupError):
    """Raised when a snapshot cannot be restored or verified."""
    pass


class PruneWarning(UserWarning):
    """Non-fatal failure to delete one remote snapshot."""
    pass


class NotifyWarning(UserWarning):
    """Non-fatal failure to deliver a notification."""
    pass
