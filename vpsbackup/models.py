"""
Data model for snapshots and pipeline runs.

The persisted names are bit-exact so that artifacts produced here can be
restored by any tooling that follows the same convention:

    backup-<hostname>-<YYYYMMDD-HHMMSS>.tar.gz.enc
    backup-<hostname>-<YYYYMMDD-HHMMSS>.tar.gz.enc.sha256
"""

import re
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'
ARCHIVE_SUFFIX = '.tar.gz'
ENCRYPTED_SUFFIX = ARCHIVE_SUFFIX + '.enc'
CHECKSUM_SUFFIX = '.sha256'

SNAPSHOT_NAME_RE = re.compile(
    r'^backup-(?P<hostname>.+)-(?P<timestamp>\d{8}-\d{6})\.tar\.gz\.enc$'
)


class RunState(enum.Enum):
    """States of one pipeline run."""
    INIT = 'init'
    LOCKED = 'locked'
    SPACE_OK = 'space_ok'
    ARCHIVED = 'archived'
    ENCRYPTED = 'encrypted'
    HASHED = 'hashed'
    UPLOADED = 'uploaded'
    PRUNED = 'pruned'
    DONE = 'done'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED)


@dataclass(frozen=True)
class SnapshotArtifact:
    """Names of the files one pipeline run produces."""

    hostname: str
    timestamp: str

    @classmethod
    def create(cls, hostname: str, now: Optional[datetime] = None) -> 'SnapshotArtifact':
        """
        Build the artifact names for a run starting at `now`.

        Args:
            hostname: Local system identity
            now: Run start time (defaults to the current local time)

        Returns:
            SnapshotArtifact instance
        """
        if now is None:
            now = datetime.now()
        return cls(hostname=hostname, timestamp=now.strftime(TIMESTAMP_FORMAT))

    @property
    def archive_name(self) -> str:
        return f"backup-{self.hostname}-{self.timestamp}{ARCHIVE_SUFFIX}"

    @property
    def encrypted_name(self) -> str:
        return f"backup-{self.hostname}-{self.timestamp}{ENCRYPTED_SUFFIX}"

    @property
    def checksum_name(self) -> str:
        return self.encrypted_name + CHECKSUM_SUFFIX


@dataclass(frozen=True)
class RemoteObject:
    """One entry of a remote listing."""

    name: str
    size: int
    modified: Optional[datetime] = None

    @property
    def is_snapshot(self) -> bool:
        return parse_snapshot_name(self.name) is not None


@dataclass
class RunResult:
    """Outcome of a single pipeline run."""

    state: RunState = RunState.INIT
    failed_from: Optional[RunState] = None
    artifact: Optional[SnapshotArtifact] = None
    artifact_size: Optional[int] = None
    error_message: Optional[str] = None
    skipped_sources: List[str] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    snapshots_kept: Optional[int] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE


def parse_snapshot_name(name: str) -> Optional[Tuple[str, str]]:
    """
    Split an encrypted artifact name into hostname and timestamp.

    Returns:
        (hostname, timestamp) or None if `name` is not a snapshot artifact
    """
    match = SNAPSHOT_NAME_RE.match(name)
    if not match:
        return None
    return match.group('hostname'), match.group('timestamp')


def snapshot_prefix(hostname: str) -> str:
    """Listing prefix shared by every artifact of `hostname`."""
    return f"backup-{hostname}-"


def is_host_snapshot(name: str, hostname: str) -> bool:
    """Check whether `name` is an encrypted artifact of exactly `hostname`."""
    pattern = rf'^backup-{re.escape(hostname)}-\d{{8}}-\d{{6}}\.tar\.gz\.enc$'
    return re.match(pattern, name) is not None


def format_size(size_bytes: Optional[int]) -> str:
    """Human readable size, e.g. 1.50 MB."""
    if size_bytes is None:
        return 'unknown'
    if size_bytes < 1024:
        return f"{size_bytes} B"
    size = size_bytes / 1024
    for unit in ('KB', 'MB'):
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"
