"""
Archive builder.

Packs the configured source paths into one gzip compressed tar. Each source
is stored under its base name, so extracting reproduces the leaf name rather
than the full absolute path:

    /etc/nginx          -> nginx/...
    /root/.bashrc       -> .bashrc
"""

import os
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from vpsbackup.errors import ArchiveFailed

logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    """Outcome of building one archive."""

    path: str
    included: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)


def create_archive(source_paths: List[str], scratch_dir: str, archive_name: str) -> ArchiveResult:
    """
    Create a tar.gz archive from source paths.

    Missing sources are skipped with a warning. Entries that vanish or cannot
    be read while the tree is walked are tolerated the same way tar's
    `--ignore-failed-read` tolerates them.

    Args:
        source_paths: Files/directories to include, in archive order
        scratch_dir: Directory the archive is written into
        archive_name: File name of the archive

    Returns:
        ArchiveResult with the archive path and skipped sources

    Raises:
        ArchiveFailed: If the archive cannot be written
    """
    archive_path = os.path.join(scratch_dir, archive_name)
    result = ArchiveResult(path=archive_path)

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            for source_path in source_paths:
                source = Path(source_path)

                if not source.exists() and not source.is_symlink():
                    logger.warning(f"Warning: Backup source does not exist - {source_path}")
                    result.skipped.append(source_path)
                    continue

                # Strip trailing separators so '/etc/nginx/' still archives as 'nginx'
                arcname = Path(os.path.normpath(source_path)).name or source.resolve().name
                _add_tree(tar, str(source), arcname, result)
                result.included.append(source_path)

    except ArchiveFailed:
        _remove_partial(archive_path)
        raise
    except (OSError, tarfile.TarError) as e:
        _remove_partial(archive_path)
        raise ArchiveFailed(f"Failed to create archive: {e}")

    return result


def _add_tree(tar: tarfile.TarFile, path: str, arcname: str, result: ArchiveResult):
    """
    Add `path` and, for directories, everything below it.

    Symlinks are stored as links and never followed.
    """
    try:
        tar.add(path, arcname=arcname, recursive=False)
    except (FileNotFoundError, PermissionError) as e:
        logger.warning(f"Warning: Skipping unreadable path {path}: {e.strerror or e}")
        result.unreadable.append(path)
        return

    if os.path.islink(path) or not os.path.isdir(path):
        return

    try:
        entries = sorted(os.listdir(path))
    except (FileNotFoundError, PermissionError) as e:
        logger.warning(f"Warning: Cannot list directory {path}: {e.strerror or e}")
        result.unreadable.append(path)
        return

    for name in entries:
        _add_tree(tar, os.path.join(path, name), f"{arcname}/{name}", result)


def _remove_partial(archive_path: str):
    try:
        os.remove(archive_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Warning: Failed to remove partial archive {archive_path}: {e}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveFailed: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveFailed(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveFailed(f"Failed to get archive size: {e}")
