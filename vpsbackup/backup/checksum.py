"""
Integrity hasher.

The companion file holds a single lowercase SHA-256 hex token, the same
thing `sha256sum file | awk '{print $1}'` produces.
"""

import os
import hashlib
import logging

from vpsbackup.errors import ChecksumFailed

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB


def compute_checksum(path: str) -> str:
    """
    Compute the SHA-256 hex digest of a file.

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(artifact_path: str, checksum_path: str) -> str:
    """
    Hash the artifact and write the companion file.

    Args:
        artifact_path: Encrypted artifact
        checksum_path: Companion file to create

    Returns:
        The hex digest

    Raises:
        ChecksumFailed: If hashing or writing fails
    """
    try:
        checksum = compute_checksum(artifact_path)
        with open(checksum_path, 'w', encoding='ascii') as f:
            f.write(checksum + '\n')
    except OSError as e:
        raise ChecksumFailed(f"Failed to generate checksum: {e}")

    if not os.path.getsize(checksum_path):
        raise ChecksumFailed(f"Checksum file is empty: {checksum_path}")

    logger.debug(f"SHA256 {os.path.basename(artifact_path)}: {checksum}")
    return checksum


def read_checksum_file(checksum_path: str) -> str:
    """
    Read the digest token from a companion file.

    Accepts both the bare token and `sha256sum` output (`<hex>  <name>`).

    Raises:
        ValueError: If the file holds no valid SHA-256 token
    """
    with open(checksum_path, 'r', encoding='ascii', errors='replace') as f:
        content = f.read().split()

    token = content[0].lower() if content else ''
    if len(token) != 64 or any(c not in '0123456789abcdef' for c in token):
        raise ValueError(f"Invalid checksum file: {checksum_path}")
    return token
