"""
Encryption stage: turns the plaintext archive into the persisted artifact.
"""

import os
import logging

from vpsbackup.utils.crypto import FileCipher
from vpsbackup.errors import EncryptionFailed

logger = logging.getLogger(__name__)


def encrypt_archive(cipher: FileCipher, archive_path: str, output_path: str) -> str:
    """
    Encrypt the archive and delete the plaintext.

    The plaintext archive is removed whether or not encryption succeeds; an
    unencrypted copy must never outlive this call.

    Args:
        cipher: FileCipher holding the backup passphrase
        archive_path: Plaintext tar.gz
        output_path: Destination of the encrypted artifact

    Returns:
        output_path

    Raises:
        EncryptionFailed: If encryption fails
    """
    try:
        cipher.encrypt_file(archive_path, output_path)
    except EncryptionFailed:
        raise
    except Exception as e:
        raise EncryptionFailed(f"Encryption failed: {e}")
    finally:
        try:
            os.remove(archive_path)
            logger.debug(f"Removed plaintext archive {os.path.basename(archive_path)}")
        except FileNotFoundError:
            pass

    return output_path
