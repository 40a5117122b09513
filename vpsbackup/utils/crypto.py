"""
Passphrase based file encryption for backup artifacts.

Uses PBKDF2-HMAC-SHA256 key derivation with a fresh random salt per file and
AES-256-GCM. The plaintext is sealed in fixed-size segments, each under its
own nonce and tag, so archives of any size stream through constant memory
and no single GCM invocation reaches the per-nonce size limit.

File layout:

    magic         8 bytes   b'VPSBAK\\x00\\x01'
    iterations    4 bytes   big-endian PBKDF2 iteration count
    salt         16 bytes
    nonce prefix  8 bytes
    segment size  4 bytes   big-endian plaintext bytes per segment
    segments                ciphertext + 16-byte GCM tag each

Segment `i` uses nonce `prefix || i` and authenticates the header, its
index and whether it is the final segment, so reordered, dropped or
appended segments fail to decrypt.
"""

import io
import os
import struct
from typing import BinaryIO, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from vpsbackup.errors import DecryptionError, EncryptionFailed

MAGIC = b'VPSBAK\x00\x01'
DEFAULT_ITERATIONS = 480000  # OWASP recommended iterations for 2023+
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 8
TAG_SIZE = 16
HEADER_SIZE = len(MAGIC) + 4 + SALT_SIZE + NONCE_PREFIX_SIZE + 4
SEGMENT_SIZE = 1024 * 1024  # 1MB
CHUNK_SIZE = SEGMENT_SIZE

# Refuse headers that would make key derivation absurdly slow
MAX_ITERATIONS = 10_000_000
MAX_SEGMENT_SIZE = 64 * 1024 * 1024
MAX_SEGMENT_INDEX = 0xFFFFFFFF


def derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """Derive a 32-byte AES key from the passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode('utf-8'))


def _segment_cipher(key: bytes, nonce_prefix: bytes, index: int, tag: Optional[bytes] = None) -> Cipher:
    if index > MAX_SEGMENT_INDEX:
        raise ValueError("Too many segments for one artifact")
    nonce = nonce_prefix + struct.pack('>I', index)
    return Cipher(algorithms.AES(key), modes.GCM(nonce, tag))


def _segment_aad(header: bytes, index: int, final: bool) -> bytes:
    return header + struct.pack('>I?', index, final)


def seal_segment(key: bytes, header: bytes, nonce_prefix: bytes, index: int,
                 plaintext: bytes, final: bool) -> bytes:
    """Encrypt one segment; returns ciphertext followed by its tag."""
    encryptor = _segment_cipher(key, nonce_prefix, index).encryptor()
    encryptor.authenticate_additional_data(_segment_aad(header, index, final))
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()
    return ciphertext + encryptor.tag


def open_segment(key: bytes, header: bytes, nonce_prefix: bytes, index: int,
                 sealed: bytes, final: bool) -> bytes:
    """
    Authenticate and decrypt one segment.

    Raises:
        DecryptionError: If the segment does not authenticate
    """
    if len(sealed) < TAG_SIZE:
        raise DecryptionError("Encrypted file is truncated")
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    decryptor = _segment_cipher(key, nonce_prefix, index, tag).decryptor()
    decryptor.authenticate_additional_data(_segment_aad(header, index, final))
    try:
        return decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag:
        raise DecryptionError("Decryption failed: wrong passphrase or corrupted file")


class FileCipher:
    """Encrypts and decrypts whole files under one passphrase."""

    def __init__(self, passphrase: str, iterations: int = DEFAULT_ITERATIONS,
                 segment_size: int = SEGMENT_SIZE):
        """
        Initialize the cipher.

        Args:
            passphrase: Backup passphrase (never stored or logged)
            iterations: PBKDF2 iterations for new files
            segment_size: Plaintext bytes per sealed segment for new files
        """
        if not passphrase:
            raise ValueError("Passphrase must not be empty")
        if not 0 < segment_size <= MAX_SEGMENT_SIZE:
            raise ValueError(f"Segment size out of range: {segment_size}")
        self._passphrase = passphrase
        self.iterations = iterations
        self.segment_size = segment_size

    def __repr__(self):
        return f"FileCipher(iterations={self.iterations})"

    def encrypt_file(self, src: str, dst: str):
        """
        Encrypt `src` into `dst`.

        Raises:
            EncryptionFailed: If reading, key derivation, sealing or writing fails
        """
        salt = os.urandom(SALT_SIZE)
        nonce_prefix = os.urandom(NONCE_PREFIX_SIZE)
        header = (MAGIC + struct.pack('>I', self.iterations) + salt + nonce_prefix
                  + struct.pack('>I', self.segment_size))

        try:
            key = derive_key(self._passphrase, salt, self.iterations)

            with open(src, 'rb') as fin, open(dst, 'wb') as fout:
                fout.write(header)
                index = 0
                segment = fin.read(self.segment_size)
                while True:
                    # Read ahead so the last segment is flagged final
                    following = fin.read(self.segment_size)
                    final = not following
                    fout.write(seal_segment(key, header, nonce_prefix, index, segment, final))
                    if final:
                        break
                    segment = following
                    index += 1

        except (OSError, ValueError) as e:
            _remove_quietly(dst)
            raise EncryptionFailed(f"Encryption failed: {e}")

    def decrypt_file(self, src: str, dst: str):
        """
        Decrypt `src` into `dst`.

        Nothing is left at `dst` unless the whole file authenticates.

        Raises:
            DecryptionError: On wrong passphrase, tampering or truncation
            OSError: If `src` cannot be opened
        """
        with open(src, 'rb') as fin:
            stream = self._open_stream(fin, os.path.getsize(src))
            try:
                with open(dst, 'wb') as fout:
                    while True:
                        chunk = stream.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        fout.write(chunk)
            except BaseException:
                _remove_quietly(dst)
                raise

    def open_decrypted(self, src: str) -> 'DecryptingReader':
        """
        Open `src` as a readable plaintext stream.

        Only authenticated segments are returned; reading raises
        DecryptionError at the first segment that fails, and at the end if
        the file was cut short. Consumers must read it completely before
        trusting it. The caller owns the returned stream and must close it.

        Raises:
            DecryptionError: If the header is invalid
            OSError: If `src` cannot be opened
        """
        fin = open(src, 'rb')
        try:
            return self._open_stream(fin, os.path.getsize(src))
        except BaseException:
            fin.close()
            raise

    def _open_stream(self, fin: BinaryIO, total_size: int) -> 'DecryptingReader':
        if total_size < HEADER_SIZE + TAG_SIZE:
            raise DecryptionError("Encrypted file is truncated or not a backup artifact")

        header = fin.read(HEADER_SIZE)
        if header[:len(MAGIC)] != MAGIC:
            raise DecryptionError("Not a backup artifact (bad magic)")

        offset = len(MAGIC)
        iterations = struct.unpack('>I', header[offset:offset + 4])[0]
        offset += 4
        salt = header[offset:offset + SALT_SIZE]
        offset += SALT_SIZE
        nonce_prefix = header[offset:offset + NONCE_PREFIX_SIZE]
        offset += NONCE_PREFIX_SIZE
        segment_size = struct.unpack('>I', header[offset:offset + 4])[0]

        if not 0 < iterations <= MAX_ITERATIONS:
            raise DecryptionError(f"Invalid key derivation parameters ({iterations} iterations)")
        if not 0 < segment_size <= MAX_SEGMENT_SIZE:
            raise DecryptionError(f"Invalid segment size ({segment_size} bytes)")

        key = derive_key(self._passphrase, salt, iterations)
        return DecryptingReader(fin, key, header, nonce_prefix, segment_size,
                                total_size - HEADER_SIZE)


class DecryptingReader(io.RawIOBase):
    """Streams plaintext one authenticated segment at a time."""

    def __init__(self, fileobj: BinaryIO, key: bytes, header: bytes, nonce_prefix: bytes,
                 segment_size: int, body_size: int):
        super().__init__()
        self._fileobj = fileobj
        self._key = key
        self._header = header
        self._nonce_prefix = nonce_prefix
        self._sealed_size = segment_size + TAG_SIZE
        self._remaining = body_size
        self._index = 0
        self._buffer = b''
        self._finished = False

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        data = self.read(len(b))
        n = len(data)
        b[:n] = data
        return n

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0:
            chunks = []
            while True:
                chunk = self.read(CHUNK_SIZE)
                if not chunk:
                    return b''.join(chunks)
                chunks.append(chunk)

        while len(self._buffer) < size and not self._finished:
            self._fill()

        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def _fill(self):
        # Only the last segment may be shorter than a full one
        final = self._remaining <= self._sealed_size
        length = self._remaining if final else self._sealed_size

        sealed = self._fileobj.read(length)
        if len(sealed) < length:
            raise DecryptionError("Encrypted file is truncated")

        self._buffer += open_segment(self._key, self._header, self._nonce_prefix,
                                     self._index, sealed, final)
        self._remaining -= length
        self._index += 1
        self._finished = final

    def close(self):
        if not self.closed:
            self._fileobj.close()
        super().close()


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
