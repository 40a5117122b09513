"""
Unit tests for artifact encryption (vpsbackup/utils/crypto.py and
vpsbackup/backup/encryption.py).

Tests round trips, header layout, authentication failures and the
plaintext removal guarantee.
"""

import os
import struct
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives.ciphers import modes

from vpsbackup.utils.crypto import (
    FileCipher,
    derive_key,
    MAGIC,
    HEADER_SIZE,
    TAG_SIZE,
    SEGMENT_SIZE
)
from vpsbackup.backup.encryption import encrypt_archive
from vpsbackup.errors import DecryptionError, EncryptionFailed

TEST_PASSWORD = 'test_password_123'
TEST_ITERATIONS = 1000


@pytest.fixture
def plaintext_file(tmp_path):
    path = tmp_path / 'archive.tar.gz'
    # Spans more than one segment
    path.write_bytes(os.urandom(SEGMENT_SIZE + 12345))
    return path


def _encrypt(cipher, src, tmp_path):
    dst = tmp_path / (src.name + '.enc')
    cipher.encrypt_file(str(src), str(dst))
    return dst


class TestFileCipher:
    """Test FileCipher encrypt/decrypt."""

    def test_empty_passphrase_rejected(self):
        with pytest.raises(ValueError):
            FileCipher('')

    def test_repr_hides_passphrase(self, cipher):
        assert TEST_PASSWORD not in repr(cipher)

    def test_round_trip(self, cipher, plaintext_file, tmp_path):
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)
        restored = tmp_path / 'restored.tar.gz'

        cipher.decrypt_file(str(encrypted), str(restored))

        assert restored.read_bytes() == plaintext_file.read_bytes()

    def test_round_trip_empty_file(self, cipher, tmp_path):
        src = tmp_path / 'empty'
        src.write_bytes(b'')
        encrypted = _encrypt(cipher, src, tmp_path)
        restored = tmp_path / 'restored'

        cipher.decrypt_file(str(encrypted), str(restored))

        assert restored.read_bytes() == b''

    def test_header_layout(self, cipher, plaintext_file, tmp_path):
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)
        data = encrypted.read_bytes()

        assert data.startswith(MAGIC)
        assert struct.unpack('>I', data[len(MAGIC):len(MAGIC) + 4])[0] == TEST_ITERATIONS
        # Two segments, one tag each
        assert len(data) == HEADER_SIZE + plaintext_file.stat().st_size + 2 * TAG_SIZE

    def test_same_input_encrypts_differently(self, cipher, plaintext_file, tmp_path):
        """Test fresh salt and nonce per file."""
        first = tmp_path / 'first.enc'
        second = tmp_path / 'second.enc'

        cipher.encrypt_file(str(plaintext_file), str(first))
        cipher.encrypt_file(str(plaintext_file), str(second))

        assert first.read_bytes() != second.read_bytes()

    def test_wrong_passphrase(self, cipher, plaintext_file, tmp_path):
        """Test a wrong passphrase fails and leaves no output behind."""
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)
        restored = tmp_path / 'restored.tar.gz'
        wrong = FileCipher('wrong_password', iterations=TEST_ITERATIONS)

        with pytest.raises(DecryptionError, match="wrong passphrase"):
            wrong.decrypt_file(str(encrypted), str(restored))

        assert not restored.exists()

    def test_tampered_ciphertext(self, cipher, plaintext_file, tmp_path):
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)
        data = bytearray(encrypted.read_bytes())
        data[HEADER_SIZE + 100] ^= 0x01
        encrypted.write_bytes(bytes(data))

        with pytest.raises(DecryptionError):
            cipher.decrypt_file(str(encrypted), str(tmp_path / 'restored'))

        assert not (tmp_path / 'restored').exists()

    def test_tampered_header(self, cipher, plaintext_file, tmp_path):
        """Test the header is authenticated along with the body."""
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)
        data = bytearray(encrypted.read_bytes())
        data[len(MAGIC) + 4] ^= 0x01  # first salt byte
        encrypted.write_bytes(bytes(data))

        with pytest.raises(DecryptionError):
            cipher.decrypt_file(str(encrypted), str(tmp_path / 'restored'))

    def test_truncated_file(self, cipher, plaintext_file, tmp_path):
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)
        data = encrypted.read_bytes()
        encrypted.write_bytes(data[:-1000])

        with pytest.raises(DecryptionError):
            cipher.decrypt_file(str(encrypted), str(tmp_path / 'restored'))

    def test_too_short_file(self, cipher, tmp_path):
        path = tmp_path / 'short.enc'
        path.write_bytes(MAGIC + b'\x00' * 4)

        with pytest.raises(DecryptionError, match="truncated"):
            cipher.decrypt_file(str(path), str(tmp_path / 'restored'))

    def test_bad_magic(self, cipher, tmp_path):
        path = tmp_path / 'other.enc'
        path.write_bytes(b'Salted__' + os.urandom(100))

        with pytest.raises(DecryptionError, match="bad magic"):
            cipher.decrypt_file(str(path), str(tmp_path / 'restored'))

    def test_absurd_iterations_rejected(self, cipher, tmp_path):
        path = tmp_path / 'slow.enc'
        path.write_bytes(MAGIC + struct.pack('>I', 2 ** 31) + os.urandom(100))

        with pytest.raises(DecryptionError, match="iterations"):
            cipher.decrypt_file(str(path), str(tmp_path / 'restored'))

    def test_decrypt_with_other_cipher_instance(self, plaintext_file, tmp_path):
        """Test iterations are read from the header, not the decrypting instance."""
        encrypted = _encrypt(FileCipher(TEST_PASSWORD, iterations=1200), plaintext_file, tmp_path)
        restored = tmp_path / 'restored'

        FileCipher(TEST_PASSWORD, iterations=TEST_ITERATIONS).decrypt_file(str(encrypted), str(restored))

        assert restored.read_bytes() == plaintext_file.read_bytes()

    def test_derive_key_length(self):
        key = derive_key(TEST_PASSWORD, b'0' * 16, TEST_ITERATIONS)

        assert len(key) == 32
        assert key == derive_key(TEST_PASSWORD, b'0' * 16, TEST_ITERATIONS)
        assert key != derive_key(TEST_PASSWORD, b'1' * 16, TEST_ITERATIONS)


class TestSegmentedFormat:
    """Test per-segment sealing of large and reshaped artifacts."""

    @pytest.fixture
    def small_segments(self):
        return FileCipher(TEST_PASSWORD, iterations=TEST_ITERATIONS, segment_size=1024)

    def _segments(self, data, sealed_size=1024 + TAG_SIZE):
        body = data[HEADER_SIZE:]
        return data[:HEADER_SIZE], [body[i:i + sealed_size] for i in range(0, len(body), sealed_size)]

    def test_archive_larger_than_gcm_limit(self, cipher, tmp_path):
        """Test an archive bigger than one GCM invocation allows still round trips."""
        src = tmp_path / 'big'
        src.write_bytes(b'x' * (3 * 1024 * 1024))
        restored = tmp_path / 'restored'

        with patch.object(modes.GCM, '_MAX_ENCRYPTED_BYTES', 2 * 1024 * 1024):
            encrypted = _encrypt(cipher, src, tmp_path)
            cipher.decrypt_file(str(encrypted), str(restored))

        assert restored.read_bytes() == src.read_bytes()

    def test_cipher_limit_error_removes_output(self, cipher, plaintext_file, tmp_path):
        dst = tmp_path / 'archive.tar.gz.enc'

        with patch.object(modes.GCM, '_MAX_ENCRYPTED_BYTES', 1024):
            with pytest.raises(EncryptionFailed):
                cipher.encrypt_file(str(plaintext_file), str(dst))

        assert not dst.exists()

    def test_exact_multiple_of_segment_size(self, small_segments, tmp_path):
        src = tmp_path / 'even'
        src.write_bytes(os.urandom(2048))
        encrypted = _encrypt(small_segments, src, tmp_path)
        restored = tmp_path / 'restored'

        small_segments.decrypt_file(str(encrypted), str(restored))

        assert len(encrypted.read_bytes()) == HEADER_SIZE + 2048 + 2 * TAG_SIZE
        assert restored.read_bytes() == src.read_bytes()

    def test_segment_size_read_from_header(self, small_segments, tmp_path):
        src = tmp_path / 'src'
        src.write_bytes(os.urandom(5000))
        encrypted = _encrypt(small_segments, src, tmp_path)
        restored = tmp_path / 'restored'

        FileCipher(TEST_PASSWORD, iterations=TEST_ITERATIONS).decrypt_file(str(encrypted), str(restored))

        assert restored.read_bytes() == src.read_bytes()

    def test_dropped_final_segment(self, small_segments, tmp_path):
        """Test cutting the file on a segment boundary is detected."""
        src = tmp_path / 'src'
        src.write_bytes(os.urandom(3000))
        encrypted = _encrypt(small_segments, src, tmp_path)
        header, segments = self._segments(encrypted.read_bytes())
        assert len(segments) == 3
        encrypted.write_bytes(header + b''.join(segments[:2]))

        with pytest.raises(DecryptionError):
            small_segments.decrypt_file(str(encrypted), str(tmp_path / 'restored'))

        assert not (tmp_path / 'restored').exists()

    def test_reordered_segments(self, small_segments, tmp_path):
        src = tmp_path / 'src'
        src.write_bytes(os.urandom(4096))
        encrypted = _encrypt(small_segments, src, tmp_path)
        header, segments = self._segments(encrypted.read_bytes())
        segments[0], segments[1] = segments[1], segments[0]
        encrypted.write_bytes(header + b''.join(segments))

        with pytest.raises(DecryptionError):
            small_segments.decrypt_file(str(encrypted), str(tmp_path / 'restored'))

    def test_appended_segment(self, small_segments, tmp_path):
        src = tmp_path / 'src'
        src.write_bytes(os.urandom(3000))
        encrypted = _encrypt(small_segments, src, tmp_path)
        data = encrypted.read_bytes()
        header, segments = self._segments(data)
        encrypted.write_bytes(data + segments[-1])

        with pytest.raises(DecryptionError):
            small_segments.decrypt_file(str(encrypted), str(tmp_path / 'restored'))

    def test_invalid_segment_size_in_header(self, cipher, tmp_path):
        path = tmp_path / 'bad.enc'
        path.write_bytes(
            MAGIC + struct.pack('>I', TEST_ITERATIONS) + os.urandom(24)
            + struct.pack('>I', 0) + os.urandom(100)
        )

        with pytest.raises(DecryptionError, match="segment size"):
            cipher.decrypt_file(str(path), str(tmp_path / 'restored'))

    @pytest.mark.parametrize("segment_size", [0, 2 ** 30])
    def test_segment_size_out_of_range(self, segment_size):
        with pytest.raises(ValueError):
            FileCipher(TEST_PASSWORD, segment_size=segment_size)


class TestOpenDecrypted:
    """Test streaming decryption."""

    def test_stream_matches_plaintext(self, cipher, plaintext_file, tmp_path):
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)

        with cipher.open_decrypted(str(encrypted)) as stream:
            data = stream.read()

        assert data == plaintext_file.read_bytes()

    def test_stream_small_reads(self, cipher, tmp_path):
        src = tmp_path / 'small'
        src.write_bytes(b'hello world')
        encrypted = _encrypt(cipher, src, tmp_path)

        with cipher.open_decrypted(str(encrypted)) as stream:
            parts = [stream.read(3) for _ in range(5)]

        assert b''.join(parts) == b'hello world'

    def test_stream_raises_on_wrong_passphrase(self, cipher, plaintext_file, tmp_path):
        encrypted = _encrypt(cipher, plaintext_file, tmp_path)
        wrong = FileCipher('wrong_password', iterations=TEST_ITERATIONS)

        with wrong.open_decrypted(str(encrypted)) as stream:
            with pytest.raises(DecryptionError):
                stream.read()


class TestEncryptArchive:
    """Test the pipeline encryption stage."""

    def test_plaintext_removed_on_success(self, cipher, plaintext_file, tmp_path):
        output = str(tmp_path / 'archive.tar.gz.enc')

        result = encrypt_archive(cipher, str(plaintext_file), output)

        assert result == output
        assert os.path.exists(output)
        assert not plaintext_file.exists()

    def test_plaintext_removed_on_failure(self, cipher, plaintext_file, tmp_path):
        output = str(tmp_path / 'missing-dir' / 'archive.tar.gz.enc')

        with pytest.raises(EncryptionFailed):
            encrypt_archive(cipher, str(plaintext_file), output)

        assert not plaintext_file.exists()
        assert not os.path.exists(output)
