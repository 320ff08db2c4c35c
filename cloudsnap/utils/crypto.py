"""
Streaming encryption for backup content, manifests and file names.

Uses the RNCryptor v3 data format:
- key-based:      0x03 0x00 | IV(16) | ciphertext | HMAC(32)
- password-based: 0x03 0x01 | encSalt(8) | hmacSalt(8) | IV(16) | ciphertext | HMAC(32)

Ciphertext is AES-256-CBC with PKCS7 padding; the HMAC is SHA-256 over the
header and ciphertext. Password-based keys come from PBKDF2-HMAC-SHA1 with
10,000 iterations.
"""

import os
import hmac
import base64
import logging
from typing import Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


logger = logging.getLogger(__name__)

FORMAT_VERSION = 3
OPTION_KEY = 0x00
OPTION_PASSWORD = 0x01
IV_SIZE = 16
SALT_SIZE = 8
KEY_SIZE = 32
HMAC_SIZE = 32
PBKDF2_ITERATIONS = 10000
CHUNK_SIZE = 8 * 1024 * 1024
MAX_ENCRYPTED_FILENAME_BYTES = 900


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


class KeyNotFoundError(EncryptionError):
    pass


class InvalidKeyError(EncryptionError):
    pass


class DecryptionError(EncryptionError):
    pass


class PassphraseRequiredError(EncryptionError):
    pass


class InvalidEncryptionConfigError(EncryptionError):
    pass


class FilenameTooLongError(EncryptionError):
    """Encrypted file name does not fit in a remote key."""

    def __init__(self, length: int):
        super().__init__(
            f"Encrypted filename is {length} bytes (max {MAX_ENCRYPTED_FILENAME_BYTES})"
        )
        self.length = length


class KeyMaterial:
    """
    Either a pair of raw 256-bit keys or a passphrase.

    Exactly one of (encryption_key, hmac_key) or passphrase is set.
    """

    def __init__(self, encryption_key: Optional[bytes] = None, hmac_key: Optional[bytes] = None,
                 passphrase: Optional[str] = None):
        if passphrase is not None:
            if not passphrase:
                raise PassphraseRequiredError("Passphrase must not be empty")
        else:
            if encryption_key is None or hmac_key is None:
                raise InvalidKeyError("Both encryption and HMAC keys are required")
            if len(encryption_key) != KEY_SIZE or len(hmac_key) != KEY_SIZE:
                raise InvalidKeyError(f"Keys must be {KEY_SIZE} bytes each")
        self.encryption_key = encryption_key
        self.hmac_key = hmac_key
        self.passphrase = passphrase

    @property
    def is_passphrase(self) -> bool:
        return self.passphrase is not None

    def __repr__(self):
        kind = 'passphrase' if self.is_passphrase else 'keys'
        return f"<KeyMaterial {kind}>"


def derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode('utf-8'))


class StreamEncryptor:
    """Incremental encryptor; call update() per chunk, then finalize()."""

    def __init__(self, key: KeyMaterial):
        iv = os.urandom(IV_SIZE)
        if key.is_passphrase:
            encryption_salt = os.urandom(SALT_SIZE)
            hmac_salt = os.urandom(SALT_SIZE)
            encryption_key = derive_key(key.passphrase, encryption_salt)
            hmac_key = derive_key(key.passphrase, hmac_salt)
            self.header = bytes([FORMAT_VERSION, OPTION_PASSWORD]) + encryption_salt + hmac_salt + iv
        else:
            encryption_key = key.encryption_key
            hmac_key = key.hmac_key
            self.header = bytes([FORMAT_VERSION, OPTION_KEY]) + iv

        self._encryptor = Cipher(algorithms.AES(encryption_key), modes.CBC(iv)).encryptor()
        self._padder = padding.PKCS7(algorithms.AES.block_size).padder()
        self._hmac = crypto_hmac.HMAC(hmac_key, hashes.SHA256())
        self._hmac.update(self.header)
        self._header_sent = False

    def _emit(self, ciphertext: bytes) -> bytes:
        self._hmac.update(ciphertext)
        if not self._header_sent:
            self._header_sent = True
            return self.header + ciphertext
        return ciphertext

    def update(self, data: bytes) -> bytes:
        return self._emit(self._encryptor.update(self._padder.update(data)))

    def finalize(self) -> bytes:
        tail = self._encryptor.update(self._padder.finalize()) + self._encryptor.finalize()
        return self._emit(tail) + self._hmac.finalize()


class StreamDecryptor:
    """
    Incremental decryptor.

    The trailing HMAC is withheld from the cipher until finalize(), where it
    is verified in constant time before the final plaintext block is
    released.
    """

    def __init__(self, key: KeyMaterial):
        self._key = key
        self._buffer = b''
        self._decryptor = None
        self._unpadder = None
        self._hmac = None

    def _header_size(self) -> Optional[int]:
        if len(self._buffer) < 2:
            return None
        version, options = self._buffer[0], self._buffer[1]
        if version != FORMAT_VERSION:
            raise DecryptionError(f"Unsupported format version: {version}")
        if options == OPTION_PASSWORD:
            return 2 + SALT_SIZE * 2 + IV_SIZE
        if options == OPTION_KEY:
            return 2 + IV_SIZE
        raise DecryptionError(f"Unsupported format options: {options}")

    def _start(self, header: bytes):
        options = header[1]
        if options == OPTION_PASSWORD:
            if not self._key.is_passphrase:
                raise DecryptionError("Data was encrypted with a passphrase, but a key pair is configured")
            encryption_salt = header[2:2 + SALT_SIZE]
            hmac_salt = header[2 + SALT_SIZE:2 + SALT_SIZE * 2]
            iv = header[2 + SALT_SIZE * 2:]
            encryption_key = derive_key(self._key.passphrase, encryption_salt)
            hmac_key = derive_key(self._key.passphrase, hmac_salt)
        else:
            if self._key.is_passphrase:
                raise DecryptionError("Data was encrypted with a key pair, but a passphrase is configured")
            iv = header[2:]
            encryption_key = self._key.encryption_key
            hmac_key = self._key.hmac_key

        self._decryptor = Cipher(algorithms.AES(encryption_key), modes.CBC(iv)).decryptor()
        self._unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        self._hmac = crypto_hmac.HMAC(hmac_key, hashes.SHA256())
        self._hmac.update(header)

    def update(self, data: bytes) -> bytes:
        self._buffer += data

        if self._decryptor is None:
            header_size = self._header_size()
            if header_size is None or len(self._buffer) < header_size:
                return b''
            self._start(self._buffer[:header_size])
            self._buffer = self._buffer[header_size:]

        if len(self._buffer) <= HMAC_SIZE:
            return b''

        ciphertext = self._buffer[:-HMAC_SIZE]
        self._buffer = self._buffer[-HMAC_SIZE:]
        self._hmac.update(ciphertext)
        return self._unpadder.update(self._decryptor.update(ciphertext))

    def finalize(self) -> bytes:
        if self._decryptor is None or len(self._buffer) != HMAC_SIZE:
            raise DecryptionError("Encrypted data is truncated")

        expected = self._hmac.finalize()
        if not hmac.compare_digest(expected, self._buffer):
            raise DecryptionError("HMAC verification failed")

        try:
            return self._unpadder.update(self._decryptor.finalize()) + self._unpadder.finalize()
        except ValueError as e:
            raise DecryptionError(f"Invalid padding: {e}")


class EncryptionManager:
    """
    Encrypts file content, manifests and file names with one key material.

    Key material is resolved through a provider callable on first use and
    cached for the lifetime of the manager.
    """

    def __init__(self, key_provider, encrypt_filenames: bool = False):
        """
        Initialize the encryption manager.

        Args:
            key_provider: Callable returning KeyMaterial (called once)
            encrypt_filenames: Whether remote keys use encrypted file names
        """
        self._key_provider = key_provider
        self._key = None
        self.encrypt_filenames = encrypt_filenames

    @property
    def key(self) -> KeyMaterial:
        if self._key is None:
            self._key = self._key_provider()
        return self._key

    def encrypt_data(self, data: bytes) -> bytes:
        encryptor = StreamEncryptor(self.key)
        return encryptor.update(data) + encryptor.finalize()

    def decrypt_data(self, data: bytes) -> bytes:
        decryptor = StreamDecryptor(self.key)
        return decryptor.update(data) + decryptor.finalize()

    def encrypt_file(self, source_path: str, destination_path: str) -> int:
        """
        Encrypt a file in 8 MiB chunks.

        Returns:
            Size of the encrypted file in bytes

        Raises:
            EncryptionError: If encryption fails
            OSError: If either file cannot be accessed
        """
        encryptor = StreamEncryptor(self.key)
        written = 0
        with open(source_path, 'rb') as src, open(destination_path, 'wb') as dst:
            for chunk in iter(lambda: src.read(CHUNK_SIZE), b''):
                out = encryptor.update(chunk)
                dst.write(out)
                written += len(out)
            out = encryptor.finalize()
            dst.write(out)
            written += len(out)
        return written

    def decrypt_file(self, source_path: str, destination_path: str) -> int:
        """
        Decrypt a file in 8 MiB chunks.

        The destination is removed if authentication fails.

        Returns:
            Size of the plaintext in bytes
        """
        decryptor = StreamDecryptor(self.key)
        written = 0
        try:
            with open(source_path, 'rb') as src, open(destination_path, 'wb') as dst:
                for chunk in iter(lambda: src.read(CHUNK_SIZE), b''):
                    out = decryptor.update(chunk)
                    dst.write(out)
                    written += len(out)
                out = decryptor.finalize()
                dst.write(out)
                written += len(out)
        except EncryptionError:
            if os.path.exists(destination_path):
                os.remove(destination_path)
            raise
        return written

    def encrypt_filename(self, relative_path: str) -> str:
        """
        Encrypt a relative path for use as a remote key component.

        Returns:
            URL-safe base64 without padding

        Raises:
            FilenameTooLongError: If the encoded result exceeds 900 bytes
        """
        encrypted = self.encrypt_data(relative_path.encode('utf-8'))
        encoded = base64.urlsafe_b64encode(encrypted).decode('ascii').rstrip('=')
        if len(encoded) > MAX_ENCRYPTED_FILENAME_BYTES:
            raise FilenameTooLongError(len(encoded))
        return encoded

    def encrypted_filename_length(self, relative_path: str) -> int:
        """Length of encrypt_filename(relative_path), computed without encrypting."""
        header = 2 + IV_SIZE
        if self.key.is_passphrase:
            header += SALT_SIZE * 2
        block = algorithms.AES.block_size // 8
        ciphertext = (len(relative_path.encode('utf-8')) // block + 1) * block
        return (4 * (header + ciphertext + HMAC_SIZE) + 2) // 3

    def decrypt_filename(self, encoded: str) -> str:
        padded = encoded + '=' * (-len(encoded) % 4)
        try:
            encrypted = base64.urlsafe_b64decode(padded.encode('ascii'))
        except (ValueError, UnicodeEncodeError) as e:
            raise DecryptionError(f"Invalid encrypted filename: {e}")
        try:
            return self.decrypt_data(encrypted).decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Decrypted filename is not UTF-8: {e}")

    def encrypt_manifest(self, payload: bytes) -> bytes:
        return self.encrypt_data(payload)

    def decrypt_manifest(self, payload: bytes) -> bytes:
        """
        Decrypt a manifest, accepting plaintext JSON written before
        encryption was enabled.
        """
        try:
            return self.decrypt_data(payload)
        except EncryptionError:
            if payload[:1] in (b'{', b'['):
                logger.info("Manifest is not encrypted, reading as plaintext")
                return payload
            raise
