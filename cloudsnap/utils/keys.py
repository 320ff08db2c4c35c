"""
Key material providers for the encryption layer.

Three sources are supported, selected by encryption.key_source:
- keychain:   two hex-encoded 256-bit keys in the system credential store
              (accounts "<account>" and "<account>-hmac")
- file:       a 64-byte key file (cipher key, then HMAC key)
- passphrase: prompted once per process
"""

import os
import getpass
import logging
import threading
from typing import Callable, Optional

import keyring
from keyring.errors import KeyringError

from cloudsnap.config import EncryptionConfig
from cloudsnap.utils.crypto import (
    KEY_SIZE,
    KeyMaterial,
    KeyNotFoundError,
    InvalidKeyError,
    EncryptionError,
    PassphraseRequiredError,
    InvalidEncryptionConfigError,
)


logger = logging.getLogger(__name__)

KEYRING_SERVICE = 'cloudsnap'
HMAC_ACCOUNT_SUFFIX = '-hmac'


class KeychainError(EncryptionError):
    pass


def _decode_key(value: str, account: str) -> bytes:
    try:
        key = bytes.fromhex(value.strip())
    except ValueError:
        raise InvalidKeyError(f"Keychain entry {account} is not hex encoded")
    if len(key) != KEY_SIZE:
        raise InvalidKeyError(f"Keychain entry {account} must hold {KEY_SIZE} bytes, got {len(key)}")
    return key


def load_keychain_keys(account: str, service: str = KEYRING_SERVICE) -> KeyMaterial:
    """
    Read the key pair from the system credential store.

    Raises:
        KeyNotFoundError: If either entry is missing
        KeychainError: If the credential store cannot be accessed
    """
    hmac_account = account + HMAC_ACCOUNT_SUFFIX
    try:
        encryption_value = keyring.get_password(service, account)
        hmac_value = keyring.get_password(service, hmac_account)
    except KeyringError as e:
        raise KeychainError(f"Keychain access failed: {e}")

    if encryption_value is None:
        raise KeyNotFoundError(f"Encryption key not found in keychain (service {service}, account {account})")
    if hmac_value is None:
        raise KeyNotFoundError(f"HMAC key not found in keychain (service {service}, account {hmac_account})")

    return KeyMaterial(
        encryption_key=_decode_key(encryption_value, account),
        hmac_key=_decode_key(hmac_value, hmac_account),
    )


def store_keychain_keys(account: str, key: KeyMaterial, service: str = KEYRING_SERVICE):
    try:
        keyring.set_password(service, account, key.encryption_key.hex())
        keyring.set_password(service, account + HMAC_ACCOUNT_SUFFIX, key.hmac_key.hex())
    except KeyringError as e:
        raise KeychainError(f"Failed to store keys in keychain: {e}")


def load_key_file(path: str) -> KeyMaterial:
    """
    Read a 64-byte key file.

    Raises:
        KeyNotFoundError: If the file does not exist
        InvalidKeyError: If the file is not exactly 64 bytes
    """
    key_path = os.path.expanduser(path)
    if not os.path.exists(key_path):
        raise KeyNotFoundError(f"Key file not found: {key_path}")

    with open(key_path, 'rb') as f:
        data = f.read()

    if len(data) != KEY_SIZE * 2:
        raise InvalidKeyError(f"Key file must be {KEY_SIZE * 2} bytes, got {len(data)}")

    return KeyMaterial(encryption_key=data[:KEY_SIZE], hmac_key=data[KEY_SIZE:])


def write_key_file(path: str, key: KeyMaterial):
    key_path = os.path.expanduser(path)
    os.makedirs(os.path.dirname(key_path) or '.', exist_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(key.encryption_key + key.hmac_key)


def prompt_passphrase(prompt: str = 'Encryption passphrase: ') -> KeyMaterial:
    """
    Ask for the passphrase on the terminal.

    Raises:
        PassphraseRequiredError: If the passphrase is empty
    """
    passphrase = getpass.getpass(prompt)
    if not passphrase:
        raise PassphraseRequiredError("A passphrase is required to encrypt or decrypt backups")
    return KeyMaterial(passphrase=passphrase)


def generate_keys() -> KeyMaterial:
    return KeyMaterial(encryption_key=os.urandom(KEY_SIZE), hmac_key=os.urandom(KEY_SIZE))


class CachedKeyProvider:
    """
    Resolves key material once and returns the cached value afterwards.

    Safe to call from several threads; the loader runs at most once.
    """

    def __init__(self, loader: Callable[[], KeyMaterial], source: str):
        self._loader = loader
        self._key = None
        self._lock = threading.Lock()
        self.source = source

    def __call__(self) -> KeyMaterial:
        with self._lock:
            if self._key is None:
                self._key = self._loader()
                logger.debug(f"Loaded encryption key material from {self.source}")
            return self._key


def create_key_provider(config: EncryptionConfig,
                        prompt: Optional[Callable[[], KeyMaterial]] = None) -> CachedKeyProvider:
    """
    Build the key provider selected by the encryption config.

    Args:
        config: Encryption settings
        prompt: Passphrase prompt override (defaults to a getpass prompt)

    Raises:
        InvalidEncryptionConfigError: If key_source is unknown
    """
    source = config.key_source

    if source == 'keychain':
        return CachedKeyProvider(lambda: load_keychain_keys(config.keychain_account), source)
    if source == 'file':
        return CachedKeyProvider(lambda: load_key_file(config.key_file), source)
    if source == 'passphrase':
        return CachedKeyProvider(prompt or prompt_passphrase, source)

    raise InvalidEncryptionConfigError(f"Unknown key source: {source}")


def generate_and_store_keys(config: EncryptionConfig, overwrite: bool = False) -> str:
    """
    Create a fresh key pair in the configured keychain entry or key file.

    Args:
        config: Encryption settings
        overwrite: Replace existing key material

    Returns:
        Human-readable description of where the keys were stored

    Raises:
        InvalidEncryptionConfigError: For the passphrase source (nothing to store)
        EncryptionError: If keys already exist and overwrite is False
    """
    key = generate_keys()

    if config.key_source == 'keychain':
        if not overwrite:
            try:
                load_keychain_keys(config.keychain_account)
            except KeyNotFoundError:
                pass
            else:
                raise EncryptionError(
                    f"Keys already exist for keychain account {config.keychain_account}"
                )
        store_keychain_keys(config.keychain_account, key)
        return f"keychain service '{KEYRING_SERVICE}', account '{config.keychain_account}'"

    if config.key_source == 'file':
        key_path = os.path.expanduser(config.key_file)
        if os.path.exists(key_path) and not overwrite:
            raise EncryptionError(f"Key file already exists: {key_path}")
        write_key_file(key_path, key)
        return f"key file {key_path}"

    raise InvalidEncryptionConfigError(
        f"Key source '{config.key_source}' does not use stored keys"
    )
