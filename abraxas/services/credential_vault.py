"""AES-256-GCM credential vault for secrets at rest.

Encrypts repository access tokens and agent auth blobs before they are
persisted, and decrypts them when a sandbox needs them.

Key source precedence:
    1. ABRAXAS_ENCRYPTION_KEY env var (64 hex chars, 32 bytes)
    2. ABRAXAS_ENCRYPTION_KEY_FILE env var (path to a raw 32-byte key file)

There is no auto-generated fallback: a missing key is a configuration
error, not something to paper over.

Blob format (base64 of the concatenation):
    IV (16 bytes) || SALT (64 bytes) || TAG (16 bytes) || CIPHERTEXT

The salt feeds an HKDF-SHA256 derivation of a per-record key from the
master key. Blobs written before per-record keys existed were encrypted
with the master key directly; decrypt() falls back to that so old rows
stay readable. Both paths are authenticated by the GCM tag.
"""

import base64
import binascii
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from abraxas.errors.domain import CryptoConfigError, DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
SALT_LENGTH = 64
TAG_LENGTH = 16
_REQUIRED_KEY_LENGTH = 32
_HKDF_INFO = b"abraxas-vault-v1"
_KEY_ENV_VAR = "ABRAXAS_ENCRYPTION_KEY"
_KEY_FILE_ENV_VAR = "ABRAXAS_ENCRYPTION_KEY_FILE"


def generate_encryption_key() -> str:
    """Return a new random 32-byte key as 64 hex characters."""
    return secrets.token_hex(_REQUIRED_KEY_LENGTH)


def _parse_hex_key(value: str, source: str) -> bytes:
    try:
        key = bytes.fromhex(value)
    except ValueError as e:
        raise CryptoConfigError(f"{source} is not valid hex: {e}") from e
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise CryptoConfigError(
            f"{source} has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH} bytes)"
        )
    return key


def load_encryption_key() -> bytes:
    """Load the 32-byte master key from the environment.

    Returns:
        32-byte encryption key.

    Raises:
        CryptoConfigError: If no key is configured, or the key is malformed.
    """
    env_key = os.environ.get(_KEY_ENV_VAR, "").strip()
    if env_key:
        return _parse_hex_key(env_key, _KEY_ENV_VAR)

    key_file = os.environ.get(_KEY_FILE_ENV_VAR, "").strip()
    if key_file:
        if not os.path.exists(key_file):
            raise CryptoConfigError(f"{_KEY_FILE_ENV_VAR} path does not exist: {key_file}")
        if os.path.islink(key_file):
            raise CryptoConfigError(
                f"{_KEY_FILE_ENV_VAR} is a symlink: {key_file}. "
                "Symlinks are rejected to prevent link-following attacks."
            )
        if not os.path.isfile(key_file):
            raise CryptoConfigError(f"{_KEY_FILE_ENV_VAR} is not a regular file: {key_file}")
        with open(key_file, "rb") as f:
            key = f.read()
        if len(key) != _REQUIRED_KEY_LENGTH:
            raise CryptoConfigError(
                f"Key file {key_file} has invalid length {len(key)} "
                f"(expected {_REQUIRED_KEY_LENGTH})"
            )
        return key

    raise CryptoConfigError(f"{_KEY_ENV_VAR} is not configured")


def _check_key(key: bytes) -> None:
    if not key:
        raise CryptoConfigError(f"{_KEY_ENV_VAR} is not configured")
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise CryptoConfigError(
            f"Encryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )


def _derive_record_key(key: bytes, salt: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=_REQUIRED_KEY_LENGTH,
        salt=salt,
        info=_HKDF_INFO,
    ).derive(key)


def encrypt_token(plaintext: str, key: bytes) -> str:
    """Encrypt a secret string to a base64 blob.

    Args:
        plaintext: Secret to encrypt.
        key: 32-byte master key.

    Returns:
        base64(IV || SALT || TAG || CIPHERTEXT).

    Raises:
        CryptoConfigError: If the key is empty or the wrong length.
        EncryptionError: If the cipher fails.
    """
    _check_key(key)
    try:
        iv = os.urandom(IV_LENGTH)
        salt = os.urandom(SALT_LENGTH)
        sealed = AESGCM(_derive_record_key(key, salt)).encrypt(
            iv, plaintext.encode("utf-8"), None
        )
    except Exception as e:
        logger.error("Token encryption failed: %s", type(e).__name__)
        raise EncryptionError() from e
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(iv + salt + tag + ciphertext).decode("ascii")


def decrypt_token(blob: str, key: bytes) -> str:
    """Decrypt a blob produced by encrypt_token.

    Fails closed: a malformed, truncated or tampered blob never yields
    partial plaintext.

    Args:
        blob: base64(IV || SALT || TAG || CIPHERTEXT).
        key: 32-byte master key.

    Returns:
        The decrypted secret.

    Raises:
        CryptoConfigError: If the key is empty or the wrong length.
        DecryptionError: On any decoding or authentication failure.
    """
    _check_key(key)
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError() from e

    header = IV_LENGTH + SALT_LENGTH + TAG_LENGTH
    if len(raw) < header:
        raise DecryptionError()

    iv = raw[:IV_LENGTH]
    salt = raw[IV_LENGTH:IV_LENGTH + SALT_LENGTH]
    tag = raw[IV_LENGTH + SALT_LENGTH:header]
    ciphertext = raw[header:]

    last_error: Exception | None = None
    for candidate in (_derive_record_key(key, salt), key):
        try:
            plaintext = AESGCM(candidate).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            last_error = e
            continue
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError() from e

    raise DecryptionError() from last_error


class CredentialVault:
    """Holds the process-wide master key and encrypts/decrypts secrets.

    The key is read once at construction and never mutated.
    """

    def __init__(self, key: bytes | None = None) -> None:
        """Initialize the vault.

        Args:
            key: 32-byte master key. Loaded from the environment if None.

        Raises:
            CryptoConfigError: If no valid key is available.
        """
        self._key = key if key is not None else load_encryption_key()
        _check_key(self._key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret with the vault key."""
        return encrypt_token(plaintext, self._key)

    def decrypt(self, blob: str) -> str:
        """Decrypt a secret with the vault key."""
        return decrypt_token(blob, self._key)
