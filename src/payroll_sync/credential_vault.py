"""
Authenticated encryption for OAuth tokens at rest.

Tokens are sealed with AES-256-GCM using a fresh 128-bit IV per call and
stored as a single text field:

    <iv hex>:<tag hex>:<ciphertext hex>

Any change to the IV, tag or ciphertext fails authentication on decrypt.

Usage:
    vault = CredentialVault(config.encryption_key_bytes)

    stored = vault.encrypt(refresh_token)
    refresh_token = vault.decrypt(stored)
"""

import hashlib
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)


KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16   # 128-bit IV
TAG_LENGTH = 16  # 128-bit GCM tag


class CredentialVaultError(Exception):
    """Base exception for credential vault errors."""
    pass


class VaultKeyError(CredentialVaultError):
    """Vault key is missing or malformed."""
    pass


class EncryptionError(CredentialVaultError):
    """Error during encryption."""
    pass


class DecryptionError(CredentialVaultError):
    """Ciphertext is malformed, tampered with, or sealed under another key."""
    pass


class CredentialVault:
    """
    AES-256-GCM sealing for token strings.

    Holds the raw 32-byte key; a vault instance is safe to share across
    tasks since every call uses its own IV.
    """

    def __init__(self, key: bytes):
        """
        Initialize the credential vault.

        Args:
            key: 32-byte AES key (see SyncConfig.encryption_key_bytes)

        Raises:
            VaultKeyError: If the key is not 32 bytes
        """
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
            raise VaultKeyError(f"Vault key must be {KEY_LENGTH} bytes")
        self._aesgcm = AESGCM(bytes(key))
        self._fingerprint = hashlib.sha256(bytes(key)).hexdigest()[:16]

        logger.info(f"CredentialVault initialized key_fingerprint={self._fingerprint}")

    @classmethod
    def from_hex(cls, key_hex: str) -> "CredentialVault":
        try:
            return cls(bytes.fromhex(key_hex))
        except ValueError as e:
            raise VaultKeyError("Vault key must be hex encoded") from e

    @property
    def key_fingerprint(self) -> str:
        """SHA256 fingerprint of the key, safe to log."""
        return self._fingerprint

    def encrypt(self, plaintext: str) -> str:
        """
        Seal a token string.

        Args:
            plaintext: Token to encrypt

        Returns:
            "iv:tag:ciphertext" in lowercase hex

        Raises:
            EncryptionError: If encryption fails
        """
        try:
            iv = secrets.token_bytes(IV_LENGTH)
            sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError, AttributeError) as e:
            logger.error(f"Encryption failed: {type(e).__name__}")
            raise EncryptionError(f"Failed to encrypt value: {type(e).__name__}") from e

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, stored: str) -> str:
        """
        Open a value produced by encrypt().

        Args:
            stored: "iv:tag:ciphertext" hex string

        Returns:
            The original plaintext

        Raises:
            DecryptionError: If the value is malformed or fails authentication
        """
        parts = stored.split(":") if isinstance(stored, str) else []
        if len(parts) != 3:
            raise DecryptionError("Malformed ciphertext: expected iv:tag:ciphertext")

        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise DecryptionError("Malformed ciphertext: invalid hex") from e

        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Malformed ciphertext: bad IV or tag length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error(
                f"Decryption failed key_fingerprint={self._fingerprint} "
                "(authentication failed - key mismatch or tampered data)"
            )
            raise DecryptionError("Authentication failed - value may be tampered") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not valid UTF-8") from e
