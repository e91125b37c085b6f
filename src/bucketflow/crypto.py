"""
Client-side encryption for object payloads.

Payloads are sealed with AES-GCM under a named key held by a key store.
The sealed form is the combined layout ``nonce || ciphertext || tag`` so a
single byte string round-trips through the object store. Objects written
this way carry metadata naming the key alias, which is what downloads use
to decide whether to decrypt.
"""

import logging
import os
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .error import DecryptionException, EncryptionKeyNotFoundException

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

CSE_ENABLED = "cse-enabled"
CSE_KEY_ALIAS = "cse-key-alias"
META_PREFIX = "x-amz-meta-"


class KeyStore(Protocol):
    """Source of raw key bytes by alias. Implementations live outside the core."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def read(self, alias: str) -> Optional[bytes]: ...

    def save(self, alias: str, key: bytes) -> None: ...

    def delete(self, alias: str) -> None: ...

    def aliases(self) -> Iterable[str]: ...


class InMemoryKeyStore:
    """Dictionary-backed :class:`KeyStore`."""

    def __init__(self, keys: Optional[Mapping[str, bytes]] = None):
        self._keys: Dict[str, bytes] = dict(keys or {})
        self._open = False

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def read(self, alias: str) -> Optional[bytes]:
        return self._keys.get(alias)

    def save(self, alias: str, key: bytes) -> None:
        self._keys[alias] = bytes(key)

    def delete(self, alias: str) -> None:
        self._keys.pop(alias, None)

    def aliases(self) -> Iterable[str]:
        return sorted(self._keys)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def encryption_metadata(alias: str) -> Dict[str, str]:
    """User metadata (without the ``x-amz-meta-`` prefix) tagging an encrypted object."""
    return {CSE_ENABLED: "true", CSE_KEY_ALIAS: alias}


def encryption_alias(headers: Mapping[str, str]) -> Optional[str]:
    """
    Return the key alias an object was encrypted with, or ``None``.

    Some providers echo user metadata without the ``x-amz-meta-`` prefix,
    so both spellings are accepted.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    enabled = lowered.get(META_PREFIX + CSE_ENABLED, lowered.get(CSE_ENABLED, ""))
    if enabled.strip().lower() != "true":
        return None
    # tagged without an alias still has to fail resolution downstream
    return (lowered.get(META_PREFIX + CSE_KEY_ALIAS) or lowered.get(CSE_KEY_ALIAS) or "").strip()


class EncryptionCodec:
    """Seals and opens payloads with keys resolved from a :class:`KeyStore`."""

    def __init__(self, key_store: KeyStore):
        self._key_store = key_store

    @staticmethod
    def generate_key() -> bytes:
        """
        Generate a new 256-bit symmetric key.

        Returns:
            32 random bytes suitable for :meth:`seal`.
        """
        return AESGCM.generate_key(bit_length=KEY_SIZE * 8)

    @staticmethod
    def seal(data: bytes, key: bytes) -> bytes:
        """
        Encrypt data with AES-GCM.

        Args:
            data: Plaintext payload
            key: 16, 24 or 32 byte key

        Returns:
            ``nonce || ciphertext || tag``
        """
        nonce = os.urandom(NONCE_SIZE)
        return nonce + AESGCM(key).encrypt(nonce, data, None)

    @staticmethod
    def open(combined: bytes, key: bytes) -> bytes:
        """
        Decrypt data produced by :meth:`seal`.

        Raises:
            DecryptionException: when the payload is truncated or fails authentication.
        """
        if len(combined) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionException("Encrypted payload is too short.")
        nonce, sealed = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
        try:
            return AESGCM(key).decrypt(nonce, sealed, None)
        except InvalidTag as ex:
            raise DecryptionException("Encrypted payload failed authentication.") from ex

    def resolve(self, alias: str) -> bytes:
        key = self._key_store.read(alias)
        if not key:
            raise EncryptionKeyNotFoundException(alias)
        return key

    def encrypt(self, data: bytes, alias: Optional[str]) -> Tuple[bytes, Dict[str, str]]:
        """Encrypt under ``alias`` and return the payload plus the metadata to attach."""
        if alias is None:
            return data, {}
        key = self.resolve(alias)
        logger.debug("[CSE] Encrypting %d bytes with alias %s", len(data), alias)
        return self.seal(data, key), encryption_metadata(alias)

    def decrypt_if_needed(self, data: bytes, headers: Mapping[str, str]) -> bytes:
        """Invert :meth:`encrypt` for tagged objects; untagged payloads pass through."""
        alias = encryption_alias(headers)
        if alias is None:
            return data
        key = self.resolve(alias)
        logger.debug("[CSE] Decrypting %d bytes with alias %s", len(data), alias)
        return self.open(data, key)
