"""
Whisper Key Management

Handles:
- Node key pair generation and storage
- Key rotation and deletion
- Validation of stored keys on load

Key Types:
- Private key: 32 bytes drawn from the kernel CSPRNG
- Public key: X25519 public key of the private key (32 bytes)

Both keys are stored hex-encoded. ECDH over X25519 gives the two ends
of a conversation the same shared material from opposite key halves.

SECURITY NOTES:
- Private keys are never logged
- Rotation discards the previous pair; nothing encrypted under it can
  be decrypted afterwards
"""

import json
import time
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from .primitives import random_bytes, X25519_KEY_SIZE
from ..storage.kv import (
    DEFAULT_STORAGE_TIMEOUT, KeyValueStore, StorageError, record_int, storage_key, with_timeout,
)


logger = logging.getLogger(__name__)

# Default key size in bytes (256-bit keys)
DEFAULT_KEY_SIZE = X25519_KEY_SIZE

KEYS_STORAGE_KEY = storage_key("keys")


class KeyStoreError(Exception):
    """Exception raised for missing, unreadable or corrupt keys."""
    pass


@dataclass(frozen=True)
class KeyPair:
    """
    Node key pair.

    Attributes:
        public_key: Hex-encoded public key
        private_key: Hex-encoded private key
        created_at: Creation time (ms since epoch)
    """
    public_key: str
    private_key: str
    created_at: int

    @property
    def public_bytes(self) -> bytes:
        return bytes.fromhex(self.public_key)

    @property
    def private_bytes(self) -> bytes:
        return bytes.fromhex(self.private_key)

    def exchange(self, peer_public_key: str) -> bytes:
        """
        Compute the X25519 shared secret with a peer.

        Args:
            peer_public_key: Peer's hex-encoded public key

        Returns:
            bytes: 32-byte shared secret
        """
        private = X25519PrivateKey.from_private_bytes(self.private_bytes)
        return private.exchange(public_key_from_hex(peer_public_key))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict, key_size: int = DEFAULT_KEY_SIZE) -> 'KeyPair':
        """
        Load and validate a stored key pair.

        Unknown fields are ignored.

        Raises:
            KeyStoreError: If a key is missing, not hex, the wrong length,
                or the public key does not belong to the private key
        """
        try:
            public_key = data["publicKey"] if "publicKey" in data else data["public_key"]
            private_key = data["privateKey"] if "privateKey" in data else data["private_key"]
        except (KeyError, TypeError) as e:
            raise KeyStoreError(f"Stored key pair is missing a key: {e}")

        created_at = data.get("createdAt", data.get("created_at"))

        for name, value in (("public", public_key), ("private", private_key)):
            _validate_hex_key(name, value, key_size)

        pair = cls(
            public_key=public_key.lower(),
            private_key=private_key.lower(),
            created_at=record_int(created_at),
        )

        if derive_public_key(pair.private_bytes) != pair.public_key:
            raise KeyStoreError("Stored public key does not match private key")

        return pair


def _validate_hex_key(name: str, value, key_size: int) -> None:
    if not isinstance(value, str):
        raise KeyStoreError(f"Stored {name} key is not a string")
    if len(value) != key_size * 2:
        raise KeyStoreError(
            f"Invalid {name} key length: {len(value)} hex chars "
            f"(expected {key_size * 2}) - possible storage corruption"
        )
    try:
        bytes.fromhex(value)
    except ValueError:
        raise KeyStoreError(f"Stored {name} key is not valid hex")


def derive_public_key(private_bytes: bytes) -> str:
    """Derive the hex X25519 public key for raw private key bytes."""
    private = X25519PrivateKey.from_private_bytes(private_bytes)
    return private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ).hex()


def public_key_from_hex(data: str) -> X25519PublicKey:
    """
    Load X25519 public key from hex.

    Raises:
        KeyStoreError: If the key is malformed
    """
    try:
        raw = bytes.fromhex(data)
    except (ValueError, TypeError):
        raise KeyStoreError("Public key is not valid hex")
    if len(raw) != X25519_KEY_SIZE:
        raise KeyStoreError(f"Invalid public key length: {len(raw)} (expected {X25519_KEY_SIZE})")
    return X25519PublicKey.from_public_bytes(raw)


def generate_key_pair(key_size: int = DEFAULT_KEY_SIZE) -> KeyPair:
    """
    Generate a new key pair.

    Returns:
        KeyPair: Fresh key pair with a CSPRNG private key
    """
    if key_size != X25519_KEY_SIZE:
        raise ValueError(f"Unsupported key size: {key_size} (expected {X25519_KEY_SIZE})")

    private_bytes = random_bytes(key_size)
    return KeyPair(
        public_key=derive_public_key(private_bytes),
        private_key=private_bytes.hex(),
        created_at=int(time.time() * 1000),
    )


class KeyManager:
    """
    Persistent node key pair.

    Usage:
        keys = KeyManager(kv)
        pair = await keys.get_or_create_key_pair()

        # Replace the pair (old ciphertexts become undecryptable)
        await keys.rotate_keys()
    """

    def __init__(
        self,
        kv: KeyValueStore,
        key_size: int = DEFAULT_KEY_SIZE,
        timeout: Optional[float] = DEFAULT_STORAGE_TIMEOUT,
    ):
        """
        Initialize key manager.

        Args:
            kv: Persistence backend
            key_size: Key size in bytes
            timeout: Limit for each backend call in seconds
        """
        self._kv = kv
        self._key_size = key_size
        self._timeout = timeout
        self._cached: Optional[KeyPair] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Optional[KeyPair]:
        try:
            raw = await with_timeout(self._kv.get(KEYS_STORAGE_KEY), self._timeout, "Key read")
        except StorageError as e:
            raise KeyStoreError(f"Failed to read keys: {e}") from e

        if raw is None:
            return None

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise KeyStoreError(f"Stored key record is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise KeyStoreError("Stored key record is not an object")

        return KeyPair.from_dict(data, self._key_size)

    async def _store(self, pair: KeyPair) -> None:
        record = {
            "publicKey": pair.public_key,
            "privateKey": pair.private_key,
            "createdAt": pair.created_at,
        }
        try:
            await with_timeout(
                self._kv.set(KEYS_STORAGE_KEY, json.dumps(record)), self._timeout, "Key write"
            )
        except StorageError as e:
            logger.warning(f"Failed to persist key pair, keeping it in memory: {e}")

    async def get_or_create_key_pair(self) -> KeyPair:
        """
        Return the stored key pair, generating one on first use.

        Raises:
            KeyStoreError: If stored keys are unreadable or corrupt
        """
        async with self._lock:
            if self._cached is not None:
                return self._cached

            pair = await self._load()
            if pair is None:
                pair = generate_key_pair(self._key_size)
                await self._store(pair)
                logger.info("Generated new node key pair")

            self._cached = pair
            return pair

    async def get_public_key(self) -> str:
        return (await self.get_or_create_key_pair()).public_key

    async def get_private_key(self) -> str:
        return (await self.get_or_create_key_pair()).private_key

    async def rotate_keys(self) -> KeyPair:
        """
        Generate and persist a new key pair, discarding the old one.

        Messages encrypted under the previous pair can no longer be
        decrypted.
        """
        async with self._lock:
            pair = generate_key_pair(self._key_size)
            await self._store(pair)
            self._cached = pair

        logger.warning(
            "Keys rotated: payloads encrypted under the previous key pair "
            "are no longer decryptable"
        )
        return pair

    async def delete_keys(self) -> None:
        """
        Remove persisted keys.

        Raises:
            KeyStoreError: If the backend cannot delete them
        """
        async with self._lock:
            try:
                await with_timeout(
                    self._kv.remove(KEYS_STORAGE_KEY), self._timeout, "Key delete"
                )
            except StorageError as e:
                raise KeyStoreError(f"Failed to delete keys: {e}") from e
            self._cached = None

        logger.info("Keys deleted")

    async def get_key_metadata(self) -> dict:
        """
        Describe stored keys without exposing them.

        Returns:
            dict: {"has_keys": bool, "created_at": Optional[int]}
        """
        try:
            pair = await self._load()
        except KeyStoreError as e:
            logger.error(f"Failed to read key metadata: {e}")
            return {"has_keys": False, "created_at": None}

        if pair is None:
            return {"has_keys": False, "created_at": None}
        return {"has_keys": True, "created_at": pair.created_at}
