"""
Whisper Cryptographic Primitives

Low-level hashing and randomness helpers wrapping the cryptography library.

SECURITY NOTES:
- All randomness from os.urandom (kernel CSPRNG)
- Tag and signature comparisons use constant-time operations
"""

import os
import hmac
import uuid
from typing import Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.backends import default_backend


# SHA-256 output size
SHA256_DIGEST_SIZE = 32  # bytes

# Initialization vector size for the stream cipher
IV_SIZE = 16  # bytes

# Nonce size for ChaCha20-Poly1305
CHACHA20_NONCE_SIZE = 12  # bytes
CHACHA20_KEY_SIZE = 32  # bytes

# X25519 key size
X25519_KEY_SIZE = 32  # bytes


def random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of random bytes to generate

    Returns:
        bytes: Cryptographically secure random bytes

    Raises:
        ValueError: If length is negative
    """
    if length < 0:
        raise ValueError("Length must be non-negative")
    return os.urandom(length)


def _to_bytes(data: Union[bytes, str]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def sha256(*parts: Union[bytes, str]) -> bytes:
    """
    Compute SHA-256 over the concatenation of parts.

    Strings are UTF-8 encoded before hashing.

    Args:
        *parts: Byte or text fragments, hashed in order

    Returns:
        bytes: 32-byte digest
    """
    hasher = hashes.Hash(hashes.SHA256(), backend=default_backend())
    for part in parts:
        hasher.update(_to_bytes(part))
    return hasher.finalize()


def sha256_hex(*parts: Union[bytes, str]) -> str:
    """SHA-256 over parts as a lowercase hex string."""
    return sha256(*parts).hex()


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Compare two byte strings in constant time.

    Uses hmac.compare_digest() so comparison time does not depend on
    where the inputs differ.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        bool: True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)


def generate_packet_id() -> str:
    """
    Generate a globally unique packet/message identifier.

    UUID4 carries 122 random bits from os.urandom, so collisions
    across the mesh are negligible.
    """
    return str(uuid.uuid4())


def generate_node_id(length: int = 16) -> str:
    """
    Generate a node identifier.

    NodeID = SHA-256(random(32))[:length] as hex

    Args:
        length: Identifier size in bytes (default 16, i.e. 128 bits)

    Returns:
        str: Lowercase hex node ID (2 * length characters)
    """
    if not 16 <= length <= SHA256_DIGEST_SIZE:
        raise ValueError("Node ID length must be 16-32 bytes")
    return sha256(random_bytes(32))[:length].hex()
