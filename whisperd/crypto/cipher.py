"""
Whisper Payload Encryption

Symmetric encryption of message payloads between two nodes.

Both ends derive the same symmetric key from their own private key and
the other party's public key (X25519), hashed with SHA-256.

Engines:
- ShaStreamCipher ("sha256"): SHA-256 counter-mode keystream with a
  SHA-256 integrity tag over iv, data and the sealed timestamp. The
  envelope shape follows the mobile client; ciphertexts are not
  interchangeable with it.
- AeadCipher ("chacha20-poly1305"): ChaCha20-Poly1305 AEAD.

Envelope format (both engines):
    {ciphertext, iv, algorithm, timestamp}

For the stream cipher, ``ciphertext`` is base64 of the JSON record
{data, authTag, timestamp}, where ``data`` is the base64 XOR output and
``authTag`` the hex tag. ``iv`` is sent in clear as hex.

Only canonical encodings are accepted (lowercase hex, padded base64
with zero trailing bits, the exact JSON layout written by encrypt), so
every altered bit of ``iv`` or ``ciphertext`` fails verification.

SECURITY NOTES:
- The stream cipher is homegrown and has not been reviewed; prefer the
  AEAD engine where both ends support it
- sign()/verify() are keyed on the signer's PUBLIC key, so anyone
  holding that key can produce a valid signature. They detect
  accidental corruption, not forgery.
- Tag mismatch never releases plaintext
"""

import json
import time
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Type, Union

from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.exceptions import InvalidTag

from .primitives import (
    random_bytes,
    sha256,
    constant_time_compare,
    IV_SIZE,
    CHACHA20_NONCE_SIZE,
    SHA256_DIGEST_SIZE,
)
from .keys import KeyPair, KeyStoreError


logger = logging.getLogger(__name__)

SHA_STREAM_ALGORITHM = "sha256"
AEAD_ALGORITHM = "chacha20-poly1305"


class CipherError(Exception):
    """Base exception for payload encryption errors."""
    pass


class EnvelopeFormatError(CipherError):
    """Envelope is structurally invalid (missing field, wrong type, unknown algorithm)."""
    pass


class AuthenticationError(CipherError):
    """Envelope content did not verify: tampering or wrong key."""
    pass


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    Encrypted payload as carried inside a packet.

    Attributes:
        ciphertext: Engine-specific base64 blob
        iv: Hex IV / nonce (sent in clear)
        algorithm: Engine identifier
        timestamp: Encryption time (ms since epoch)
    """
    ciphertext: str
    iv: str
    algorithm: str
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "algorithm": self.algorithm,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data) -> 'EncryptedEnvelope':
        """
        Build envelope from a decoded payload.

        Raises:
            EnvelopeFormatError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise EnvelopeFormatError("Envelope is not an object")

        for field_name in ("ciphertext", "iv", "algorithm"):
            if not isinstance(data.get(field_name), str):
                raise EnvelopeFormatError(f"Envelope field missing or invalid: {field_name}")

        timestamp = data.get("timestamp", 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise EnvelopeFormatError("Envelope field missing or invalid: timestamp")

        return cls(
            ciphertext=data["ciphertext"],
            iv=data["iv"],
            algorithm=data["algorithm"],
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class DecryptedMessage:
    """Result of a successful decryption."""
    plaintext: str
    timestamp: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64decode(data: str, what: str) -> bytes:
    try:
        decoded = base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise AuthenticationError(f"Invalid base64 in {what}: {e}")
    if base64.b64encode(decoded).decode("ascii") != data:
        raise AuthenticationError(f"Non-canonical base64 in {what}")
    return decoded


def _hex_decode(data: str, what: str) -> bytes:
    try:
        decoded = bytes.fromhex(data)
    except (ValueError, TypeError):
        raise AuthenticationError(f"Invalid hex in {what}")
    if decoded.hex() != data:
        raise AuthenticationError(f"Non-canonical hex in {what}")
    return decoded


class CipherEngine(ABC):
    """
    Payload encryption between the local node and one peer.

    Usage:
        cipher = create_cipher("sha-stream", key_pair)
        envelope = cipher.encrypt("hello", peer_public_key)

        # On the peer
        message = peer_cipher.decrypt(envelope, sender_public_key)
    """

    algorithm = ""

    def __init__(self, key_pair: KeyPair):
        """
        Initialize engine.

        Args:
            key_pair: Local node key pair
        """
        self._key_pair = key_pair

    @property
    def public_key(self) -> str:
        return self._key_pair.public_key

    def derive_key(self, material: bytes) -> bytes:
        """Derive a 32-byte symmetric key from shared material (SHA-256)."""
        return sha256(material)

    def _session_key(self, peer_public_key: str) -> bytes:
        try:
            shared = self._key_pair.exchange(peer_public_key)
        except KeyStoreError as e:
            raise CipherError(f"Invalid peer public key: {e}") from e
        return self.derive_key(shared)

    @abstractmethod
    def encrypt(self, plaintext: str, recipient_public_key: str) -> EncryptedEnvelope:
        """
        Encrypt text for a recipient.

        Args:
            plaintext: Message text
            recipient_public_key: Recipient's hex public key

        Returns:
            EncryptedEnvelope: Encrypted payload
        """
        pass

    @abstractmethod
    def decrypt(self, envelope: EncryptedEnvelope, sender_public_key: str) -> DecryptedMessage:
        """
        Decrypt an envelope from a sender.

        Raises:
            EnvelopeFormatError: If a field is missing or the algorithm
                is not this engine's
            AuthenticationError: If the iv or ciphertext does not decode
                or does not verify
        """
        pass

    def sign(self, data: Union[bytes, str]) -> str:
        """Hex SHA-256(data || own public key)."""
        return sha256(data, self._key_pair.public_bytes).hex()

    def verify(self, data: Union[bytes, str], signature: str, public_key: str) -> bool:
        """Check a signature produced by sign() on the holder of public_key."""
        try:
            expected = sha256(data, bytes.fromhex(public_key))
            given = bytes.fromhex(signature)
        except (ValueError, TypeError):
            return False
        return constant_time_compare(expected, given)

    def hash(self, data: Union[bytes, str]) -> str:
        """Hex SHA-256 of data."""
        return sha256(data).hex()


class ShaStreamCipher(CipherEngine):
    """
    SHA-256 counter-mode stream cipher with SHA-256 tag.

    keystream = SHA-256(key || iv || counter) for counter = 0, 1, ...
    ciphertext = plaintext XOR keystream
    tag = SHA-256(iv || ciphertext || key || timestamp)

    The timestamp is the 8-byte big-endian value sealed in the record
    and must equal the envelope timestamp.
    """

    algorithm = SHA_STREAM_ALGORITHM

    @staticmethod
    def _keystream(key: bytes, iv: bytes, length: int) -> bytes:
        blocks = []
        counter = 0
        produced = 0
        while produced < length:
            block = sha256(key, iv, counter.to_bytes(4, "big"))
            blocks.append(block)
            produced += SHA256_DIGEST_SIZE
            counter += 1
        return b"".join(blocks)[:length]

    @classmethod
    def _xor(cls, data: bytes, key: bytes, iv: bytes) -> bytes:
        stream = cls._keystream(key, iv, len(data))
        return bytes(a ^ b for a, b in zip(data, stream))

    @staticmethod
    def _tag(iv: bytes, data: bytes, key: bytes, timestamp: int) -> bytes:
        return sha256(iv, data, key, timestamp.to_bytes(8, "big"))

    def encrypt(self, plaintext: str, recipient_public_key: str) -> EncryptedEnvelope:
        key = self._session_key(recipient_public_key)
        iv = random_bytes(IV_SIZE)
        timestamp = _now_ms()

        data = self._xor(plaintext.encode("utf-8"), key, iv)
        tag = self._tag(iv, data, key, timestamp)

        record = {
            "data": base64.b64encode(data).decode("ascii"),
            "authTag": tag.hex(),
            "timestamp": timestamp,
        }
        outer = base64.b64encode(json.dumps(record).encode("utf-8")).decode("ascii")

        return EncryptedEnvelope(
            ciphertext=outer,
            iv=iv.hex(),
            algorithm=self.algorithm,
            timestamp=timestamp,
        )

    def _unpack(self, envelope: EncryptedEnvelope):
        if envelope.algorithm != self.algorithm:
            raise EnvelopeFormatError(
                f"Unsupported algorithm: {envelope.algorithm} (expected {self.algorithm})"
            )

        iv = _hex_decode(envelope.iv, "iv")
        if len(iv) != IV_SIZE:
            raise AuthenticationError(f"Invalid IV length: {len(iv)} (expected {IV_SIZE})")

        raw = _b64decode(envelope.ciphertext, "ciphertext")
        try:
            record = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise AuthenticationError(f"Ciphertext is not a JSON record: {e}")

        if not isinstance(record, dict):
            raise AuthenticationError("Ciphertext record is not an object")
        if json.dumps(record).encode("utf-8") != raw:
            raise AuthenticationError("Ciphertext record is not in canonical form")
        if not isinstance(record.get("data"), str) or not isinstance(record.get("authTag"), str):
            raise AuthenticationError("Ciphertext record missing data or authTag")

        timestamp = record.get("timestamp")
        if (isinstance(timestamp, bool) or not isinstance(timestamp, int)
                or not 0 <= timestamp < 2 ** 64):
            raise AuthenticationError("Ciphertext record has no valid timestamp")
        if timestamp != envelope.timestamp:
            raise AuthenticationError("Envelope timestamp does not match sealed timestamp")

        data = _b64decode(record["data"], "data")
        tag = _hex_decode(record["authTag"], "authTag")

        return iv, data, tag, timestamp

    def decrypt(self, envelope: EncryptedEnvelope, sender_public_key: str) -> DecryptedMessage:
        iv, data, tag, timestamp = self._unpack(envelope)
        key = self._session_key(sender_public_key)

        expected = self._tag(iv, data, key, timestamp)
        if not constant_time_compare(expected, tag):
            raise AuthenticationError("Authentication failed: invalid tag (tampering or wrong key)")

        plaintext = self._xor(data, key, iv)
        try:
            text = plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeFormatError(f"Decrypted payload is not UTF-8: {e}")

        return DecryptedMessage(plaintext=text, timestamp=timestamp)


class AeadCipher(CipherEngine):
    """
    ChaCha20-Poly1305 engine.

    The envelope timestamp is bound as associated data.
    """

    algorithm = AEAD_ALGORITHM

    @staticmethod
    def _aad(timestamp: int) -> bytes:
        return str(timestamp).encode("ascii")

    def encrypt(self, plaintext: str, recipient_public_key: str) -> EncryptedEnvelope:
        key = self._session_key(recipient_public_key)
        nonce = random_bytes(CHACHA20_NONCE_SIZE)
        timestamp = _now_ms()

        sealed = ChaCha20Poly1305(key).encrypt(
            nonce, plaintext.encode("utf-8"), self._aad(timestamp)
        )

        return EncryptedEnvelope(
            ciphertext=base64.b64encode(sealed).decode("ascii"),
            iv=nonce.hex(),
            algorithm=self.algorithm,
            timestamp=timestamp,
        )

    def decrypt(self, envelope: EncryptedEnvelope, sender_public_key: str) -> DecryptedMessage:
        if envelope.algorithm != self.algorithm:
            raise EnvelopeFormatError(
                f"Unsupported algorithm: {envelope.algorithm} (expected {self.algorithm})"
            )

        nonce = _hex_decode(envelope.iv, "iv")
        if len(nonce) != CHACHA20_NONCE_SIZE:
            raise AuthenticationError(
                f"Invalid nonce length: {len(nonce)} (expected {CHACHA20_NONCE_SIZE})"
            )
        sealed = _b64decode(envelope.ciphertext, "ciphertext")
        key = self._session_key(sender_public_key)

        try:
            plaintext = ChaCha20Poly1305(key).decrypt(
                nonce, sealed, self._aad(envelope.timestamp)
            )
        except InvalidTag:
            raise AuthenticationError("Authentication failed: invalid tag (tampering or wrong key)")

        try:
            text = plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeFormatError(f"Decrypted payload is not UTF-8: {e}")

        return DecryptedMessage(plaintext=text, timestamp=envelope.timestamp)


# Configuration name -> engine
CIPHERS: Dict[str, Type[CipherEngine]] = {
    "sha-stream": ShaStreamCipher,
    SHA_STREAM_ALGORITHM: ShaStreamCipher,
    AEAD_ALGORITHM: AeadCipher,
}


def create_cipher(name: str, key_pair: KeyPair) -> CipherEngine:
    """
    Create a cipher engine by configuration name.

    Args:
        name: "sha-stream" (alias "sha256") or "chacha20-poly1305"
        key_pair: Local node key pair

    Raises:
        ValueError: If the name is unknown
    """
    try:
        engine = CIPHERS[name]
    except KeyError:
        raise ValueError(f"Unknown cipher: {name}")
    return engine(key_pair)
