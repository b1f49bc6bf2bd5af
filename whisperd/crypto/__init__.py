"""
Whisper Cryptographic Module

Provides the cryptographic operations for Whisper:
- Hashing and randomness (SHA-256, CSPRNG)
- Node key pairs (X25519)
- Payload encryption (SHA-256 stream cipher, ChaCha20-Poly1305)

All implementations use python3-cryptography (OpenSSL backend).
"""

from .primitives import (
    random_bytes,
    sha256,
    sha256_hex,
    constant_time_compare,
    generate_packet_id,
    generate_node_id,
)

from .keys import (
    KeyPair,
    KeyManager,
    KeyStoreError,
    generate_key_pair,
)

from .cipher import (
    CipherEngine,
    ShaStreamCipher,
    AeadCipher,
    EncryptedEnvelope,
    DecryptedMessage,
    CipherError,
    EnvelopeFormatError,
    AuthenticationError,
    create_cipher,
)

__all__ = [
    # Primitives
    'random_bytes',
    'sha256',
    'sha256_hex',
    'constant_time_compare',
    'generate_packet_id',
    'generate_node_id',
    # Keys
    'KeyPair',
    'KeyManager',
    'KeyStoreError',
    'generate_key_pair',
    # Cipher
    'CipherEngine',
    'ShaStreamCipher',
    'AeadCipher',
    'EncryptedEnvelope',
    'DecryptedMessage',
    'CipherError',
    'EnvelopeFormatError',
    'AuthenticationError',
    'create_cipher',
]
