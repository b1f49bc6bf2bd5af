"""
Whisper Mesh - offline peer-to-peer messaging core

Store-and-forward flood routing, a per-conversation message store and
a local payload cipher for short-range wireless links.

This package contains:
- crypto/     : Hashing primitives, key management, payload cipher
- packet/     : Packet model, seen-set, message store, conversation queries
- mesh/       : Flood router
- transport/  : Link layer abstraction and in-process loopback medium
- storage/    : Async key/value persistence
- node.py     : Component wiring and lifecycle
"""

__version__ = "0.1.0"
__author__ = "Whisper Project"

# Core constants
PROTOCOL = "whisper/1"
NODE_ID_LENGTH = 16  # bytes (32 hex chars)
KEY_SIZE = 32  # bytes (256-bit keys)
DEFAULT_TTL = 4  # hops
BROADCAST = "*"
