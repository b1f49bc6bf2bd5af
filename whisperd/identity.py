"""
Whisper Node Identity

Produces and persists the stable local node identifier.

The identity is created lazily on first access, persisted, and returned
unchanged on every later call until an explicit reset.
"""

import json
import time
import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from . import NODE_ID_LENGTH
from .crypto.primitives import generate_node_id
from .storage.kv import (
    DEFAULT_STORAGE_TIMEOUT, KeyValueStore, StorageError, record_int, storage_key, with_timeout,
)


logger = logging.getLogger(__name__)

IDENTITY_STORAGE_KEY = storage_key("identity")

NAME_ANIMALS = ("Fox", "Otter", "Wolf", "Hawk", "Raven", "Tiger")


class IdentityError(Exception):
    """Exception raised when the stored identity is unreadable or corrupt."""
    pass


def generate_name() -> str:
    """Random display name such as ``Whisper-Otter``."""
    return f"Whisper-{secrets.choice(NAME_ANIMALS)}"


@dataclass(frozen=True)
class Identity:
    """
    Local node identity.

    Attributes:
        id: 32-char hex node ID
        name: Display name
        created_at: Creation time (ms since epoch)
    """
    id: str
    name: Optional[str]
    created_at: int

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: dict) -> 'Identity':
        """
        Load a stored identity. Unknown fields are ignored.

        Raises:
            IdentityError: If the id is missing or too short
        """
        node_id = data.get("id") or data.get("nodeId")
        name = data.get("name")
        if not isinstance(node_id, str) or len(node_id) < NODE_ID_LENGTH * 2:
            raise IdentityError("Stored identity has no valid id")

        return cls(
            id=node_id,
            name=name if isinstance(name, str) else None,
            created_at=record_int(data.get("createdAt", data.get("created_at"))),
        )


class IdentityProvider:
    """
    Lazily created, persisted node identity.

    Concurrent first calls share one generated identity: the result is
    memoized per process behind an asyncio.Lock.

    Usage:
        provider = IdentityProvider(kv)
        identity = await provider.get_or_create_identity()
    """

    def __init__(
        self,
        kv: KeyValueStore,
        name: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_STORAGE_TIMEOUT,
    ):
        """
        Initialize provider.

        Args:
            kv: Persistence backend
            name: Display name for a newly created identity
                (random if not given)
            timeout: Limit for each backend call in seconds
        """
        self._kv = kv
        self._name = name
        self._timeout = timeout
        self._cached: Optional[Identity] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Optional[Identity]:
        try:
            raw = await with_timeout(
                self._kv.get(IDENTITY_STORAGE_KEY), self._timeout, "Identity read"
            )
        except StorageError as e:
            raise IdentityError(f"Failed to read identity: {e}") from e

        if raw is None:
            return None

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise IdentityError(f"Stored identity is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise IdentityError("Stored identity is not an object")

        return Identity.from_dict(data)

    async def get_or_create_identity(self) -> Identity:
        """
        Return the persisted identity, creating it on first use.

        Raises:
            IdentityError: If the stored identity cannot be read
        """
        async with self._lock:
            if self._cached is not None:
                return self._cached

            identity = await self._load()
            if identity is None:
                identity = Identity(
                    id=generate_node_id(NODE_ID_LENGTH),
                    name=self._name or generate_name(),
                    created_at=int(time.time() * 1000),
                )
                try:
                    await with_timeout(
                        self._kv.set(IDENTITY_STORAGE_KEY, json.dumps(identity.to_dict())),
                        self._timeout,
                        "Identity write",
                    )
                except StorageError as e:
                    logger.warning(f"Failed to persist identity, keeping it in memory: {e}")
                logger.info(f"Created node identity {identity.id}")

            self._cached = identity
            return identity

    async def reset(self) -> None:
        """
        Delete the persisted identity.

        The next get_or_create_identity() generates a new one.

        Raises:
            IdentityError: If the backend cannot delete it
        """
        async with self._lock:
            try:
                await with_timeout(
                    self._kv.remove(IDENTITY_STORAGE_KEY), self._timeout, "Identity delete"
                )
            except StorageError as e:
                raise IdentityError(f"Failed to delete identity: {e}") from e
            self._cached = None

        logger.info("Node identity reset")
