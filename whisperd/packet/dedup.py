"""
Whisper Packet Deduplication

Seen-set guaranteeing that the router handles each packet id at most once.

Features:
- Bounded size (least recently seen ids evicted first)
- Hit/miss/eviction statistics
- Export/import for persistence across restarts

Design:
- Keyed by packet id (UUID4 string)
- Owned by a single Router on a single event loop, so no locking
"""

from collections import OrderedDict
from typing import Iterable, List


# Default maximum cache size
DEFAULT_MAX_ENTRIES = 10000


class SeenCache:
    """
    Bounded LRU set of processed packet ids.

    Usage:
        seen = SeenCache(max_entries=10000)

        if seen.check_and_add(packet.id):
            # Duplicate - already handled
            return
        process(packet)
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        """
        Initialize seen-set.

        Args:
            max_entries: Maximum number of ids before eviction
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self._max_entries = max_entries

        # packet id -> None, ordered oldest first
        self._entries: "OrderedDict[str, None]" = OrderedDict()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def check(self, packet_id: str) -> bool:
        """True if the id has been seen (does not add it)."""
        return packet_id in self._entries

    def check_and_add(self, packet_id: str) -> bool:
        """
        Check if the id is a duplicate and record it if not.

        This is the primary interface for deduplication.

        Returns:
            True if the id was already seen
            False if the id is new (now recorded)
        """
        if packet_id in self._entries:
            self._entries.move_to_end(packet_id)
            self._hits += 1
            return True

        self._misses += 1
        self._insert(packet_id)
        return False

    def add(self, packet_id: str) -> None:
        """
        Record an id without counting it as a lookup.

        Used for packets this node originated so their echoes are
        dropped.
        """
        if packet_id in self._entries:
            self._entries.move_to_end(packet_id)
            return
        self._insert(packet_id)

    def _insert(self, packet_id: str) -> None:
        self._entries[packet_id] = None
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    def load(self, packet_ids: Iterable[str]) -> int:
        """
        Restore ids from persistence, oldest first.

        Returns:
            Number of ids restored
        """
        count = 0
        for packet_id in packet_ids:
            if isinstance(packet_id, str) and packet_id:
                self.add(packet_id)
                count += 1
        return count

    def to_list(self) -> List[str]:
        """Ids oldest first, for persistence."""
        return list(self._entries)

    def clear(self) -> None:
        """Clear all entries."""
        self._entries.clear()

    def get_stats(self) -> dict:
        """
        Get cache statistics.

        Returns:
            dict: Statistics including size, hits, misses, evictions
        """
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_entries": self._max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": self._hits / lookups if lookups > 0 else 0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, packet_id: str) -> bool:
        return self.check(packet_id)
