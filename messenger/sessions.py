"""Process-local registry of open push channels, keyed by user id.

The registry holds non-owning references: the transport owns each channel and
must unregister it when the connection ends. User ids are spread over a fixed
number of shards, each guarded by its own lock, so connect, disconnect and
dispatch traffic for different users rarely contend. No method awaits or does
I/O while holding a shard lock, which makes the registry safe to call from
event-loop tasks and worker threads alike.
"""
import logging
import threading
from typing import Any, Dict, FrozenSet, Hashable, List, Set

logger = logging.getLogger(__name__)


class _Shard:
    __slots__ = ("lock", "channels", "size")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.channels: Dict[Hashable, Set[Any]] = {}
        self.size = 0


class SessionRegistry:
    """Concurrent mapping from user id to the set of that user's open channels."""

    def __init__(self, shards: int = 16) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]

    def _shard_for(self, user_id: Hashable) -> _Shard:
        return self._shards[hash(user_id) % len(self._shards)]

    def register(self, user_id: Hashable, channel: Any) -> None:
        """Add ``channel`` to the user's set. Registering twice is harmless."""
        shard = self._shard_for(user_id)
        with shard.lock:
            channels = shard.channels.setdefault(user_id, set())
            if channel not in channels:
                channels.add(channel)
                shard.size += 1
        logger.debug(f"Channel registered for user {user_id}")

    def unregister(self, user_id: Hashable, channel: Any) -> bool:
        """
        Remove ``channel`` from the user's set.

        The user's entry is dropped once its set is empty.

        Returns:
            True if the channel was tracked, False otherwise
        """
        shard = self._shard_for(user_id)
        with shard.lock:
            channels = shard.channels.get(user_id)
            if not channels or channel not in channels:
                return False
            channels.discard(channel)
            shard.size -= 1
            if not channels:
                del shard.channels[user_id]
        logger.debug(f"Channel unregistered for user {user_id}")
        return True

    def channels_for(self, user_id: Hashable) -> FrozenSet[Any]:
        """Snapshot of the user's open channels (possibly empty)."""
        shard = self._shard_for(user_id)
        with shard.lock:
            return frozenset(shard.channels.get(user_id, ()))

    def count(self) -> int:
        """Total number of tracked channels across all users."""
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += shard.size
        return total
