"""
Fanout dispatcher.

Records a conversation event once in the event log, serializes one wire
envelope, and pushes it to every open channel of every participant. Pushes run
concurrently and fail independently: a dead or slow channel never holds back
or aborts delivery to the others. Database work runs in the threadpool so it
never stalls pushes already in flight on the event loop.
"""

import asyncio
import json
import logging
import weakref
from typing import Any, Callable, Dict, Hashable, List, Protocol, Tuple

from fastapi import status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from messenger.conversations import participant_user_ids
from messenger.events import append_event, to_envelope
from messenger.metrics import record_delivery
from messenger.models import Event
from messenger.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """Anything the transport can push text frames through (e.g. a FastAPI WebSocket)."""

    async def send_text(self, data: str) -> None:
        ...

    async def close(self, code: int = status.WS_1000_NORMAL_CLOSURE) -> None:
        ...


class FanoutDispatcher:
    """
    Publishes conversation events to connected participants.

    Args:
        session_factory: Callable returning a new database session; the
            dispatcher never borrows the request's session, since it may run
            after the request has finished
        registry: Session registry to read open channels from
        order_stripes: Number of per-conversation ordering locks
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: SessionRegistry,
        order_stripes: int = 16,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._order_stripes = order_stripes
        # asyncio locks are bound to the loop they first wait on
        self._order_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, List[asyncio.Lock]]" = (
            weakref.WeakKeyDictionary()
        )

    def _order_lock(self, conversation_id: int) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        locks = self._order_locks.get(loop)
        if locks is None:
            locks = [asyncio.Lock() for _ in range(self._order_stripes)]
            self._order_locks[loop] = locks
        return locks[conversation_id % len(locks)]

    def _record(self, conversation_id: int, event_type: str, payload: Dict[str, Any]) -> Tuple[Event, Dict[str, Any], List[int]]:
        with self._session_factory() as db:
            event = append_event(db, conversation_id, event_type, payload)
            envelope = to_envelope(event)
            user_ids = participant_user_ids(db, conversation_id)
        return event, envelope, user_ids

    async def publish(self, conversation_id: int, event_type: str, payload: Dict[str, Any]) -> Event:
        """
        Append the event, then push it to every open participant channel.

        Publishes to the same conversation append and start their pushes one
        at a time, so delivery attempts follow append order. The lock is
        released before any push is awaited.

        Raises:
            Exception: the event log append failed; no delivery was attempted
        """
        async with self._order_lock(conversation_id):
            event, envelope, user_ids = await run_in_threadpool(self._record, conversation_id, event_type, payload)

            data = json.dumps(envelope, separators=(",", ":"))

            targets = [
                (user_id, channel)
                for user_id in user_ids
                for channel in self._registry.channels_for(user_id)
            ]
            if not targets:
                logger.debug(f"Event {event.id}: no open channels for conversation {conversation_id}")
                return event

            pushes = [asyncio.create_task(self._push(user_id, channel, data)) for user_id, channel in targets]

        results = await asyncio.gather(*pushes, return_exceptions=True)
        delivered = sum(1 for result in results if result is True)
        logger.info(
            f"Event {event.id} ({event_type}) fanned out: conversation={conversation_id}, "
            f"delivered={delivered}, failed={len(targets) - delivered}"
        )
        return event

    async def emit(self, conversation_id: int, event_type: str, payload: Dict[str, Any]) -> None:
        """
        Fire-and-forget publish used after a committed write.

        Any failure is logged here and goes no further, so it can never fail or
        roll back the write that triggered it.
        """
        try:
            await self.publish(conversation_id, event_type, payload)
        except Exception as e:
            logger.error(
                f"Failed to publish {event_type} event for conversation {conversation_id}: {e}",
                exc_info=True,
            )

    async def _push(self, user_id: Hashable, channel: Channel, data: str) -> bool:
        try:
            await channel.send_text(data)
        except Exception as e:
            logger.warning(f"Push to a channel of user {user_id} failed, dropping it: {e}")
            record_delivery("failed")
            await self._drop(user_id, channel)
            return False
        record_delivery("delivered")
        return True

    async def _drop(self, user_id: Hashable, channel: Channel) -> None:
        """Unregister a broken channel and close it so the client reconnects and catches up."""
        self._registry.unregister(user_id, channel)
        try:
            await channel.close(code=status.WS_1011_INTERNAL_ERROR)
        except Exception as e:
            logger.debug(f"Closing dropped channel of user {user_id} failed: {e}")
