import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, status
from starlette.concurrency import run_in_threadpool

from messenger.storage import SessionLocal
from messenger.models import User

logger = logging.getLogger(__name__)

router = APIRouter()


def _known_user(user_id: int) -> bool:
    with SessionLocal() as db:
        return db.get(User, user_id) is not None


@router.websocket("/ws")
async def push_channel(websocket: WebSocket, user_id: Optional[int] = None):
    """
    Long-lived push channel for one client.

    The connection is authenticated upstream, which passes the principal as the
    ``user_id`` query parameter. The server only pushes event envelopes; frames
    sent by the client are read and discarded so disconnects are noticed.
    """
    if user_id is None or not await run_in_threadpool(_known_user, user_id):
        logger.warning(f"Push channel rejected: unknown user_id={user_id}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry = websocket.app.state.sessions
    await websocket.accept()
    registry.register(user_id, websocket)
    logger.info(f"Push channel opened: user={user_id}, open_channels={registry.count()}")
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except Exception as e:
        logger.warning(f"Push channel for user {user_id} failed: {e}")
    finally:
        registry.unregister(user_id, websocket)
        logger.info(f"Push channel closed: user={user_id}, open_channels={registry.count()}")
