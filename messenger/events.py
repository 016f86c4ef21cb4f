"""
Event log.

Durable, append-only record of distributable conversation events. Ids come
from the storage layer and are never reused, so "events after X" is a
well-defined, gap-tolerant resume query.
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from messenger.authz import ensure_participant
from messenger.conversations import get_conversation
from messenger.metrics import record_event_published
from messenger.models import Event
from messenger.pagination import Page, make_page
from messenger.utils import utc_now_iso

logger = logging.getLogger(__name__)


def append_event(db: Session, conversation_id: int, event_type: str, payload: Dict[str, Any]) -> Event:
    """
    Insert an event and commit it.

    Storage errors propagate; nothing is retried here.
    """
    event = Event(
        conversation_id=conversation_id,
        type=event_type,
        payload=json.dumps(payload, separators=(",", ":")),
        created_at=utc_now_iso(),
    )
    db.add(event)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(event)
    record_event_published(event_type)
    logger.debug(f"Event appended: id={event.id}, conversation={conversation_id}, type={event_type}")
    return event


def list_after(db: Session, conversation_id: int, after_id: Optional[int], limit: int) -> Page:
    """Up to ``limit`` events of the conversation with id greater than ``after_id``."""
    get_conversation(db, conversation_id)
    query = db.query(Event).filter(Event.conversation_id == conversation_id)
    if after_id is not None:
        query = query.filter(Event.id > after_id)
    rows = query.order_by(Event.id.asc()).limit(limit).all()
    return make_page(rows, limit)


def to_envelope(event: Event) -> Dict[str, Any]:
    """Wire envelope pushed to channels and returned by the catch-up query."""
    return {
        "eventId": event.id,
        "conversationId": event.conversation_id,
        "type": event.type,
        "payload": json.loads(event.payload),
        "createdAt": event.created_at,
    }


def event_page_for(db: Session, conversation_id: int, requester_id: int, after_id: Optional[int], limit: int) -> Page:
    """Authorized catch-up page of envelopes for a reconnecting client."""
    ensure_participant(db, conversation_id, requester_id)
    page = list_after(db, conversation_id, after_id, limit)
    return Page(items=[to_envelope(e) for e in page.items], next_cursor=page.next_cursor)
