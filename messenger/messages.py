"""
Message store and the message write/read path.

Messages form an append-only, per-conversation log keyed by a strictly
increasing id. Sends may carry an idempotency key; the pair
(conversation_id, idempotency_key) is unique at the storage layer, so retries
and racing duplicates collapse onto the first stored row.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from messenger.authz import ensure_participant
from messenger.conversations import get_conversation
from messenger.crypto import MessageCrypto
from messenger.metrics import message_send_latency_seconds, record_send_outcome
from messenger.models import Message
from messenger.pagination import Page, make_page
from messenger.storage import get_user
from messenger.utils import normalize_key, utc_now_iso

logger = logging.getLogger(__name__)


def find_by_idempotency_key(db: Session, conversation_id: int, idempotency_key: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.idempotency_key == idempotency_key)
        .first()
    )


def append_message(
    db: Session,
    conversation_id: int,
    sender_id: int,
    body: str,
    idempotency_key: Optional[str] = None,
) -> Tuple[Message, bool]:
    """
    Store a message exactly once per (conversation, idempotency key).

    Args:
        db: Database session
        conversation_id: Target conversation
        sender_id: Sending user
        body: Payload as produced by the crypto transform
        idempotency_key: Optional caller token; blank keys count as absent

    Returns:
        Tuple of (message, created)
        - (new row, True): message stored now
        - (existing row, False): key already used in this conversation; nothing
          written and nothing should be delivered

    Raises:
        NotFoundError: conversation or sender does not exist
    """
    get_conversation(db, conversation_id)
    get_user(db, sender_id)
    key = normalize_key(idempotency_key)

    if key is not None:
        existing = find_by_idempotency_key(db, conversation_id, key)
        if existing is not None:
            logger.info(f"Duplicate send: conversation={conversation_id}, key={key}, message_id={existing.id}")
            return existing, False

    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        body=body,
        created_at=utc_now_iso(),
        idempotency_key=key,
    )
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        # Another writer committed the same key between our lookup and insert
        db.rollback()
        if key is None:
            raise
        existing = find_by_idempotency_key(db, conversation_id, key)
        if existing is None:
            raise
        logger.info(f"Idempotency race resolved to message_id={existing.id} (conversation={conversation_id}, key={key})")
        return existing, False

    db.refresh(message)
    logger.info(f"Message stored: id={message.id}, conversation={conversation_id}, sender={sender_id}")
    return message, True


def list_all(db: Session, conversation_id: int) -> List[Message]:
    """All messages of a conversation, oldest first."""
    get_conversation(db, conversation_id)
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.id.asc())
        .all()
    )


def list_page(db: Session, conversation_id: int, after_id: Optional[int], limit: int) -> Page:
    """
    Up to ``limit`` messages with id greater than ``after_id``, ascending.

    ``next_cursor`` is the last id when the page is full and None otherwise.
    """
    get_conversation(db, conversation_id)
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if after_id is not None:
        query = query.filter(Message.id > after_id)
    rows = query.order_by(Message.id.asc()).limit(limit).all()
    logger.debug(f"Message page: conversation={conversation_id}, after={after_id}, size={len(rows)}")
    return make_page(rows, limit)


def to_view(message: Message, crypto: MessageCrypto) -> dict:
    """Client-facing representation with the body decrypted."""
    sender = message.sender
    return {
        "id": message.id,
        "senderId": message.sender_id,
        "senderUsername": sender.username,
        "senderDisplayName": sender.display_name or sender.username,
        "body": crypto.decrypt(message.conversation_id, message.body),
        "createdAt": message.created_at,
    }


# =============================================================================
# Service entry points
# =============================================================================

def send_message(
    db: Session,
    crypto: MessageCrypto,
    conversation_id: int,
    sender_id: int,
    body: str,
    idempotency_key: Optional[str] = None,
) -> Tuple[Message, bool]:
    """
    Authorize and store a message.

    Publishing the resulting event is left to the caller and must only happen
    when ``created`` is True.
    """
    with message_send_latency_seconds.time():
        ensure_participant(db, conversation_id, sender_id)
        encrypted = crypto.encrypt(conversation_id, body)
        message, created = append_message(db, conversation_id, sender_id, encrypted, idempotency_key)

    record_send_outcome("created" if created else "duplicate")
    return message, created


def message_page_for(
    db: Session,
    crypto: MessageCrypto,
    conversation_id: int,
    requester_id: int,
    after_id: Optional[int],
    limit: int,
) -> Page:
    """Authorized history page with decrypted bodies."""
    ensure_participant(db, conversation_id, requester_id)
    page = list_page(db, conversation_id, after_id, limit)
    return Page(items=[to_view(m, crypto) for m in page.items], next_cursor=page.next_cursor)
