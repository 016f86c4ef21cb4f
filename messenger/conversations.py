"""
Conversation & participant store.

Conversations are DIRECT (exactly two members for life) or GROUP (one owner plus
members, capped at MAX_GROUP_MEMBERS). Membership rows are append-only and a
user appears at most once per conversation.
"""

import logging
from typing import List, NamedTuple, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from messenger.config import settings
from messenger.errors import CapacityExceededError, NotFoundError, ValidationError
from messenger.models import Conversation, ConversationType, Participant, ParticipantRole
from messenger.storage import get_user
from messenger.utils import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_GROUP_NAME = "Group"


class ConversationSummary(NamedTuple):
    id: int
    type: ConversationType
    name: Optional[str]
    participants: List[str]


def get_conversation(db: Session, conversation_id: int) -> Conversation:
    """Return the conversation or raise NotFoundError."""
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation not found: {conversation_id}")
    return conversation


def conversation_exists(db: Session, conversation_id: int) -> bool:
    return db.get(Conversation, conversation_id) is not None


def is_participant(db: Session, conversation_id: int, user_id: int) -> bool:
    row = (
        db.query(Participant.id)
        .filter(Participant.conversation_id == conversation_id, Participant.user_id == user_id)
        .first()
    )
    return row is not None


def participant_user_ids(db: Session, conversation_id: int) -> List[int]:
    """User ids of every participant, in join order."""
    rows = (
        db.query(Participant.user_id)
        .filter(Participant.conversation_id == conversation_id)
        .order_by(Participant.id.asc())
        .all()
    )
    return [row.user_id for row in rows]


def count_participants(db: Session, conversation_id: int) -> int:
    return (
        db.query(func.count(Participant.id))
        .filter(Participant.conversation_id == conversation_id)
        .scalar()
        or 0
    )


def _new_participant(user_id: int, role: ParticipantRole) -> Participant:
    return Participant(user_id=user_id, role=role, joined_at=utc_now_iso())


# =============================================================================
# Creation
# =============================================================================

def create_direct(db: Session, user_a_id: int, user_b_id: int) -> Conversation:
    """
    Create a DIRECT conversation between two distinct existing users.

    Args:
        db: Database session
        user_a_id: First member
        user_b_id: Second member

    Returns:
        The committed conversation with both participants (role MEMBER)

    Raises:
        NotFoundError: either user does not exist
        ValidationError: both ids name the same user
    """
    get_user(db, user_a_id)
    get_user(db, user_b_id)
    if user_a_id == user_b_id:
        raise ValidationError("DIRECT conversation requires two distinct users")

    logger.info(f"Creating DIRECT conversation: users={user_a_id},{user_b_id}")
    conversation = Conversation(type=ConversationType.DIRECT, name=None, created_at=utc_now_iso())
    conversation.participants.append(_new_participant(user_a_id, ParticipantRole.MEMBER))
    conversation.participants.append(_new_participant(user_b_id, ParticipantRole.MEMBER))
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    logger.info(f"DIRECT conversation created: id={conversation.id}")
    return conversation


def create_group(db: Session, name: Optional[str], owner_id: int) -> Conversation:
    """
    Create a GROUP conversation with the owner as its only member.

    Raises:
        NotFoundError: the owner does not exist
    """
    get_user(db, owner_id)

    group_name = name if name is not None else DEFAULT_GROUP_NAME
    logger.info(f"Creating GROUP conversation: name={group_name}, owner={owner_id}")
    conversation = Conversation(type=ConversationType.GROUP, name=group_name, created_at=utc_now_iso())
    conversation.participants.append(_new_participant(owner_id, ParticipantRole.OWNER))
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    logger.info(f"GROUP conversation created: id={conversation.id}")
    return conversation


def add_participant(
    db: Session,
    conversation_id: int,
    user_id: int,
    role: ParticipantRole = ParticipantRole.MEMBER,
) -> Conversation:
    """
    Add a user to a conversation.

    Adding a user who is already a participant is a no-op: the conversation is
    returned unchanged and no second membership row is written. A concurrent
    duplicate add that trips the (conversation_id, user_id) constraint is
    resolved the same way.

    Raises:
        NotFoundError: the conversation or the user does not exist
        ValidationError: the conversation is DIRECT (fixed membership)
        CapacityExceededError: the GROUP already has MAX_GROUP_MEMBERS members
    """
    conversation = get_conversation(db, conversation_id)
    get_user(db, user_id)

    if is_participant(db, conversation_id, user_id):
        logger.info(f"User {user_id} already participates in conversation {conversation_id}, no-op")
        return conversation

    if conversation.type == ConversationType.DIRECT:
        raise ValidationError("DIRECT conversations have fixed membership")

    count = count_participants(db, conversation_id)
    if count >= settings.MAX_GROUP_MEMBERS:
        logger.warning(f"Conversation {conversation_id} is full ({count} members)")
        raise CapacityExceededError(
            f"Group conversation already has maximum {settings.MAX_GROUP_MEMBERS} participants"
        )

    participant = _new_participant(user_id, role)
    participant.conversation_id = conversation_id
    db.add(participant)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Concurrent add of user {user_id} to conversation {conversation_id} resolved as no-op")
    else:
        logger.info(f"User {user_id} joined conversation {conversation_id} as {role.value}")

    db.refresh(conversation)
    return conversation


def create_conversation(
    db: Session,
    conversation_type: ConversationType,
    participant_ids: Sequence[int],
    name: Optional[str] = None,
) -> Conversation:
    """
    Create a conversation from an API request.

    DIRECT requires exactly two ids. GROUP requires at least one: the first id
    becomes OWNER and the rest join as MEMBER. Every user is checked before
    anything is written.
    """
    ids = list(participant_ids or [])

    if conversation_type == ConversationType.DIRECT:
        if len(ids) != 2:
            raise ValidationError("DIRECT conversation requires exactly 2 participant IDs")
        return create_direct(db, ids[0], ids[1])

    if not ids:
        raise ValidationError("GROUP conversation requires at least one participant")

    unique_ids = list(dict.fromkeys(ids))
    if len(unique_ids) > settings.MAX_GROUP_MEMBERS:
        raise CapacityExceededError(
            f"Group conversation cannot exceed {settings.MAX_GROUP_MEMBERS} participants"
        )
    for user_id in unique_ids:
        get_user(db, user_id)

    group = create_group(db, name, unique_ids[0])
    for user_id in unique_ids[1:]:
        add_participant(db, group.id, user_id, ParticipantRole.MEMBER)
    db.refresh(group)
    return group


# =============================================================================
# Queries
# =============================================================================

def list_for_user(db: Session, user_id: int) -> List[ConversationSummary]:
    """
    Every conversation the user participates in.

    Ordered by conversation id ascending; participant usernames follow join order.
    """
    conversations = (
        db.query(Conversation)
        .join(Participant, Participant.conversation_id == Conversation.id)
        .filter(Participant.user_id == user_id)
        .order_by(Conversation.id.asc())
        .all()
    )
    logger.debug(f"User {user_id} participates in {len(conversations)} conversations")
    return [
        ConversationSummary(
            id=c.id,
            type=c.type,
            name=c.name,
            participants=[p.user.username for p in c.participants],
        )
        for c in conversations
    ]
