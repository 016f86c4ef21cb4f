import logging

from sqlalchemy.orm import Session

from messenger.conversations import conversation_exists, is_participant
from messenger.errors import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)


def ensure_participant(db: Session, conversation_id: int, user_id: int) -> None:
    """
    Allow the call only if ``user_id`` participates in the conversation.

    Existence is checked before membership: an unknown conversation id is a
    NotFoundError for everyone, a known one is a ForbiddenError for outsiders.
    """
    if not conversation_exists(db, conversation_id):
        raise NotFoundError(f"Conversation not found: {conversation_id}")
    if not is_participant(db, conversation_id, user_id):
        logger.warning(f"User {user_id} denied access to conversation {conversation_id}")
        raise ForbiddenError("Forbidden: user is not a participant in this conversation")
