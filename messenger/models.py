"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum

from sqlalchemy import Column, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from messenger.storage import Base


class ConversationType(str, enum.Enum):
    DIRECT = "DIRECT"
    GROUP = "GROUP"


class ParticipantRole(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class User(Base):
    """
    Minimal user directory entry.

    Table: users
    Credentials live outside the core; only identity and names are kept here.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), nullable=False, unique=True, index=True)
    display_name = Column(String(128), nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class Conversation(Base):
    """
    A DIRECT (exactly two members) or GROUP (1..MAX_GROUP_MEMBERS) conversation.

    Table: conversations
    Immutable except for membership; never deleted.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(Enum(ConversationType, native_enum=False, length=16), nullable=False)
    name = Column(String(255), nullable=True)
    created_at = Column(String, nullable=False)

    participants = relationship(
        "Participant",
        back_populates="conversation",
        order_by="Participant.id",
        lazy="selectin",
    )


class Participant(Base):
    """
    Membership row joining a user to a conversation.

    Table: participants
    Unique (conversation_id, user_id): a user appears at most once per conversation.
    """
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(Enum(ParticipantRole, native_enum=False, length=16), nullable=False)
    joined_at = Column(String, nullable=False)

    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User", lazy="joined")


class Message(Base):
    """
    Append-only message log entry.

    Table: messages
    Unique (conversation_id, idempotency_key) makes retried sends collapse onto
    one row; rows without a key are unconstrained.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "idempotency_key", name="uq_message_idempotency"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)
    idempotency_key = Column(String(255), nullable=True)

    sender = relationship("User", lazy="joined")


class Event(Base):
    """
    Distributable conversation event, used for resume/catch-up.

    Table: events
    Ids are never reused, so they increase within every conversation.
    """
    __tablename__ = "events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)  # Serialized JSON
    created_at = Column(String, nullable=False)
