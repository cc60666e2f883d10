import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    String,
    Text,
    Boolean,
    Integer,
    DateTime,
    ForeignKey,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .session import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def uuid4_str():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class BusinessPlan(Base):
    """A business plan. Every section's structured record lives under a namespaced key of content."""
    __tablename__ = "business_plans"

    id = Column(String(36), primary_key=True, default=uuid4_str)
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="Untitled plan")
    content = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Conversation(Base):
    """Standalone conversation with the general business coach."""
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=uuid4_str)
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    action_items = relationship("ActionItem", back_populates="conversation")


class ThreadSession(Base):
    """
    Durable link from a conversing entity to its remote thread.
    Written once by whoever wins the unique index; never updated.
    scope is the plan section id for section sessions and "" for whole-entity sessions.
    """
    __tablename__ = "thread_sessions"

    id = Column(String(36), primary_key=True, default=uuid4_str)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(36), nullable=False)
    scope = Column(String(64), nullable=False, default="")
    external_thread_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("uq_thread_sessions_entity", "entity_type", "entity_id", "scope", unique=True),
    )


class ActionItemList(Base):
    __tablename__ = "action_item_lists"

    id = Column(String(36), primary_key=True, default=uuid4_str)
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    parent_id = Column(String(36), ForeignKey("action_item_lists.id", ondelete="SET NULL"), nullable=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship("ActionItem", back_populates="action_list")


class ActionItem(Base):
    """
    One task. Ordinals are dense from 0 within a partition: the item's list,
    or (owner_id, list_id IS NULL) for unlisted items.
    """
    __tablename__ = "action_items"

    id = Column(String(36), primary_key=True, default=uuid4_str)
    owner_id = Column(String(64), nullable=False)
    content = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    parent_id = Column(String(36), ForeignKey("action_items.id", ondelete="CASCADE"), nullable=True)
    list_id = Column(String(36), ForeignKey("action_item_lists.id", ondelete="SET NULL"), nullable=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True)
    ordinal = Column(Integer, nullable=False, default=0)
    is_completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    action_list = relationship("ActionItemList", back_populates="items")
    conversation = relationship("Conversation", back_populates="action_items")

    __table_args__ = (
        Index("ix_action_items_partition", "owner_id", "list_id", "ordinal"),
        Index("ix_action_items_parent_id", "parent_id"),
    )
