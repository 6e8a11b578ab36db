import uuid
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from .database import Base

EMBEDDING_DIMENSIONS = 768
DEFAULT_CONVERSATION_TITLE = "New conversation"

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationGroup(Base):
    __tablename__ = "conversation_groups"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(128), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    guidance_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class LlmModel(Base):
    __tablename__ = "llm_models"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    host = Column(String(512), nullable=True)
    is_installed = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=False)
    allow_teen = Column(Boolean, nullable=False, default=False)
    allow_child = Column(Boolean, nullable=False, default=False)
    safe_mode_allowed = Column(Boolean, nullable=False, default=True)

    __table_args__ = (UniqueConstraint("name", "host", name="uq_llm_models_name_host"),)


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(128), nullable=False, index=True)
    title = Column(String(255), nullable=False, default=DEFAULT_CONVERSATION_TITLE)
    archived = Column(Boolean, nullable=False, default=False)
    group_id = Column(Uuid, ForeignKey("conversation_groups.id", ondelete="SET NULL"), nullable=True, index=True)
    safe_mode = Column(Boolean, nullable=True)
    # copied in at creation so later rule edits never rewrite history
    safety_content = Column(Text, nullable=True)
    llm_model_id = Column(Uuid, ForeignKey("llm_models.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class Message(Base):
    __tablename__ = "messages"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # 'system' | 'user' | 'assistant' | 'tool'
    content = Column(Text, nullable=False)
    llm_model_id = Column(Uuid, ForeignKey("llm_models.id", ondelete="SET NULL"), nullable=True)
    meta = Column(JSONType, nullable=True)
    version_group_id = Column(Uuid, nullable=True, index=True)
    version_number = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)


class FileAsset(Base):
    __tablename__ = "files"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(128), nullable=False, index=True)
    filename = Column(String(512), nullable=False)
    content_type = Column(String(255), nullable=False)
    size = Column(BigInteger, nullable=False)
    content_hash = Column(String(8), nullable=False)
    object_key = Column(String(1024), nullable=False, unique=True)
    extracted_text_key = Column(String(1024), nullable=True)
    thumbnail_key = Column(String(1024), nullable=True)
    text_preview = Column(Text, nullable=True)
    extraction_status = Column(String(16), nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "content_hash", name="uq_files_user_hash"),)


class ConversationFile(Base):
    __tablename__ = "conversation_files"
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True)
    file_id = Column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class MessageFile(Base):
    __tablename__ = "message_files"
    message_id = Column(Uuid, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    file_id = Column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), primary_key=True, index=True)


class EmbeddingChunk(Base):
    __tablename__ = "embeddings"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(128), nullable=False, index=True)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=True, index=True)
    source_type = Column(String(16), nullable=False)  # 'message' | 'file_chunk'
    source_id = Column(Uuid, nullable=False)
    chunk_index = Column(Integer, nullable=False, default=0)
    content = Column(Text, nullable=False)
    vector = Column(Vector(EMBEDDING_DIMENSIONS).with_variant(JSON(), "sqlite"), nullable=False)

    __table_args__ = (Index("ix_embeddings_source", "source_type", "source_id"),)
