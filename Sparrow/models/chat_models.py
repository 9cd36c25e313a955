from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text

from Sparrow.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# A conversation thread owned by one user
class Chat(Base):
    __tablename__ = "chat"

    id = Column(String(64), primary_key=True)
    title = Column(Text, nullable=False)
    user_id = Column(String(64), index=True, nullable=False)
    is_shared = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# One user submission and the assistant answer it produced
class Turn(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    chat_id = Column(String(64), ForeignKey("chat.id", ondelete="CASCADE"), index=True, nullable=False)
    user_message = Column(Text, nullable=False)
    bot_response = Column(Text, nullable=False, default="")
    file_url = Column(Text, default="")
    file_type = Column(Text, default="")
    file_name = Column(Text, default="")
    # Upstream response id, threads multi-turn image edits
    image_response_id = Column(Text, nullable=True)
    model = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# Immutable snapshot of a chat published by link
class SharedChat(Base):
    __tablename__ = "shared_chat"

    id = Column(String(64), primary_key=True)
    title = Column(Text, nullable=False)
    chat_id = Column(String(64), index=True, nullable=False)
    user_id = Column(String(64), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# Turn copied into a shared snapshot at share time
class SharedChatTurn(Base):
    __tablename__ = "shared_chat_messages"

    id = Column(String(64), primary_key=True)
    shared_chat_id = Column(String(64), ForeignKey("shared_chat.id", ondelete="CASCADE"), index=True, nullable=False)
    chat_id = Column(String(64), nullable=True)
    user_message = Column(Text, nullable=True)
    bot_response = Column(Text, nullable=True)
    file_url = Column(Text, default="")
    file_type = Column(Text, default="")
    file_name = Column(Text, default="")
    image_response_id = Column(Text, nullable=True)
    model = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
