import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from Sparrow.models.chat_models import Chat, SharedChat, SharedChatTurn, Turn


def new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Get a chat by id regardless of owner (callers enforce ownership)
def get_chat(session, chat_id):
    if not chat_id:
        return None
    return session.get(Chat, chat_id)


# Insert a chat row unless one already exists with this id; returns the stored row
def create_chat_if_absent(session, chat_id, title, user_id):
    existing = session.get(Chat, chat_id)
    if existing is not None:
        return existing

    chat = Chat(id=chat_id, title=title, user_id=user_id, is_shared=False, created_at=_utcnow())
    session.add(chat)
    try:
        session.flush()
    except IntegrityError:
        # Another request created the same id first
        session.rollback()
        return session.get(Chat, chat_id)
    return chat


# Delete a chat and every turn belonging to it; caller commits both together
def delete_chat_cascade(session, chat_id) -> bool:
    session.query(Turn).filter(Turn.chat_id == chat_id).delete(synchronize_session=False)
    deleted = session.query(Chat).filter(Chat.id == chat_id).delete(synchronize_session=False)
    session.flush()
    return deleted > 0


# Group client-supplied role/content entries into (user, assistant) turn rows
def pair_turns(entries: Optional[Sequence[Any]], default_model: str = "") -> list[dict]:
    rows: list[dict] = []
    if not entries:
        return rows
    for i in range(0, len(entries) - 1, 2):
        user_msg = entries[i]
        assistant_msg = entries[i + 1]
        user_text = getattr(user_msg, "content", None)
        bot_text = getattr(assistant_msg, "content", None)
        if getattr(user_msg, "role", None) != "user" or getattr(assistant_msg, "role", None) != "assistant":
            continue
        if not isinstance(user_text, str) or not isinstance(bot_text, str):
            continue
        if not user_text.strip() or not bot_text.strip():
            continue
        rows.append(
            {
                "user_message": user_text.strip(),
                "bot_response": bot_text.strip(),
                "file_url": getattr(user_msg, "file_url", None) or "",
                "file_type": getattr(user_msg, "file_type", None) or "",
                "file_name": getattr(user_msg, "file_name", None) or "",
                "image_response_id": getattr(assistant_msg, "image_response_id", None),
                "model": getattr(assistant_msg, "model", None) or default_model,
            }
        )
    return rows


# Insert turn rows in order; created_at is spaced so ordering is stable
def insert_turns(session, chat_id, rows: Iterable[dict]) -> list[str]:
    base = _utcnow()
    ids: list[str] = []
    for offset, row in enumerate(rows):
        turn = Turn(
            id=row.get("id") or new_id(),
            chat_id=chat_id,
            user_message=row["user_message"],
            bot_response=row.get("bot_response") or "",
            file_url=row.get("file_url") or "",
            file_type=row.get("file_type") or "",
            file_name=row.get("file_name") or "",
            image_response_id=row.get("image_response_id"),
            model=row.get("model") or "",
            created_at=base + timedelta(microseconds=offset),
        )
        session.add(turn)
        ids.append(turn.id)
    session.flush()
    return ids


# Write the user's turn with a placeholder answer (plus any re-supplied prefix turns); returns the new turn id
def insert_turn_placeholder(session, chat_id, turn: dict, prefix: Sequence[dict] = ()) -> str:
    ids = insert_turns(session, chat_id, [*prefix, turn])
    return ids[-1]


# Overwrite a turn's answer; inserts the complete turn when the id is unknown
def patch_turn_response(session, turn_id: Optional[str], bot_response: str, fallback: dict) -> str:
    if turn_id:
        result = session.execute(update(Turn).where(Turn.id == turn_id).values(bot_response=bot_response))
        if result.rowcount:
            session.flush()
            return turn_id
    row = {**fallback, "bot_response": bot_response}
    return insert_turns(session, fallback["chat_id"], [row])[0]


def get_turn(session, turn_id):
    return session.get(Turn, turn_id)


# Turns of a chat owned by user_id, oldest first
def list_turns(session, chat_id, user_id):
    return (
        session.query(Turn)
        .join(Chat, Turn.chat_id == Chat.id)
        .filter(Turn.chat_id == chat_id, Chat.user_id == user_id)
        .order_by(Turn.created_at, Turn.id)
        .all()
    )


def list_shared_turns(session, shared_chat_id):
    return (
        session.query(SharedChatTurn)
        .filter(SharedChatTurn.shared_chat_id == shared_chat_id)
        .order_by(SharedChatTurn.created_at, SharedChatTurn.id)
        .all()
    )


# Page through a user's chats, newest first, optionally filtered by title
def list_chats(session, user_id, *, page: int, limit: int, search: Optional[str] = None):
    query = session.query(Chat).filter(Chat.user_id == user_id)
    if search:
        query = query.filter(Chat.title.ilike(f"%{search}%"))
    total = query.with_entities(func.count(Chat.id)).scalar() or 0
    chats = query.order_by(Chat.created_at.desc()).limit(limit).offset((page - 1) * limit).all()
    return chats, int(total)


def update_chat_title(session, chat_id, user_id, title):
    chat = session.query(Chat).filter_by(id=chat_id, user_id=user_id).first()
    if not chat:
        return None
    chat.title = title
    session.flush()
    return chat


def get_shared_chat(session, shared_chat_id):
    if not shared_chat_id:
        return None
    return session.get(SharedChat, shared_chat_id)


def list_shared_chats(session, user_id):
    return session.query(SharedChat).filter_by(user_id=user_id).order_by(SharedChat.created_at).all()


# Snapshot a chat and its turns into a new shared chat and flag the original; caller commits
def share_chat(session, chat: Chat) -> str:
    turns = session.query(Turn).filter(Turn.chat_id == chat.id).order_by(Turn.created_at, Turn.id).all()
    shared_chat_id = new_id()
    session.add(SharedChat(id=shared_chat_id, title=chat.title, chat_id=chat.id, user_id=chat.user_id, created_at=_utcnow()))
    # Flush the parent before its children so the foreign key holds
    session.flush()

    base = _utcnow()
    for offset, turn in enumerate(turns):
        session.add(
            SharedChatTurn(
                id=new_id(),
                shared_chat_id=shared_chat_id,
                chat_id=chat.id,
                user_message=turn.user_message,
                bot_response=turn.bot_response,
                file_url=turn.file_url,
                file_type=turn.file_type,
                file_name=turn.file_name,
                image_response_id=turn.image_response_id,
                model=turn.model,
                created_at=base + timedelta(microseconds=offset),
            )
        )
    chat.is_shared = True
    session.flush()
    return shared_chat_id


# Create a chat from a client-supplied message list; caller commits
def branch_chat(session, chat_id, title, user_id, entries) -> int:
    session.add(Chat(id=chat_id, title=title, user_id=user_id, is_shared=False, created_at=_utcnow()))
    session.flush()
    rows = pair_turns(entries)
    if rows:
        insert_turns(session, chat_id, rows)
    return len(rows)
