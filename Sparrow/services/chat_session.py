from __future__ import annotations

import asyncio
import logging
import pathlib
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError

from Sparrow.crud.chat import create_chat_if_absent, delete_chat_cascade, get_chat, get_shared_chat, new_id
from Sparrow.services.model_catalog import TITLE_MODEL
from Sparrow.services.openai_compatible_client import get_system_openrouter_client

logger = logging.getLogger(__name__)
_SPARROW_DIR = pathlib.Path(__file__).resolve().parents[1]

DEFAULT_TITLE = "New Chat"
SHARED_FALLBACK_TITLE = "Continued Chat"

TitleGenerator = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class ChatResolution:
    chat_id: str
    is_new: bool
    title: str
    converted_from_shared: bool = False


# Ask a fast model for a short plain-text title; raises on any upstream failure
async def request_chat_title(message: str) -> str:
    client = get_system_openrouter_client()
    try:
        title_prompt = (_SPARROW_DIR / "resources" / "chat_title_prompt.txt").read_text(encoding="utf-8").strip()
        response = await client.chat.completions.create(
            model=TITLE_MODEL,
            messages=[
                {"role": "system", "content": title_prompt},
                {"role": "user", "content": message.strip()[:100]},
            ],
            temperature=0.1,
        )
        content = response.choices[0].message.content if response.choices else None
        title = (content or "").strip()[:100].replace('"', "")
        if not title:
            raise ValueError("empty title")
        return title
    finally:
        await client.close()


# Resolves the X-Chat-ID a request carries into a chat the caller owns
class ChatSessionManager:
    def __init__(self, session_factory, title_generator: Optional[TitleGenerator] = None):
        self._session_factory = session_factory
        self._title_generator = title_generator or request_chat_title

    async def resolve(
        self,
        *,
        chat_id: Optional[str],
        user_id: str,
        message: str,
        shared: bool = False,
        edited: bool = False,
        title: Optional[str] = None,
        defer_create: bool = False,
    ) -> ChatResolution:
        if shared:
            return await self._resolve_shared(chat_id, user_id, message)

        if not chat_id:
            chat_id = new_id()
        else:
            row = await self._run(self._lookup, chat_id)
            if row is not None:
                owner_id, existing_title = row
                if owner_id != user_id:
                    logger.warning("chat.forbidden: chat=%s user=%s", chat_id, user_id)
                    raise HTTPException(status_code=403, detail="Forbidden: Chat does not belong to user")
                if not edited:
                    return ChatResolution(chat_id=chat_id, is_new=False, title=existing_title)
                await self._run(self._delete, chat_id)
                logger.info("chat.edit.reset: chat=%s", chat_id)

        resolution = ChatResolution(chat_id=chat_id, is_new=True, title=title or await self._title_for(message, DEFAULT_TITLE))
        if defer_create:
            return resolution
        return await self.create(resolution, user_id)

    async def _resolve_shared(self, shared_id: Optional[str], user_id: str, message: str) -> ChatResolution:
        if shared_id:
            row = await self._run(self._lookup, shared_id)
            if row is not None and row[0] == user_id:
                return ChatResolution(chat_id=shared_id, is_new=False, title=row[1])

        shared_title = await self._run(self._shared_title, shared_id) if shared_id else None
        chat_title = shared_title or await self._title_for(message, SHARED_FALLBACK_TITLE)

        resolution = await self.create(ChatResolution(chat_id=new_id(), is_new=True, title=chat_title), user_id)
        logger.info("chat.shared.converted: shared=%s chat=%s", shared_id, resolution.chat_id)
        return ChatResolution(chat_id=resolution.chat_id, is_new=True, title=chat_title, converted_from_shared=True)

    async def _title_for(self, message: str, fallback: str) -> str:
        try:
            return await self._title_generator(message)
        except Exception:
            logger.exception("chat.title.error")
            return fallback

    # Insert the chat for a new resolution and confirm the caller ended up owning it
    async def create(self, resolution: ChatResolution, user_id: str) -> ChatResolution:
        owner_id = await self._run(self._insert, resolution.chat_id, resolution.title, user_id)
        # A concurrent request may have created the id first
        if owner_id != user_id:
            raise HTTPException(status_code=403, detail="Forbidden: Chat does not belong to user")
        return resolution

    # Storage errors surface as 500 before any provider spend
    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError:
            logger.exception("chat.session.db.error")
            raise HTTPException(status_code=500, detail="Database error during chat handling")

    def _lookup(self, chat_id: str) -> Optional[tuple[str, str]]:
        session = self._session_factory()
        try:
            chat = get_chat(session, chat_id)
            return (chat.user_id, chat.title) if chat is not None else None
        finally:
            session.close()

    def _shared_title(self, shared_id: str) -> Optional[str]:
        session = self._session_factory()
        try:
            shared = get_shared_chat(session, shared_id)
            return shared.title if shared is not None else None
        finally:
            session.close()

    def _delete(self, chat_id: str) -> None:
        session = self._session_factory()
        try:
            delete_chat_cascade(session, chat_id)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _insert(self, chat_id: str, title: str, user_id: str) -> Optional[str]:
        session = self._session_factory()
        try:
            chat = create_chat_if_absent(session, chat_id, title, user_id)
            owner_id = chat.user_id if chat is not None else None
            session.commit()
            return owner_id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
