from __future__ import annotations

import logging
import math
from typing import Callable, Optional
from urllib.parse import quote

from fastapi import Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from Sparrow.auth import SessionUser
from Sparrow.crud import chat as chat_crud
from Sparrow.database import SessionLocal, get_db
from Sparrow.schemas.chat import (
    BranchChatRequest,
    ChatListOut,
    ChatOut,
    ChatRequest,
    ImageRequest,
    MessageOut,
    PaginationOut,
    SharedChatListOut,
    SharedChatOut,
)
from Sparrow.services.admission import AdmissionController
from Sparrow.services.chat_session import ChatSessionManager
from Sparrow.services.chat_stream import StreamingCompletion, TurnDraft
from Sparrow.services.conversation_assembler import Attachment, ConversationAssembler
from Sparrow.services.image_generation import ImageGenerator, find_previous_response_id
from Sparrow.services.model_catalog import IMAGE_GENERATION_MODEL, is_premium
from Sparrow.services.openai_compatible_client import get_async_openai_compatible_client, select_provider
from Sparrow.services.turn_writer import TurnWriter
from Sparrow.services.web_search import WebSearchClient

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 3000
MAX_TITLE_CHARS = 200
DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 15
PDF_PLUGIN = {"id": "file-parser", "pdf": {"engine": "pdf-text"}}


# Header values must be latin-1; anything else is percent-encoded
def _header_safe(value: str) -> str:
    try:
        value.encode("latin-1")
        return value
    except UnicodeEncodeError:
        return quote(value, safe=" ")


def _image_title(prompt: str) -> str:
    return f"Image: {prompt[:50]}{'...' if len(prompt) > 50 else ''}"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


# Expand stored turns back into the alternating role/content list the browser renders
def _turns_to_messages(turns) -> list[MessageOut]:
    out: list[MessageOut] = []
    for turn in turns:
        if turn.user_message:
            has_file = bool(turn.file_url)
            out.append(
                MessageOut(
                    role="user",
                    content=turn.user_message,
                    fileUrl=turn.file_url if has_file else None,
                    fileType=(turn.file_type or None) if has_file else None,
                    fileName=(turn.file_name or None) if has_file else None,
                    model=turn.model or None,
                )
            )
        if turn.bot_response:
            out.append(
                MessageOut(
                    role="assistant",
                    content=turn.bot_response,
                    imageResponseId=turn.image_response_id or None,
                    model=turn.model or None,
                )
            )
    return out


class ChatService:
    # Initializes the service with a DB session used by CRUD helpers and the collaborators of the streaming path
    def __init__(
        self,
        db: Session,
        *,
        admission: Optional[AdmissionController] = None,
        session_manager: Optional[ChatSessionManager] = None,
        assembler: Optional[ConversationAssembler] = None,
        writer: Optional[TurnWriter] = None,
        search: Optional[WebSearchClient] = None,
        client_factory: Optional[Callable] = None,
        image_generator: Optional[ImageGenerator] = None,
        session_factory=SessionLocal,
    ):
        self.db = db
        self.admission = admission or AdmissionController()
        self.session_manager = session_manager or ChatSessionManager(session_factory)
        self.assembler = assembler or ConversationAssembler()
        self.writer = writer or TurnWriter(session_factory)
        self.search = search or WebSearchClient()
        self.client_factory = client_factory or get_async_openai_compatible_client
        self._image_generator = image_generator

    @property
    def image_generator(self) -> ImageGenerator:
        if self._image_generator is None:
            self._image_generator = ImageGenerator()
        return self._image_generator

    # Validates input, admits the request, resolves the chat, then streams the completion as plain text
    async def stream_chat(
        self,
        *,
        payload: ChatRequest,
        user: SessionUser,
        chat_id: Optional[str],
        shared: bool = False,
        edited: bool = False,
    ) -> StreamingResponse:
        if not chat_id:
            raise HTTPException(status_code=400, detail="Missing X-Chat-ID header")

        message = payload.message
        if not isinstance(message, str) or not message.strip():
            raise HTTPException(status_code=400, detail="Message content is required")

        selection = select_provider(
            payload.model,
            openrouter_api_key=payload.openrouter_api_key,
            openai_api_key=payload.openai_api_key,
            anthropic_api_key=payload.anthropic_api_key,
            google_api_key=payload.google_api_key,
        )

        if len(message.strip()) > MAX_MESSAGE_CHARS:
            raise HTTPException(status_code=400, detail="Message too long. Please shorten your message.")

        decision = await self.admission.admit_chat(
            identity=user.identity,
            is_premium=is_premium(payload.model),
            is_byok=selection.is_byok,
            is_anonymous=user.is_anonymous,
        )
        self.admission.enforce(decision)

        resolution = await self.session_manager.resolve(
            chat_id=chat_id, user_id=user.user_id, message=message, shared=shared, edited=edited
        )

        search_results = await self.search.search(message) if payload.search_enabled else None
        attachment = Attachment.from_fields(payload.file_url, payload.file_type, payload.file_name)
        history = payload.previous_conversations or []
        provider_messages = await self.assembler.assemble(
            message,
            history,
            attachment,
            include_history=(not resolution.is_new) or shared or edited,
            search_results=search_results,
        )

        model_id = payload.model or ""
        draft = TurnDraft(
            chat_id=resolution.chat_id,
            user_message=message.strip(),
            model=model_id,
            file_url=payload.file_url or "",
            file_type=payload.file_type or "",
            file_name=payload.file_name or "",
            prefix=chat_crud.pair_turns(history, model_id) if (edited or resolution.converted_from_shared) else [],
        )

        try:
            client = self.client_factory(selection)
        except ValueError as e:
            logger.error("chat.provider.config.error: provider=%s err=%s", selection.provider, e)
            raise HTTPException(status_code=500, detail=str(e))

        params: dict = {
            "model": selection.model,
            "messages": [m.to_openai() for m in provider_messages],
            "stream": True,
        }
        if attachment is not None and attachment.is_pdf and selection.provider == "default":
            params["extra_body"] = {"plugins": [PDF_PLUGIN]}

        completion = StreamingCompletion(client, params, self.writer, draft)
        completion.start()
        logger.info(
            "chat.stream.start: chat=%s provider=%s model=%s new=%s",
            resolution.chat_id,
            selection.provider,
            selection.model,
            resolution.is_new,
        )

        headers = {"X-Title": _header_safe(resolution.title), "Cache-Control": "no-cache"}
        if resolution.converted_from_shared:
            headers["X-New-Chat-ID"] = resolution.chat_id
            headers["X-Converted-From-Shared"] = "true"
        if decision.remaining is not None:
            headers["X-RateLimit-Remaining"] = str(decision.remaining)

        return StreamingResponse(completion.client_chunks(), media_type="text/plain; charset=utf-8", headers=headers)

    # Generates one image, stores it and records the turn; returns {url, response_id}
    async def generate_image(
        self,
        *,
        payload: ImageRequest,
        user: SessionUser,
        chat_id: Optional[str],
        shared: bool = False,
        edited: bool = False,
    ) -> JSONResponse:
        history = payload.messages or []
        if not history:
            raise HTTPException(status_code=400, detail="Messages are required")
        prompt = history[-1].content
        if not isinstance(prompt, str) or not prompt.strip():
            raise HTTPException(status_code=400, detail="A prompt is required")

        decision = await self.admission.admit_image(
            identity=user.identity,
            is_premium=is_premium(IMAGE_GENERATION_MODEL),
            is_anonymous=user.is_anonymous,
        )
        self.admission.enforce(decision)

        title = _image_title(prompt)
        resolution = await self.session_manager.resolve(
            chat_id=chat_id, user_id=user.user_id, message=prompt, edited=edited, title=title, defer_create=True
        )

        previous_response_id = payload.previous_image_response_id or find_previous_response_id(history[:-1])
        input_image = Attachment.from_fields(payload.file_url, payload.file_type, payload.file_name)
        try:
            image = await self.image_generator.generate(
                prompt, previous_response_id=previous_response_id, input_image=input_image
            )
        except Exception:
            logger.exception("image.generate.error: chat=%s", resolution.chat_id)
            raise HTTPException(status_code=500, detail="Failed to generate image")

        if resolution.is_new:
            await self.session_manager.create(resolution, user.user_id)

        prefix = chat_crud.pair_turns(history[:-1], IMAGE_GENERATION_MODEL) if (shared or edited) else []
        turn = {
            "chat_id": resolution.chat_id,
            "user_message": prompt.strip(),
            "bot_response": f"![Generated Image]({image.url})",
            "file_url": payload.file_url or "",
            "file_type": payload.file_type or "",
            "file_name": payload.file_name or "",
            "image_response_id": image.response_id,
            "model": IMAGE_GENERATION_MODEL,
        }
        try:
            await self.writer.write_complete(turn, prefix)
        except Exception:
            # The image exists in storage; the caller still gets its URL
            logger.exception("image.persist.error: chat=%s", resolution.chat_id)

        headers = {"X-Title": _header_safe(title)}
        if decision.remaining is not None:
            headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return JSONResponse({"url": image.url, "response_id": image.response_id}, headers=headers)

    def list_chats(self, *, user_id: str, page: int, limit: int, search: Optional[str] = None) -> ChatListOut:
        chats, total = chat_crud.list_chats(self.db, user_id, page=page, limit=limit, search=search or None)
        return ChatListOut(
            chats=[ChatOut(id=c.id, title=c.title, createdAt=_iso(c.created_at)) for c in chats],
            pagination=PaginationOut(
                currentPage=page,
                pageSize=limit,
                totalChats=total,
                totalPages=math.ceil(total / limit) if limit else 0,
                searchTerm=search or None,
            ),
        )

    def list_messages(self, *, chat_id: Optional[str], user_id: str, shared: bool = False) -> list[MessageOut]:
        if not chat_id:
            raise HTTPException(status_code=400, detail="chatId query parameter is required")
        if shared:
            turns = chat_crud.list_shared_turns(self.db, chat_id)
        else:
            turns = chat_crud.list_turns(self.db, chat_id, user_id)
        return _turns_to_messages(turns)

    def _owned_chat(self, chat_id: Optional[str], user_id: str):
        if not chat_id:
            raise HTTPException(status_code=400, detail="Chat ID is required")
        chat = chat_crud.get_chat(self.db, chat_id)
        if chat is None:
            raise HTTPException(status_code=404, detail="Chat not found")
        if chat.user_id != user_id:
            raise HTTPException(status_code=403, detail="Forbidden: Chat does not belong to user")
        return chat

    def rename_chat(self, *, chat_id: str, user_id: str, title: Optional[str]) -> dict:
        if not isinstance(title, str) or not title.strip():
            raise HTTPException(status_code=400, detail="Title is required and must be a non-empty string")
        title = title.strip()
        if len(title) > MAX_TITLE_CHARS:
            raise HTTPException(status_code=400, detail=f"Title must be {MAX_TITLE_CHARS} characters or less")

        self._owned_chat(chat_id, user_id)
        chat_crud.update_chat_title(self.db, chat_id, user_id, title)
        self.db.commit()
        return {"message": "Chat title updated successfully", "title": title}

    def delete_chat(self, *, chat_id: str, user_id: str) -> dict:
        self._owned_chat(chat_id, user_id)
        chat_crud.delete_chat_cascade(self.db, chat_id)
        self.db.commit()
        logger.info("chat.deleted: chat=%s", chat_id)
        return {"message": "Chat deleted successfully"}

    def share_chat(self, *, chat_id: Optional[str], user_id: str) -> dict:
        if not chat_id:
            raise HTTPException(status_code=400, detail="chatId is required")
        chat = self._owned_chat(chat_id, user_id)
        try:
            shared_chat_id = chat_crud.share_chat(self.db, chat)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("chat.shared: chat=%s shared=%s", chat_id, shared_chat_id)
        return {"sharedChatId": shared_chat_id, "message": "Chat shared successfully"}

    def list_shared_chats(self, *, user_id: str) -> SharedChatListOut:
        rows = chat_crud.list_shared_chats(self.db, user_id)
        chats = [
            SharedChatOut(id=s.id, title=s.title, userId=s.user_id, chatId=s.chat_id, createdAt=_iso(s.created_at))
            for s in rows
        ]
        return SharedChatListOut(chats=chats, count=len(chats))

    def branch_chat(self, *, payload: BranchChatRequest, user_id: str) -> dict:
        chat_id = payload.chat_id
        if not isinstance(chat_id, str) or not chat_id:
            raise HTTPException(status_code=400, detail="chatId is required and must be a string")
        title = payload.title
        if not isinstance(title, str) or not title.strip():
            raise HTTPException(status_code=400, detail="title is required and must be a non-empty string")
        if payload.messages is None:
            raise HTTPException(status_code=400, detail="messages must be an array")
        for entry in payload.messages:
            if entry.role not in ("user", "assistant") or not isinstance(entry.content, str) or not entry.content:
                raise HTTPException(
                    status_code=400,
                    detail="Invalid message format. Each message must have role ('user' or 'assistant') and content (string)",
                )

        try:
            chat_crud.branch_chat(self.db, chat_id, title.strip(), user_id, payload.messages)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise HTTPException(status_code=409, detail="A chat with this id already exists")

        return {
            "success": True,
            "chatId": chat_id,
            "title": title.strip(),
            "messageCount": len(payload.messages) // 2,
            "message": "Chat branched successfully",
        }


# FastAPI dependency: a service bound to the request's DB session
def get_chat_service(db: Session = Depends(get_db)) -> ChatService:
    return ChatService(db)
