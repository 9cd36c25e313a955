from typing import Optional

from fastapi import APIRouter, Depends, Header

from Sparrow.auth import SessionUser, get_current_user
from Sparrow.schemas.chat import (
    BranchChatRequest,
    ChatListOut,
    ChatRequest,
    ChatTitleUpdate,
    ImageRequest,
    MessageOut,
    ShareChatRequest,
    SharedChatListOut,
)
from Sparrow.services.chat_service import DEFAULT_PAGE, DEFAULT_PAGE_SIZE, ChatService, get_chat_service


router = APIRouter(prefix="/api")


def _flag(value: Optional[str]) -> bool:
    return value == "true"


def _positive_int(value: Optional[str], default: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


# Streams a model answer for one chat message as plain text
@router.post("/openai")
async def stream_chat(
    payload: ChatRequest,
    shared: Optional[str] = None,
    editedMessage: Optional[str] = None,
    x_chat_id: Optional[str] = Header(None),
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
):
    return await svc.stream_chat(
        payload=payload, user=user, chat_id=x_chat_id, shared=_flag(shared), edited=_flag(editedMessage)
    )


# Generates an image for the last message and records it as a turn
@router.post("/generate-image")
async def generate_image(
    payload: ImageRequest,
    shared: Optional[str] = None,
    editedMessage: Optional[str] = None,
    x_chat_id: Optional[str] = Header(None),
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
):
    return await svc.generate_image(
        payload=payload, user=user, chat_id=x_chat_id, shared=_flag(shared), edited=_flag(editedMessage)
    )


# Paginated chat list for the sidebar, newest first
@router.get("/chats")
def list_chats(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    search: Optional[str] = None,
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
) -> ChatListOut:
    return svc.list_chats(
        user_id=user.user_id,
        page=_positive_int(page, DEFAULT_PAGE),
        limit=_positive_int(limit, DEFAULT_PAGE_SIZE),
        search=search,
    )


# All messages of a chat (or of a shared snapshot when shared=true)
@router.get("/messages")
def list_messages(
    chatId: Optional[str] = None,
    shared: Optional[str] = None,
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
) -> list[MessageOut]:
    return svc.list_messages(chat_id=chatId, user_id=user.user_id, shared=_flag(shared))


@router.patch("/chat/{chat_id}")
def rename_chat(
    chat_id: str,
    body: ChatTitleUpdate,
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
):
    return svc.rename_chat(chat_id=chat_id, user_id=user.user_id, title=body.title)


@router.delete("/chat/{chat_id}")
def delete_chat(
    chat_id: str,
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
):
    return svc.delete_chat(chat_id=chat_id, user_id=user.user_id)


# Publish a snapshot of a chat
@router.post("/share-chat")
def share_chat(
    body: ShareChatRequest,
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
):
    return svc.share_chat(chat_id=body.chat_id, user_id=user.user_id)


@router.get("/share-chat")
def list_shared_chats(
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
) -> SharedChatListOut:
    return svc.list_shared_chats(user_id=user.user_id)


# Start a new chat from a client-supplied message list
@router.post("/branch", status_code=201)
def branch_chat(
    body: BranchChatRequest,
    user: SessionUser = Depends(get_current_user),
    svc: ChatService = Depends(get_chat_service),
):
    return svc.branch_chat(payload=body, user_id=user.user_id)
