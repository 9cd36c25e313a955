from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# One role/content entry as the browser holds it (attachment fields only on user turns)
class ConversationEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    role: Optional[str] = None
    content: Any = None
    file_url: Optional[str] = Field(None, alias="fileUrl")
    file_type: Optional[str] = Field(None, alias="fileType")
    file_name: Optional[str] = Field(None, alias="fileName")
    image_response_id: Optional[str] = Field(None, alias="imageResponseId")
    model: Optional[str] = None


# Request body for the streaming chat endpoint
class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    message: Optional[str] = None
    previous_conversations: Optional[List[ConversationEntry]] = None
    search_enabled: bool = False
    model: Optional[str] = None
    file_url: Optional[str] = Field(None, alias="fileUrl")
    file_type: Optional[str] = Field(None, alias="fileType")
    file_name: Optional[str] = Field(None, alias="fileName")
    openrouter_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None


# Request body for image generation; the last entry of `messages` is the prompt
class ImageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    messages: Optional[List[ConversationEntry]] = None
    previous_image_response_id: Optional[str] = None
    file_url: Optional[str] = Field(None, alias="fileUrl")
    file_type: Optional[str] = Field(None, alias="fileType")
    file_name: Optional[str] = Field(None, alias="fileName")


class ShareChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    chat_id: Optional[str] = Field(None, alias="chatId")


class BranchChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    chat_id: Optional[str] = Field(None, alias="chatId")
    title: Optional[str] = None
    messages: Optional[List[ConversationEntry]] = None


class ChatTitleUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")
    title: Optional[str] = None


# Chat summary row for the sidebar
class ChatOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    id: str
    title: str
    created_at: Optional[str] = Field(None, alias="createdAt")


class PaginationOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    current_page: int = Field(alias="currentPage")
    page_size: int = Field(alias="pageSize")
    total_chats: int = Field(alias="totalChats")
    total_pages: int = Field(alias="totalPages")
    search_term: Optional[str] = Field(None, alias="searchTerm")


class ChatListOut(BaseModel):
    chats: List[ChatOut]
    pagination: PaginationOut


# A turn expanded back into the role/content shape the browser renders
class MessageOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    role: str
    content: str
    file_url: Optional[str] = Field(None, alias="fileUrl")
    file_type: Optional[str] = Field(None, alias="fileType")
    file_name: Optional[str] = Field(None, alias="fileName")
    image_response_id: Optional[str] = Field(None, alias="imageResponseId")
    model: Optional[str] = None


class SharedChatOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    id: str
    title: str
    user_id: str = Field(alias="userId")
    chat_id: str = Field(alias="chatId")
    created_at: Optional[str] = Field(None, alias="createdAt")


class SharedChatListOut(BaseModel):
    chats: List[SharedChatOut]
    count: int
