from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

from Sparrow.services.attachments import AttachmentFetcher, extract_docx_text

logger = logging.getLogger(__name__)

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC_MIME = "application/msword"


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    url: str


@dataclass(frozen=True)
class FilePart:
    filename: str
    file_data: str   # data: URL


ContentPart = Union[TextPart, ImagePart, FilePart]


def _part_to_openai(part: ContentPart) -> dict:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": part.url}}
    if isinstance(part, FilePart):
        return {"type": "file", "file": {"filename": part.filename, "file_data": part.file_data}}
    raise TypeError(f"Unsupported content part: {type(part).__name__}")


@dataclass
class ProviderMessage:
    role: str
    content: Union[str, list] = field(default="")

    def to_openai(self) -> dict:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [_part_to_openai(p) for p in self.content]}


# A file reference carried by a message: public URL, MIME type and display name
@dataclass(frozen=True)
class Attachment:
    url: str
    mime_type: str
    filename: str

    @classmethod
    def from_fields(cls, url: Optional[str], mime_type: Optional[str], filename: Optional[str]) -> Optional["Attachment"]:
        if not url or not mime_type or not filename:
            return None
        return cls(url=url, mime_type=mime_type, filename=filename)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"

    @property
    def is_text(self) -> bool:
        return self.mime_type.startswith("text/")

    @property
    def is_word(self) -> bool:
        name = self.filename.lower()
        return self.mime_type in (DOCX_MIME, DOC_MIME) or name.endswith(".docx") or name.endswith(".doc")

    @property
    def is_docx(self) -> bool:
        return self.mime_type == DOCX_MIME or self.filename.lower().endswith(".docx")


def file_content_header(filename: str) -> str:
    return f"-------- File Content: {filename}"


def document_content_header(filename: str) -> str:
    return f"-------- Document Content: {filename}"


def _file_block(filename: str, text: str) -> str:
    return f"\n\n{file_content_header(filename)} --------\n{text}\n-------- End of File Content --------"


def _document_block(filename: str, text: str) -> str:
    return f"\n\n{document_content_header(filename)} --------\n{text}\n-------- End of Document Content --------"


def _note(text: str) -> str:
    return f"\n\n[Note: {text}]"


def with_search_results(message: str, search_results: Optional[str]) -> str:
    if not search_results or not search_results.strip():
        return message
    return (
        "-------- Web Search Results --------\n"
        f"{search_results}\n"
        "-------- End of Web Search Results --------\n"
        f"User Message: {message}"
    )


def _entry_attr(entry: Any, name: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(name)
    return getattr(entry, name, None)


# Builds the provider-ready message list: system prompt, prior turns, then the new user message
class ConversationAssembler:
    def __init__(self, fetcher: Optional[AttachmentFetcher] = None, system_prompt: str = ""):
        self._fetcher = fetcher or AttachmentFetcher()
        self._system_prompt = system_prompt

    async def assemble(
        self,
        message: str,
        history: Optional[Sequence[Any]],
        attachment: Optional[Attachment] = None,
        *,
        include_history: bool = True,
        search_results: Optional[str] = None,
    ) -> list[ProviderMessage]:
        messages = [ProviderMessage("system", self._system_prompt)]
        if include_history and history:
            for entry in history:
                prepared = await self.prepare_history_entry(entry)
                if prepared is not None:
                    messages.append(prepared)
        content = await self.build_user_content(message, attachment, search_results=search_results)
        messages.append(ProviderMessage("user", content))
        return messages

    # A prior turn rendered for the provider, or None when it is not a usable user/assistant entry
    async def prepare_history_entry(self, entry: Any) -> Optional[ProviderMessage]:
        role = _entry_attr(entry, "role")
        content = _entry_attr(entry, "content")
        if role not in ("user", "assistant"):
            return None
        if not isinstance(content, str) or not content.strip():
            return None

        if role == "assistant":
            return ProviderMessage("assistant", content)

        attachment = Attachment.from_fields(
            _entry_attr(entry, "file_url"), _entry_attr(entry, "file_type"), _entry_attr(entry, "file_name")
        )
        if attachment is None:
            return ProviderMessage("user", content)

        if attachment.is_image:
            return ProviderMessage("user", [TextPart(content), ImagePart(attachment.url)])

        if attachment.is_pdf:
            try:
                file_part = await self._pdf_part(attachment)
            except Exception as e:
                logger.warning("assembler.history.pdf.error: file=%s err=%s", attachment.filename, e)
                return ProviderMessage(
                    "user", content + _note(f'PDF file "{attachment.filename}" could not be processed - {e}')
                )
            return ProviderMessage("user", [TextPart(content), file_part])

        if attachment.is_text:
            if file_content_header(attachment.filename) in content:
                return ProviderMessage("user", content)
            return ProviderMessage("user", content + await self._text_file_suffix(attachment))

        if attachment.is_word:
            if document_content_header(attachment.filename) in content:
                return ProviderMessage("user", content)
            return ProviderMessage("user", content + await self._word_suffix(attachment))

        return ProviderMessage("user", content)

    # Content for the new user message; a plain string unless an attachment is present
    async def build_user_content(
        self,
        message: str,
        attachment: Optional[Attachment] = None,
        *,
        search_results: Optional[str] = None,
    ) -> Union[str, list]:
        text = with_search_results(message.strip(), search_results)
        if attachment is None:
            return text

        parts: list = []
        if attachment.is_image:
            parts.append(ImagePart(attachment.url))
        elif attachment.is_pdf:
            try:
                parts.append(await self._pdf_part(attachment))
            except Exception as e:
                logger.warning("assembler.pdf.error: file=%s err=%s", attachment.filename, e)
                text += _note(f'PDF file "{attachment.filename}" could not be processed - {e}')
        elif attachment.is_text:
            text += await self._text_file_suffix(attachment)
        elif attachment.is_word:
            text += await self._word_suffix(attachment, advise_paste=True)
        else:
            logger.warning("assembler.unsupported: file=%s type=%s", attachment.filename, attachment.mime_type)
            text += _note(f'File "{attachment.filename}" ({attachment.mime_type}) was attached but is not supported for processing')

        return [TextPart(text), *parts]

    async def _pdf_part(self, attachment: Attachment) -> FilePart:
        data = await self._fetcher.fetch_bytes(attachment.url, kind="PDF")
        encoded = base64.b64encode(data).decode("ascii")
        return FilePart(filename=attachment.filename, file_data=f"data:application/pdf;base64,{encoded}")

    async def _text_file_suffix(self, attachment: Attachment) -> str:
        try:
            body = await self._fetcher.fetch_text(attachment.url, kind="text file")
        except Exception as e:
            logger.warning("assembler.text.error: file=%s err=%s", attachment.filename, e)
            return _note(f'Text file "{attachment.filename}" could not be processed - {e}')
        return _file_block(attachment.filename, body)

    async def _word_suffix(self, attachment: Attachment, advise_paste: bool = False) -> str:
        if not attachment.is_docx:
            return _note(
                f'Microsoft Word document "{attachment.filename}" (.doc format) was attached. '
                "For best results with older .doc files, please convert to .docx format or copy/paste the text content."
            )
        try:
            data = await self._fetcher.fetch_bytes(attachment.url, kind="Word document")
            body = extract_docx_text(data)
        except Exception as e:
            logger.warning("assembler.word.error: file=%s err=%s", attachment.filename, e)
            reason = f'Word document "{attachment.filename}" could not be processed - {e}'
            if advise_paste:
                reason += ". Consider copying and pasting the text content instead."
            return _note(reason)

        if not body.strip():
            return _note(f'Word document "{attachment.filename}" was processed but no readable text content was found.')
        return _document_block(attachment.filename, body)
