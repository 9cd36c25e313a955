import io
import logging
from typing import Optional

import httpx
from docx import Document

logger = logging.getLogger(__name__)

_FETCH_TIMEOUT_SECONDS = 30.0


class AttachmentFetchError(Exception):
    pass


# Downloads user-uploaded files by public URL
class AttachmentFetcher:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = _FETCH_TIMEOUT_SECONDS):
        self._client = client
        self._timeout = timeout

    async def _get(self, url: str, kind: str) -> httpx.Response:
        try:
            if self._client is not None:
                response = await self._client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise AttachmentFetchError(f"Failed to fetch {kind}: {e}") from e

        if response.status_code >= 400:
            raise AttachmentFetchError(f"Failed to fetch {kind}: {response.reason_phrase or response.status_code}")
        return response

    async def fetch_bytes(self, url: str, kind: str = "file") -> bytes:
        response = await self._get(url, kind)
        return response.content

    async def fetch_text(self, url: str, kind: str = "text file") -> str:
        response = await self._get(url, kind)
        return response.text


# Raw text of a .docx file: paragraphs, then table cells row by row
def extract_docx_text(content: bytes) -> str:
    document = Document(io.BytesIO(content))
    lines = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text for cell in row.cells if cell.text]
            if cells:
                lines.append("\t".join(cells))
    return "\n".join(lines)
