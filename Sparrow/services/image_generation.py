import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from Sparrow.services.attachments import AttachmentFetcher
from Sparrow.services.conversation_assembler import Attachment
from Sparrow.services.object_storage import get_object_storage
from Sparrow.services.openai_compatible_client import get_system_openai_client

logger = logging.getLogger(__name__)

IMAGE_RESPONSES_MODEL = "gpt-4.1-mini"
IMAGE_TOOL = {"type": "image_generation", "quality": "low"}


class ImageGenerationError(Exception):
    pass


@dataclass(frozen=True)
class GeneratedImage:
    url: str
    response_id: str


# Most recent assistant entry carrying an upstream image response id
def find_previous_response_id(history: Optional[Sequence[Any]]) -> Optional[str]:
    for entry in reversed(list(history or [])):
        if getattr(entry, "role", None) != "assistant":
            continue
        response_id = getattr(entry, "image_response_id", None)
        if response_id:
            return response_id
    return None


# Generates an image with the Responses API image tool and stores it in object storage
class ImageGenerator:
    def __init__(self, client_factory=None, storage=None, fetcher: Optional[AttachmentFetcher] = None):
        self._client_factory = client_factory or get_system_openai_client
        self._storage = storage
        self._fetcher = fetcher or AttachmentFetcher()

    @property
    def storage(self):
        if self._storage is None:
            self._storage = get_object_storage()
        return self._storage

    async def _upload_input_image(self, client: Any, image: Attachment) -> str:
        content = await self._fetcher.fetch_bytes(image.url, kind="file")
        uploaded = await client.files.create(
            file=(image.filename or "input-image.png", content, image.mime_type or "image/png"),
            purpose="vision",
        )
        return uploaded.id

    async def generate(
        self,
        prompt: str,
        *,
        previous_response_id: Optional[str] = None,
        input_image: Optional[Attachment] = None,
    ) -> GeneratedImage:
        client = self._client_factory()
        try:
            input_content: Any = prompt
            if input_image is not None and input_image.is_image:
                try:
                    file_id = await self._upload_input_image(client, input_image)
                    input_content = [
                        {
                            "role": "user",
                            "content": [
                                {"type": "input_text", "text": prompt},
                                {"type": "input_image", "file_id": file_id},
                            ],
                        }
                    ]
                except Exception:
                    # Fall back to a text-only prompt
                    logger.exception("image.input.upload.error: file=%s", input_image.filename)

            request: dict[str, Any] = {
                "model": IMAGE_RESPONSES_MODEL,
                "input": input_content,
                "tools": [IMAGE_TOOL],
            }
            if previous_response_id:
                request["previous_response_id"] = previous_response_id

            response = await client.responses.create(**request)
            calls = [o for o in (getattr(response, "output", None) or []) if getattr(o, "type", None) == "image_generation_call"]
            image_b64 = getattr(calls[0], "result", None) if calls else None
            if not image_b64:
                raise ImageGenerationError("No image was generated")

            image_bytes = base64.b64decode(image_b64)
            url = await self.storage.store(image_bytes, f"generated-{response.id}.png", "image/png")
            logger.info("image.generated: response=%s multi_turn=%s", response.id, bool(previous_response_id))
            return GeneratedImage(url=url, response_id=response.id)
        finally:
            try:
                await client.close()
            except Exception:
                pass
