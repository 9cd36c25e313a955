import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Union

from Sparrow.services.turn_writer import TurnWriter

logger = logging.getLogger(__name__)

# Strong references so detached generation tasks are not garbage collected mid-flight
_BACKGROUND_TASKS: set[asyncio.Task] = set()


class ProviderStreamError(Exception):
    pass


# The turn a streaming request will persist, minus the answer text
@dataclass
class TurnDraft:
    chat_id: str
    user_message: str
    model: str
    file_url: str = ""
    file_type: str = ""
    file_name: str = ""
    prefix: list[dict] = field(default_factory=list)   # re-supplied turns written with the placeholder

    def as_row(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "user_message": self.user_message,
            "file_url": self.file_url or "",
            "file_type": self.file_type or "",
            "file_name": self.file_name or "",
            "image_response_id": None,
            "model": self.model or "",
        }


# Runs one provider stream to completion in a detached task and relays deltas to the client while it is connected.
#
# The HTTP response only drains a queue. If the client goes away the generator is closed, relaying stops and the
# task keeps consuming the provider stream and persisting the accumulated text, so the answer is never lost.
class StreamingCompletion:
    def __init__(self, client: Any, params: dict, writer: TurnWriter, draft: TurnDraft):
        self._client = client
        self._params = params
        self._writer = writer
        self._draft = draft
        self._queue: asyncio.Queue[Union[str, BaseException, None]] = asyncio.Queue()
        self._client_connected = True
        self.final_text = ""
        self.turn_id: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def client_connected(self) -> bool:
        return self._client_connected

    def start(self) -> asyncio.Task:
        task = asyncio.create_task(self._run())
        _BACKGROUND_TASKS.add(task)
        task.add_done_callback(self._task_done)
        self.task = task
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        _BACKGROUND_TASKS.discard(task)
        if task.cancelled():
            logger.warning("chat.stream.bg.task.cancelled: chat=%s", self._draft.chat_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("chat.stream.bg.task.error: chat=%s", self._draft.chat_id, exc_info=exc)

    def _emit(self, item: Union[str, BaseException]) -> None:
        if self._client_connected:
            self._queue.put_nowait(item)

    def _finish_queue(self) -> None:
        self._queue.put_nowait(None)

    # Body iterator for the StreamingResponse
    async def client_chunks(self) -> AsyncIterator[str]:
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise ProviderStreamError(str(item)) from item
                yield item
        except (asyncio.CancelledError, GeneratorExit):
            # Client went away: stop relaying, leave the generation task running
            self._client_connected = False
            logger.info("chat.stream.client.disconnected: chat=%s", self._draft.chat_id)
            raise
        finally:
            self._client_connected = False

    async def _write_placeholder(self) -> Optional[str]:
        try:
            return await self._writer.write_placeholder(self._draft.as_row(), self._draft.prefix)
        except Exception:
            logger.exception("chat.stream.placeholder.error: chat=%s", self._draft.chat_id)
            return None

    async def _persist(self, text: str) -> None:
        try:
            self.turn_id = await self._writer.write_response(self.turn_id, text, self._draft.as_row())
        except Exception:
            logger.exception("chat.stream.persist.error: chat=%s turn=%s", self._draft.chat_id, self.turn_id)

    async def _run(self) -> None:
        placeholder_task = asyncio.create_task(self._write_placeholder())
        placeholder_done = False
        accumulated = ""
        t0_stream = time.perf_counter()

        async def _await_placeholder() -> None:
            nonlocal placeholder_done
            if not placeholder_done:
                self.turn_id = await placeholder_task
                placeholder_done = True

        try:
            async for chunk in _iter_chat_completion_chunks(self._client, **self._params):
                piece = _extract_delta_text(chunk)
                if piece is None:
                    logger.warning("chat.stream.chunk.malformed: chat=%s", self._draft.chat_id)
                    continue
                if not piece:
                    continue

                self._emit(piece)
                accumulated += piece
                self.final_text = accumulated

                await _await_placeholder()
                await self._persist(accumulated)

            logger.info(
                "chat.stream.done: chat=%s chars=%d ms=%d connected=%s",
                self._draft.chat_id,
                len(accumulated),
                int((time.perf_counter() - t0_stream) * 1000),
                self._client_connected,
            )
        except Exception as e:
            logger.exception("chat.stream.error: chat=%s connected=%s", self._draft.chat_id, self._client_connected)
            self._emit(e)
        finally:
            await _await_placeholder()
            # Authoritative final write; an empty answer leaves the placeholder in place
            if accumulated:
                await self._persist(accumulated)
            try:
                await self._client.close()
            except Exception:
                pass
            self._finish_queue()


# Yield streaming chat completion chunks and always close the upstream stream
async def _iter_chat_completion_chunks(client: Any, **stream_kwargs: object) -> AsyncIterator[Any]:
    stream = await client.chat.completions.create(**stream_kwargs)
    try:
        async for chunk in stream:
            yield chunk
    finally:
        try:
            await stream.close()
        except Exception:
            pass


# Text carried by a streamed chunk; None when the chunk has no choices
def _extract_delta_text(chunk: Any) -> Optional[str]:
    choices = getattr(chunk, "choices", None)
    if not choices:
        return None
    choice = choices[0]

    delta = getattr(choice, "delta", None)
    content = getattr(delta, "content", None) if delta is not None else None
    if isinstance(content, str):
        return content

    # Some providers surface streaming text on choice.text
    text_piece = getattr(choice, "text", None)
    if isinstance(text_piece, str):
        return text_piece
    return ""
