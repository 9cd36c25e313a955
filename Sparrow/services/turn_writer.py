from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from Sparrow.crud.chat import insert_turn_placeholder, patch_turn_response

logger = logging.getLogger(__name__)

PLACEHOLDER_RESPONSE = (
    "We're processing your message in the background due to a technical issue. "
    "Please refresh the page in a few seconds to see the response."
)


# Turn writes for the streaming path; each call runs in a worker thread with its own short-lived session
class TurnWriter:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _in_session(self, fn, *args):
        session = self._session_factory()
        try:
            result = fn(session, *args)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Record the user's submission before any tokens arrive; returns the turn id
    async def write_placeholder(self, turn: dict, prefix: Sequence[dict] = ()) -> str:
        row = {**turn, "bot_response": PLACEHOLDER_RESPONSE}
        return await asyncio.to_thread(self._in_session, insert_turn_placeholder, turn["chat_id"], row, list(prefix))

    # Overwrite the answer text; falls back to inserting the full turn when turn_id is unknown
    async def write_response(self, turn_id: Optional[str], bot_response: str, fallback: dict) -> str:
        return await asyncio.to_thread(self._in_session, patch_turn_response, turn_id, bot_response, fallback)

    # Insert a finished turn (and any prefix turns) in one transaction; returns the turn id
    async def write_complete(self, turn: dict, prefix: Sequence[dict] = ()) -> str:
        return await asyncio.to_thread(self._in_session, insert_turn_placeholder, turn["chat_id"], turn, list(prefix))
