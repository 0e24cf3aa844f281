"""Replay of missed messages to a (re)connecting client."""
import logging
from typing import NamedTuple

from relay.codec import PLAIN, replay_payload
from relay.connections import ChatSession
from relay.metrics import record_recovered
from relay.schemas import EVENT_CHAT_MESSAGE
from relay.storage import MessageLog

logger = logging.getLogger(__name__)


class ReplayResult(NamedTuple):
    count: int
    last_id: int


class RecoveryEngine:
    """Sends a new session the messages it has not rendered yet.

    Skipped for sessions the transport already resumed. With an offset of
    0 the structured variant sends nothing (the client pages history in
    itself) and the plain variant sends the latest page.
    """

    def __init__(self, log: MessageLog, variant: str, page_size: int = 10) -> None:
        self.log = log
        self.variant = variant
        self.page_size = page_size

    async def recover(self, session: ChatSession) -> ReplayResult:
        offset = session.server_offset
        if session.recovered:
            return ReplayResult(0, offset)

        try:
            if offset > 0:
                rows = await self.log.read_range(offset)
            elif self.variant == PLAIN:
                rows = list(reversed(await self.log.read_page(None, self.page_size)))
            else:
                return ReplayResult(0, offset)
        except Exception:
            logger.warning(f"Recovery read failed for offset={offset}", exc_info=True)
            return ReplayResult(0, offset)

        count, last_id = 0, offset
        for message_id, raw in rows:
            if not await session.emit(EVENT_CHAT_MESSAGE, replay_payload(self.variant, raw), message_id):
                logger.info(f"Replay to {session.sid} stopped after {count} messages")
                break
            count, last_id = count + 1, message_id

        record_recovered(count)
        logger.info(f"Replayed {count} messages from offset={offset}")
        return ReplayResult(count, last_id)
