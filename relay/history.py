"""Backward pagination over the message log."""
import logging
from typing import List, Optional, Tuple, Union

from relay.codec import replay_payload
from relay.connections import ChatSession
from relay.metrics import record_history_request
from relay.schemas import EVENT_PREPEND_HISTORY
from relay.storage import MessageLog

logger = logging.getLogger(__name__)


class HistoryPaginator:
    def __init__(self, log: MessageLog, variant: str, page_size: int = 10) -> None:
        self.log = log
        self.variant = variant
        self.page_size = page_size

    async def page(
        self, before_id: Optional[int], limit: Optional[int] = None
    ) -> List[Tuple[int, Union[dict, str]]]:
        """
        Messages strictly older than `before_id`, oldest first.

        Read errors propagate to the caller.
        """
        rows = await self.log.read_page(before_id, limit or self.page_size)
        return [(message_id, replay_payload(self.variant, raw)) for message_id, raw in reversed(rows)]

    async def load(self, session: ChatSession, earliest_known_id: Optional[int]) -> int:
        """
        Send one page older than `earliest_known_id` to `session` only.

        Returns the number of rows sent; 0 when history is exhausted or the
        read failed, so the client can tell it has reached the beginning.
        """
        try:
            items = await self.page(earliest_known_id)
        except Exception:
            logger.warning(f"History read failed before id={earliest_known_id}", exc_info=True)
            record_history_request("error")
            return 0

        if not items:
            record_history_request("empty")
            return 0

        batch = [[payload, message_id] for message_id, payload in items]
        await session.emit(EVENT_PREPEND_HISTORY, batch)
        record_history_request("ok")
        return len(items)
