"""
Chat gateway: wires sessions, the message log and the broadcast bus.

Session lifecycle: CONNECTING -> ACTIVE -> DISCONNECTED.

On connect:
    1. Resume the detached session for the presented sid, or assign a
       fresh identity
    2. Send `alias assigned` to this client
    3. Broadcast a join notice and the online count
    4. Replay missed messages unless the session was resumed

On `chat message` (text, idempotency token, ack):
    - created   -> broadcast (payload, id), then ack
    - duplicate -> ack only; the first attempt already broadcast it
    - failure   -> no ack; the client retries with the same token

On `load history` (earliest known id, ack):
    - one `prepend history` batch to this client, ack with the row count

On disconnect:
    - broadcast a leave notice, then the online count after a short delay
"""
import asyncio
import logging
import random
import uuid
from typing import Any, Optional, Set

from pydantic import ValidationError

from relay.bus import BroadcastBus
from relay.codec import PLAIN, encode_content, live_payload
from relay.connections import ChatSession, ConnectionRegistry, SessionState
from relay.history import HistoryPaginator
from relay.identity import assign_identity
from relay.logging_utils import sid_ctx
from relay.metrics import record_submission_outcome
from relay.recovery import RecoveryEngine
from relay.schemas import (
    EVENT_ALIAS_ASSIGNED,
    EVENT_CHAT_MESSAGE,
    EVENT_LOAD_HISTORY,
    EVENT_SERVER_MESSAGE,
    EVENT_USER_COUNT,
    ClientFrame,
    IdentityAssigned,
    SubmitArgs,
)
from relay.storage import MessageLog

logger = logging.getLogger(__name__)


class ChatGateway:
    def __init__(
        self,
        log: MessageLog,
        bus: BroadcastBus,
        registry: ConnectionRegistry,
        variant: str = "structured",
        page_size: int = 10,
        count_settle_delay: float = 0.05,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.log = log
        self.bus = bus
        self.registry = registry
        self.variant = variant
        self.count_settle_delay = count_settle_delay
        self.rng = rng or random.Random()
        self.recovery = RecoveryEngine(log, variant, page_size)
        self.paginator = HistoryPaginator(log, variant, page_size)
        self._pending: Set[asyncio.Task] = set()

    async def start(self) -> None:
        self.bus.subscribe(self.registry.deliver)
        await self.bus.start()

    async def close(self) -> None:
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.bus.close()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(
        self, websocket: Any, server_offset: int = 0, sid: Optional[str] = None
    ) -> ChatSession:
        """Activate a session for an accepted websocket."""
        detached = self.registry.resume(sid) if sid else None
        if detached is not None:
            session = ChatSession(websocket, sid, detached.identity, server_offset, recovered=True)
        else:
            session = ChatSession(
                websocket, uuid.uuid4().hex, assign_identity(self.rng), server_offset
            )
        # Tags every log line of this connection, replay included
        sid_ctx.set(session.sid)
        if session.recovered:
            logger.info(f"Session {sid} resumed as {session.alias}")
        else:
            logger.info(f"Session {session.sid} assigned alias {session.alias}")

        # Broadcasts arriving from here on queue up behind the identity and replay
        session.hold(detached.frames if detached is not None else ())
        self.registry.add(session)
        session.state = SessionState.ACTIVE
        await session.emit(EVENT_ALIAS_ASSIGNED, self._identity_frame(session))

        await self.bus.publish(EVENT_SERVER_MESSAGE, f"{session.alias} joined the chat")
        await self.bus.publish(EVENT_USER_COUNT, self.registry.count)

        result = await self.recovery.recover(session)
        await session.release(result.last_id)
        return session

    def _identity_frame(self, session: ChatSession) -> dict:
        color = None if self.variant == PLAIN else session.color
        return IdentityAssigned(alias=session.alias, sid=session.sid, color=color).model_dump(
            exclude_none=True
        )

    async def disconnect(self, session: ChatSession) -> None:
        if session.state == SessionState.DISCONNECTED:
            return
        session.state = SessionState.DISCONNECTED
        self.registry.remove(session)
        logger.info(f"Session {session.sid} ({session.alias}) disconnected")

        await self.bus.publish(EVENT_SERVER_MESSAGE, f"{session.alias} left the chat")

        task = asyncio.create_task(self._publish_count_later())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish_count_later(self) -> None:
        await asyncio.sleep(self.count_settle_delay)
        await self.bus.publish(EVENT_USER_COUNT, self.registry.count)

    # =========================================================================
    # Client requests
    # =========================================================================

    async def handle_frame(self, session: ChatSession, raw: str) -> None:
        """Decode one client frame and run it to completion."""
        try:
            frame = ClientFrame.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed frame: {e}")
            return

        if frame.event == EVENT_CHAT_MESSAGE:
            try:
                args = SubmitArgs(text=frame.args[0], idempotency_token=frame.args[1])
            except (IndexError, ValidationError):
                logger.warning("Ignoring invalid chat message submission")
                record_submission_outcome("invalid")
                return
            if await self.submit(session, args.text, args.idempotency_token) and frame.ack is not None:
                await session.send_ack(frame.ack)

        elif frame.event == EVENT_LOAD_HISTORY:
            earliest = frame.args[0] if frame.args else None
            if isinstance(earliest, bool) or not isinstance(earliest, int) or earliest <= 0:
                earliest = None
            count = await self.paginator.load(session, earliest)
            if frame.ack is not None:
                await session.send_ack(frame.ack, count)

        else:
            logger.warning(f"Ignoring unknown event {frame.event!r}")

    async def submit(self, session: ChatSession, text: str, idempotency_token: str) -> bool:
        """
        Store and broadcast one submission.

        Returns True when the submission should be acknowledged. The write
        and its broadcast are shielded so a disconnect cannot cut them short.
        """
        return await asyncio.shield(
            self._store_and_broadcast(session.alias, session.color, text, idempotency_token)
        )

    async def _store_and_broadcast(
        self, alias: str, color: str, text: str, idempotency_token: str
    ) -> bool:
        content = encode_content(self.variant, alias, text, color)
        result = await self.log.append(content, idempotency_token)

        if result.is_duplicate:
            record_submission_outcome("duplicate")
            return True

        if not result.created:
            record_submission_outcome("error")
            return False

        record_submission_outcome("created")
        await self.bus.publish(
            EVENT_CHAT_MESSAGE, live_payload(self.variant, alias, text, color), result.message_id
        )
        return True
