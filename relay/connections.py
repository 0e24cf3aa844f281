"""Live WebSocket sessions and the per-worker connection registry.

The registry is the local subscriber of the broadcast bus: every bus event
is turned into one frame and pushed to each active session concurrently.
Sessions whose send fails are pruned.

When a session goes away its identity and the frames it misses are kept
for a short window. A client that reconnects with the same ``sid`` inside
that window is resumed with its old identity and receives the buffered
frames, so the application-level replay is skipped for it.
"""
import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from relay.bus import BusEvent
from relay.identity import Identity
from relay.metrics import ws_connections
from relay.schemas import EVENT_CHAT_MESSAGE, AckFrame, EventFrame

logger = logging.getLogger(__name__)

# Frames buffered per detached session before it stops being resumable
MAX_BUFFERED_FRAMES = 1000


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ChatSession:
    """State of one client connection.

    `websocket` only needs an async ``send_json(dict)`` method.
    """

    def __init__(
        self,
        websocket: Any,
        sid: str,
        identity: Identity,
        server_offset: int = 0,
        recovered: bool = False,
    ) -> None:
        self.websocket = websocket
        self.sid = sid
        self.identity = identity
        self.server_offset = server_offset
        self.recovered = recovered
        self.state = SessionState.CONNECTING
        self._held: Optional[List[dict]] = None

    @property
    def alias(self) -> str:
        return self.identity.alias

    @property
    def color(self) -> str:
        return self.identity.color

    async def emit(self, event: str, *args: Any) -> bool:
        """Send an event to this client only, bypassing any hold."""
        return await self._safe_send(EventFrame(event=event, args=list(args)).model_dump())

    async def send_ack(self, ack_id: int, *args: Any) -> bool:
        return await self._safe_send(AckFrame(ack=ack_id, args=list(args)).model_dump())

    def hold(self, frames: Iterable[dict] = ()) -> None:
        """Queue broadcast frames instead of sending them (used during replay)."""
        self._held = list(frames)

    async def release(self, replayed_through: int = 0) -> None:
        """Flush held frames, skipping messages already sent by the replay."""
        held, self._held = self._held or [], None
        for frame in held:
            if frame["event"] == EVENT_CHAT_MESSAGE and _frame_message_id(frame) <= replayed_through:
                continue
            if not await self._safe_send(frame):
                return

    async def push(self, frame: dict) -> bool:
        if self._held is not None:
            self._held.append(frame)
            return True
        return await self._safe_send(frame)

    async def _safe_send(self, frame: dict) -> bool:
        if self.state == SessionState.DISCONNECTED:
            return False
        try:
            await self.websocket.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to session {self.sid}: {e}")
            return False


def _frame_message_id(frame: dict) -> int:
    args = frame.get("args") or []
    if len(args) >= 2 and isinstance(args[1], int):
        return args[1]
    return 0


class DetachedSession:
    """What is kept of a session after it disconnects."""

    def __init__(self, identity: Identity, expires_at: float) -> None:
        self.identity = identity
        self.expires_at = expires_at
        self.frames: Deque[dict] = deque()


class ConnectionRegistry:
    """Tracks the sessions connected to this worker.

    The online count is always derived from the set of live sessions.
    """

    def __init__(
        self,
        recovery_window: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.recovery_window = recovery_window
        self._clock = clock
        self.sessions: Dict[str, ChatSession] = {}
        self._detached: Dict[str, DetachedSession] = {}

    @property
    def count(self) -> int:
        return len(self.sessions)

    def add(self, session: ChatSession) -> None:
        self.sessions[session.sid] = session
        ws_connections.set(self.count)

    def remove(self, session: ChatSession) -> bool:
        """Drop a session and keep it resumable. Returns False if already gone."""
        if self.sessions.get(session.sid) is not session:
            return False
        del self.sessions[session.sid]
        ws_connections.set(self.count)
        self._purge_expired()
        if self.recovery_window > 0:
            self._detached[session.sid] = DetachedSession(
                session.identity, self._clock() + self.recovery_window
            )
        return True

    def resume(self, sid: str) -> Optional[DetachedSession]:
        """Claim the detached state for `sid`, if it is still within the window."""
        self._purge_expired()
        return self._detached.pop(sid, None)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [sid for sid, d in self._detached.items() if d.expires_at <= now]
        for sid in expired:
            del self._detached[sid]

    async def deliver(self, bus_event: BusEvent) -> None:
        """Bus handler: push one event to every local session."""
        frame = EventFrame(event=bus_event.event, args=bus_event.args).model_dump()

        for sid, detached in list(self._detached.items()):
            if len(detached.frames) >= MAX_BUFFERED_FRAMES:
                logger.info(f"Recovery buffer full for {sid}, session no longer resumable")
                del self._detached[sid]
                continue
            detached.frames.append(frame)

        sessions = list(self.sessions.values())
        if not sessions:
            return

        results = await asyncio.gather(
            *[session.push(frame) for session in sessions],
            return_exceptions=True
        )

        for session, ok in zip(sessions, results):
            if ok is not True:
                logger.debug(f"Pruning dead session {session.sid}")
                self.remove(session)
