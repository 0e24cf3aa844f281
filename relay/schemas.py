"""
Pydantic schemas for the WebSocket wire protocol and HTTP responses.

This module contains:
- Event names used on the wire
- Frame models for client -> server and server -> client traffic
- The structured chat payload
- Response models for the HTTP endpoints
"""

from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# Event Names
# =============================================================================

EVENT_ALIAS_ASSIGNED = "alias assigned"
EVENT_CHAT_MESSAGE = "chat message"
EVENT_PREPEND_HISTORY = "prepend history"
EVENT_SERVER_MESSAGE = "server message"
EVENT_USER_COUNT = "user count"
EVENT_LOAD_HISTORY = "load history"


# =============================================================================
# Chat Payloads
# =============================================================================

class ChatPayload(BaseModel):
    """Structured chat message as delivered to clients."""
    alias: str = Field(..., description="Sender alias")
    content: str = Field(..., description="Message text")
    color: str = Field(..., description="Sender color as #RRGGBB")


# Live and replayed messages carry either a ChatPayload dict or a plain string
Payload = Union[dict, str]


class IdentityAssigned(BaseModel):
    """Sent once to a client when its session becomes active."""
    alias: str
    sid: str = Field(..., description="Session id to present when reconnecting")
    color: Optional[str] = Field(None, description="Omitted in the plain variant")


# =============================================================================
# Wire Frames
# =============================================================================

class ClientFrame(BaseModel):
    """
    Client -> server frame.

    `ack` is an opaque client counter; when present the server answers with
    an AckFrame carrying the same number once the request is settled.
    """
    event: str = Field(..., min_length=1)
    args: List[Any] = Field(default_factory=list)
    ack: Optional[int] = None


class EventFrame(BaseModel):
    """Server -> client event."""
    event: str
    args: List[Any] = Field(default_factory=list)


class AckFrame(BaseModel):
    """Server -> client acknowledgment of a ClientFrame."""
    ack: int
    args: List[Any] = Field(default_factory=list)


class SubmitArgs(BaseModel):
    """Positional args of a `chat message` submission."""
    text: str
    idempotency_token: str = Field(..., min_length=1)


# =============================================================================
# HTTP Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class HistoryItem(BaseModel):
    id: int = Field(..., description="Log-assigned message id")
    payload: Payload = Field(..., description="Decoded message payload")


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages.

    Contains:
    - data: page of messages, ascending by id
    - has_more: whether older messages exist before the first item
    """
    data: List[HistoryItem] = Field(default_factory=list)
    has_more: bool = Field(False, description="Older messages exist")
