"""
Pydantic models for the web transport.

Covers:
- REST request/response schemas for session management
- WebSocket messages sent by web clients
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# ─── REST ────────────────────────────────────────────────────────────


class CreateSessionRequest(BaseModel):
    """Web → Server: start pairing a new account."""

    profile: str = "unknown"
    name: str = ""
    phone: str = ""


class SessionCreatedResponse(BaseModel):
    session_id: str
    storage_key: str


class SessionListItem(BaseModel):
    """One stored session, live or not."""

    storage_key: str
    meta: dict[str, Any] = Field(default_factory=dict)
    live: bool = False
    state: Optional[str] = None
    last_connected: Optional[int] = None


class SessionListResponse(BaseModel):
    sessions: list[SessionListItem] = Field(default_factory=list)
    count: int = 0


class ErrorResponse(BaseModel):
    error: str


# ─── WebSocket ───────────────────────────────────────────────────────


class ClientMessage(BaseModel):
    """Web → Server: one request over ``/ws``."""

    type: Literal["create_session", "list_sessions", "destroy_session"]
    profile: str = "unknown"
    name: str = ""
    phone: str = ""
    storage_key: Optional[str] = None
