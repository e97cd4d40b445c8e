"""
Protocol Socket contract.

A protocol driver implements ``ProtocolSocket`` and reports everything that
happens on the wire by calling the ``emit`` sink it was constructed with.
The session controller owns at most one socket per session and never talks
to the chat network any other way.
"""

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

from chatwarden.protocol.messages import (
    GroupMetadata,
    InboundMessage,
    OutboundContent,
)


class DisconnectReason(IntEnum):
    """Status codes a driver attaches to a connection close."""

    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


class MembershipAction:
    ADD = "add"
    REMOVE = "remove"
    PROMOTE = "promote"
    DEMOTE = "demote"


class GroupSetting:
    ANNOUNCEMENT = "announcement"
    NOT_ANNOUNCEMENT = "not_announcement"


# ─── Socket → core events ────────────────────────────────────────────


@dataclass(frozen=True)
class CredentialsUpdated:
    state: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectionUpdate:
    connection: Optional[str] = None  # "connecting" | "open" | "close"
    qr: Optional[str] = None
    reason: Optional[int] = None


@dataclass(frozen=True)
class MessagesUpsert:
    messages: Tuple[InboundMessage, ...] = ()


@dataclass(frozen=True)
class GroupParticipantsUpdate:
    group_id: str
    participants: Tuple[str, ...] = ()
    action: str = MembershipAction.ADD


SocketEvent = Union[
    CredentialsUpdated, ConnectionUpdate, MessagesUpsert, GroupParticipantsUpdate
]
EventSink = Callable[[SocketEvent], None]


class ProtocolSocket(ABC):
    """
    One authenticated connection to the chat network.

    Drivers must call ``emit`` from the event loop thread. ``start`` begins
    the handshake; everything afterwards is reported through events.
    """

    def __init__(
        self,
        session_id: str,
        credentials: Dict[str, Any],
        emit: EventSink,
    ):
        self.session_id = session_id
        self.credentials = credentials
        self._emit = emit

    def emit(self, event: SocketEvent) -> None:
        self._emit(event)

    @abstractmethod
    async def start(self) -> None:
        """Open the connection and begin authentication."""

    @abstractmethod
    async def send_message(self, jid: str, content: OutboundContent) -> Any:
        """Send text, an image, or a delete-by-reference to a chat."""

    @abstractmethod
    async def group_metadata(self, jid: str) -> GroupMetadata:
        pass

    @abstractmethod
    async def group_participants_update(
        self, jid: str, participants: list, action: str
    ) -> Any:
        pass

    @abstractmethod
    async def group_update_subject(self, jid: str, subject: str) -> Any:
        pass

    @abstractmethod
    async def group_setting_update(self, jid: str, setting: str) -> Any:
        pass

    @abstractmethod
    async def end(self) -> None:
        """Terminate the connection. Must be safe to call more than once."""


SocketFactory = Callable[[str, Dict[str, Any], EventSink], ProtocolSocket]


def load_socket_class(dotted_path: str) -> Type[ProtocolSocket]:
    """Import a driver class from ``package.module.ClassName``."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    socket_class = getattr(module, class_name)
    if not (isinstance(socket_class, type) and issubclass(socket_class, ProtocolSocket)):
        raise TypeError(f"{dotted_path} is not a ProtocolSocket implementation")
    return socket_class
