"""
Loopback protocol driver.

Keeps groups and sent messages in memory and never touches the network.
It is the default driver so the server runs out of the box; point
``CHATWARDEN_PROTOCOL_DRIVER`` at a real implementation for production.
"""

import uuid
from typing import Any, Dict, List, Optional, Tuple

from chatwarden.logger import get_logger
from chatwarden.protocol.base import (
    ConnectionUpdate,
    CredentialsUpdated,
    DisconnectReason,
    EventSink,
    GroupParticipantsUpdate,
    MembershipAction,
    MessagesUpsert,
    ProtocolSocket,
)
from chatwarden.protocol.messages import (
    GroupMetadata,
    InboundMessage,
    OutboundContent,
    Participant,
)

logger = get_logger(__name__)


class LoopbackSocket(ProtocolSocket):
    """In-memory socket that authenticates immediately."""

    auto_open: bool = True

    def __init__(self, session_id: str, credentials: Dict[str, Any], emit: EventSink):
        super().__init__(session_id, credentials, emit)
        self.groups: Dict[str, GroupMetadata] = {}
        self.settings: Dict[str, str] = {}
        self.sent: List[Tuple[str, OutboundContent]] = []
        self.closed = False

    async def start(self) -> None:
        if not self.credentials.get("registered"):
            # Unpaired credentials: raise a challenge, then pair.
            self.emit(ConnectionUpdate(qr=f"loopback:{self.session_id}:{uuid.uuid4().hex}"))
            self.emit(
                CredentialsUpdated(
                    {**self.credentials, "registered": True, "me": self.session_id}
                )
            )
        if self.auto_open:
            self.emit(ConnectionUpdate(connection="open"))

    async def send_message(self, jid: str, content: OutboundContent) -> Any:
        self._check_open()
        self.sent.append((jid, content))
        return {"key": {"remoteJid": jid, "id": uuid.uuid4().hex, "fromMe": True}}

    async def group_metadata(self, jid: str) -> GroupMetadata:
        self._check_open()
        if jid not in self.groups:
            raise KeyError(f"unknown group {jid}")
        return self.groups[jid]

    async def group_participants_update(
        self, jid: str, participants: list, action: str
    ) -> Any:
        meta = await self.group_metadata(jid)
        if action == MembershipAction.ADD:
            known = set(meta.participant_ids())
            meta.participants.extend(Participant(p) for p in participants if p not in known)
        elif action == MembershipAction.REMOVE:
            meta.participants = [p for p in meta.participants if p.id not in participants]
        elif action in (MembershipAction.PROMOTE, MembershipAction.DEMOTE):
            for p in meta.participants:
                if p.id in participants:
                    p.admin = "admin" if action == MembershipAction.PROMOTE else None
        else:
            raise ValueError(f"unsupported membership action {action}")
        return [{"jid": p, "status": "200"} for p in participants]

    async def group_update_subject(self, jid: str, subject: str) -> Any:
        meta = await self.group_metadata(jid)
        meta.subject = subject

    async def group_setting_update(self, jid: str, setting: str) -> Any:
        await self.group_metadata(jid)
        self.settings[jid] = setting

    async def end(self) -> None:
        if not self.closed:
            self.closed = True
            logger.debug(f"Loopback socket for {self.session_id} ended")

    # ─── Development helpers ─────────────────────────────────────────

    def add_group(self, metadata: GroupMetadata) -> None:
        self.groups[metadata.id] = metadata

    def inject(self, raw: Dict[str, Any]) -> InboundMessage:
        """Deliver a raw inbound message as if it arrived from the network."""
        message = InboundMessage.from_raw(raw)
        self.emit(MessagesUpsert(messages=(message,)))
        return message

    def join(self, group_id: str, participants: List[str]) -> None:
        self.emit(
            GroupParticipantsUpdate(
                group_id=group_id,
                participants=tuple(participants),
                action=MembershipAction.ADD,
            )
        )

    def drop(self, reason: Optional[int] = DisconnectReason.CONNECTION_LOST) -> None:
        """Simulate the network closing the connection."""
        self.emit(ConnectionUpdate(connection="close", reason=reason))

    def _check_open(self) -> None:
        if self.closed:
            raise ConnectionError("loopback socket is closed")
