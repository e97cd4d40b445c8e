"""
Message shapes exchanged with a Protocol Socket.

Inbound messages carry a tuple of content variants. Text extraction probes
the variants in a fixed priority order, one extractor per variant:

    conversation body > extended (reply) text > image, video, document caption

Outbound content is one of ``TextContent``, ``ImageContent`` or
``DeleteContent``.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, Union

USER_DOMAIN = "s.whatsapp.net"
GROUP_DOMAIN = "g.us"
STATUS_BROADCAST = "status@broadcast"


def jid_user(jid: str) -> str:
    """Return the user part of a protocol identifier (``509...@s.whatsapp.net`` -> ``509...``)."""
    return (jid or "").split("@", 1)[0]


def user_jid(number: str) -> str:
    return f"{number}@{USER_DOMAIN}"


def is_group_jid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.endswith(f"@{GROUP_DOMAIN}")


# ─── Inbound ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MessageKey:
    remote_jid: str
    id: str = ""
    from_me: bool = False
    participant: Optional[str] = None


@dataclass(frozen=True)
class ContextInfo:
    """Quoting context attached to a message (reply target and mentions)."""

    stanza_id: Optional[str] = None
    participant: Optional[str] = None
    mentioned_jids: Tuple[str, ...] = ()

    @property
    def is_reply(self) -> bool:
        return bool(self.stanza_id)


@dataclass(frozen=True)
class Conversation:
    text: str


@dataclass(frozen=True)
class ExtendedText:
    text: str
    context: Optional[ContextInfo] = None


@dataclass(frozen=True)
class ImageMessage:
    caption: str = ""
    context: Optional[ContextInfo] = None


@dataclass(frozen=True)
class VideoMessage:
    caption: str = ""
    context: Optional[ContextInfo] = None


@dataclass(frozen=True)
class DocumentMessage:
    caption: str = ""
    context: Optional[ContextInfo] = None


MessageContent = Union[
    Conversation, ExtendedText, ImageMessage, VideoMessage, DocumentMessage
]

_TEXT_EXTRACTORS: Dict[type, Callable[[Any], str]] = {
    Conversation: lambda c: c.text,
    ExtendedText: lambda c: c.text,
    ImageMessage: lambda c: c.caption,
    VideoMessage: lambda c: c.caption,
    DocumentMessage: lambda c: c.caption,
}

TEXT_PRIORITY: Tuple[type, ...] = tuple(_TEXT_EXTRACTORS)


@dataclass(frozen=True)
class InboundMessage:
    key: MessageKey
    contents: Tuple[MessageContent, ...] = ()

    @property
    def chat_id(self) -> str:
        return self.key.remote_jid

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.key.remote_jid)

    @property
    def sender(self) -> str:
        """Author of the message: the group participant, or the chat itself for direct chats."""
        return self.key.participant or self.key.remote_jid

    @property
    def is_status_broadcast(self) -> bool:
        return self.key.remote_jid == STATUS_BROADCAST

    def _find(self, kind: type) -> Optional[MessageContent]:
        return next((c for c in self.contents if isinstance(c, kind)), None)

    def text(self) -> str:
        for kind in TEXT_PRIORITY:
            content = self._find(kind)
            if content is None:
                continue
            value = _TEXT_EXTRACTORS[kind](content)
            if value:
                return value
        return ""

    def context(self) -> Optional[ContextInfo]:
        """Quoting context, preferring the extended-text variant."""
        for kind in TEXT_PRIORITY[1:]:
            content = self._find(kind)
            if content is not None and content.context is not None:
                return content.context
        return None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "InboundMessage":
        """Build a message from the JSON-like shape protocol drivers emit."""
        raw_key = raw.get("key") or {}
        key = MessageKey(
            remote_jid=raw_key.get("remoteJid", ""),
            id=raw_key.get("id", ""),
            from_me=bool(raw_key.get("fromMe")),
            participant=raw_key.get("participant"),
        )
        body = raw.get("message") or {}
        contents = []
        if body.get("conversation"):
            contents.append(Conversation(text=str(body["conversation"])))
        ext = body.get("extendedTextMessage")
        if isinstance(ext, dict):
            contents.append(
                ExtendedText(
                    text=str(ext.get("text") or ""),
                    context=_context_from_raw(ext.get("contextInfo")),
                )
            )
        for name, kind in (
            ("imageMessage", ImageMessage),
            ("videoMessage", VideoMessage),
            ("documentMessage", DocumentMessage),
        ):
            media = body.get(name)
            if isinstance(media, dict):
                contents.append(
                    kind(
                        caption=str(media.get("caption") or ""),
                        context=_context_from_raw(media.get("contextInfo")),
                    )
                )
        return cls(key=key, contents=tuple(contents))


def _context_from_raw(raw: Optional[Dict[str, Any]]) -> Optional[ContextInfo]:
    if not isinstance(raw, dict):
        return None
    return ContextInfo(
        stanza_id=raw.get("stanzaId"),
        participant=raw.get("participant"),
        mentioned_jids=tuple(raw.get("mentionedJid") or ()),
    )


# ─── Outbound ────────────────────────────────────────────────────────


@dataclass
class TextContent:
    text: str
    mentions: Tuple[str, ...] = ()
    quoted: Optional[InboundMessage] = None


@dataclass
class ImageContent:
    """An image sent either from local bytes or by remote reference."""

    caption: str = ""
    data: Optional[bytes] = None
    url: Optional[str] = None
    mentions: Tuple[str, ...] = ()
    quoted: Optional[InboundMessage] = None


@dataclass
class DeleteContent:
    key: MessageKey


OutboundContent = Union[TextContent, ImageContent, DeleteContent]


@dataclass
class Participant:
    id: str
    admin: Optional[str] = None  # "admin", "superadmin" or None

    @property
    def is_admin(self) -> bool:
        return bool(self.admin)


@dataclass
class GroupMetadata:
    id: str
    subject: str = ""
    participants: list = field(default_factory=list)

    def participant_ids(self) -> list:
        return [p.id for p in self.participants]

    def admin_ids(self) -> list:
        return [p.id for p in self.participants if p.is_admin]

    def is_admin(self, jid: str) -> bool:
        return any(p.id == jid and p.is_admin for p in self.participants)
