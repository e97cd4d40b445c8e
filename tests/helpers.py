"""Fakes and builders shared by the test modules."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from chatwarden.notify import NotificationChannel
from chatwarden.protocol.base import ProtocolSocket
from chatwarden.protocol.messages import (
    ContextInfo,
    Conversation,
    ExtendedText,
    GroupMetadata,
    InboundMessage,
    MessageKey,
    Participant,
)

GROUP = "1203630001@g.us"


def jid(n) -> str:
    return f"{n}@s.whatsapp.net"


class RecordingNotifier(NotificationChannel):
    def __init__(self):
        self.events: List[tuple] = []

    async def emit(self, event: str, data: Dict[str, Any]) -> None:
        self.events.append((event, data))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


class FakeSocket(ProtocolSocket):
    """
    Records every call. ``failures`` maps an operation name to a predicate
    over its arguments; when it returns True the call raises.
    """

    def __init__(self, session_id="s1", credentials=None, emit=None):
        super().__init__(session_id, credentials or {}, emit or (lambda event: None))
        self.groups: Dict[str, GroupMetadata] = {}
        self.sent: List[tuple] = []
        self.calls: List[tuple] = []
        self.failures: Dict[str, Callable[..., bool]] = {}
        self.ended = False

    def _record(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        rule = self.failures.get(op)
        if rule is not None and rule(*args):
            raise RuntimeError(f"{op} failed")

    def ops(self, op: str) -> List[tuple]:
        return [c[1:] for c in self.calls if c[0] == op]

    async def start(self) -> None:
        self._record("start")

    async def send_message(self, jid, content):
        self._record("send_message", jid, content)
        self.sent.append((jid, content))
        return {"ok": True}

    async def group_metadata(self, jid):
        self._record("group_metadata", jid)
        if jid not in self.groups:
            raise KeyError(jid)
        return self.groups[jid]

    async def group_participants_update(self, jid, participants, action):
        self._record("group_participants_update", jid, list(participants), action)

    async def group_update_subject(self, jid, subject):
        self._record("group_update_subject", jid, subject)

    async def group_setting_update(self, jid, setting):
        self._record("group_setting_update", jid, setting)

    async def end(self) -> None:
        self.ended = True


def make_group(group_id=GROUP, subject="Test Group", admins=(), members=()) -> GroupMetadata:
    participants = [Participant(a, "admin") for a in admins]
    participants += [Participant(m) for m in members]
    return GroupMetadata(id=group_id, subject=subject, participants=participants)


def make_message(
    text: str,
    chat: str = GROUP,
    sender: Optional[str] = None,
    mentions=(),
    reply_to: Optional[str] = None,
    stanza_id: Optional[str] = None,
    msg_id: str = "MSG1",
) -> InboundMessage:
    """Build an inbound message; group messages carry the sender as participant."""
    is_group = chat.endswith("@g.us")
    key = MessageKey(
        remote_jid=chat,
        id=msg_id,
        participant=(sender or jid(1)) if is_group else None,
    )
    if mentions or reply_to or stanza_id:
        context = ContextInfo(
            stanza_id=stanza_id or ("QUOTED1" if reply_to else None),
            participant=reply_to,
            mentioned_jids=tuple(mentions),
        )
        return InboundMessage(key=key, contents=(ExtendedText(text, context),))
    return InboundMessage(key=key, contents=(Conversation(text),))


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Yield to the loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


