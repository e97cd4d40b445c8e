"""
Command parsing for inbound chat text.

Rules:
- surrounding whitespace is trimmed
- one leading prefix character is stripped when present (the prefix is optional)
- tokens are split on runs of whitespace
- the first token, lower-cased, is the command name; the rest are arguments,
  with their casing preserved

Examples:
    ".TagAll hello world" -> ("tagall", ["hello", "world"])
    "menu"                -> ("menu", [])
    "   "                 -> None
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from chatwarden.protocol.messages import InboundMessage


@dataclass(frozen=True)
class CommandInvocation:
    """One parsed command, derived per inbound message and never persisted."""

    name: str
    args: Tuple[str, ...]
    chat_id: str
    sender: str
    is_group: bool
    message: Optional[InboundMessage] = None

    @property
    def arg_text(self) -> str:
        return " ".join(self.args)


def parse_command(text: str, prefix: str = ".") -> Optional[Tuple[str, List[str]]]:
    text = (text or "").strip()
    if prefix and text.startswith(prefix):
        text = text[len(prefix):]
    tokens = text.split()
    if not tokens:
        return None
    return tokens[0].lower(), tokens[1:]


def build_invocation(message: InboundMessage, prefix: str = ".") -> Optional[CommandInvocation]:
    parsed = parse_command(message.text(), prefix)
    if parsed is None:
        return None
    name, args = parsed
    return CommandInvocation(
        name=name,
        args=tuple(args),
        chat_id=message.chat_id,
        sender=message.sender,
        is_group=message.is_group,
        message=message,
    )
