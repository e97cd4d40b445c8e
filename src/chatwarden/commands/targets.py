"""
Target resolution for membership commands (kick, add, promote, demote).

Priority, first non-empty source wins:
1. identifiers mentioned in the message's quoting context
2. the sender of the replied-to message
3. the argument tokens, read as phone numbers or raw identifiers

The result is de-duplicated, keeping first-seen order.
"""

import re
from typing import Iterable, List, Optional

from chatwarden.protocol.messages import ContextInfo, user_jid

_NON_NUMBER = re.compile(r"[^0-9+]")


def number_to_jid(token: str) -> Optional[str]:
    """``+509 1234-5678`` -> ``50912345678@s.whatsapp.net``; identifiers pass through."""
    if "@" in token:
        return token
    cleaned = _NON_NUMBER.sub("", token)
    digits = cleaned[1:] if cleaned.startswith("+") else cleaned
    digits = digits.replace("+", "")
    if not digits:
        return None
    return user_jid(digits)


def _unique(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(i for i in ids if i))


def resolve_targets(context: Optional[ContextInfo], args: Iterable[str]) -> List[str]:
    if context is not None and context.mentioned_jids:
        return _unique(context.mentioned_jids)
    if context is not None and context.is_reply and context.participant:
        return [context.participant]
    return _unique(number_to_jid(token) for token in args)
