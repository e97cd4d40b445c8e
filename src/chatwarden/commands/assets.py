"""
Asset delivery helper.

Most replies go out as an image with the reply text as caption. Delivery
degrades in three tiers and never raises before the last one:

1. the session's cached image bytes, fetched with httpx on first use
2. the same image by remote URL, letting the protocol fetch it
3. plain text carrying the same caption, mentions and quote

Only the protocol's own failure on the final text send propagates.
"""

from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from chatwarden.logger import get_logger
from chatwarden.protocol.base import ProtocolSocket
from chatwarden.protocol.messages import ImageContent, InboundMessage, TextContent
from chatwarden.session.record import SessionRecord

logger = get_logger(__name__)

Fetcher = Callable[[str, float], Awaitable[bytes]]


async def fetch_asset(url: str, timeout: float) -> bytes:
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.content


class AssetSender:
    def __init__(self, url: str, timeout: float = 15.0, fetch: Optional[Fetcher] = None):
        self.url = url
        self.timeout = timeout
        self._fetch = fetch or fetch_asset

    async def get_asset(self, record: SessionRecord) -> Optional[bytes]:
        """Cached bytes for the session, fetching them on first use. None on failure."""
        if record.cached_asset:
            return record.cached_asset
        try:
            data = await self._fetch(self.url, self.timeout)
        except Exception as e:
            logger.warning(f"[{record.session_id}] Asset fetch failed: {e}")
            return None
        if data:
            record.cached_asset = data
        return data or None

    async def send(
        self,
        record: SessionRecord,
        socket: ProtocolSocket,
        jid: str,
        text: str,
        mentions: Sequence[str] = (),
        quoted: Optional[InboundMessage] = None,
    ) -> Any:
        mentions = tuple(mentions)

        data = await self.get_asset(record)
        if data:
            try:
                return await socket.send_message(
                    jid,
                    ImageContent(caption=text, data=data, mentions=mentions, quoted=quoted),
                )
            except Exception as e:
                logger.warning(f"[{record.session_id}] Image buffer send failed: {e}")

        try:
            return await socket.send_message(
                jid,
                ImageContent(caption=text, url=self.url, mentions=mentions, quoted=quoted),
            )
        except Exception as e:
            logger.warning(f"[{record.session_id}] Image url send failed: {e}")

        return await socket.send_message(
            jid, TextContent(text=text, mentions=mentions, quoted=quoted)
        )
