"""
Command Dispatcher.

Turns inbound chat messages into group administration operations. The
dispatcher owns no session state of its own: it reads Session Records from
the registry, and every command runs as its own task scheduled by the
controller.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from chatwarden.commands.assets import AssetSender
from chatwarden.commands.handlers import (
    Command,
    CommandContext,
    CommandTable,
    build_default_table,
    welcome_text,
)
from chatwarden.commands.parser import CommandInvocation, build_invocation
from chatwarden.config import CONFIG, Config
from chatwarden.logger import get_logger
from chatwarden.protocol.base import GroupParticipantsUpdate, MembershipAction, ProtocolSocket
from chatwarden.protocol.messages import InboundMessage
from chatwarden.session.record import SessionRecord
from chatwarden.session.registry import SessionRegistry

logger = get_logger(__name__)


class CommandDispatcher:
    def __init__(
        self,
        registry: SessionRegistry,
        config: Config = CONFIG,
        assets: Optional[AssetSender] = None,
        table: Optional[CommandTable] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.config = config
        self.assets = assets or AssetSender(config.asset_url, config.asset_timeout)
        self.table = table or build_default_table()
        self.sleep = sleep

    async def dispatch(self, session_id: str, message: InboundMessage) -> None:
        """Handle one inbound message. Never raises; failures are logged."""
        try:
            await self._dispatch(session_id, message)
        except Exception as e:
            logger.error(f"[{session_id}] Dispatch failed: {e}")

    async def _dispatch(self, session_id: str, message: InboundMessage) -> None:
        record = self.registry.get(session_id)
        if record is None:
            return
        if message.is_status_broadcast or not message.contents:
            return
        # A group with an active recurring job is command-deaf.
        if message.is_group and record.job_active(message.chat_id):
            return

        invocation = build_invocation(message, self.config.command_prefix)
        if invocation is None:
            return
        command = self.table.lookup(invocation.name)
        if command is None:
            return

        socket = record.connection
        if socket is None:
            logger.debug(f"[{session_id}] Dropping .{invocation.name}: no connection")
            return

        ctx = CommandContext(
            record=record,
            socket=socket,
            invocation=invocation,
            assets=self.assets,
            config=self.config,
            sleep=self.sleep,
            table=self.table,
        )
        if not await self._allowed(ctx, command):
            return

        logger.info(
            f"[{session_id}] .{command.name} from {invocation.sender} in {invocation.chat_id}"
        )
        await command.handler(ctx)

    async def _allowed(self, ctx: CommandContext, command: Command) -> bool:
        """Evaluate gating; sends the single denial reply when refused."""
        invocation = ctx.invocation
        if command.requires_group and not invocation.is_group:
            await self._deny(ctx, command, command.group_only_reply)
            return False
        if command.requires_admin:
            if not await self._sender_is_admin(ctx, invocation):
                await self._deny(ctx, command, command.not_admin_reply)
                return False
        return True

    async def _sender_is_admin(self, ctx: CommandContext, invocation: CommandInvocation) -> bool:
        try:
            meta = await ctx.socket.group_metadata(invocation.chat_id)
        except Exception as e:
            logger.warning(f"[{ctx.record.session_id}] Admin check failed: {e}")
            return False
        ctx.metadata = meta
        return meta.is_admin(invocation.sender)

    async def _deny(self, ctx: CommandContext, command: Command, reply: str) -> None:
        if command.text_only:
            await ctx.reply_text(reply)
        else:
            await ctx.reply(reply)

    # ─── Membership hook ─────────────────────────────────────────────

    async def on_participants_update(
        self, session_id: str, event: GroupParticipantsUpdate
    ) -> None:
        """Welcome newly added participants of groups that opted in."""
        try:
            await self._welcome(session_id, event)
        except Exception as e:
            logger.error(f"[{session_id}] Welcome hook failed for {event.group_id}: {e}")

    async def _welcome(self, session_id: str, event: GroupParticipantsUpdate) -> None:
        if event.action != MembershipAction.ADD:
            return
        record = self.registry.get(session_id)
        if record is None:
            return
        state = record.groups.get(event.group_id)
        if state is None or not state.welcome_enabled:
            return
        socket = record.connection
        if socket is None:
            return

        meta = await socket.group_metadata(event.group_id)
        for participant in event.participants:
            await self._send_welcome(record, socket, event.group_id, participant, meta.subject)

    async def _send_welcome(
        self,
        record: SessionRecord,
        socket: ProtocolSocket,
        group_id: str,
        participant: str,
        subject: str,
    ) -> None:
        text = f"*{self.config.bot_name}*\n{welcome_text(participant, subject)}"
        try:
            await self.assets.send(record, socket, group_id, text, mentions=(participant,))
        except Exception as e:
            logger.error(f"[{record.session_id}] Welcome to {participant} failed: {e}")

