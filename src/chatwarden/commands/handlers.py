"""
Command table and handlers.

Each ``Command`` declares its gating (group only, sender must be a group
admin); the dispatcher enforces gating before calling the handler, so
handlers only run once they are allowed to mutate anything.

Handlers catch protocol failures at the call site and answer with a fixed
reply. Bulk operations isolate failures per target.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from chatwarden.commands.assets import AssetSender
from chatwarden.commands.parser import CommandInvocation
from chatwarden.commands.targets import resolve_targets
from chatwarden.config import Config
from chatwarden.jobs import RecurringJob
from chatwarden.logger import get_logger
from chatwarden.protocol.base import GroupSetting, MembershipAction, ProtocolSocket
from chatwarden.protocol.messages import (
    DeleteContent,
    GroupMetadata,
    ImageContent,
    MessageKey,
    TextContent,
    jid_user,
)
from chatwarden.qr import render_png
from chatwarden.session.record import SessionRecord

logger = get_logger(__name__)


@dataclass
class CommandContext:
    record: SessionRecord
    socket: ProtocolSocket
    invocation: CommandInvocation
    assets: AssetSender
    config: Config
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    # Fresh metadata fetched while checking admin rights, reused by the handler.
    metadata: Optional[GroupMetadata] = None
    table: Optional["CommandTable"] = None

    @property
    def chat_id(self) -> str:
        return self.invocation.chat_id

    def header(self, body: str) -> str:
        return f"*{self.config.bot_name}*\n{body}"

    async def reply(self, body: str, mentions: Sequence[str] = ()) -> None:
        await self.assets.send(
            self.record, self.socket, self.chat_id, self.header(body), mentions
        )

    async def reply_text(self, body: str, mentions: Sequence[str] = ()) -> None:
        await self.socket.send_message(
            self.chat_id, TextContent(text=self.header(body), mentions=tuple(mentions))
        )

    async def pause(self, delay_ms: int) -> None:
        await self.sleep(delay_ms / 1000)


Handler = Callable[[CommandContext], Awaitable[None]]


@dataclass(frozen=True)
class Command:
    name: str
    handler: Handler
    aliases: Tuple[str, ...] = ()
    usage: str = ""
    requires_group: bool = False
    requires_admin: bool = False
    # Gating replies go out without the asset for text-only commands.
    text_only: bool = False
    hidden: bool = False
    group_only_reply: str = "This command only works in groups."
    not_admin_reply: str = "You are not a group admin."


class CommandTable:
    def __init__(self, commands: Sequence[Command] = ()):
        self._commands: Dict[str, Command] = {}
        self._order: List[Command] = []
        for command in commands:
            self.register(command)

    def register(self, command: Command) -> None:
        for key in (command.name, *command.aliases):
            if key in self._commands:
                raise ValueError(f"Command name already registered: {key}")
            self._commands[key] = command
        self._order.append(command)

    def lookup(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def __iter__(self):
        return iter(self._order)

    def __contains__(self, name: str) -> bool:
        return name in self._commands


# ─── Informational ───────────────────────────────────────────────────


def menu_text(config: Config, table: CommandTable) -> str:
    lines = [
        f"Owner: {config.owner_name}",
        f"Version: {config.bot_version}",
        "Type: Python",
        "_____________________________",
    ]
    visible = [c for c in table if not c.hidden]
    for i, command in enumerate(visible):
        bullet = "○" if i % 2 == 0 else "●"
        lines.append(f"*{bullet} {command.usage or command.name.title()}*")
    lines.append("")
    lines.append(f"> © {config.bot_name}")
    return "\n".join(lines)


async def handle_menu(ctx: CommandContext) -> None:
    await ctx.assets.send(
        ctx.record, ctx.socket, ctx.chat_id, menu_text(ctx.config, ctx.table or build_default_table())
    )


async def handle_image(ctx: CommandContext) -> None:
    await ctx.reply("Here is the image.")


async def handle_qr(ctx: CommandContext) -> None:
    text = ctx.invocation.arg_text
    if not text:
        await ctx.reply("Usage: `.qr [text]`")
        return
    try:
        png = await asyncio.to_thread(render_png, text)
        await ctx.socket.send_message(
            ctx.chat_id, ImageContent(caption=ctx.header(text), data=png)
        )
    except Exception as e:
        logger.error(f"[{ctx.record.session_id}] QR generation failed: {e}")
        await ctx.reply("Could not generate the QR code.")


# ─── Mentions ────────────────────────────────────────────────────────


async def handle_tagall(ctx: CommandContext) -> None:
    try:
        meta = await ctx.socket.group_metadata(ctx.chat_id)
    except Exception as e:
        logger.error(f"[{ctx.record.session_id}] tagall metadata error: {e}")
        await ctx.reply("Error: could not fetch the group metadata.")
        return
    ids = meta.participant_ids()
    listing = "\n".join(
        f"{'●' if i == 0 else '○'}@{jid_user(jid)}" for i, jid in enumerate(ids)
    )
    await ctx.reply(f"{listing}\n》》》 {ctx.config.bot_name}", mentions=ids)


async def handle_hidetag(ctx: CommandContext) -> None:
    text = ctx.invocation.arg_text
    if not text:
        await ctx.reply_text("Usage: `.hidetag [text]`")
        return
    try:
        meta = await ctx.socket.group_metadata(ctx.chat_id)
        await ctx.socket.send_message(
            ctx.chat_id, TextContent(text=text, mentions=tuple(meta.participant_ids()))
        )
    except Exception as e:
        logger.error(f"[{ctx.record.session_id}] hidetag error: {e}")
        await ctx.reply_text("Hidetag failed.")


# ─── Recurring job ───────────────────────────────────────────────────


async def handle_invisible(ctx: CommandContext) -> None:
    record, chat_id = ctx.record, ctx.chat_id
    state = record.group(chat_id)
    if state.job_active:
        await ctx.reply("Invisible mode is already active.")
        return

    placeholder = ctx.config.job_placeholder
    assets = ctx.assets

    async def tick() -> None:
        socket = record.connection
        if socket is None:
            return
        await assets.send(record, socket, chat_id, placeholder)

    state.job = RecurringJob(
        name=f"{record.session_id}:{chat_id}",
        period_seconds=ctx.config.job_period_ms / 1000,
        tick=tick,
    )
    state.job.start()
    await ctx.reply("Invisible mode active.")


# ─── Message deletion ────────────────────────────────────────────────


async def handle_delete(ctx: CommandContext) -> None:
    message = ctx.invocation.message
    context = message.context() if message is not None else None
    if context is None or not context.stanza_id:
        await ctx.reply("Reply to a message with .del to delete it.")
        return
    key = MessageKey(
        remote_jid=ctx.chat_id,
        id=context.stanza_id,
        from_me=False,
        participant=context.participant,
    )
    try:
        await ctx.socket.send_message(ctx.chat_id, DeleteContent(key=key))
    except Exception as e:
        logger.error(f"[{ctx.record.session_id}] delete error: {e}")
        await ctx.reply("Could not delete this message.")


# ─── Membership ──────────────────────────────────────────────────────


async def handle_kickall(ctx: CommandContext) -> None:
    meta = ctx.metadata
    if meta is None:
        meta = await ctx.socket.group_metadata(ctx.chat_id)
    admins = set(meta.admin_ids())
    removed = 0
    for participant in meta.participants:
        if participant.id in admins:
            continue
        try:
            await ctx.socket.group_participants_update(
                ctx.chat_id, [participant.id], MembershipAction.REMOVE
            )
            removed += 1
        except Exception as e:
            logger.error(f"[{ctx.record.session_id}] kick error for {participant.id}: {e}")
        await ctx.pause(ctx.config.purge_delay_ms)

    logger.info(f"[{ctx.record.session_id}] kickall removed {removed} from {ctx.chat_id}")
    try:
        await ctx.socket.group_update_subject(ctx.chat_id, ctx.config.purge_subject)
    except Exception as e:
        logger.error(f"[{ctx.record.session_id}] subject update failed: {e}")
        await ctx.reply("Members removed, but the group could not be renamed.")


def membership_handler(action: str, delay_field: str, usage: str) -> Handler:
    """Build a handler applying ``action`` to every resolved target, one at a time."""

    async def handle(ctx: CommandContext) -> None:
        message = ctx.invocation.message
        context = message.context() if message is not None else None
        targets = resolve_targets(context, ctx.invocation.args)
        if not targets:
            await ctx.reply(usage)
            return
        delay_ms = getattr(ctx.config, delay_field)
        for target in targets:
            try:
                await ctx.socket.group_participants_update(ctx.chat_id, [target], action)
            except Exception as e:
                logger.error(f"[{ctx.record.session_id}] {action} error {target}: {e}")
                await ctx.reply(f"Could not {action} {jid_user(target)}")
            await ctx.pause(delay_ms)

    handle.__name__ = f"handle_{action}"
    return handle


# ─── Group settings ──────────────────────────────────────────────────


def setting_handler(setting: str, success: str, failure: str) -> Handler:
    async def handle(ctx: CommandContext) -> None:
        try:
            await ctx.socket.group_setting_update(ctx.chat_id, setting)
        except Exception as e:
            logger.error(f"[{ctx.record.session_id}] setting {setting} failed: {e}")
            await ctx.reply(failure)
            return
        await ctx.reply(success)

    handle.__name__ = f"handle_{setting}"
    return handle


async def handle_welcome(ctx: CommandContext) -> None:
    state = ctx.record.group(ctx.chat_id)
    state.welcome_enabled = ctx.invocation.arg_text.strip().lower() != "off"
    await ctx.reply(f"Welcome: {'ON' if state.welcome_enabled else 'OFF'}")


def welcome_text(participant: str, group_name: str) -> str:
    return f"Welcome @{jid_user(participant)} to {group_name}"


# ─── Table ───────────────────────────────────────────────────────────


def build_default_table() -> CommandTable:
    return CommandTable(
        [
            Command("menu", handle_menu, aliases=("d", "help"), usage="Menu"),
            Command(
                "tagall",
                handle_tagall,
                aliases=("tg",),
                usage="Tagall",
                requires_group=True,
                group_only_reply="Tagall only works in groups.",
            ),
            Command(
                "hidetag",
                handle_hidetag,
                aliases=("tm",),
                usage="Hidetag [text]",
                requires_group=True,
                text_only=True,
                group_only_reply="Hidetag only works in groups.",
            ),
            Command("del", handle_delete, aliases=("delete",), usage="Del    (reply)"),
            Command(
                "kickall",
                handle_kickall,
                usage="Kickall",
                requires_group=True,
                requires_admin=True,
                group_only_reply="Kickall only works in groups.",
            ),
            Command("qr", handle_qr, usage="Qr [text]"),
            Command(
                "kick",
                membership_handler(
                    MembershipAction.REMOVE,
                    "kick_delay_ms",
                    "Reply to or tag the user to kick, e.g. .kick @user",
                ),
                usage="Kick @number | reply",
                requires_group=True,
                requires_admin=True,
                group_only_reply="Kick only works in groups.",
            ),
            Command(
                "add",
                membership_handler(
                    MembershipAction.ADD,
                    "add_delay_ms",
                    "Numbers must be written without spaces, e.g. .add +50935492574",
                ),
                usage="Add 509XXXXXXXX | reply",
                requires_group=True,
                requires_admin=True,
                group_only_reply="Add only works in groups.",
            ),
            Command(
                "promote",
                membership_handler(
                    MembershipAction.PROMOTE,
                    "promote_delay_ms",
                    "Reply to or tag the user, e.g. .promote @user",
                ),
                usage="Promote @number | reply",
                requires_group=True,
                requires_admin=True,
                group_only_reply="Promote only works in groups.",
            ),
            Command(
                "demote",
                membership_handler(
                    MembershipAction.DEMOTE,
                    "demote_delay_ms",
                    "Reply to or tag the user, e.g. .demote @user",
                ),
                aliases=("delmote",),
                usage="Demote @number | reply",
                requires_group=True,
                requires_admin=True,
                group_only_reply="Demote only works in groups.",
            ),
            Command(
                "lock",
                setting_handler(
                    GroupSetting.ANNOUNCEMENT,
                    'Group locked: "admins only".',
                    "Could not lock the group.",
                ),
                aliases=("ferme",),
                usage="Lock",
                requires_group=True,
                requires_admin=True,
            ),
            Command(
                "unlock",
                setting_handler(
                    GroupSetting.NOT_ANNOUNCEMENT,
                    "Group unlocked.",
                    "Could not unlock the group.",
                ),
                aliases=("ouvert",),
                usage="Unlock",
                requires_group=True,
                requires_admin=True,
            ),
            Command(
                "welcome",
                handle_welcome,
                aliases=("bienvenue",),
                usage="Welcome | .welcome off",
                requires_group=True,
                group_only_reply="Welcome only works in groups.",
            ),
            Command("image", handle_image, aliases=("img",), usage="Image"),
            Command(
                "invisible",
                handle_invisible,
                aliases=("dh7",),
                requires_group=True,
                hidden=True,
                group_only_reply="Invisible mode only works in groups.",
            ),
        ]
    )
