"""
Unit tests for the Command Dispatcher and its handlers.
"""

import asyncio

import pytest

from chatwarden.commands.assets import AssetSender
from chatwarden.commands.dispatcher import CommandDispatcher
from chatwarden.commands.handlers import CommandTable, build_default_table
from chatwarden.config import Config
from chatwarden.jobs import RecurringJob
from chatwarden.protocol.base import GroupParticipantsUpdate, GroupSetting, MembershipAction
from chatwarden.protocol.messages import (
    STATUS_BROADCAST,
    Conversation,
    DeleteContent,
    ImageContent,
    InboundMessage,
    MessageKey,
    TextContent,
)
from chatwarden.session.record import SessionRecord
from chatwarden.session.registry import SessionRegistry

from helpers import GROUP, FakeSocket, SleepRecorder, jid, make_group, make_message, wait_for

ADMIN = jid(1)
MEMBER = jid(2)
OTHER = jid(3)


class CountingTable(CommandTable):
    def __init__(self):
        super().__init__(list(build_default_table()))
        self.lookups = 0

    def lookup(self, name):
        self.lookups += 1
        return super().lookup(name)


class DispatcherTestBase:
    config = Config()

    def setup_method(self):
        self.registry = SessionRegistry()
        self.socket = FakeSocket()
        self.socket.groups[GROUP] = make_group(admins=[ADMIN], members=[MEMBER, OTHER])
        self.record = SessionRecord(session_id="s1", storage_key="auth_info1")
        self.record.connection = self.socket
        self.registry.register(self.record)

        self.fetches = 0

        async def fetch(url, timeout):
            self.fetches += 1
            return b"IMG"

        self.sleep = SleepRecorder()
        self.table = CountingTable()
        self.dispatcher = CommandDispatcher(
            self.registry,
            config=self.config,
            assets=AssetSender("https://example.invalid/a.jpg", fetch=fetch),
            table=self.table,
            sleep=self.sleep,
        )

    async def send(self, text, **kwargs):
        await self.dispatcher.dispatch("s1", make_message(text, **kwargs))

    def replies(self):
        return [content for _, content in self.socket.sent]

    def captions(self):
        out = []
        for content in self.replies():
            if isinstance(content, ImageContent):
                out.append(content.caption)
            elif isinstance(content, TextContent):
                out.append(content.text)
        return out


class TestFiltering(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_unknown_command_is_silent(self):
        await self.send(".nosuchcommand")
        assert self.socket.sent == []

    @pytest.mark.asyncio
    async def test_status_broadcast_ignored(self):
        await self.send(".menu", chat=STATUS_BROADCAST)
        assert self.socket.sent == []
        assert self.table.lookups == 0

    @pytest.mark.asyncio
    async def test_empty_message_ignored(self):
        await self.dispatcher.dispatch("s1", InboundMessage(key=MessageKey(GROUP)))
        assert self.socket.sent == []

    @pytest.mark.asyncio
    async def test_unknown_session_ignored(self):
        await self.dispatcher.dispatch("missing", make_message(".menu"))
        assert self.socket.sent == []

    @pytest.mark.asyncio
    async def test_no_connection_drops_command(self):
        self.record.connection = None
        await self.send(".menu")
        assert self.socket.sent == []

    @pytest.mark.asyncio
    async def test_dispatch_never_raises(self):
        self.socket.failures["send_message"] = lambda *args: True
        await self.send(".menu")
        assert self.socket.sent == []


class TestGating(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_non_admin_kick_is_denied_without_mutation(self):
        await self.send(".kick", sender=MEMBER, mentions=[OTHER])
        assert self.socket.ops("group_participants_update") == []
        assert len(self.socket.sent) == 1
        assert "not a group admin" in self.captions()[0]

    @pytest.mark.asyncio
    async def test_admin_check_uses_fresh_metadata(self):
        await self.send(".lock", sender=ADMIN)
        await self.send(".unlock", sender=ADMIN)
        assert len(self.socket.ops("group_metadata")) == 2

    @pytest.mark.asyncio
    async def test_metadata_failure_counts_as_not_admin(self):
        self.socket.groups.clear()
        await self.send(".lock", sender=ADMIN)
        assert self.socket.ops("group_setting_update") == []
        assert "not a group admin" in self.captions()[0]

    @pytest.mark.asyncio
    async def test_group_only_command_in_direct_chat(self):
        await self.send(".tagall", chat=jid(9))
        assert len(self.socket.sent) == 1
        assert "only works in groups" in self.captions()[0]
        assert self.socket.ops("group_metadata") == []


class TestSuppression(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_active_job_makes_group_command_deaf(self):
        async def tick():
            pass

        state = self.record.group(GROUP)
        state.job = RecurringJob("test", 3600, tick)
        state.job.start()

        await self.send(".tagall", sender=ADMIN)
        await self.send(".kickall", sender=ADMIN)
        assert self.table.lookups == 0
        assert self.socket.sent == []
        assert self.record.cancel_jobs() == 1

    @pytest.mark.asyncio
    async def test_other_groups_unaffected(self):
        async def tick():
            pass

        state = self.record.group("999@g.us")
        state.job = RecurringJob("test", 3600, tick)
        state.job.start()

        await self.send(".menu")
        assert self.table.lookups == 1
        assert len(self.socket.sent) == 1
        self.record.cancel_jobs()


class TestInvisible(DispatcherTestBase):
    config = Config(job_period_ms=10)

    @pytest.mark.asyncio
    async def test_starts_job_and_suppresses(self):
        await self.send(".invisible")
        assert self.record.job_active(GROUP)
        assert "Invisible mode active." in self.captions()[0]

        placeholder = self.config.job_placeholder
        await wait_for(lambda: self.captions().count(placeholder) >= 2)

        lookups = self.table.lookups
        await self.send(".menu")
        assert self.table.lookups == lookups

        assert self.record.cancel_jobs() == 1
        assert not self.record.job_active(GROUP)

    @pytest.mark.asyncio
    async def test_ticks_skip_while_disconnected(self):
        await self.send(".dh7")
        self.record.connection = None
        sent = len(self.socket.sent)
        await asyncio.sleep(0.05)
        assert len(self.socket.sent) == sent
        assert self.record.job_active(GROUP)
        self.record.cancel_jobs()

    @pytest.mark.asyncio
    async def test_requires_group(self):
        await self.send(".invisible", chat=jid(9))
        assert self.record.groups == {}


class TestMentions(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_tagall_lists_everyone_in_order(self):
        await self.send(".tg")
        content = self.replies()[0]
        assert isinstance(content, ImageContent)
        assert content.mentions == (ADMIN, MEMBER, OTHER)
        assert "●@1\n○@2\n○@3" in content.caption

    @pytest.mark.asyncio
    async def test_tagall_metadata_failure(self):
        self.socket.groups.clear()
        await self.send(".tagall")
        assert len(self.socket.sent) == 1
        assert "could not fetch" in self.captions()[0]

    @pytest.mark.asyncio
    async def test_hidetag_sends_text_without_asset(self):
        await self.send(".hidetag hello   all")
        assert self.replies() == [
            TextContent(text="hello all", mentions=(ADMIN, MEMBER, OTHER))
        ]
        assert self.fetches == 0

    @pytest.mark.asyncio
    async def test_hidetag_requires_text(self):
        await self.send(".tm")
        assert isinstance(self.replies()[0], TextContent)
        assert "Usage" in self.captions()[0]
        assert self.fetches == 0

    @pytest.mark.asyncio
    async def test_hidetag_denial_is_text_only(self):
        await self.send(".hidetag hi", chat=jid(9))
        assert isinstance(self.replies()[0], TextContent)
        assert self.fetches == 0


class TestPurge(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_kickall_removes_non_admins_then_renames(self):
        await self.send(".kickall", sender=ADMIN)
        assert self.socket.ops("group_participants_update") == [
            (GROUP, [MEMBER], MembershipAction.REMOVE),
            (GROUP, [OTHER], MembershipAction.REMOVE),
        ]
        assert self.sleep.delays == [3.0, 3.0]
        assert self.socket.ops("group_update_subject") == [(GROUP, "Warden")]
        # Gating metadata is reused by the handler.
        assert len(self.socket.ops("group_metadata")) == 1

    @pytest.mark.asyncio
    async def test_kickall_continues_after_failure(self):
        self.socket.failures["group_participants_update"] = lambda g, p, a: p == [MEMBER]
        await self.send(".kickall", sender=ADMIN)
        assert len(self.socket.ops("group_participants_update")) == 2
        assert self.sleep.delays == [3.0, 3.0]
        assert self.socket.ops("group_update_subject") == [(GROUP, "Warden")]

    @pytest.mark.asyncio
    async def test_kickall_rename_failure_replies(self):
        self.socket.failures["group_update_subject"] = lambda *args: True
        await self.send(".kickall", sender=ADMIN)
        assert "could not be renamed" in self.captions()[-1]
        assert "group_update_subject failed" not in self.captions()[-1]


class TestMembership(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_kick_mentions_in_order(self):
        await self.send(".kick", sender=ADMIN, mentions=[OTHER, MEMBER], reply_to=ADMIN)
        assert self.socket.ops("group_participants_update") == [
            (GROUP, [OTHER], MembershipAction.REMOVE),
            (GROUP, [MEMBER], MembershipAction.REMOVE),
        ]
        assert self.sleep.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_kick_reply_target(self):
        await self.send(".kick", sender=ADMIN, reply_to=OTHER)
        assert self.socket.ops("group_participants_update") == [
            (GROUP, [OTHER], MembershipAction.REMOVE)
        ]

    @pytest.mark.asyncio
    async def test_add_reports_failed_target_and_continues(self):
        failing = jid(222)
        self.socket.failures["group_participants_update"] = lambda g, p, a: p == [failing]
        await self.send(".add 222 +111", sender=ADMIN)
        assert self.socket.ops("group_participants_update") == [
            (GROUP, [failing], MembershipAction.ADD),
            (GROUP, [jid(111)], MembershipAction.ADD),
        ]
        assert self.captions() == ["*Warden*\nCould not add 222"]
        assert self.sleep.delays == [0.8, 0.8]

    @pytest.mark.asyncio
    async def test_promote_without_targets_shows_usage(self):
        await self.send(".promote", sender=ADMIN)
        assert self.socket.ops("group_participants_update") == []
        assert ".promote @user" in self.captions()[0]

    @pytest.mark.asyncio
    async def test_demote_alias(self):
        await self.send(".delmote", sender=ADMIN, mentions=[MEMBER])
        assert self.socket.ops("group_participants_update") == [
            (GROUP, [MEMBER], MembershipAction.DEMOTE)
        ]


class TestGroupSettings(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_lock_and_unlock(self):
        await self.send(".ferme", sender=ADMIN)
        await self.send(".ouvert", sender=ADMIN)
        assert self.socket.ops("group_setting_update") == [
            (GROUP, GroupSetting.ANNOUNCEMENT),
            (GROUP, GroupSetting.NOT_ANNOUNCEMENT),
        ]

    @pytest.mark.asyncio
    async def test_lock_failure_reply(self):
        self.socket.failures["group_setting_update"] = lambda *args: True
        await self.send(".lock", sender=ADMIN)
        assert "Could not lock the group." in self.captions()[0]


class TestDelete(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_deletes_replied_message(self):
        await self.send(".del", reply_to=OTHER, stanza_id="Q9")
        assert self.replies() == [
            DeleteContent(key=MessageKey(GROUP, "Q9", False, OTHER))
        ]

    @pytest.mark.asyncio
    async def test_requires_reply(self):
        await self.send(".delete")
        assert len(self.socket.sent) == 1
        assert "Reply to a message" in self.captions()[0]

    @pytest.mark.asyncio
    async def test_delete_failure_reply(self):
        self.socket.failures["send_message"] = lambda j, c: isinstance(c, DeleteContent)
        await self.send(".del", reply_to=OTHER, stanza_id="Q9")
        assert "Could not delete" in self.captions()[-1]


class TestWelcome(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_toggle(self):
        await self.send(".welcome")
        assert self.record.group(GROUP).welcome_enabled
        await self.send(".bienvenue OFF")
        assert not self.record.group(GROUP).welcome_enabled
        assert self.captions()[-1].endswith("Welcome: OFF")

    @pytest.mark.asyncio
    async def test_new_participants_are_welcomed(self):
        self.record.group(GROUP).welcome_enabled = True
        await self.dispatcher.on_participants_update(
            "s1", GroupParticipantsUpdate(GROUP, (jid(9),), MembershipAction.ADD)
        )
        content = self.replies()[0]
        assert content.mentions == (jid(9),)
        assert "@9" in content.caption
        assert "Test Group" in content.caption

    @pytest.mark.asyncio
    async def test_disabled_or_removal_is_ignored(self):
        await self.dispatcher.on_participants_update(
            "s1", GroupParticipantsUpdate(GROUP, (jid(9),), MembershipAction.ADD)
        )
        self.record.group(GROUP).welcome_enabled = True
        await self.dispatcher.on_participants_update(
            "s1", GroupParticipantsUpdate(GROUP, (jid(9),), MembershipAction.REMOVE)
        )
        assert self.socket.calls == []

    @pytest.mark.asyncio
    async def test_hook_failure_is_not_fatal(self):
        self.record.group(GROUP).welcome_enabled = True
        self.socket.groups.clear()
        await self.dispatcher.on_participants_update(
            "s1", GroupParticipantsUpdate(GROUP, (jid(9),), MembershipAction.ADD)
        )
        assert self.socket.sent == []


class TestInformational(DispatcherTestBase):
    @pytest.mark.asyncio
    async def test_menu(self):
        await self.send("help", chat=jid(9))
        caption = self.captions()[0]
        assert "Owner: Owner" in caption
        assert "Tagall" in caption
        assert "nvisible" not in caption
        assert self.replies()[0].data == b"IMG"

    @pytest.mark.asyncio
    async def test_image(self):
        await self.send(".img")
        assert isinstance(self.replies()[0], ImageContent)

    @pytest.mark.asyncio
    async def test_qr_renders_png(self):
        await self.send(".qr hello world")
        content = self.replies()[0]
        assert isinstance(content, ImageContent)
        assert content.data.startswith(b"\x89PNG")
        assert content.caption.endswith("hello world")

    @pytest.mark.asyncio
    async def test_qr_requires_text(self):
        await self.send(".qr")
        assert "Usage" in self.captions()[0]

    @pytest.mark.asyncio
    async def test_caption_commands_are_parsed(self):
        message = InboundMessage(key=MessageKey(jid(9)), contents=(Conversation("  .MENU "),))
        await self.dispatcher.dispatch("s1", message)
        assert len(self.socket.sent) == 1
