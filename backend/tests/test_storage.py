"""Tests for the DuckDB-backed persistence gateway."""
from datetime import timedelta

import pytest

from helpdesk.domain.models import ChatChannel, ChatStatus, MessageStatus, Role
from helpdesk.storage import PersistenceGateway, thread_id

from conftest import FakeClock


async def _seed(gateway):
    client = await gateway.users.create("Laura", Role.CLIENT)
    agent = await gateway.users.create("Ana", Role.AGENT)
    other = await gateway.users.create("Bruno", Role.AGENT)
    return client, agent, other


class TestUsers:
    """Tests for user lookup and find-or-create."""

    @pytest.mark.asyncio
    async def test_find_or_create_returns_existing_by_id(self, gateway):
        client, _, _ = await _seed(gateway)
        found = await gateway.users.find_or_create("Otro", Role.CLIENT, user_id=client.id)
        assert found.id == client.id
        assert found.name == "Laura"

    @pytest.mark.asyncio
    async def test_find_or_create_by_whatsapp_id(self, gateway):
        first = await gateway.users.find_or_create("WA", Role.CLIENT, whatsapp_id="573001112233")
        again = await gateway.users.find_or_create("WA 2", Role.CLIENT, whatsapp_id="573001112233")
        assert first.id == again.id
        assert again.whatsappId == "573001112233"

    @pytest.mark.asyncio
    async def test_find_or_create_unknown_id_creates(self, gateway):
        created = await gateway.users.find_or_create("Nuevo", Role.CLIENT, user_id=999)
        assert created.id != 999
        assert created.role == Role.CLIENT

    @pytest.mark.asyncio
    async def test_online_flag(self, gateway):
        _, agent, _ = await _seed(gateway)
        await gateway.users.update_online_status(agent.id, True)
        assert (await gateway.users.find_by_id(agent.id)).isOnline is True
        await gateway.users.update_online_status(agent.id, False)
        assert (await gateway.users.find_by_id(agent.id)).isOnline is False

    @pytest.mark.asyncio
    async def test_find_by_role_sorted_by_name(self, gateway):
        await _seed(gateway)
        agents = await gateway.users.find_by_role(Role.AGENT)
        assert [a.name for a in agents] == ["Ana", "Bruno"]


class TestChats:
    """Tests for chat lifecycle updates."""

    @pytest.mark.asyncio
    async def test_create_defaults(self, gateway):
        client, _, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        assert chat.status == ChatStatus.PENDING
        assert chat.agentId is None
        assert chat.subject == "Soporte"
        assert chat.channel == ChatChannel.WEB
        assert chat.clientName == "Laura"

    @pytest.mark.asyncio
    async def test_assign_only_pending(self, gateway):
        """The second assign loses and leaves the first agent in place."""
        client, agent, other = await _seed(gateway)
        chat = await gateway.chats.create(client.id)

        assigned = await gateway.chats.assign(chat.id, agent.id)
        assert assigned.status == ChatStatus.ACTIVE
        assert assigned.agentId == agent.id
        assert assigned.assignedAt is not None
        assert assigned.agentName == "Ana"

        again = await gateway.chats.assign(chat.id, other.id)
        assert again.agentId == agent.id

    @pytest.mark.asyncio
    async def test_transfer_requires_current_agent(self, gateway):
        client, agent, other = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        await gateway.chats.assign(chat.id, agent.id)

        untouched = await gateway.chats.transfer(chat.id, other.id, other.id)
        assert untouched.agentId == agent.id

        moved = await gateway.chats.transfer(chat.id, agent.id, other.id)
        assert moved.agentId == other.id
        assert moved.status == ChatStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_close_and_reopen(self, gateway):
        client, agent, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        await gateway.chats.assign(chat.id, agent.id)

        closed = await gateway.chats.update_status(chat.id, ChatStatus.ACTIVE, ChatStatus.CLOSED)
        assert closed.status == ChatStatus.CLOSED
        assert closed.closedAt is not None

        reopened = await gateway.chats.reopen(chat.id)
        assert reopened.status == ChatStatus.PENDING
        assert reopened.agentId is None
        assert reopened.closedAt is None
        assert reopened.assignedAt is None

    @pytest.mark.asyncio
    async def test_update_status_guarded_by_expected(self, gateway):
        client, agent, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        await gateway.chats.assign(chat.id, agent.id)

        stale = await gateway.chats.update_status(chat.id, ChatStatus.ON_HOLD, ChatStatus.ACTIVE)
        assert stale.status == ChatStatus.ACTIVE
        held = await gateway.chats.update_status(chat.id, ChatStatus.ACTIVE, ChatStatus.ON_HOLD)
        assert held.status == ChatStatus.ON_HOLD

    @pytest.mark.asyncio
    async def test_pending_queue_oldest_first(self, gateway):
        client, agent, _ = await _seed(gateway)
        first = await gateway.chats.create(client.id, subject="uno")
        second = await gateway.chats.create(client.id, subject="dos")
        third = await gateway.chats.create(client.id, subject="tres")
        await gateway.chats.assign(second.id, agent.id)

        pending = await gateway.chats.find_pending()
        assert [c.id for c in pending] == [first.id, third.id]

    @pytest.mark.asyncio
    async def test_active_chats_carry_unread_and_last_message(self, gateway):
        client, agent, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        await gateway.chats.assign(chat.id, agent.id)
        await gateway.messages.create(chat.id, client.id, "hola")
        await gateway.messages.create(chat.id, client.id, "sigo aqui")
        await gateway.messages.create(chat.id, agent.id, "buenas")

        [mine] = await gateway.chats.find_active_by_agent_id(agent.id)
        assert mine.unreadCount == 2
        assert mine.lastMessage == "buenas"

    @pytest.mark.asyncio
    async def test_closed_history_metrics(self, gateway):
        client, agent, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        await gateway.chats.assign(chat.id, agent.id)
        await gateway.chats.set_first_response_time(chat.id)
        await gateway.chats.set_first_response_time(chat.id)
        await gateway.chats.update_status(chat.id, ChatStatus.ACTIVE, ChatStatus.CLOSED)

        [closed] = await gateway.chats.find_closed_by_agent_id(agent.id)
        assert closed.firstResponseSeconds == 1
        assert closed.durationSeconds is not None and closed.durationSeconds > 0

    @pytest.mark.asyncio
    async def test_latest_whatsapp_chat(self, gateway):
        client, _, _ = await _seed(gateway)
        await gateway.chats.create(client.id, channel=ChatChannel.WHATSAPP)
        latest = await gateway.chats.create(client.id, channel=ChatChannel.WHATSAPP)
        await gateway.chats.create(client.id)

        found = await gateway.chats.find_latest_by_client_and_channel(client.id, ChatChannel.WHATSAPP)
        assert found.id == latest.id

    @pytest.mark.asyncio
    async def test_submit_survey(self, gateway):
        client, _, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        rated = await gateway.chats.submit_survey(chat.id, 5, "Excelente")
        assert rated.rating == 5
        assert rated.feedback == "Excelente"


class TestMessages:
    """Tests for chat messages and their delivery status."""

    @pytest.mark.asyncio
    async def test_status_never_regresses(self, gateway):
        client, agent, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        message = await gateway.messages.create(chat.id, client.id, "hola")
        assert message.status == MessageStatus.SENT

        read = await gateway.messages.update_status(message.id, MessageStatus.READ)
        assert read.status == MessageStatus.READ
        assert read.isRead is True

        late = await gateway.messages.update_status(message.id, MessageStatus.DELIVERED)
        assert late.status == MessageStatus.READ

    @pytest.mark.asyncio
    async def test_mark_read_in_chat_returns_changed_ids(self, gateway):
        client, agent, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        await gateway.chats.assign(chat.id, agent.id)
        first = await gateway.messages.create(chat.id, client.id, "uno")
        await gateway.messages.create(chat.id, agent.id, "respuesta")
        second = await gateway.messages.create(chat.id, client.id, "dos")

        assert await gateway.messages.unread_count(chat.id, agent.id) == 2
        changed = await gateway.messages.mark_read_in_chat(chat.id, agent.id)
        assert changed == [first.id, second.id]
        assert await gateway.messages.unread_count(chat.id, agent.id) == 0
        assert await gateway.messages.mark_read_in_chat(chat.id, agent.id) == []

    @pytest.mark.asyncio
    async def test_history_ties_break_by_id(self):
        """Messages written in the same instant keep insertion order."""
        frozen = FakeClock(step=timedelta(0))
        store = PersistenceGateway(":memory:", clock=frozen)
        try:
            client = await store.users.create("Laura", Role.CLIENT)
            chat = await store.chats.create(client.id)
            ids = [(await store.messages.create(chat.id, client.id, f"m{i}")).id for i in range(4)]
            history = await store.messages.find_by_chat_id(chat.id)
            assert [m.id for m in history] == ids
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_reply_carries_quoted_content(self, gateway):
        client, agent, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id)
        original = await gateway.messages.create(chat.id, client.id, "pregunta")
        reply = await gateway.messages.create(chat.id, agent.id, "respuesta", reply_to_id=original.id)
        assert reply.replyToContent == "pregunta"
        assert reply.replyToSenderRole == Role.CLIENT
        assert reply.senderRole == Role.AGENT

    @pytest.mark.asyncio
    async def test_external_id_roundtrip(self, gateway):
        client, _, _ = await _seed(gateway)
        chat = await gateway.chats.create(client.id, channel=ChatChannel.WHATSAPP)
        message = await gateway.messages.create(chat.id, client.id, "hola", channel=ChatChannel.WHATSAPP)
        await gateway.messages.update_external_id(message.id, "wamid.abc")

        found = await gateway.messages.find_by_external_id("wamid.abc")
        assert found.id == message.id
        assert found.channel == ChatChannel.WHATSAPP

        delivered = await gateway.messages.update_status_by_external_id("wamid.abc", MessageStatus.DELIVERED)
        assert delivered.status == MessageStatus.DELIVERED
        assert await gateway.messages.update_status_by_external_id("wamid.missing", MessageStatus.READ) is None


class TestGroups:
    """Tests for group membership and group messages."""

    @pytest.mark.asyncio
    async def test_creator_is_member(self, gateway):
        _, agent, other = await _seed(gateway)
        group = await gateway.groups.create("Soporte N2", agent.id, [other.id, other.id])
        assert group.createdBy == agent.id
        assert sorted(m.id for m in group.members) == [agent.id, other.id]
        assert await gateway.groups.is_member(group.id, agent.id)

    @pytest.mark.asyncio
    async def test_add_members_returns_only_new(self, gateway):
        client, agent, other = await _seed(gateway)
        group = await gateway.groups.create("Equipo", agent.id, [])
        added = await gateway.groups.add_members(group.id, [agent.id, other.id], agent.id)
        assert added == [other.id]
        assert await gateway.groups.add_members(group.id, [other.id], agent.id) == []

    @pytest.mark.asyncio
    async def test_only_existing_agents_become_members(self, gateway):
        client, agent, other = await _seed(gateway)
        group = await gateway.groups.create("Equipo", agent.id, [999, client.id, other.id])
        assert sorted(m.id for m in group.members) == [agent.id, other.id]
        assert not await gateway.groups.is_member(group.id, 999)
        assert not await gateway.groups.is_member(group.id, client.id)

        assert await gateway.groups.add_members(group.id, [1000, client.id], agent.id) == []
        assert not await gateway.groups.is_member(group.id, 1000)

    @pytest.mark.asyncio
    async def test_remove_member_and_list(self, gateway):
        _, agent, other = await _seed(gateway)
        group = await gateway.groups.create("Equipo", agent.id, [other.id])
        await gateway.groups.remove_member(group.id, other.id)
        assert not await gateway.groups.is_member(group.id, other.id)
        assert await gateway.groups.list_for_user(other.id) == []
        assert [g.id for g in await gateway.groups.list_for_user(agent.id)] == [group.id]

    @pytest.mark.asyncio
    async def test_recent_keeps_newest_in_ascending_order(self, gateway):
        _, agent, _ = await _seed(gateway)
        group = await gateway.groups.create("Equipo", agent.id, [])
        for i in range(5):
            await gateway.group_messages.create(group.id, agent.id, f"m{i}")

        recent = await gateway.group_messages.recent(group.id, limit=3)
        assert [m.content for m in recent] == ["m2", "m3", "m4"]
        assert recent[0].senderName == "Ana"


class TestDirectAndGlobal:
    """Tests for DM threads and the global chat."""

    def test_thread_id_is_symmetric(self):
        assert thread_id(9, 5) == thread_id(5, 9) == "dm:5-9"

    @pytest.mark.asyncio
    async def test_dm_history_shared_by_both_sides(self, gateway):
        _, agent, other = await _seed(gateway)
        await gateway.direct_messages.create(agent.id, other.id, "hola")
        await gateway.direct_messages.create(other.id, agent.id, "que tal")

        mine = await gateway.direct_messages.recent(agent.id, other.id)
        theirs = await gateway.direct_messages.recent(other.id, agent.id)
        assert [m.content for m in mine] == ["hola", "que tal"]
        assert [m.id for m in mine] == [m.id for m in theirs]
        assert mine[0].threadId == thread_id(agent.id, other.id)

    @pytest.mark.asyncio
    async def test_global_recent(self, gateway):
        _, agent, other = await _seed(gateway)
        await gateway.global_messages.create(agent.id, "buenos dias")
        await gateway.global_messages.create(other.id, "hola equipo")
        recent = await gateway.global_messages.recent(limit=1)
        assert [m.content for m in recent] == ["hola equipo"]
        assert recent[0].senderName == "Bruno"


class TestReadWatermarks:
    """Tests for per-user watermarks and unread counts."""

    @pytest.mark.asyncio
    async def test_dm_unread_counts_only_others(self, gateway):
        _, agent, other = await _seed(gateway)
        await gateway.direct_messages.create(agent.id, other.id, "uno")
        await gateway.direct_messages.create(agent.id, other.id, "dos")
        await gateway.direct_messages.create(other.id, agent.id, "mio")

        counts = await gateway.reads.dm_unread_counts(other.id)
        assert counts == [
            {"threadId": thread_id(agent.id, other.id), "otherAgentId": agent.id, "unread": 2}
        ]

        await gateway.reads.mark_dm_read(other.id, agent.id)
        assert await gateway.reads.dm_unread_counts(other.id) == []

    @pytest.mark.asyncio
    async def test_watermark_never_moves_back(self, gateway, clock):
        _, agent, other = await _seed(gateway)
        await gateway.global_messages.create(agent.id, "uno")
        await gateway.reads.mark_global_read(other.id)
        assert await gateway.reads.global_unread_count(other.id) == 0

        await gateway.reads.mark_global_read(other.id, at=clock.now - timedelta(days=1))
        assert await gateway.reads.global_unread_count(other.id) == 0

        await gateway.global_messages.create(agent.id, "dos")
        assert await gateway.reads.global_unread_count(other.id) == 1

    @pytest.mark.asyncio
    async def test_group_unread_only_for_member_groups(self, gateway):
        client, agent, other = await _seed(gateway)
        shared = await gateway.groups.create("Compartido", agent.id, [other.id])
        private = await gateway.groups.create("Privado", agent.id, [])
        await gateway.group_messages.create(shared.id, agent.id, "hola")
        await gateway.group_messages.create(private.id, agent.id, "secreto")

        assert await gateway.reads.group_unread_counts(other.id) == [{"groupId": shared.id, "unread": 1}]
        await gateway.reads.mark_group_read(other.id, shared.id)
        assert await gateway.reads.group_unread_counts(other.id) == []
