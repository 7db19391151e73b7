"""Tests for agent-to-agent channels: direct messages, groups and the global chat."""
import pytest

from helpdesk.domain.models import Role
from helpdesk.realtime.rooms import GLOBAL_ROOM, group_room


async def _agents(gateway, count):
    return [await gateway.users.create(f"Agente {i}", Role.AGENT) for i in range(1, count + 1)]


class TestDirectMessages:
    """Tests for DM threads between two agents."""

    @pytest.mark.asyncio
    async def test_thread_is_shared_and_emitted_once(self, event_router, gateway, hub, connect):
        """Agents 9 and 5 both land in dm:5-9 and each sees the message once."""
        agents = await _agents(gateway, 9)
        five, nine = agents[4], agents[8]
        cid_nine, ws_nine = await connect(nine.id, "agent", nine.name)
        cid_five, ws_five = await connect(five.id, "agent", five.name)

        await event_router.dispatch(cid_nine, "agent:dm:join", {"otherAgentId": five.id})
        assert ws_nine.last("agent:dm:history") == {"threadId": "dm:5-9", "messages": []}
        await event_router.dispatch(cid_five, "agent:dm:join", {"otherAgentId": nine.id})
        assert hub.rooms.members_of("dm:5-9") == {cid_nine, cid_five}

        await event_router.dispatch(cid_nine, "agent:dm:message", {"toAgentId": five.id, "content": "hola"})

        for socket in (ws_nine, ws_five):
            [message] = socket.events("agent:dm:message")
            assert message["threadId"] == "dm:5-9"
            assert message["senderId"] == nine.id
            assert message["senderName"] == "Agente 9"

    @pytest.mark.asyncio
    async def test_message_reaches_recipient_outside_thread_room(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, _ = await connect(ana.id, "agent", ana.name)
        _, ws_bruno = await connect(bruno.id, "agent", bruno.name)

        await event_router.dispatch(cid_ana, "agent:dm:message", {"toAgentId": bruno.id, "content": "¿libre?"})
        assert ws_bruno.last("agent:dm:message")["content"] == "¿libre?"

    @pytest.mark.asyncio
    async def test_dm_to_client_is_ignored(self, event_router, gateway, connect):
        ana, = await _agents(gateway, 1)
        client = await gateway.users.create("Laura", Role.CLIENT)
        cid, socket = await connect(ana.id, "agent", ana.name)
        await event_router.dispatch(cid, "agent:dm:message", {"toAgentId": client.id, "content": "hola"})
        assert socket.events("agent:dm:message") == []
        assert await gateway.direct_messages.recent(ana.id, client.id) == []

    @pytest.mark.asyncio
    async def test_typing(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, _ = await connect(ana.id, "agent", "Ana")
        _, ws_bruno = await connect(bruno.id, "agent", "Bruno")
        await event_router.dispatch(cid_ana, "agent:dm:typing", {"toAgentId": bruno.id, "isTyping": True})
        assert ws_bruno.last("agent:dm:typing") == {
            "threadId": "dm:1-2", "userId": ana.id, "userName": "Ana", "isTyping": True,
        }

    @pytest.mark.asyncio
    async def test_clients_cannot_use_dms(self, event_router, gateway, connect):
        client = await gateway.users.create("Laura", Role.CLIENT)
        cid, socket = await connect(client.id, "client", "Laura")
        await event_router.dispatch(cid, "agent:dm:join", {"otherAgentId": 2})
        assert socket.events("agent:dm:history") == []


class TestUnreadBacklog:
    """Tests for unread counts pushed on authentication."""

    @pytest.mark.asyncio
    async def test_backlog_counts_missed_messages(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, _ = await connect(ana.id, "agent", "Ana")
        await event_router.dispatch(cid_ana, "group:create", {"name": "Turno noche", "memberIds": [bruno.id]})
        await event_router.dispatch(cid_ana, "agent:dm:message", {"toAgentId": bruno.id, "content": "hola"})
        await event_router.dispatch(cid_ana, "group:message", {"groupId": 1, "content": "reunion"})
        await event_router.dispatch(cid_ana, "global:message", {"content": "buenos dias"})

        cid_bruno, ws_bruno = await connect(bruno.id, "agent", "Bruno")
        assert ws_bruno.last("agent:unread-counts") == {
            "dm": [{"threadId": "dm:1-2", "otherAgentId": ana.id, "unread": 1}],
            "groups": [{"groupId": 1, "unread": 1}],
            "global": 1,
        }

        await event_router.dispatch(cid_bruno, "agent:dm:join", {"otherAgentId": ana.id})
        await event_router.dispatch(cid_bruno, "group:join", {"groupId": 1})
        await event_router.dispatch(cid_bruno, "global:mark-read", {})
        await event_router.disconnect(cid_bruno)

        _, ws_again = await connect(bruno.id, "agent", "Bruno")
        assert ws_again.last("agent:unread-counts") == {"dm": [], "groups": [], "global": 0}

    @pytest.mark.asyncio
    async def test_own_messages_are_never_unread(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, _ = await connect(ana.id, "agent", "Ana")
        await event_router.dispatch(cid_ana, "global:message", {"content": "hola"})
        await event_router.disconnect(cid_ana)

        _, ws_ana = await connect(ana.id, "agent", "Ana")
        assert ws_ana.last("agent:unread-counts")["global"] == 0


class TestGroups:
    """Tests for group management and group messages."""

    @pytest.mark.asyncio
    async def test_create_adds_online_members_to_room(self, event_router, gateway, hub, connect):
        ana, bruno, carla = await _agents(gateway, 3)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        cid_bruno, ws_bruno = await connect(bruno.id, "agent", "Bruno")

        await event_router.dispatch(cid_ana, "group:create", {"name": "Escalados", "memberIds": [bruno.id, carla.id]})

        group = ws_ana.last("group:created")
        assert group["name"] == "Escalados"
        assert group["createdBy"] == ana.id
        assert sorted(m["id"] for m in group["members"]) == [ana.id, bruno.id, carla.id]
        assert ws_bruno.last("group:added")["id"] == group["id"]
        assert hub.rooms.members_of(group_room(group["id"])) == {cid_ana, cid_bruno}

        await event_router.dispatch(cid_bruno, "group:message", {"groupId": group["id"], "content": "listo"})
        assert ws_ana.last("group:message")["content"] == "listo"
        assert ws_bruno.last("group:message")["senderName"] == "Agente 2"

    @pytest.mark.asyncio
    async def test_create_requires_name(self, event_router, gateway, connect):
        ana, = await _agents(gateway, 1)
        cid, socket = await connect(ana.id, "agent", "Ana")
        await event_router.dispatch(cid, "group:create", {"name": "  "})
        assert socket.last("error") == {"message": "Group name is required", "event": "group:create"}

    @pytest.mark.asyncio
    async def test_add_members(self, event_router, gateway, hub, connect):
        ana, bruno, carla = await _agents(gateway, 3)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        cid_carla, ws_carla = await connect(carla.id, "agent", "Carla")
        await event_router.dispatch(cid_ana, "group:create", {"name": "Equipo", "memberIds": [bruno.id]})
        group_id = ws_ana.last("group:created")["id"]

        await event_router.dispatch(cid_ana, "group:add-members", {"groupId": group_id, "memberIds": [carla.id]})

        assert ws_carla.last("group:added")["id"] == group_id
        members = ws_ana.last("group:members")
        assert members["groupId"] == group_id
        assert sorted(m["id"] for m in members["members"]) == [ana.id, bruno.id, carla.id]
        assert cid_carla in hub.rooms.members_of(group_room(group_id))

    @pytest.mark.asyncio
    async def test_unknown_and_client_ids_are_not_added(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        client = await gateway.users.create("Laura", Role.CLIENT)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")

        await event_router.dispatch(cid_ana, "group:create", {"name": "Equipo", "memberIds": [999, client.id]})
        group = ws_ana.last("group:created")
        assert [m["id"] for m in group["members"]] == [ana.id]
        assert not await gateway.groups.is_member(group["id"], 999)

        await event_router.dispatch(
            cid_ana, "group:add-members", {"groupId": group["id"], "memberIds": [1000, client.id, bruno.id]}
        )
        members = ws_ana.last("group:members")
        assert sorted(m["id"] for m in members["members"]) == [ana.id, bruno.id]
        assert not await gateway.groups.is_member(group["id"], client.id)
        assert not await gateway.groups.is_member(group["id"], 1000)

    @pytest.mark.asyncio
    async def test_non_member_cannot_add_or_post(self, event_router, gateway, connect):
        ana, bruno, carla = await _agents(gateway, 3)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        cid_carla, ws_carla = await connect(carla.id, "agent", "Carla")
        await event_router.dispatch(cid_ana, "group:create", {"name": "Equipo", "memberIds": []})
        group_id = ws_ana.last("group:created")["id"]

        await event_router.dispatch(cid_carla, "group:add-members", {"groupId": group_id, "memberIds": [carla.id]})
        assert ws_carla.last("error") == {"message": "Not a member of this group", "event": "group:add-members"}

        await event_router.dispatch(cid_carla, "group:message", {"groupId": group_id, "content": "hola"})
        assert await gateway.group_messages.recent(group_id) == []

    @pytest.mark.asyncio
    async def test_remove_member_rules(self, event_router, gateway, hub, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        cid_bruno, ws_bruno = await connect(bruno.id, "agent", "Bruno")
        await event_router.dispatch(cid_ana, "group:create", {"name": "Equipo", "memberIds": [bruno.id]})
        group_id = ws_ana.last("group:created")["id"]

        await event_router.dispatch(cid_bruno, "group:remove-member", {"groupId": group_id, "memberId": ana.id})
        assert ws_bruno.last("error")["message"] == "Only the group creator can remove members"

        await event_router.dispatch(cid_ana, "group:remove-member", {"groupId": group_id, "memberId": ana.id})
        assert ws_ana.last("error")["message"] == "The group creator cannot be removed"

        await event_router.dispatch(cid_ana, "group:remove-member", {"groupId": group_id, "memberId": bruno.id})
        assert ws_bruno.last("group:removed") == {"groupId": group_id}
        assert [m["id"] for m in ws_ana.last("group:members")["members"]] == [ana.id]
        assert cid_bruno not in hub.rooms.members_of(group_room(group_id))
        assert not await gateway.groups.is_member(group_id, bruno.id)

    @pytest.mark.asyncio
    async def test_join_sends_history_and_members(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        await event_router.dispatch(cid_ana, "group:create", {"name": "Equipo", "memberIds": [bruno.id]})
        group_id = ws_ana.last("group:created")["id"]
        await event_router.dispatch(cid_ana, "group:message", {"groupId": group_id, "content": "uno"})

        cid_bruno, ws_bruno = await connect(bruno.id, "agent", "Bruno")
        await event_router.dispatch(cid_bruno, "group:list", {})
        assert [g["id"] for g in ws_bruno.last("group:list")] == [group_id]

        await event_router.dispatch(cid_bruno, "group:join", {"groupId": group_id})
        history = ws_bruno.last("group:history")
        assert [m["content"] for m in history["messages"]] == ["uno"]
        assert len(ws_bruno.last("group:members")["members"]) == 2

        await event_router.dispatch(cid_bruno, "group:leave", {"groupId": group_id})
        await event_router.dispatch(cid_ana, "group:message", {"groupId": group_id, "content": "dos"})
        assert [m["content"] for m in ws_bruno.events("group:message")] == []


class TestGlobalChat:
    """Tests for the team-wide chat."""

    @pytest.mark.asyncio
    async def test_join_message_and_users(self, event_router, gateway, hub, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        cid_bruno, ws_bruno = await connect(bruno.id, "agent", "Bruno")

        await event_router.dispatch(cid_ana, "global:join", {})
        assert ws_ana.last("global:history") == []
        assert ws_ana.last("global:users") == [{"id": ana.id, "name": "Ana", "role": "agent"}]

        await event_router.dispatch(cid_ana, "global:message", {"content": "hola equipo"})
        assert ws_ana.last("global:message")["content"] == "hola equipo"
        assert ws_bruno.events("global:message") == []

        await event_router.dispatch(cid_bruno, "global:join", {})
        assert [m["content"] for m in ws_bruno.last("global:history")] == ["hola equipo"]
        assert [u["id"] for u in ws_ana.last("global:users")] == [ana.id, bruno.id]

        await event_router.dispatch(cid_bruno, "global:leave", {})
        assert hub.rooms.members_of(GLOBAL_ROOM) == {cid_ana}
        assert [u["id"] for u in ws_ana.last("global:users")] == [ana.id]

    @pytest.mark.asyncio
    async def test_typing_excludes_sender(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        cid_bruno, ws_bruno = await connect(bruno.id, "agent", "Bruno")
        await event_router.dispatch(cid_ana, "global:join", {})
        await event_router.dispatch(cid_bruno, "global:join", {})

        await event_router.dispatch(cid_ana, "global:typing", {"isTyping": True})
        assert ws_bruno.last("global:typing") == {"userId": ana.id, "userName": "Ana", "isTyping": True}
        assert ws_ana.events("global:typing") == []

    @pytest.mark.asyncio
    async def test_disconnect_refreshes_global_users(self, event_router, gateway, connect):
        ana, bruno = await _agents(gateway, 2)
        cid_ana, ws_ana = await connect(ana.id, "agent", "Ana")
        cid_bruno, _ = await connect(bruno.id, "agent", "Bruno")
        await event_router.dispatch(cid_ana, "global:join", {})
        await event_router.dispatch(cid_bruno, "global:join", {})

        await event_router.disconnect(cid_bruno)
        assert ws_ana.last("global:users") == [{"id": ana.id, "name": "Ana", "role": "agent"}]

    @pytest.mark.asyncio
    async def test_clients_cannot_post(self, event_router, gateway, connect):
        client = await gateway.users.create("Laura", Role.CLIENT)
        cid, _ = await connect(client.id, "client", "Laura")
        await event_router.dispatch(cid, "global:message", {"content": "hola"})
        assert await gateway.global_messages.recent() == []
