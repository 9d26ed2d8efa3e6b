import asyncio
from types import SimpleNamespace

import pytest

import bot as bot_mod
import storage
import tickets
from errors import DependencyFailure, NotFound


class FakeResponse:
    def __init__(self):
        self.done = False

    async def defer(self, **kwargs):
        self.done = True

    def is_done(self):
        return self.done


def _submit(user_id=100, subject="  Refund  "):
    return SimpleNamespace(
        response=FakeResponse(),
        guild=SimpleNamespace(id=1),
        user=SimpleNamespace(id=user_id, name="bob", mention=f"<@{user_id}>", avatar=None),
        data={
            "custom_id": bot_mod.SUBJECT_MODAL_ID,
            "components": [
                {"type": 1, "components": [{"type": 4, "custom_id": bot_mod.SUBJECT_INPUT_ID, "value": subject}]}
            ],
        },
    )


def test_slugify_username():
    assert bot_mod.slugify_username("Bob The_Builder!!") == "bob-the-builder"
    assert bot_mod.slugify_username("***") == "user"


def test_modal_value():
    assert bot_mod.modal_value(_submit().data, bot_mod.SUBJECT_INPUT_ID) == "  Refund  "
    assert bot_mod.modal_value({"components": []}, bot_mod.SUBJECT_INPUT_ID) is None
    labelled = {"components": [{"type": 18, "component": {"custom_id": "ticket_subject", "value": "x"}}]}
    assert bot_mod.modal_value(labelled, "ticket_subject") == "x"


def test_is_staff():
    member = SimpleNamespace(roles=[SimpleNamespace(id=5), SimpleNamespace(id=9)])
    assert bot_mod.is_staff(member, "9")
    assert not bot_mod.is_staff(member, "7")
    assert not bot_mod.is_staff(member, "")


def test_dispatch_table_covers_components():
    assert set(bot_mod.INTERACTION_HANDLERS) == {
        bot_mod.OPEN_TICKET_ID,
        bot_mod.CLOSE_TICKET_ID,
        bot_mod.SUBJECT_MODAL_ID,
    }


def test_subject_submit_opens_ticket(db, monkeypatch):
    async def fake_open(guild, member, subject):
        return tickets.create_ticket(str(member.id), subject, "555", str(guild.id))

    monkeypatch.setattr(bot_mod.adapter, "open_ticket", fake_open)
    outcome = asyncio.run(bot_mod.handle_subject_submit(_submit()))
    assert outcome.ok
    assert outcome.message == "Ticket created: <#555> (Subject: **Refund**)"
    assert storage.find_open_ticket("100")["subject"] == "Refund"


def test_subject_submit_refuses_second_ticket(db, monkeypatch):
    tickets.create_ticket("100", "First", "900", "1")

    async def fail_open(guild, member, subject):
        pytest.fail("channel must not be allocated")

    monkeypatch.setattr(bot_mod.adapter, "open_ticket", fail_open)
    outcome = asyncio.run(bot_mod.handle_subject_submit(_submit()))
    assert not outcome.ok
    assert outcome.message == "You already have an open ticket: <#900>"


def test_subject_submit_platform_failure(db, monkeypatch):
    async def broken_open(guild, member, subject):
        raise DependencyFailure("rate limited")

    monkeypatch.setattr(bot_mod.adapter, "open_ticket", broken_open)
    outcome = asyncio.run(bot_mod.handle_subject_submit(_submit()))
    assert not outcome.ok
    assert outcome.message == "Something went wrong creating your ticket."


def _message(channel_id, content="hello", bot=False, attachments=()):
    return SimpleNamespace(
        author=SimpleNamespace(bot=bot, id=100, name="bob", avatar=None),
        guild=SimpleNamespace(id=1),
        channel=SimpleNamespace(id=channel_id),
        content=content,
        attachments=list(attachments),
    )


def test_channel_messages_are_logged(db):
    t = tickets.create_ticket("100", "Help", "900", "1")
    asyncio.run(bot_mod.on_message(_message(900)))
    asyncio.run(bot_mod.on_message(_message(900, "", attachments=[SimpleNamespace(url="https://cdn/x.png")])))

    msgs = storage.list_messages(t["id"])
    assert [m["message"] for m in msgs] == ["hello", "https://cdn/x.png"]
    assert msgs[0]["username"] == "bob"


def test_ignored_messages(db):
    t = tickets.create_ticket("100", "Help", "900", "1")
    asyncio.run(bot_mod.on_message(_message(900, bot=True)))
    asyncio.run(bot_mod.on_message(_message(901)))
    asyncio.run(bot_mod.on_message(_message(900, "")))
    tickets.mark_closed(t["id"])
    asyncio.run(bot_mod.on_message(_message(900)))
    assert storage.list_messages(t["id"]) == []


def _http_error(status=500, cls=None):
    cls = cls or bot_mod.discord.HTTPException
    return cls(SimpleNamespace(status=status, reason="error"), "request failed")


class FakeChannel:
    def __init__(self, channel_id, fail_send=False):
        self.id = channel_id
        self.fail_send = fail_send
        self.sent = []
        self.deleted = False

    async def send(self, content=None, **kwargs):
        if self.fail_send:
            raise _http_error()
        self.sent.append(content)

    async def delete(self, reason=None):
        self.deleted = True


class FakeUser:
    def __init__(self, user_id):
        self.id = user_id
        self.sent = []

    async def send(self, content):
        self.sent.append(content)


class FakeClient:
    def __init__(self, channels=(), users=()):
        self.channels = {c.id: c for c in channels}
        self.users = {u.id: u for u in users}

    def get_channel(self, channel_id):
        return self.channels.get(channel_id)

    async def fetch_channel(self, channel_id):
        raise _http_error(404, bot_mod.discord.NotFound)

    async def fetch_user(self, user_id):
        if user_id not in self.users:
            raise _http_error(404, bot_mod.discord.NotFound)
        return self.users[user_id]


class FakeFollowup:
    def __init__(self):
        self.sent = []

    async def send(self, content, **kwargs):
        self.sent.append(content)


def _member(user_id=100):
    return SimpleNamespace(id=user_id, name="bob", mention=f"<@{user_id}>", avatar=None, roles=[])


def test_intro_failure_rolls_back_ticket(db, monkeypatch):
    channel = FakeChannel(777, fail_send=True)
    adapter = bot_mod.DiscordAdapter(FakeClient())

    async def fake_allocate(guild, member):
        return channel

    monkeypatch.setattr(adapter, "allocate_channel", fake_allocate)
    with pytest.raises(DependencyFailure):
        asyncio.run(adapter.open_ticket(SimpleNamespace(id=1), _member(), "Refund"))
    assert channel.deleted
    assert storage.find_open_ticket("100") is None
    assert storage.get_ticket_by_channel("777") is None


def test_subject_submit_reports_intro_failure(db, monkeypatch):
    channel = FakeChannel(777, fail_send=True)

    async def fake_allocate(guild, member):
        return channel

    monkeypatch.setattr(bot_mod.adapter, "allocate_channel", fake_allocate)
    outcome = asyncio.run(bot_mod.handle_subject_submit(_submit()))
    assert not outcome.ok
    assert outcome.message == "Something went wrong creating your ticket."
    assert storage.find_open_ticket("100") is None


def test_staff_reply_is_chunked(db):
    t = tickets.create_ticket("100", "Help", "900", "1")
    channel = FakeChannel(900)
    adapter = bot_mod.DiscordAdapter(FakeClient(channels=[channel]))

    asyncio.run(adapter.send_staff_reply(t["id"], "al", "x" * 2500))
    assert len(channel.sent) == 2
    assert channel.sent[0].startswith("**al (Staff):** x")
    assert all(len(c) <= tickets.MAX_MESSAGE_LENGTH for c in channel.sent)


def test_staff_reply_missing_channel_fails(db):
    t = tickets.create_ticket("100", "Help", "900", "1")
    adapter = bot_mod.DiscordAdapter(FakeClient())
    with pytest.raises(DependencyFailure):
        asyncio.run(adapter.send_staff_reply(t["id"], "al", "hi"))


def test_staff_reply_unknown_ticket(db):
    adapter = bot_mod.DiscordAdapter(FakeClient())
    with pytest.raises(NotFound):
        asyncio.run(adapter.send_staff_reply(42, "al", "hi"))


def test_delete_channel(db):
    t = tickets.create_ticket("100", "Help", "900", "1")
    channel = FakeChannel(900)
    adapter = bot_mod.DiscordAdapter(FakeClient(channels=[channel]))
    assert asyncio.run(adapter.delete_ticket_channel(t["id"])) is True
    assert channel.sent == [bot_mod.DASHBOARD_CLOSED_NOTICE]
    assert channel.deleted


def test_delete_channel_already_gone(db):
    t = tickets.create_ticket("100", "Help", "900", "1")
    adapter = bot_mod.DiscordAdapter(FakeClient())
    assert asyncio.run(adapter.delete_ticket_channel(t["id"])) is False


def test_transcript_unknown_user(db):
    adapter = bot_mod.DiscordAdapter(FakeClient())
    with pytest.raises(NotFound):
        asyncio.run(adapter.send_transcript(1, "100", "t", "https://h/view/x"))


def test_transcript_chunks_are_sent(db):
    owner = FakeUser(100)
    adapter = bot_mod.DiscordAdapter(FakeClient(users=[owner]))
    transcript = "line\n" * 1000

    asyncio.run(adapter.send_transcript(3, "100", transcript, "https://h/view/x", subject="Refund"))
    assert owner.sent == tickets.transcript_messages(3, transcript, "https://h/view/x", "Refund")
    assert len(owner.sent) > 2
    assert "Subject: Refund" in owner.sent[0]


@pytest.fixture
def close_env(db, monkeypatch):
    """Ticket 900 owned by 100, a fake client knowing the owner, staff role 9."""
    monkeypatch.setattr(bot_mod.discord, "TextChannel", FakeChannel)
    monkeypatch.setattr(bot_mod.config, "STAFF_ROLE_ID", "9")
    owner = FakeUser(100)
    client = FakeClient(users=[owner])
    monkeypatch.setattr(bot_mod, "adapter", bot_mod.DiscordAdapter(client))
    ticket = tickets.create_ticket("100", "Refund", "900", "1")
    return SimpleNamespace(owner=owner, client=client, ticket=ticket)


def _close(user_id, channel, roles=()):
    return SimpleNamespace(
        id=1,
        response=FakeResponse(),
        followup=FakeFollowup(),
        user=SimpleNamespace(id=user_id, roles=[SimpleNamespace(id=r) for r in roles]),
        channel=channel,
    )


def test_close_button_rejects_stranger(close_env):
    channel = FakeChannel(900)
    outcome = asyncio.run(bot_mod.handle_close_ticket(_close(200, channel)))
    assert not outcome.ok
    assert outcome.message == "Only staff or the ticket owner can close this ticket."
    assert storage.get_ticket(close_env.ticket["id"])["status"] == "open"
    assert not channel.deleted


def test_close_button_by_staff(close_env):
    channel = FakeChannel(900)
    interaction = _close(200, channel, roles=[9])
    outcome = asyncio.run(bot_mod.handle_close_ticket(interaction))
    assert outcome.ok

    t = storage.get_ticket(close_env.ticket["id"])
    assert t["status"] == "closed"
    assert t["transcript_sent"] is True
    assert "Subject: Refund" in close_env.owner.sent[0]
    assert channel.sent == [bot_mod.CLOSED_NOTICE]
    assert channel.deleted
    assert interaction.followup.sent == ["Ticket has been marked as closed and this channel will be deleted."]


def test_close_button_dm_failure_keeps_flag(close_env):
    close_env.client.users.clear()
    channel = FakeChannel(900)
    outcome = asyncio.run(bot_mod.handle_close_ticket(_close(100, channel)))
    assert outcome.ok

    t = storage.get_ticket(close_env.ticket["id"])
    assert t["status"] == "closed"
    assert t["transcript_sent"] is False
    assert channel.deleted


def test_close_button_twice(close_env):
    asyncio.run(bot_mod.handle_close_ticket(_close(100, FakeChannel(900))))
    first = storage.get_ticket(close_env.ticket["id"])
    dms = list(close_env.owner.sent)

    outcome = asyncio.run(bot_mod.handle_close_ticket(_close(100, FakeChannel(900))))
    assert outcome.ok
    again = storage.get_ticket(close_env.ticket["id"])
    assert again["closed_at"] == first["closed_at"]
    assert again["public_token"] == first["public_token"]
    assert close_env.owner.sent == dms


def test_close_button_outside_ticket_channel(close_env):
    outcome = asyncio.run(bot_mod.handle_close_ticket(_close(100, SimpleNamespace(id=900))))
    assert not outcome.ok
    assert outcome.message == "This interaction can only be used in a ticket channel."
