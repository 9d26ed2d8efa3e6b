import asyncio

import pytest

from errors import DependencyFailure, NotFound
from webhook import create_webhook_app


class FakeAdapter:
    def __init__(self):
        self.calls = []
        self.error = None
        self.channel_exists = True

    async def send_staff_reply(self, ticket_id, staff_username, text):
        self.calls.append(("staff_reply", ticket_id, staff_username, text))
        if self.error:
            raise self.error

    async def send_transcript(self, ticket_id, user_id, transcript, view_url):
        self.calls.append(("transcript", ticket_id, user_id, transcript, view_url))
        if self.error:
            raise self.error

    async def delete_ticket_channel(self, ticket_id):
        self.calls.append(("delete", ticket_id))
        if self.error:
            raise self.error
        return self.channel_exists


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def hook(adapter):
    return create_webhook_app(adapter, asyncio.run).test_client()


def test_health(hook):
    data = hook.get("/health").get_json()
    assert data["ok"] is True
    assert data["uptime"] >= 0


def test_staff_reply(hook, adapter):
    resp = hook.post("/staff-reply", json={"ticketId": 3, "message": "hello"})
    assert resp.get_json() == {"success": True}
    assert adapter.calls == [("staff_reply", 3, "Staff", "hello")]


def test_staff_reply_missing_fields(hook, adapter):
    assert hook.post("/staff-reply", json={"ticketId": 3}).status_code == 400
    assert adapter.calls == []


def test_staff_reply_delivery_failure(hook, adapter):
    adapter.error = DependencyFailure("channel gone")
    resp = hook.post("/staff-reply", json={"ticketId": 3, "staffUsername": "al", "message": "x"})
    assert resp.status_code == 500


def test_transcript(hook, adapter):
    payload = {"ticketId": 3, "discordUserId": "55", "transcript": "t", "viewUrl": "https://h/view/x"}
    assert hook.post("/ticket-transcript", json=payload).status_code == 200
    assert adapter.calls == [("transcript", 3, "55", "t", "https://h/view/x")]


def test_transcript_unknown_user(hook, adapter):
    adapter.error = NotFound("Discord user not found")
    payload = {"ticketId": 3, "discordUserId": "55", "transcript": "t", "viewUrl": "u"}
    resp = hook.post("/ticket-transcript", json=payload)
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Discord user not found"}


def test_transcript_missing_fields(hook):
    assert hook.post("/ticket-transcript", json={"ticketId": 3}).status_code == 400


def test_delete_channel(hook, adapter):
    assert hook.post("/ticket-delete-channel", json={"ticketId": 3}).get_json() == {"success": True}


def test_delete_channel_already_gone(hook, adapter):
    adapter.channel_exists = False
    resp = hook.post("/ticket-delete-channel", json={"ticketId": 3})
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "warning": "Channel not found"}


@pytest.mark.parametrize(
    "path, payload",
    [
        ("/staff-reply", {"ticketId": "abc", "message": "x"}),
        ("/ticket-transcript", {"ticketId": "abc", "discordUserId": "55", "transcript": "t", "viewUrl": "u"}),
        ("/ticket-delete-channel", {"ticketId": ["3"]}),
    ],
)
def test_non_numeric_ticket_id(hook, adapter, path, payload):
    resp = hook.post(path, json=payload)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "ticketId must be an integer"}
    assert adapter.calls == []


def test_unexpected_error_is_500(hook, adapter):
    adapter.error = RuntimeError("boom")
    resp = hook.post("/ticket-delete-channel", json={"ticketId": 3})
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Server error"}
