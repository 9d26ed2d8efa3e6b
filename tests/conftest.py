import pytest

import access
import storage
from dashboard import create_app
from errors import DependencyFailure


class FakeRelay:
    """Stands in for the bot webhook; records calls, fails on demand."""

    def __init__(self):
        self.calls = []
        self.fail = set()

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise DependencyFailure(f"{name} failed")
        return {"success": True}

    def staff_reply(self, ticket_id, staff_username, message):
        return self._record("staff_reply", ticket_id, staff_username, message)

    def send_transcript(self, ticket_id, discord_user_id, transcript, view_url):
        return self._record("send_transcript", ticket_id, discord_user_id, transcript, view_url)

    def delete_channel(self, ticket_id):
        return self._record("delete_channel", ticket_id)

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "DB_PATH", str(tmp_path / "tickets.sqlite"))
    storage.init_db()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def app(db, relay):
    return create_app(
        {
            "TESTING": True,
            "BOT_RELAY": relay,
            "FRONTEND_ORIGIN": "https://help.example.com",
            "UPDATE_FEED_URL": "",
            "APP_VERSION": "1.2.0",
        }
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(discord_id, username=None, level=None):
        storage.upsert_user(discord_id, username or f"user{discord_id}", None)
        if level:
            storage.upsert_staff_grant(discord_id, level, level == "super_admin")
        sid = access.open_session(discord_id)
        with client.session_transaction() as s:
            s["sid"] = sid
        return sid

    return _login


@pytest.fixture
def open_ticket(db):
    def _open(owner="100", subject="Billing issue", channel="900"):
        storage.upsert_user(owner, f"owner{owner}", None)
        return storage.get_ticket(storage.insert_ticket(subject, owner, channel, "1"))

    return _open
