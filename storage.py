import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import config

DB_PATH = config.DB_PATH


def ensure_data_dir():
    d = os.path.dirname(DB_PATH)
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


def get_conn() -> sqlite3.Connection:
    ensure_data_dir()
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def connection() -> Iterator[sqlite3.Connection]:
    """One connection per operation: commit on success, always close."""
    conn = get_conn()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def utcnow() -> str:
    """ISO-8601 UTC timestamp with milliseconds, e.g. 2024-05-01T12:00:00.123Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def init_db():
    with connection() as conn:
        cur = conn.cursor()
        # people who logged into the dashboard or wrote in a ticket
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                discord_user_id TEXT PRIMARY KEY,
                username TEXT,
                avatar TEXT
            )
            """
        )
        # dashboard access grants; no row means no access
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS staff_users (
                discord_user_id TEXT PRIMARY KEY,
                role TEXT NOT NULL, -- 'staff' | 'super_admin'
                is_super_admin INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                discord_user_id TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
            """
        )
        # one open ticket per owner is checked by query, not by constraint
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tickets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subject TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open', -- 'open' | 'closed'
                priority TEXT NOT NULL DEFAULT 'medium', -- 'low' | 'medium' | 'high'
                discord_user_id TEXT NOT NULL,
                discord_channel_id TEXT,
                discord_guild_id TEXT,
                public_token TEXT UNIQUE,
                transcript_sent INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                closed_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tickets_channel ON tickets(discord_channel_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tickets_owner ON tickets(discord_user_id, status)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ticket_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ticket_id INTEGER NOT NULL REFERENCES tickets(id),
                discord_user_id TEXT,
                message TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_messages_ticket ON ticket_messages(ticket_id)")


# ---------------------------------------------------------------- users


def upsert_user(discord_user_id: str, username: Optional[str], avatar: Optional[str]):
    with connection() as conn:
        conn.execute(
            """
            INSERT INTO users(discord_user_id, username, avatar) VALUES (?,?,?)
            ON CONFLICT(discord_user_id) DO UPDATE SET
                username = excluded.username,
                avatar = excluded.avatar
            """,
            (str(discord_user_id), username, avatar),
        )


def get_user(discord_user_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute(
            "SELECT discord_user_id, username, avatar FROM users WHERE discord_user_id = ?",
            (str(discord_user_id),),
        ).fetchone()
    return dict(row) if row else None


def list_users_with_grants() -> List[Dict[str, Any]]:
    with connection() as conn:
        rows = conn.execute(
            """
            SELECT u.discord_user_id AS discordId,
                   u.username,
                   u.avatar,
                   s.role,
                   s.is_super_admin
            FROM users u
            LEFT JOIN staff_users s ON s.discord_user_id = u.discord_user_id
            ORDER BY u.username ASC
            """
        ).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------- staff grants


def get_staff_grant(discord_user_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute(
            "SELECT discord_user_id, role, is_super_admin FROM staff_users WHERE discord_user_id = ?",
            (str(discord_user_id),),
        ).fetchone()
    return dict(row) if row else None


def count_staff() -> int:
    with connection() as conn:
        row = conn.execute("SELECT COUNT(*) FROM staff_users").fetchone()
    return int(row[0]) if row else 0


def upsert_staff_grant(discord_user_id: str, role: str, is_super_admin: bool):
    with connection() as conn:
        conn.execute(
            """
            INSERT INTO staff_users(discord_user_id, role, is_super_admin) VALUES (?,?,?)
            ON CONFLICT(discord_user_id) DO UPDATE SET
                role = excluded.role,
                is_super_admin = excluded.is_super_admin
            """,
            (str(discord_user_id), role, 1 if is_super_admin else 0),
        )


def delete_staff_grant(discord_user_id: str):
    with connection() as conn:
        conn.execute("DELETE FROM staff_users WHERE discord_user_id = ?", (str(discord_user_id),))


# ---------------------------------------------------------------- sessions


def create_session(session_id: str, discord_user_id: str, created_at: int):
    with connection() as conn:
        conn.execute(
            "INSERT INTO sessions(id, discord_user_id, created_at) VALUES (?,?,?)",
            (session_id, str(discord_user_id), created_at),
        )


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute(
            "SELECT id, discord_user_id, created_at FROM sessions WHERE id = ?",
            (session_id,),
        ).fetchone()
    return dict(row) if row else None


def delete_session(session_id: str):
    with connection() as conn:
        conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))


def delete_sessions_before(cutoff: int) -> int:
    with connection() as conn:
        cur = conn.execute("DELETE FROM sessions WHERE created_at < ?", (cutoff,))
        return cur.rowcount


# ---------------------------------------------------------------- settings


def get_settings() -> Dict[str, Optional[str]]:
    with connection() as conn:
        rows = conn.execute("SELECT key, value FROM settings").fetchall()
    return {r["key"]: r["value"] for r in rows}


def set_setting(key: str, value: str):
    with connection() as conn:
        conn.execute(
            """
            INSERT INTO settings(key, value) VALUES (?,?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )


# ---------------------------------------------------------------- tickets


def _ticket(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    t = dict(row)
    if "transcript_sent" in t:
        t["transcript_sent"] = bool(t["transcript_sent"])
    return t


def find_open_ticket(discord_user_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute(
            "SELECT * FROM tickets WHERE discord_user_id = ? AND status = 'open' LIMIT 1",
            (str(discord_user_id),),
        ).fetchone()
    return _ticket(row)


def insert_ticket(
    subject: str,
    discord_user_id: str,
    channel_id: Optional[str],
    guild_id: Optional[str],
    priority: str = "medium",
    created_at: Optional[str] = None,
) -> int:
    with connection() as conn:
        cur = conn.execute(
            """
            INSERT INTO tickets(subject, status, priority, discord_user_id, discord_channel_id,
                                discord_guild_id, created_at)
            VALUES (?, 'open', ?, ?, ?, ?, ?)
            """,
            (
                subject,
                priority,
                str(discord_user_id),
                str(channel_id) if channel_id is not None else None,
                str(guild_id) if guild_id is not None else None,
                created_at or utcnow(),
            ),
        )
        return int(cur.lastrowid)


def get_ticket(ticket_id: int) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
    return _ticket(row)


def get_ticket_by_channel(channel_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute(
            "SELECT * FROM tickets WHERE discord_channel_id = ? ORDER BY id DESC LIMIT 1",
            (str(channel_id),),
        ).fetchone()
    return _ticket(row)


def get_ticket_by_token(token: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute(
            "SELECT id, subject, status, created_at, closed_at FROM tickets WHERE public_token = ?",
            (token,),
        ).fetchone()
    return dict(row) if row else None


def list_tickets() -> List[Dict[str, Any]]:
    with connection() as conn:
        rows = conn.execute(
            """
            SELECT id, subject, status, priority, discord_user_id, discord_channel_id, created_at
            FROM tickets
            ORDER BY created_at DESC, id DESC
            """
        ).fetchall()
    return [dict(r) for r in rows]


def ticket_stats() -> Dict[str, int]:
    with connection() as conn:
        row = conn.execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN status = 'open' THEN 1 ELSE 0 END), 0) AS open_tickets,
                COALESCE(SUM(CASE WHEN status = 'closed' THEN 1 ELSE 0 END), 0) AS closed_tickets,
                COUNT(*) AS total_tickets
            FROM tickets
            """
        ).fetchone()
    return {k: int(row[k]) for k in ("open_tickets", "closed_tickets", "total_tickets")}


def update_priority(ticket_id: int, priority: str) -> int:
    with connection() as conn:
        cur = conn.execute("UPDATE tickets SET priority = ? WHERE id = ?", (priority, ticket_id))
        return cur.rowcount


def mark_closed(ticket_id: int, closed_at: str, public_token: str) -> int:
    # COALESCE keeps an already issued token: it never changes once set
    with connection() as conn:
        cur = conn.execute(
            """
            UPDATE tickets
            SET status = 'closed',
                closed_at = ?,
                public_token = COALESCE(public_token, ?)
            WHERE id = ?
            """,
            (closed_at, public_token, ticket_id),
        )
        return cur.rowcount


def mark_transcript_sent(ticket_id: int):
    with connection() as conn:
        conn.execute("UPDATE tickets SET transcript_sent = 1 WHERE id = ?", (ticket_id,))


def delete_ticket(ticket_id: int) -> int:
    with connection() as conn:
        conn.execute("DELETE FROM ticket_messages WHERE ticket_id = ?", (ticket_id,))
        cur = conn.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,))
        return cur.rowcount


# ---------------------------------------------------------------- messages


def insert_message(
    ticket_id: int, discord_user_id: Optional[str], message: str, created_at: Optional[str] = None
) -> Dict[str, Any]:
    created_at = created_at or utcnow()
    with connection() as conn:
        cur = conn.execute(
            "INSERT INTO ticket_messages(ticket_id, discord_user_id, message, created_at) VALUES (?,?,?,?)",
            (ticket_id, str(discord_user_id) if discord_user_id is not None else None, message, created_at),
        )
        message_id = int(cur.lastrowid)
    return {
        "id": message_id,
        "ticket_id": ticket_id,
        "discord_user_id": str(discord_user_id) if discord_user_id is not None else None,
        "message": message,
        "created_at": created_at,
    }


def list_messages(ticket_id: int) -> List[Dict[str, Any]]:
    with connection() as conn:
        rows = conn.execute(
            """
            SELECT tm.id, tm.discord_user_id, tm.message, tm.created_at, u.username
            FROM ticket_messages tm
            LEFT JOIN users u ON u.discord_user_id = tm.discord_user_id
            WHERE tm.ticket_id = ?
            ORDER BY tm.created_at ASC, tm.id ASC
            """,
            (ticket_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def delete_message(ticket_id: int, message_id: int) -> int:
    with connection() as conn:
        cur = conn.execute(
            "DELETE FROM ticket_messages WHERE id = ? AND ticket_id = ?",
            (message_id, ticket_id),
        )
        return cur.rowcount
