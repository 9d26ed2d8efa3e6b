"""Ticket lifecycle: open -> closed, with transcripts and public tokens.

The functions here are shared by the bot (tickets opened and closed from
Discord) and the dashboard (staff replies, priority, closing, deletion).
Chat-platform side effects go through a relay object with the methods
``staff_reply``, ``send_transcript`` and ``delete_channel``; a relay of
``None`` means the side channel is disabled.
"""
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import config
import storage
from errors import Conflict, DependencyFailure, Forbidden, InvalidArgument, NotFound

log = logging.getLogger("ticketdesk.tickets")

PRIORITIES = ("low", "medium", "high")
DEFAULT_PRIORITY = "medium"
DEFAULT_SUBJECT = "New Ticket"
SUBJECT_MAX_LENGTH = 100

# Discord message ceiling, and room kept for the ``` markers around a chunk
MAX_MESSAGE_LENGTH = 2000
CODE_BLOCK_HEADROOM = 10

UNKNOWN_USER = "Unknown user"
EMPTY_TRANSCRIPT = "No messages in this ticket."


@dataclass
class CloseResult:
    ticket: Dict[str, Any]
    transcript: str
    view_url: str
    already_closed: bool = False


def new_public_token() -> str:
    # 24 random bytes, hex encoded
    return secrets.token_hex(24)


def public_view_url(token: str, frontend_origin: Optional[str] = None) -> str:
    return f"{(frontend_origin or config.FRONTEND_ORIGIN).rstrip('/')}/view/{token}"


def get_ticket_or_404(ticket_id: int) -> Dict[str, Any]:
    ticket = storage.get_ticket(ticket_id)
    if not ticket:
        raise NotFound("Ticket not found")
    return ticket


def clean_subject(raw: Optional[str]) -> str:
    subject = (raw or "").strip()[:SUBJECT_MAX_LENGTH]
    return subject or DEFAULT_SUBJECT


def create_ticket(
    owner_id: str,
    subject: str,
    channel_id: Optional[str],
    guild_id: Optional[str],
) -> Dict[str, Any]:
    """Insert an open ticket for ``owner_id`` bound to an allocated channel.

    The open-ticket check is a plain query followed by an insert; two
    concurrent calls for the same owner can both pass it. Callers check
    once before allocating the channel and this re-checks just before
    the insert.
    """
    existing = storage.find_open_ticket(owner_id)
    if existing:
        raise Conflict(f"You already have an open ticket: <#{existing['discord_channel_id']}>")
    ticket_id = storage.insert_ticket(
        clean_subject(subject), owner_id, channel_id, guild_id, priority=DEFAULT_PRIORITY
    )
    log.info("ticket %s opened by %s in channel %s", ticket_id, owner_id, channel_id)
    return storage.get_ticket(ticket_id)


def can_close(actor_id: str, actor_is_staff: bool, ticket: Dict[str, Any]) -> bool:
    return actor_is_staff or str(actor_id) == str(ticket["discord_user_id"])


def post_message(
    ticket_id: int,
    author_id: str,
    body: Optional[str],
    author_is_staff: bool = False,
    author_name: Optional[str] = None,
    relay=None,
) -> Dict[str, Any]:
    text = (body or "").strip()
    if not text:
        raise InvalidArgument("Message is required")
    ticket = get_ticket_or_404(ticket_id)
    if ticket["status"] == "closed" and not author_is_staff:
        raise Forbidden("Ticket is closed")

    msg = storage.insert_message(ticket_id, author_id, text)
    msg["username"] = author_name

    # Staff replies come from the dashboard and must reach the channel
    if author_is_staff and relay is not None:
        try:
            relay.staff_reply(ticket_id, author_name or "Staff", text)
        except DependencyFailure:
            log.exception("failed to relay staff reply for ticket %s", ticket_id)
    return msg


def set_priority(ticket_id: int, priority: Optional[str]):
    if priority not in PRIORITIES:
        raise InvalidArgument("Invalid priority")
    if storage.update_priority(ticket_id, priority) == 0:
        raise NotFound("Ticket not found")


def format_transcript_line(message: Dict[str, Any]) -> str:
    ts = message.get("created_at") or ""
    name = message.get("username") or UNKNOWN_USER
    return f"[{ts}] {name}: {message.get('message', '')}"


def build_transcript(messages: Iterable[Dict[str, Any]]) -> str:
    lines = [format_transcript_line(m) for m in messages]
    if not lines:
        return EMPTY_TRANSCRIPT
    return "\n".join(lines)


def chunk_text(text: str, size: int = MAX_MESSAGE_LENGTH - CODE_BLOCK_HEADROOM) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def transcript_messages(
    ticket_id: int, transcript: str, view_url: str, subject: Optional[str] = None
) -> List[str]:
    """DM payloads for a closed ticket: header, then code-block chunks."""
    header = f"Your support ticket #{ticket_id} has been closed.\n"
    if subject:
        header += f"Subject: {subject}\n"
    header += (
        f"\nYou can view this ticket online here:\n{view_url}\n\n"
        "Transcript (may be split across multiple messages):\n"
    )
    parts = [header[:MAX_MESSAGE_LENGTH]]
    parts.extend(f"```{chunk}```" for chunk in chunk_text(transcript))
    return parts


def mark_closed(ticket_id: int, frontend_origin: Optional[str] = None) -> CloseResult:
    """Persist the close and render the transcript; no platform side effects.

    Closing twice is a no-op: the second call keeps ``closed_at`` and the
    public token and reports ``already_closed``.
    """
    ticket = get_ticket_or_404(ticket_id)
    already_closed = ticket["status"] == "closed"
    if not already_closed:
        storage.mark_closed(ticket_id, storage.utcnow(), new_public_token())
        ticket = storage.get_ticket(ticket_id)
        log.info("ticket %s closed", ticket_id)
    elif not ticket.get("public_token"):
        # rows closed by older code may lack a token
        storage.mark_closed(ticket_id, ticket["closed_at"] or storage.utcnow(), new_public_token())
        ticket = storage.get_ticket(ticket_id)

    transcript = build_transcript(storage.list_messages(ticket_id))
    return CloseResult(
        ticket=ticket,
        transcript=transcript,
        view_url=public_view_url(ticket["public_token"], frontend_origin),
        already_closed=already_closed,
    )


def close_ticket(ticket_id: int, relay=None, frontend_origin: Optional[str] = None) -> CloseResult:
    """Close from the dashboard: persist, DM the transcript, drop the channel.

    The DM and the channel deletion are best effort; the ticket stays
    closed if either fails.
    """
    result = mark_closed(ticket_id, frontend_origin)
    if result.already_closed or relay is None:
        return result

    ticket = result.ticket
    try:
        relay.send_transcript(ticket_id, ticket["discord_user_id"], result.transcript, result.view_url)
    except DependencyFailure:
        log.exception("failed to deliver transcript for ticket %s", ticket_id)
    else:
        storage.mark_transcript_sent(ticket_id)
        ticket["transcript_sent"] = True

    try:
        relay.delete_channel(ticket_id)
    except DependencyFailure:
        log.exception("failed to delete channel for ticket %s", ticket_id)
    return result


def delete_ticket(ticket_id: int):
    if storage.delete_ticket(ticket_id) == 0:
        raise NotFound("Ticket not found")
    log.info("ticket %s deleted", ticket_id)


def delete_message(ticket_id: int, message_id: int):
    if storage.delete_message(ticket_id, message_id) == 0:
        raise NotFound("Message not found")
