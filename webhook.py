"""Internal HTTP webhook served by the bot process.

The dashboard backend calls these routes; they are not meant to be
exposed to browsers. Each route runs a coroutine of the Discord adapter
on the bot's event loop through ``run``.
"""
import logging
import time
from typing import Any, Awaitable, Callable

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from errors import InvalidArgument, TicketError

log = logging.getLogger("ticketdesk.webhook")


def create_webhook_app(adapter, run: Callable[[Awaitable[Any]], Any]) -> Flask:
    app = Flask(__name__)
    started = time.monotonic()

    @app.errorhandler(TicketError)
    def _ticket_error(e: TicketError):
        if e.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.path, e.message)
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(Exception)
    def _unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        log.exception("%s %s failed", request.method, request.path)
        return jsonify({"error": "Server error"}), 500

    def _body():
        return request.get_json(silent=True) or {}

    def _ticket_id(value) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidArgument("ticketId must be an integer")

    @app.get("/health")
    def health():
        return jsonify({"ok": True, "uptime": time.monotonic() - started})

    @app.post("/staff-reply")
    def staff_reply():
        data = _body()
        ticket_id = data.get("ticketId")
        message = data.get("message")
        if not ticket_id or not message:
            raise InvalidArgument("ticketId and message are required")
        run(adapter.send_staff_reply(_ticket_id(ticket_id), data.get("staffUsername") or "Staff", message))
        return jsonify({"success": True})

    @app.post("/ticket-transcript")
    def ticket_transcript():
        data = _body()
        required = ("ticketId", "discordUserId", "transcript", "viewUrl")
        if not all(data.get(k) for k in required):
            raise InvalidArgument("ticketId, discordUserId, transcript, and viewUrl are required")
        run(
            adapter.send_transcript(
                _ticket_id(data["ticketId"]), str(data["discordUserId"]), data["transcript"], data["viewUrl"]
            )
        )
        return jsonify({"success": True})

    @app.post("/ticket-delete-channel")
    def ticket_delete_channel():
        data = _body()
        if not data.get("ticketId"):
            raise InvalidArgument("ticketId required")
        deleted = run(adapter.delete_ticket_channel(_ticket_id(data["ticketId"])))
        if not deleted:
            return jsonify({"success": True, "warning": "Channel not found"})
        return jsonify({"success": True})

    return app
