import logging
import secrets
import sqlite3
from datetime import timedelta
from functools import wraps
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests
from flask import Flask, g, jsonify, redirect, request, session
from werkzeug.exceptions import HTTPException

import access
import config
import storage
import tickets
import updates
from access import AUTHENTICATED, PUBLIC, STAFF, SUPER_ADMIN
from errors import TicketError
from relay import BotRelay

log = logging.getLogger("ticketdesk.dashboard")

DISCORD_API = "https://discord.com/api/v10"
DISCORD_AUTHORIZE_URL = "https://discord.com/oauth2/authorize"


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)

    app.secret_key = config.DASHBOARD_SECRET_KEY
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_MAX_AGE_SECONDS=config.SESSION_MAX_AGE_SECONDS,
        PERMANENT_SESSION_LIFETIME=timedelta(seconds=config.SESSION_MAX_AGE_SECONDS),
        FRONTEND_ORIGIN=config.FRONTEND_ORIGIN,
        DISCORD_CLIENT_ID=config.DISCORD_CLIENT_ID,
        DISCORD_CLIENT_SECRET=config.DISCORD_CLIENT_SECRET,
        OAUTH_REDIRECT_URI=config.OAUTH_REDIRECT_URI,
        APP_VERSION=config.APP_VERSION,
        UPDATE_FEED_URL=config.UPDATE_FEED_URL,
        BOT_RELAY=BotRelay(config.BOT_URL, config.BOT_RELAY_TIMEOUT) if config.BOT_URL else None,
    )
    if overrides:
        app.config.update(overrides)

    if not app.config["DISCORD_CLIENT_ID"] or not app.config["DISCORD_CLIENT_SECRET"]:
        log.warning("DISCORD_CLIENT_ID and DISCORD_CLIENT_SECRET are not set; login will fail")
    if app.config["BOT_RELAY"] is None:
        log.warning("BOT_URL is not set; staff replies and transcripts will not reach Discord")

    storage.init_db()

    @app.before_request
    def _load_identity():
        # resolved once per request, never cached across requests
        g.identity = access.resolve_identity(session.get("sid"), app.config["SESSION_MAX_AGE_SECONDS"])

    @app.errorhandler(TicketError)
    def _ticket_error(e: TicketError):
        if e.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.path, e.message)
            return jsonify({"error": "Server error"}), 500
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(sqlite3.Error)
    def _db_error(e: sqlite3.Error):
        log.exception("%s %s database error", request.method, request.path)
        return jsonify({"error": "Database error"}), 500

    @app.errorhandler(Exception)
    def _unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        log.exception("%s %s failed", request.method, request.path)
        return jsonify({"error": "Server error"}), 500

    def requires(level: str):
        def decorator(fn):
            @wraps(fn)
            def wrapper(*args, **kwargs):
                access.check_access(g.identity, level)
                return fn(*args, **kwargs)
            return wrapper
        return decorator

    def body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def frontend(path: str = "") -> str:
        return f"{app.config['FRONTEND_ORIGIN'].rstrip('/')}{path}"

    # ------------------------------------------------------------ auth

    @app.get("/auth/discord")
    def discord_login():
        state = secrets.token_hex(16)
        session["oauth_state"] = state
        params = {
            "client_id": app.config["DISCORD_CLIENT_ID"],
            "response_type": "code",
            "redirect_uri": app.config["OAUTH_REDIRECT_URI"],
            "scope": "identify",
            "state": state,
        }
        return redirect(f"{DISCORD_AUTHORIZE_URL}?{urlencode(params)}")

    @app.get("/auth/discord/callback")
    def discord_callback():
        failed = redirect(frontend("/login-failed"))
        expected_state = session.pop("oauth_state", None)
        code = request.args.get("code")
        if not code or not expected_state or request.args.get("state") != expected_state:
            log.warning("oauth callback rejected: missing code or state mismatch")
            return failed

        try:
            tok = requests.post(
                f"{DISCORD_API}/oauth2/token",
                data={
                    "client_id": app.config["DISCORD_CLIENT_ID"],
                    "client_secret": app.config["DISCORD_CLIENT_SECRET"],
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": app.config["OAUTH_REDIRECT_URI"],
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=10,
            )
            if tok.status_code != 200:
                log.warning("oauth token exchange failed: HTTP %s", tok.status_code)
                return failed
            me = requests.get(
                f"{DISCORD_API}/users/@me",
                headers={"Authorization": f"Bearer {tok.json().get('access_token')}"},
                timeout=10,
            )
            if me.status_code != 200:
                log.warning("oauth profile fetch failed: HTTP %s", me.status_code)
                return failed
            profile = me.json()
        except (requests.RequestException, ValueError):
            log.exception("oauth callback failed")
            return failed

        discord_id = str(profile["id"])
        storage.upsert_user(discord_id, profile.get("username"), profile.get("avatar"))
        session.clear()
        session.permanent = True
        session["sid"] = access.open_session(discord_id)
        log.info("user %s logged in", discord_id)
        return redirect(frontend())

    @app.get("/auth/me")
    @requires(AUTHENTICATED)
    def auth_me():
        return jsonify(g.identity.to_json())

    @app.post("/auth/logout")
    @requires(AUTHENTICATED)
    def logout():
        access.close_session(session.get("sid"))
        session.clear()
        return jsonify({"success": True})

    # ------------------------------------------------------------ settings

    @app.get("/settings")
    @requires(PUBLIC)
    def get_settings():
        return jsonify(access.site_settings())

    @app.post("/settings/site-name")
    @requires(AUTHENTICATED)
    def set_site_name():
        return jsonify(access.set_site_name(g.identity, body().get("siteName")))

    # ------------------------------------------------------------ admin

    @app.get("/admin/users")
    @requires(SUPER_ADMIN)
    def admin_users():
        return jsonify(access.list_users())

    @app.post("/admin/users/<discord_id>/role")
    @requires(SUPER_ADMIN)
    def admin_set_role(discord_id: str):
        return jsonify(access.set_user_level(discord_id, body().get("level")))

    @app.get("/admin/updates")
    @requires(SUPER_ADMIN)
    def admin_updates():
        return jsonify(updates.check_for_updates(app.config["APP_VERSION"], app.config["UPDATE_FEED_URL"]))

    # ------------------------------------------------------------ tickets

    @app.get("/tickets")
    @requires(STAFF)
    def list_tickets():
        return jsonify(storage.list_tickets())

    @app.get("/tickets/stats")
    @requires(STAFF)
    def ticket_stats():
        return jsonify(storage.ticket_stats())

    @app.get("/tickets/<int:ticket_id>")
    @requires(STAFF)
    def get_ticket(ticket_id: int):
        return jsonify(tickets.get_ticket_or_404(ticket_id))

    @app.get("/tickets/<int:ticket_id>/messages")
    @requires(STAFF)
    def list_messages(ticket_id: int):
        return jsonify(storage.list_messages(ticket_id))

    @app.post("/tickets/<int:ticket_id>/messages")
    @requires(STAFF)
    def post_message(ticket_id: int):
        msg = tickets.post_message(
            ticket_id,
            g.identity.discord_id,
            body().get("message"),
            author_is_staff=True,
            author_name=g.identity.username,
            relay=app.config["BOT_RELAY"],
        )
        return jsonify(msg)

    @app.delete("/tickets/<int:ticket_id>/messages/<int:message_id>")
    @requires(SUPER_ADMIN)
    def delete_message(ticket_id: int, message_id: int):
        tickets.delete_message(ticket_id, message_id)
        return jsonify({"success": True})

    @app.post("/tickets/<int:ticket_id>/priority")
    @requires(STAFF)
    def set_priority(ticket_id: int):
        tickets.set_priority(ticket_id, body().get("priority"))
        return jsonify({"success": True})

    @app.post("/tickets/<int:ticket_id>/close")
    @requires(STAFF)
    def close_ticket(ticket_id: int):
        result = tickets.close_ticket(ticket_id, app.config["BOT_RELAY"], app.config["FRONTEND_ORIGIN"])
        return jsonify({"success": True, "alreadyClosed": result.already_closed, "ticket": result.ticket})

    @app.delete("/tickets/<int:ticket_id>")
    @requires(SUPER_ADMIN)
    def delete_ticket(ticket_id: int):
        tickets.delete_ticket(ticket_id)
        return jsonify({"success": True})

    # ------------------------------------------------------------ public

    @app.get("/public/tickets/<token>")
    @requires(PUBLIC)
    def public_ticket(token: str):
        ticket = storage.get_ticket_by_token(token)
        if not ticket:
            return jsonify({"error": "Ticket not found"}), 404
        messages = [
            {k: m[k] for k in ("id", "message", "created_at", "username")}
            for m in storage.list_messages(ticket["id"])
        ]
        return jsonify({"ticket": ticket, "messages": messages})

    return app


if __name__ == "__main__":
    config.configure_logging()
    app = create_app()
    # By default bind to localhost only to avoid exposing publicly.
    app.run(host=config.DASHBOARD_BIND_HOST, port=config.DASHBOARD_BIND_PORT)
