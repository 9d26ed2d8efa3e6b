import logging
from typing import Any, Dict

import requests

from errors import DependencyFailure

log = logging.getLogger("ticketdesk.relay")


class BotRelay:
    """Dashboard-side client of the bot's internal webhook."""

    def __init__(self, base_url: str, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise DependencyFailure(f"bot unreachable at {url}: {e}") from e
        if resp.status_code >= 400:
            raise DependencyFailure(f"bot returned HTTP {resp.status_code} for {path}")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if body.get("warning"):
            log.warning("bot %s for ticket %s: %s", path, payload.get("ticketId"), body["warning"])
        return body

    def staff_reply(self, ticket_id: int, staff_username: str, message: str):
        return self._post(
            "/staff-reply",
            {"ticketId": int(ticket_id), "staffUsername": staff_username or "Staff", "message": message},
        )

    def send_transcript(self, ticket_id: int, discord_user_id: str, transcript: str, view_url: str):
        return self._post(
            "/ticket-transcript",
            {
                "ticketId": int(ticket_id),
                "discordUserId": str(discord_user_id),
                "transcript": transcript,
                "viewUrl": view_url,
            },
        )

    def delete_channel(self, ticket_id: int):
        return self._post("/ticket-delete-channel", {"ticketId": int(ticket_id)})
