"""Dashboard identity, sessions and role gates.

The browser cookie only carries a random session id; the session row
lives in the ``sessions`` table so logout destroys it server side. The
identity and its role are resolved once per request from that row plus
the ``staff_users`` grant.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import config
import storage
from errors import Forbidden, InvalidArgument, Unauthenticated

log = logging.getLogger("ticketdesk.access")

# minimum access levels, in increasing order
PUBLIC = "public"
AUTHENTICATED = "authenticated"
STAFF = "staff"
SUPER_ADMIN = "super_admin"

LEVELS = ("none", "staff", "super_admin")
SITE_NAME_MAX_LENGTH = 100


@dataclass
class Identity:
    discord_id: str
    username: Optional[str]
    avatar: Optional[str]
    is_staff: bool = False
    is_super_admin: bool = False

    @property
    def has_access(self) -> bool:
        return self.is_staff or self.is_super_admin

    def to_json(self) -> Dict[str, Any]:
        return {
            "discordId": self.discord_id,
            "username": self.username,
            "avatar": self.avatar,
            "is_staff": self.is_staff,
            "is_super_admin": self.is_super_admin,
            "hasAccess": self.has_access,
        }


def open_session(discord_id: str) -> str:
    now = int(time.time())
    swept = storage.delete_sessions_before(now - config.SESSION_MAX_AGE_SECONDS)
    if swept:
        log.info("removed %d expired sessions", swept)
    session_id = secrets.token_urlsafe(32)
    storage.create_session(session_id, discord_id, now)
    return session_id


def close_session(session_id: Optional[str]):
    if session_id:
        storage.delete_session(session_id)


def load_identity(discord_id: str) -> Optional[Identity]:
    user = storage.get_user(discord_id)
    if not user:
        return None
    grant = storage.get_staff_grant(discord_id)
    return Identity(
        discord_id=user["discord_user_id"],
        username=user["username"],
        avatar=user["avatar"],
        is_staff=grant is not None,
        is_super_admin=bool(grant and grant["is_super_admin"]),
    )


def resolve_identity(session_id: Optional[str], max_age: Optional[int] = None) -> Optional[Identity]:
    if not session_id:
        return None
    row = storage.get_session(session_id)
    if not row:
        return None
    max_age = config.SESSION_MAX_AGE_SECONDS if max_age is None else max_age
    if int(time.time()) - int(row["created_at"]) > max_age:
        storage.delete_session(session_id)
        return None
    return load_identity(row["discord_user_id"])


def check_access(identity: Optional[Identity], level: str):
    """Raise if ``identity`` does not meet the minimum access ``level``."""
    if level == PUBLIC:
        return
    if identity is None:
        raise Unauthenticated()
    if level == STAFF and not identity.is_staff:
        raise Forbidden("No access to dashboard")
    if level == SUPER_ADMIN:
        if not identity.is_staff:
            raise Forbidden("No access to dashboard")
        if not identity.is_super_admin:
            raise Forbidden("Super admin required")


def site_settings() -> Dict[str, Any]:
    settings = storage.get_settings()
    site_name = settings.get("site_name") or None
    return {
        "site_name": site_name,
        "has_staff": storage.count_staff() > 0,
        "needsOnboarding": not site_name,
    }


def set_site_name(identity: Identity, raw_name: Any) -> Dict[str, Any]:
    """Store the site name; with no staff at all, the caller becomes super admin.

    Count and insert are separate statements: two first callers racing
    can both be granted super admin.
    """
    if not isinstance(raw_name, str) or not raw_name.strip():
        raise InvalidArgument("siteName is required")
    name = raw_name.strip()[:SITE_NAME_MAX_LENGTH]
    storage.set_setting("site_name", name)

    granted = False
    if storage.count_staff() == 0:
        storage.upsert_staff_grant(identity.discord_id, "super_admin", True)
        granted = True
        log.info("onboarding: %s granted super admin", identity.discord_id)
    return {"site_name": name, "needsOnboarding": False, "granted_super_admin": granted}


def set_user_level(discord_id: str, level: Any) -> Dict[str, Any]:
    if not discord_id:
        raise InvalidArgument("discordId is required")
    if level not in LEVELS:
        raise InvalidArgument("Invalid level")
    if level == "none":
        storage.delete_staff_grant(discord_id)
    else:
        storage.upsert_staff_grant(discord_id, level, level == "super_admin")
    log.info("access level of %s set to %s", discord_id, level)
    return {"discordId": discord_id, "level": level}


def list_users():
    rows = storage.list_users_with_grants()
    for r in rows:
        if r["is_super_admin"] is not None:
            r["is_super_admin"] = bool(r["is_super_admin"])
    return rows
