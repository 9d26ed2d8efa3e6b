import logging
import logging.handlers
import os
import secrets
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", os.path.join("data", "tickets.sqlite"))

# Discord bot
TOKEN = os.getenv("DISCORD_TOKEN", "")
GUILD_ID = os.getenv("DISCORD_GUILD_ID", "")
TICKET_CATEGORY_ID = os.getenv("DISCORD_TICKET_CATEGORY_ID", "")
STAFF_ROLE_ID = os.getenv("DISCORD_STAFF_ROLE_ID", "")

# Internal webhook served by the bot, called by the dashboard
BOT_WEBHOOK_HOST = os.getenv("BOT_WEBHOOK_HOST", "127.0.0.1")
BOT_WEBHOOK_PORT = int(os.getenv("BOT_WEBHOOK_PORT", "4000"))
BOT_WEBHOOK_TIMEOUT = float(os.getenv("BOT_WEBHOOK_TIMEOUT", "15"))
BOT_URL = os.getenv("BOT_URL", "").rstrip("/")
BOT_RELAY_TIMEOUT = float(os.getenv("BOT_RELAY_TIMEOUT", "10"))

# Dashboard
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173").rstrip("/")
DASHBOARD_SECRET_KEY = os.getenv("DASHBOARD_SECRET_KEY") or secrets.token_hex(32)
DASHBOARD_BIND_HOST = os.getenv("DASHBOARD_BIND_HOST", "127.0.0.1")
DASHBOARD_BIND_PORT = int(os.getenv("DASHBOARD_BIND_PORT", "8080"))
DISCORD_CLIENT_ID = os.getenv("DISCORD_CLIENT_ID", "")
DISCORD_CLIENT_SECRET = os.getenv("DISCORD_CLIENT_SECRET", "")
OAUTH_REDIRECT_URI = os.getenv(
    "OAUTH_REDIRECT_URI", "http://localhost:8080/auth/discord/callback"
)
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", str(7 * 24 * 60 * 60)))

# Update check
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
UPDATE_FEED_URL = os.getenv("UPDATE_FEED_URL", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "")


def configure_logging() -> None:
    level = getattr(logging, LOG_LEVEL.strip().upper() or "INFO", logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if LOG_FILE:
        path = Path(LOG_FILE)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Rate limit chatter from the library is not useful at INFO
    logging.getLogger("discord.http").setLevel(logging.ERROR)
    logging.getLogger("ticketdesk").info("logging configured level=%s", logging.getLevelName(level))
