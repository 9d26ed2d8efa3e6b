import asyncio
import logging
import re
import sys
from dataclasses import dataclass
from threading import Thread
from typing import Any, Awaitable, Callable, Dict, Optional

import discord
from discord import app_commands
from discord.ext import commands

import config
import storage
import tickets
from errors import Conflict, DependencyFailure, InvalidArgument, NotFound, TicketError
from webhook import create_webhook_app

log = logging.getLogger("ticketdesk.bot")

OPEN_TICKET_ID = "open_ticket"
CLOSE_TICKET_ID = "close_ticket"
SUBJECT_MODAL_ID = "ticket_subject_modal"
SUBJECT_INPUT_ID = "ticket_subject"

CLOSED_NOTICE = "🔒 This ticket has been closed. The channel will now be deleted."
DASHBOARD_CLOSED_NOTICE = (
    "🔒 This ticket has been closed from the dashboard. This channel will now be deleted."
)


@dataclass
class Outcome:
    """What an interaction handler did; ``message`` is sent back ephemerally."""

    ok: bool
    message: Optional[str] = None


def slugify_username(name: str) -> str:
    s = name.lower()
    s = re.sub(r"[^a-z0-9-]", "-", s)
    s = re.sub(r"-+", "-", s).strip("-")
    return s[:50] if s else "user"


def is_admin(member: discord.Member) -> bool:
    if member.guild.owner_id == member.id:
        return True
    if member.guild_permissions.manage_guild:
        return True
    return False


def is_staff(member: Any, staff_role_id: Optional[str] = None) -> bool:
    staff_role_id = config.STAFF_ROLE_ID if staff_role_id is None else staff_role_id
    if not staff_role_id:
        return False
    role = discord.utils.get(getattr(member, "roles", []), id=int(staff_role_id))
    return role is not None


def modal_value(data: Optional[Dict[str, Any]], custom_id: str) -> Optional[str]:
    """Pull one text input value out of a raw modal submit payload."""
    for row in (data or {}).get("components", []):
        children = row.get("components") or [row.get("component") or {}]
        for child in children:
            if child.get("custom_id") == custom_id:
                return child.get("value")
    return None


def avatar_ref(user: Any) -> Optional[str]:
    avatar = getattr(user, "avatar", None)
    return getattr(avatar, "key", None) if avatar else None


def panel_view() -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Open Ticket",
            emoji="📩",
            style=discord.ButtonStyle.primary,
            custom_id=OPEN_TICKET_ID,
        )
    )
    return view


def close_view() -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Close Ticket",
            emoji="🔒",
            style=discord.ButtonStyle.danger,
            custom_id=CLOSE_TICKET_ID,
        )
    )
    return view


def subject_modal() -> discord.ui.Modal:
    modal = discord.ui.Modal(title="Open Support Ticket", custom_id=SUBJECT_MODAL_ID, timeout=None)
    modal.add_item(
        discord.ui.TextInput(
            label="Ticket Subject",
            custom_id=SUBJECT_INPUT_ID,
            placeholder="e.g. Billing issue, server not working, etc.",
            required=True,
            max_length=tickets.SUBJECT_MAX_LENGTH,
        )
    )
    return modal


def intro_embed() -> discord.Embed:
    return discord.Embed(
        title="📩 Support Ticket Opened",
        description=(
            "Please clearly explain your issue and wait for a staff member to respond.\n\n"
            "🔹 Providing all relevant details will help us resolve your issue faster.\n\n"
            "Do not ping staff. Tickets are answered in the order they are received."
        ),
        color=discord.Color.green(),
    )


class DiscordAdapter:
    """Ticket side effects on Discord: channels, staff replies, transcript DMs."""

    def __init__(self, client: discord.Client):
        self.client = client

    async def _fetch_channel(self, channel_id: str):
        channel = self.client.get_channel(int(channel_id))
        if channel is not None:
            return channel
        try:
            return await self.client.fetch_channel(int(channel_id))
        except (discord.NotFound, discord.Forbidden):
            return None
        except discord.HTTPException as e:
            raise DependencyFailure(f"Discord API error fetching channel {channel_id}: {e}") from e

    async def _fetch_user(self, user_id: str):
        try:
            return await self.client.fetch_user(int(user_id))
        except discord.NotFound:
            return None
        except discord.HTTPException as e:
            raise DependencyFailure(f"Discord API error fetching user {user_id}: {e}") from e

    async def allocate_channel(self, guild: discord.Guild, member: discord.abc.User) -> discord.TextChannel:
        overwrites = {
            guild.default_role: discord.PermissionOverwrite(view_channel=False),
            member: discord.PermissionOverwrite(view_channel=True, send_messages=True, read_message_history=True),
        }
        staff_role = guild.get_role(int(config.STAFF_ROLE_ID)) if config.STAFF_ROLE_ID else None
        if staff_role:
            overwrites[staff_role] = discord.PermissionOverwrite(
                view_channel=True, send_messages=True, read_message_history=True, manage_channels=True
            )
        me = guild.me or await guild.fetch_member(self.client.user.id)  # type: ignore
        overwrites[me] = discord.PermissionOverwrite(view_channel=True, send_messages=True, read_message_history=True)

        parent = None
        if config.TICKET_CATEGORY_ID:
            parent = guild.get_channel(int(config.TICKET_CATEGORY_ID))
            if not isinstance(parent, discord.CategoryChannel):
                log.warning("ticket category %s not found in guild %s", config.TICKET_CATEGORY_ID, guild.id)
                parent = None

        try:
            return await guild.create_text_channel(
                f"ticket-{slugify_username(member.name)}",
                category=parent,
                overwrites=overwrites,
                reason=f"New support ticket by {member}",
            )
        except discord.HTTPException as e:
            raise DependencyFailure(f"could not create ticket channel: {e}") from e

    async def open_ticket(self, guild: discord.Guild, member: discord.abc.User, subject: str) -> Dict[str, Any]:
        channel = await self.allocate_channel(guild, member)
        try:
            ticket = tickets.create_ticket(str(member.id), subject, str(channel.id), str(guild.id))
        except Conflict:
            # lost the race against another submit from the same user
            await channel.delete(reason="Duplicate ticket")
            raise
        storage.upsert_user(str(member.id), member.name, avatar_ref(member))
        try:
            await channel.send(content=member.mention, embed=intro_embed(), view=close_view())
        except discord.HTTPException as e:
            # without the intro there is no close button: undo the ticket
            storage.delete_ticket(ticket["id"])
            try:
                await channel.delete(reason="Ticket setup failed")
            except discord.HTTPException:
                log.warning("could not delete channel %s after failed setup", channel.id)
            raise DependencyFailure(f"could not post intro for ticket {ticket['id']}: {e}") from e
        return ticket

    async def send_staff_reply(self, ticket_id: int, staff_username: str, text: str):
        ticket = storage.get_ticket(ticket_id)
        if not ticket:
            raise NotFound(f"No ticket found with id={ticket_id}")
        if not ticket["discord_channel_id"]:
            raise DependencyFailure(f"Ticket id={ticket_id} has no channel set")
        channel = await self._fetch_channel(ticket["discord_channel_id"])
        if channel is None:
            raise DependencyFailure(
                f"Discord channel not found for id={ticket['discord_channel_id']} (ticketId={ticket_id})"
            )
        body = f"**{staff_username} (Staff):** {text}"
        try:
            for chunk in tickets.chunk_text(body, tickets.MAX_MESSAGE_LENGTH):
                await channel.send(chunk)
        except discord.HTTPException as e:
            raise DependencyFailure(f"could not send staff reply: {e}") from e

    async def send_transcript(
        self, ticket_id: int, user_id: str, transcript: str, view_url: str, subject: Optional[str] = None
    ):
        user = await self._fetch_user(user_id)
        if user is None:
            raise NotFound("Discord user not found")
        try:
            for part in tickets.transcript_messages(ticket_id, transcript, view_url, subject):
                await user.send(part)
        except discord.HTTPException as e:
            raise DependencyFailure(f"could not DM transcript to {user_id}: {e}") from e

    async def delete_ticket_channel(self, ticket_id: int, notice: str = DASHBOARD_CLOSED_NOTICE) -> bool:
        """Returns False when the channel is already gone."""
        ticket = storage.get_ticket(ticket_id)
        if not ticket or not ticket["discord_channel_id"]:
            raise NotFound("Ticket has no associated Discord channel")
        channel = await self._fetch_channel(ticket["discord_channel_id"])
        if channel is None:
            log.warning("channel %s not found when deleting for ticket %s", ticket["discord_channel_id"], ticket_id)
            return False
        try:
            await channel.send(notice)
            await channel.delete(reason="Ticket closed")
        except discord.NotFound:
            log.warning("channel %s vanished while deleting for ticket %s", channel.id, ticket_id)
            return False
        except discord.HTTPException as e:
            raise DependencyFailure(f"could not delete channel {channel.id}: {e}") from e
        return True


intents = discord.Intents.default()
intents.guilds = True
intents.members = True
intents.message_content = True  # Needed to log ticket messages

bot = commands.Bot(command_prefix="!", intents=intents)
adapter = DiscordAdapter(bot)


async def _reply(interaction: discord.Interaction, text: str):
    try:
        if interaction.response.is_done():
            await interaction.followup.send(text, ephemeral=True)
        else:
            await interaction.response.send_message(text, ephemeral=True)
    except discord.HTTPException:
        log.warning("could not reply to interaction %s", interaction.id)


async def handle_open_ticket(interaction: discord.Interaction) -> Outcome:
    try:
        await interaction.response.send_modal(subject_modal())
    except discord.HTTPException:
        log.exception("showing subject modal failed for %s", interaction.user.id)
        try:
            await interaction.user.send(
                "Something went wrong while opening your ticket form. Please try clicking the button again."
            )
        except discord.HTTPException:
            log.warning("could not DM %s about the modal failure", interaction.user.id)
        return Outcome(False)
    return Outcome(True)


async def handle_subject_submit(interaction: discord.Interaction) -> Outcome:
    await interaction.response.defer(ephemeral=True, thinking=True)

    guild = interaction.guild
    if guild is None and config.GUILD_ID:
        guild = bot.get_guild(int(config.GUILD_ID))
    if guild is None:
        return Outcome(False, "This can only be used in a server.")

    user = interaction.user
    subject = tickets.clean_subject(modal_value(interaction.data, SUBJECT_INPUT_ID))

    # re-check: the user may have opened a ticket since pressing the button
    existing = storage.find_open_ticket(str(user.id))
    if existing:
        return Outcome(False, f"You already have an open ticket: <#{existing['discord_channel_id']}>")

    try:
        ticket = await adapter.open_ticket(guild, user, subject)
    except Conflict as e:
        return Outcome(False, e.message)
    except DependencyFailure:
        log.exception("creating ticket for %s failed", user.id)
        return Outcome(False, "Something went wrong creating your ticket.")
    return Outcome(True, f"Ticket created: <#{ticket['discord_channel_id']}> (Subject: **{subject}**)")


async def handle_close_ticket(interaction: discord.Interaction) -> Outcome:
    await interaction.response.defer(ephemeral=True, thinking=True)

    channel = interaction.channel
    if not isinstance(channel, discord.TextChannel):
        return Outcome(False, "This interaction can only be used in a ticket channel.")
    ticket = storage.get_ticket_by_channel(str(channel.id))
    if not ticket:
        return Outcome(False, "This channel is not linked to a ticket in the system.")
    if not tickets.can_close(str(interaction.user.id), is_staff(interaction.user), ticket):
        return Outcome(False, "Only staff or the ticket owner can close this ticket.")

    result = tickets.mark_closed(ticket["id"])
    if not result.already_closed:
        try:
            await adapter.send_transcript(
                ticket["id"],
                ticket["discord_user_id"],
                result.transcript,
                result.view_url,
                subject=ticket["subject"],
            )
        except (NotFound, DependencyFailure):
            log.exception("transcript DM failed for ticket %s", ticket["id"])
        else:
            storage.mark_transcript_sent(ticket["id"])

    await _reply(interaction, "Ticket has been marked as closed and this channel will be deleted.")
    try:
        await channel.send(CLOSED_NOTICE)
        await channel.delete(reason="Ticket closed via close button")
    except discord.HTTPException:
        log.exception("deleting channel %s for ticket %s failed", channel.id, ticket["id"])
    return Outcome(True)


InteractionHandler = Callable[[discord.Interaction], Awaitable[Outcome]]

INTERACTION_HANDLERS: Dict[str, InteractionHandler] = {
    OPEN_TICKET_ID: handle_open_ticket,
    SUBJECT_MODAL_ID: handle_subject_submit,
    CLOSE_TICKET_ID: handle_close_ticket,
}


@bot.listen()
async def on_interaction(interaction: discord.Interaction):
    if interaction.type not in (discord.InteractionType.component, discord.InteractionType.modal_submit):
        return
    custom_id = (interaction.data or {}).get("custom_id")
    handler = INTERACTION_HANDLERS.get(custom_id)
    if handler is None:
        return
    try:
        outcome = await handler(interaction)
    except TicketError as e:
        outcome = Outcome(False, e.message)
    except Exception:
        log.exception("interaction %s failed for user %s", custom_id, interaction.user.id)
        outcome = Outcome(False, "Something went wrong. Please try again.")
    if outcome.message:
        await _reply(interaction, outcome.message)


@bot.event
async def on_message(message: discord.Message):
    # Log messages in open ticket channels
    if message.author.bot:
        return
    if not message.guild:
        return
    ticket = storage.get_ticket_by_channel(str(message.channel.id))
    if not ticket or ticket["status"] != "open":
        return
    body = "\n".join([message.content] + [a.url for a in message.attachments])
    storage.upsert_user(str(message.author.id), message.author.name, avatar_ref(message.author))
    try:
        tickets.post_message(ticket["id"], str(message.author.id), body)
    except InvalidArgument:
        return


admin_group = app_commands.Group(name="admin", description="Admin commands")


def admin_check(interaction: discord.Interaction) -> bool:
    if not interaction.guild or not isinstance(interaction.user, discord.Member):
        return False
    return is_admin(interaction.user)


def require_admin():
    async def predicate(interaction: discord.Interaction):
        if not admin_check(interaction):
            raise app_commands.CheckFailure("You do not have permission to use this command.")
        return True

    return app_commands.check(predicate)


@admin_group.command(name="post_panel", description="Post the support ticket panel in this channel")
@require_admin()
async def post_panel(interaction: discord.Interaction):
    ch = interaction.channel
    if not isinstance(ch, discord.TextChannel):
        await interaction.response.send_message("Run this in a text channel.", ephemeral=True)
        return
    # Permission pre-check to avoid failure
    me = interaction.guild.me or await interaction.guild.fetch_member(bot.user.id)  # type: ignore
    perms = ch.permissions_for(me)
    missing = []
    if not perms.send_messages:
        missing.append("Send Messages")
    if not perms.embed_links:
        missing.append("Embed Links")
    if not me.guild_permissions.manage_channels:
        missing.append("Manage Channels")
    if missing:
        await interaction.response.send_message(
            f"Missing permissions for {ch.mention}: {', '.join(missing)}", ephemeral=True
        )
        return

    embed = discord.Embed(
        title="Support Tickets",
        description=(
            "Need help? Click the button below to open a private support ticket.\n\n"
            "A new channel will be created that only you and staff can see."
        ),
        color=discord.Color.blue(),
    )
    try:
        await ch.send(embed=embed, view=panel_view())
        await interaction.response.send_message("Panel posted.", ephemeral=True)
    except discord.HTTPException as e:
        log.exception("posting panel in %s failed", ch.id)
        await interaction.response.send_message(f"Failed to post panel: {e}", ephemeral=True)


@post_panel.error
async def post_panel_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    if isinstance(error, app_commands.CheckFailure):
        await interaction.response.send_message(str(error), ephemeral=True)
        return
    log.error("post_panel failed: %s", error)


def start_webhook(loop: asyncio.AbstractEventLoop) -> Thread:
    def run(coro):
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=config.BOT_WEBHOOK_TIMEOUT)

    app = create_webhook_app(adapter, run)
    thread = Thread(
        target=app.run,
        kwargs={"host": config.BOT_WEBHOOK_HOST, "port": config.BOT_WEBHOOK_PORT, "use_reloader": False},
        name="bot-webhook",
        daemon=True,
    )
    thread.start()
    log.info("bot webhook listening on http://%s:%s (internal)", config.BOT_WEBHOOK_HOST, config.BOT_WEBHOOK_PORT)
    return thread


@bot.event
async def setup_hook():
    bot.tree.add_command(admin_group)
    start_webhook(asyncio.get_running_loop())


@bot.event
async def on_ready():
    try:
        if config.GUILD_ID:
            guild_obj = discord.Object(id=int(config.GUILD_ID))
            bot.tree.copy_global_to(guild=guild_obj)
            await bot.tree.sync(guild=guild_obj)
        else:
            await bot.tree.sync()
    except discord.HTTPException:
        log.exception("failed to sync commands")
    log.info("logged in as %s (ID: %s)", bot.user, bot.user.id)


def main():
    config.configure_logging()
    if not config.TOKEN:
        log.error("DISCORD_TOKEN is not set. Please set it in the environment.")
        sys.exit(1)
    storage.init_db()
    try:
        bot.run(config.TOKEN, log_handler=None)
    except discord.LoginFailure:
        log.exception("Discord login failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
