from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp.web
import discord
from discord import app_commands
from discord.ext import commands

from .api import start_api_server
from .config import BotConfig, load_config
from .errors import RankSyncError
from .linkcodes import CODE_TTL
from .models import (
    StoreModels,
    close_store,
    create_rank_mapping,
    delete_all_mappings_for_rank,
    delete_rank_mapping,
    get_roles_by_rank,
    init_store,
    list_mapped_ranks,
    list_rank_mappings,
    normalize_rank,
)
from .roles import member_label
from .service import RankSyncService

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Default to INFO until the configured level is applied at startup
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
LOGGER = logging.getLogger(__name__)

MAX_AUTOCOMPLETE_CHOICES = 25
PLUGIN_LINK_COMMAND = "/mcranksync link"
GENERIC_ERROR = "There was an error executing this command."


def rank_choices(models: StoreModels, current: str) -> List[str]:
    """Mapped ranks containing ``current`` (case-insensitive), capped for Discord."""
    needle = (current or "").lower()
    ranks = [rank for rank in list_mapped_ranks(models) if needle in rank.lower()]
    return ranks[:MAX_AUTOCOMPLETE_CHOICES]


def format_mappings(models: StoreModels) -> str:
    mappings = list_rank_mappings(models)
    if not mappings:
        return "No rank mappings have been configured yet. Use /maprank to create one."
    grouped: Dict[str, List[str]] = {}
    for row in mappings:
        grouped.setdefault(row.mc_rank, []).append(row.discord_role_id)
    lines = ["**Rank mappings**"]
    for rank, role_ids in grouped.items():
        roles = ", ".join(f"<@&{role_id}>" for role_id in role_ids)
        lines.append(f"**{rank}** -> {roles}")
    lines.append(f"Total mappings: {len(mappings)} | Unique ranks: {len(grouped)}")
    return "\n".join(lines)


class RankSyncBot(commands.Bot):
    def __init__(self, config: BotConfig, models: StoreModels):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.models = models
        self.service = RankSyncService(models, self.configured_guild)
        self.api_runner: aiohttp.web.AppRunner | None = None
        self.sweep_task: asyncio.Task[None] | None = None

    def configured_guild(self) -> Optional[discord.Guild]:
        return self.get_guild(self.config.guild_id)

    async def setup_hook(self) -> None:
        self.api_runner = await start_api_server(
            self.service,
            self.config.api_token,
            self.config.api_host,
            self.config.api_port,
        )
        self.sweep_task = self.loop.create_task(self._code_sweep_loop())
        guild = discord.Object(id=self.config.guild_id)
        self.tree.copy_global_to(guild=guild)
        try:
            await self.tree.sync(guild=guild)
            LOGGER.info("Synced application commands for guild %s", guild.id)
        except discord.HTTPException as exc:
            LOGGER.warning(
                "Failed to sync commands for guild %s: %s", self.config.guild_id, exc
            )

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        if self.configured_guild() is None:
            LOGGER.error(
                "Guild %s not found; is the bot a member of it?", self.config.guild_id
            )

    async def close(self) -> None:
        if self.sweep_task:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
        if self.api_runner:
            await self.api_runner.cleanup()
        await super().close()
        close_store(self.models)

    async def _code_sweep_loop(self):
        interval = self.config.code_sweep_interval_minutes * 60
        while not self.is_closed():
            try:
                self.service.codes.sweep_expired()
            except RankSyncError as exc:
                LOGGER.warning("Expired link code sweep failed: %s", exc)
            await asyncio.sleep(interval)


# Command registrations
async def setup_commands(bot: RankSyncBot):
    tree = bot.tree
    service = bot.service

    async def resolve_guild(interaction: discord.Interaction) -> bool:
        guild = interaction.guild
        if guild is None or guild.id != bot.config.guild_id:
            await interaction.response.send_message(
                "Commands must be used inside the configured server.", ephemeral=True
            )
            return False
        return True

    async def require_admin(interaction: discord.Interaction) -> bool:
        if not await resolve_guild(interaction):
            return False
        perms = getattr(interaction.user, "guild_permissions", None)
        if not perms or not perms.administrator:
            await interaction.response.send_message(
                "You do not have permission to use this command.", ephemeral=True
            )
            return False
        return True

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        LOGGER.info(
            "Executing command: %s by %s",
            cmd.qualified_name if cmd else "unknown",
            member_label(interaction.user),
        )

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        LOGGER.exception("App command error: %s", error)
        try:
            if interaction.response.is_done():
                await interaction.followup.send(GENERIC_ERROR, ephemeral=True)
            else:
                await interaction.response.send_message(GENERIC_ERROR, ephemeral=True)
        except discord.HTTPException as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    @tree.command(
        name="link", description="Link your Discord account to your Minecraft account"
    )
    async def link(interaction: discord.Interaction):
        if not await resolve_guild(interaction):
            return
        discord_id = str(interaction.user.id)
        existing = service.links.get_by_discord_id(discord_id)
        if existing:
            await interaction.response.send_message(
                f"Your Discord account is already linked to **{existing.mc_name}** "
                f"(`{existing.mc_uuid}`). Use /unlink first if you want to link "
                "a different account.",
                ephemeral=True,
            )
            return
        code = service.codes.issue(discord_id)
        LOGGER.info("Generated link code for %s", member_label(interaction.user))
        minutes = int(CODE_TTL.total_seconds() // 60)
        await interaction.response.send_message(
            f"Your link code is `{code}`.\n"
            f"Run `{PLUGIN_LINK_COMMAND} {code}` in-game on the Minecraft server.\n"
            f"This code expires in **{minutes} minutes**.",
            ephemeral=True,
        )

    @tree.command(
        name="unlink",
        description="Unlink your Discord account from your Minecraft account",
    )
    async def unlink(interaction: discord.Interaction):
        if not await resolve_guild(interaction):
            return
        discord_id = str(interaction.user.id)
        if service.links.get_by_discord_id(discord_id) is None:
            await interaction.response.send_message(
                "Your Discord account is not linked to any Minecraft account. "
                "Use /link to link your account.",
                ephemeral=True,
            )
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        removed = await service.unlink_by_discord_id(discord_id)
        if removed is None:
            await interaction.followup.send("Already unlinked.", ephemeral=True)
            return
        await interaction.followup.send(
            f"Your Discord account has been unlinked from **{removed.mc_name}**. "
            "Any synced roles have been removed.",
            ephemeral=True,
        )

    @app_commands.default_permissions(administrator=True)
    @tree.command(name="maprank", description="Map a Minecraft rank to a Discord role")
    @app_commands.describe(
        rank="The Minecraft rank name (from LuckPerms)",
        role="The Discord role to assign",
    )
    async def maprank(interaction: discord.Interaction, rank: str, role: discord.Role):
        if not await require_admin(interaction):
            return
        rank_name = normalize_rank(rank)
        if not rank_name:
            await interaction.response.send_message(
                "Rank name cannot be empty.", ephemeral=True
            )
            return
        me = getattr(interaction.guild, "me", None)
        if me is not None and role.position >= me.top_role.position:
            await interaction.response.send_message(
                f"I cannot manage the role <@&{role.id}> because it is higher than "
                "or equal to my highest role.",
                ephemeral=True,
            )
            return
        if str(role.id) in get_roles_by_rank(bot.models, rank_name):
            await interaction.response.send_message(
                f"The rank **{rank_name}** is already mapped to <@&{role.id}>.",
                ephemeral=True,
            )
            return
        create_rank_mapping(bot.models, rank_name, str(role.id))
        LOGGER.info(
            "%s mapped rank %r to role %s (%s)",
            member_label(interaction.user),
            rank_name,
            role.name,
            role.id,
        )
        await interaction.response.send_message(
            f"Mapped Minecraft rank `{rank_name}` -> <@&{role.id}>", ephemeral=True
        )

    async def rank_autocomplete(
        interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[str]]:
        return [
            app_commands.Choice(name=rank, value=rank)
            for rank in rank_choices(bot.models, current)
        ]

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="unmaprank", description="Remove a Minecraft rank to Discord role mapping"
    )
    @app_commands.describe(
        rank="The Minecraft rank name",
        role="The Discord role (leave empty to remove all mappings for this rank)",
    )
    @app_commands.autocomplete(rank=rank_autocomplete)
    async def unmaprank(
        interaction: discord.Interaction,
        rank: str,
        role: Optional[discord.Role] = None,
    ):
        if not await require_admin(interaction):
            return
        rank_name = normalize_rank(rank)
        if role is not None:
            deleted = delete_rank_mapping(bot.models, rank_name, str(role.id))
            if not deleted:
                await interaction.response.send_message(
                    f"No mapping exists between rank **{rank_name}** and <@&{role.id}>.",
                    ephemeral=True,
                )
                return
            message = f"Removed mapping between **{rank_name}** and <@&{role.id}>."
        else:
            deleted = delete_all_mappings_for_rank(bot.models, rank_name)
            if not deleted:
                await interaction.response.send_message(
                    f"No mappings exist for rank **{rank_name}**.", ephemeral=True
                )
                return
            message = f"Removed {deleted} mapping(s) for rank **{rank_name}**."
        LOGGER.info(
            "%s removed mapping rank=%r role_id=%s deleted=%s",
            member_label(interaction.user),
            rank_name,
            role.id if role else None,
            deleted,
        )
        await interaction.response.send_message(message, ephemeral=True)

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="listmappings",
        description="List all Minecraft rank to Discord role mappings",
    )
    async def listmappings(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        await interaction.response.send_message(
            format_mappings(bot.models), ephemeral=True
        )

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="whois",
        description="Look up the Minecraft account linked to a Discord user",
    )
    @app_commands.describe(user="The Discord user to look up")
    async def whois(interaction: discord.Interaction, user: discord.User):
        if not await require_admin(interaction):
            return
        record = service.links.get_by_discord_id(str(user.id))
        if not record:
            await interaction.response.send_message(
                f"<@{user.id}> is not linked to any Minecraft account.", ephemeral=True
            )
            return
        linked_str = (
            record.linked_at.strftime("%Y-%m-%d %H:%M UTC")
            if record.linked_at
            else "unknown"
        )
        LOGGER.debug("Whois lookup for %s: %s", user.id, record.mc_name)
        await interaction.response.send_message(
            f"<@{user.id}> is linked to a Minecraft account.\n"
            f"Minecraft username: `{record.mc_name}`\n"
            f"Minecraft UUID: `{record.mc_uuid}`\n"
            f"Linked since: {linked_str}",
            ephemeral=True,
        )


def configure_logging(config: BotConfig) -> None:
    root = logging.getLogger()
    root.setLevel(config.log_level)
    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


async def main():
    bot_config = load_config()
    configure_logging(bot_config)
    models = init_store(bot_config.database_path)
    bot = RankSyncBot(bot_config, models)
    await setup_commands(bot)
    async with bot:
        await bot.start(bot_config.token)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
