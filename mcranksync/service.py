from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from .errors import ConflictError, ValidationError
from .linkcodes import LinkCodeAuthority
from .links import AccountLinkManager
from .models import StoreModels
from .roles import RoleReconciler, SupportsGuild

LOGGER = logging.getLogger(__name__)

GuildProvider = Callable[[], Optional[SupportsGuild]]


@dataclass
class RankEventResult:
    success: bool
    linked: bool
    message: str
    roles_added: List[str] = field(default_factory=list)
    roles_removed: List[str] = field(default_factory=list)


class RankSyncService:
    """Flows shared by the HTTP API and the slash commands."""

    def __init__(self, models: StoreModels, guild_provider: GuildProvider):
        self.models = models
        self.guild_provider = guild_provider
        self.links = AccountLinkManager(models)
        self.codes = LinkCodeAuthority(models)
        self.reconciler = RoleReconciler(models)

    async def handle_rank_event(
        self, mc_uuid: str, player_name: str, groups: Iterable[str]
    ) -> RankEventResult:
        link = self.links.get_by_mc_uuid(mc_uuid)
        if link is None:
            LOGGER.debug("Player %s is not linked to a Discord account.", player_name)
            return RankEventResult(
                success=True, linked=False, message="Player not linked to Discord"
            )
        if player_name and link.mc_name != player_name:
            self.links.update_name(mc_uuid, player_name)
        result = await self.reconciler.sync_discord_user(
            self.guild_provider(), link.discord_id, list(groups)
        )
        LOGGER.info("Role sync completed for %s: %s", player_name, result.message)
        return RankEventResult(
            success=result.success,
            linked=True,
            message=result.message,
            roles_added=result.added,
            roles_removed=result.removed,
        )

    def link_account(self, mc_uuid: str, player_name: str, code: str) -> str:
        discord_id = self.codes.redeem(code)
        if discord_id is None:
            LOGGER.warning("Invalid or expired link code for %s (%s)", player_name, mc_uuid)
            raise ValidationError("Invalid or expired link code")
        existing = self.links.get_by_mc_uuid(mc_uuid)
        if existing is not None and existing.discord_id != discord_id:
            LOGGER.warning(
                "Minecraft account %s is already linked to another Discord account",
                mc_uuid,
            )
            raise ConflictError(
                "This Minecraft account is already linked to a different Discord account"
            )
        other = self.links.get_by_discord_id(discord_id)
        if other is not None and other.mc_uuid != mc_uuid:
            LOGGER.warning(
                "Discord account %s is already linked to %s", discord_id, other.mc_uuid
            )
            raise ConflictError(
                "This Discord account is already linked to a different Minecraft account"
            )
        self.links.create(mc_uuid, player_name, discord_id)
        LOGGER.info(
            "Successfully linked %s (%s) to Discord ID %s",
            player_name,
            mc_uuid,
            discord_id,
        )
        return discord_id

    async def unlink_by_mc_uuid(self, mc_uuid: str) -> Optional[Any]:
        link = self.links.get_by_mc_uuid(mc_uuid)
        if link is None:
            return None
        await self._remove_roles(link.discord_id)
        self.links.delete_by_mc_uuid(mc_uuid)
        LOGGER.info("Successfully unlinked %s", mc_uuid)
        return link

    async def unlink_by_discord_id(self, discord_id: str) -> Optional[Any]:
        link = self.links.get_by_discord_id(discord_id)
        if link is None:
            return None
        await self._remove_roles(link.discord_id)
        self.links.delete_by_discord_id(discord_id)
        LOGGER.info("Discord user %s unlinked from %s", discord_id, link.mc_name)
        return link

    async def _remove_roles(self, discord_id: str) -> None:
        outcomes = await self.reconciler.remove_all_for_discord_user(
            self.guild_provider(), discord_id
        )
        failed = [change for change in outcomes if not change.ok]
        if failed:
            LOGGER.warning(
                "Unlinking %s left %s managed role(s) in place",
                discord_id,
                len(failed),
            )
