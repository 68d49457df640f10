from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol, Set, Tuple

import discord

from .errors import ExternalCollaboratorError
from .models import StoreModels, get_roles_by_rank, managed_role_ids

LOGGER = logging.getLogger(__name__)

SYNC_REASON = "MCRankSync: Minecraft rank sync"
UNLINK_REASON = "MCRankSync: account unlinked"


class SupportsGuild(Protocol):
    id: int

    def get_role(self, role_id: int) -> Any | None: ...

    def get_member(self, user_id: int) -> Any | None: ...

    async def fetch_member(self, user_id: int) -> Any: ...


class SupportsMember(Protocol):
    id: int
    roles: Iterable[Any]
    guild: SupportsGuild
    display_name: str

    async def add_roles(self, *roles: Any, **kwargs: Any) -> Any: ...

    async def remove_roles(self, *roles: Any, **kwargs: Any) -> Any: ...


@dataclass
class RoleChange:
    role_id: str
    action: str
    ok: bool
    error: Optional[str] = None


@dataclass
class SyncResult:
    success: bool = True
    message: str = "Roles synced"
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    outcomes: List[RoleChange] = field(default_factory=list)

    @property
    def failures(self) -> List[RoleChange]:
        return [change for change in self.outcomes if not change.ok]


def plan_role_changes(
    managed: Iterable[str], target: Iterable[str], held: Iterable[str]
) -> Tuple[List[str], List[str]]:
    """Return (to_add, to_remove); roles outside ``managed`` never appear."""
    managed_set = set(managed)
    target_set = set(target)
    current = {role_id for role_id in held if role_id in managed_set}
    return sorted(target_set - current), sorted(current - target_set)


def member_label(member: Any) -> str:
    name = getattr(member, "display_name", None)
    return f"{name} ({member.id})" if name else str(member.id)


def held_role_ids(member: SupportsMember) -> Set[str]:
    return {str(role.id) for role in member.roles}


def _lookup_role(guild: SupportsGuild, role_id: str) -> Any | None:
    try:
        key = int(role_id)
    except (TypeError, ValueError):
        return None
    return guild.get_role(key)


async def resolve_member(guild: SupportsGuild, discord_id: str) -> Any | None:
    try:
        user_id = int(discord_id)
    except (TypeError, ValueError):
        return None
    member = guild.get_member(user_id)
    if member is not None:
        return member
    try:
        return await guild.fetch_member(user_id)
    except discord.HTTPException as exc:
        LOGGER.warning("Discord member %s not found in guild: %s", discord_id, exc)
        return None


async def _apply_change(member: SupportsMember, role_id: str, action: str, reason: str):
    role = _lookup_role(member.guild, role_id)
    if role is None:
        raise ExternalCollaboratorError(f"Role {role_id} not found in guild")
    try:
        if action == "add":
            await member.add_roles(role, reason=reason)
        else:
            await member.remove_roles(role, reason=reason)
    except Exception as exc:
        raise ExternalCollaboratorError(
            f"Failed to {action} role {role_id}: {exc}"
        ) from exc


async def apply_role_changes(
    member: SupportsMember,
    to_add: Iterable[str],
    to_remove: Iterable[str],
    reason: str = SYNC_REASON,
) -> List[RoleChange]:
    """Apply each change on its own; a failed role is recorded and skipped."""
    outcomes: List[RoleChange] = []
    batch = [(role_id, "add") for role_id in to_add] + [
        (role_id, "remove") for role_id in to_remove
    ]
    for role_id, action in batch:
        try:
            await _apply_change(member, role_id, action, reason)
        except ExternalCollaboratorError as exc:
            LOGGER.warning("%s for %s", exc, member_label(member))
            outcomes.append(RoleChange(role_id, action, ok=False, error=str(exc)))
            continue
        LOGGER.debug(
            "%s role %s for %s",
            "Added" if action == "add" else "Removed",
            role_id,
            member_label(member),
        )
        outcomes.append(RoleChange(role_id, action, ok=True))
    return outcomes


class RoleReconciler:
    def __init__(self, models: StoreModels):
        self.models = models

    def target_roles(self, groups: Iterable[str]) -> Set[str]:
        target: Set[str] = set()
        for group in groups:
            if isinstance(group, str) and group.strip():
                target.update(get_roles_by_rank(self.models, group))
        return target

    async def sync(self, member: SupportsMember, groups: Iterable[str]) -> SyncResult:
        managed = managed_role_ids(self.models)
        target = self.target_roles(groups)
        to_add, to_remove = plan_role_changes(managed, target, held_role_ids(member))
        result = SyncResult(added=to_add, removed=to_remove)
        result.outcomes = await apply_role_changes(member, to_add, to_remove)
        if to_add or to_remove:
            result.message = f"Roles updated: +{len(to_add)} -{len(to_remove)}"
        else:
            result.message = "No role changes needed"
        if result.failures:
            LOGGER.warning(
                "Role sync for %s finished with %s failed change(s)",
                member_label(member),
                len(result.failures),
            )
        return result

    async def remove_all_managed(self, member: SupportsMember) -> List[RoleChange]:
        managed = managed_role_ids(self.models)
        to_remove = sorted(held_role_ids(member) & managed)
        outcomes = await apply_role_changes(
            member, [], to_remove, reason=UNLINK_REASON
        )
        removed = sum(1 for change in outcomes if change.ok)
        if removed:
            LOGGER.info(
                "Removed %s synced role(s) from %s", removed, member_label(member)
            )
        return outcomes

    async def sync_discord_user(
        self,
        guild: Optional[SupportsGuild],
        discord_id: str,
        groups: Iterable[str],
    ) -> SyncResult:
        if guild is None:
            LOGGER.error("Configured guild not available for role sync")
            return SyncResult(success=False, message="Guild not found")
        member = await resolve_member(guild, discord_id)
        if member is None:
            return SyncResult(
                success=False, message="Discord member not found in guild"
            )
        return await self.sync(member, groups)

    async def remove_all_for_discord_user(
        self, guild: Optional[SupportsGuild], discord_id: str
    ) -> List[RoleChange]:
        if guild is None:
            LOGGER.error("Configured guild not available for role removal")
            return []
        member = await resolve_member(guild, discord_id)
        if member is None:
            return []
        return await self.remove_all_managed(member)
