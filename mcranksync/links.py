from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .models import StoreModels, storage_guard, utcnow_naive

LOGGER = logging.getLogger(__name__)


class AccountLinkManager:
    """CRUD over player links; callers decide conflict policy."""

    def __init__(
        self, models: StoreModels, clock: Callable[[], datetime] = utcnow_naive
    ):
        self.models = models
        self.clock = clock

    def create(self, mc_uuid: str, mc_name: str, discord_id: str) -> None:
        PlayerLink = self.models.PlayerLink
        now = self.clock()
        with storage_guard("create_link"):
            PlayerLink.insert(
                mc_uuid=mc_uuid,
                mc_name=mc_name,
                discord_id=str(discord_id),
                linked_at=now,
                updated_at=now,
            ).on_conflict(
                conflict_target=[PlayerLink.mc_uuid],
                update={
                    PlayerLink.mc_name: mc_name,
                    PlayerLink.discord_id: str(discord_id),
                    PlayerLink.updated_at: now,
                },
            ).execute()
        LOGGER.debug("Stored link %s (%s) -> %s", mc_name, mc_uuid, discord_id)

    def get_by_mc_uuid(self, mc_uuid: str) -> Optional[object]:
        with storage_guard("get_link_by_mc_uuid"):
            return self.models.PlayerLink.get_or_none(
                self.models.PlayerLink.mc_uuid == mc_uuid
            )

    def get_by_discord_id(self, discord_id: str) -> Optional[object]:
        with storage_guard("get_link_by_discord_id"):
            return self.models.PlayerLink.get_or_none(
                self.models.PlayerLink.discord_id == str(discord_id)
            )

    def delete_by_mc_uuid(self, mc_uuid: str) -> bool:
        with storage_guard("delete_link_by_mc_uuid"):
            deleted = (
                self.models.PlayerLink.delete()
                .where(self.models.PlayerLink.mc_uuid == mc_uuid)
                .execute()
            )
        return deleted > 0

    def delete_by_discord_id(self, discord_id: str) -> bool:
        with storage_guard("delete_link_by_discord_id"):
            deleted = (
                self.models.PlayerLink.delete()
                .where(self.models.PlayerLink.discord_id == str(discord_id))
                .execute()
            )
        return deleted > 0

    def update_name(self, mc_uuid: str, mc_name: str) -> None:
        PlayerLink = self.models.PlayerLink
        with storage_guard("update_link_name"):
            PlayerLink.update(mc_name=mc_name, updated_at=self.clock()).where(
                PlayerLink.mc_uuid == mc_uuid
            ).execute()

    def list_links(self) -> List[object]:
        with storage_guard("list_links"):
            return list(
                self.models.PlayerLink.select().order_by(
                    self.models.PlayerLink.linked_at.desc(),
                    self.models.PlayerLink.id.desc(),
                )
            )
