from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Set

from peewee import (
    AutoField,
    CharField,
    DateTimeField,
    Model,
    PeeweeException,
    SqliteDatabase,
)

from .errors import StorageError

LOGGER = logging.getLogger(__name__)


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_rank(mc_rank: str) -> str:
    return mc_rank.strip().lower()


@contextmanager
def storage_guard(action: str) -> Iterator[None]:
    """Re-raise database faults as StorageError, keeping driver detail in logs."""
    try:
        yield
    except PeeweeException as exc:
        LOGGER.error("Storage failure during %s: %s", action, exc)
        raise StorageError(f"Storage failure during {action}") from exc


@dataclass
class StoreModels:
    db: SqliteDatabase
    PlayerLink: type
    RankMapping: type
    LinkCode: type


def _create_models(db: SqliteDatabase) -> StoreModels:
    class BaseModel(Model):
        created_at = DateTimeField(default=utcnow_naive)

        class Meta:
            database = db

    class PlayerLink(Model):
        id = AutoField()
        mc_uuid = CharField(unique=True)
        mc_name = CharField()
        discord_id = CharField(unique=True)
        linked_at = DateTimeField(default=utcnow_naive)
        updated_at = DateTimeField(default=utcnow_naive)

        class Meta:
            database = db
            table_name = "player_links"

    class RankMapping(BaseModel):
        id = AutoField()
        mc_rank = CharField(index=True)
        discord_role_id = CharField()

        class Meta:
            table_name = "rank_mappings"
            indexes = ((("mc_rank", "discord_role_id"), True),)

    class LinkCode(BaseModel):
        id = AutoField()
        code = CharField(unique=True)
        discord_id = CharField(unique=True)
        expires_at = DateTimeField(index=True)

        class Meta:
            table_name = "link_codes"

    return StoreModels(
        db=db,
        PlayerLink=PlayerLink,
        RankMapping=RankMapping,
        LinkCode=LinkCode,
    )


def init_store(path: str) -> StoreModels:
    with storage_guard("open"):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        db = SqliteDatabase(path)
        models = _create_models(db)
        db.connect(reuse_if_open=True)
        db.create_tables([models.PlayerLink, models.RankMapping, models.LinkCode])
    LOGGER.info("Database initialized at %s", path)
    return models


def close_store(models: StoreModels) -> None:
    if not models.db.is_closed():
        models.db.close()
        LOGGER.info("Database connection closed.")


def create_rank_mapping(models: StoreModels, mc_rank: str, role_id: str) -> bool:
    """Store a rank to role pair; returns False when the pair already existed."""
    with storage_guard("create_rank_mapping"):
        inserted = (
            models.RankMapping.insert(
                mc_rank=normalize_rank(mc_rank), discord_role_id=str(role_id)
            )
            .on_conflict_ignore()
            .as_rowcount()
            .execute()
        )
    return inserted > 0


def get_roles_by_rank(models: StoreModels, mc_rank: str) -> List[str]:
    with storage_guard("get_roles_by_rank"):
        query = models.RankMapping.select(models.RankMapping.discord_role_id).where(
            models.RankMapping.mc_rank == normalize_rank(mc_rank)
        )
        return [row.discord_role_id for row in query]


def list_rank_mappings(models: StoreModels) -> list:
    with storage_guard("list_rank_mappings"):
        return list(
            models.RankMapping.select().order_by(
                models.RankMapping.mc_rank, models.RankMapping.id
            )
        )


def delete_rank_mapping(models: StoreModels, mc_rank: str, role_id: str) -> int:
    with storage_guard("delete_rank_mapping"):
        return (
            models.RankMapping.delete()
            .where(
                (models.RankMapping.mc_rank == normalize_rank(mc_rank))
                & (models.RankMapping.discord_role_id == str(role_id))
            )
            .execute()
        )


def delete_all_mappings_for_rank(models: StoreModels, mc_rank: str) -> int:
    with storage_guard("delete_all_mappings_for_rank"):
        return (
            models.RankMapping.delete()
            .where(models.RankMapping.mc_rank == normalize_rank(mc_rank))
            .execute()
        )


def list_mapped_ranks(models: StoreModels) -> List[str]:
    with storage_guard("list_mapped_ranks"):
        query = (
            models.RankMapping.select(models.RankMapping.mc_rank)
            .distinct()
            .order_by(models.RankMapping.mc_rank)
        )
        return [row.mc_rank for row in query]


def managed_role_ids(models: StoreModels) -> Set[str]:
    """Every role id referenced by at least one mapping."""
    with storage_guard("managed_role_ids"):
        query = models.RankMapping.select(models.RankMapping.discord_role_id).distinct()
        return {row.discord_role_id for row in query}
