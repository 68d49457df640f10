import pytest
from peewee import OperationalError

from mcranksync.errors import StorageError
from mcranksync.links import AccountLinkManager
from mcranksync.models import (
    create_rank_mapping,
    delete_all_mappings_for_rank,
    delete_rank_mapping,
    get_roles_by_rank,
    list_mapped_ranks,
    list_rank_mappings,
    managed_role_ids,
    storage_guard,
)


def test_create_link_upserts_on_mc_uuid(models):
    links = AccountLinkManager(models)
    links.create("uuid-1", "Steve", "100")
    first = links.get_by_mc_uuid("uuid-1")
    links.create("uuid-1", "Alex", "200")

    record = links.get_by_mc_uuid("uuid-1")
    assert record.mc_name == "Alex"
    assert record.discord_id == "200"
    assert record.linked_at == first.linked_at
    assert links.get_by_discord_id("100") is None
    assert models.PlayerLink.select().count() == 1


def test_link_lookup_and_delete_by_either_key(models):
    links = AccountLinkManager(models)
    links.create("uuid-1", "Steve", "100")
    links.create("uuid-2", "Alex", "200")

    assert links.get_by_discord_id("100").mc_uuid == "uuid-1"
    assert links.delete_by_discord_id("100") is True
    assert links.get_by_mc_uuid("uuid-1") is None
    assert links.delete_by_mc_uuid("uuid-2") is True
    assert links.delete_by_mc_uuid("uuid-2") is False
    assert links.list_links() == []


def test_update_name_keeps_discord_id(models):
    links = AccountLinkManager(models)
    links.create("uuid-1", "Steve", "100")
    links.update_name("uuid-1", "Steve2")

    record = links.get_by_mc_uuid("uuid-1")
    assert record.mc_name == "Steve2"
    assert record.discord_id == "100"


def test_duplicate_rank_mapping_is_ignored(models):
    assert create_rank_mapping(models, "admin", "1") is True
    assert create_rank_mapping(models, "admin", "1") is False

    assert get_roles_by_rank(models, "admin") == ["1"]
    assert len(list_rank_mappings(models)) == 1


def test_rank_lookup_is_case_insensitive(models):
    create_rank_mapping(models, "VIP", "7")

    assert get_roles_by_rank(models, "vip") == ["7"]
    assert get_roles_by_rank(models, "Vip") == ["7"]
    assert list_mapped_ranks(models) == ["vip"]


def test_mapped_ranks_are_distinct_and_sorted(models):
    create_rank_mapping(models, "mod", "2")
    create_rank_mapping(models, "admin", "1")
    create_rank_mapping(models, "admin", "3")

    assert list_mapped_ranks(models) == ["admin", "mod"]
    assert managed_role_ids(models) == {"1", "2", "3"}
    assert [row.mc_rank for row in list_rank_mappings(models)] == [
        "admin",
        "admin",
        "mod",
    ]


def test_delete_rank_mappings(models):
    create_rank_mapping(models, "admin", "1")
    create_rank_mapping(models, "admin", "2")
    create_rank_mapping(models, "mod", "2")

    assert delete_rank_mapping(models, "ADMIN", "1") == 1
    assert delete_rank_mapping(models, "admin", "1") == 0
    assert delete_all_mappings_for_rank(models, "admin") == 1
    assert managed_role_ids(models) == {"2"}


def test_storage_guard_wraps_database_errors():
    with pytest.raises(StorageError) as excinfo:
        with storage_guard("testing"):
            raise OperationalError("disk I/O error")
    assert "disk I/O" not in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, OperationalError)


def test_closed_store_raises_storage_error(models):
    models.db.close()
    models.db.init(None)
    with pytest.raises(StorageError):
        get_roles_by_rank(models, "admin")
