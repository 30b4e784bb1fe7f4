"""
Tests for MongoDelegationStore.

The pymongo async client is replaced with mocks; no MongoDB server is
required. Behaviour against a live server is covered by the skipped
integration class at the bottom.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ASCENDING
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    OperationFailure,
    ServerSelectionTimeoutError,
)

from conftest import make_credential, make_request
from delegation_store.exceptions import (
    DelegationNotFoundError,
    DelegationStoreError,
    DuplicateDelegationError,
    StoreUnavailableError,
)
from delegation_store.storage import (
    COLLECTIONS,
    PROXIES_COLLECTION,
    REQUESTS_COLLECTION,
    MongoDelegationStore,
    StoreConfig,
)


def _fake_client(existing_collections: list[str] | None = None):
    """Build a mock AsyncMongoClient with one mock collection per name."""
    collections = {}
    for name in COLLECTIONS:
        coll = MagicMock(name=name)
        coll.create_index = AsyncMock()
        coll.insert_one = AsyncMock()
        coll.find_one = AsyncMock(return_value=None)
        coll.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
        coll.replace_one = AsyncMock()
        coll.distinct = AsyncMock(return_value=[])
        coll.index_information = AsyncMock(return_value={"_id_": {"key": [("_id", 1)]}})
        collections[name] = coll

    db = MagicMock(name="db")
    db.__getitem__.side_effect = collections.__getitem__
    db.list_collection_names = AsyncMock(return_value=existing_collections or [])
    db.create_collection = AsyncMock()
    db.command = AsyncMock()

    client = MagicMock(name="client")
    client.__getitem__.return_value = db
    client.admin.command = AsyncMock(return_value={"ok": 1})
    client.close = AsyncMock()
    return client, db, collections


@pytest.fixture
def mongo(clock):
    client, db, collections = _fake_client()
    store = MongoDelegationStore(client=client, clock=clock)
    return store, client, db, collections


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_pings(self, mongo):
        store, client, _, _ = mongo
        await store.connect()
        client.admin.command.assert_awaited_with("ping")
        assert await store.health_check()

    @pytest.mark.asyncio
    async def test_uses_configured_database(self, clock):
        client, _, _ = _fake_client()
        MongoDelegationStore(StoreConfig(backend="mongodb", database="delegation"), client=client)
        client.__getitem__.assert_called_with("delegation")

    @pytest.mark.asyncio
    async def test_connect_failure(self, mongo):
        store, client, _, _ = mongo
        client.admin.command.side_effect = ServerSelectionTimeoutError("no servers")

        with pytest.raises(StoreUnavailableError):
            await store.connect()
        assert not await store.health_check()

    @pytest.mark.asyncio
    async def test_disconnect(self, mongo):
        store, client, _, _ = mongo
        await store.connect()
        await store.disconnect()

        client.close.assert_awaited_once()
        assert not await store.health_check()
        with pytest.raises(StoreUnavailableError):
            await store.get_request("abc")


class TestSchema:
    @pytest.mark.asyncio
    async def test_creates_collections_and_indexes(self, mongo):
        store, _, db, collections = mongo
        await store.initialize_schema()

        created = {call.args[0] for call in db.create_collection.await_args_list}
        assert created == {PROXIES_COLLECTION, REQUESTS_COLLECTION}

        collections[REQUESTS_COLLECTION].create_index.assert_awaited_once_with(
            [("delegation_id", ASCENDING)], name="delegation_id_unique", unique=True
        )
        proxy_calls = collections[PROXIES_COLLECTION].create_index.await_args_list
        assert len(proxy_calls) == 2
        assert proxy_calls[0].args == ([("delegation_id", ASCENDING)],)
        assert proxy_calls[0].kwargs == {"name": "delegation_id_unique", "unique": True}
        assert proxy_calls[1].args == ([("not_after", ASCENDING)],)
        assert proxy_calls[1].kwargs == {
            "name": "not_after_ttl",
            "unique": False,
            "expireAfterSeconds": 600,
        }

    @pytest.mark.asyncio
    async def test_existing_collections_kept(self, clock):
        client, db, _ = _fake_client(existing_collections=list(COLLECTIONS))
        store = MongoDelegationStore(client=client, clock=clock)
        await store.initialize_schema()
        db.create_collection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_changed_grace_updates_ttl_index(self, clock):
        client, db, collections = _fake_client()
        store = MongoDelegationStore(
            StoreConfig(backend="mongodb", grace_seconds=900), client=client, clock=clock
        )

        async def create_index(keys, **options):
            if "expireAfterSeconds" in options:
                raise OperationFailure("IndexOptionsConflict", code=85)

        collections[PROXIES_COLLECTION].create_index.side_effect = create_index
        collections[PROXIES_COLLECTION].index_information.return_value = {
            "_id_": {"key": [("_id", 1)]},
            "not_after_ttl": {"key": [("not_after", 1)], "expireAfterSeconds": 600},
        }

        await store.initialize_schema()

        db.command.assert_awaited_once_with(
            "collMod",
            PROXIES_COLLECTION,
            index={"keyPattern": {"not_after": ASCENDING}, "expireAfterSeconds": 900},
        )

    @pytest.mark.asyncio
    async def test_indexes_under_default_names_accepted(self, mongo):
        # Layout left behind by the mongo shell setup script
        store, _, db, collections = mongo
        default_names = {
            REQUESTS_COLLECTION: {
                "_id_": {"key": [("_id", 1)]},
                "delegation_id_1": {"key": [("delegation_id", 1.0)], "unique": True},
            },
            PROXIES_COLLECTION: {
                "_id_": {"key": [("_id", 1)]},
                "delegation_id_1": {"key": [("delegation_id", 1.0)], "unique": True},
                "not_after_1": {"key": [("not_after", 1.0)], "expireAfterSeconds": 600},
            },
        }
        for name, indexes in default_names.items():
            collections[name].create_index.side_effect = OperationFailure(
                "Index already exists with a different name: delegation_id_1", code=85
            )
            collections[name].index_information.return_value = indexes

        await store.initialize_schema()

        db.command.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_named_ttl_index_gets_new_grace(self, clock):
        client, db, collections = _fake_client()
        store = MongoDelegationStore(
            StoreConfig(backend="mongodb", grace_seconds=1200), client=client, clock=clock
        )
        collections[PROXIES_COLLECTION].create_index.side_effect = OperationFailure(
            "Index already exists with a different name: not_after_1", code=85
        )
        collections[PROXIES_COLLECTION].index_information.return_value = {
            "delegation_id_1": {"key": [("delegation_id", 1)], "unique": True},
            "not_after_1": {"key": [("not_after", 1)], "expireAfterSeconds": 600},
        }

        await store.initialize_schema()

        db.command.assert_awaited_once_with(
            "collMod",
            PROXIES_COLLECTION,
            index={"keyPattern": {"not_after": ASCENDING}, "expireAfterSeconds": 1200},
        )

    @pytest.mark.asyncio
    async def test_non_unique_existing_index_rejected(self, mongo):
        store, _, _, collections = mongo
        collections[REQUESTS_COLLECTION].create_index.side_effect = OperationFailure(
            "Index already exists with a different name: delegation_id_1", code=85
        )
        collections[REQUESTS_COLLECTION].index_information.return_value = {
            "delegation_id_1": {"key": [("delegation_id", 1)]},
        }

        with pytest.raises(DelegationStoreError) as exc_info:
            await store.initialize_schema()
        assert isinstance(exc_info.value.__cause__, OperationFailure)

    @pytest.mark.asyncio
    async def test_name_clash_on_other_key_rejected(self, mongo):
        store, _, _, collections = mongo
        collections[REQUESTS_COLLECTION].create_index.side_effect = OperationFailure(
            "An existing index has the same name as the requested index", code=86
        )
        collections[REQUESTS_COLLECTION].index_information.return_value = {
            "delegation_id_unique": {"key": [("user_dn", 1)], "unique": True},
        }

        with pytest.raises(DelegationStoreError):
            await store.initialize_schema()

    @pytest.mark.asyncio
    async def test_other_index_failures_translated(self, mongo):
        store, _, _, collections = mongo
        collections[REQUESTS_COLLECTION].create_index.side_effect = OperationFailure(
            "E11000 duplicate key error", code=11000
        )
        with pytest.raises(DelegationStoreError) as exc_info:
            await store.initialize_schema()
        assert isinstance(exc_info.value.__cause__, OperationFailure)


class TestRequests:
    @pytest.mark.asyncio
    async def test_put_inserts_document(self, mongo):
        store, _, _, collections = mongo
        await store.put_request(make_request("abc"))

        doc = collections[REQUESTS_COLLECTION].insert_one.await_args.args[0]
        assert doc["delegation_id"] == "abc"
        assert doc["request"].startswith("-----BEGIN CERTIFICATE REQUEST-----")

    @pytest.mark.asyncio
    async def test_duplicate_key_translated(self, mongo):
        store, _, _, collections = mongo
        collections[REQUESTS_COLLECTION].insert_one.side_effect = DuplicateKeyError(
            "E11000 duplicate key error", code=11000
        )
        with pytest.raises(DuplicateDelegationError) as exc_info:
            await store.put_request(make_request("abc"))
        assert exc_info.value.collection == REQUESTS_COLLECTION

    @pytest.mark.asyncio
    async def test_get_excludes_object_id(self, mongo):
        store, _, _, collections = mongo
        collections[REQUESTS_COLLECTION].find_one.return_value = make_request("abc").model_dump()

        request = await store.get_request("abc")

        assert request.delegation_id == "abc"
        collections[REQUESTS_COLLECTION].find_one.assert_awaited_once_with(
            {"delegation_id": "abc"}, {"_id": False}
        )

    @pytest.mark.asyncio
    async def test_delete_missing(self, mongo):
        store, _, _, collections = mongo
        collections[REQUESTS_COLLECTION].delete_one.return_value = MagicMock(deleted_count=0)
        assert await store.delete_request("abc") is False


class TestCredentials:
    @pytest.mark.asyncio
    async def test_get_live_credential(self, mongo, clock):
        store, _, _, collections = mongo
        credential = make_credential("xyz", clock() + timedelta(hours=1))
        collections[PROXIES_COLLECTION].find_one.return_value = credential.model_dump()

        assert await store.get_credential("xyz") == credential

    @pytest.mark.asyncio
    async def test_naive_dates_from_driver_read_as_utc(self, mongo, clock):
        store, _, _, collections = mongo
        doc = make_credential("xyz", clock() + timedelta(hours=1)).model_dump()
        doc["not_after"] = doc["not_after"].replace(tzinfo=None)
        collections[PROXIES_COLLECTION].find_one.return_value = doc

        credential = await store.get_credential("xyz")
        assert credential.not_after.tzinfo == timezone.utc

    @pytest.mark.asyncio
    async def test_unpurged_expired_credential_is_absent(self, mongo, clock):
        store, _, _, collections = mongo
        credential = make_credential("xyz", clock() - timedelta(seconds=1))
        collections[PROXIES_COLLECTION].find_one.return_value = credential.model_dump()

        with pytest.raises(DelegationNotFoundError):
            await store.get_credential("xyz")

    @pytest.mark.asyncio
    async def test_update_upserts(self, mongo, clock):
        store, _, _, collections = mongo
        credential = make_credential("xyz", clock() + timedelta(hours=1))
        await store.update_credential(credential)

        collections[PROXIES_COLLECTION].replace_one.assert_awaited_once_with(
            {"delegation_id": "xyz"}, credential.model_dump(), upsert=True
        )

    @pytest.mark.asyncio
    async def test_list_queries_live_only(self, mongo, clock):
        store, _, _, collections = mongo
        collections[PROXIES_COLLECTION].distinct.return_value = ["b", "a"]

        assert await store.list_delegations() == ["a", "b"]
        collections[PROXIES_COLLECTION].distinct.assert_awaited_once_with(
            "delegation_id", {"not_after": {"$gt": clock()}}
        )

    @pytest.mark.asyncio
    async def test_purge_left_to_ttl_index(self, mongo):
        store, _, _, collections = mongo
        assert await store.purge_expired() == 0
        collections[PROXIES_COLLECTION].delete_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_connection_translated(self, mongo):
        store, _, _, collections = mongo
        collections[PROXIES_COLLECTION].find_one.side_effect = AutoReconnect("connection reset")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.get_credential("xyz")
        assert isinstance(exc_info.value.__cause__, AutoReconnect)


@pytest.mark.skip(reason="Requires MongoDB server")
class TestMongoServer:
    """Test MongoDelegationStore against a running MongoDB."""

    @pytest.fixture
    async def server_store(self):
        store = MongoDelegationStore(
            StoreConfig(backend="mongodb", url="mongodb://localhost:27017", database="fts_test")
        )
        await store.connect()
        await store.initialize_schema()
        yield store
        await store.disconnect()

    @pytest.mark.asyncio
    async def test_unique_index_enforced(self, server_store):
        await server_store.delete_request("it-abc")
        await server_store.put_request(make_request("it-abc"))
        with pytest.raises(DuplicateDelegationError):
            await server_store.put_request(make_request("it-abc"))
        await server_store.delete_request("it-abc")

    @pytest.mark.asyncio
    async def test_expired_credential_hidden(self, server_store):
        await server_store.delete_credential("it-xyz")
        past = datetime.now(timezone.utc) - timedelta(seconds=5)
        await server_store.put_credential(make_credential("it-xyz", past))
        with pytest.raises(DelegationNotFoundError):
            await server_store.get_credential("it-xyz")
        await server_store.delete_credential("it-xyz")
