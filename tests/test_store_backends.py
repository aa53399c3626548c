"""
Tests for all message store backends.

Covers:
  - InMemoryMessageStore
  - FileMessageStore (JSON file persistence)
  - SqlMessageStore (via SQLite for test portability)
  - Store factory
"""
import asyncio
import os
from unittest.mock import patch

import pytest
import pytest_asyncio

from config.settings import DatabaseConfig
from core.errors import MessageNotFound
from models.schemas import Message, MessageClass, MessageStatus


def _message(tenant="acme", **overrides) -> Message:
    data = dict(
        message_class=MessageClass.EMAIL,
        tenant_id=tenant,
        recipient="priya@example.com",
        subject="Hello",
        body="Body",
    )
    data.update(overrides)
    return Message(**data)


# ──────────────────────────────────────────────────────────────
#  Behaviour shared by every backend
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "file", "sql"])
async def store(request, data_dir):
    if request.param == "memory":
        from database.store_memory import InMemoryMessageStore
        yield InMemoryMessageStore()
    elif request.param == "file":
        from database.store_file import FileMessageStore
        yield FileMessageStore(data_dir=data_dir)
    else:
        from database.session import Database
        from database.store import SqlMessageStore
        db = Database(f"sqlite:///{data_dir}/store.db")
        await db.init()
        s = SqlMessageStore(db)
        await s.connect()
        yield s
        await db.close()


class TestMessageStoreContract:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        msg = _message()
        assert await store.create(msg) == msg.id
        loaded = await store.get(msg.id)
        assert loaded.id == msg.id
        assert loaded.status == MessageStatus.QUEUED
        assert loaded.attempts == 0
        assert loaded.recipient == "priya@example.com"
        assert loaded.message_class == MessageClass.EMAIL

    @pytest.mark.asyncio
    async def test_get_unknown_raises(self, store):
        with pytest.raises(MessageNotFound):
            await store.get("missing")

    @pytest.mark.asyncio
    async def test_mark_sent(self, store):
        msg = _message()
        await store.create(msg)
        assert await store.mark_sent(msg.id, "ref-1") is True
        loaded = await store.get(msg.id)
        assert loaded.status == MessageStatus.SENT
        assert loaded.provider_ref == "ref-1"

    @pytest.mark.asyncio
    async def test_mark_failed(self, store):
        msg = _message()
        await store.create(msg)
        assert await store.mark_failed(msg.id, "rejected") is True
        loaded = await store.get(msg.id)
        assert loaded.status == MessageStatus.FAILED
        assert loaded.failure_reason == "rejected"

    @pytest.mark.asyncio
    async def test_terminal_marks_are_idempotent(self, store):
        msg = _message()
        await store.create(msg)
        assert await store.mark_sent(msg.id, "ref-1") is True
        assert await store.mark_sent(msg.id, "ref-2") is False
        assert await store.mark_failed(msg.id, "late failure") is False
        loaded = await store.get(msg.id)
        assert loaded.status == MessageStatus.SENT
        assert loaded.provider_ref == "ref-1"
        assert loaded.failure_reason == ""

    @pytest.mark.asyncio
    async def test_failed_stays_failed(self, store):
        msg = _message()
        await store.create(msg)
        await store.mark_failed(msg.id, "first")
        assert await store.mark_sent(msg.id, "ref") is False
        assert (await store.get(msg.id)).status == MessageStatus.FAILED

    @pytest.mark.asyncio
    async def test_concurrent_terminal_marks_single_winner(self, store):
        msg = _message()
        await store.create(msg)
        results = await asyncio.gather(
            store.mark_sent(msg.id, "ref-a"),
            store.mark_failed(msg.id, "boom"),
            store.mark_sent(msg.id, "ref-b"),
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_mark_unknown_raises(self, store):
        with pytest.raises(MessageNotFound):
            await store.mark_sent("missing", "ref")
        with pytest.raises(MessageNotFound):
            await store.increment_attempt("missing")

    @pytest.mark.asyncio
    async def test_increment_attempt(self, store):
        msg = _message()
        await store.create(msg)
        assert await store.increment_attempt(msg.id) == 1
        assert await store.increment_attempt(msg.id) == 2
        loaded = await store.get(msg.id)
        assert loaded.attempts == 2
        assert loaded.status == MessageStatus.QUEUED

    @pytest.mark.asyncio
    async def test_increment_attempt_noop_when_terminal(self, store):
        msg = _message()
        await store.create(msg)
        await store.increment_attempt(msg.id)
        await store.mark_sent(msg.id, "ref")
        assert await store.increment_attempt(msg.id) == 1

    @pytest.mark.asyncio
    async def test_list_by_tenant(self, store):
        mine = [_message() for _ in range(3)]
        for m in mine:
            await store.create(m)
        await store.create(_message(tenant="other"))
        await store.mark_sent(mine[0].id, "ref")

        listed = await store.list_by_tenant("acme")
        assert {m.id for m in listed} == {m.id for m in mine}

        sent = await store.list_by_tenant("acme", status=MessageStatus.SENT)
        assert [m.id for m in sent] == [mine[0].id]

        assert len(await store.list_by_tenant("acme", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_count_by_status(self, store):
        a, b, c = _message(), _message(), _message()
        for m in (a, b, c):
            await store.create(m)
        await store.mark_sent(a.id, "ref")
        await store.mark_failed(b.id, "no")
        assert await store.count_by_status() == {"queued": 1, "sent": 1, "failed": 1}


# ──────────────────────────────────────────────────────────────
#  Backend specifics
# ──────────────────────────────────────────────────────────────

class TestInMemoryMessageStore:
    @pytest.mark.asyncio
    async def test_get_returns_copy(self):
        from database.store_memory import InMemoryMessageStore
        store = InMemoryMessageStore()
        msg = _message()
        await store.create(msg)
        copy = await store.get(msg.id)
        copy.status = MessageStatus.SENT
        assert (await store.get(msg.id)).status == MessageStatus.QUEUED

    @pytest.mark.asyncio
    async def test_change_hook_failure_rolls_back(self):
        from core.errors import StoreUnavailable
        from database.store_memory import InMemoryMessageStore

        class FlakyStore(InMemoryMessageStore):
            fail = False

            def _changed(self, message):
                if self.fail:
                    raise StoreUnavailable("write rejected")

        store = FlakyStore()
        msg = _message()
        await store.create(msg)
        store.fail = True
        with pytest.raises(StoreUnavailable):
            await store.mark_failed(msg.id, "rejected")
        with pytest.raises(StoreUnavailable):
            await store.create(_message(id="never-stored"))

        assert (await store.get(msg.id)).status == MessageStatus.QUEUED
        with pytest.raises(MessageNotFound):
            await store.get("never-stored")


class TestFileMessageStore:
    @pytest.mark.asyncio
    async def test_persistence_round_trip(self, data_dir):
        from database.store_file import FileMessageStore

        store1 = FileMessageStore(data_dir=data_dir)
        msg = _message()
        await store1.create(msg)
        await store1.increment_attempt(msg.id)
        await store1.mark_sent(msg.id, "ref-9")
        assert os.path.exists(os.path.join(data_dir, "messages.json"))

        store2 = FileMessageStore(data_dir=data_dir)
        loaded = await store2.get(msg.id)
        assert loaded.status == MessageStatus.SENT
        assert loaded.attempts == 1
        assert loaded.provider_ref == "ref-9"

    @pytest.mark.asyncio
    async def test_failed_write_leaves_no_new_message(self, data_dir):
        from core.errors import StoreUnavailable
        from database.store_file import FileMessageStore

        store = FileMessageStore(data_dir=data_dir)
        msg = _message()
        with patch("database.store_file.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StoreUnavailable):
                await store.create(msg)
        with pytest.raises(MessageNotFound):
            await store.get(msg.id)

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_state(self, data_dir):
        from core.errors import StoreUnavailable
        from database.store_file import FileMessageStore

        store = FileMessageStore(data_dir=data_dir)
        msg = _message()
        await store.create(msg)
        with patch("database.store_file.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StoreUnavailable):
                await store.mark_sent(msg.id, "ref-1")
            with pytest.raises(StoreUnavailable):
                await store.increment_attempt(msg.id)

        in_memory = await store.get(msg.id)
        on_disk = await FileMessageStore(data_dir=data_dir).get(msg.id)
        for loaded in (in_memory, on_disk):
            assert loaded.status == MessageStatus.QUEUED
            assert loaded.attempts == 0
            assert loaded.provider_ref == ""

        # The store recovers once writes succeed again
        assert await store.mark_sent(msg.id, "ref-2") is True
        assert (await FileMessageStore(data_dir=data_dir).get(msg.id)).provider_ref == "ref-2"

    def test_corrupt_file_raises(self, data_dir):
        from core.errors import StoreUnavailable
        from database.store_file import FileMessageStore

        with open(os.path.join(data_dir, "messages.json"), "w") as f:
            f.write("{not json")
        with pytest.raises(StoreUnavailable):
            FileMessageStore(data_dir=data_dir)


class TestSqlMessageStore:
    @pytest.mark.asyncio
    async def test_survives_new_handle(self, data_dir):
        from database.session import Database
        from database.store import SqlMessageStore

        url = f"sqlite:///{data_dir}/durable.db"
        db1 = Database(url)
        await db1.init()
        msg = _message()
        await SqlMessageStore(db1).create(msg)
        await db1.close()

        db2 = Database(url)
        loaded = await SqlMessageStore(db2).get(msg.id)
        await db2.close()
        assert loaded.id == msg.id
        assert loaded.status == MessageStatus.QUEUED

    @pytest.mark.asyncio
    async def test_missing_tables_surface_as_unavailable(self, data_dir):
        from core.errors import StoreUnavailable
        from database.session import Database
        from database.store import SqlMessageStore

        db = Database(f"sqlite:///{data_dir}/empty.db")
        try:
            with pytest.raises(StoreUnavailable):
                await SqlMessageStore(db).get("anything")
        finally:
            await db.close()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryMessageStore
        assert isinstance(create_store(), InMemoryMessageStore)

    def test_file_backend(self, data_dir):
        from database.store_factory import create_store
        from database.store_file import FileMessageStore
        store = create_store(DatabaseConfig(store_backend="file", store_file_dir=data_dir))
        assert isinstance(store, FileMessageStore)

    def test_sql_requires_database(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store(DatabaseConfig(store_backend="sql"))

    @pytest.mark.asyncio
    async def test_sql_backend(self, database):
        from database.store import SqlMessageStore
        from database.store_factory import create_store
        store = create_store(DatabaseConfig(store_backend="sql"), database=database)
        assert isinstance(store, SqlMessageStore)

    def test_unknown_backend(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store(DatabaseConfig(store_backend="mongo"))

    def test_no_singleton(self):
        from database.store_factory import create_store
        assert create_store() is not create_store()

    def test_async_url_conversion(self):
        from database.session import _to_async_url
        assert _to_async_url("sqlite:///./t.db") == "sqlite+aiosqlite:///./t.db"
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url("mysql://u:p@h/db") == "mysql+aiomysql://u:p@h/db"
