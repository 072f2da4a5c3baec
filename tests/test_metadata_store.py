"""Tests for the metadata store predicates and both store implementations."""
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clouddrive.models import Base
from clouddrive.services.metadata_store import (
    DocumentExistsError,
    DocumentNotFoundError,
    Equal,
    InMemoryMetadataStore,
    IsNull,
    OrderBy,
    Select,
    apply_predicates,
)
from clouddrive.services.sql_metadata_store import SqlMetadataStore


def folder_fields(owner_id, name, created_at, parent_id=None):
    return {
        "owner_id": owner_id,
        "name": name,
        "parent_id": parent_id,
        "created_at": created_at,
        "is_trashed": False,
    }


class TestApplyPredicates:

    DOCS = [
        {"id": "1", "owner_id": "a", "parent_id": None, "created_at": 3},
        {"id": "2", "owner_id": "a", "parent_id": "1", "created_at": 1},
        {"id": "3", "owner_id": "b", "parent_id": None, "created_at": 2},
        {"id": "4", "owner_id": "a", "parent_id": None, "created_at": 2},
    ]

    def test_equal_and_is_null(self):
        result = apply_predicates(self.DOCS, [Equal("owner_id", "a"), IsNull("parent_id")])
        assert [d["id"] for d in result] == ["1", "4"]

    def test_order_by(self):
        result = apply_predicates(self.DOCS, [OrderBy("created_at", descending=True)])
        assert [d["id"] for d in result] == ["1", "3", "4", "2"]

    def test_first_order_by_is_primary(self):
        result = apply_predicates(self.DOCS, [OrderBy("owner_id"), OrderBy("created_at")])
        assert [d["id"] for d in result] == ["2", "4", "1", "3"]

    def test_select_keeps_id(self):
        result = apply_predicates(self.DOCS, [Equal("owner_id", "b"), Select(("created_at",))])
        assert result == [{"id": "3", "created_at": 2}]


async def _sqlite_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'drive.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest.fixture
async def sql_store(tmp_path):
    engine = await _sqlite_engine(tmp_path)
    yield SqlMetadataStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryMetadataStore()
        return
    engine = await _sqlite_engine(tmp_path)
    yield SqlMetadataStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


class TestStores:
    """Both implementations honour the same contract."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        created = await store.create_document("folders", "f1", folder_fields("alice", "Docs", 10))
        assert created["id"] == "f1"
        assert created["name"] == "Docs"
        assert (await store.get_document("folders", "f1"))["owner_id"] == "alice"
        assert await store.get_document("folders", "missing") is None

    @pytest.mark.asyncio
    async def test_create_duplicate_rejected(self, store):
        await store.create_document("folders", "f1", folder_fields("alice", "Docs", 10))
        with pytest.raises(DocumentExistsError):
            await store.create_document("folders", "f1", folder_fields("alice", "Other", 11))

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, store):
        await store.create_document("folders", "f1", folder_fields("alice", "Docs", 10))
        updated = await store.update_document("folders", "f1", {"is_trashed": True})
        assert updated["is_trashed"] is True
        assert updated["name"] == "Docs"

    @pytest.mark.asyncio
    async def test_update_and_delete_missing(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.update_document("folders", "nope", {"name": "x"})
        with pytest.raises(DocumentNotFoundError):
            await store.delete_document("folders", "nope")

    @pytest.mark.asyncio
    async def test_list_with_predicates(self, store):
        await store.create_document("folders", "f1", folder_fields("alice", "Work", 30))
        await store.create_document("folders", "f2", folder_fields("alice", "Docs", 10))
        await store.create_document("folders", "f3", folder_fields("alice", "Sub", 20, parent_id="f2"))
        await store.create_document("folders", "f4", folder_fields("bob", "Bob's", 5))

        roots = await store.list_documents(
            "folders", [Equal("owner_id", "alice"), IsNull("parent_id"), OrderBy("created_at")],
        )
        assert [d["id"] for d in roots] == ["f2", "f1"]

        names = await store.list_documents("folders", [Equal("owner_id", "alice"), Select(("name",))])
        assert sorted(d["name"] for d in names) == ["Docs", "Sub", "Work"]
        assert all(set(d) == {"id", "name"} for d in names)

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.create_document("folders", "f1", folder_fields("alice", "Docs", 10))
        await store.delete_document("folders", "f1")
        assert await store.get_document("folders", "f1") is None


@pytest.mark.asyncio
async def test_sql_store_rejects_unknown_fields(sql_store):
    with pytest.raises(ValueError):
        await sql_store.create_document("folders", "f1", {**folder_fields("alice", "Docs", 1), "color": "red"})


@pytest.mark.asyncio
async def test_sql_store_round_trips_file_tags(sql_store):
    fields = {
        "owner_id": "alice", "name": "notes.txt", "kind": "text", "mime_type": "text/plain",
        "size_bytes": 5, "folder_id": None, "created_at": 1, "updated_at": 1,
        "content": "hello", "summary": None, "tags": ["a", "b"],
        "is_starred": False, "is_trashed": False,
    }
    await sql_store.create_document("files", "file1", fields)
    doc = await sql_store.get_document("files", "file1")
    assert doc["tags"] == ["a", "b"]
    assert doc["content"] == "hello"
