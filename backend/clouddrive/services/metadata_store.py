"""Metadata store contract and query predicates.

A metadata store is a document database: collections of JSON-like
documents addressed by id, queried with a small predicate vocabulary
(equality, null checks, ordering, field projection). Implementations are
swappable; the SQL-backed one lives in sql_metadata_store.py.
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union


@dataclass(frozen=True)
class Equal:
    field: str
    value: Any


@dataclass(frozen=True)
class IsNull:
    field: str


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Select:
    """Return only these fields (``id`` is always included)."""
    fields: tuple[str, ...]


Predicate = Union[Equal, IsNull, OrderBy, Select]


class DocumentNotFoundError(LookupError):
    """Raised by stores when a document id does not exist."""

    def __init__(self, collection: str, document_id: str):
        super().__init__(f"{collection}/{document_id} not found")
        self.collection = collection
        self.document_id = document_id


class DocumentExistsError(ValueError):
    def __init__(self, collection: str, document_id: str):
        super().__init__(f"{collection}/{document_id} already exists")
        self.collection = collection
        self.document_id = document_id


class MetadataStore(ABC):
    """Abstract async document store."""

    @abstractmethod
    async def create_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        pass

    @abstractmethod
    async def update_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        pass

    @abstractmethod
    async def delete_document(self, collection: str, document_id: str) -> None:
        pass

    @abstractmethod
    async def get_document(self, collection: str, document_id: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    async def list_documents(self, collection: str, predicates: Sequence[Predicate] = ()) -> list[dict[str, Any]]:
        pass


def apply_predicates(documents: list[dict[str, Any]], predicates: Sequence[Predicate]) -> list[dict[str, Any]]:
    """Evaluate predicates over plain dicts. Filters first, then ordering, then projection."""
    result = documents
    for p in predicates:
        if isinstance(p, Equal):
            result = [d for d in result if d.get(p.field) == p.value]
        elif isinstance(p, IsNull):
            result = [d for d in result if d.get(p.field) is None]

    # Apply orderings last-to-first so the first OrderBy is the primary key.
    for p in reversed([p for p in predicates if isinstance(p, OrderBy)]):
        result = sorted(
            result,
            key=lambda d: (d.get(p.field) is None, d.get(p.field)),
            reverse=p.descending,
        )

    selects = [p for p in predicates if isinstance(p, Select)]
    if selects:
        keep = {"id"}
        for s in selects:
            keep.update(s.fields)
        result = [{k: v for k, v in d.items() if k in keep} for d in result]
    return result


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed store for development and tests."""

    def __init__(self):
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def create_document(self, collection, document_id, fields):
        docs = self._collection(collection)
        if document_id in docs:
            raise DocumentExistsError(collection, document_id)
        doc = {**copy.deepcopy(fields), "id": document_id}
        docs[document_id] = doc
        return copy.deepcopy(doc)

    async def update_document(self, collection, document_id, fields):
        docs = self._collection(collection)
        if document_id not in docs:
            raise DocumentNotFoundError(collection, document_id)
        docs[document_id].update(copy.deepcopy(fields))
        return copy.deepcopy(docs[document_id])

    async def delete_document(self, collection, document_id):
        docs = self._collection(collection)
        if document_id not in docs:
            raise DocumentNotFoundError(collection, document_id)
        del docs[document_id]

    async def get_document(self, collection, document_id):
        doc = self._collection(collection).get(document_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def list_documents(self, collection, predicates=()):
        docs = [copy.deepcopy(d) for d in self._collection(collection).values()]
        return apply_predicates(docs, predicates)


def create_metadata_store() -> MetadataStore:
    """Build the metadata store selected by METADATA_STORE_TYPE."""
    from clouddrive.config import settings

    if settings.METADATA_STORE_TYPE == "memory":
        return InMemoryMetadataStore()
    if settings.METADATA_STORE_TYPE == "sql":
        from clouddrive.database import async_session
        from clouddrive.services.sql_metadata_store import SqlMetadataStore

        return SqlMetadataStore(async_session)
    raise ValueError(f"Unknown metadata store type: {settings.METADATA_STORE_TYPE}")
