"""MetadataStore backed by async SQLAlchemy.

Each collection maps to one ORM model. Predicates translate to WHERE /
ORDER BY clauses; field projection is applied to the returned dicts.
"""
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clouddrive.config import settings
from clouddrive.models import FileDocument, FolderDocument
from clouddrive.models.base import Base
from clouddrive.services.metadata_store import (
    DocumentExistsError,
    DocumentNotFoundError,
    Equal,
    IsNull,
    MetadataStore,
    OrderBy,
    Select,
)

logger = logging.getLogger(__name__)


def default_collections() -> dict[str, type[Base]]:
    return {
        settings.FILES_COLLECTION: FileDocument,
        settings.FOLDERS_COLLECTION: FolderDocument,
    }


class SqlMetadataStore(MetadataStore):
    """Document-style access over relational tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        collections: Optional[dict[str, type[Base]]] = None,
    ):
        self._session_factory = session_factory
        self._collections = collections or default_collections()

    def _model(self, collection: str) -> type[Base]:
        try:
            return self._collections[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    @staticmethod
    def _to_dict(row: Base) -> dict[str, Any]:
        return {col.key: getattr(row, col.key) for col in row.__table__.columns}

    def _check_fields(self, model: type[Base], fields: dict[str, Any]) -> None:
        columns = set(model.__table__.columns.keys())
        unknown = set(fields) - columns
        if unknown:
            raise ValueError(f"Unknown fields for {model.__tablename__}: {sorted(unknown)}")

    async def create_document(self, collection, document_id, fields):
        model = self._model(collection)
        self._check_fields(model, fields)
        async with self._session_factory() as db:
            if await db.get(model, document_id) is not None:
                raise DocumentExistsError(collection, document_id)
            row = model(**{**fields, "id": document_id})
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return self._to_dict(row)

    async def update_document(self, collection, document_id, fields):
        model = self._model(collection)
        self._check_fields(model, fields)
        async with self._session_factory() as db:
            row = await db.get(model, document_id)
            if row is None:
                raise DocumentNotFoundError(collection, document_id)
            for key, value in fields.items():
                if key != "id":
                    setattr(row, key, value)
            await db.commit()
            await db.refresh(row)
            return self._to_dict(row)

    async def delete_document(self, collection, document_id):
        model = self._model(collection)
        async with self._session_factory() as db:
            row = await db.get(model, document_id)
            if row is None:
                raise DocumentNotFoundError(collection, document_id)
            await db.delete(row)
            await db.commit()

    async def get_document(self, collection, document_id):
        model = self._model(collection)
        async with self._session_factory() as db:
            row = await db.get(model, document_id)
            return self._to_dict(row) if row is not None else None

    async def list_documents(self, collection, predicates=()):
        model = self._model(collection)
        query = select(model)
        keep: Optional[set[str]] = None
        for p in predicates:
            if isinstance(p, Equal):
                query = query.where(getattr(model, p.field) == p.value)
            elif isinstance(p, IsNull):
                query = query.where(getattr(model, p.field).is_(None))
            elif isinstance(p, OrderBy):
                column = getattr(model, p.field)
                query = query.order_by(column.desc() if p.descending else column.asc())
            elif isinstance(p, Select):
                keep = (keep or {"id"}) | set(p.fields)

        async with self._session_factory() as db:
            result = await db.execute(query)
            rows = [self._to_dict(r) for r in result.scalars().all()]

        if keep is not None:
            rows = [{k: v for k, v in r.items() if k in keep} for r in rows]
        return rows
