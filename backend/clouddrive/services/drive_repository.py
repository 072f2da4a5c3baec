"""Owner-scoped file and folder operations over the metadata and blob stores.

Every method takes the owner id explicitly; there is no ambient "current
user". Remote calls are bounded by REMOTE_CALL_TIMEOUT and provider
exceptions are converted to the DriveError taxonomy here.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional, TypeVar

from clouddrive.config import settings
from clouddrive.schemas.file import FileRecord, FolderRecord
from clouddrive.services.errors import (
    DriveError,
    PartialUploadError,
    RecordNotFoundError,
    RemoteReadError,
    RemoteTimeoutError,
    RemoteWriteError,
    ValidationError,
)
from clouddrive.services.file_kinds import extract_text, get_file_kind
from clouddrive.services.file_storage import BlobNotFoundError, BlobStore
from clouddrive.services.metadata_store import (
    DocumentNotFoundError,
    Equal,
    IsNull,
    MetadataStore,
    OrderBy,
)
from clouddrive.services.projection import check_folder_move, descendant_folder_ids
from clouddrive.services.reconciliation import OrphanLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Set once at upload; never changed by update_file.
IMMUTABLE_FILE_FIELDS = {"id", "owner_id", "kind", "mime_type", "size_bytes", "created_at"}
MUTABLE_FOLDER_FIELDS = {"name", "parent_id", "is_trashed"}


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class DriveRepository:
    """Typed record access for one metadata store + blob store pair."""

    def __init__(
        self,
        metadata: MetadataStore,
        blobs: BlobStore,
        *,
        bucket: Optional[str] = None,
        files_collection: Optional[str] = None,
        folders_collection: Optional[str] = None,
        timeout: Optional[float] = None,
        orphans: Optional[OrphanLedger] = None,
        content_limit: Optional[int] = None,
    ):
        self.metadata = metadata
        self.blobs = blobs
        self.bucket = bucket or settings.STORAGE_BUCKET
        self.files_collection = files_collection or settings.FILES_COLLECTION
        self.folders_collection = folders_collection or settings.FOLDERS_COLLECTION
        self.timeout = timeout if timeout is not None else settings.REMOTE_CALL_TIMEOUT
        self.orphans = orphans if orphans is not None else OrphanLedger()
        self.content_limit = content_limit or settings.CONTENT_EXTRACTION_LIMIT

    # ── remote call wrapper ──────────────────────────────────────

    async def _remote(self, call: Awaitable[T], *, action: str, write: bool = True) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except DriveError:
            raise
        except (DocumentNotFoundError, BlobNotFoundError):
            raise
        except asyncio.TimeoutError:
            logger.error("%s timed out after %ss", action, self.timeout)
            raise RemoteTimeoutError(f"{action} timed out after {self.timeout}s") from None
        except Exception as e:
            logger.error("%s failed: %s", action, e)
            error_cls = RemoteWriteError if write else RemoteReadError
            raise error_cls(f"{action} failed: {e}") from e

    def _blob_url(self, build: Callable[[], str], *, action: str) -> str:
        try:
            return build()
        except Exception as e:
            logger.error("%s failed: %s", action, e)
            raise RemoteReadError(f"{action} failed: {e}") from e

    async def _get_owned(self, collection: str, kind: str, owner_id: str, record_id: str) -> dict[str, Any]:
        doc = await self._remote(
            self.metadata.get_document(collection, record_id),
            action=f"read {kind}", write=False,
        )
        if doc is None or doc.get("owner_id") != owner_id:
            raise RecordNotFoundError(kind, record_id)
        return doc

    # ── reads ────────────────────────────────────────────────────

    async def list_files(self, owner_id: str) -> list[FileRecord]:
        docs = await self._remote(
            self.metadata.list_documents(self.files_collection, [Equal("owner_id", owner_id)]),
            action="list files", write=False,
        )
        return [FileRecord.from_document(d) for d in docs]

    async def list_folders(self, owner_id: str) -> list[FolderRecord]:
        docs = await self._remote(
            self.metadata.list_documents(
                self.folders_collection,
                [Equal("owner_id", owner_id), OrderBy("created_at")],
            ),
            action="list folders", write=False,
        )
        return [FolderRecord.from_document(d) for d in docs]

    async def list_root_folders(self, owner_id: str) -> list[FolderRecord]:
        docs = await self._remote(
            self.metadata.list_documents(
                self.folders_collection,
                [Equal("owner_id", owner_id), IsNull("parent_id"), OrderBy("created_at")],
            ),
            action="list root folders", write=False,
        )
        return [FolderRecord.from_document(d) for d in docs]

    async def list_trashed_files(self, owner_id: str) -> list[FileRecord]:
        docs = await self._remote(
            self.metadata.list_documents(
                self.files_collection,
                [Equal("owner_id", owner_id), Equal("is_trashed", True)],
            ),
            action="list trashed files", write=False,
        )
        return [FileRecord.from_document(d) for d in docs]

    async def list_trashed_folders(self, owner_id: str) -> list[FolderRecord]:
        docs = await self._remote(
            self.metadata.list_documents(
                self.folders_collection,
                [Equal("owner_id", owner_id), Equal("is_trashed", True)],
            ),
            action="list trashed folders", write=False,
        )
        return [FolderRecord.from_document(d) for d in docs]

    async def get_file(self, owner_id: str, file_id: str) -> FileRecord:
        doc = await self._get_owned(self.files_collection, "file", owner_id, file_id)
        return FileRecord.from_document(doc)

    async def get_folder(self, owner_id: str, folder_id: str) -> FolderRecord:
        doc = await self._get_owned(self.folders_collection, "folder", owner_id, folder_id)
        return FolderRecord.from_document(doc)

    async def read_file_bytes(self, owner_id: str, file_id: str) -> bytes:
        await self._get_owned(self.files_collection, "file", owner_id, file_id)
        try:
            return await self._remote(
                self.blobs.get(self.bucket, file_id), action="download blob", write=False,
            )
        except BlobNotFoundError:
            raise RecordNotFoundError("blob", file_id) from None

    async def download_url(self, owner_id: str, file_id: str) -> str:
        await self._get_owned(self.files_collection, "file", owner_id, file_id)
        return self._blob_url(
            lambda: self.blobs.get_download_url(self.bucket, file_id), action="sign download url",
        )

    async def preview_url(self, owner_id: str, file_id: str, width: int = 400, height: int = 400, quality: int = 100) -> str:
        await self._get_owned(self.files_collection, "file", owner_id, file_id)
        return self._blob_url(
            lambda: self.blobs.get_preview_url(self.bucket, file_id, width, height, quality),
            action="sign preview url",
        )

    # ── writes ───────────────────────────────────────────────────

    async def save_file(
        self,
        owner_id: str,
        data: bytes,
        name: str,
        mime_type: str,
        folder_id: Optional[str] = None,
    ) -> FileRecord:
        """Two-phase upload: blob first, then the metadata record.

        If the blob write fails nothing is created. If the metadata write
        fails the blob is deleted as compensation; when that also fails the
        blob id goes to the orphan ledger. Either way PartialUploadError is
        raised.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("File name must not be empty")
        if folder_id is not None:
            await self._get_owned(self.folders_collection, "folder", owner_id, folder_id)

        blob_id = new_id()
        await self._remote(
            self.blobs.put(self.bucket, blob_id, data, mime_type or "application/octet-stream"),
            action="upload blob",
        )

        now = now_ms()
        record = FileRecord(
            id=blob_id,
            owner_id=owner_id,
            name=name,
            kind=get_file_kind(mime_type),
            mime_type=mime_type or "",
            size_bytes=len(data),
            folder_id=folder_id,
            created_at=now,
            updated_at=now,
            content=extract_text(data, mime_type, self.content_limit),
        )
        try:
            await self._remote(
                self.metadata.create_document(self.files_collection, blob_id, record.document_fields()),
                action="save file metadata",
            )
        except DriveError as e:
            compensated = await self._discard_blob(blob_id)
            raise PartialUploadError(blob_id, e.message, compensated=compensated) from e

        logger.info("Uploaded %s (%d bytes) for owner %s", blob_id, record.size_bytes, owner_id)
        return record

    async def _discard_blob(self, blob_id: str) -> bool:
        try:
            await self._remote(self.blobs.delete(self.bucket, blob_id), action="delete orphaned blob")
        except DriveError:
            self.orphans.record(blob_id)
            return False
        logger.warning("Deleted blob %s after its metadata write failed", blob_id)
        return True

    async def create_folder(self, owner_id: str, name: str, parent_id: Optional[str] = None) -> FolderRecord:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Folder name must not be empty")
        if parent_id is not None:
            await self._get_owned(self.folders_collection, "folder", owner_id, parent_id)

        record = FolderRecord(
            id=new_id(),
            owner_id=owner_id,
            name=name,
            parent_id=parent_id,
            created_at=now_ms(),
        )
        await self._remote(
            self.metadata.create_document(self.folders_collection, record.id, record.document_fields()),
            action="create folder",
        )
        return record

    async def update_file(self, owner_id: str, file_id: str, changes: dict[str, Any]) -> FileRecord:
        """Apply metadata changes and bump ``updated_at`` (never backwards)."""
        illegal = IMMUTABLE_FILE_FIELDS & set(changes)
        if illegal:
            raise ValidationError(f"Immutable file fields: {sorted(illegal)}")
        if "name" in changes and not str(changes["name"]).strip():
            raise ValidationError("File name must not be empty")
        if changes.get("folder_id") is not None:
            await self._get_owned(self.folders_collection, "folder", owner_id, changes["folder_id"])

        current = FileRecord.from_document(
            await self._get_owned(self.files_collection, "file", owner_id, file_id)
        )
        fields = {**changes, "updated_at": max(now_ms(), current.updated_at)}
        try:
            doc = await self._remote(
                self.metadata.update_document(self.files_collection, file_id, fields),
                action="update file",
            )
        except DocumentNotFoundError:
            raise RecordNotFoundError("file", file_id) from None
        return FileRecord.from_document(doc)

    async def update_folder(self, owner_id: str, folder_id: str, changes: dict[str, Any]) -> FolderRecord:
        illegal = set(changes) - MUTABLE_FOLDER_FIELDS
        if illegal:
            raise ValidationError(f"Immutable folder fields: {sorted(illegal)}")
        if "name" in changes and not str(changes["name"]).strip():
            raise ValidationError("Folder name must not be empty")

        await self._get_owned(self.folders_collection, "folder", owner_id, folder_id)
        if "parent_id" in changes:
            target = changes["parent_id"]
            if target is not None:
                await self._get_owned(self.folders_collection, "folder", owner_id, target)
            check_folder_move(await self.list_folders(owner_id), folder_id, target)

        try:
            doc = await self._remote(
                self.metadata.update_document(self.folders_collection, folder_id, changes),
                action="update folder",
            )
        except DocumentNotFoundError:
            raise RecordNotFoundError("folder", folder_id) from None
        return FolderRecord.from_document(doc)

    # ── permanent deletes ────────────────────────────────────────

    async def delete_file(self, owner_id: str, file_id: str) -> None:
        """Delete the blob, then the metadata record."""
        await self._get_owned(self.files_collection, "file", owner_id, file_id)
        await self._remote(self.blobs.delete(self.bucket, file_id), action="delete blob")
        try:
            await self._remote(
                self.metadata.delete_document(self.files_collection, file_id),
                action="delete file metadata",
            )
        except DocumentNotFoundError:
            raise RecordNotFoundError("file", file_id) from None
        except DriveError:
            logger.error("File %s lost its blob but kept its metadata record", file_id)
            raise

    async def delete_folder(self, owner_id: str, folder_id: str) -> None:
        """Delete a folder, every folder beneath it and all files they contain.

        Files go first, then folders from the deepest level up, so a failure
        part way never leaves a file pointing at a deleted folder.
        """
        await self._get_owned(self.folders_collection, "folder", owner_id, folder_id)
        folders = await self.list_folders(owner_id)
        subtree = descendant_folder_ids(folders, folder_id)
        members = set(subtree)

        for f in await self.list_files(owner_id):
            if f.folder_id in members:
                await self.delete_file(owner_id, f.id)

        for fid in reversed(subtree):
            try:
                await self._remote(
                    self.metadata.delete_document(self.folders_collection, fid),
                    action="delete folder",
                )
            except DocumentNotFoundError:
                raise RecordNotFoundError("folder", fid) from None
        logger.info("Deleted folder %s (%d folder(s) total) for owner %s", folder_id, len(subtree), owner_id)
