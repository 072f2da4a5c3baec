"""File and folder records as stored in the metadata store."""
from enum import Enum
from typing import Any, Optional

from pydantic import Field, field_validator

from clouddrive.schemas.base import CamelRecordModel


class FileKind(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    CODE = "code"
    PDF = "pdf"
    DOCUMENT = "document"
    VIDEO = "video"
    PRESENTATION = "presentation"
    AUDIO = "audio"
    UNKNOWN = "unknown"


class FileRecord(CamelRecordModel):
    """Metadata for one uploaded file. ``id`` doubles as the blob key."""

    id: str
    owner_id: str
    name: str
    kind: FileKind = FileKind.UNKNOWN
    mime_type: str = ""
    size_bytes: int = Field(default=0, ge=0)
    folder_id: Optional[str] = None
    created_at: int
    updated_at: int
    content: Optional[str] = None
    summary: Optional[str] = None
    tags: Optional[list[str]] = None
    is_starred: bool = False
    is_trashed: bool = False

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be empty")
        return v

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "FileRecord":
        data = dict(doc)
        data["is_starred"] = bool(data.get("is_starred") or False)
        data["is_trashed"] = bool(data.get("is_trashed") or False)
        return cls.model_validate(data)

    def document_fields(self) -> dict[str, Any]:
        """Fields written to the metadata store (everything except ``id``)."""
        return self.model_dump(mode="json", exclude={"id"})


class FolderRecord(CamelRecordModel):
    id: str
    owner_id: str
    name: str
    parent_id: Optional[str] = None
    created_at: int
    is_trashed: bool = False

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be empty")
        return v

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "FolderRecord":
        data = dict(doc)
        data["is_trashed"] = bool(data.get("is_trashed") or False)
        return cls.model_validate(data)

    def document_fields(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id"})
