"""Drive view state, command results and HTTP request/response schemas."""
from enum import Enum
from typing import Optional

from pydantic import Field

from clouddrive.schemas.analysis import ChatTurn
from clouddrive.schemas.base import CamelModel
from clouddrive.schemas.file import FileRecord, FolderRecord


class DriveView(str, Enum):
    DRIVE = "drive"
    RECENT = "recent"
    STARRED = "starred"
    TRASH = "trash"


class ItemKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class VisibleItems(CamelModel):
    files: list[FileRecord] = Field(default_factory=list)
    folders: list[FolderRecord] = Field(default_factory=list)


class OperationResult(CamelModel):
    """Uniform outcome of a drive command."""

    ok: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    failed_ids: list[str] = Field(default_factory=list)
    item_id: Optional[str] = None

    @classmethod
    def success(cls, item_id: Optional[str] = None) -> "OperationResult":
        return cls(ok=True, item_id=item_id)


class DriveStateResponse(CamelModel):
    view: DriveView
    current_folder_id: Optional[str] = None
    files: list[FileRecord]
    folders: list[FolderRecord]
    breadcrumbs: list[FolderRecord]
    total_storage_used: int
    is_loading: bool = False
    analyzing_file_id: Optional[str] = None
    selected_file_id: Optional[str] = None
    last_error: Optional[OperationResult] = None


class ChangeViewRequest(CamelModel):
    view: DriveView


class NavigateRequest(CamelModel):
    folder_id: Optional[str] = None


class CreateFolderRequest(CamelModel):
    name: str


class RenameRequest(CamelModel):
    name: str


class MoveRequest(CamelModel):
    target_folder_id: Optional[str] = None


class ChatRequest(CamelModel):
    message: str
    history: list[ChatTurn] = Field(default_factory=list)


class ChatResponse(CamelModel):
    reply: str


class UrlResponse(CamelModel):
    url: str
