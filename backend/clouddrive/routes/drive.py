"""Drive API routes.

Each signed-in user gets one DriveSession, looked up by the identity
headers set by the upstream identity provider. Destructive endpoints
require ``confirm=true``.
"""
import logging
from collections import OrderedDict
from typing import Optional

from fastapi import APIRouter, Depends, File as FastAPIFile, Header, HTTPException, Query, Request, UploadFile

from clouddrive.config import settings
from clouddrive.schemas.analysis import AnalysisResult
from clouddrive.schemas.drive import (
    ChangeViewRequest,
    ChatRequest,
    ChatResponse,
    CreateFolderRequest,
    DriveStateResponse,
    ItemKind,
    MoveRequest,
    NavigateRequest,
    OperationResult,
    RenameRequest,
    UrlResponse,
)
from clouddrive.schemas.user import CurrentUser
from clouddrive.services.analysis import FileAnalyzer
from clouddrive.services.drive_repository import DriveRepository
from clouddrive.services.drive_session import DriveSession
from clouddrive.services.errors import DriveError
from clouddrive.services.identity import StaticIdentityProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/drive", tags=["drive"])

ERROR_STATUS = {
    "unauthenticated": 401,
    "invalid_input": 400,
    "folder_cycle": 409,
    "not_found": 404,
    "remote_read_failed": 502,
    "remote_write_failed": 502,
    "partial_upload": 502,
    "bulk_partial_failure": 502,
    "remote_timeout": 504,
}


class SessionRegistry:
    """Holds one DriveSession per user id, evicting the least recently used.

    At most ``max_sessions`` sessions stay cached; an evicted user gets a
    fresh session (and a full reload) on their next request.
    """

    def __init__(
        self,
        repository: DriveRepository,
        analyzer: Optional[FileAnalyzer] = None,
        max_sessions: Optional[int] = None,
    ):
        self.repository = repository
        self.analyzer = analyzer
        self.max_sessions = max_sessions or settings.MAX_DRIVE_SESSIONS
        self._sessions: OrderedDict[str, DriveSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    async def get(self, user: CurrentUser) -> DriveSession:
        session = self._sessions.get(user.id)
        if session is not None:
            self._sessions.move_to_end(user.id)
            return session

        identity = StaticIdentityProvider(user)
        session = DriveSession(identity, self.repository, self.analyzer)
        self._sessions[user.id] = session
        logger.info("Opened drive session for %s", user.id)
        while len(self._sessions) > self.max_sessions:
            evicted_id, evicted = self._sessions.popitem(last=False)
            evicted.close()
            logger.info("Evicted idle drive session for %s", evicted_id)
        await session.refresh()
        return session

    def close(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> CurrentUser:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return CurrentUser(id=x_user_id, display_name=x_user_name or "User", email=x_user_email or "")


async def get_session(request: Request, user: CurrentUser = Depends(get_current_user)) -> DriveSession:
    registry: SessionRegistry = request.app.state.sessions
    return await registry.get(user)


def _raise_for(result: OperationResult) -> None:
    if result.ok:
        return
    status = ERROR_STATUS.get(result.error_code or "", 500)
    raise HTTPException(status_code=status, detail=result.model_dump(by_alias=True))


def _raise_drive_error(e: DriveError):
    raise HTTPException(status_code=ERROR_STATUS.get(e.code, 500), detail=e.message) from e


def _require_confirmation(confirm: bool) -> None:
    if not confirm:
        raise HTTPException(status_code=400, detail="This action requires confirm=true")


@router.get("", response_model=DriveStateResponse)
async def get_state(session: DriveSession = Depends(get_session)):
    """Current view, projections and storage usage."""
    return session.state()


@router.post("/refresh", response_model=DriveStateResponse)
async def refresh(session: DriveSession = Depends(get_session)):
    _raise_for(await session.refresh())
    return session.state()


@router.post("/view", response_model=DriveStateResponse)
async def change_view(body: ChangeViewRequest, session: DriveSession = Depends(get_session)):
    _raise_for(session.change_view(body.view))
    return session.state()


@router.post("/navigate", response_model=DriveStateResponse)
async def navigate(body: NavigateRequest, session: DriveSession = Depends(get_session)):
    _raise_for(session.navigate_to(body.folder_id))
    return session.state()


@router.post("/files", response_model=DriveStateResponse, status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    session: DriveSession = Depends(get_session),
):
    """Upload a file into the current folder."""
    contents = await file.read()
    _raise_for(await session.upload_file(
        contents, file.filename or "unnamed", file.content_type or "application/octet-stream",
    ))
    return session.state()


@router.post("/folders", response_model=DriveStateResponse, status_code=201)
async def create_folder(body: CreateFolderRequest, session: DriveSession = Depends(get_session)):
    _raise_for(await session.create_folder(body.name))
    return session.state()


@router.delete("/items/{kind}/{item_id}", response_model=DriveStateResponse)
async def delete_item(
    kind: ItemKind,
    item_id: str,
    confirm: bool = Query(False),
    session: DriveSession = Depends(get_session),
):
    """Move to trash, or delete permanently when the trash view is open."""
    _require_confirmation(confirm)
    _raise_for(await session.delete_item(item_id, kind))
    return session.state()


@router.post("/items/{kind}/{item_id}/restore", response_model=DriveStateResponse)
async def restore_item(kind: ItemKind, item_id: str, session: DriveSession = Depends(get_session)):
    _raise_for(await session.restore_item(item_id, kind))
    return session.state()


@router.put("/items/{kind}/{item_id}/name", response_model=DriveStateResponse)
async def rename_item(
    kind: ItemKind, item_id: str, body: RenameRequest,
    session: DriveSession = Depends(get_session),
):
    _raise_for(await session.rename_item(item_id, kind, body.name))
    return session.state()


@router.put("/items/{kind}/{item_id}/parent", response_model=DriveStateResponse)
async def move_item(
    kind: ItemKind, item_id: str, body: MoveRequest,
    session: DriveSession = Depends(get_session),
):
    _raise_for(await session.move_item(item_id, kind, body.target_folder_id))
    return session.state()


@router.post("/files/{file_id}/star", response_model=DriveStateResponse)
async def toggle_star(file_id: str, session: DriveSession = Depends(get_session)):
    _raise_for(await session.toggle_star(file_id))
    return session.state()


@router.post("/trash/empty", response_model=DriveStateResponse)
async def empty_trash(confirm: bool = Query(False), session: DriveSession = Depends(get_session)):
    _require_confirmation(confirm)
    _raise_for(await session.empty_trash())
    return session.state()


@router.get("/files/{file_id}/download-url", response_model=UrlResponse)
async def download_url(file_id: str, session: DriveSession = Depends(get_session)):
    try:
        return UrlResponse(url=await session.download_url(file_id))
    except DriveError as e:
        _raise_drive_error(e)


@router.get("/files/{file_id}/preview-url", response_model=UrlResponse)
async def preview_url(
    file_id: str,
    width: int = Query(400, ge=1),
    height: int = Query(400, ge=1),
    quality: int = Query(100, ge=1, le=100),
    session: DriveSession = Depends(get_session),
):
    try:
        return UrlResponse(url=await session.preview_url(file_id, width, height, quality))
    except DriveError as e:
        _raise_drive_error(e)


@router.post("/files/{file_id}/analyze", response_model=AnalysisResult)
async def analyze_file(file_id: str, session: DriveSession = Depends(get_session)):
    try:
        return await session.analyze_file(file_id)
    except DriveError as e:
        _raise_drive_error(e)


@router.post("/files/{file_id}/chat", response_model=ChatResponse)
async def chat_with_file(file_id: str, body: ChatRequest, session: DriveSession = Depends(get_session)):
    """Ask a question about one file. The file is re-sent as context on every call."""
    try:
        reply = await session.chat(file_id, body.message, history=body.history)
    except DriveError as e:
        _raise_drive_error(e)
    return ChatResponse(reply=reply)
