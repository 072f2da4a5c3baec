"""Drive session: the client-side virtual file system for one signed-in user.

The session caches every file and folder record of the current owner,
projects them through the selected view, and runs every command against
the repository. Mutations are applied locally first and rolled back if the
remote write fails. Commands never raise DriveError; they return an
OperationResult and keep the latest failure in ``last_error``.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from clouddrive.schemas.analysis import AnalysisResult, ChatTurn
from clouddrive.schemas.drive import DriveStateResponse, DriveView, ItemKind, OperationResult
from clouddrive.schemas.file import FileKind, FileRecord, FolderRecord
from clouddrive.schemas.user import CurrentUser
from clouddrive.services.analysis import FAILED_SUMMARY, UNSUPPORTED_SUMMARY, FileAnalyzer
from clouddrive.services.drive_repository import DriveRepository, now_ms
from clouddrive.services.errors import (
    BulkOperationError,
    DriveError,
    RecordNotFoundError,
    RemoteReadError,
    UnauthenticatedError,
    ValidationError,
)
from clouddrive.services.identity import IdentityProvider
from clouddrive.services.optimistic import apply_optimistic
from clouddrive.services.projection import (
    breadcrumbs,
    check_folder_move,
    descendant_folder_ids,
    list_visible,
    storage_used,
)
from clouddrive.services.seed_defaults import seed_default_folders

logger = logging.getLogger(__name__)


class DriveSession:
    """VFS state manager. One instance per active session."""

    def __init__(
        self,
        identity: IdentityProvider,
        repository: DriveRepository,
        analyzer: Optional[FileAnalyzer] = None,
        *,
        seed_folders: Optional[Sequence[str]] = None,
    ):
        self.identity = identity
        self.repository = repository
        self.analyzer = analyzer
        self._seed_folders = seed_folders

        # navigation
        self.view = DriveView.DRIVE
        self.current_folder_id: Optional[str] = None
        self.selected_file: Optional[FileRecord] = None

        # projections
        self.files: list[FileRecord] = []
        self.folders: list[FolderRecord] = []
        self.breadcrumbs: list[FolderRecord] = []
        self.total_storage_used = 0

        # in-flight work
        self.is_loading = False
        self._uploads_in_flight = 0
        self.analyzing_file_id: Optional[str] = None
        self.last_error: Optional[OperationResult] = None

        self._files: dict[str, FileRecord] = {}
        self._folders: dict[str, FolderRecord] = {}
        self._owner_id: Optional[str] = None
        self._has_seeded = False
        self._load_generation = 0
        self._analysis_tasks: set[asyncio.Task] = set()
        self._unsubscribe = identity.on_auth_change(self._on_auth_change)

    # ── state helpers ────────────────────────────────────────────

    @property
    def is_uploading(self) -> bool:
        return self._uploads_in_flight > 0

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    def _require_user(self) -> CurrentUser:
        user = self.identity.current_user()
        if user is None:
            raise UnauthenticatedError()
        return user

    def _is_current(self, owner_id: str) -> bool:
        user = self.identity.current_user()
        return user is not None and user.id == owner_id and self._owner_id == owner_id

    def _reproject(self) -> None:
        visible = list_visible(self._files.values(), self._folders.values(), self.view, self.current_folder_id)
        self.files = visible.files
        self.folders = visible.folders
        self.total_storage_used = storage_used(self._files.values())
        if self.view == DriveView.DRIVE:
            self.breadcrumbs = breadcrumbs(self._folders.values(), self.current_folder_id)
        else:
            self.breadcrumbs = []
        if self.selected_file is not None:
            self.selected_file = self._files.get(self.selected_file.id)

    def _reset(self) -> None:
        self._load_generation += 1
        self._files = {}
        self._folders = {}
        self._owner_id = None
        self._has_seeded = False
        self.view = DriveView.DRIVE
        self.current_folder_id = None
        self.selected_file = None
        self.analyzing_file_id = None
        self.is_loading = False
        self.last_error = None
        self._reproject()

    def _fail(self, error: DriveError) -> OperationResult:
        result = OperationResult(
            ok=False,
            error_code=error.code,
            message=error.message,
            failed_ids=list(getattr(error, "failed_ids", [])),
        )
        self.last_error = result
        return result

    def _ok(self, item_id: Optional[str] = None) -> OperationResult:
        self.last_error = None
        return OperationResult.success(item_id)

    async def _command(self, operation: Callable[[], Awaitable[Optional[str]]]) -> OperationResult:
        try:
            item_id = await operation()
        except DriveError as e:
            return self._fail(e)
        return self._ok(item_id)

    def _cached(self, record_id: str, kind: ItemKind):
        store = self._files if kind == ItemKind.FILE else self._folders
        record = store.get(record_id)
        if record is None:
            raise RecordNotFoundError(kind.value, record_id)
        return record

    def _put(self, record) -> None:
        if isinstance(record, FileRecord):
            self._files[record.id] = record
        else:
            self._folders[record.id] = record

    @staticmethod
    def _parse_kind(kind) -> ItemKind:
        try:
            return ItemKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown item kind: {kind}") from None

    def state(self) -> DriveStateResponse:
        return DriveStateResponse(
            view=self.view,
            current_folder_id=self.current_folder_id,
            files=self.files,
            folders=self.folders,
            breadcrumbs=self.breadcrumbs,
            total_storage_used=self.total_storage_used,
            is_loading=self.is_loading,
            analyzing_file_id=self.analyzing_file_id,
            selected_file_id=self.selected_file.id if self.selected_file else None,
            last_error=self.last_error,
        )

    # ── loading ──────────────────────────────────────────────────

    async def refresh(self) -> OperationResult:
        """Reload every record for the owner from the metadata store.

        Overlapping calls are allowed; only the latest one's result is applied.
        A failed load leaves the last good projection in place.
        """
        try:
            user = self._require_user()
        except DriveError as e:
            self._reset()
            return self._fail(e)

        if self._owner_id is not None and self._owner_id != user.id:
            self._reset()
        self._load_generation += 1
        generation = self._load_generation
        self.is_loading = True
        try:
            if not self._has_seeded:
                await seed_default_folders(self.repository, user.id, self._seed_folders)
                self._has_seeded = True
            files, folders = await asyncio.gather(
                self.repository.list_files(user.id),
                self.repository.list_folders(user.id),
            )
        except DriveError as e:
            if generation == self._load_generation:
                self.is_loading = False
                return self._fail(e)
            return OperationResult(ok=False, error_code=e.code, message=e.message)

        if generation != self._load_generation:
            logger.debug("Discarding stale load %d (latest %d)", generation, self._load_generation)
            return OperationResult.success()

        self._owner_id = user.id
        self._files = {f.id: f for f in files}
        self._folders = {f.id: f for f in folders}
        if self.current_folder_id is not None and self.current_folder_id not in self._folders:
            self.current_folder_id = None
        self.is_loading = False
        self._reproject()
        return self._ok()

    async def _on_auth_change(self, user: Optional[CurrentUser]) -> None:
        if user is None:
            logger.info("Signed out, clearing drive state")
            self._reset()
            return
        if user.id != self._owner_id:
            self._reset()
            await self.refresh()

    def close(self) -> None:
        self._unsubscribe()
        for task in list(self._analysis_tasks):
            task.cancel()

    # ── navigation ───────────────────────────────────────────────

    def change_view(self, view: DriveView) -> OperationResult:
        try:
            self.view = DriveView(view)
        except ValueError:
            return self._fail(ValidationError(f"Unknown view: {view}"))
        self.current_folder_id = None
        self.selected_file = None
        self._reproject()
        return self._ok()

    def navigate_to(self, folder_id: Optional[str]) -> OperationResult:
        if self.view != DriveView.DRIVE:
            return self._fail(ValidationError("Folder navigation is only available in the drive view"))
        if folder_id is not None:
            folder = self._folders.get(folder_id)
            if folder is None:
                return self._fail(RecordNotFoundError("folder", folder_id))
            if folder.is_trashed:
                return self._fail(ValidationError("Cannot open a folder that is in the trash"))
        self.current_folder_id = folder_id
        self.selected_file = None
        self._reproject()
        return self._ok(folder_id)

    def select_file(self, file_id: Optional[str]) -> OperationResult:
        if file_id is None:
            self.selected_file = None
            return self._ok()
        record = self._files.get(file_id)
        if record is None:
            return self._fail(RecordNotFoundError("file", file_id))
        self.selected_file = record
        return self._ok(file_id)

    # ── creation ─────────────────────────────────────────────────

    def _target_folder(self) -> Optional[str]:
        return self.current_folder_id if self.view == DriveView.DRIVE else None

    async def upload_file(self, data: bytes, name: str, mime_type: str) -> OperationResult:
        """Upload into the current folder (root outside the drive view) and start analysis."""

        async def run():
            user = self._require_user()
            if not (name or "").strip():
                raise ValidationError("File name must not be empty")
            target = self._target_folder()
            self._uploads_in_flight += 1
            try:
                record = await self.repository.save_file(user.id, data, name, mime_type, target)
            finally:
                self._uploads_in_flight -= 1
            if self._is_current(user.id):
                self._put(record)
                self._reproject()
            self._schedule_analysis(record, user.id)
            return record.id

        return await self._command(run)

    async def create_folder(self, name: str) -> OperationResult:
        async def run():
            user = self._require_user()
            if not (name or "").strip():
                raise ValidationError("Folder name must not be empty")
            record = await self.repository.create_folder(user.id, name, self._target_folder())
            if self._is_current(user.id):
                self._put(record)
                self._reproject()
            return record.id

        return await self._command(run)

    # ── optimistic mutations ─────────────────────────────────────

    async def _mutate(
        self,
        owner_id: str,
        before,
        after,
        commit: Callable[[], Awaitable],
        label: str,
    ):
        """Swap ``before`` for ``after`` locally, commit, keep the stored record."""

        def patch():
            self._put(after)
            self._reproject()

        def inverse():
            if self._is_current(owner_id):
                self._put(before)
                self._reproject()

        stored = await apply_optimistic(patch, inverse, commit, label=label)
        if self._is_current(owner_id):
            self._put(stored)
            self._reproject()
        return stored

    async def toggle_star(self, file_id: str) -> OperationResult:
        async def run():
            user = self._require_user()
            before = self._cached(file_id, ItemKind.FILE)
            starred = not before.is_starred
            after = before.model_copy(update={"is_starred": starred, "updated_at": max(now_ms(), before.updated_at)})
            await self._mutate(
                user.id, before, after,
                lambda: self.repository.update_file(user.id, file_id, {"is_starred": starred}),
                "star",
            )
            return file_id

        return await self._command(run)

    async def _set_trashed(self, user: CurrentUser, record_id: str, kind: ItemKind, trashed: bool) -> None:
        before = self._cached(record_id, kind)
        if kind == ItemKind.FILE:
            after = before.model_copy(update={"is_trashed": trashed, "updated_at": max(now_ms(), before.updated_at)})
            commit = lambda: self.repository.update_file(user.id, record_id, {"is_trashed": trashed})
        else:
            after = before.model_copy(update={"is_trashed": trashed})
            commit = lambda: self.repository.update_folder(user.id, record_id, {"is_trashed": trashed})
        await self._mutate(user.id, before, after, commit, "trash" if trashed else "restore")

    async def restore_item(self, record_id: str, kind: ItemKind) -> OperationResult:
        async def run():
            user = self._require_user()
            item_kind = self._parse_kind(kind)
            store = self._files if item_kind == ItemKind.FILE else self._folders
            if record_id in store:
                await self._set_trashed(user, record_id, item_kind, False)
            else:
                # Not cached: let the store decide whether it still exists.
                if item_kind == ItemKind.FILE:
                    stored = await self.repository.update_file(user.id, record_id, {"is_trashed": False})
                else:
                    stored = await self.repository.update_folder(user.id, record_id, {"is_trashed": False})
                if self._is_current(user.id):
                    self._put(stored)
                    self._reproject()
            return record_id

        return await self._command(run)

    async def delete_item(self, record_id: str, kind: ItemKind) -> OperationResult:
        """Move to trash, or delete permanently when the trash view is open."""

        async def run():
            user = self._require_user()
            item_kind = self._parse_kind(kind)
            if self.view == DriveView.TRASH:
                await self._delete_permanently(user, record_id, item_kind)
            else:
                await self._set_trashed(user, record_id, item_kind, True)
            return record_id

        return await self._command(run)

    async def _delete_permanently(self, user: CurrentUser, record_id: str, kind: ItemKind) -> None:
        self._cached(record_id, kind)
        if kind == ItemKind.FILE:
            removed_files = {record_id: self._files[record_id]}
            removed_folders = {}
            commit = lambda: self.repository.delete_file(user.id, record_id)
        else:
            removed_folders = {
                fid: self._folders[fid]
                for fid in descendant_folder_ids(self._folders.values(), record_id)
                if fid in self._folders
            }
            removed_files = {f.id: f for f in self._files.values() if f.folder_id in removed_folders}
            commit = lambda: self.repository.delete_folder(user.id, record_id)

        def patch():
            for fid in removed_files:
                self._files.pop(fid, None)
            for fid in removed_folders:
                self._folders.pop(fid, None)
            self._reproject()

        def inverse():
            if self._is_current(user.id):
                self._files.update(removed_files)
                self._folders.update(removed_folders)
                self._reproject()

        try:
            await apply_optimistic(patch, inverse, commit, label="permanent delete")
        except DriveError:
            if kind == ItemKind.FOLDER and self._is_current(user.id):
                # The cascade may have removed some records before failing.
                await self.refresh()
            raise

    def _drop_deleted(self, file_ids: Sequence[str], folder_ids: Sequence[str]) -> None:
        """Remove permanently deleted records (and folder contents) from the cache."""
        file_ids = set(file_ids)
        doomed = set()
        for folder_id in folder_ids:
            doomed.update(descendant_folder_ids(self._folders.values(), folder_id))
        for fid in doomed:
            self._folders.pop(fid, None)
        for fid in list(self._files):
            if fid in file_ids or self._files[fid].folder_id in doomed:
                del self._files[fid]
        self._reproject()

    async def rename_item(self, record_id: str, kind: ItemKind, new_name: str) -> OperationResult:
        async def run():
            user = self._require_user()
            item_kind = self._parse_kind(kind)
            name = (new_name or "").strip()
            if not name:
                raise ValidationError("Name must not be empty")
            before = self._cached(record_id, item_kind)
            if item_kind == ItemKind.FILE:
                after = before.model_copy(update={"name": name, "updated_at": max(now_ms(), before.updated_at)})
                commit = lambda: self.repository.update_file(user.id, record_id, {"name": name})
            else:
                after = before.model_copy(update={"name": name})
                commit = lambda: self.repository.update_folder(user.id, record_id, {"name": name})
            await self._mutate(user.id, before, after, commit, "rename")
            return record_id

        return await self._command(run)

    async def move_item(self, record_id: str, kind: ItemKind, target_folder_id: Optional[str]) -> OperationResult:
        async def run():
            user = self._require_user()
            item_kind = self._parse_kind(kind)
            before = self._cached(record_id, item_kind)
            if target_folder_id is not None:
                target = self._cached(target_folder_id, ItemKind.FOLDER)
                if target.is_trashed:
                    raise ValidationError("Cannot move into a folder that is in the trash")
            if item_kind == ItemKind.FILE:
                after = before.model_copy(
                    update={"folder_id": target_folder_id, "updated_at": max(now_ms(), before.updated_at)}
                )
                commit = lambda: self.repository.update_file(user.id, record_id, {"folder_id": target_folder_id})
            else:
                check_folder_move(self._folders.values(), record_id, target_folder_id)
                after = before.model_copy(update={"parent_id": target_folder_id})
                commit = lambda: self.repository.update_folder(user.id, record_id, {"parent_id": target_folder_id})
            await self._mutate(user.id, before, after, commit, "move")
            return record_id

        return await self._command(run)

    async def empty_trash(self) -> OperationResult:
        """Permanently delete every trashed file and folder of the owner.

        Continues past individual failures and reports the ids that failed.
        """

        async def run():
            user = self._require_user()
            files = await self.repository.list_trashed_files(user.id)
            folders = await self.repository.list_trashed_folders(user.id)
            if not files and not folders:
                return None

            failed: list[str] = []
            deleted_files: list[str] = []
            deleted_folders: list[str] = []
            for f in files:
                try:
                    await self.repository.delete_file(user.id, f.id)
                except RecordNotFoundError:
                    pass
                except DriveError as e:
                    logger.warning("Empty trash: file %s failed: %s", f.id, e)
                    failed.append(f.id)
                    continue
                deleted_files.append(f.id)
            for folder in folders:
                try:
                    await self.repository.delete_folder(user.id, folder.id)
                except RecordNotFoundError:
                    # already removed with a trashed ancestor
                    pass
                except DriveError as e:
                    logger.warning("Empty trash: folder %s failed: %s", folder.id, e)
                    failed.append(folder.id)
                    continue
                deleted_folders.append(folder.id)

            logger.info(
                "Emptied trash for %s: %d file(s), %d folder(s), %d failure(s)",
                user.id, len(files), len(folders), len(failed),
            )
            if self._is_current(user.id):
                self._drop_deleted(deleted_files, deleted_folders)
            reloaded = await self.refresh()
            if failed:
                raise BulkOperationError(failed)
            if not reloaded.ok:
                raise RemoteReadError(f"Trash emptied but reload failed: {reloaded.message}")
            return None

        return await self._command(run)

    # ── AI analysis ──────────────────────────────────────────────

    def _schedule_analysis(self, record: FileRecord, owner_id: str) -> None:
        if self.analyzer is None:
            return
        self.analyzing_file_id = record.id
        task = asyncio.create_task(self._run_analysis(record, owner_id))
        self._analysis_tasks.add(task)
        task.add_done_callback(self._analysis_tasks.discard)

    async def _run_analysis(self, record: FileRecord, owner_id: str) -> AnalysisResult:
        try:
            image_bytes = None
            if record.kind == FileKind.IMAGE:
                try:
                    image_bytes = await self.repository.read_file_bytes(owner_id, record.id)
                except DriveError as e:
                    logger.warning("Could not load image %s for analysis: %s", record.id, e)
            result = await self.analyzer.analyze(record, image_bytes)
            if result.summary not in (FAILED_SUMMARY, UNSUPPORTED_SUMMARY):
                await self._store_analysis(owner_id, record.id, result)
            return result
        finally:
            if self.analyzing_file_id == record.id:
                self.analyzing_file_id = None

    async def _store_analysis(self, owner_id: str, file_id: str, result: AnalysisResult) -> None:
        try:
            stored = await self.repository.update_file(
                owner_id, file_id, {"summary": result.summary, "tags": result.tags},
            )
        except DriveError as e:
            logger.warning("Could not save analysis for %s: %s", file_id, e)
            return
        # The file may have been deleted or the user switched while analysis ran.
        cached = self._files.get(file_id)
        if cached is None or not self._is_current(owner_id):
            return
        self._put(cached.model_copy(
            update={"summary": stored.summary, "tags": stored.tags, "updated_at": stored.updated_at}
        ))
        self._reproject()

    async def analyze_file(self, file_id: str) -> AnalysisResult:
        """Run analysis on demand and wait for it. Raises DriveError for unknown files."""
        user = self._require_user()
        if self.analyzer is None:
            raise ValidationError("AI analysis is not configured")
        record = self._cached(file_id, ItemKind.FILE)
        self.analyzing_file_id = file_id
        return await self._run_analysis(record, user.id)

    async def wait_for_analysis(self) -> None:
        if self._analysis_tasks:
            await asyncio.gather(*list(self._analysis_tasks), return_exceptions=True)

    async def chat(self, file_id: str, message: str, history: Sequence[ChatTurn] = ()) -> str:
        user = self._require_user()
        if not (message or "").strip():
            raise ValidationError("Message must not be empty")
        if self.analyzer is None:
            raise ValidationError("AI chat is not configured")
        record = self._cached(file_id, ItemKind.FILE)
        image_bytes = None
        if record.kind == FileKind.IMAGE:
            image_bytes = await self.repository.read_file_bytes(user.id, file_id)
        return await self.analyzer.chat(record, message, image_bytes=image_bytes, history=history)

    # ── blob access ──────────────────────────────────────────────

    def _downloadable(self, file_id: str) -> FileRecord:
        record = self._cached(file_id, ItemKind.FILE)
        if record.is_trashed:
            raise ValidationError("Trashed files cannot be downloaded")
        return record

    async def download_url(self, file_id: str) -> str:
        user = self._require_user()
        self._downloadable(file_id)
        return await self.repository.download_url(user.id, file_id)

    async def preview_url(self, file_id: str, width: int = 400, height: int = 400, quality: int = 100) -> str:
        user = self._require_user()
        self._downloadable(file_id)
        return await self.repository.preview_url(user.id, file_id, width, height, quality)

    async def read_file_bytes(self, file_id: str) -> bytes:
        user = self._require_user()
        self._downloadable(file_id)
        return await self.repository.read_file_bytes(user.id, file_id)
