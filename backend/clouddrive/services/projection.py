"""Pure view projection over the owner's full record set.

Nothing here performs I/O or mutates its inputs. DriveSession recomputes
the projection from its record cache after every mutation.
"""
from typing import Iterable, Optional

from clouddrive.schemas.drive import DriveView, VisibleItems
from clouddrive.schemas.file import FileRecord, FolderRecord
from clouddrive.services.errors import FolderCycleError


def list_visible(
    files: Iterable[FileRecord],
    folders: Iterable[FolderRecord],
    view: DriveView,
    current_folder_id: Optional[str] = None,
) -> VisibleItems:
    """Filter and order records for one view.

    drive:   direct children of ``current_folder_id``, not trashed
    recent:  all non-trashed files, newest ``updated_at`` first
    starred: non-trashed starred files
    trash:   every trashed file and folder
    """
    files = list(files)
    folders = list(folders)

    if view == DriveView.DRIVE:
        return VisibleItems(
            files=[f for f in files if f.folder_id == current_folder_id and not f.is_trashed],
            folders=[f for f in folders if f.parent_id == current_folder_id and not f.is_trashed],
        )
    if view == DriveView.RECENT:
        # sorted() is stable, so equal timestamps keep store order
        return VisibleItems(
            files=sorted((f for f in files if not f.is_trashed), key=lambda f: f.updated_at, reverse=True),
        )
    if view == DriveView.STARRED:
        return VisibleItems(files=[f for f in files if f.is_starred and not f.is_trashed])
    if view == DriveView.TRASH:
        return VisibleItems(
            files=[f for f in files if f.is_trashed],
            folders=[f for f in folders if f.is_trashed],
        )
    raise ValueError(f"Unknown view: {view}")


def storage_used(files: Iterable[FileRecord]) -> int:
    """Sum of ``size_bytes`` over non-trashed files."""
    return sum(f.size_bytes for f in files if not f.is_trashed)


def breadcrumbs(folders: Iterable[FolderRecord], folder_id: Optional[str]) -> list[FolderRecord]:
    """Ancestor chain from the root down to ``folder_id`` (inclusive).

    Stops at a missing parent rather than failing, so a chain whose top
    folder was permanently deleted elsewhere still renders.
    """
    by_id = {f.id: f for f in folders}
    chain: list[FolderRecord] = []
    seen: set[str] = set()
    current = folder_id
    while current is not None and current in by_id and current not in seen:
        seen.add(current)
        folder = by_id[current]
        chain.append(folder)
        current = folder.parent_id
    chain.reverse()
    return chain


def descendant_folder_ids(folders: Iterable[FolderRecord], root_id: str) -> list[str]:
    """``root_id`` followed by every folder beneath it, parents before children."""
    children: dict[Optional[str], list[str]] = {}
    for f in folders:
        children.setdefault(f.parent_id, []).append(f.id)

    order = [root_id]
    seen = {root_id}
    i = 0
    while i < len(order):
        for child in children.get(order[i], []):
            if child not in seen:
                seen.add(child)
                order.append(child)
        i += 1
    return order


def check_folder_move(folders: Iterable[FolderRecord], folder_id: str, target_parent_id: Optional[str]) -> None:
    """Raise FolderCycleError if moving ``folder_id`` under the target would create a cycle."""
    if target_parent_id is None:
        return
    if target_parent_id == folder_id:
        raise FolderCycleError("A folder cannot be moved into itself")
    if target_parent_id in descendant_folder_ids(folders, folder_id):
        raise FolderCycleError("A folder cannot be moved into one of its subfolders")
