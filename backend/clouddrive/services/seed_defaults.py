"""Seed default root folders for a new owner.

Idempotent: seeding only happens when the owner has no root folders at
all, so returning users are never touched.
"""
import logging
from typing import Optional, Sequence

from clouddrive.config import settings
from clouddrive.schemas.file import FolderRecord
from clouddrive.services.drive_repository import DriveRepository

logger = logging.getLogger(__name__)


async def seed_default_folders(
    repository: DriveRepository,
    owner_id: str,
    names: Optional[Sequence[str]] = None,
) -> list[FolderRecord]:
    """Create the default folders if the owner has zero root folders.

    Returns the folders created (empty when nothing was seeded).
    """
    existing = await repository.list_root_folders(owner_id)
    if existing:
        logger.debug("Owner %s already has %d root folder(s), skipping seed", owner_id, len(existing))
        return []

    created = []
    for name in (settings.DEFAULT_FOLDERS if names is None else names):
        created.append(await repository.create_folder(owner_id, name, None))
    logger.info("Seeded %d default folder(s) for owner %s", len(created), owner_id)
    return created
