"""Authenticated user as seen by the drive core."""
from typing import Optional

from clouddrive.schemas.base import CamelModel


class CurrentUser(CamelModel):
    id: str
    display_name: str
    email: str = ""
    avatar: Optional[str] = None
