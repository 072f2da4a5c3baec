"""FolderDocument model - folder hierarchy metadata."""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from clouddrive.models.base import Base, CreatedAtMixin, OwnerMixin, TrashMixin


class FolderDocument(Base, OwnerMixin, TrashMixin, CreatedAtMixin):
    __tablename__ = "folders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
