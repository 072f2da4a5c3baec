"""Import all models so SQLAlchemy metadata knows about them."""
from clouddrive.models.base import Base
from clouddrive.models.file_document import FileDocument
from clouddrive.models.folder_document import FolderDocument

__all__ = ["Base", "FileDocument", "FolderDocument"]
