"""SQLAlchemy declarative base and shared mixins."""
from sqlalchemy import BigInteger, Boolean, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class OwnerMixin:
    """Adds owner_id column. Every metadata query is scoped by it."""
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)


class TrashMixin:
    """Adds the soft-delete flag."""
    is_trashed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class CreatedAtMixin:
    """Adds created_at as epoch milliseconds (set by the client, not the server)."""
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
