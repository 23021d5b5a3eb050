"""
SQLAlchemy ORM Models for the shared snapshot store

This module defines the table holding serialized catalog snapshots.
"""
from datetime import datetime, timezone
from sqlalchemy import String, LargeBinary, Float, DateTime, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class SnapshotEntry(Base):
    """One serialized catalog snapshot per cache key"""
    __tablename__ = "catalog_snapshots"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False)  # Unix epoch seconds
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("idx_catalog_snapshots_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<SnapshotEntry(key={self.key}, bytes={len(self.payload)})>"
