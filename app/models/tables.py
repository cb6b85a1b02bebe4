"""
SQLAlchemy tables backing the ingest pipeline.

- file_status: one row per discovered file path
- project_metadata: one row per configured sync project
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGSERIAL on PostgreSQL, rowid alias on SQLite
_BigId = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Declarative base for all tables."""


class FileStatusRow(Base):
    """Ingestion state of a single file path."""

    __tablename__ = "file_status"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    sha256: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cid: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_file_status_file_path", "file_path"),
        Index("idx_file_status_sha256", "sha256"),
        Index("idx_file_status_status", "status"),
    )


class ProjectMetadataRow(Base):
    """Project registered under the sync root."""

    __tablename__ = "project_metadata"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    project_path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    author_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author_identifier: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_extensions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_project_metadata_project_id", "project_id"),
    )
