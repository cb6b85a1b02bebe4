"""
Persistent per-file ingestion state.

The file_status table is the single source of truth for a path's processing
state. Every transition is one UPDATE keyed by file path and guarded by the
current status, so Success and Error are never overwritten.
"""

from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.models.schemas import FileStatus, FileStatusRecord, ProjectRecord
from app.models.tables import FileStatusRow, ProjectMetadataRow
from app.utils.database import DatabaseClient, get_database_client
from app.utils.helpers import now_utc
from domains.file_ingest.errors import StatusStoreError

NON_TERMINAL = (FileStatus.FOUND.value, FileStatus.UPLOADING.value)


class StatusStore:
    """Status transitions and project lookups backed by the relational store."""

    def __init__(self, db: Optional[DatabaseClient] = None):
        self.db = db or get_database_client()

    # ------------------------------------------------------------------
    # file_status
    # ------------------------------------------------------------------

    def get(self, file_path: str) -> Optional[FileStatusRecord]:
        """Return the record for ``file_path`` or None."""
        try:
            with self.db.session() as session:
                row = session.scalars(
                    select(FileStatusRow).where(FileStatusRow.file_path == file_path)
                ).one_or_none()
                return FileStatusRecord.model_validate(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StatusStoreError(f"error querying status of {file_path}: {e}") from e

    def claim_or_get(self, file_path: str) -> FileStatusRecord:
        """
        Insert ``file_path`` as Found unless it is already tracked.

        Returns:
            The new record, or the existing one unchanged

        Raises:
            StatusStoreError: the query failed, or another worker claimed the
                path between the lookup and the insert
        """
        existing = self.get(file_path)
        if existing is not None:
            return existing

        now = now_utc()
        row = FileStatusRow(
            file_path=file_path,
            status=FileStatus.FOUND.value,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.session() as session:
                session.add(row)
                session.flush()
                return FileStatusRecord.model_validate(row)
        except IntegrityError as e:
            raise StatusStoreError(f"file {file_path} was claimed concurrently: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StatusStoreError(f"error setting file status to found: {e}") from e

    def mark_uploading(self, file_path: str, sha256: Optional[str]) -> None:
        """Found/Uploading -> Uploading, recording the primary digest."""
        self._transition(file_path, FileStatus.UPLOADING, sha256=sha256)

    def mark_success(self, file_path: str, cid: str) -> None:
        """Found/Uploading -> Success with the content identifier."""
        self._transition(file_path, FileStatus.SUCCESS, cid=cid)

    def mark_error(self, file_path: str, message: str) -> bool:
        """
        Found/Uploading -> Error.

        A failure to persist is logged and reported through the return value
        so it never masks the error being recorded.
        """
        try:
            self._transition(file_path, FileStatus.ERROR, error=message)
        except StatusStoreError as e:
            logger.error(f"error setting file status to error: {e}")
            return False
        return True

    def _transition(self, file_path: str, status: FileStatus, **values) -> None:
        statement = (
            update(FileStatusRow)
            .where(FileStatusRow.file_path == file_path)
            .where(FileStatusRow.status.in_(NON_TERMINAL))
            .values(status=status.value, updated_at=now_utc(), **values)
        )
        try:
            with self.db.session() as session:
                result = session.execute(statement)
        except SQLAlchemyError as e:
            raise StatusStoreError(f"error setting file status to {status.value}: {e}") from e

        if result.rowcount == 0:
            raise StatusStoreError(
                f"cannot set {file_path} to {status.value}: not tracked or already terminal"
            )

    def counts_by_status(self) -> Dict[FileStatus, int]:
        """Number of tracked files per status."""
        try:
            with self.db.session() as session:
                rows = session.execute(
                    select(FileStatusRow.status, func.count()).group_by(FileStatusRow.status)
                ).all()
        except SQLAlchemyError as e:
            raise StatusStoreError(f"error counting file statuses: {e}") from e

        counts = {status: 0 for status in FileStatus}
        for status, count in rows:
            counts[FileStatus(status)] = count
        return counts

    # ------------------------------------------------------------------
    # project_metadata
    # ------------------------------------------------------------------

    def list_projects(self) -> List[ProjectRecord]:
        """All configured projects, ordered by path."""
        try:
            with self.db.session() as session:
                rows = session.scalars(
                    select(ProjectMetadataRow).order_by(ProjectMetadataRow.project_path)
                ).all()
                return [ProjectRecord.from_row(row) for row in rows]
        except SQLAlchemyError as e:
            raise StatusStoreError(f"error querying projects: {e}") from e

    def upsert_project(self, project: ProjectRecord) -> None:
        """Create or update a project keyed by project_id."""
        author = project.author
        values = {
            "project_path": project.project_path,
            "author_type": author.type if author else None,
            "author_name": author.name if author else None,
            "author_identifier": author.identifier if author else None,
            "file_extensions": ",".join(project.file_extensions) or None,
        }
        try:
            with self.db.session() as session:
                row = session.scalars(
                    select(ProjectMetadataRow).where(ProjectMetadataRow.project_id == project.project_id)
                ).one_or_none()
                if row is None:
                    session.add(ProjectMetadataRow(project_id=project.project_id, **values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
        except SQLAlchemyError as e:
            raise StatusStoreError(f"error saving project {project.project_id}: {e}") from e
