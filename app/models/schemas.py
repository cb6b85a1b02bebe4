"""
Pydantic models for the ingest pipeline.

Shared data models across the application.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from app.utils.config import parse_extensions


# =====================================================
# File Status Models
# =====================================================

class FileStatus(str, Enum):
    """Ingestion state of a file path."""
    FOUND = "Found"
    UPLOADING = "Uploading"
    SUCCESS = "Success"
    ERROR = "Error"


class FileStatusRecord(BaseModel):
    """Snapshot of a row in the file_status table."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    file_path: str
    status: FileStatus
    sha256: Optional[str] = None
    cid: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =====================================================
# Project Models
# =====================================================

class Author(BaseModel):
    """Author descriptor attached to every asset of a project."""
    type: Optional[str] = None
    name: Optional[str] = None
    identifier: Optional[str] = None

    def as_metadata(self) -> Dict[str, str]:
        """Return only the non-empty subfields, keyed the way the backend expects."""
        author = {}
        if self.type:
            author["@type"] = self.type
        if self.name:
            author["name"] = self.name
        if self.identifier:
            author["identifier"] = self.identifier
        return author


class ProjectRecord(BaseModel):
    """Project registered against a path under the sync root."""
    model_config = ConfigDict(frozen=True)

    project_id: str
    project_path: str
    author: Optional[Author] = None
    file_extensions: List[str] = Field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "ProjectRecord":
        """Build from a ``project_metadata`` ORM row."""
        author = None
        if row.author_type or row.author_name or row.author_identifier:
            author = Author(
                type=row.author_type,
                name=row.author_name,
                identifier=row.author_identifier,
            )
        return cls(
            project_id=row.project_id,
            project_path=row.project_path,
            author=author,
            file_extensions=parse_extensions(row.file_extensions),
        )


# =====================================================
# Fingerprint / Upload Models
# =====================================================

class Fingerprint(BaseModel):
    """Digests and basic attributes of a file computed in one pass."""
    digests: Dict[str, str]
    media_type: str
    size: int
    name: str
    mod_time: datetime

    @property
    def sha256(self) -> str:
        return self.digests["sha256"]


class UploadResponse(BaseModel):
    """Body returned by the webhook server."""
    cid: Optional[str] = None
    error: Optional[str] = None
