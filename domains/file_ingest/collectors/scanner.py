"""
Discovery of candidate files under the sync root.

Walks a sync folder (or a project's subfolder) and returns every qualifying
file plus every directory seen; the directories become watch targets.
"""

import os
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from app.models.schemas import ProjectRecord
from app.utils.config import Settings, get_settings
from app.utils.helpers import get_file_extension, is_hidden, is_within, normalise_path
from domains.file_ingest.errors import ScanError


class InclusionFilter:
    """Decides whether a file name is a candidate for ingestion."""

    def __init__(
        self,
        extensions: Optional[Iterable[str]] = None,
        hidden_prefix: str = ".",
        partial_suffix: str = ".partial",
    ):
        self.extensions = {ext.lower() for ext in extensions or []}
        self.hidden_prefix = hidden_prefix
        self.partial_suffix = partial_suffix.lower()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "InclusionFilter":
        settings = settings or get_settings()
        return cls(
            extensions=settings.get_file_extensions(),
            hidden_prefix=settings.ignore_file_prefix,
            partial_suffix=settings.partial_file_suffix,
        )

    def should_include(self, path) -> bool:
        """
        Check if a file should be processed.

        A file is skipped when its name starts with the hidden prefix, when
        its extension marks an in-progress download, or when an allow-list
        is configured and does not contain its extension.
        """
        path = Path(path)
        if not path.name or is_hidden(path, self.hidden_prefix):
            return False

        ext = get_file_extension(path)
        if self.partial_suffix and ext == self.partial_suffix:
            return False

        if self.extensions and ext not in self.extensions:
            return False

        return True


def initial_scan(root: Path, file_filter: InclusionFilter) -> Tuple[List[Path], List[Path]]:
    """
    Recursively scan ``root`` for qualifying files.

    Hidden directories are not descended into.

    Args:
        root: Directory to walk
        file_filter: Inclusion filter applied to every file

    Returns:
        (files, directories) - directories include ``root`` itself

    Raises:
        ScanError: the walk hit a filesystem error
    """
    root = normalise_path(root)
    if not root.is_dir():
        raise ScanError(f"scan root is not a directory: {root}")

    def _raise(error: OSError):
        raise ScanError(f"error scanning {root}: {error}") from error

    files: List[Path] = []
    directories: List[Path] = []

    for current, dirnames, filenames in os.walk(root, onerror=_raise):
        current_path = Path(current)
        directories.append(current_path)

        dirnames[:] = sorted(
            d for d in dirnames if not is_hidden(Path(d), file_filter.hidden_prefix)
        )
        for name in sorted(filenames):
            path = current_path / name
            if file_filter.should_include(path):
                files.append(path)
                logger.info(f"Found: {path}")

    return files, directories


def project_root(project: ProjectRecord, sync_root: Path) -> Path:
    """Absolute directory of ``project`` (its path is relative to the sync root)."""
    project_path = Path(project.project_path)
    if project_path.is_absolute():
        return normalise_path(project_path)
    return normalise_path(sync_root / project_path)


def resolve_project(
    path: Path, projects: Iterable[ProjectRecord], sync_root: Path
) -> Optional[ProjectRecord]:
    """Return the project whose root is the longest prefix of ``path``."""
    path = normalise_path(path)
    best: Optional[ProjectRecord] = None
    best_depth = -1

    for project in projects:
        root = project_root(project, sync_root)
        if is_within(path, root) and len(root.parts) > best_depth:
            best = project
            best_depth = len(root.parts)

    return best
