#!/usr/bin/env python3
"""
Folder collector for the File Ingestion domain.

Scans the configured sync folders, then watches them for new files. Every
candidate goes through the same pipeline: claim the path in the status
store, classify and fingerprint it, post it to the webhook server and record
the outcome. Uses the watchdog library for filesystem event monitoring.
"""

import queue
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from app.models.schemas import FileStatus, ProjectRecord
from app.utils.config import Settings, get_settings
from app.utils.database import DatabaseClient
from app.utils.helpers import format_bytes, get_file_extension, normalise_path
from domains.file_ingest.collectors.scanner import (
    InclusionFilter,
    initial_scan,
    project_root,
    resolve_project,
)
from domains.file_ingest.errors import (
    IngestError,
    PreviouslyFailedError,
    ScanError,
    StatusStoreError,
    UploadError,
)
from domains.file_ingest.processors.bundles import BundleVerifier, ZipBundleVerifier
from domains.file_ingest.processors.classifier import extract_file
from domains.file_ingest.processors.status_store import StatusStore
from domains.file_ingest.processors.uploader import WebhookUploader


class IngestPipeline:
    """Per-file ingestion: status replay, classification, upload."""

    def __init__(
        self,
        store: StatusStore,
        uploader: WebhookUploader,
        verifier: Optional[BundleVerifier] = None,
        settings: Optional[Settings] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.uploader = uploader
        self.verifier = verifier or ZipBundleVerifier()
        self.sync_root = self.settings.get_sync_root()
        self.cancel = cancel or threading.Event()

    def handle_new_file(self, path: Path, project: Optional[ProjectRecord] = None) -> Optional[str]:
        """
        Ingest ``path`` and return the CID assigned by the server.

        Returns None when the project's extension allow-list excludes the file.

        Raises:
            PreviouslyFailedError: the path already ended in Error
            IngestError: any failure of this attempt (already recorded as Error,
                except store failures and cancelled uploads)
        """
        path = normalise_path(path)
        if project is not None and project.file_extensions:
            if get_file_extension(path) not in project.file_extensions:
                return None

        file_key = str(path)
        record = self.store.claim_or_get(file_key)

        if record.status == FileStatus.SUCCESS:
            logger.info(f"Already uploaded: {file_key} ({record.cid})")
            return record.cid
        elif record.status == FileStatus.ERROR:
            raise PreviouslyFailedError(file_key, record.error)
        elif record.status == FileStatus.UPLOADING:
            logger.warning(f"Retrying interrupted upload: {file_key}")
        elif record.status == FileStatus.FOUND:
            logger.info(f"Processing: {file_key}")
        else:
            raise StatusStoreError(f"unknown status {record.status!r} for {file_key}")

        try:
            cid = self._ingest(path, file_key, project)
        except StatusStoreError:
            raise
        except Exception as e:
            if isinstance(e, UploadError) and self.cancel.is_set():
                # Left in Uploading so the next run retries it
                raise
            self.store.mark_error(file_key, str(e))
            if isinstance(e, IngestError):
                raise
            raise IngestError(f"error processing {file_key}: {e}") from e

        self.store.mark_success(file_key, cid)
        logger.success(f"Uploaded: {file_key} -> {cid}")
        return cid

    def _ingest(self, path: Path, file_key: str, project: Optional[ProjectRecord]) -> str:
        extraction = extract_file(
            path,
            self.verifier,
            self.sync_root,
            project,
            chunk_size=self.settings.upload_chunk_size,
        )
        logger.info(
            f"Classified {file_key} as {extraction.kind.value} "
            f"({format_bytes(extraction.fingerprint.size)}, {len(extraction.assets)} assets)"
        )
        self.store.mark_uploading(file_key, extraction.fingerprint.sha256)

        project_id = project.project_id if project is not None else None
        cid = None
        for asset in extraction.assets:
            with asset.open() as stream:
                cid = self.uploader.upload(
                    stream,
                    asset.metadata,
                    project_id=project_id,
                    metadata_format=asset.metadata_format,
                    cancel=self.cancel,
                )
            logger.info(f"Posted {asset.metadata.get('file_name')} from {file_key}: {cid}")

        if cid is None:
            raise IngestError(f"no assets to upload in {file_key}")
        return cid


@dataclass
class ChangeEvent:
    """A file that appeared in a watched directory."""
    path: Path
    kind: str  # created | moved


class FolderEventHandler(FileSystemEventHandler):
    """Queues creation and rename events for qualifying files."""

    def __init__(self, events: "queue.Queue[ChangeEvent]", file_filter: InclusionFilter):
        super().__init__()
        self.events = events
        self.file_filter = file_filter

    def _enqueue(self, raw_path, kind: str):
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode()
        path = Path(raw_path)
        if not self.file_filter.should_include(path):
            logger.debug(f"Ignored {kind}: {path}")
            return
        self.events.put(ChangeEvent(path=path, kind=kind))

    def on_created(self, event: FileSystemEvent):
        """Handle file creation."""
        if event.is_directory:
            return
        self._enqueue(event.src_path, "created")

    def on_moved(self, event: FileSystemEvent):
        """Handle rename into a watched directory."""
        if event.is_directory:
            return
        self._enqueue(event.dest_path, "moved")


class FolderWatcher:
    """
    Watches a fixed set of directories (non-recursively).

    Directories created after start are not picked up.
    """

    def __init__(self, directories: List[Path], file_filter: InclusionFilter, observer=None):
        self.directories = directories
        self.events: "queue.Queue[ChangeEvent]" = queue.Queue()
        self.handler = FolderEventHandler(self.events, file_filter)
        self.observer = observer or Observer()

    def start(self):
        for directory in self.directories:
            self.observer.schedule(self.handler, str(directory), recursive=False)
            logger.debug(f"Watching: {directory}")
        self.observer.start()
        logger.success(f"Watching {len(self.directories)} directories")

    def stop(self):
        self.observer.stop()
        self.observer.join()
        logger.info("File system observer stopped")

    def watch(self, stop_event: threading.Event, poll: float = 0.5) -> Iterator[ChangeEvent]:
        """Yield events in arrival order until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                yield self.events.get(timeout=poll)
            except queue.Empty:
                continue


class FolderPreprocessor:
    """Initial scan + live watch of the sync folder."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[StatusStore] = None,
        uploader: Optional[WebhookUploader] = None,
        verifier: Optional[BundleVerifier] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or StatusStore(DatabaseClient(self.settings.database_url))
        self.stop_event = threading.Event()
        self.pipeline = IngestPipeline(
            store=self.store,
            uploader=uploader or WebhookUploader(self.settings),
            verifier=verifier,
            settings=self.settings,
            cancel=self.stop_event,
        )
        self.file_filter = InclusionFilter.from_settings(self.settings)
        self.sync_root = self.settings.get_sync_root()
        self.projects: List[ProjectRecord] = []

    def process_file(self, path: Path, project: Optional[ProjectRecord]) -> Optional[str]:
        """Run the pipeline for one file, logging instead of raising."""
        try:
            return self.pipeline.handle_new_file(path, project)
        except PreviouslyFailedError as e:
            logger.warning(str(e))
        except IngestError as e:
            logger.error(f"Failed to ingest {path}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error ingesting {path}: {e}")
        return None

    def scan_roots(self) -> List[tuple]:
        """(root, project) pairs to scan; the whole sync root when no project is configured."""
        if not self.projects:
            return [(self.sync_root, None)]
        return [(project_root(p, self.sync_root), p) for p in self.projects]

    def initial_scan(self) -> List[Path]:
        """Scan every root sequentially and process each file; returns watch targets."""
        directories: List[Path] = []
        seen_dirs = set()
        seen_files = set()
        for root, project in self.scan_roots():
            logger.info(f"Scanning {root}...")
            try:
                files, dirs = initial_scan(root, self.file_filter)
            except ScanError as e:
                logger.error(f"Scan of {root} aborted: {e}")
                continue

            for directory in dirs:
                if directory not in seen_dirs:
                    seen_dirs.add(directory)
                    directories.append(directory)

            for path in files:
                if path in seen_files:
                    continue
                seen_files.add(path)
                if project is not None:
                    # Nested project roots are walked by their parent too
                    project_for_file = resolve_project(path, self.projects, self.sync_root)
                else:
                    project_for_file = None
                self.process_file(path, project_for_file)
            logger.success(f"Scan of {root} complete: {len(files)} files")

        return directories

    def process_event(self, event: ChangeEvent):
        """Handle one watch event."""
        try:
            with open(event.path, "rb"):
                pass
        except OSError:
            # Renamed away before we got to it
            logger.debug(f"Skipping unreadable {event.kind} file: {event.path}")
            return

        project = resolve_project(event.path, self.projects, self.sync_root)
        if self.projects and project is None:
            logger.debug(f"No project for {event.path}")
            return
        self.process_file(event.path, project)

    def watch_loop(self, watcher: FolderWatcher):
        """Consume watch events one at a time until stopped."""
        for event in watcher.watch(self.stop_event):
            try:
                self.process_event(event)
            except OSError as e:
                logger.error(f"Watch error on {event.path}: {e}")
            except StatusStoreError as e:
                logger.error(f"Status store error on {event.path}: {e}")
            except Exception as e:
                logger.error(f"Unexpected error handling {event.path}: {e}")

    def log_summary(self):
        counts = self.store.counts_by_status()
        logger.info(", ".join(f"{status.value}: {count}" for status, count in counts.items()))

    def run(self):
        """Run the initial scan, then watch until SIGINT/SIGTERM."""
        self.store.db.init_tables()
        self.projects = self.store.list_projects()
        logger.info(f"Loaded {len(self.projects)} projects")

        directories = self.initial_scan()
        self.log_summary()

        watcher = FolderWatcher(directories, self.file_filter)
        watcher.start()

        worker = threading.Thread(target=self.watch_loop, args=(watcher,), name="folder-watch", daemon=True)
        worker.start()

        def _signal_handler(signum, frame):  # noqa: D401
            logger.info(f"Received signal {signum}, shutting down.")
            self.stop_event.set()

        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)

        try:
            while not self.stop_event.is_set():
                self.stop_event.wait(1.0)
        finally:
            watcher.stop()
            worker.join(timeout=self.settings.webhook_timeout)
            self.store.db.close()


def configure_logging(level: str):
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level.upper(),
    )


def main():
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("File Ingestion - Folder Preprocessor")

    try:
        preprocessor = FolderPreprocessor(settings)
        preprocessor.run()

    except KeyboardInterrupt:
        logger.info("Folder preprocessor stopped by user")
    except Exception as e:
        logger.error(f"Folder preprocessor failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
