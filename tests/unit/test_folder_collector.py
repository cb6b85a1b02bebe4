import queue
import threading
from pathlib import Path

import pytest

from app.models.schemas import Author, FileStatus, ProjectRecord
from domains.file_ingest.collectors.folder_collector import (
    ChangeEvent,
    FolderEventHandler,
    FolderPreprocessor,
    FolderWatcher,
    IngestPipeline,
)
from domains.file_ingest.collectors.scanner import InclusionFilter
from domains.file_ingest.errors import IngestError, PreviouslyFailedError, UploadError, VerificationError
from domains.file_ingest.processors.classifier import MetadataFormat
from tests.helpers import JPEG_HEAD, FakeUploader, build_signed_bundle, build_wacz, mark_encrypted


class Event:
    def __init__(self, src: Path, dest: Path = None, is_directory: bool = False):
        self.src_path = str(src)
        self.dest_path = str(dest) if dest else ""
        self.is_directory = is_directory


class MisdetectingVerifier:
    """Claims every zip is a signed bundle, then fails to verify it."""

    def __init__(self):
        self.verify_calls = 0

    def is_signed_bundle(self, path):
        return True

    def is_archive_bundle(self, path):
        return False

    def verify_signed_bundle(self, path):
        self.verify_calls += 1
        raise VerificationError("signature verification failed")

    def verify_archive_bundle(self, path):
        raise AssertionError("not an archive")

    def extract_bundle_files(self, archive):
        raise AssertionError("never reached")


@pytest.fixture
def project():
    return ProjectRecord(
        project_id="field-team",
        project_path="field-team",
        author=Author(type="Organization", name="Field Team"),
    )


@pytest.fixture
def pipeline(store, uploader, settings):
    return IngestPipeline(store=store, uploader=uploader, settings=settings)


def test_generic_file_scenario(tmp_path, store, settings):
    note = tmp_path / "note.txt"
    note.write_bytes(b"0123456789")
    uploader = FakeUploader(cids=["bafy123"])
    pipeline = IngestPipeline(store=store, uploader=uploader, settings=settings)

    cid = pipeline.handle_new_file(note)

    assert cid == "bafy123"
    (call,) = uploader.calls
    assert call["body"] == b"0123456789"
    assert call["metadata"]["asset_origin"] == "note.txt"
    assert call["metadata"]["media_type"] == "text/plain"
    assert "sha256" in call["metadata"]
    assert call["metadata_format"] == MetadataFormat.JSON

    record = store.get(str(note))
    assert record.status == FileStatus.SUCCESS
    assert record.cid == "bafy123"
    assert record.sha256 == call["metadata"]["sha256"]


def test_success_replay_skips_upload(tmp_path, store, uploader, pipeline):
    note = tmp_path / "note.txt"
    note.write_text("hello")
    store.claim_or_get(str(note))
    store.mark_success(str(note), "bafy-stored")

    assert pipeline.handle_new_file(note) == "bafy-stored"
    assert uploader.calls == []


def test_error_replay_skips_hash_and_upload(tmp_path, store, uploader, pipeline, monkeypatch):
    note = tmp_path / "note.txt"
    note.write_text("hello")
    store.claim_or_get(str(note))
    store.mark_error(str(note), "bad response")

    def fail(*args, **kwargs):
        raise AssertionError("must not fingerprint")

    monkeypatch.setattr("domains.file_ingest.collectors.folder_collector.extract_file", fail)

    with pytest.raises(PreviouslyFailedError) as exc_info:
        pipeline.handle_new_file(note)
    assert exc_info.value.message == "bad response"
    assert uploader.calls == []


@pytest.mark.parametrize("interrupted", [FileStatus.FOUND, FileStatus.UPLOADING])
def test_interrupted_attempt_is_reprocessed_once(tmp_path, store, uploader, pipeline, interrupted):
    note = tmp_path / "note.txt"
    note.write_text("hello")
    store.claim_or_get(str(note))
    if interrupted == FileStatus.UPLOADING:
        store.mark_uploading(str(note), "stale")

    cid = pipeline.handle_new_file(note)

    assert len(uploader.calls) == 1
    record = store.get(str(note))
    assert record.status == FileStatus.SUCCESS
    assert record.cid == cid
    assert record.sha256 != "stale"


def test_failed_verification_is_terminal(tmp_path, store, uploader, settings):
    bundle = tmp_path / "broken.zip"
    bundle.write_bytes(b"PK\x03\x04 definitely not a bundle")
    verifier = MisdetectingVerifier()
    pipeline = IngestPipeline(store=store, uploader=uploader, verifier=verifier, settings=settings)

    with pytest.raises(VerificationError):
        pipeline.handle_new_file(bundle)

    record = store.get(str(bundle))
    assert record.status == FileStatus.ERROR
    assert "signature verification failed" in record.error

    with pytest.raises(PreviouslyFailedError) as exc_info:
        pipeline.handle_new_file(bundle)
    assert exc_info.value.message == record.error
    assert verifier.verify_calls == 1
    assert uploader.calls == []


def test_signed_bundle_uploads_each_asset(tmp_path, store, uploader, pipeline, project):
    bundle = build_signed_bundle(
        tmp_path / "field-team" / "bundle.zip",
        {"IMG_1.jpg": JPEG_HEAD + b"one", "IMG_2.jpg": JPEG_HEAD + b"two"},
    )

    cid = pipeline.handle_new_file(bundle, project)

    assert len(uploader.calls) == 2
    first, second = (call["metadata"] for call in uploader.calls)
    for key in ("project_id", "project_path", "author"):
        assert first[key] == second[key]
    assert first["author"] == {"@type": "Organization", "name": "Field Team"}
    assert first["file_name"] != second["file_name"]
    assert first["asset_signature"] != second["asset_signature"]
    assert first["asset_origin"] != second["asset_origin"]
    assert {call["project_id"] for call in uploader.calls} == {"field-team"}
    assert all(call["metadata_format"] == MetadataFormat.CBOR for call in uploader.calls)
    assert sorted(call["body"] for call in uploader.calls) == [JPEG_HEAD + b"one", JPEG_HEAD + b"two"]
    assert store.get(str(bundle)).cid == cid


def test_upload_failure_is_recorded(tmp_path, store, settings):
    class FailingUploader:
        def upload(self, *args, **kwargs):
            raise UploadError("bad status code in response: 500")

    note = tmp_path / "note.txt"
    note.write_text("hello")
    pipeline = IngestPipeline(store=store, uploader=FailingUploader(), settings=settings)

    with pytest.raises(UploadError):
        pipeline.handle_new_file(note)

    record = store.get(str(note))
    assert record.status == FileStatus.ERROR
    assert record.cid is None
    assert "500" in record.error


def test_cancelled_upload_stays_retryable(tmp_path, store, settings):
    class CancelledUploader:
        def upload(self, *args, **kwargs):
            raise UploadError("upload cancelled")

    note = tmp_path / "note.txt"
    note.write_text("hello")
    cancel = threading.Event()
    cancel.set()
    pipeline = IngestPipeline(store=store, uploader=CancelledUploader(), settings=settings, cancel=cancel)

    with pytest.raises(UploadError):
        pipeline.handle_new_file(note)

    assert store.get(str(note)).status == FileStatus.UPLOADING


def test_project_extension_override(tmp_path, store, uploader, pipeline):
    project = ProjectRecord(project_id="p", project_path="p", file_extensions=[".jpg"])
    note = tmp_path / "p" / "note.txt"
    note.parent.mkdir()
    note.write_text("hello")

    assert pipeline.handle_new_file(note, project) is None
    assert store.get(str(note)) is None
    assert uploader.calls == []


def test_event_handler_queues_qualifying_files(tmp_path):
    events = queue.Queue()
    handler = FolderEventHandler(events, InclusionFilter())

    handler.on_created(Event(tmp_path / "clip.mp4"))
    handler.on_created(Event(tmp_path / ".lock"))
    handler.on_created(Event(tmp_path / "clip.mp4.partial"))
    handler.on_created(Event(tmp_path / "subdir", is_directory=True))
    handler.on_moved(Event(tmp_path / "clip.mp4.partial", dest=tmp_path / "final.mp4"))

    queued = [events.get_nowait() for _ in range(events.qsize())]
    assert queued == [
        ChangeEvent(path=tmp_path / "clip.mp4", kind="created"),
        ChangeEvent(path=tmp_path / "final.mp4", kind="moved"),
    ]


def test_watcher_schedules_known_directories_only(tmp_path):
    class FakeObserver:
        def __init__(self):
            self.scheduled = []
            self.started = False

        def schedule(self, handler, path, recursive=False):
            self.scheduled.append((path, recursive))

        def start(self):
            self.started = True

    observer = FakeObserver()
    watcher = FolderWatcher([tmp_path, tmp_path / "a"], InclusionFilter(), observer=observer)
    watcher.start()

    assert observer.started
    assert observer.scheduled == [(str(tmp_path), False), (str(tmp_path / "a"), False)]


def test_watch_yields_events_in_arrival_order(tmp_path):
    watcher = FolderWatcher([], InclusionFilter(), observer=object())
    stop = threading.Event()
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        watcher.events.put(ChangeEvent(path=tmp_path / name, kind="created"))

    seen = []
    for event in watcher.watch(stop, poll=0.01):
        seen.append(event.path.name)
        if len(seen) == 3:
            stop.set()

    assert seen == ["a.jpg", "b.jpg", "c.jpg"]


def test_preprocessor_initial_scan_and_events(tmp_path, store, uploader, settings, project):
    root = tmp_path / "field-team"
    (root / "day1").mkdir(parents=True)
    (root / "day1" / "a.txt").write_text("a")
    (root / "b.txt").write_text("b")
    (tmp_path / "outside.txt").write_text("not in a project")

    preprocessor = FolderPreprocessor(settings, store=store, uploader=uploader)
    preprocessor.projects = [project]

    directories = preprocessor.initial_scan()

    assert set(directories) == {root, root / "day1"}
    assert len(uploader.calls) == 2
    assert {c["metadata"]["asset_origin"] for c in uploader.calls} == {"field-team/b.txt", "field-team/day1/a.txt"}

    # Re-scan is a no-op
    preprocessor.initial_scan()
    assert len(uploader.calls) == 2

    # A file renamed away before its event is handled is skipped
    preprocessor.process_event(ChangeEvent(path=root / "gone.txt", kind="moved"))
    assert len(uploader.calls) == 2

    (root / "c.txt").write_text("c")
    preprocessor.process_event(ChangeEvent(path=root / "c.txt", kind="created"))
    assert len(uploader.calls) == 3
    assert uploader.calls[-1]["metadata"]["project_id"] == "field-team"


def test_preprocessor_without_projects_scans_sync_root(tmp_path, store, uploader, settings):
    (tmp_path / "note.txt").write_text("hello")

    preprocessor = FolderPreprocessor(settings, store=store, uploader=uploader)
    preprocessor.initial_scan()

    assert len(uploader.calls) == 1
    assert "project_id" not in uploader.calls[0]["metadata"]


def test_preprocessor_logs_failures_and_continues(tmp_path, store, settings):
    class FlakyUploader(FakeUploader):
        def upload(self, file, metadata, **kwargs):
            if metadata["file_name"] == "a.txt":
                raise UploadError("bad request")
            return super().upload(file, metadata, **kwargs)

    (tmp_path / "a.txt").write_text("a")
    (tmp_path / "b.txt").write_text("b")
    uploader = FlakyUploader()

    preprocessor = FolderPreprocessor(settings, store=store, uploader=uploader)
    preprocessor.initial_scan()

    assert store.get(str(tmp_path / "a.txt")).status == FileStatus.ERROR
    assert store.get(str(tmp_path / "b.txt")).status == FileStatus.SUCCESS


def test_unexpected_verifier_failure_is_recorded(tmp_path, store, uploader, settings):
    class BrokenVerifier(MisdetectingVerifier):
        def is_signed_bundle(self, path):
            return False

        def is_archive_bundle(self, path):
            return True

        def verify_archive_bundle(self, path):
            raise RuntimeError("decompressor crashed")

    bundle = tmp_path / "capture.wacz"
    bundle.write_bytes(b"PK\x03\x04 not really an archive")
    pipeline = IngestPipeline(store=store, uploader=uploader, verifier=BrokenVerifier(), settings=settings)

    with pytest.raises(IngestError, match="decompressor crashed"):
        pipeline.handle_new_file(bundle)

    record = store.get(str(bundle))
    assert record.status == FileStatus.ERROR
    assert "decompressor crashed" in record.error
    assert uploader.calls == []


def test_bad_bundles_do_not_stop_the_scan(tmp_path, store, uploader, settings):
    build_wacz(tmp_path / "a.wacz", signature=123)
    mark_encrypted(build_wacz(tmp_path / "b.wacz"), "datapackage.json")
    (tmp_path / "c.txt").write_text("c")

    preprocessor = FolderPreprocessor(settings, store=store, uploader=uploader)
    preprocessor.initial_scan()

    for name in ("a.wacz", "b.wacz"):
        record = store.get(str(tmp_path / name))
        assert record.status == FileStatus.ERROR
    assert store.get(str(tmp_path / "c.txt")).status == FileStatus.SUCCESS
    assert [c["metadata"]["file_name"] for c in uploader.calls] == ["c.txt"]

    # Next start replays the stored errors instead of retrying
    preprocessor.initial_scan()
    assert len(uploader.calls) == 1


def test_watch_loop_survives_unexpected_errors(tmp_path, store, uploader, settings):
    preprocessor = FolderPreprocessor(settings, store=store, uploader=uploader)
    watcher = FolderWatcher([], InclusionFilter(), observer=object())
    for name in ("a.txt", "b.txt"):
        watcher.events.put(ChangeEvent(path=tmp_path / name, kind="created"))

    handled = []

    def process_event(event):
        handled.append(event.path.name)
        if event.path.name == "a.txt":
            raise RuntimeError("boom")
        preprocessor.stop_event.set()

    preprocessor.process_event = process_event
    preprocessor.watch_loop(watcher)

    assert handled == ["a.txt", "b.txt"]


def test_nested_projects_use_the_innermost_root(tmp_path, store, uploader, settings):
    outer = ProjectRecord(project_id="outer", project_path="outer")
    inner = ProjectRecord(project_id="inner", project_path="outer/inner", file_extensions=[".jpg"])
    (tmp_path / "outer" / "inner").mkdir(parents=True)
    (tmp_path / "outer" / "a.txt").write_text("a")
    (tmp_path / "outer" / "inner" / "x.jpg").write_bytes(JPEG_HEAD)
    (tmp_path / "outer" / "inner" / "skip.txt").write_text("not a jpg")

    preprocessor = FolderPreprocessor(settings, store=store, uploader=uploader)
    preprocessor.projects = [outer, inner]
    directories = preprocessor.initial_scan()

    by_name = {c["metadata"]["file_name"]: c for c in uploader.calls}
    assert sorted(by_name) == ["a.txt", "x.jpg"]
    assert by_name["a.txt"]["project_id"] == "outer"
    assert by_name["x.jpg"]["project_id"] == "inner"
    assert by_name["x.jpg"]["metadata"]["project_path"] == "outer/inner"
    assert store.get(str(tmp_path / "outer" / "inner" / "skip.txt")) is None
    assert len(directories) == len(set(directories)) == 2
