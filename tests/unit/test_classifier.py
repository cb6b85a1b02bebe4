import hashlib

import pytest

from app.models.schemas import Author, ProjectRecord
from domains.file_ingest.processors.bundles import ZipBundleVerifier
from domains.file_ingest.processors.classifier import (
    FileKind,
    MetadataFormat,
    annotate_metadata,
    classify_file,
    extract_file,
)
from tests.helpers import JPEG_HEAD, build_signed_bundle, build_wacz


@pytest.fixture
def verifier():
    return ZipBundleVerifier()


@pytest.fixture
def project():
    return ProjectRecord(
        project_id="field-team",
        project_path="field-team/",
        author=Author(type="Organization", name="Field Team", identifier=""),
    )


def test_classify_file(tmp_path, verifier):
    note = tmp_path / "note.txt"
    note.write_text("0123456789")
    plain_zip = tmp_path / "plain.zip"
    plain_zip.write_bytes(b"PK\x05\x06" + b"\x00" * 18)

    assert classify_file(note, verifier) == FileKind.GENERIC
    assert classify_file(plain_zip, verifier) == FileKind.GENERIC
    assert classify_file(build_signed_bundle(tmp_path / "b.zip", {"a.jpg": JPEG_HEAD}), verifier) == FileKind.SIGNED_BUNDLE
    assert classify_file(build_wacz(tmp_path / "c.wacz"), verifier) == FileKind.ARCHIVE_BUNDLE


def test_generic_file_metadata(tmp_path, verifier):
    note = tmp_path / "note.txt"
    note.write_bytes(b"0123456789")

    extraction = extract_file(note, verifier, tmp_path)

    assert extraction.kind == FileKind.GENERIC
    assert len(extraction.assets) == 1
    record = extraction.assets[0]
    assert record.metadata_format == MetadataFormat.JSON
    metadata = record.metadata
    assert metadata["asset_origin"] == "note.txt"
    assert metadata["file_name"] == "note.txt"
    assert metadata["file_size"] == 10
    assert metadata["media_type"] == "text/plain"
    assert metadata["sha256"] == hashlib.sha256(b"0123456789").hexdigest()
    assert {"md5", "blake3", "last_modified", "time_created"} <= metadata.keys()
    assert "project_id" not in metadata

    with record.open() as stream:
        assert stream.read() == b"0123456789"


def test_annotation_never_overwrites_existing_keys(project):
    metadata = {"project_id": "from-bundle", "file_name": "a.jpg"}

    annotate_metadata(metadata, project)

    assert metadata["project_id"] == "from-bundle"
    assert metadata["project_path"] == "field-team"
    assert metadata["author"] == {"@type": "Organization", "name": "Field Team"}


def test_annotation_skips_empty_author():
    metadata = {}
    annotate_metadata(metadata, ProjectRecord(project_id="p", project_path="p", author=Author()))

    assert metadata == {"project_id": "p", "project_path": "p"}


def test_signed_bundle_produces_one_record_per_asset(tmp_path, verifier, project):
    path = build_signed_bundle(
        tmp_path / "field-team" / "bundle.zip",
        {"IMG_1.jpg": JPEG_HEAD + b"one", "IMG_2.jpg": JPEG_HEAD + b"two"},
    )

    extraction = extract_file(path, verifier, tmp_path, project)

    assert extraction.kind == FileKind.SIGNED_BUNDLE
    assert len(extraction.assets) == 2
    first, second = sorted(extraction.assets, key=lambda r: r.metadata["file_name"])
    assert first.metadata_format == MetadataFormat.CBOR
    assert first.metadata["asset_origin"] == "field-team/bundle.zip/storage/emulated/0/DCIM/IMG_1.jpg"
    assert first.metadata["media_type"] == "image/jpeg"
    assert first.metadata["asset_signature"] == b"mediasig-IMG_1.jpg".hex()
    assert first.metadata["proofmode"]["media_sig"] == b"mediasig-IMG_1.jpg"
    assert first.metadata["time_created"] == "2024-05-01T09:59:00Z"

    for key in ("project_id", "project_path", "author"):
        assert first.metadata[key] == second.metadata[key]

    with second.open() as stream:
        assert stream.read() == JPEG_HEAD + b"two"


def test_archive_bundle_produces_single_record(tmp_path, verifier):
    path = build_wacz(tmp_path / "capture.wacz")

    extraction = extract_file(path, verifier, tmp_path)

    assert extraction.kind == FileKind.ARCHIVE_BUNDLE
    (record,) = extraction.assets
    metadata = record.metadata
    assert metadata["media_type"] == "application/wacz"
    assert metadata["asset_origin"] == "capture.wacz"
    assert metadata["sha256"] == extraction.fingerprint.sha256
    assert metadata["last_modified"] == "2024-05-02T10:00:00Z"
    assert metadata["asset_signature"] == b"signature".hex()
    assert metadata["wacz"]["pubkey"] == b"public-key"
    assert record.metadata_format == MetadataFormat.CBOR
