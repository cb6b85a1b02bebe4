"""
Format classification and metadata extraction.

A file is one of three kinds: a generic file, a signed multi-asset bundle or
a web archive bundle. Each kind has one extractor that returns a list of
``AssetRecord`` - the metadata to post plus a way to open the bytes to post
with it - so the upload and status logic never branches on the kind.
"""

import posixpath
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, ContextManager, Dict, Iterator, List, Optional

from loguru import logger

from app.models.schemas import Fingerprint, ProjectRecord
from app.utils.helpers import format_timestamp, relative_to_root
from domains.file_ingest.errors import FingerprintError
from domains.file_ingest.processors.bundles import ZIP_READ_ERRORS, BundleVerifier, SignedAsset
from domains.file_ingest.processors.hasher import (
    DEFAULT_CHUNK_SIZE,
    SNIFF_LENGTH,
    detect_media_type,
    fingerprint_file,
)

ZIP_MEDIA_TYPE = "application/zip"
WACZ_MEDIA_TYPE = "application/wacz"

Metadata = Dict[str, Any]


class FileKind(str, Enum):
    """Closed set of file formats the pipeline knows how to ingest."""
    GENERIC = "generic"
    SIGNED_BUNDLE = "proofmode"
    ARCHIVE_BUNDLE = "wacz"


class MetadataFormat(str, Enum):
    """Serialization of the metadata part of an upload."""
    JSON = "json"
    CBOR = "cbor"


@dataclass
class AssetRecord:
    """One upload unit: metadata plus an opener for the bytes it describes."""
    metadata: Metadata
    open: Callable[[], ContextManager[BinaryIO]]
    metadata_format: MetadataFormat = MetadataFormat.JSON


@dataclass
class Extraction:
    """Result of classifying and extracting a file on disk."""
    kind: FileKind
    fingerprint: Fingerprint
    assets: List[AssetRecord]


def classify_file(path: Path, verifier: BundleVerifier) -> FileKind:
    """
    Decide which kind ``path`` is from its first block and, for zip
    containers, the bundle-specific markers.

    Raises:
        FingerprintError: the file cannot be opened or read
    """
    try:
        with open(path, "rb") as f:
            head = f.read(SNIFF_LENGTH)
    except OSError as e:
        raise FingerprintError(f"error reading {path}: {e}") from e

    if detect_media_type(head, path.name) != ZIP_MEDIA_TYPE:
        return FileKind.GENERIC

    if verifier.is_archive_bundle(path):
        return FileKind.ARCHIVE_BUNDLE
    if verifier.is_signed_bundle(path):
        return FileKind.SIGNED_BUNDLE
    return FileKind.GENERIC


@contextmanager
def _open_file(path: Path) -> Iterator[BinaryIO]:
    with open(path, "rb") as f:
        yield f


def _file_opener(path: Path) -> Callable[[], ContextManager[BinaryIO]]:
    return lambda: _open_file(path)


def _zip_entry_opener(
    path: Path, file_name: str, verifier: BundleVerifier
) -> Callable[[], ContextManager[BinaryIO]]:
    @contextmanager
    def opener() -> Iterator[BinaryIO]:
        with zipfile.ZipFile(path) as archive:
            files = verifier.extract_bundle_files(archive)
            if file_name not in files:
                raise FileNotFoundError(f"file {file_name} not found in zip {path}")
            with archive.open(files[file_name]) as entry:
                yield entry

    return opener


def generic_metadata(path: Path, fingerprint: Fingerprint, sync_root: Optional[Path]) -> Metadata:
    """Metadata record for a plain file, including all of its digests."""
    metadata: Metadata = {
        "media_type": fingerprint.media_type,
        "asset_origin": relative_to_root(path, sync_root),
        "file_name": fingerprint.name,
        "file_size": fingerprint.size,
        "last_modified": format_timestamp(fingerprint.mod_time),
        "time_created": format_timestamp(fingerprint.mod_time),
    }
    metadata.update(fingerprint.digests)
    return metadata


def _signed_asset_metadata(asset: SignedAsset, bundle_origin: str, media_type: str) -> Metadata:
    internal_path = asset.metadata.file_path.replace("\\", "/").lstrip("/")
    return {
        "file_name": asset.file_name,
        "last_modified": asset.metadata.file_modified,
        "time_created": asset.metadata.file_created,
        "asset_origin": posixpath.normpath(posixpath.join(bundle_origin, internal_path)),
        "asset_signature": asset.asset_signature.hex(),
        "media_type": media_type,
        "proofmode": {
            "metadata": asset.metadata_bytes,
            "meta_sig": asset.metadata_signature,
            "media_sig": asset.asset_signature,
            "pubkey": asset.pubkey,
            "ots": asset.ots,
            "gst": asset.gst,
        },
    }


def _sniff_entry(opener: Callable[[], ContextManager[BinaryIO]], name: str) -> str:
    with opener() as entry:
        return detect_media_type(entry.read(SNIFF_LENGTH), name)


def extract_generic(
    path: Path, verifier: BundleVerifier, sync_root: Optional[Path], chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Extraction:
    fingerprint = fingerprint_file(path, chunk_size)
    record = AssetRecord(
        metadata=generic_metadata(path, fingerprint, sync_root),
        open=_file_opener(path),
    )
    return Extraction(FileKind.GENERIC, fingerprint, [record])


def extract_signed_bundle(
    path: Path, verifier: BundleVerifier, sync_root: Optional[Path], chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Extraction:
    assets = verifier.verify_signed_bundle(path)
    fingerprint = fingerprint_file(path, chunk_size)
    bundle_origin = relative_to_root(path, sync_root)

    records = []
    for asset in assets:
        opener = _zip_entry_opener(path, asset.file_name, verifier)
        try:
            media_type = _sniff_entry(opener, asset.file_name)
        except ZIP_READ_ERRORS as e:
            raise FingerprintError(f"error reading {asset.file_name} in {path}: {e}") from e
        records.append(
            AssetRecord(
                metadata=_signed_asset_metadata(asset, bundle_origin, media_type),
                open=opener,
                metadata_format=MetadataFormat.CBOR,
            )
        )
    return Extraction(FileKind.SIGNED_BUNDLE, fingerprint, records)


def extract_archive_bundle(
    path: Path, verifier: BundleVerifier, sync_root: Optional[Path], chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Extraction:
    archive = verifier.verify_archive_bundle(path)
    fingerprint = fingerprint_file(path, chunk_size)

    metadata = generic_metadata(path, fingerprint, sync_root)
    metadata.update({
        "last_modified": archive.modified or metadata["last_modified"],
        "time_created": archive.created or metadata["time_created"],
        "asset_signature": archive.metadata_signature.hex(),
        "media_type": WACZ_MEDIA_TYPE,
        "wacz": {
            "metadata": archive.metadata_bytes,
            "meta_sig": archive.metadata_signature,
            "pubkey": archive.pubkey,
        },
    })
    record = AssetRecord(metadata=metadata, open=_file_opener(path), metadata_format=MetadataFormat.CBOR)
    return Extraction(FileKind.ARCHIVE_BUNDLE, fingerprint, [record])


EXTRACTORS = {
    FileKind.GENERIC: extract_generic,
    FileKind.SIGNED_BUNDLE: extract_signed_bundle,
    FileKind.ARCHIVE_BUNDLE: extract_archive_bundle,
}


def extract_file(
    path: Path,
    verifier: BundleVerifier,
    sync_root: Optional[Path],
    project: Optional[ProjectRecord] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Extraction:
    """
    Classify ``path`` and build its annotated metadata records.

    Raises:
        FingerprintError: the file could not be read
        VerificationError: a bundle failed verification
    """
    kind = classify_file(path, verifier)
    logger.debug(f"Classified {path} as {kind.value}")

    extraction = EXTRACTORS[kind](path, verifier, sync_root, chunk_size)
    for record in extraction.assets:
        annotate_metadata(record.metadata, project)
    return extraction


def annotate_metadata(metadata: Metadata, project: Optional[ProjectRecord]) -> Metadata:
    """Add project and author fields without overwriting keys already present."""
    if project is None:
        return metadata

    metadata.setdefault("project_id", project.project_id)
    metadata.setdefault("project_path", posixpath.normpath(project.project_path))
    if project.author is not None:
        author = project.author.as_metadata()
        if author:
            metadata.setdefault("author", author)
    return metadata
