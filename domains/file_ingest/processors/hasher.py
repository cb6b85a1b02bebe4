"""
Content fingerprinting for ingested files.

A file is read exactly once; every block is fanned out to an ordered set of
sinks (hash accumulators and a media type sniffer). Digests are emitted as
lowercase hex strings.
"""

import hashlib
import mimetypes
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Protocol, Union

from blake3 import blake3
from loguru import logger

from app.models.schemas import Fingerprint
from domains.file_ingest.errors import FingerprintError

DEFAULT_CHUNK_SIZE = 64 * 1024
SNIFF_LENGTH = 512

# Leading bytes -> media type, checked in order
MAGIC_BYTES = [
    (b'PK\x03\x04', 'application/zip'),
    (b'PK\x05\x06', 'application/zip'),
    (b'%PDF-', 'application/pdf'),
    (b'\x89PNG\r\n\x1a\n', 'image/png'),
    (b'\xff\xd8\xff', 'image/jpeg'),
    (b'GIF87a', 'image/gif'),
    (b'GIF89a', 'image/gif'),
    (b'II*\x00', 'image/tiff'),
    (b'MM\x00*', 'image/tiff'),
    (b'\x1a\x45\xdf\xa3', 'video/webm'),
    (b'OggS', 'application/ogg'),
    (b'fLaC', 'audio/flac'),
    (b'ID3', 'audio/mpeg'),
    (b'\x1f\x8b', 'application/gzip'),
    (b'7z\xbc\xaf\x27\x1c', 'application/x-7z-compressed'),
    (b'{\\rtf', 'application/rtf'),
    (b'\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1', 'application/x-ole-storage'),
]

# RIFF containers carry their subtype at offset 8
RIFF_TYPES = {
    b'WAVE': 'audio/wav',
    b'AVI ': 'video/x-msvideo',
    b'WEBP': 'image/webp',
}

# ISO base media brands at offset 8 ("....ftyp<brand>")
FTYP_BRANDS = {
    b'qt  ': 'video/quicktime',
    b'heic': 'image/heic',
    b'heix': 'image/heic',
    b'mif1': 'image/heif',
    b'M4A ': 'audio/mp4',
    b'3gp4': 'video/3gpp',
    b'3gp5': 'video/3gpp',
}

OCTET_STREAM = 'application/octet-stream'


class Sink(Protocol):
    """Anything that accepts the byte stream block by block."""

    def update(self, data: bytes) -> None: ...


class MultiSink:
    """Write each block once to an ordered set of sinks."""

    def __init__(self, sinks: Iterable[Sink]):
        self.sinks: List[Sink] = list(sinks)
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        for sink in self.sinks:
            sink.update(data)
        self.bytes_written += len(data)
        return len(data)

    def consume(self, stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
        """Drain ``stream`` into every sink; returns the number of bytes read."""
        while True:
            block = stream.read(chunk_size)
            if not block:
                break
            self.write(block)
        return self.bytes_written


class MediaTypeSniffer:
    """Classify content from its first block, without any extra I/O."""

    def __init__(self, file_name: Optional[str] = None, limit: int = SNIFF_LENGTH):
        self.file_name = file_name
        self.limit = limit
        self.head = b''

    def update(self, data: bytes) -> None:
        if len(self.head) < self.limit:
            self.head += data[: self.limit - len(self.head)]

    @property
    def media_type(self) -> str:
        return detect_media_type(self.head, self.file_name)


def detect_media_type(head: bytes, file_name: Optional[str] = None) -> str:
    """
    Detect a media type from leading bytes, falling back to the file name.

    Args:
        head: First block of the file (up to 512 bytes is enough)
        file_name: Optional name used when the content is not recognised

    Returns:
        A media type string; ``application/octet-stream`` when unknown
    """
    for magic, media_type in MAGIC_BYTES:
        if head.startswith(magic):
            return media_type

    if head[:4] == b'RIFF' and head[8:12] in RIFF_TYPES:
        return RIFF_TYPES[head[8:12]]

    if head[4:8] == b'ftyp':
        return FTYP_BRANDS.get(head[8:12], 'video/mp4')

    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed:
            return guessed

    if head and _looks_like_text(head):
        return 'text/plain; charset=utf-8'

    return OCTET_STREAM


def _looks_like_text(head: bytes) -> bool:
    if b'\x00' in head:
        return False
    try:
        head.decode('utf-8')
    except UnicodeDecodeError as e:
        # A multi-byte character may be cut at the end of the block
        return e.start >= len(head) - 3
    return True


def new_hashers() -> Dict[str, Sink]:
    """Fresh accumulators for every configured digest algorithm."""
    return {
        "sha256": hashlib.sha256(),
        "md5": hashlib.md5(),
        "blake3": blake3(),
    }


def fingerprint_stream(
    stream: BinaryIO,
    name: str,
    mod_time: datetime,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Fingerprint:
    """Fingerprint an already-open binary stream."""
    hashers = new_hashers()
    sniffer = MediaTypeSniffer(file_name=name)
    writer = MultiSink([*hashers.values(), sniffer])

    try:
        size = writer.consume(stream, chunk_size)
    except OSError as e:
        raise FingerprintError(f"error reading {name}: {e}") from e

    return Fingerprint(
        digests={algo: h.hexdigest() for algo, h in hashers.items()},
        media_type=sniffer.media_type,
        size=size,
        name=name,
        mod_time=mod_time,
    )


def fingerprint_file(path: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE) -> Fingerprint:
    """
    Compute all digests and the media type of a file in a single read.

    Args:
        path: File to fingerprint
        chunk_size: Read block size

    Returns:
        Fingerprint with sha256, md5 and blake3 digests

    Raises:
        FingerprintError: the file could not be opened or read
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            stats = os.fstat(f.fileno())
            mod_time = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)
            fingerprint = fingerprint_stream(f, path.name, mod_time, chunk_size)
    except OSError as e:
        raise FingerprintError(f"error reading {path}: {e}") from e

    logger.debug(f"Fingerprinted {path} ({fingerprint.size} bytes, {fingerprint.media_type})")
    return fingerprint
