"""
Streaming upload of a file and its metadata to the webhook server.

The multipart body is written by a producer thread into a bounded queue and
read by httpx as the request content, so neither the file nor the body is
ever held in memory and the request starts before the body size is known.
"""

import base64
import json
import queue
import secrets
import threading
from datetime import datetime
from typing import Any, BinaryIO, Dict, Iterator, Optional

import cbor2
import httpx
from loguru import logger

from app.models.schemas import UploadResponse
from app.utils.config import Settings, get_settings
from domains.file_ingest.errors import (
    BadResponseError,
    RejectedRequestError,
    ServerReportedError,
    UploadError,
)
from domains.file_ingest.processors.classifier import MetadataFormat

CONTENT_TYPES = {
    MetadataFormat.JSON: "application/json",
    MetadataFormat.CBOR: "application/cbor",
}

_DONE = object()


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_metadata(metadata: Dict[str, Any], metadata_format: MetadataFormat) -> bytes:
    """Serialize metadata as JSON (bytes as base64) or as a CBOR map."""
    if metadata_format == MetadataFormat.CBOR:
        return cbor2.dumps(metadata)
    return json.dumps(metadata, default=_json_default).encode("utf-8")


class MultipartPipe:
    """
    Bounded producer/consumer channel carrying a multipart/form-data body.

    A failure in the producer is re-raised to the reader; setting ``cancel``
    or calling ``close()`` stops the producer.
    """

    def __init__(
        self,
        file: BinaryIO,
        metadata: Dict[str, Any],
        metadata_format: MetadataFormat,
        chunk_size: int = 64 * 1024,
        max_chunks: int = 8,
        cancel: Optional[threading.Event] = None,
    ):
        self.file = file
        self.metadata = metadata
        self.metadata_format = metadata_format
        self.chunk_size = chunk_size
        self.boundary = secrets.token_hex(16)
        self.cancel = cancel or threading.Event()
        self._closed = threading.Event()
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_chunks)
        self._thread = threading.Thread(target=self._produce, name="multipart-producer", daemon=True)

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def start(self) -> "MultipartPipe":
        self._thread.start()
        return self

    def _stopped(self) -> bool:
        return self._closed.is_set() or self.cancel.is_set()

    def _put(self, item: Any) -> bool:
        while not self._stopped():
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _field(self, name: str, value: bytes) -> bytes:
        return (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
        ).encode("utf-8") + value + b"\r\n"

    def _file_header(self, name: str) -> bytes:
        return (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"; filename=""\r\n'
            "Content-Type: application/octet-stream\r\n\r\n"
        ).encode("utf-8")

    def _produce(self) -> None:
        try:
            media_type = CONTENT_TYPES[self.metadata_format]
            if not self._put(self._field("metadata_format", media_type.encode("ascii"))):
                return

            encoded = encode_metadata(self.metadata, self.metadata_format)
            if self.metadata_format == MetadataFormat.CBOR:
                part = self._file_header("metadata") + encoded + b"\r\n"
            else:
                part = self._field("metadata", encoded)
            if not self._put(part):
                return

            if not self._put(self._file_header("file")):
                return
            while True:
                block = self.file.read(self.chunk_size)
                if not block:
                    break
                if not self._put(block):
                    return

            if self._put(f"\r\n--{self.boundary}--\r\n".encode("ascii")):
                self._put(_DONE)
        except Exception as e:  # handed to the reader, which raises it
            self._put(e)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            if self.cancel.is_set():
                raise UploadError("upload cancelled")
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _DONE:
                return
            if isinstance(item, Exception):
                raise UploadError(f"error writing multipart body: {item}") from item
            yield item

    def close(self) -> None:
        self._closed.set()
        self._thread.join(timeout=5)


class WebhookUploader:
    """Posts files to ``http://<webhook_host>/<source>``."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self._client = client

    def endpoint(self, source: Optional[str] = None) -> str:
        return f"http://{self.settings.webhook_host}/{source or self.settings.webhook_source}"

    def upload(
        self,
        file: BinaryIO,
        metadata: Dict[str, Any],
        source: Optional[str] = None,
        project_id: Optional[str] = None,
        metadata_format: MetadataFormat = MetadataFormat.JSON,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """
        Stream ``file`` and ``metadata`` as one multipart POST.

        Args:
            file: Open binary stream of the asset bytes
            metadata: Metadata record for the asset
            source: Endpoint tag, defaults to the configured source ("generic")
            project_id: Optional project routing parameter
            metadata_format: JSON by default, CBOR for bundle assets
            cancel: Event that aborts the upload when set

        Returns:
            The content identifier assigned by the server

        Raises:
            UploadError: transport or encoding failure, rejected request, bad
                status or an error reported by the server
        """
        url = self.endpoint(source)
        params = {"project_id": project_id} if project_id else None

        pipe = MultipartPipe(
            file,
            metadata,
            metadata_format,
            chunk_size=self.settings.upload_chunk_size,
            cancel=cancel,
        )
        headers = {"Content-Type": pipe.content_type}
        if self.settings.webhook_jwt:
            headers["Authorization"] = f"Bearer {self.settings.webhook_jwt}"

        logger.debug(f"Posting {metadata.get('file_name', 'file')} to {url}")
        pipe.start()
        try:
            response = self._post(url, params, headers, pipe)
        except httpx.HTTPError as e:
            raise UploadError(f"error posting to {url}: {e}") from e
        finally:
            pipe.close()

        return self._parse_response(response)

    def _post(self, url, params, headers, pipe: MultipartPipe) -> httpx.Response:
        if self._client is not None:
            return self._client.post(
                url, params=params, headers=headers, content=iter(pipe),
                timeout=self.settings.webhook_timeout,
            )
        with httpx.Client(timeout=self.settings.webhook_timeout) as client:
            return client.post(url, params=params, headers=headers, content=iter(pipe))

    @staticmethod
    def _parse_response(response: httpx.Response) -> str:
        if response.status_code in (400, 404):
            raise RejectedRequestError(response.status_code)
        if response.status_code != 200:
            raise BadResponseError(response.status_code)

        try:
            body = UploadResponse.model_validate(response.json())
        except ValueError as e:
            raise UploadError(f"invalid response body: {e}") from e

        if body.error:
            raise ServerReportedError(body.error)
        if not body.cid:
            raise ServerReportedError("response has no cid")
        return body.cid
