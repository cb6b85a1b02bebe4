"""
Exception types for the file ingestion domain.

Every failure of the per-file pipeline is one of these. The collector records
it as an Error status for the path and moves on to the next file.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for ingestion failures."""


class ScanError(IngestError):
    """The filesystem walk of a sync folder failed."""


class VerificationError(IngestError):
    """A bundle is malformed or its signed material does not verify."""


class FingerprintError(IngestError):
    """Reading a file while computing its digests failed."""


class StatusStoreError(IngestError):
    """A read or write against the file_status table failed."""


class PreviouslyFailedError(IngestError):
    """The path already ended in Error; the stored message is replayed."""

    def __init__(self, file_path: str, message: Optional[str]):
        self.file_path = file_path
        self.message = message or ""
        super().__init__(f"file {file_path} has error: {self.message}")


class UploadError(IngestError):
    """Posting a file to the webhook server failed."""


class RejectedRequestError(UploadError):
    """The webhook server answered 400 or 404."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"bad request (status {status_code})")


class BadResponseError(UploadError):
    """The webhook server answered with an unexpected status code."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"bad status code in response: {status_code}")


class ServerReportedError(UploadError):
    """The webhook server answered 200 but reported an error in the body."""
