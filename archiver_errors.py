"""Error types raised by the archiver components."""

from __future__ import annotations

from typing import Any, Optional


class ArchiverError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.payload = payload


class NotFound(ArchiverError):
    """Raised when a catalog lookup has no registered entry."""


class UnsupportedInstrument(ArchiverError):
    """Raised when the remote source cannot serve a pair for an archive type."""


class RateLimited(ArchiverError):
    """Raised when the remote source returns 429."""


class RemoteMissing(ArchiverError):
    """Raised when the remote source returns 404 for an archive."""

    def __init__(self, message: str, *, permanent: bool = False, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.permanent = permanent


class TransientRemoteError(ArchiverError):
    """Raised for non-200 answers and connection failures worth retrying."""


class DownloadStalled(TransientRemoteError):
    """Raised when a transfer exceeds the allowed duration for its size."""


class InvalidFileSize(ArchiverError):
    """Raised when the declared or received size of an archive is unusable."""


class SourceMissing(ArchiverError):
    """Raised when the fragmenter finds no raw archive to work on."""


class InvalidArchive(ArchiverError):
    """Raised when a raw archive cannot be decompressed."""


class MalformedArchive(ArchiverError):
    """Raised when a raw archive does not hold exactly one data file."""


class ColumnNotFound(ArchiverError):
    """Raised when a row does not carry a column described by the catalog."""


class InvalidValue(ArchiverError):
    """Raised when a transform cannot interpret a field it depends on."""


class Interrupted(ArchiverError):
    """Raised when a task stops because it was asked to."""


class StatusServiceError(ArchiverError):
    """Raised when the status service cannot be reached or answers with an error."""
