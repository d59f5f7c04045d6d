"""Input and result types shared by every storage driver."""

from __future__ import annotations

import io
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, BinaryIO

from unistore.core.errors import ErrorKind


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    return value


class _Serializable:
    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary, dropping unset fields."""
        return {key: _serialize(value) for key, value in asdict(self).items()
                if value is not None}


@dataclass(frozen=True)
class FileDescriptor(_Serializable):
    """A stored file as seen by listing and validation."""
    name: str
    size: int
    content_type: str
    last_modified: datetime


@dataclass(frozen=True)
class UploadOutcome(_Serializable):
    """Result of uploading one file."""
    success: bool
    name: str | None = None
    url: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, name: str, url: str | None = None) -> UploadOutcome:
        return cls(success=True, name=name, url=url)

    @classmethod
    def failed(cls, error: str,
               kind: ErrorKind = ErrorKind.VALIDATION) -> UploadOutcome:
        return cls(success=False, error=error, error_kind=kind)


@dataclass(frozen=True)
class PresignedUrlOutcome(_Serializable):
    """Result of asking a driver for an upload or view URL."""
    success: bool
    upload_url: str | None = None
    view_url: str | None = None
    expires_at: datetime | None = None
    expires_in: int | None = None
    reference: str | None = None
    file_name: str | None = None
    file_path: str | None = None
    content_type: str | None = None
    file_size: int | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    retry_after_ms: int | None = None

    @classmethod
    def failed(cls, error: str, kind: ErrorKind = ErrorKind.VALIDATION,
               retry_after_ms: int | None = None) -> PresignedUrlOutcome:
        return cls(success=False, error=error, error_kind=kind,
                   retry_after_ms=retry_after_ms)


@dataclass(frozen=True)
class DeleteOutcome(_Serializable):
    """Result of deleting one file in a batch."""
    reference: str
    success: bool
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass(frozen=True)
class ValidationOutcome(_Serializable):
    """Result of re-checking an uploaded file against expectations."""
    success: bool
    reference: str | None = None
    view_url: str | None = None
    actual_content_type: str | None = None
    actual_size: int | None = None
    expected_content_type: str | None = None
    expected_size: int | None = None
    expires_in: int | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def failed(cls, error: str, kind: ErrorKind, **details: Any) -> ValidationOutcome:
        return cls(success=False, error=error, error_kind=kind, **details)


@dataclass(frozen=True)
class ListResult(_Serializable):
    """One page of a file listing."""
    success: bool
    files: tuple[FileDescriptor, ...] = ()
    next_token: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def failed(cls, error: str,
               kind: ErrorKind = ErrorKind.VALIDATION) -> ListResult:
        return cls(success=False, error=error, error_kind=kind)


@dataclass
class UploadedFile:
    """
    An uploaded file as received from a web framework or a caller.

    Content is either held in memory (``buffer``) or written to a temporary
    file (``path``); drivers accept both.

    Attributes:
        original_name: Name supplied by the client
        content_type: MIME type declared by the client (not trusted)
        size: Declared size in bytes
        buffer: In-memory content
        path: Path to the content on disk
    """
    original_name: str
    content_type: str
    size: int | None = None
    buffer: bytes | None = None
    path: str | None = None

    @classmethod
    def from_bytes(cls, original_name: str, content: bytes,
                   content_type: str = "application/octet-stream") -> UploadedFile:
        return cls(original_name=original_name, content_type=content_type,
                   size=len(content), buffer=content)

    @classmethod
    def from_path(cls, path: str | os.PathLike, original_name: str | None = None,
                  content_type: str = "application/octet-stream") -> UploadedFile:
        path = os.fspath(path)
        return cls(original_name=original_name or os.path.basename(path),
                   content_type=content_type, size=os.path.getsize(path),
                   path=path)

    @property
    def has_buffer(self) -> bool:
        return self.buffer is not None and len(self.buffer) > 0

    @property
    def has_path(self) -> bool:
        return isinstance(self.path, str) and len(self.path) > 0

    @property
    def has_content(self) -> bool:
        return self.has_buffer or self.has_path

    def actual_size(self) -> int:
        """Size of the content itself, ignoring the declared size."""
        if self.has_buffer:
            return len(self.buffer)
        if self.has_path:
            return os.path.getsize(self.path)
        return 0

    def open(self) -> BinaryIO:
        """Open the content for reading; the caller closes the stream."""
        if self.has_buffer:
            return io.BytesIO(self.buffer)
        if self.has_path:
            return open(self.path, "rb")
        raise ValueError("File has neither buffer nor path")

    def read_head(self, length: int = 16) -> bytes:
        """Return the first bytes of the content."""
        with self.open() as stream:
            return stream.read(length)


@dataclass(frozen=True)
class UploadOptions:
    """Per-upload options passed through to the driver."""
    folder: str | None = None
    content_type: str | None = None
    cache_control: str | None = None
    content_disposition: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadRequest:
    """One entry of a batch request for presigned upload URLs."""
    file_name: str
    content_type: str | None = None
    file_size: int | None = None


@dataclass(frozen=True)
class FileValidationRules:
    """
    Caller-side acceptance rules checked before an upload.

    ``allowed_mime_types`` accepts ``*/*`` and ``type/*`` wildcards;
    ``allowed_extensions`` accepts ``*`` and entries with or without a
    leading dot.
    """
    max_size: int | None = None
    allowed_mime_types: tuple[str, ...] | None = None
    allowed_extensions: tuple[str, ...] | None = None


@dataclass(frozen=True)
class ExpectedUpload:
    """What a file is expected to look like after a direct upload."""
    content_type: str | None = None
    size: int | None = None
    delete_on_failure: bool = True


def check_uploaded_file(file: UploadedFile | None) -> list[str]:
    """Structural checks on an upload input; returns error messages."""
    if file is None:
        return ["No file provided"]
    errors = []
    if not file.original_name:
        errors.append("File must have an original name")
    if not file.content_type:
        errors.append("File must have a MIME type")
    if not file.has_content:
        errors.append("File must have either buffer or path")
    return errors
