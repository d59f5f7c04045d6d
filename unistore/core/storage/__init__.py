"""Storage module for uploading, listing, validating and deleting files."""

from __future__ import annotations

from .backend import StorageDriver
from .cache import DriverCache
from .local_backend import LocalStorageEngine
from .manager import StorageManager
from .models import (
    DeleteOutcome,
    FileDescriptor,
    FileValidationRules,
    ListResult,
    PresignedUrlOutcome,
    UploadedFile,
    UploadOptions,
    UploadOutcome,
    UploadRequest,
    ValidationOutcome,
)
from .naming import UniqueNameGenerator
from .registry import DriverRegistry
from .security import PathSecurityValidator
from .sniffer import ContentSniffer

__all__ = [
    "StorageDriver",
    "DriverCache",
    "LocalStorageEngine",
    "StorageManager",
    "DeleteOutcome",
    "FileDescriptor",
    "FileValidationRules",
    "ListResult",
    "PresignedUrlOutcome",
    "UploadedFile",
    "UploadOptions",
    "UploadOutcome",
    "UploadRequest",
    "ValidationOutcome",
    "UniqueNameGenerator",
    "DriverRegistry",
    "PathSecurityValidator",
    "ContentSniffer",
]
