"""Storage driver contract shared by the local engine and remote backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from . import batch
from .models import (
    DeleteOutcome,
    ExpectedUpload,
    ListResult,
    PresignedUrlOutcome,
    UploadedFile,
    UploadOptions,
    UploadOutcome,
    ValidationOutcome,
)


class StorageDriver(ABC):
    """
    Abstract storage driver.

    Implementations:
    - LocalStorageEngine: files on the local filesystem
    - Remote object-store drivers registered through DriverRegistry

    Drivers report expected failures through outcome objects. They may raise
    BackendFailure for I/O or SDK errors; the manager retries those.
    """

    #: True when generate_upload_url / generate_view_url are meaningful
    supports_presigned_urls: bool = False

    @abstractmethod
    async def upload(
        self,
        file: UploadedFile,
        options: UploadOptions | None = None,
    ) -> UploadOutcome:
        """
        Store a file under a newly generated unique name.

        Args:
            file: Uploaded file (buffer or temp file path)
            options: Folder, metadata and header options

        Returns:
            UploadOutcome carrying the Reference on success
        """
        pass

    async def upload_multiple(
        self,
        files: Sequence[UploadedFile],
        options: UploadOptions | None = None,
        max_concurrent: int = 10,
    ) -> list[UploadOutcome]:
        """Upload several files; one outcome per file, in input order."""
        return await batch.upload_multiple(self, files, options, max_concurrent)

    @abstractmethod
    async def generate_upload_url(
        self,
        name: str,
        content_type: str | None = None,
        size: int | None = None,
    ) -> PresignedUrlOutcome:
        """
        Create a URL a client can upload to directly.

        Args:
            name: Exact object key to upload to
            content_type: MIME type the upload must declare
            size: Exact size the upload must have

        Returns:
            PresignedUrlOutcome with upload_url on success
        """
        pass

    @abstractmethod
    async def generate_view_url(self, name: str) -> PresignedUrlOutcome:
        """
        Create a time-limited URL for reading a stored file.

        Args:
            name: Reference of the stored file

        Returns:
            PresignedUrlOutcome with view_url on success
        """
        pass

    @abstractmethod
    async def delete(self, reference: str) -> bool:
        """
        Delete a stored file.

        Args:
            reference: Reference of the stored file

        Returns:
            True if a file was deleted, False if it was absent or refused
        """
        pass

    async def delete_multiple(
        self,
        references: Sequence[str],
        max_concurrent: int = 10,
    ) -> list[DeleteOutcome]:
        """Delete several files; one outcome per reference, in input order."""
        return await batch.delete_multiple(self, references, max_concurrent)

    @abstractmethod
    async def list_files(
        self,
        prefix: str | None = None,
        max_results: int | None = None,
        continuation_token: str | None = None,
    ) -> ListResult:
        """
        List stored files in lexicographic order.

        Args:
            prefix: Only include references starting with this string
            max_results: Page size, clamped to [1, 1000]
            continuation_token: next_token from the previous page

        Returns:
            ListResult with one page of files
        """
        pass

    @abstractmethod
    async def validate_and_confirm_upload(
        self,
        reference: str,
        expected: ExpectedUpload | None = None,
    ) -> ValidationOutcome:
        """
        Check a stored file against the caller's expectations.

        Args:
            reference: Reference of the stored file
            expected: Expected content type and size

        Returns:
            ValidationOutcome with the actual values
        """
        pass
