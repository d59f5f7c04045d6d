"""
Batch helpers shared by all drivers.

Each helper runs the per-item driver call through ``run_limited`` and turns
an exception for one item into a failed outcome for that item, so a batch
always returns one outcome per input in input order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from unistore.core.errors import ErrorKind
from unistore.core.utils.concurrency import DEFAULT_MAX_CONCURRENT, run_limited
from unistore.logging.setup import get_logger

from .models import (
    DeleteOutcome,
    ExpectedUpload,
    PresignedUrlOutcome,
    UploadedFile,
    UploadOptions,
    UploadOutcome,
    UploadRequest,
    ValidationOutcome,
)

if TYPE_CHECKING:
    from .backend import StorageDriver

logger = get_logger(__name__)

NOT_FOUND_ON_DELETE = "File not found or already deleted"


def _describe(error: Exception, fallback: str) -> str:
    return str(error) or fallback


async def upload_multiple(
    driver: StorageDriver,
    files: Sequence[UploadedFile],
    options: UploadOptions | None = None,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> list[UploadOutcome]:
    """Upload files through a driver, capturing per-file failures."""
    async def upload_one(file: UploadedFile) -> UploadOutcome:
        try:
            return await driver.upload(file, options)
        except Exception as e:
            logger.error(f"Upload failed: {e}")
            return UploadOutcome.failed(
                _describe(e, "Upload failed"), ErrorKind.BACKEND)

    return await run_limited(files, upload_one, max_concurrent=max_concurrent)


async def delete_multiple(
    driver: StorageDriver,
    references: Sequence[str],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> list[DeleteOutcome]:
    """Delete references through a driver, reporting each result."""
    async def delete_one(reference: str) -> DeleteOutcome:
        try:
            deleted = await driver.delete(reference)
        except Exception as e:
            logger.error(f"Delete failed for {reference!r}: {e}")
            return DeleteOutcome(
                reference=reference, success=False,
                error=_describe(e, "Failed to delete file"),
                error_kind=ErrorKind.BACKEND)
        if deleted:
            return DeleteOutcome(reference=reference, success=True)
        return DeleteOutcome(reference=reference, success=False,
                             error=NOT_FOUND_ON_DELETE,
                             error_kind=ErrorKind.NOT_FOUND)

    return await run_limited(references, delete_one,
                             max_concurrent=max_concurrent)


async def generate_upload_urls(
    driver: StorageDriver,
    requests: Sequence[UploadRequest],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> list[PresignedUrlOutcome]:
    """Request presigned upload URLs for several exact keys."""
    async def generate_one(request: UploadRequest) -> PresignedUrlOutcome:
        try:
            return await driver.generate_upload_url(
                request.file_name, request.content_type, request.file_size)
        except Exception as e:
            return PresignedUrlOutcome.failed(
                _describe(e, "Failed to generate upload URL"), ErrorKind.BACKEND)

    return await run_limited(requests, generate_one,
                             max_concurrent=max_concurrent)


async def generate_view_urls(
    driver: StorageDriver,
    references: Sequence[str],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> list[PresignedUrlOutcome]:
    """Request presigned view URLs for several references."""
    async def generate_one(reference: str) -> PresignedUrlOutcome:
        try:
            return await driver.generate_view_url(reference)
        except Exception as e:
            return PresignedUrlOutcome.failed(
                _describe(e, "Failed to generate view URL"), ErrorKind.BACKEND)

    return await run_limited(references, generate_one,
                             max_concurrent=max_concurrent)


async def confirm_via_view_url(
    driver: StorageDriver,
    reference: str,
    expected: ExpectedUpload | None = None,
    expires_in: int | None = None,
) -> ValidationOutcome:
    """
    Default upload confirmation for remote drivers.

    Object stores that enforce type and size in the signed upload URL only
    need to prove the object exists, which generating a view URL does.
    """
    view = await driver.generate_view_url(reference)
    if not view.success:
        return ValidationOutcome.failed(
            view.error or "File not found", view.error_kind or ErrorKind.NOT_FOUND,
            reference=reference)
    return ValidationOutcome(
        success=True,
        reference=reference,
        view_url=view.view_url,
        expected_content_type=expected.content_type if expected else None,
        expected_size=expected.size if expected else None,
        expires_in=expires_in if expires_in is not None else view.expires_in,
    )
