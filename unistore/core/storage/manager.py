"""High-level storage manager shared by every backend."""

from __future__ import annotations

import asyncio
import dataclasses
import math
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from unistore.config.settings import (
    AppSettings,
    RateLimitSettings,
    RetrySettings,
    StorageConfig,
    StorageDriverKind,
    validate_storage_config,
)
from unistore.core.errors import BackendFailure, ConfigurationError, ErrorKind
from unistore.core.rate_limiter import RateLimiter, RateLimitStatus
from unistore.core.utils.concurrency import DEFAULT_MAX_CONCURRENT, run_limited
from unistore.core.utils.retry import with_retry
from unistore.logging.setup import get_logger

from .backend import StorageDriver
from .batch import NOT_FOUND_ON_DELETE
from .cache import DriverCache
from .models import (
    DeleteOutcome,
    ExpectedUpload,
    FileValidationRules,
    ListResult,
    PresignedUrlOutcome,
    UploadedFile,
    UploadOptions,
    UploadOutcome,
    UploadRequest,
    ValidationOutcome,
    check_uploaded_file,
)
from .naming import UniqueNameGenerator
from .registry import DriverRegistry
from .security import PathSecurityValidator, rejection_kind
from .sniffer import ContentSniffer

logger = get_logger(__name__)

T = TypeVar("T")

# Errors a driver raises for transient backend problems
RETRYABLE_ERRORS = (BackendFailure, OSError)

PRESIGNED_RATE_LIMIT_KEY = "presigned"

# RFC 6838 type/subtype made of token characters
CONTENT_TYPE_PATTERN = re.compile(
    r"^[A-Za-z0-9][A-Za-z0-9!#$&^_.+-]*/[A-Za-z0-9][A-Za-z0-9!#$&^_.+-]*$")


def _mime_type_allowed(pattern: str, content_type: str) -> bool:
    pattern = pattern.strip().lower()
    content_type = content_type.split(";", 1)[0].strip().lower()
    if pattern in ("*", "*/*"):
        return True
    if pattern.endswith("/*"):
        return content_type.startswith(pattern[:-1])
    return pattern == content_type


def _extension_allowed(allowed: Sequence[str], file_name: str) -> bool:
    extension = os.path.splitext(file_name)[1].lower()
    for entry in allowed:
        entry = entry.strip().lower()
        if entry == "*":
            return True
        if extension and "." + entry.lstrip(".") == extension:
            return True
    return False


def _is_non_negative_integer(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and (math.isnan(value) or not value.is_integer()):
        return False
    return value >= 0


class StorageManager:
    """
    Facade over a storage driver.

    Features:
    - Input validation (names, folders, content types, sizes) before any I/O
    - Caller-defined acceptance rules for uploads
    - Rate limiting of presigned URL generation
    - Retries for drivers that raise transient backend errors
    - Bounded-concurrency batch operations with per-item outcomes
    - One cached driver per configuration via DriverCache
    """

    def __init__(
        self,
        config: StorageConfig | None = None,
        *,
        rate_limit: RateLimitSettings | None = None,
        retry: RetrySettings | None = None,
        driver_cache: DriverCache | None = None,
        registry: DriverRegistry | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        validator: PathSecurityValidator | None = None,
        name_generator: UniqueNameGenerator | None = None,
        sniffer: ContentSniffer | None = None,
    ):
        """
        Initialize the manager.

        Args:
            config: Storage configuration (local defaults when omitted)
            rate_limit: Limit for presigned URL generation; None disables it
            retry: Retry policy for driver calls that raise
            driver_cache: Cache to share between managers; a private one is
                created when omitted
            registry: Driver factories; local only when omitted
            max_concurrent: Concurrency cap for batch operations
            validator: Path validator
            name_generator: Name generator for presigned upload keys
            sniffer: Content sniffer for upload acceptance rules

        Raises:
            ConfigurationError: If the configuration is invalid or no driver
                is registered for its kind
        """
        self.config = config if config is not None else StorageConfig()
        errors = validate_storage_config(self.config)
        if errors:
            raise ConfigurationError(
                "Invalid storage configuration: " + "; ".join(errors), errors)
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.registry = registry if registry is not None else DriverRegistry()
        self.driver_cache = (driver_cache if driver_cache is not None
                             else DriverCache(self.registry.create))
        self.rate_limiter = (RateLimiter.from_settings(rate_limit)
                             if rate_limit is not None else None)
        self.retry = retry if retry is not None else RetrySettings()
        self.max_concurrent = max_concurrent
        self.validator = validator if validator is not None else PathSecurityValidator()
        self.name_generator = (name_generator if name_generator is not None
                               else UniqueNameGenerator())
        self.sniffer = sniffer if sniffer is not None else ContentSniffer()

        # Fail fast on unregistered driver kinds
        self.driver
        logger.info(f"Storage manager ready ({self.config.driver.value} driver)")

    @classmethod
    def from_settings(cls, settings: AppSettings, **kwargs: Any) -> StorageManager:
        """Build a manager from loaded application settings."""
        return cls(
            settings.storage,
            rate_limit=settings.rate_limit,
            retry=settings.retry,
            max_concurrent=settings.max_concurrent,
            **kwargs,
        )

    @property
    def driver(self) -> StorageDriver:
        return self.driver_cache.get(self.config)

    @property
    def driver_kind(self) -> StorageDriverKind:
        return self.config.driver

    def is_presigned_supported(self) -> bool:
        return self.driver.supports_presigned_urls

    def available_drivers(self) -> list[str]:
        """Driver kinds that have a registered factory."""
        return self.registry.available()

    def get_safe_config(self) -> dict[str, Any]:
        """Configuration with credentials masked, for logs and diagnostics."""
        return self.config.safe_dump()

    def get_rate_limit_status(self) -> RateLimitStatus | None:
        """Remaining presigned URL quota, or None when rate limiting is off."""
        if self.rate_limiter is None:
            return None
        return self.rate_limiter.status(PRESIGNED_RATE_LIMIT_KEY)

    def clear_cache(self):
        """Drop every cached driver; the next call creates a fresh one."""
        self.driver_cache.clear()

    async def _call_driver(self, call: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(
            call,
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay,
            max_delay=self.retry.max_delay,
            exponential_backoff=self.retry.exponential_backoff,
            retry_on=RETRYABLE_ERRORS,
        )

    def _resolve_folder(self, folder: str | None) -> tuple[str | None, str | None]:
        """Return (folder, None) on success or (None, reason) on rejection."""
        if folder is None:
            folder = self.config.bucket_path
        folder = PathSecurityValidator.normalize_folder(folder)
        if folder is None:
            return None, None
        reason = self.validator.validate_folder(folder)
        if reason:
            return None, reason
        return folder, None

    def _rate_limited(self) -> PresignedUrlOutcome | None:
        if self.rate_limiter is None:
            return None
        if self.rate_limiter.try_acquire(PRESIGNED_RATE_LIMIT_KEY):
            return None
        status = self.rate_limiter.status(PRESIGNED_RATE_LIMIT_KEY)
        seconds = max(1, math.ceil(status.reset_in_ms / 1000))
        logger.warning("Presigned URL rate limit exceeded")
        return PresignedUrlOutcome.failed(
            f"Rate limit exceeded. Try again in {seconds} seconds",
            ErrorKind.RATE_LIMITED,
            retry_after_ms=status.reset_in_ms,
        )

    async def _content_type_for_rules(self, file: UploadedFile) -> str:
        # A recognised signature overrides the declared type
        head = await asyncio.to_thread(file.read_head)
        return self.sniffer.sniff(head) or file.content_type

    async def check_rules(
        self,
        file: UploadedFile,
        rules: FileValidationRules | None,
    ) -> str | None:
        """
        Check a file against caller-defined acceptance rules.

        Args:
            file: Uploaded file with content
            rules: Size, MIME type and extension rules

        Returns:
            None if accepted, otherwise the reason
        """
        if rules is None:
            return None

        size = await asyncio.to_thread(file.actual_size)
        if rules.max_size is not None and size > rules.max_size:
            return f"File size exceeds limit of {rules.max_size} bytes"

        if rules.allowed_mime_types:
            content_type = await self._content_type_for_rules(file)
            if not any(_mime_type_allowed(pattern, content_type)
                       for pattern in rules.allowed_mime_types):
                return f"File type '{content_type}' is not allowed"

        if rules.allowed_extensions and not _extension_allowed(
                rules.allowed_extensions, file.original_name):
            extension = os.path.splitext(file.original_name)[1] or "(none)"
            return f"File extension '{extension}' is not allowed"
        return None

    async def upload_file(
        self,
        file: UploadedFile,
        validation: FileValidationRules | None = None,
        options: UploadOptions | None = None,
    ) -> UploadOutcome:
        """
        Validate and upload one file.

        Args:
            file: Uploaded file (buffer or temp file path)
            validation: Optional acceptance rules
            options: Folder and metadata options

        Returns:
            UploadOutcome with the Reference on success
        """
        errors = check_uploaded_file(file)
        if errors:
            return UploadOutcome.failed("; ".join(errors))

        reason = self.validator.validate_name(file.original_name)
        if reason:
            return UploadOutcome.failed(reason, rejection_kind(reason))

        folder, reason = self._resolve_folder(options.folder if options else None)
        if reason:
            return UploadOutcome.failed(reason, rejection_kind(reason))

        try:
            reason = await self.check_rules(file, validation)
        except FileNotFoundError:
            reason = "Uploaded file content is missing"
        if reason:
            return UploadOutcome.failed(reason)

        # An empty folder tells the driver to skip its bucket_path default
        options = dataclasses.replace(options or UploadOptions(), folder=folder or "")
        driver = self.driver
        try:
            return await self._call_driver(lambda: driver.upload(file, options))
        except RETRYABLE_ERRORS as e:
            logger.error(f"Upload of {file.original_name!r} failed: {e}")
            return UploadOutcome.failed(f"Upload failed: {e}", ErrorKind.BACKEND)

    async def upload_files(
        self,
        files: Sequence[UploadedFile],
        validation: FileValidationRules | None = None,
        options: UploadOptions | None = None,
    ) -> list[UploadOutcome]:
        """Upload several files; one outcome per file, in input order."""
        async def upload_one(file: UploadedFile) -> UploadOutcome:
            try:
                return await self.upload_file(file, validation, options)
            except Exception as e:
                logger.exception("Unexpected upload error")
                return UploadOutcome.failed(str(e) or "Upload failed",
                                            ErrorKind.BACKEND)

        return await run_limited(files, upload_one,
                                 max_concurrent=self.max_concurrent)

    async def upload(
        self,
        files: UploadedFile | Sequence[UploadedFile],
        validation: FileValidationRules | None = None,
        options: UploadOptions | None = None,
    ) -> UploadOutcome | list[UploadOutcome]:
        """Upload one file or a sequence of files."""
        if isinstance(files, UploadedFile):
            return await self.upload_file(files, validation, options)
        if isinstance(files, (list, tuple)):
            return await self.upload_files(files, validation, options)
        raise TypeError("upload() expects an UploadedFile or a list of them")

    async def generate_upload_url(
        self,
        file_name: str,
        content_type: str | None = None,
        file_size: int | None = None,
        folder: str | None = None,
    ) -> PresignedUrlOutcome:
        """
        Create a presigned URL for a direct client upload.

        A unique object key is generated from ``file_name``; the returned
        outcome's ``reference`` is the key to persist.

        Args:
            file_name: Original file name
            content_type: Required MIME type (``type/subtype``), if any
            file_size: Exact size in bytes, if known
            folder: Folder for the object; defaults to bucket_path

        Returns:
            PresignedUrlOutcome with upload_url, reference and expiry
        """
        reason = self.validator.validate_name(file_name)
        if reason:
            return PresignedUrlOutcome.failed(reason, rejection_kind(reason))

        if content_type and not CONTENT_TYPE_PATTERN.match(content_type):
            return PresignedUrlOutcome.failed(
                "Invalid content type format: expected 'type/subtype'")

        if file_size is not None:
            if not _is_non_negative_integer(file_size):
                return PresignedUrlOutcome.failed(
                    "file_size must be a non-negative integer")
            file_size = int(file_size)
            if file_size > self.config.max_file_size:
                return PresignedUrlOutcome.failed(
                    f"File size exceeds maximum allowed size of "
                    f"{self.config.max_file_size} bytes")

        folder, reason = self._resolve_folder(folder)
        if reason:
            return PresignedUrlOutcome.failed(reason, rejection_kind(reason))

        driver = self.driver
        if not driver.supports_presigned_urls:
            return await driver.generate_upload_url(file_name, content_type, file_size)

        limited = self._rate_limited()
        if limited:
            return limited

        unique_name = self.name_generator.generate(file_name)
        key = "/".join(part for part in (folder, unique_name) if part)
        try:
            outcome = await self._call_driver(
                lambda: driver.generate_upload_url(key, content_type or None, file_size))
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed to generate upload URL for {key}: {e}")
            return PresignedUrlOutcome.failed(
                f"Failed to generate upload URL: {e}", ErrorKind.BACKEND)
        if not outcome.success:
            return outcome

        expires_in = outcome.expires_in or self.config.url_expiry_seconds
        return dataclasses.replace(
            outcome,
            reference=key,
            file_name=unique_name,
            file_path=folder,
            content_type=content_type or None,
            file_size=file_size,
            expires_in=expires_in,
            expires_at=outcome.expires_at or (
                datetime.now(timezone.utc) + timedelta(seconds=expires_in)),
        )

    async def generate_view_url(self, reference: str) -> PresignedUrlOutcome:
        """
        Create a presigned URL for reading a stored file.

        Args:
            reference: Reference returned by an upload

        Returns:
            PresignedUrlOutcome with view_url and expiry
        """
        reason = self.validator.validate_reference(reference)
        if reason:
            return PresignedUrlOutcome.failed(reason, rejection_kind(reason))

        driver = self.driver
        if not driver.supports_presigned_urls:
            return await driver.generate_view_url(reference)

        limited = self._rate_limited()
        if limited:
            return limited

        try:
            outcome = await self._call_driver(lambda: driver.generate_view_url(reference))
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed to generate view URL for {reference}: {e}")
            return PresignedUrlOutcome.failed(
                f"Failed to generate view URL: {e}", ErrorKind.BACKEND)
        if not outcome.success:
            return outcome

        expires_in = outcome.expires_in or self.config.url_expiry_seconds
        return dataclasses.replace(
            outcome,
            reference=reference,
            expires_in=expires_in,
            expires_at=outcome.expires_at or (
                datetime.now(timezone.utc) + timedelta(seconds=expires_in)),
        )

    async def generate_upload_urls(
        self,
        requests: Sequence[UploadRequest | str],
        folder: str | None = None,
    ) -> list[PresignedUrlOutcome]:
        """Presigned upload URLs for several files, in input order."""
        async def generate_one(request: UploadRequest | str) -> PresignedUrlOutcome:
            if isinstance(request, str):
                request = UploadRequest(file_name=request)
            try:
                return await self.generate_upload_url(
                    request.file_name, request.content_type,
                    request.file_size, folder)
            except Exception as e:
                logger.exception("Unexpected error generating upload URL")
                return PresignedUrlOutcome.failed(
                    str(e) or "Failed to generate upload URL", ErrorKind.BACKEND)

        return await run_limited(requests, generate_one,
                                 max_concurrent=self.max_concurrent)

    async def generate_view_urls(
        self,
        references: Sequence[str],
    ) -> list[PresignedUrlOutcome]:
        """Presigned view URLs for several references, in input order."""
        async def generate_one(reference: str) -> PresignedUrlOutcome:
            try:
                return await self.generate_view_url(reference)
            except Exception as e:
                logger.exception("Unexpected error generating view URL")
                return PresignedUrlOutcome.failed(
                    str(e) or "Failed to generate view URL", ErrorKind.BACKEND)

        return await run_limited(references, generate_one,
                                 max_concurrent=self.max_concurrent)

    async def delete_file(self, reference: str) -> bool:
        """
        Delete a stored file.

        Returns:
            True if deleted; False if missing, invalid, or the backend failed
        """
        if self.validator.validate_reference(reference) is not None:
            return False

        driver = self.driver
        try:
            return await self._call_driver(lambda: driver.delete(reference))
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed to delete {reference}: {e}")
            return False

    async def delete_files(self, references: Sequence[str]) -> list[DeleteOutcome]:
        """Delete several files; one outcome per reference, in input order."""
        async def delete_one(reference: str) -> DeleteOutcome:
            try:
                deleted = await self.delete_file(reference)
            except Exception as e:
                logger.exception("Unexpected delete error")
                return DeleteOutcome(reference=reference, success=False,
                                     error=str(e) or "Failed to delete file",
                                     error_kind=ErrorKind.BACKEND)
            if deleted:
                return DeleteOutcome(reference=reference, success=True)
            return DeleteOutcome(reference=reference, success=False,
                                 error=NOT_FOUND_ON_DELETE,
                                 error_kind=ErrorKind.NOT_FOUND)

        return await run_limited(references, delete_one,
                                 max_concurrent=self.max_concurrent)

    async def list_files(
        self,
        prefix: str | None = None,
        max_results: int | None = None,
        continuation_token: str | None = None,
    ) -> ListResult:
        """
        List stored files.

        Args:
            prefix: Only references starting with this string
            max_results: Page size, clamped to [1, 1000] by the driver
            continuation_token: next_token of the previous page

        Returns:
            ListResult with one page of files
        """
        reason = self.validator.validate_prefix(prefix)
        if reason:
            return ListResult.failed(reason, ErrorKind.SECURITY)

        driver = self.driver
        try:
            return await self._call_driver(
                lambda: driver.list_files(prefix, max_results, continuation_token))
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed to list files: {e}")
            return ListResult.failed(f"Failed to list files: {e}", ErrorKind.BACKEND)

    async def validate_and_confirm_upload(
        self,
        reference: str,
        expected_content_type: str | None = None,
        expected_size: int | None = None,
        delete_on_failure: bool = True,
    ) -> ValidationOutcome:
        """
        Confirm that a directly uploaded file matches what was announced.

        Args:
            reference: Reference of the uploaded file
            expected_content_type: MIME type the file should have
            expected_size: Size in bytes the file should have
            delete_on_failure: Delete the file when it does not match

        Returns:
            ValidationOutcome with actual and expected values
        """
        reason = self.validator.validate_reference(reference)
        if reason:
            if rejection_kind(reason) is ErrorKind.SECURITY:
                return ValidationOutcome.failed(
                    "File not found", ErrorKind.NOT_FOUND, reference=reference)
            return ValidationOutcome.failed(reason, ErrorKind.VALIDATION)

        if expected_size is not None and not _is_non_negative_integer(expected_size):
            return ValidationOutcome.failed(
                "expected_size must be a non-negative integer",
                ErrorKind.VALIDATION, reference=reference)

        expected = ExpectedUpload(
            content_type=expected_content_type,
            size=int(expected_size) if expected_size is not None else None,
            delete_on_failure=delete_on_failure,
        )
        driver = self.driver
        try:
            outcome = await self._call_driver(
                lambda: driver.validate_and_confirm_upload(reference, expected))
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed to validate {reference}: {e}")
            return ValidationOutcome.failed(
                f"Failed to validate upload: {e}", ErrorKind.BACKEND,
                reference=reference)

        if outcome.success and outcome.expires_in is None \
                and driver.supports_presigned_urls:
            return dataclasses.replace(
                outcome, expires_in=self.config.url_expiry_seconds)
        return outcome
