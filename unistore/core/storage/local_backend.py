"""Local filesystem storage driver."""

from __future__ import annotations

import asyncio
import heapq
import math
import os
import re
import shutil
import stat
from datetime import datetime, timezone
from operator import itemgetter
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import quote

from unistore.config.settings import StorageConfig
from unistore.core.errors import BackendFailure, ErrorKind
from unistore.logging.setup import get_logger

from .backend import StorageDriver
from .models import (
    ExpectedUpload,
    FileDescriptor,
    ListResult,
    PresignedUrlOutcome,
    UploadedFile,
    UploadOptions,
    UploadOutcome,
    ValidationOutcome,
    check_uploaded_file,
)
from .naming import UniqueNameGenerator, date_path
from .security import PathSecurityValidator, rejection_kind
from .sniffer import DEFAULT_CONTENT_TYPE, SNIFF_LENGTH, ContentSniffer

logger = get_logger(__name__)

MAX_LIST_RESULTS = 1000
MAX_LIST_DEPTH = 100
COPY_CHUNK_SIZE = 1024 * 1024
PRESIGNED_NOT_SUPPORTED = "Presigned URLs are not supported for local storage"


def clamp_max_results(value: Any) -> int:
    """Coerce a page size into [1, 1000]; unusable values give 1000."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return MAX_LIST_RESULTS
    if math.isnan(number):
        return MAX_LIST_RESULTS
    return int(max(1, min(number, MAX_LIST_RESULTS)))


def _same_mime_type(expected: str, actual: str) -> bool:
    def essence(value: str) -> str:
        return value.split(";", 1)[0].strip().lower()
    return essence(expected) == essence(actual)


class LocalStorageEngine(StorageDriver):
    """
    Stores files under a root directory on the local filesystem.

    Layout: ``{root}/[{folder}/]{YYYY}/{MM}/{timestamp}_{random}_{name}{ext}``.
    The Reference returned by an upload is the path relative to the root.

    Security features:
    - Names and folders are re-validated here even when the caller already did
    - References are resolved through real paths; anything that resolves
      outside the root, is a symlink, or is not a regular file is treated as
      missing
    - Files are created exclusively and stored without execute permission
    - Content type is sniffed from file bytes during validation
    """

    supports_presigned_urls = False

    def __init__(
        self,
        config: StorageConfig,
        validator: PathSecurityValidator | None = None,
        name_generator: UniqueNameGenerator | None = None,
        sniffer: ContentSniffer | None = None,
    ):
        """
        Initialize the local engine.

        Args:
            config: Storage configuration (local_path is the root)
            validator: Path validator (a default one is created if omitted)
            name_generator: Unique name generator
            sniffer: Content sniffer
        """
        self.config = config
        self.root = Path(config.local_path)
        self.validator = validator if validator is not None else PathSecurityValidator()
        self.name_generator = (name_generator if name_generator is not None
                               else UniqueNameGenerator())
        self.sniffer = sniffer if sniffer is not None else ContentSniffer()

    def _real_root(self) -> Path:
        return Path(os.path.realpath(self.root))

    def url_for(self, reference: str) -> str:
        """Public URL for a reference."""
        quoted = quote(reference, safe="/")
        if self.config.base_url:
            return f"{self.config.base_url.rstrip('/')}/{quoted}"

        web_root = self.config.local_path.replace("\\", "/").strip("/")
        if web_root == "public":
            web_root = ""
        elif web_root.startswith("public/"):
            web_root = web_root[len("public/"):]
        url = "/" + "/".join(part for part in (web_root, quoted) if part)
        return re.sub(r"/{2,}", "/", url)

    async def upload(
        self,
        file: UploadedFile,
        options: UploadOptions | None = None,
    ) -> UploadOutcome:
        """
        Save a file under a unique name in the current month's directory.

        Args:
            file: Uploaded file (buffer or temp file path)
            options: Upload options; options.folder overrides bucket_path

        Returns:
            UploadOutcome with the Reference and local URL

        Raises:
            BackendFailure: If writing to disk fails
        """
        errors = check_uploaded_file(file)
        if errors:
            return UploadOutcome.failed("; ".join(errors))

        reason = self.validator.validate_name(file.original_name)
        if reason:
            return UploadOutcome.failed(reason, rejection_kind(reason))

        folder = PathSecurityValidator.normalize_folder(
            options.folder if options and options.folder is not None
            else self.config.bucket_path)
        if folder:
            reason = self.validator.validate_folder(folder)
            if reason:
                return UploadOutcome.failed(reason, rejection_kind(reason))

        try:
            size = await asyncio.to_thread(file.actual_size)
        except FileNotFoundError:
            return UploadOutcome.failed("Uploaded file content is missing")
        if size > self.config.max_file_size:
            return UploadOutcome.failed(
                f"File size exceeds maximum allowed size of "
                f"{self.config.max_file_size} bytes")

        unique_name = self.name_generator.generate(file.original_name)
        reference = "/".join(
            part for part in (folder, date_path(), unique_name) if part)

        try:
            stored = await asyncio.to_thread(self._store, file, reference, size)
        except OSError as e:
            logger.error(f"Failed to save {file.original_name!r}: {e}")
            raise BackendFailure(f"Failed to save file: {e}") from e

        if not stored:
            return UploadOutcome.failed("Invalid folder path", ErrorKind.SECURITY)

        logger.info(f"Stored {file.original_name!r} as {reference}")
        return UploadOutcome.ok(reference, self.url_for(reference))

    def _store(self, file: UploadedFile, reference: str, size: int) -> bool:
        root = self._real_root()
        root.mkdir(parents=True, exist_ok=True)

        *directories, name = reference.split("/")
        current = root
        for part in directories:
            current = current / part
            try:
                current.mkdir()
            except FileExistsError:
                pass
            # Symlinked folders could redirect the write outside the root
            if current.is_symlink() or not current.is_dir():
                logger.warning(
                    f"Refusing to write through non-directory: {reference}")
                return False

        target = current / name
        out = open(target, "xb")
        try:
            with out:
                if file.has_buffer and size <= self.config.streaming_threshold:
                    out.write(file.buffer)
                else:
                    with file.open() as source:
                        shutil.copyfileobj(source, out, COPY_CHUNK_SIZE)
            os.chmod(target, 0o444)
        except BaseException:
            target.unlink(missing_ok=True)
            raise
        return True

    async def generate_upload_url(
        self,
        name: str,
        content_type: str | None = None,
        size: int | None = None,
    ) -> PresignedUrlOutcome:
        return PresignedUrlOutcome.failed(
            PRESIGNED_NOT_SUPPORTED, ErrorKind.UNSUPPORTED)

    async def generate_view_url(self, name: str) -> PresignedUrlOutcome:
        return PresignedUrlOutcome.failed(
            PRESIGNED_NOT_SUPPORTED, ErrorKind.UNSUPPORTED)

    def resolve_reference(self, reference: str) -> Path | None:
        """
        Map a reference to a regular file strictly inside the root.

        Returns:
            Real path of the file, or None when the reference is invalid,
            missing, a symlink, not a regular file, or resolves outside the
            root
        """
        if self.validator.validate_reference(reference) is not None:
            return None

        root = self._real_root()
        candidate = root.joinpath(*self.validator.decode(reference).split("/"))
        try:
            info = os.lstat(candidate)
        except OSError:
            return None
        if stat.S_ISLNK(info.st_mode) or not stat.S_ISREG(info.st_mode):
            return None

        real = Path(os.path.realpath(candidate))
        if root not in real.parents:
            logger.warning(f"Reference resolves outside storage root: {reference!r}")
            return None
        return real

    def _delete_sync(self, reference: str) -> bool:
        target = self.resolve_reference(reference)
        if target is None:
            return False
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Deleted {reference}")
        return True

    async def delete(self, reference: str) -> bool:
        """
        Delete a stored file.

        Never raises: invalid, missing, symlinked or escaping references and
        filesystem errors all return False.
        """
        try:
            return await asyncio.to_thread(self._delete_sync, reference)
        except OSError as e:
            logger.warning(f"Failed to delete {reference!r}: {e}")
            return False

    async def list_files(
        self,
        prefix: str | None = None,
        max_results: int | None = None,
        continuation_token: str | None = None,
    ) -> ListResult:
        """
        List regular files under the root in lexicographic order.

        Args:
            prefix: String prefix of the relative path (percent-decoded once)
            max_results: Page size, clamped to [1, 1000]
            continuation_token: Only names sorting strictly after this token
                are returned

        Returns:
            ListResult; next_token is set when more files remain

        Raises:
            BackendFailure: If the directory tree cannot be read
        """
        reason = self.validator.validate_prefix(prefix)
        if reason:
            return ListResult.failed(reason, ErrorKind.SECURITY)

        decoded_prefix = self.validator.decode(prefix) if prefix else ""
        limit = clamp_max_results(max_results)

        try:
            files, has_more = await asyncio.to_thread(
                self._collect_page, decoded_prefix, limit, continuation_token)
        except OSError as e:
            logger.error(f"Failed to list files: {e}")
            raise BackendFailure(f"Failed to list files: {e}") from e

        next_token = files[-1].name if has_more and files else None
        return ListResult(success=True, files=tuple(files), next_token=next_token)

    def _collect_page(
        self,
        prefix: str,
        limit: int,
        token: str | None,
    ) -> tuple[list[FileDescriptor], bool]:
        root = self._real_root()
        if not root.is_dir():
            return [], False

        candidates = (
            (name, info) for name, info in self._walk(str(root), "", 0, prefix)
            if name.startswith(prefix) and (token is None or name > token)
        )
        page = heapq.nsmallest(limit + 1, candidates, key=itemgetter(0))
        return [self._describe(name, info) for name, info in page[:limit]], \
            len(page) > limit

    def _walk(
        self,
        directory: str,
        relative: str,
        depth: int,
        prefix: str,
    ) -> Iterator[tuple[str, os.stat_result]]:
        try:
            with os.scandir(directory) as iterator:
                entries = list(iterator)
        except (FileNotFoundError, NotADirectoryError):
            return

        for entry in entries:
            name = f"{relative}/{entry.name}" if relative else entry.name
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if depth + 1 < MAX_LIST_DEPTH and self._may_contain(name, prefix):
                        yield from self._walk(entry.path, name, depth + 1, prefix)
                elif entry.is_file(follow_symlinks=False):
                    yield name, entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                # Removed while walking
                continue

    @staticmethod
    def _may_contain(directory: str, prefix: str) -> bool:
        if not prefix:
            return True
        directory = directory + "/"
        return prefix.startswith(directory) or directory.startswith(prefix)

    def _describe(self, name: str, info: os.stat_result) -> FileDescriptor:
        return FileDescriptor(
            name=name,
            size=info.st_size,
            content_type=self.sniffer.from_extension(name) or DEFAULT_CONTENT_TYPE,
            last_modified=datetime.fromtimestamp(info.st_mtime, tz=timezone.utc),
        )

    @staticmethod
    def _size_and_head(path: Path) -> tuple[int, bytes]:
        with open(path, "rb") as f:
            head = f.read(SNIFF_LENGTH)
            size = os.fstat(f.fileno()).st_size
        return size, head

    async def validate_and_confirm_upload(
        self,
        reference: str,
        expected: ExpectedUpload | None = None,
    ) -> ValidationOutcome:
        """
        Re-check a stored file's real content type and size.

        The content type is sniffed from the file's bytes, falling back to
        its extension. On a mismatch the file is deleted unless
        ``expected.delete_on_failure`` is False.

        Args:
            reference: Reference of the stored file
            expected: Expected content type and/or size

        Returns:
            ValidationOutcome with actual and expected values

        Raises:
            BackendFailure: If the file exists but cannot be read
        """
        expected = expected if expected is not None else ExpectedUpload()
        target = await asyncio.to_thread(self.resolve_reference, reference)
        if target is None:
            return ValidationOutcome.failed(
                "File not found", ErrorKind.NOT_FOUND, reference=reference)

        try:
            size, head = await asyncio.to_thread(self._size_and_head, target)
        except FileNotFoundError:
            return ValidationOutcome.failed(
                "File not found", ErrorKind.NOT_FOUND, reference=reference)
        except OSError as e:
            raise BackendFailure(f"Failed to read file: {e}") from e

        sniffed = self.sniffer.sniff(head)
        by_extension = self.sniffer.from_extension(target.name)
        actual_type = sniffed or by_extension or DEFAULT_CONTENT_TYPE
        details = dict(
            reference=reference,
            actual_content_type=actual_type,
            actual_size=size,
            expected_content_type=expected.content_type,
            expected_size=expected.size,
        )

        problem = None
        if expected.content_type and not _same_mime_type(
                expected.content_type, actual_type):
            problem = (f"Content type mismatch: expected "
                       f"'{expected.content_type}', got '{actual_type}'")
            if sniffed and by_extension and sniffed != by_extension:
                problem += (" - file content does not match its extension "
                            "(possible spoofing)")
        elif expected.size is not None and expected.size != size:
            problem = (f"File size mismatch: expected {expected.size} bytes, "
                       f"got {size} bytes")

        if problem is None:
            return ValidationOutcome(
                success=True, view_url=self.url_for(reference), **details)

        if expected.delete_on_failure:
            deleted = await self.delete(reference)
            problem += " (file deleted)" if deleted else " (file could not be deleted)"
        else:
            problem += " (file kept for inspection)"
        logger.warning(f"Upload validation failed for {reference}: {problem}")
        return ValidationOutcome.failed(problem, ErrorKind.MISMATCH, **details)
