"""Path validation for untrusted file names, folders and references."""

from __future__ import annotations

import os
import re
from urllib.parse import unquote

from unistore.core.errors import ErrorKind
from unistore.logging.setup import get_logger

logger = get_logger(__name__)

MAX_NAME_LENGTH = 255
MAX_FOLDER_LENGTH = 255
MAX_REFERENCE_LENGTH = 1024

INVALID_NAME = "Invalid filename"
INVALID_FOLDER = "Invalid folder path"
INVALID_REFERENCE = "Invalid reference"
INVALID_PREFIX = "Invalid prefix"

# A '%' that does not start a two-digit hex escape
_MALFORMED_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

SECURITY_REASONS = frozenset(
    {INVALID_NAME, INVALID_FOLDER, INVALID_REFERENCE, INVALID_PREFIX})

FORBIDDEN_FOLDER_CHARACTERS = frozenset('<>:"|?*\\;$`\'&%')


def rejection_kind(reason: str) -> ErrorKind:
    """Classify a validator reason as a security or a plain validation failure."""
    return ErrorKind.SECURITY if reason in SECURITY_REASONS else ErrorKind.VALIDATION


class PathSecurityValidator:
    """
    Rejects file names and paths that could escape the storage root.

    Every check runs on the percent-decoded input (decoded exactly once), so
    ``%2e%2e%2f`` is treated the same as ``../``. Validation methods return
    ``None`` for valid input and a short reason otherwise. Traversal, null
    byte, separator and encoding problems all share one generic reason per
    input type so callers cannot tell which check fired.
    """

    @staticmethod
    def decode(raw: str) -> str:
        """
        Percent-decode a path once.

        Args:
            raw: Possibly percent-encoded input

        Returns:
            Decoded string

        Raises:
            ValueError: If the input contains a malformed escape sequence or
                decodes to invalid UTF-8
        """
        if _MALFORMED_ESCAPE.search(raw):
            raise ValueError("malformed percent-encoding")
        return unquote(raw, encoding="utf-8", errors="strict")

    def _decoded_or_none(self, raw: str) -> str | None:
        try:
            return self.decode(raw)
        except ValueError:
            return None

    @staticmethod
    def _has_traversal(raw: str, decoded: str) -> bool:
        return (".." in raw or ".." in decoded
                or "\x00" in raw or "\x00" in decoded)

    def validate_name(self, raw: str | None) -> str | None:
        """
        Validate a single file name (no directory components).

        Args:
            raw: File name as supplied by the caller

        Returns:
            None if the name is acceptable, otherwise the rejection reason
        """
        if raw is None or not isinstance(raw, str) or raw == "":
            return "Filename is required"
        if not raw.strip():
            return "Filename cannot be empty"
        if len(raw) > MAX_NAME_LENGTH:
            return f"Filename is too long (max {MAX_NAME_LENGTH} characters)"

        decoded = self._decoded_or_none(raw)
        if decoded is None or self._has_traversal(raw, decoded):
            logger.warning(f"Rejected file name: {raw!r}")
            return INVALID_NAME
        if any(sep in text for text in (raw, decoded) for sep in ("/", "\\")):
            logger.warning(f"Rejected file name with separator: {raw!r}")
            return INVALID_NAME
        # The extension is kept verbatim in stored names, so it must not
        # carry an escape that lookups would decode
        if "%" in os.path.splitext(raw)[1]:
            return "Filename extension contains invalid characters"
        return None

    def validate_folder(self, raw: str | None) -> str | None:
        """
        Validate a folder path such as ``users/42``.

        Leading, trailing and doubled slashes are rejected here; callers that
        want to accept ``/users/42/`` strip the outer slashes first.

        Args:
            raw: Folder path as supplied by the caller

        Returns:
            None if the folder is acceptable, otherwise the rejection reason
        """
        if raw is None or not isinstance(raw, str) or not raw.strip():
            return "Folder path cannot be empty"
        if len(raw) > MAX_FOLDER_LENGTH:
            return f"Folder path is too long (max {MAX_FOLDER_LENGTH} characters)"
        return self._validate_path(raw, INVALID_FOLDER, "Folder path")

    def validate_reference(self, raw: str | None) -> str | None:
        """
        Validate a stored file reference (folder segments plus file name).

        Args:
            raw: Reference previously returned by an upload

        Returns:
            None if the reference is acceptable, otherwise the rejection reason
        """
        if raw is None or not isinstance(raw, str) or not raw.strip():
            return "Reference is required"
        if len(raw) > MAX_REFERENCE_LENGTH:
            return INVALID_REFERENCE
        return self._validate_path(
            raw, INVALID_REFERENCE, "Reference", check_characters=False)

    def validate_prefix(self, raw: str | None) -> str | None:
        """Validate a listing prefix; any string-prefix of a reference is allowed."""
        if not raw:
            return None
        decoded = self._decoded_or_none(raw)
        if (decoded is None or self._has_traversal(raw, decoded)
                or "\\" in decoded or decoded.startswith("/")):
            logger.warning(f"Rejected list prefix: {raw!r}")
            return INVALID_PREFIX
        return None

    def _validate_path(self, raw: str, invalid: str, label: str,
                       check_characters: bool = True) -> str | None:
        decoded = self._decoded_or_none(raw)
        if decoded is None or self._has_traversal(raw, decoded):
            logger.warning(f"Rejected path: {raw!r}")
            return invalid
        if "\\" in raw or "\\" in decoded:
            logger.warning(f"Rejected path with backslash: {raw!r}")
            return invalid
        if decoded.startswith("/") or decoded.endswith("/"):
            return f"{label} cannot start or end with a slash"
        if "//" in decoded:
            return f"{label} cannot contain consecutive slashes"
        for segment in decoded.split("/"):
            if segment in (".", "") or segment != segment.strip():
                return f"{label} contains an invalid segment"
            if check_characters and any(
                    ch in FORBIDDEN_FOLDER_CHARACTERS or ord(ch) < 32
                    for ch in segment):
                return f"{label} contains invalid characters"
        # Folders are written verbatim but references are decoded on lookup
        if check_characters and "%" in raw:
            return f"{label} contains invalid characters"
        return None

    @staticmethod
    def normalize_folder(raw: str | None) -> str | None:
        """Strip surrounding whitespace and slashes; empty becomes None."""
        if raw is None:
            return None
        folder = raw.strip().strip("/")
        return folder or None
