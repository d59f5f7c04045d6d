"""Collision-resistant, filesystem-safe names for stored files."""

from __future__ import annotations

import os
import re
import secrets
import string
import time
from datetime import datetime, timezone

PLACEHOLDER_NAME = "file"
SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 10
MAX_GENERATED_LENGTH = 255

_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9._-]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")
_REPEATED_DOTS = re.compile(r"\.{2,}")


def sanitize_filename(name: str) -> str:
    """
    Reduce a name to ``[A-Za-z0-9._-]``.

    Unsafe characters become ``_``, runs of ``_`` and ``.`` collapse to one,
    and surrounding underscores are trimmed. Returns ``"file"`` when nothing
    is left.
    """
    cleaned = _UNSAFE_CHARACTERS.sub("_", name or "")
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned)
    cleaned = _REPEATED_DOTS.sub(".", cleaned)
    cleaned = cleaned.strip("_")
    return cleaned or PLACEHOLDER_NAME


def date_path(now: datetime | None = None) -> str:
    """Return the ``YYYY/MM`` directory for a timestamp (UTC by default)."""
    now = now or datetime.now(timezone.utc)
    return f"{now.year:04d}/{now.month:02d}"


class UniqueNameGenerator:
    """
    Generates ``{timestamp}_{random}_{sanitized base}{extension}`` names.

    The millisecond timestamp keeps names roughly time-ordered; the random
    suffix keeps two names generated in the same millisecond distinct.
    """

    def __init__(self, suffix_length: int = SUFFIX_LENGTH):
        if suffix_length < 6:
            raise ValueError("suffix_length must be at least 6")
        self.suffix_length = suffix_length

    def random_suffix(self) -> str:
        return "".join(secrets.choice(SUFFIX_ALPHABET)
                       for _ in range(self.suffix_length))

    def generate(self, original_name: str | None) -> str:
        """
        Build a unique stored name for an uploaded file.

        Args:
            original_name: Client-supplied file name

        Returns:
            New file name; the lowercased original extension is preserved
        """
        base, extension = os.path.splitext(original_name or "")
        extension = extension.strip().lower()

        prefix = f"{int(time.time() * 1000)}_{self.random_suffix()}_"
        sanitized = sanitize_filename(base)

        room = MAX_GENERATED_LENGTH - len(prefix) - len(extension)
        if len(sanitized) > room:
            sanitized = sanitized[:max(room, 1)].rstrip("_.") or PLACEHOLDER_NAME

        return f"{prefix}{sanitized}{extension}"
