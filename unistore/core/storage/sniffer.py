"""Content type detection from file signatures and extensions."""

from __future__ import annotations

import mimetypes
import os

DEFAULT_CONTENT_TYPE = "application/octet-stream"
SNIFF_LENGTH = 16

# (offset, signature, mime type); checked in order, first match wins
MAGIC_SIGNATURES: list[tuple[int, bytes, str]] = [
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"%PDF", "application/pdf"),
    (0, b"PK\x03\x04", "application/zip"),
    (0, b"PK\x05\x06", "application/zip"),
    (0, b"PK\x07\x08", "application/zip"),
    (0, b"\x1f\x8b", "application/gzip"),
    (0, b"Rar!\x1a\x07", "application/vnd.rar"),
    (0, b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (0, b"ID3", "audio/mpeg"),
    (0, b"\xff\xfb", "audio/mpeg"),
    (0, b"\xff\xfa", "audio/mpeg"),
    (0, b"\xff\xf3", "audio/mpeg"),
    (0, b"OggS", "audio/ogg"),
    (0, b"fLaC", "audio/flac"),
    (4, b"ftyp", "video/mp4"),
    (0, b"\x1a\x45\xdf\xa3", "video/webm"),
    (0, b"MZ", "application/x-msdownload"),
    (0, b"\x7fELF", "application/x-executable"),
    (0, b"BM", "image/bmp"),
]

# RIFF containers are told apart by the form type at offset 8
RIFF_FORMS = {
    b"WEBP": "image/webp",
    b"WAVE": "audio/wav",
    b"AVI ": "video/x-msvideo",
}

EXTENSION_MIME_MAP = {
    # Images
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "ico": "image/x-icon",
    "tif": "image/tiff",
    "tiff": "image/tiff",

    # Documents
    "pdf": "application/pdf",
    "txt": "text/plain",
    "md": "text/markdown",
    "csv": "text/csv",
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "js": "text/javascript",
    "json": "application/json",
    "xml": "application/xml",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",

    # Archives
    "zip": "application/zip",
    "gz": "application/gzip",
    "tar": "application/x-tar",
    "rar": "application/vnd.rar",
    "7z": "application/x-7z-compressed",

    # Audio / video
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    "m4a": "audio/mp4",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",

    # Executables
    "exe": "application/x-msdownload",
    "dll": "application/x-msdownload",
}


class ContentSniffer:
    """
    Infers a file's MIME type from its leading bytes.

    Client-declared types are never consulted here; a recognised signature
    always wins over the extension.
    """

    def __init__(self, signatures: list[tuple[int, bytes, str]] | None = None):
        self.signatures = signatures if signatures is not None else MAGIC_SIGNATURES

    def sniff(self, data: bytes) -> str | None:
        """
        Match the head of a file against known signatures.

        Args:
            data: Leading bytes of the file (at least 16 for full coverage)

        Returns:
            Detected MIME type, or None when no signature matches
        """
        head = bytes(data[:SNIFF_LENGTH])
        if head[:4] == b"RIFF" and len(head) >= 12:
            form = RIFF_FORMS.get(head[8:12])
            if form:
                return form
        for offset, signature, mime_type in self.signatures:
            if head[offset:offset + len(signature)] == signature:
                return mime_type
        return None

    def sniff_file(self, path: str | os.PathLike) -> str | None:
        """Read the head of a file on disk and sniff it."""
        with open(path, "rb") as f:
            return self.sniff(f.read(SNIFF_LENGTH))

    @staticmethod
    def from_extension(name: str) -> str | None:
        """Look up a MIME type by file extension."""
        extension = os.path.splitext(name)[1].lower().lstrip(".")
        if not extension:
            return None
        if extension in EXTENSION_MIME_MAP:
            return EXTENSION_MIME_MAP[extension]
        guessed, _ = mimetypes.guess_type(f"file.{extension}")
        return guessed

    def detect(self, name: str, head: bytes | None = None) -> str:
        """Sniffed type, else extension type, else application/octet-stream."""
        sniffed = self.sniff(head) if head else None
        return sniffed or self.from_extension(name) or DEFAULT_CONTENT_TYPE
