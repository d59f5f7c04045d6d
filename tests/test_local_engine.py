"""Tests for LocalStorageEngine."""

from __future__ import annotations

import os
import re
import stat
from pathlib import Path

import pytest

from unistore.config.settings import StorageConfig
from unistore.core.errors import ErrorKind
from unistore.core.storage.local_backend import (
    PRESIGNED_NOT_SUPPORTED,
    LocalStorageEngine,
    clamp_max_results,
)
from unistore.core.storage.models import ExpectedUpload, UploadedFile, UploadOptions

JPEG = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01" + b"\x00" * 64
PNG = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + b"\x00" * 64

REFERENCE = re.compile(r"^\d{4}/\d{2}/\d+_[a-z0-9]{10}_hello\.txt$")


@pytest.fixture
def engine(local_config):
    return LocalStorageEngine(local_config)


@pytest.fixture
def root(local_config) -> Path:
    return Path(local_config.local_path)


def write_file(root: Path, reference: str, content: bytes = b"data") -> Path:
    path = root.joinpath(*reference.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def all_files(directory: Path) -> list[Path]:
    if not directory.exists():
        return []
    return [path for path in directory.rglob("*") if path.is_file()]


class TestUpload:
    """Test storing files on disk."""

    async def test_upload_bytes(self, engine, root):
        outcome = await engine.upload(
            UploadedFile.from_bytes("hello.txt", b"hello", "text/plain"))

        assert outcome.success
        assert REFERENCE.match(outcome.name)
        assert outcome.url == f"http://files.test/uploads/{outcome.name}"
        assert (root / outcome.name).read_bytes() == b"hello"

    async def test_upload_from_path(self, engine, root, tmp_path):
        source = tmp_path / "hello.txt"
        source.write_bytes(b"from disk")

        outcome = await engine.upload(UploadedFile.from_path(source, content_type="text/plain"))

        assert outcome.success
        assert (root / outcome.name).read_bytes() == b"from disk"

    async def test_large_buffer_is_streamed(self, local_config, root):
        config = local_config.model_copy(update={"streaming_threshold": 4})
        engine = LocalStorageEngine(config)
        content = os.urandom(4096)

        outcome = await engine.upload(UploadedFile.from_bytes("hello.txt", content))

        assert (root / outcome.name).read_bytes() == content

    async def test_stored_file_is_read_only(self, engine, root):
        outcome = await engine.upload(UploadedFile.from_bytes("hello.txt", b"x"))
        mode = stat.S_IMODE(os.stat(root / outcome.name).st_mode)
        assert mode & 0o222 == 0
        assert mode & 0o111 == 0

    async def test_folder_option(self, engine, root):
        outcome = await engine.upload(
            UploadedFile.from_bytes("hello.txt", b"x"),
            UploadOptions(folder="users/42"))
        assert outcome.name.startswith("users/42/")
        assert (root / outcome.name).exists()

    async def test_bucket_path_default(self, local_config):
        engine = LocalStorageEngine(
            local_config.model_copy(update={"bucket_path": "media"}))
        outcome = await engine.upload(UploadedFile.from_bytes("hello.txt", b"x"))
        assert outcome.name.startswith("media/")

    async def test_empty_folder_skips_bucket_path(self, local_config):
        engine = LocalStorageEngine(
            local_config.model_copy(update={"bucket_path": "media"}))
        outcome = await engine.upload(
            UploadedFile.from_bytes("hello.txt", b"x"), UploadOptions(folder=""))
        assert REFERENCE.match(outcome.name)

    @pytest.mark.parametrize("name, folder", [
        ("photo.jpg", "users/%41"),
        ("report.p%41f", None),
    ])
    async def test_percent_sequences_write_nothing(self, engine, root, name, folder):
        outcome = await engine.upload(
            UploadedFile.from_bytes(name, b"x"), UploadOptions(folder=folder))
        assert not outcome.success
        assert outcome.error_kind is ErrorKind.VALIDATION
        assert all_files(root) == []

    async def test_missing_content(self, engine):
        outcome = await engine.upload(UploadedFile("hello.txt", "text/plain"))
        assert not outcome.success
        assert outcome.error == "File must have either buffer or path"
        assert outcome.error_kind is ErrorKind.VALIDATION

    async def test_traversal_name_writes_nothing(self, engine, root):
        outcome = await engine.upload(
            UploadedFile.from_bytes("../../evil.sh", b"#!/bin/sh"))
        assert not outcome.success
        assert outcome.error_kind is ErrorKind.SECURITY
        assert all_files(root) == []

    async def test_traversal_folder_writes_nothing(self, engine, root, temp_storage_dir):
        outcome = await engine.upload(
            UploadedFile.from_bytes("hello.txt", b"x"),
            UploadOptions(folder="../outside"))
        assert not outcome.success
        assert outcome.error_kind is ErrorKind.SECURITY
        assert not os.path.exists(os.path.join(temp_storage_dir, "outside"))

    async def test_symlinked_folder_is_refused(self, engine, root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        root.mkdir(parents=True)
        os.symlink(outside, root / "users")

        outcome = await engine.upload(
            UploadedFile.from_bytes("hello.txt", b"x"),
            UploadOptions(folder="users"))

        assert not outcome.success
        assert outcome.error_kind is ErrorKind.SECURITY
        assert list(outside.iterdir()) == []

    async def test_size_limit(self, local_config):
        engine = LocalStorageEngine(local_config.model_copy(update={"max_file_size": 10}))
        outcome = await engine.upload(UploadedFile.from_bytes("hello.txt", b"x" * 11))
        assert not outcome.success
        assert "exceeds maximum allowed size of 10 bytes" in outcome.error

    async def test_upload_multiple_keeps_order(self, engine):
        files = [UploadedFile.from_bytes(f"f{i}.txt", b"x") for i in range(5)]
        files.insert(2, UploadedFile.from_bytes("../bad.txt", b"x"))

        outcomes = await engine.upload_multiple(files, max_concurrent=2)

        assert [outcome.success for outcome in outcomes] == \
            [True, True, False, True, True, True]
        assert outcomes[0].name.endswith("_f0.txt")
        assert outcomes[5].name.endswith("_f4.txt")


class TestUrls:
    """Test URL construction and presigned URL refusal."""

    def test_url_without_base_url(self):
        engine = LocalStorageEngine(StorageConfig(local_path="public/uploads"))
        assert engine.url_for("a/b c.png") == "/uploads/a/b%20c.png"

    def test_url_for_public_root(self):
        engine = LocalStorageEngine(StorageConfig(local_path="public"))
        assert engine.url_for("x.png") == "/x.png"

    async def test_presigned_urls_unsupported(self, engine):
        upload = await engine.generate_upload_url("a.png", "image/png", 10)
        view = await engine.generate_view_url("a.png")
        for outcome in (upload, view):
            assert not outcome.success
            assert outcome.error == PRESIGNED_NOT_SUPPORTED
            assert outcome.error_kind is ErrorKind.UNSUPPORTED


class TestDelete:
    """Test deleting stored files."""

    async def test_delete_uploaded_file(self, engine, root):
        outcome = await engine.upload(UploadedFile.from_bytes("hello.txt", b"x"))

        assert await engine.delete(outcome.name) is True
        assert not (root / outcome.name).exists()
        assert await engine.delete(outcome.name) is False

    async def test_delete_refuses_traversal(self, engine, temp_storage_dir):
        victim = Path(temp_storage_dir) / "victim.txt"
        victim.write_bytes(b"keep me")
        assert await engine.delete("../victim.txt") is False
        assert await engine.delete("%2e%2e/victim.txt") is False
        assert victim.exists()

    async def test_delete_refuses_symlink(self, engine, root, tmp_path):
        target = write_file(root, "real.txt")
        outside = tmp_path / "outside.txt"
        outside.write_bytes(b"outside")
        os.symlink(target, root / "inner-link.txt")
        os.symlink(outside, root / "outer-link.txt")

        assert await engine.delete("inner-link.txt") is False
        assert await engine.delete("outer-link.txt") is False
        assert target.exists()
        assert outside.exists()
        assert os.path.islink(root / "inner-link.txt")
        assert os.path.islink(root / "outer-link.txt")

    async def test_delete_refuses_directory(self, engine, root):
        write_file(root, "2026/10/a.txt")
        assert await engine.delete("2026/10") is False
        assert (root / "2026" / "10" / "a.txt").exists()

    async def test_delete_multiple(self, engine, root):
        write_file(root, "a.txt")
        outcomes = await engine.delete_multiple(["a.txt", "missing.txt"])
        assert [outcome.success for outcome in outcomes] == [True, False]
        assert outcomes[1].error == "File not found or already deleted"
        assert outcomes[1].error_kind is ErrorKind.NOT_FOUND


class TestListFiles:
    """Test listing and pagination."""

    @pytest.fixture
    def populated(self, root):
        for reference in ("e.txt", "b/d.txt", "a.txt", "b/c.txt"):
            write_file(root, reference, reference.encode())
        return root

    async def test_lists_in_lexicographic_order(self, engine, populated):
        result = await engine.list_files()
        assert result.success
        assert [f.name for f in result.files] == ["a.txt", "b/c.txt", "b/d.txt", "e.txt"]
        assert result.next_token is None

    async def test_descriptors(self, engine, populated):
        result = await engine.list_files(prefix="a")
        (descriptor,) = result.files
        assert descriptor.size == len(b"a.txt")
        assert descriptor.content_type == "text/plain"
        assert descriptor.last_modified.tzinfo is not None

    async def test_pagination(self, engine, populated):
        first = await engine.list_files(max_results=2)
        assert [f.name for f in first.files] == ["a.txt", "b/c.txt"]
        assert first.next_token == "b/c.txt"

        second = await engine.list_files(max_results=2,
                                          continuation_token=first.next_token)
        assert [f.name for f in second.files] == ["b/d.txt", "e.txt"]
        assert second.next_token is None

    async def test_deletion_between_pages(self, engine, populated):
        first = await engine.list_files(max_results=2)
        (populated / "b" / "d.txt").unlink()

        second = await engine.list_files(max_results=2,
                                          continuation_token=first.next_token)

        assert [f.name for f in second.files] == ["e.txt"]

    async def test_prefix(self, engine, populated):
        result = await engine.list_files(prefix="b/")
        assert [f.name for f in result.files] == ["b/c.txt", "b/d.txt"]

        encoded = await engine.list_files(prefix="b%2F")
        assert [f.name for f in encoded.files] == ["b/c.txt", "b/d.txt"]

    async def test_prefix_traversal(self, engine, populated):
        result = await engine.list_files(prefix="../")
        assert not result.success
        assert result.error_kind is ErrorKind.SECURITY

    async def test_skips_symlinks(self, engine, populated, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_bytes(b"secret")
        os.symlink(outside, populated / "linked-dir")
        os.symlink(outside / "secret.txt", populated / "linked.txt")

        result = await engine.list_files()

        names = [f.name for f in result.files]
        assert "linked.txt" not in names
        assert not any(name.startswith("linked-dir") for name in names)

    async def test_missing_root(self, engine):
        result = await engine.list_files()
        assert result.success
        assert result.files == ()


@pytest.mark.parametrize("value, expected", [
    (0, 1),
    (-5, 1),
    (2.7, 2),
    (5000, 1000),
    (None, 1000),
    ("abc", 1000),
    (float("nan"), 1000),
])
def test_clamp_max_results(value, expected):
    assert clamp_max_results(value) == expected


class TestValidateAndConfirm:
    """Test post-upload content checks."""

    async def test_matching_file(self, engine):
        uploaded = await engine.upload(UploadedFile.from_bytes("pic.png", PNG, "image/png"))

        outcome = await engine.validate_and_confirm_upload(
            uploaded.name, ExpectedUpload(content_type="image/png", size=len(PNG)))

        assert outcome.success
        assert outcome.actual_content_type == "image/png"
        assert outcome.actual_size == len(PNG)
        assert outcome.view_url == uploaded.url

    async def test_jpeg_disguised_as_text_is_deleted(self, engine, root):
        uploaded = await engine.upload(
            UploadedFile.from_bytes("notes.txt", JPEG, "text/plain"))

        outcome = await engine.validate_and_confirm_upload(
            uploaded.name, ExpectedUpload(content_type="text/plain"))

        assert not outcome.success
        assert outcome.error_kind is ErrorKind.MISMATCH
        assert outcome.error.startswith(
            "Content type mismatch: expected 'text/plain', got 'image/jpeg'")
        assert "possible spoofing" in outcome.error
        assert outcome.error.endswith("(file deleted)")
        assert not (root / uploaded.name).exists()

    async def test_mismatch_kept_when_requested(self, engine, root):
        uploaded = await engine.upload(UploadedFile.from_bytes("pic.png", PNG))

        outcome = await engine.validate_and_confirm_upload(
            uploaded.name, ExpectedUpload(size=1, delete_on_failure=False))

        assert outcome.error == (f"File size mismatch: expected 1 bytes, got "
                                 f"{len(PNG)} bytes (file kept for inspection)")
        assert (root / uploaded.name).exists()

    async def test_missing_file(self, engine):
        outcome = await engine.validate_and_confirm_upload("2026/01/none.png")
        assert not outcome.success
        assert outcome.error == "File not found"
        assert outcome.error_kind is ErrorKind.NOT_FOUND

    async def test_symlink_is_not_found(self, engine, root, tmp_path):
        outside = tmp_path / "outside.png"
        outside.write_bytes(PNG)
        root.mkdir(parents=True)
        os.symlink(outside, root / "link.png")

        outcome = await engine.validate_and_confirm_upload("link.png")

        assert outcome.error_kind is ErrorKind.NOT_FOUND
        assert outside.exists()
