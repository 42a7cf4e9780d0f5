#!/usr/bin/env python3
"""
本地库与目录后端测试
"""

import os

import pytest

from vault_sync.core.remote import FolderRemote
from vault_sync.utils.encryption import UnexpectedKeyError, encrypt_string_to_base64url
from vault_sync.utils.local_vault import (
    LocalFile,
    LocalFolder,
    LocalVault,
    ROOT_PATH,
    is_hidden_path,
)


class TestHiddenPath:
    @pytest.mark.parametrize("key", [".obsidian/app.json", "a/.git/", "_drafts/x.md", "a/_b.md", ".hidden"])
    def test_hidden(self, key) -> None:
        assert is_hidden_path(key)

    @pytest.mark.parametrize("key", ["a.md", "notes/a_b.md", "dir/", "a.b/c.md"])
    def test_visible(self, key) -> None:
        assert not is_hidden_path(key)

    def test_underscore_can_be_allowed(self) -> None:
        assert not is_hidden_path("_drafts/x.md", underscore=False)


class TestLocalVault:
    def test_listing_starts_with_root(self, tmp_path) -> None:
        (tmp_path / "d").mkdir()
        (tmp_path / "d" / "b.md").write_bytes(b"abc")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_bytes(b"ref")

        entries = LocalVault(str(tmp_path)).get_all_loaded_files()

        assert entries[0] == LocalFolder(ROOT_PATH)
        assert LocalFolder("d") in entries
        files = [e for e in entries if isinstance(e, LocalFile)]
        assert [(f.path, f.size) for f in files] == [("d/b.md", 3)]

    def test_missing_vault_lists_only_root(self, tmp_path) -> None:
        assert LocalVault(str(tmp_path / "absent")).get_all_loaded_files() == [LocalFolder(ROOT_PATH)]

    def test_write_sets_mtime(self, tmp_path) -> None:
        vault = LocalVault(str(tmp_path))
        vault.write_bytes("x/y.md", b"data", 1_600_000_000_123)
        assert (tmp_path / "x" / "y.md").read_bytes() == b"data"
        assert os.stat(tmp_path / "x" / "y.md").st_mtime_ns == 1_600_000_000_123 * 1_000_000

    def test_mkdirp(self, tmp_path) -> None:
        vault = LocalVault(str(tmp_path))
        vault.mkdirp_in_vault("a/b/c.md")
        vault.mkdirp_in_vault("e/f/")
        assert (tmp_path / "a" / "b").is_dir()
        assert not (tmp_path / "a" / "b" / "c.md").exists()
        assert (tmp_path / "e" / "f").is_dir()

    def test_escape_is_rejected(self, tmp_path) -> None:
        vault = LocalVault(str(tmp_path / "vault"))
        with pytest.raises(UnexpectedKeyError):
            vault.full_path("../outside.md")


class TestFolderRemote:
    def test_listing_marks_folders(self, tmp_path) -> None:
        remote = FolderRemote(str(tmp_path))
        (tmp_path / "d").mkdir()
        (tmp_path / "d" / "b.md").write_bytes(b"abc")

        items = remote.list_from_remote()

        assert [i.key for i in items] == ["d/", "d/b.md"]
        assert items[0].size == 0
        assert items[1].size == 3
        assert items[1].etag

    def test_plain_upload_creates_parents(self, tmp_path) -> None:
        vault = LocalVault(str(tmp_path / "vault"))
        vault.write_bytes("a/b/c.md", b"content")
        remote = FolderRemote(str(tmp_path / "remote"))
        created = set()

        meta = remote.upload_to_remote("a/b/c.md", vault, folders_created_before=created)

        assert (tmp_path / "remote" / "a" / "b" / "c.md").read_bytes() == b"content"
        assert created == {"a/", "a/b/"}
        assert meta.key == "a/b/c.md"
        assert meta.size == 7

    def test_encrypted_upload_and_download(self, tmp_path) -> None:
        vault = LocalVault(str(tmp_path / "vault"))
        vault.write_bytes("a.md", b"secret content")
        remote = FolderRemote(str(tmp_path / "remote"))
        encrypted = encrypt_string_to_base64url("a.md", "pw")

        meta = remote.upload_to_remote("a.md", vault, False, "pw", encrypted)

        stored = tmp_path / "remote" / encrypted
        assert meta.key == encrypted
        assert b"secret content" not in stored.read_bytes()

        other = LocalVault(str(tmp_path / "other"))
        remote.download_from_remote("a.md", other, 1_600_000_000_000, "pw", encrypted)
        assert other.read_bytes("a.md") == b"secret content"

    def test_encrypted_upload_requires_encrypted_key(self, tmp_path) -> None:
        vault = LocalVault(str(tmp_path / "vault"))
        vault.write_bytes("a.md", b"x")
        remote = FolderRemote(str(tmp_path / "remote"))
        with pytest.raises(UnexpectedKeyError):
            remote.upload_to_remote("a.md", vault, False, "pw", "")

    def test_overlong_encrypted_key_is_rejected_before_writing(self, tmp_path) -> None:
        key = "notes/" + "x" * 200 + ".md"
        vault = LocalVault(str(tmp_path / "vault"))
        vault.write_bytes(key, b"x")
        remote = FolderRemote(str(tmp_path / "remote"))
        encrypted = encrypt_string_to_base64url(key, "pw")

        with pytest.raises(UnexpectedKeyError, match="文件名上限"):
            remote.upload_to_remote(key, vault, False, "pw", encrypted)
        assert list((tmp_path / "remote").iterdir()) == []

    def test_encrypted_key_within_limit_is_stored(self, tmp_path) -> None:
        key = "x" * 150 + ".md"
        vault = LocalVault(str(tmp_path / "vault"))
        vault.write_bytes(key, b"x")
        remote = FolderRemote(str(tmp_path / "remote"))
        encrypted = encrypt_string_to_base64url(key, "pw")

        remote.upload_to_remote(key, vault, False, "pw", encrypted)
        assert (tmp_path / "remote" / encrypted).exists()

    def test_delete_keeps_non_empty_folder(self, tmp_path) -> None:
        remote = FolderRemote(str(tmp_path))
        (tmp_path / "d").mkdir()
        (tmp_path / "d" / "b.md").write_bytes(b"abc")
        (tmp_path / "e").mkdir()

        remote.delete_from_remote("d/")
        remote.delete_from_remote("e/")
        remote.delete_from_remote("missing.md")

        assert (tmp_path / "d" / "b.md").exists()
        assert not (tmp_path / "e").exists()

    def test_traversal_is_rejected(self, tmp_path) -> None:
        remote = FolderRemote(str(tmp_path / "remote"))
        with pytest.raises(UnexpectedKeyError):
            remote.delete_from_remote("../escape.md")
