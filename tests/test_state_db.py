#!/usr/bin/env python3
"""
状态数据库测试
"""

from vault_sync.utils.local_vault import LocalFile, LocalFolder, ROOT_PATH
from vault_sync.utils.state_db import (
    KEY_TYPE_FILE,
    KEY_TYPE_FOLDER,
    DeleteHistoryRecord,
    InternalDB,
)

VAULT = "vault01"


def _upsert(db, remote_key="a.md", remote_mtime=900, etag="e1", vault=VAULT):
    db.upsert_sync_meta_mapping_data_by_vault(
        "folder", remote_key, 100, 5, remote_key, remote_mtime, 5, etag, vault
    )


class TestMetaMapping:
    def test_lookup_requires_matching_mtime_and_etag(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        _upsert(db)

        found = db.get_sync_meta_mapping_by_remote_key_and_vault("folder", "a.md", 900, "e1", VAULT)
        assert found is not None
        assert (found.local_key, found.local_mtime, found.local_size) == ("a.md", 100, 5)

        assert db.get_sync_meta_mapping_by_remote_key_and_vault("folder", "a.md", 901, "e1", VAULT) is None
        assert db.get_sync_meta_mapping_by_remote_key_and_vault("folder", "a.md", 900, "e2", VAULT) is None

    def test_lookup_is_scoped_by_vault_and_backend(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        _upsert(db)
        assert db.get_sync_meta_mapping_by_remote_key_and_vault("s3", "a.md", 900, "e1", VAULT) is None
        assert db.get_sync_meta_mapping_by_remote_key_and_vault("folder", "a.md", 900, "e1", "other") is None

    def test_upsert_overwrites(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        _upsert(db, remote_mtime=900, etag="e1")
        _upsert(db, remote_mtime=1000, etag="e2")
        assert len(db.sync_mapping) == 1
        assert db.get_sync_meta_mapping_by_remote_key_and_vault("folder", "a.md", 1000, "e2", VAULT)

    def test_state_persists(self, tmp_path) -> None:
        state_file = str(tmp_path / "nested" / "state.json")
        db = InternalDB(state_file)
        _upsert(db, vault=db.vault_random_id)

        reopened = InternalDB(state_file)
        assert reopened.vault_random_id == db.vault_random_id
        assert reopened.get_sync_meta_mapping_by_remote_key_and_vault(
            "folder", "a.md", 900, "e1", db.vault_random_id
        ) is not None


class TestDeleteHistory:
    def test_insert_load_and_clear(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.insert_delete_record_by_vault(DeleteHistoryRecord("a.md", KEY_TYPE_FILE, 10), VAULT)
        db.insert_delete_record_by_vault(DeleteHistoryRecord("b.md", KEY_TYPE_FILE, 20), "other")

        assert [r.key for r in db.load_delete_rename_history_by_vault(VAULT)] == ["a.md"]

        db.clear_delete_rename_history_of_key_and_vault("a.md", VAULT)
        assert db.load_delete_rename_history_by_vault(VAULT) == []
        assert len(db.load_delete_rename_history_by_vault("other")) == 1

    def test_clear_folder_with_or_without_slash(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.insert_delete_record_by_vault(DeleteHistoryRecord("dir", KEY_TYPE_FOLDER, 10), VAULT)
        db.clear_delete_rename_history_of_key_and_vault("dir/", VAULT)
        assert db.load_delete_rename_history_by_vault(VAULT) == []

    def test_clear_missing_key_is_noop(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.clear_delete_rename_history_of_key_and_vault("nothing.md", VAULT)
        assert not (tmp_path / "state.json").exists()


class TestLocalSnapshot:
    def _entries(self, *files, folders=()):
        entries = [LocalFolder(ROOT_PATH)]
        entries += [LocalFolder(f) for f in folders]
        entries += [LocalFile(f, 1, 1) for f in files]
        return entries

    def test_first_run_has_no_deletions(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        assert db.record_local_deletions(self._entries("a.md"), VAULT) == []

    def test_disappeared_paths_become_history(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.update_local_snapshot(self._entries("a.md", "d/b.md", folders=["d"]), VAULT)

        created = db.record_local_deletions(self._entries("a.md"), VAULT, action_when=500)

        assert {(r.key, r.key_type, r.action_when) for r in created} == {
            ("d", KEY_TYPE_FOLDER, 500),
            ("d/b.md", KEY_TYPE_FILE, 500),
        }
        assert len(db.load_delete_rename_history_by_vault(VAULT)) == 2

    def test_repeated_detection_keeps_first_time(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.update_local_snapshot(self._entries("a.md"), VAULT)
        db.record_local_deletions(self._entries(), VAULT, action_when=500)

        assert db.record_local_deletions(self._entries(), VAULT, action_when=900) == []
        assert db.load_delete_rename_history_by_vault(VAULT)[0].action_when == 500

    def test_find_does_not_modify_state(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.update_local_snapshot(self._entries("a.md"), VAULT)

        found = db.find_local_deletions(self._entries(), VAULT, action_when=500)

        assert [r.key for r in found] == ["a.md"]
        assert db.load_delete_rename_history_by_vault(VAULT) == []

    def test_deletion_is_stamped_with_snapshot_time(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.update_local_snapshot(self._entries("a.md"), VAULT, taken_at=1234)

        created = db.record_local_deletions(self._entries(), VAULT)

        assert [(r.key, r.action_when) for r in created] == [("a.md", 1234)]

    def test_snapshot_time_persists(self, tmp_path) -> None:
        state_file = str(tmp_path / "state.json")
        InternalDB(state_file, VAULT).update_local_snapshot(self._entries("a.md"), VAULT, taken_at=1234)

        reopened = InternalDB(state_file, VAULT)
        assert reopened.snapshot_time[VAULT] == 1234
        assert reopened.find_local_deletions(self._entries(), VAULT)[0].action_when == 1234

    def test_recorded_deletions_are_saved(self, tmp_path) -> None:
        state_file = str(tmp_path / "state.json")
        db = InternalDB(state_file, VAULT)
        db.update_local_snapshot(self._entries("a.md"), VAULT, taken_at=1234)
        db.record_local_deletions(self._entries(), VAULT)

        assert [r.key for r in InternalDB(state_file, VAULT).load_delete_rename_history_by_vault(VAULT)] == ["a.md"]

    def test_hidden_paths_never_become_history(self, tmp_path) -> None:
        db = InternalDB(str(tmp_path / "state.json"), VAULT)
        db.update_local_snapshot(
            self._entries(".DS_Store", "_draft.md", "a/.keep", "a.md", folders=["_tmp"]), VAULT
        )

        assert db.local_snapshot[VAULT] == {"a.md": KEY_TYPE_FILE}
        assert db.record_local_deletions(self._entries("a.md"), VAULT) == []
        assert db.load_delete_rename_history_by_vault(VAULT) == []
