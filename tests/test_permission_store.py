"""Tests for PermissionStore."""

import json

from vaultagent.adapters.permission_store import PermissionStore


class TestPermissionStore:
    def test_empty_when_nothing_saved(self, tmp_path):
        store = PermissionStore(vault_dir=tmp_path / "vault", global_dir=tmp_path / "global")
        assert store.load() == set()

    def test_add_goes_to_vault_level(self, tmp_path):
        vault = tmp_path / "vault"
        store = PermissionStore(vault_dir=vault, global_dir=tmp_path / "global")
        store.add("Write")
        store.add("Write")
        saved = json.loads((vault / ".vaultagent" / "allowed_tools.json").read_text())
        assert saved == ["Write"]
        assert not (tmp_path / "global" / "allowed_tools.json").exists()

    def test_add_without_vault_goes_global(self, tmp_path):
        store = PermissionStore(global_dir=tmp_path / "global")
        store.add("Bash")
        assert store.load() == {"Bash"}
        assert (tmp_path / "global" / "allowed_tools.json").exists()

    def test_load_merges_levels(self, tmp_path):
        vault = tmp_path / "vault"
        store = PermissionStore(vault_dir=vault, global_dir=tmp_path / "global")
        store.add_global("Grep")
        store.add("Edit")
        assert store.load() == {"Grep", "Edit"}
        other_vault = PermissionStore(vault_dir=tmp_path / "other", global_dir=tmp_path / "global")
        assert other_vault.load() == {"Grep"}

    def test_corrupt_file_ignored(self, tmp_path):
        global_dir = tmp_path / "global"
        global_dir.mkdir()
        (global_dir / "allowed_tools.json").write_text("{not json")
        store = PermissionStore(global_dir=global_dir)
        assert store.load() == set()
        store.add("LS")
        assert store.load() == {"LS"}

    def test_non_list_content_ignored(self, tmp_path):
        global_dir = tmp_path / "global"
        global_dir.mkdir()
        (global_dir / "allowed_tools.json").write_text('{"tools": ["Bash"]}')
        assert PermissionStore(global_dir=global_dir).load() == set()
