"""
Unit tests for the file-backed credential store.
"""

import json
import os
import stat
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from service_gateway.app.auth.credential_store import CredentialStore, read_credentials
from shared.errors import CredentialParseError, CredentialPersistError
from shared.test_helpers import make_credential_record, write_credential_file


class TestCredentialStore:
    """Test cases for CredentialStore."""

    @pytest.fixture
    def token_file(self, tmp_path):
        return write_credential_file(tmp_path / "tokens.json", [
            make_credential_record("abc123", "alice"),
            make_credential_record("def456", "bob"),
        ])

    @pytest.fixture
    def store(self, token_file):
        return CredentialStore.load(token_file)

    def test_load_missing_file_yields_empty_store(self, tmp_path):
        store = CredentialStore.load(str(tmp_path / "absent.json"))
        assert store.list() == []
        assert len(store) == 0

    def test_load_malformed_file_raises(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_text("{not json")
        with pytest.raises(CredentialParseError):
            CredentialStore.load(str(path))

    def test_load_rejects_records_missing_fields(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_text(json.dumps([{"key": "abc123"}]))
        with pytest.raises(CredentialParseError):
            CredentialStore.load(str(path))

    def test_load_parses_rfc3339_timestamps(self, tmp_path):
        path = write_credential_file(tmp_path / "tokens.json", [
            make_credential_record("abc123", "alice", "2024-03-05T10:11:12.123456Z"),
        ])
        store = CredentialStore.load(path)
        assert store.list()[0].created_at.year == 2024

    def test_valid_known_key(self, store):
        assert store.valid("abc123") == ("alice", True)

    def test_valid_unknown_or_missing_key(self, store):
        assert store.valid("wrong") == (None, False)
        assert store.valid("") == (None, False)
        assert store.valid(None) == (None, False)

    def test_add_persists_and_authenticates(self, store, token_file):
        credential = store.add("carol")

        assert len(credential.key) == 48
        int(credential.key, 16)
        assert store.valid(credential.key) == ("carol", True)

        on_disk = read_credentials(token_file)
        assert on_disk[credential.key].name == "carol"
        assert set(on_disk) == {"abc123", "def456", credential.key}

    def test_add_rejects_empty_name(self, store):
        with pytest.raises(ValueError):
            store.add("   ")

    def test_persisted_file_is_owner_only(self, tmp_path):
        path = str(tmp_path / "tokens.json")
        store = CredentialStore.load(path)
        store.add("alice")
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_persist_leaves_no_temp_files(self, store, tmp_path):
        store.add("carol")
        store.delete("abc123")
        assert sorted(os.listdir(tmp_path)) == ["tokens.json"]

    def test_persisted_format(self, tmp_path):
        path = str(tmp_path / "tokens.json")
        store = CredentialStore.load(path)
        credential = store.add("alice")

        with open(path) as fh:
            records = json.load(fh)
        assert records == [{
            "key": credential.key,
            "name": "alice",
            "created_at": records[0]["created_at"],
        }]
        assert records[0]["created_at"].endswith("Z")

    def test_delete(self, store, token_file):
        assert store.delete("abc123") is True
        assert store.valid("abc123") == (None, False)
        assert "abc123" not in read_credentials(token_file)

    def test_delete_unknown_key(self, store, token_file):
        before = Path(token_file).read_text()
        assert store.delete("nope") is False
        assert Path(token_file).read_text() == before

    def test_add_rolls_back_when_persist_fails(self, tmp_path):
        store = CredentialStore(str(tmp_path / "missing-dir" / "tokens.json"))
        with pytest.raises(CredentialPersistError):
            store.add("alice")
        assert store.list() == []

    def test_delete_rolls_back_when_persist_fails(self, token_file, tmp_path):
        store = CredentialStore.load(token_file)
        store.path = str(tmp_path / "missing-dir" / "tokens.json")
        with pytest.raises(CredentialPersistError):
            store.delete("abc123")
        assert store.valid("abc123") == ("alice", True)

    def test_list_returns_snapshot(self, store):
        snapshot = store.list()
        store.add("carol")
        assert len(snapshot) == 2
        assert len(store.list()) == 3

    def test_reload_round_trip(self, store, token_file):
        write_credential_file(token_file, [
            make_credential_record("zzz999", "zoe"),
        ])
        assert store.reload() == 1
        assert [(c.key, c.name) for c in store.list()] == [("zzz999", "zoe")]
        assert store.valid("abc123") == (None, False)

    def test_reload_matches_disk_after_external_edit(self, store, token_file):
        other = CredentialStore.load(token_file)
        created = other.add("carol")

        store.reload()

        assert {c.key for c in store.list()} == set(read_credentials(token_file))
        assert store.valid(created.key) == ("carol", True)

    def test_reload_corrupted_file_keeps_current_table(self, store, token_file):
        before = store.list()
        with open(token_file, "w") as fh:
            fh.write('[{"key": "abc123", "name": ')

        with pytest.raises(CredentialParseError):
            store.reload()

        assert store.list() == before
        assert store.valid("abc123") == ("alice", True)
        assert store.valid("def456") == ("bob", True)

    def test_reload_missing_file_keeps_current_table(self, store, token_file):
        os.unlink(token_file)
        with pytest.raises(CredentialParseError):
            store.reload()
        assert store.valid("abc123") == ("alice", True)

    def test_reload_from_other_path(self, store, tmp_path):
        other = write_credential_file(tmp_path / "other.json", [make_credential_record("k1", "kim")])
        store.reload(other)
        assert store.path == other
        assert store.valid("k1") == ("kim", True)

    def test_concurrent_adds_yield_distinct_keys(self, tmp_path):
        path = str(tmp_path / "tokens.json")
        store = CredentialStore.load(path)
        names = [f"account-{i}" for i in range(40)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            credentials = list(pool.map(store.add, names))

        keys = [c.key for c in credentials]
        assert len(set(keys)) == len(names)
        assert {c.key for c in store.list()} == set(keys)
        assert set(read_credentials(path)) == set(keys)

    def test_reads_during_concurrent_writes(self, store):
        def read_many(_):
            return all(store.valid("abc123") == ("alice", True) for _ in range(200))

        with ThreadPoolExecutor(max_workers=8) as pool:
            writers = [pool.submit(store.add, f"user-{i}") for i in range(10)]
            readers = list(pool.map(read_many, range(8)))
            for future in writers:
                future.result()

        assert all(readers)
        assert len(store.list()) == 12
