"""
Tests for sessions.py
"""
import json
import os

import pytest

from sessions import InMemorySessionStore, SessionStore, make_session_id


class TestSessionIds:

    def test_stable_per_directory_and_name(self, tmp_path):
        a = make_session_id(str(tmp_path), "My Feature!")
        assert a == make_session_id(str(tmp_path), "My Feature!")
        assert a.endswith("_my-feature")
        assert a != make_session_id(str(tmp_path / "other"), "My Feature!")
        assert make_session_id(str(tmp_path), "!!!").endswith("_default")


class TestSessionStore:

    def test_save_and_load(self, tmp_path):
        store = SessionStore(str(tmp_path))
        path = store.save("abc_default", {"context": {"messages": []}, "outcomes": [1, 2]})

        assert os.path.exists(path)
        with open(path) as f:
            envelope = json.load(f)
        assert envelope["session_id"] == "abc_default"
        assert envelope["version"] == 1
        assert envelope["snapshot"]["outcomes"] == [1, 2]
        assert store.load("abc_default") == {"context": {"messages": []}, "outcomes": [1, 2]}
        assert not os.path.exists(path + ".tmp")

    def test_created_at_kept_across_saves(self, tmp_path):
        store = SessionStore(str(tmp_path))
        path = store.save("s1", {"n": 1})
        with open(path) as f:
            created = json.load(f)["created_at"]

        store.save("s1", {"n": 2})
        with open(path) as f:
            envelope = json.load(f)
        assert envelope["created_at"] == created
        assert envelope["snapshot"] == {"n": 2}

    def test_missing_and_corrupt_files(self, tmp_path):
        store = SessionStore(str(tmp_path))
        assert store.load("nothing_here") is None

        (tmp_path / "broken.json").write_text("{not json")
        assert store.load("broken") is None

    def test_delete_and_list(self, tmp_path):
        store = SessionStore(str(tmp_path))
        store.save("first", {})
        store.save("second", {})

        assert set(store.list_ids()) == {"first", "second"}
        assert store.delete("first")
        assert not store.delete("first")
        assert store.list_ids() == ["second"]

    def test_unsafe_ids_rejected(self, tmp_path):
        store = SessionStore(str(tmp_path))
        with pytest.raises(ValueError):
            store.save("../escape", {})
        with pytest.raises(ValueError):
            store.load("")


class TestInMemorySessionStore:

    def test_snapshots_are_copied(self):
        store = InMemorySessionStore()
        snapshot = {"messages": [{"role": "user", "content": "hi"}]}
        store.save("s1", snapshot)
        snapshot["messages"].append({"role": "assistant", "content": "later"})

        loaded = store.load("s1")
        assert len(loaded["messages"]) == 1
        loaded["messages"].clear()
        assert len(store.load("s1")["messages"]) == 1

        assert store.list_ids() == ["s1"]
        assert store.delete("s1")
        assert store.load("s1") is None
