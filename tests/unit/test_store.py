"""
Unit tests for JSON record storage.

Tests cover:
- merge_set union, difference and idempotence
- Record reading and validation errors
- Atomic writes and failure behavior
- generate_id
"""

import json
import os
from pathlib import Path

import pytest

from bluecap.errors import RecordMalformedError, RecordNotFoundError, StorageWriteError
from bluecap.schema import CapsuleDefinition, TrustRecord
from bluecap.store import RecordStore, generate_id, merge_set


class TestMergeSet:
    """Tests for merge_set."""

    def test_union(self) -> None:
        assert set(merge_set(["a", "b"], ["b", "c"])) == {"a", "b", "c"}

    def test_difference(self) -> None:
        assert set(merge_set(["a", "b", "c"], ["b"], remove=True)) == {"a", "c"}

    def test_no_duplicates(self) -> None:
        result = merge_set(["a", "a"], ["a", "b", "b"])
        assert sorted(result) == ["a", "b"]

    def test_idempotent(self) -> None:
        once = merge_set(["a"], ["b"])
        assert set(merge_set(once, ["b"])) == set(once)

    def test_remove_missing_is_noop(self) -> None:
        assert merge_set(["a"], ["z"], remove=True) == ["a"]

    def test_add_then_remove_restores(self) -> None:
        """Adding then removing a disjoint delta gives back the original set."""
        original = ["x", "y"]
        delta = ["p", "q"]
        restored = merge_set(merge_set(original, delta), delta, remove=True)
        assert set(restored) == set(original)


class TestRecordStore:
    """Tests for RecordStore reads and writes."""

    @pytest.fixture
    def store(self) -> RecordStore:
        return RecordStore()

    def test_write_then_read(self, store: RecordStore, temp_dir: Path) -> None:
        path = temp_dir / "capsules" / "dev.json"
        store.write(path, CapsuleDefinition(image="fedora", options=["net=none"]))

        capsule = store.read(path, CapsuleDefinition)
        assert capsule.image == "fedora"
        assert capsule.options == ["net=none"]

    def test_write_is_pretty_json(self, store: RecordStore, temp_dir: Path) -> None:
        path = temp_dir / "trusted.json"
        store.write(path, TrustRecord(trusted=["dev"]))

        text = path.read_text()
        assert text.endswith("\n")
        assert '\n  "trusted"' in text
        assert json.loads(text) == {"trusted": ["dev"]}

    def test_read_missing(self, store: RecordStore, temp_dir: Path) -> None:
        with pytest.raises(RecordNotFoundError) as exc_info:
            store.read(temp_dir / "missing.json", CapsuleDefinition)
        assert exc_info.value.message.endswith("must exist!")

    def test_read_optional_missing(self, store: RecordStore, temp_dir: Path) -> None:
        assert store.read_optional(temp_dir / "missing.json", TrustRecord) is None

    def test_read_invalid_json(self, store: RecordStore, temp_dir: Path) -> None:
        path = temp_dir / "bad.json"
        path.write_text("{not json")
        with pytest.raises(RecordMalformedError):
            store.read(path, CapsuleDefinition)

    def test_read_schema_mismatch(self, store: RecordStore, temp_dir: Path) -> None:
        path = temp_dir / "bad.json"
        path.write_text(json.dumps({"options": "not-a-list"}))
        with pytest.raises(RecordMalformedError):
            store.read(path, CapsuleDefinition)

    def test_read_text(self, store: RecordStore, temp_dir: Path) -> None:
        path = temp_dir / "raw.json"
        path.write_text('{"image": "x"}')
        assert store.read_text(path) == '{"image": "x"}'

    def test_remove(self, store: RecordStore, temp_dir: Path) -> None:
        path = temp_dir / "gone.json"
        path.write_text("{}")
        store.remove(path)
        assert not path.exists()

    def test_remove_missing(self, store: RecordStore, temp_dir: Path) -> None:
        with pytest.raises(StorageWriteError):
            store.remove(temp_dir / "missing.json")


class TestAtomicWrite:
    """Tests for write_atomic."""

    def test_creates_parents_and_mode(self, temp_dir: Path) -> None:
        path = temp_dir / "a" / "b" / "file"
        RecordStore().write_atomic(path, "content\n", mode=0o755)

        assert path.read_text() == "content\n"
        assert path.stat().st_mode & 0o777 == 0o755

    def test_replaces_existing(self, temp_dir: Path) -> None:
        path = temp_dir / "file"
        path.write_text("old")
        RecordStore().write_atomic(path, "new")
        assert path.read_text() == "new"

    def test_no_temp_files_left(self, temp_dir: Path) -> None:
        path = temp_dir / "file"
        RecordStore().write_atomic(path, "new")
        assert os.listdir(temp_dir) == ["file"]

    def test_failed_rename_keeps_target(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """A failure before the rename leaves the old content in place."""
        path = temp_dir / "file"
        path.write_text("old")

        def failing_replace(src, dst):
            raise OSError("simulated crash")

        monkeypatch.setattr(os, "replace", failing_replace)

        with pytest.raises(StorageWriteError):
            RecordStore().write_atomic(path, "new")

        assert path.read_text() == "old"
        assert os.listdir(temp_dir) == ["file"]


class TestGenerateId:
    """Tests for generate_id."""

    def test_format(self) -> None:
        value = generate_id()
        assert len(value) == 8
        int(value, 16)

    def test_unique(self) -> None:
        assert len({generate_id() for _ in range(100)}) == 100
