"""
Tests for the record store.

The record file is the only shared state between clients and the
watchdog process, so its atomicity guarantees are tested directly.
"""

import os
import time

import pytest

from deadman.errors import InvalidRecordError, PreconditionError
from deadman.record import RecordStore, is_valid_key


class TestCreate:

    def test_create_writes_owner_pid(self, store):
        record = store.create("i-1234", 4242)

        assert record.resource_id == "i-1234"
        assert record.owner_pid == 4242
        assert store.path_for("i-1234").read_text() == "4242\n"

    def test_create_makes_record_dir(self, temp_dir):
        store = RecordStore(temp_dir / "nested" / "records")

        store.create("i-1234", 1)

        assert store.exists("i-1234")

    def test_create_fails_if_exists_and_leaves_record_untouched(self, store):
        store.create("i-1234", 111)
        os.utime(store.path_for("i-1234"), (1000.0, 1000.0))

        with pytest.raises(FileExistsError):
            store.create("i-1234", 222)

        record = store.read("i-1234")
        assert record.owner_pid == 111
        assert record.last_reset_time == 1000.0

    def test_create_leaves_no_temp_files(self, store):
        store.create("i-1234", 1)
        with pytest.raises(FileExistsError):
            store.create("i-1234", 2)

        assert sorted(p.name for p in store.record_dir.iterdir()) == ["i-1234"]


class TestReset:

    def test_touch_advances_last_reset(self, store):
        store.create("i-1234", 1)
        os.utime(store.path_for("i-1234"), (1000.0, 1000.0))

        assert store.touch("i-1234") is True

        assert store.read("i-1234").last_reset_time > time.time() - 60

    def test_touch_keeps_content(self, store):
        store.create("i-1234", 77)

        store.touch("i-1234")

        assert store.read("i-1234").owner_pid == 77

    def test_touch_missing_record_is_noop(self, store):
        assert store.touch("i-1234") is False
        assert not store.exists("i-1234")

    def test_backdate_moves_clock_to_epoch(self, store):
        store.create("i-1234", 1)

        store.backdate("i-1234")

        assert store.read("i-1234").last_reset_time == 0.0

    def test_backdate_missing_record_raises(self, store):
        store.ensure_dir()
        with pytest.raises(FileNotFoundError):
            store.backdate("i-1234")


class TestDelete:

    def test_delete(self, store):
        store.create("i-1234", 1)

        assert store.delete("i-1234") is True
        assert store.delete("i-1234") is False
        assert store.read("i-1234") is None

    def test_release_by_owner(self, store):
        store.create("i-1234", 1)

        assert store.release("i-1234", 1) is True
        assert not store.exists("i-1234")

    def test_release_by_other_process_keeps_record(self, store):
        store.create("i-1234", 1)

        assert store.release("i-1234", 2) is False
        assert store.exists("i-1234")

    def test_release_missing(self, store):
        assert store.release("i-1234", 1) is False


class TestRead:

    def test_read_missing_returns_none(self, store):
        assert store.read("i-1234") is None

    def test_require_missing_raises_precondition(self, store):
        with pytest.raises(PreconditionError):
            store.require("i-1234")

    def test_non_pid_content_is_invalid(self, store):
        store.ensure_dir()
        store.path_for("i-1234").write_text("not a pid\n")

        with pytest.raises(InvalidRecordError):
            store.read("i-1234")

    def test_directory_is_invalid(self, store):
        store.ensure_dir()
        store.path_for("i-1234").mkdir()

        with pytest.raises(InvalidRecordError):
            store.read("i-1234")

    @pytest.mark.parametrize("key", ["", "../etc/passwd", "a/b", ".hidden"])
    def test_invalid_keys(self, store, key):
        assert not is_valid_key(key)
        with pytest.raises(InvalidRecordError):
            store.path_for(key)

    def test_iter_records_skips_invalid(self, store):
        store.create("i-1111", 1)
        store.create("i-2222", 2)
        store.path_for("i-3333").write_text("garbage")
        (store.record_dir / ".i-4444.tmp").write_text("4")

        records = list(store.iter_records())

        assert [r.resource_id for r in records] == ["i-1111", "i-2222"]

    def test_iter_records_without_dir(self, temp_dir):
        assert list(RecordStore(temp_dir / "missing").iter_records()) == []
