"""
Tests for storage backends and unit-of-work support
"""

import threading
from datetime import datetime, timezone

import pytest

from bank_backend.errors import ConflictError
from bank_backend.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, create_storage, isoformat
)


def make_record(record_id: str, created_at: str = None, **fields):
    now = created_at or isoformat(datetime.now(timezone.utc))
    record = {"id": record_id, "created_at": now, "updated_at": now}
    record.update(fields)
    return record


@pytest.fixture(params=["memory", "sqlite_memory", "sqlite_file"])
def storage(request, tmp_path):
    """Every backend behind the same interface"""
    if request.param == "memory":
        backend = InMemoryStorage()
    elif request.param == "sqlite_memory":
        backend = SQLiteStorage(":memory:")
    else:
        backend = SQLiteStorage(tmp_path / "bank.db")
    yield backend
    backend.close()


class TestBasicOperations:
    """CRUD behaviour shared by all backends"""

    def test_save_load_update_delete(self, storage):
        storage.save("records", "r1", make_record("r1", amount="100.50"))

        loaded = storage.load("records", "r1")
        assert loaded["amount"] == "100.50"
        assert storage.exists("records", "r1")
        assert not storage.exists("records", "missing")

        storage.save("records", "r1", make_record("r1", amount="75.25"))
        assert storage.load("records", "r1")["amount"] == "75.25"
        assert storage.count("records") == 1

        assert storage.delete("records", "r1")
        assert not storage.delete("records", "r1")
        assert storage.load("records", "r1") is None

    def test_loaded_records_are_copies(self, storage):
        storage.save("records", "r1", make_record("r1", tags=["a"]))
        loaded = storage.load("records", "r1")
        loaded["tags"].append("b")
        assert storage.load("records", "r1")["tags"] == ["a"]

    def test_find_and_count_with_filters(self, storage):
        storage.save("records", "r1", make_record("r1", owner="alice", read=False))
        storage.save("records", "r2", make_record("r2", owner="bob", read=False))
        storage.save("records", "r3", make_record("r3", owner="alice", read=True))

        assert [r["id"] for r in storage.find("records", {"owner": "alice"})] == ["r1", "r3"]
        assert storage.count("records", {"owner": "alice", "read": False}) == 1
        assert storage.count("records") == 3

    def test_clear_table(self, storage):
        storage.save("records", "r1", make_record("r1"))
        storage.clear_table("records")
        assert storage.count("records") == 0


class TestOrderedPages:
    """Newest-first paging with insertion sequence as tie-break"""

    def test_find_page_is_newest_first(self, storage):
        for i in range(5):
            storage.save("records", f"r{i}", make_record(f"r{i}", created_at=f"2024-01-01T00:00:0{i}.000000+00:00"))

        items, total = storage.find_page("records", {}, offset=0, limit=3)
        assert total == 5
        assert [r["id"] for r in items] == ["r4", "r3", "r2"]

    def test_identical_timestamps_fall_back_to_insertion_order(self, storage):
        stamp = "2024-01-01T00:00:00.000000+00:00"
        for i in range(4):
            storage.save("records", f"r{i}", make_record(f"r{i}", created_at=stamp))

        items, _ = storage.find_page("records", {}, offset=0, limit=10)
        assert [r["id"] for r in items] == ["r3", "r2", "r1", "r0"]

    def test_page_past_the_end_keeps_total(self, storage):
        for i in range(3):
            storage.save("records", f"r{i}", make_record(f"r{i}", kind="a"))

        items, total = storage.find_page("records", {"kind": "a"}, offset=10, limit=10)
        assert items == []
        assert total == 3

    def test_find_page_on_indexed_column(self, storage):
        storage.save("users", "u1", make_record("u1", email="a@x.io"))
        storage.save("users", "u2", make_record("u2", email="b@x.io"))

        items, total = storage.find_page("users", {"email": "b@x.io"}, offset=0, limit=10)
        assert total == 1
        assert items[0]["id"] == "u2"


class TestAtomic:
    """Unit of work commit and rollback"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("records", "r1", make_record("r1"))
            storage.save("records", "r2", make_record("r2"))
        assert storage.count("records") == 2

    def test_rollback_discards_inserts_updates_and_deletes(self, storage):
        storage.save("records", "keep", make_record("keep", value=1))
        storage.save("records", "gone", make_record("gone"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("records", "new", make_record("new"))
                storage.save("records", "keep", make_record("keep", value=2))
                storage.delete("records", "gone")
                raise RuntimeError("boom")

        assert not storage.exists("records", "new")
        assert storage.load("records", "keep")["value"] == 1
        assert storage.exists("records", "gone")

    def test_nested_atomic_commits_with_outermost(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("records", "inner", make_record("inner"))
                raise RuntimeError("outer fails")
        assert not storage.exists("records", "inner")

    def test_storage_usable_after_rollback(self, storage):
        with pytest.raises(ValueError):
            with storage.atomic():
                raise ValueError("nothing written")
        storage.save("records", "r1", make_record("r1"))
        assert storage.exists("records", "r1")


class TestRecordLocks:
    """Per-record exclusive locks"""

    def test_lock_times_out_with_conflict(self, storage):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with storage.lock_record("accounts", "a1"):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert held.wait(5)
            with pytest.raises(ConflictError):
                with storage.lock_record("accounts", "a1", timeout=0.05):
                    pass
        finally:
            release.set()
            thread.join()

    def test_different_records_do_not_block(self, storage):
        with storage.lock_record("accounts", "a1"):
            with storage.lock_record("accounts", "a2", timeout=0.05):
                pass

    def test_lock_released_after_error(self, storage):
        with pytest.raises(RuntimeError):
            with storage.lock_record("accounts", "a1"):
                raise RuntimeError("fail inside lock")
        with storage.lock_record("accounts", "a1", timeout=0.05):
            pass

    def test_released_locks_are_forgotten(self, storage):
        for i in range(50):
            with storage.lock_record("notifications", f"n{i}"):
                assert ("notifications", f"n{i}") in storage._record_locks
        with pytest.raises(RuntimeError):
            with storage.lock_record("accounts", "a1"):
                raise RuntimeError("fail inside lock")
        assert storage._record_locks == {}

    def test_waiter_keeps_lock_entry_alive(self, storage):
        held = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with storage.lock_record("accounts", "a1"):
                held.set()
                release.wait(5)
                order.append("holder")

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert held.wait(5)
            with pytest.raises(ConflictError):
                with storage.lock_record("accounts", "a1", timeout=0.05):
                    pass
            # The timed-out waiter left; the holder's entry remains
            assert ("accounts", "a1") in storage._record_locks
        finally:
            release.set()
            thread.join()

        with storage.lock_record("accounts", "a1", timeout=0.05):
            order.append("next")
        assert order == ["holder", "next"]
        assert storage._record_locks == {}


class TestSQLiteSpecifics:
    """Relational layout and persistence"""

    def test_foreign_keys_are_enforced(self):
        storage = SQLiteStorage(":memory:")
        with pytest.raises(ConflictError):
            storage.save("accounts", "a1", make_record("a1", owner_user_id="nobody",
                                                       account_number="ACC0000000001"))
        storage.close()

    def test_referenced_row_cannot_be_deleted(self):
        storage = SQLiteStorage(":memory:")
        storage.save("users", "u1", make_record("u1", email="u1@x.io"))
        storage.save("accounts", "a1", make_record("a1", owner_user_id="u1",
                                                   account_number="ACC0000000001"))
        with pytest.raises(ConflictError):
            storage.delete("users", "u1")
        storage.close()

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "bank.db"
        storage = SQLiteStorage(path)
        storage.save("records", "r1", make_record("r1", amount="0.10"))
        storage.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("records", "r1")["amount"] == "0.10"
        reopened.close()

    def test_commit_visible_to_other_threads(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "bank.db")
        with storage.atomic():
            storage.save("records", "r1", make_record("r1"))

        seen = []
        thread = threading.Thread(target=lambda: seen.append(storage.exists("records", "r1")))
        thread.start()
        thread.join()
        assert seen == [True]
        storage.close()


class TestCreateStorage:
    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self, tmp_path):
        file_backend = create_storage(f"sqlite:///{tmp_path / 'bank.db'}")
        assert isinstance(file_backend, SQLiteStorage)
        assert file_backend.db_path.endswith("bank.db")
        file_backend.close()

        memory_backend = create_storage("sqlite://")
        assert memory_backend.db_path == ":memory:"
        memory_backend.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/bank")

    def test_backends_share_interface(self):
        assert issubclass(InMemoryStorage, StorageInterface)
        assert issubclass(SQLiteStorage, StorageInterface)
