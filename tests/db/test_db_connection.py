# DatabaseConnection のテスト
"""
DatabaseConnection クラスの単体テスト

テスト観点:
- インスタンス化（パスの指定・環境変数）
- スキーマ適用とWALモード
- コンテキストマネージャーの commit/rollback
- IntegrityError の素通しと、その他のエラーの StorageUnavailableError への変換
- コネクションプールの上限と再利用
"""

import os
import sqlite3
import threading
from unittest.mock import patch

import pytest

from headline_ab.db.connection import SCHEMA_VERSION, DatabaseConnection
from headline_ab.errors import StorageUnavailableError
from headline_ab.models.experiment import EventKind
from headline_ab.store.event_ledger import EventLedger


class TestDatabaseConnectionInitialization:
    """DatabaseConnection の初期化テスト"""

    def test_init_with_explicit_path(self, db_path):
        db = DatabaseConnection(db_path)

        assert db.db_path == db_path
        assert db.busy_timeout_seconds == 5.0

    def test_init_from_environment_variable(self, db_path):
        with patch.dict(os.environ, {"HLAB_DB_PATH": db_path}):
            db = DatabaseConnection()

        assert db.db_path == db_path

    def test_init_without_path_raises_value_error(self):
        with pytest.raises(ValueError) as exc_info:
            DatabaseConnection()

        assert "HLAB_DB_PATH" in str(exc_info.value)


class TestSchema:
    """スキーマ適用のテスト"""

    def test_tables_created(self, db):
        with db.get_cursor() as cur:
            cur.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            tables = {row[0] for row in cur.fetchall()}

        assert {"experiments", "events"} <= tables

    def test_journal_mode_is_wal(self, db):
        with db.get_cursor() as cur:
            cur.execute("PRAGMA journal_mode")
            assert cur.fetchone()[0].lower() == "wal"

    def test_initialize_is_idempotent(self, db_path):
        first = DatabaseConnection(db_path)
        first.initialize()
        first.close()

        second = DatabaseConnection(db_path)
        second.initialize()
        with second.get_cursor() as cur:
            cur.execute("PRAGMA user_version")
            assert cur.fetchone()[0] == SCHEMA_VERSION
        second.close()

    def test_newer_schema_version_rejected(self, db_path):
        raw = sqlite3.connect(db_path)
        raw.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        raw.commit()
        raw.close()

        db = DatabaseConnection(db_path)
        with pytest.raises(StorageUnavailableError):
            db.initialize()
        db.close()

    def test_lazy_initialization_on_first_use(self, db_path):
        db = DatabaseConnection(db_path)

        with db.get_cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM experiments")
            assert cur.fetchone()[0] == 0
        db.close()


class TestTransactions:
    """commit/rollback のテスト"""

    _INSERT = (
        "INSERT INTO events (experiment_name, variant, event_type, visitor_id, created_at) "
        "VALUES (?, ?, ?, ?, ?)"
    )

    def test_commit_on_success(self, db):
        with db.get_cursor() as cur:
            cur.execute(self._INSERT, ("hero", 0, "view", "v1", 1))

        with db.get_cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM events")
            assert cur.fetchone()[0] == 1

    def test_rollback_on_exception(self, db):
        with pytest.raises(RuntimeError):
            with db.get_cursor() as cur:
                cur.execute(self._INSERT, ("hero", 0, "view", "v1", 1))
                raise RuntimeError("boom")

        with db.get_cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM events")
            assert cur.fetchone()[0] == 0

    def test_integrity_error_passes_through(self, db):
        with db.get_cursor() as cur:
            cur.execute(self._INSERT, ("hero", 0, "view", "v1", 1))

        with pytest.raises(sqlite3.IntegrityError):
            with db.get_cursor() as cur:
                cur.execute(self._INSERT, ("hero", 1, "view", "v1", 2))

    def test_other_errors_become_storage_unavailable(self, db):
        with pytest.raises(StorageUnavailableError):
            with db.get_cursor() as cur:
                cur.execute("SELECT * FROM no_such_table")

    def test_check_constraint_rejects_unknown_event_type(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            with db.get_cursor() as cur:
                cur.execute(self._INSERT, ("hero", 0, "click", "v1", 1))


class TestPool:
    """コネクションプールのテスト"""

    def test_short_lived_threads_reuse_connections(self, db, ledger):
        """リクエストごとのスレッドが終了しても接続が増え続けない"""
        def worker(n):
            ledger.record_event("hero", 0, EventKind.VIEW, f"visitor-{n}")

        for n in range(200):
            t = threading.Thread(target=worker, args=(n,))
            t.start()
            t.join()

        assert db.open_connections == 1
        assert ledger.count_events("hero") == 200

    def test_concurrent_threads_bounded_by_max_connections(self, db_path):
        db = DatabaseConnection(db_path, busy_timeout_seconds=10.0, max_connections=3)
        ledger = EventLedger(db)
        errors = []
        lock = threading.Lock()

        def worker(n):
            try:
                ledger.record_event("hero", n % 2, EventKind.VIEW, f"visitor-{n}")
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert db.open_connections <= 3
        assert ledger.count_events("hero") == 40
        db.close()

    def test_concurrent_holders_get_distinct_connections(self, db):
        barrier = threading.Barrier(3)
        seen = []
        lock = threading.Lock()

        def worker():
            with db.get_connection() as conn:
                with lock:
                    seen.append(conn)
                barrier.wait()

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(conn) for conn in seen}) == 3
        assert db.open_connections == 3

    def test_nested_calls_share_connection(self, db):
        with db.get_connection() as outer:
            with db.get_connection() as inner:
                assert inner is outer
        assert db.open_connections == 1

    def test_exhausted_pool_raises_storage_unavailable(self, db_path):
        db = DatabaseConnection(db_path, max_connections=1, pool_timeout_seconds=0.1)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with db.get_connection():
                held.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        held.wait(5)
        try:
            with pytest.raises(StorageUnavailableError):
                with db.get_connection():
                    pass
        finally:
            release.set()
            t.join()

        assert db.health_check() is True
        db.close()

    def test_uncommitted_work_rolled_back_on_return(self, db):
        with db.get_connection(auto_commit=False) as conn:
            conn.execute(
                "INSERT INTO events (experiment_name, variant, event_type, visitor_id, created_at) "
                "VALUES ('hero', 0, 'view', 'v1', 1)"
            )

        with db.get_cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM events")
            assert cur.fetchone()[0] == 0

    def test_invalid_max_connections(self, db_path):
        with pytest.raises(ValueError):
            DatabaseConnection(db_path, max_connections=0)

    def test_close_releases_all_connections(self, db_path):
        db = DatabaseConnection(db_path)
        with db.get_connection():
            pass
        db.close()

        assert db.open_connections == 0

    def test_usable_after_close(self, db_path):
        db = DatabaseConnection(db_path)
        assert db.health_check() is True
        db.close()

        assert db.health_check() is True
        assert db.open_connections == 1
        db.close()


class TestHealthCheck:
    """health_check / database_size_bytes のテスト"""

    def test_health_check_ok(self, db):
        assert db.health_check() is True

    def test_database_size_positive(self, db):
        assert db.database_size_bytes() > 0

    def test_context_manager_closes(self, db_path):
        with DatabaseConnection(db_path) as db:
            assert db.health_check() is True
        assert db.open_connections == 0
