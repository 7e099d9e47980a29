# SQLite接続管理
# 接続: HLAB_DB_PATH（デフォルト ./headline-ab.db）
"""
SQLite接続管理モジュール

上限付きコネクションプールとコンテキストマネージャーによる安全な接続管理を提供。

設計方針:
- 原子性: コンテキストマネージャーでcommit/rollbackを確実に制御
- 効率性: 返却された接続を再利用し、同時に開く接続数を max_connections 以下に抑える
- 並行性: WALモードで読み取りと書き込みを並行させ、書き込み競合はbusy timeoutで待機
- 一意制約違反（IntegrityError）はそのまま送出し、呼び出し側の楽観的挿入に使わせる
- それ以外のsqlite3エラーは StorageUnavailableError に変換する
"""

import logging
import os
import queue
import sqlite3
import threading
from contextlib import closing, contextmanager
from typing import Any, Generator, List, Optional

from headline_ab.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.sql")


class DatabaseConnection:
    """SQLiteデータベース接続管理クラス

    接続は get_connection() の間だけスレッドに貸し出し、終了時にプールへ返却する。
    同じスレッド内で入れ子に取得した場合は同じ接続を共有する。
    プールが上限に達している場合は pool_timeout_seconds まで返却を待つ。

    使用例:
        db = DatabaseConnection("./headline-ab.db")
        db.initialize()

        with db.get_cursor() as cur:
            cur.execute("SELECT name FROM experiments")
            rows = cur.fetchall()
        # コンテキスト終了時に自動commit（例外時はrollback）

    Attributes:
        db_path: データベースファイルのパス（環境変数HLAB_DB_PATHから取得、または直接指定）
        busy_timeout_seconds: ロック待ちの上限（秒）
        max_connections: プール内の最大接続数
        pool_timeout_seconds: 空き接続を待つ上限（秒）
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        busy_timeout_seconds: float = 5.0,
        max_connections: int = 10,
        pool_timeout_seconds: float = 30.0,
    ):
        """DatabaseConnectionを初期化

        Args:
            db_path: データベースファイルのパス。Noneの場合は環境変数HLAB_DB_PATHを使用。
            busy_timeout_seconds: ロック待ちの上限（秒）
            max_connections: プール内の最大接続数（デフォルト: 10）
            pool_timeout_seconds: 空き接続を待つ上限（秒）

        Raises:
            ValueError: db_pathが設定されていない、または max_connections が1未満の場合
        """
        self.db_path = db_path or os.getenv("HLAB_DB_PATH")
        if not self.db_path:
            raise ValueError(
                "HLAB_DB_PATH environment variable is not set. "
                "Please set it or provide db_path parameter."
            )

        if max_connections < 1:
            raise ValueError(f"max_connections must be at least 1: {max_connections}")

        self.busy_timeout_seconds = busy_timeout_seconds
        self.max_connections = max_connections
        self.pool_timeout_seconds = pool_timeout_seconds
        self._local = threading.local()
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(max_connections)
        self._connections: List[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        """新しい接続を開いてPRAGMAを設定"""
        try:
            connection = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout_seconds,
                check_same_thread=False,
            )
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute(
                f"PRAGMA busy_timeout = {int(self.busy_timeout_seconds * 1000)}"
            )
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                f"failed to open database {self.db_path}: {e}"
            ) from e
        return connection

    @property
    def open_connections(self) -> int:
        """プールが保持している接続数（貸出中と待機中の合計）"""
        with self._registry_lock:
            return len(self._connections)

    def _checkout(self) -> sqlite3.Connection:
        """プールから接続を借りる（同じスレッドの入れ子呼び出しは同じ接続）

        Raises:
            StorageUnavailableError: 空き接続を待ちきれなかった、または接続を開けなかった場合
        """
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            self._local.depth += 1
            return connection

        if not self._schema_ready:
            self.initialize()

        if not self._slots.acquire(timeout=self.pool_timeout_seconds):
            raise StorageUnavailableError(
                f"connection pool exhausted: max_connections={self.max_connections}"
            )
        try:
            connection = self._idle.get_nowait()
        except queue.Empty:
            try:
                connection = self._connect()
            except StorageUnavailableError:
                self._slots.release()
                raise
            with self._registry_lock:
                self._connections.append(connection)
            logger.debug(
                f"接続を追加: path={self.db_path}, open={len(self._connections)}"
            )

        self._local.connection = connection
        self._local.depth = 1
        return connection

    def _checkin(self, connection: sqlite3.Connection) -> None:
        """最も外側の呼び出しの終了時に接続をプールへ返却"""
        self._local.depth -= 1
        if self._local.depth > 0:
            return

        self._local.connection = None
        with self._registry_lock:
            tracked = connection in self._connections
        # close() 済みの接続はプールに戻さない
        if tracked:
            if connection.in_transaction:
                self._safe_rollback(connection)
            self._idle.put(connection)
        self._slots.release()

    def initialize(self) -> None:
        """スキーマを適用（冪等）

        Raises:
            StorageUnavailableError: スキーマ適用に失敗した場合
        """
        with self._registry_lock:
            if self._schema_ready:
                return
            with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
                schema_sql = f.read()

            # スキーマ適用は専用接続で行う（スレッド接続のトランザクションに干渉しない）
            with closing(self._connect()) as connection:
                try:
                    connection.executescript(schema_sql)
                    version = connection.execute("PRAGMA user_version").fetchone()[0]
                    if version < SCHEMA_VERSION:
                        connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                        logger.info(
                            f"スキーマを適用: path={self.db_path}, "
                            f"version={version} -> {SCHEMA_VERSION}"
                        )
                    elif version > SCHEMA_VERSION:
                        raise StorageUnavailableError(
                            f"database schema version {version} is newer than "
                            f"supported version {SCHEMA_VERSION}"
                        )
                    connection.commit()
                except sqlite3.Error as e:
                    raise StorageUnavailableError(f"failed to apply schema: {e}") from e
            self._schema_ready = True

    @contextmanager
    def get_connection(
        self, auto_commit: bool = True
    ) -> Generator[sqlite3.Connection, None, None]:
        """データベース接続をコンテキストマネージャーとして取得

        正常終了時はcommit、例外発生時はrollbackを自動実行。

        Args:
            auto_commit: Trueの場合、コンテキスト終了時に自動commit。

        Yields:
            sqlite3.Connection: プールから借りた接続

        Raises:
            sqlite3.IntegrityError: 一意制約違反（変換せずに送出）
            StorageUnavailableError: その他のデータベースエラー
        """
        connection = self._checkout()
        try:
            yield connection
            if auto_commit:
                connection.commit()
        except sqlite3.IntegrityError:
            connection.rollback()
            raise
        except sqlite3.Error as e:
            self._safe_rollback(connection)
            raise StorageUnavailableError(f"database operation failed: {e}") from e
        except Exception:
            self._safe_rollback(connection)
            raise
        finally:
            self._checkin(connection)

    @contextmanager
    def get_cursor(self, auto_commit: bool = True) -> Generator[sqlite3.Cursor, None, None]:
        """カーソルを直接取得するコンテキストマネージャー

        使用例:
            with db.get_cursor() as cur:
                cur.execute("SELECT * FROM events")
                rows = cur.fetchall()
        """
        with self.get_connection(auto_commit=auto_commit) as conn:
            with closing(conn.cursor()) as cur:
                yield cur

    def _safe_rollback(self, connection: sqlite3.Connection) -> None:
        try:
            connection.rollback()
        except sqlite3.Error as e:
            # 元の例外を優先して送出するため、ここでは記録のみ
            logger.warning(f"rollbackに失敗: {e}")

    def database_size_bytes(self) -> int:
        """データベースのサイズ（page_count * page_size）"""
        with self.get_cursor() as cur:
            cur.execute(
                "SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()"
            )
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def health_check(self) -> bool:
        """データベース接続の健全性をチェック

        Returns:
            bool: 接続が正常な場合True
        """
        try:
            with self.get_cursor() as cur:
                cur.execute("SELECT 1")
                result = cur.fetchone()
                return result is not None and result[0] == 1
        except StorageUnavailableError:
            return False

    def close(self) -> None:
        """プールの全接続をクローズ

        アプリケーション終了時に呼び出すことで、すべての接続を適切に解放。
        貸出中の接続もクローズされ、返却時にプールへは戻らない。
        """
        with self._registry_lock:
            connections, self._connections = self._connections, []
        while True:
            try:
                self._idle.get_nowait()
            except queue.Empty:
                break
        for connection in connections:
            connection.close()

    def __enter__(self) -> "DatabaseConnection":
        """コンテキストマネージャーとしての入口"""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """コンテキスト終了時に自動的に接続をクローズ"""
        self.close()
