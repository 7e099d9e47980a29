# テスト共通フィクスチャ
"""
一時ファイル上の実SQLiteデータベースを使う共通フィクスチャ

各テストは tmp_path 配下の独立したデータベースファイルを使い、
終了時に全スレッドの接続をクローズする。
"""

from typing import Generator

import pytest

from headline_ab.db.connection import DatabaseConnection
from headline_ab.ingestion.gateway import IngestionGateway
from headline_ab.registry.experiment_registry import ExperimentRegistry
from headline_ab.store.event_ledger import EventLedger


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    """利用者の環境変数がテストに漏れないようにする"""
    monkeypatch.delenv("HLAB_DB_PATH", raising=False)
    monkeypatch.delenv("HLAB_LOG_LEVEL", raising=False)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "headline-ab-test.db")


@pytest.fixture
def db(db_path) -> Generator[DatabaseConnection, None, None]:
    """データベース接続フィクスチャ（スキーマ適用済み）"""
    connection = DatabaseConnection(db_path, busy_timeout_seconds=10.0)
    connection.initialize()
    yield connection
    connection.close()


@pytest.fixture
def registry(db) -> ExperimentRegistry:
    return ExperimentRegistry(db)


@pytest.fixture
def ledger(db) -> EventLedger:
    return EventLedger(db)


@pytest.fixture
def gateway(registry, ledger) -> IngestionGateway:
    return IngestionGateway(registry, ledger)
