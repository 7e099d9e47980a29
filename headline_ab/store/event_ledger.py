# イベント台帳
# events テーブルへの重複排除付き追記と集計を提供
"""
イベント台帳モジュール

(実験, バリアント, 種別, 訪問者) のイベントを追記専用で記録し、
バリアントごとのユニーク訪問者数を集計する。

設計方針:
- 冪等性: (実験, 訪問者, 種別) の一意インデックスと INSERT OR IGNORE で
  重複書き込みを原子的に無視する（読んでから書く隙間を作らない）
- 先勝ち: 既存行は上書きしないため、後から届いた別バリアントの報告は破棄される
- 実験の存在確認はしない（呼び出し側が解決済みであることを前提とする）
"""

import csv
import io
import json
import logging
import time
from typing import List

from headline_ab.db.connection import DatabaseConnection
from headline_ab.models.experiment import Event, EventKind, VariantStat

logger = logging.getLogger(__name__)


class EventLedger:
    """イベントの記録と集計

    使用例:
        db = DatabaseConnection("./headline-ab.db")
        ledger = EventLedger(db)

        ledger.record_event("hero", 0, EventKind.VIEW, "visitor-1")
        stats = ledger.aggregate("hero")

    Attributes:
        db: DatabaseConnection インスタンス
    """

    _INSERT_SQL = """
        INSERT OR IGNORE INTO events
            (experiment_name, variant, event_type, visitor_id, created_at)
        VALUES (?, ?, ?, ?, ?)
    """

    _AGGREGATE_SQL = """
        SELECT
            variant,
            COUNT(DISTINCT CASE WHEN event_type = 'view' THEN visitor_id END) AS views,
            COUNT(DISTINCT CASE WHEN event_type = 'convert' THEN visitor_id END) AS conversions
        FROM events
        WHERE experiment_name = ?
        GROUP BY variant
        ORDER BY variant
    """

    _SELECT_EVENTS_SQL = """
        SELECT id, experiment_name, variant, event_type, visitor_id, created_at
        FROM events
        WHERE experiment_name = ?
        ORDER BY created_at DESC, id DESC
    """

    _COUNT_SQL = "SELECT COUNT(*) FROM events WHERE experiment_name = ?"

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def record_event(
        self,
        experiment_name: str,
        variant: int,
        kind: EventKind,
        visitor_id: str,
    ) -> bool:
        """イベントを記録

        既に同じ (実験, 訪問者, 種別) がある場合は何もしない。

        Args:
            experiment_name: 実験名
            variant: バリアント番号
            kind: イベント種別
            visitor_id: 訪問者ID

        Returns:
            新しく記録した場合True、重複で無視した場合False

        Raises:
            StorageUnavailableError: ストレージ操作に失敗した場合
        """
        kind = EventKind(kind)
        with self.db.get_cursor() as cur:
            cur.execute(
                self._INSERT_SQL,
                (experiment_name, variant, kind.value, visitor_id, int(time.time())),
            )
            inserted = cur.rowcount == 1

        if inserted:
            logger.debug(
                f"イベントを記録: experiment={experiment_name}, variant={variant}, "
                f"kind={kind.value}, visitor={visitor_id}"
            )
        else:
            logger.debug(
                f"重複イベントを無視: experiment={experiment_name}, "
                f"kind={kind.value}, visitor={visitor_id}"
            )
        return inserted

    def aggregate(self, experiment_name: str) -> List[VariantStat]:
        """バリアントごとのユニーク訪問者数を集計

        イベントが1件もないバリアントは含まれない。

        Returns:
            バリアント番号の昇順に並んだ VariantStat のリスト
        """
        with self.db.get_cursor() as cur:
            cur.execute(self._AGGREGATE_SQL, (experiment_name,))
            rows = cur.fetchall()
        return [
            VariantStat(variant=row[0], views=row[1], conversions=row[2])
            for row in rows
        ]

    def list_events(self, experiment_name: str) -> List[Event]:
        """生イベントを新しい順に取得"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_EVENTS_SQL, (experiment_name,))
            rows = cur.fetchall()
        return [Event.from_row(row) for row in rows]

    def count_events(self, experiment_name: str) -> int:
        with self.db.get_cursor() as cur:
            cur.execute(self._COUNT_SQL, (experiment_name,))
            return cur.fetchone()[0]


EXPORT_COLUMNS = ["timestamp", "variant", "event_type", "visitor_id"]


def events_to_csv(events: List[Event]) -> str:
    """イベントをCSV文字列に変換（ヘッダ付き）"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for event in events:
        data = event.to_export_dict()
        writer.writerow([data[column] for column in EXPORT_COLUMNS])
    return buffer.getvalue()


def events_to_json(events: List[Event]) -> str:
    """イベントを {"events": [...]} 形式のJSON文字列に変換"""
    return json.dumps(
        {"events": [event.to_export_dict() for event in events]},
        ensure_ascii=False,
        indent=2,
    )
