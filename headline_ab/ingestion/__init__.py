# Ingestion Gateway モジュール
"""
イベント受付モジュール

検証 → 実験の解決・自動作成 → 衝突検出 → 台帳への書き込み
"""

from headline_ab.ingestion.gateway import EventReport, IngestionGateway, IngestOutcome

__all__ = [
    "EventReport",
    "IngestionGateway",
    "IngestOutcome",
]
