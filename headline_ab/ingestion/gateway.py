# イベント受付ゲートウェイ
"""
イベント受付ゲートウェイモジュール

信頼できないイベント報告を検証し、実験の解決（または自動作成）を経て
イベント台帳へ書き込む。

設計方針:
- 入力検証: 実験名・訪問者IDの欠落、未知のイベント種別はその場で拒否
- 自動作成: provenance=client かつバリアント一覧付きの報告だけが実験を作成できる
- 衝突検出: 保存済みの出所と報告の出所が異なれば衝突フラグを立てる（初回のみ効果）
- 冪等性: 重複イベントはエラーにせず成功として吸収する
- プロセス内の共有可変状態は持たず、並行性はストレージ層に委ねる
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from headline_ab.errors import (
    InvalidDefinitionError,
    InvalidReportError,
    InvalidVariantError,
    NotFoundError,
    UnknownExperimentError,
)
from headline_ab.models.experiment import EventKind, Experiment, Provenance
from headline_ab.registry.experiment_registry import ExperimentRegistry
from headline_ab.store.event_ledger import EventLedger

logger = logging.getLogger(__name__)

_VALID_KINDS = {kind.value for kind in EventKind}
_VALID_PROVENANCES = {p.value for p in Provenance}


@dataclass
class EventReport:
    """イベント報告

    ワイヤ形式のフィールド名との対応:
        t -> experiment_name, v -> variant, e -> kind, vid -> visitor_id,
        src -> provenance, variants -> variant_labels
    """

    experiment_name: str
    variant: int
    kind: str
    visitor_id: str
    provenance: Optional[str] = None
    variant_labels: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EventReport":
        """ワイヤ形式の辞書から生成

        Raises:
            InvalidReportError: フィールドの型が不正な場合
        """
        if not isinstance(payload, Mapping):
            raise InvalidReportError("payload must be a JSON object")

        name = payload.get("t", "")
        visitor_id = payload.get("vid", "")
        kind = payload.get("e", "")
        variant = payload.get("v")
        provenance = payload.get("src")
        labels = payload.get("variants")

        if not isinstance(name, str):
            raise InvalidReportError("field 't' must be a string")
        if not isinstance(visitor_id, str):
            raise InvalidReportError("field 'vid' must be a string")
        if not isinstance(kind, str):
            raise InvalidReportError("field 'e' must be a string")
        # bool は int のサブクラスなので明示的に除外
        if isinstance(variant, bool) or not isinstance(variant, int):
            raise InvalidReportError("field 'v' must be an integer", name or None)
        if provenance is not None and not isinstance(provenance, str):
            raise InvalidReportError("field 'src' must be a string", name or None)
        if labels is None:
            labels = []
        if not isinstance(labels, list) or not all(isinstance(x, str) for x in labels):
            raise InvalidReportError("field 'variants' must be a list of strings", name or None)

        return cls(
            experiment_name=name,
            variant=variant,
            kind=kind,
            visitor_id=visitor_id,
            provenance=provenance or None,
            variant_labels=list(labels),
        )


@dataclass
class IngestOutcome:
    """受付処理の結果（呼び出し側への応答本文には使わない）"""

    experiment: Experiment
    experiment_created: bool = False
    conflict_recorded: bool = False
    event_recorded: bool = False


class IngestionGateway:
    """イベント報告の受付

    使用例:
        gateway = IngestionGateway(registry, ledger)
        gateway.ingest_payload({"t": "hero", "v": 0, "e": "view", "vid": "v1",
                                "variants": ["A", "B"]})

    Attributes:
        registry: ExperimentRegistry インスタンス
        ledger: EventLedger インスタンス
    """

    def __init__(self, registry: ExperimentRegistry, ledger: EventLedger):
        self.registry = registry
        self.ledger = ledger

    def ingest_payload(self, payload: Mapping[str, Any]) -> IngestOutcome:
        """ワイヤ形式の辞書を解釈して受け付ける"""
        try:
            report = EventReport.from_payload(payload)
        except InvalidReportError as e:
            logger.warning(f"イベント報告を拒否: {e}")
            raise
        return self.ingest(report)

    def ingest(self, report: EventReport) -> IngestOutcome:
        """イベント報告を検証して記録

        Args:
            report: イベント報告

        Returns:
            IngestOutcome（重複イベントでも成功扱い）

        Raises:
            InvalidReportError: 必須フィールドの欠落、未知の種別・出所
            InvalidDefinitionError: 自動作成時の名前・バリアント一覧が不正
            UnknownExperimentError: 実験を解決も作成もできない
            InvalidVariantError: バリアント番号が範囲外
            StorageUnavailableError: ストレージ操作の失敗
        """
        try:
            kind, provenance = self._validate(report)
            experiment, created = self._resolve(report, provenance)

            if not experiment.has_variant(report.variant):
                raise InvalidVariantError(
                    f"invalid variant {report.variant} for experiment "
                    f"'{experiment.name}' with {experiment.variant_count} variants",
                    experiment.name,
                )
        except (
            InvalidReportError,
            InvalidDefinitionError,
            UnknownExperimentError,
            InvalidVariantError,
        ) as e:
            logger.warning(f"イベント報告を拒否: kind={e.kind.value}, {e}")
            raise

        conflict_recorded = False
        if experiment.provenance != provenance and not experiment.has_conflict:
            conflict_recorded = self.registry.record_conflict(experiment.name)

        event_recorded = self.ledger.record_event(
            experiment.name, report.variant, kind, report.visitor_id
        )

        return IngestOutcome(
            experiment=experiment,
            experiment_created=created,
            conflict_recorded=conflict_recorded,
            event_recorded=event_recorded,
        )

    async def ingest_async(self, report: EventReport) -> IngestOutcome:
        """ingest をワーカースレッドで実行（非同期トランスポート用）"""
        return await asyncio.to_thread(self.ingest, report)

    def lookup_by_url(self, url: str) -> List[Dict[str, Any]]:
        """URLが完全一致する running 状態の実験を公開形式で返す

        一致がなければ空リスト。

        Raises:
            InvalidReportError: url が空の場合
        """
        if not isinstance(url, str) or not url:
            raise InvalidReportError("url is required")
        return [e.to_public_dict() for e in self.registry.list_by_url(url)]

    # ===== Private Methods =====

    def _validate(self, report: EventReport):
        if not report.experiment_name or not report.visitor_id:
            raise InvalidReportError(
                "missing required fields: experiment name and visitor id",
                report.experiment_name or None,
            )
        if report.kind not in _VALID_KINDS:
            raise InvalidReportError(
                f"invalid event type '{report.kind}'", report.experiment_name
            )
        provenance = report.provenance or Provenance.CLIENT.value
        if provenance not in _VALID_PROVENANCES:
            raise InvalidReportError(
                f"invalid source '{provenance}'", report.experiment_name
            )
        return EventKind(report.kind), Provenance(provenance)

    def _resolve(self, report: EventReport, provenance: Provenance):
        """実験を解決（条件を満たす場合のみ自動作成）"""
        if provenance == Provenance.CLIENT and report.variant_labels:
            return self.registry.get_or_create(report.experiment_name, report.variant_labels)

        try:
            return self.registry.get(report.experiment_name), False
        except NotFoundError as e:
            raise UnknownExperimentError(
                f"experiment '{report.experiment_name}' not found", report.experiment_name
            ) from e
