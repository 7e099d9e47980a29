# 実験・イベントのデータモデル
"""
実験定義とイベントのデータクラス

experiments / events テーブルの1行に対応するデータクラスと、
定義の検証・リスト列のシリアライズを提供する。

設計方針:
- 不変条件の集約: バリアント数・重み・名前の文字種の検証をここに集める
- バージョン付きシリアライズ: リスト列は {"version": 1, "items": [...]} で保存
- 復号失敗は InvalidDefinitionError として扱う（例外を漏らさない）
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from headline_ab.errors import InvalidDefinitionError


# リスト列のシリアライズ形式のバージョン
LIST_FORMAT_VERSION = 1

# 重みの合計に許容する誤差
WEIGHT_SUM_TOLERANCE = 0.001

MIN_VARIANTS = 2

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")


class ExperimentState(str, Enum):
    """実験のステータス

    paused は予約済みで、現状どの操作からも遷移しない。
    """
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class Provenance(str, Enum):
    """実験定義の出所"""
    CLIENT = "client"
    SERVER = "server"


class EventKind(str, Enum):
    """イベント種別"""
    VIEW = "view"
    CONVERT = "convert"


def _from_unix(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _to_unix(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp())


def validate_name(name: Any) -> str:
    """実験名を検証

    Raises:
        InvalidDefinitionError: 空、または英数字とハイフン以外を含む場合
    """
    if not isinstance(name, str) or not name:
        raise InvalidDefinitionError("experiment name must be a non-empty string")
    if not _NAME_PATTERN.match(name):
        raise InvalidDefinitionError(
            f"experiment name '{name}' may only contain letters, digits and hyphens",
            experiment_name=name,
        )
    return name


def validate_definition(
    variants: Sequence[Any],
    weights: Optional[Sequence[Any]] = None,
    name: Optional[str] = None,
) -> None:
    """バリアントと重みの不変条件を検証

    Args:
        variants: バリアントのテキスト（2件以上）
        weights: 重み（省略可）。バリアントと同数、各値は [0, 1]、合計は 1.0 ± 0.001
        name: エラーメッセージ用の実験名

    Raises:
        InvalidDefinitionError: 不変条件に違反する場合
    """
    if not isinstance(variants, (list, tuple)):
        raise InvalidDefinitionError("variants must be a list of strings", name)
    if len(variants) < MIN_VARIANTS:
        raise InvalidDefinitionError(
            f"need at least {MIN_VARIANTS} variants, got {len(variants)}", name
        )
    for label in variants:
        if not isinstance(label, str) or not label:
            raise InvalidDefinitionError("variant labels must be non-empty strings", name)

    if not weights:
        return

    if len(weights) != len(variants):
        raise InvalidDefinitionError(
            f"weights length ({len(weights)}) must match "
            f"variants length ({len(variants)})",
            name,
        )
    for weight in weights:
        # bool は int のサブクラスなので明示的に除外
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise InvalidDefinitionError("weights must be numbers", name)
        if not (0.0 <= weight <= 1.0):
            raise InvalidDefinitionError(f"weight {weight} is outside [0, 1]", name)

    total = sum(weights)
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise InvalidDefinitionError(f"weights must sum to 1.0, got {total}", name)


def encode_list(items: Optional[Sequence[Any]]) -> Optional[str]:
    """リスト列をバージョン付きJSONにシリアライズ（空ならNone）"""
    if not items:
        return None
    return json.dumps({"version": LIST_FORMAT_VERSION, "items": list(items)})


def decode_list(raw: Optional[str], field_name: str = "variants") -> Optional[List[Any]]:
    """バージョン付きJSONからリスト列を復元

    旧形式（JSON配列そのもの）も受け付ける。

    Raises:
        InvalidDefinitionError: JSONとして不正、または未知の形式・バージョンの場合
    """
    if raw is None or raw == "":
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidDefinitionError(f"stored {field_name} is not valid JSON: {e}") from e

    if isinstance(data, list):
        return data
    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise InvalidDefinitionError(f"stored {field_name} has an unknown layout")
    if data.get("version") != LIST_FORMAT_VERSION:
        raise InvalidDefinitionError(
            f"stored {field_name} uses unsupported format version {data.get('version')!r}"
        )
    return data["items"]


@dataclass
class Experiment:
    """実験定義

    experiments テーブルの1行に対応するデータクラス。

    Attributes:
        name: 実験名（一意）
        variants: バリアントのテキスト（順序付き、2件以上）
        weights: バリアントごとの配分（省略可、割り当ては外部スクリプトで行う）
        conversion_goal: コンバージョンの説明
        state: ステータス
        winner_variant: 勝者バリアント番号（completed のときのみ）
        provenance: 定義の出所（client / server）
        has_conflict: 出所の不一致を観測したか（一度立つと戻らない）
        url: 対象ページのURL（完全一致）
        target: 見出し要素のセレクタ
        cta_target: CTA要素のセレクタ
        conversion_url: ページ遷移でコンバージョンとみなすURL
        id: 行ID
        created_at: 作成日時
        updated_at: 更新日時
    """

    name: str
    variants: List[str]
    weights: Optional[List[float]] = None
    conversion_goal: str = ""
    state: ExperimentState = ExperimentState.RUNNING
    winner_variant: Optional[int] = None
    provenance: Provenance = Provenance.CLIENT
    has_conflict: bool = False
    url: Optional[str] = None
    target: Optional[str] = None
    cta_target: Optional[str] = None
    conversion_url: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "Experiment":
        """DBの行からインスタンス生成

        Args:
            row: ExperimentRegistry._COLUMNS の順に並んだ行

        Raises:
            InvalidDefinitionError: リスト列の復号に失敗した場合
        """
        variants = decode_list(row[2], "variants")
        if variants is None:
            raise InvalidDefinitionError("stored variants are empty", row[1])
        return cls(
            id=row[0],
            name=row[1],
            variants=variants,
            weights=decode_list(row[3], "weights"),
            conversion_goal=row[4] or "",
            state=ExperimentState(row[5]),
            winner_variant=row[6],
            provenance=Provenance(row[7]),
            has_conflict=bool(row[8]),
            url=row[9],
            conversion_url=row[10],
            target=row[11],
            cta_target=row[12],
            created_at=_from_unix(row[13]),
            updated_at=_from_unix(row[14]),
        )

    @property
    def variant_count(self) -> int:
        return len(self.variants)

    @property
    def is_running(self) -> bool:
        return self.state == ExperimentState.RUNNING

    def has_variant(self, index: Any) -> bool:
        """バリアント番号が範囲内か"""
        if isinstance(index, bool) or not isinstance(index, int):
            return False
        return 0 <= index < self.variant_count

    def to_dict(self) -> Dict[str, Any]:
        """辞書に変換（CLIのJSON出力用）"""
        return {
            "name": self.name,
            "variants": list(self.variants),
            "weights": list(self.weights) if self.weights else None,
            "conversion_goal": self.conversion_goal,
            "state": self.state.value,
            "winner_variant": self.winner_variant,
            "source": self.provenance.value,
            "has_source_conflict": self.has_conflict,
            "url": self.url,
            "target": self.target,
            "cta_target": self.cta_target,
            "conversion_url": self.conversion_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """URL検索で返す公開用の射影

        未設定のターゲティング項目はキーごと省略する。
        """
        data: Dict[str, Any] = {"name": self.name, "variants": list(self.variants)}
        if self.target:
            data["target"] = self.target
        if self.cta_target:
            data["ctaTarget"] = self.cta_target
        if self.conversion_url:
            data["conversionURL"] = self.conversion_url
        return data


@dataclass
class Event:
    """イベント（events テーブルの1行）"""

    experiment_name: str
    variant: int
    event_type: EventKind
    visitor_id: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "Event":
        return cls(
            id=row[0],
            experiment_name=row[1],
            variant=row[2],
            event_type=EventKind(row[3]),
            visitor_id=row[4],
            created_at=_from_unix(row[5]),
        )

    @property
    def timestamp(self) -> Optional[int]:
        """Unix秒（エクスポート用）"""
        return _to_unix(self.created_at)

    def to_export_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "variant": self.variant,
            "event_type": self.event_type.value,
            "visitor_id": self.visitor_id,
        }


@dataclass
class VariantStat:
    """バリアントごとの集計値（ユニーク訪問者数）"""

    variant: int
    views: int = 0
    conversions: int = 0


@dataclass
class ExperimentSummary:
    """一覧表示用の実験と合計値"""

    experiment: Experiment
    stats: List[VariantStat] = field(default_factory=list)

    @property
    def total_views(self) -> int:
        return sum(s.views for s in self.stats)

    @property
    def total_conversions(self) -> int:
        return sum(s.conversions for s in self.stats)
