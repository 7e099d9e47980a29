# 実験レジストリ
# experiments テーブルに対するCRUD操作と get-or-create を提供
"""
実験レジストリモジュール

実験定義の作成・取得・状態遷移・出所の衝突記録を行う。

設計方針:
- データ整合性: 名前の一意性はDBの一意制約で保証する
- 楽観的作成: get_or_create は挿入を試み、一意制約違反なら読み直して勝者を返す
  （2回のストレージ呼び出しをまたいでロックを保持しない）
- 条件付き更新: 勝者宣言・衝突記録は WHERE 句に前提条件を含めた単一UPDATEで行う
- 出所: create は server、get_or_create による自動作成は client
"""

import logging
import sqlite3
import time
from typing import List, Optional, Sequence, Tuple

from headline_ab.db.connection import DatabaseConnection
from headline_ab.errors import (
    AlreadyExistsError,
    InvalidStateError,
    InvalidVariantError,
    NotFoundError,
)
from headline_ab.models.experiment import (
    Experiment,
    Provenance,
    encode_list,
    validate_definition,
    validate_name,
)

logger = logging.getLogger(__name__)


def _nullable(value: Optional[str]) -> Optional[str]:
    """空文字列はNULLとして保存する"""
    return value if value else None


class ExperimentRegistry:
    """実験定義の登録・管理

    使用例:
        db = DatabaseConnection("./headline-ab.db")
        registry = ExperimentRegistry(db)

        # 明示的な作成（provenance=server）
        experiment = registry.create("hero", ["Ship Faster", "Build Better"])

        # 自動作成（provenance=client）
        experiment, created = registry.get_or_create("cta", ["Sign Up", "Try Free"])

        # 勝者宣言
        registry.set_winner("hero", 1)

    Attributes:
        db: DatabaseConnection インスタンス
    """

    # SQL定義（可読性のために定数として定義）
    _COLUMNS = """
        id, name, variants, weights, conversion_goal, state, winner_variant,
        source, has_source_conflict, url, conversion_url, target, cta_target,
        created_at, updated_at
    """

    _INSERT_SQL = """
        INSERT INTO experiments (
            name, variants, weights, conversion_goal, state, source,
            url, conversion_url, target, cta_target, created_at, updated_at
        ) VALUES (?, ?, ?, ?, 'running', ?, ?, ?, ?, ?, ?, ?)
    """

    _SELECT_BY_NAME_SQL = """
        SELECT {columns}
        FROM experiments
        WHERE name = ?
    """.format(columns=_COLUMNS)

    _SELECT_ALL_SQL = """
        SELECT {columns}
        FROM experiments
        ORDER BY created_at DESC, id DESC
    """.format(columns=_COLUMNS)

    _SELECT_BY_URL_SQL = """
        SELECT {columns}
        FROM experiments
        WHERE url = ? AND state = 'running'
        ORDER BY created_at, id
    """.format(columns=_COLUMNS)

    _SET_WINNER_SQL = """
        UPDATE experiments SET
            state = 'completed',
            winner_variant = ?,
            updated_at = ?
        WHERE name = ? AND state = 'running'
    """

    _SET_CONFLICT_SQL = """
        UPDATE experiments SET
            has_source_conflict = 1,
            updated_at = ?
        WHERE name = ? AND has_source_conflict = 0
    """

    _SET_TARGETING_SQL = """
        UPDATE experiments SET
            url = ?,
            target = ?,
            cta_target = ?,
            conversion_url = ?,
            updated_at = ?
        WHERE name = ?
    """

    _EXISTS_SQL = "SELECT 1 FROM experiments WHERE name = ?"

    def __init__(self, db: DatabaseConnection):
        """ExperimentRegistry を初期化

        Args:
            db: DatabaseConnection インスタンス
        """
        self.db = db

    def create(
        self,
        name: str,
        variants: Sequence[str],
        weights: Optional[Sequence[float]] = None,
        conversion_goal: str = "",
        url: Optional[str] = None,
        target: Optional[str] = None,
        cta_target: Optional[str] = None,
        conversion_url: Optional[str] = None,
    ) -> Experiment:
        """実験を明示的に作成（provenance=server）

        Args:
            name: 実験名（英数字とハイフン）
            variants: バリアントのテキスト（2件以上）
            weights: 配分（省略可）
            conversion_goal: コンバージョンの説明
            url, target, cta_target, conversion_url: ターゲティング情報（省略可）

        Returns:
            作成された Experiment

        Raises:
            InvalidDefinitionError: 名前・バリアント・重みが不正な場合
            AlreadyExistsError: 同名の実験が存在する場合
        """
        validate_name(name)
        validate_definition(variants, weights, name)

        try:
            experiment = self._insert(
                name,
                variants,
                weights,
                conversion_goal,
                Provenance.SERVER,
                url=url,
                target=target,
                cta_target=cta_target,
                conversion_url=conversion_url,
            )
        except sqlite3.IntegrityError as e:
            raise AlreadyExistsError(f"experiment '{name}' already exists", name) from e

        logger.info(
            f"実験を作成: name={name}, variants={len(experiment.variants)}, source=server"
        )
        return experiment

    def get(self, name: str) -> Experiment:
        """実験を取得

        Raises:
            NotFoundError: 実験が見つからない場合
            InvalidDefinitionError: 保存済みの定義が復号できない場合
        """
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_NAME_SQL, (name,))
            row = cur.fetchone()

        if row is None:
            raise NotFoundError(f"experiment '{name}' not found", name)
        return Experiment.from_row(row)

    def get_or_create(
        self, name: str, variants: Sequence[str]
    ) -> Tuple[Experiment, bool]:
        """既存の実験を返すか、なければ provenance=client で作成

        同時に複数の呼び出しが作成を試みた場合、挿入に成功するのは1件のみ。
        一意制約違反で負けた側は読み直して勝者の実験を返す。

        Returns:
            (experiment, was_created) のタプル

        Raises:
            InvalidDefinitionError: 作成が必要で、名前・バリアントが不正な場合
        """
        validate_name(name)
        try:
            return self.get(name), False
        except NotFoundError:
            pass

        validate_definition(variants, None, name)
        try:
            experiment = self._insert(name, variants, None, "", Provenance.CLIENT)
        except sqlite3.IntegrityError:
            logger.debug(f"自動作成の競合に負けたため読み直し: name={name}")
            return self.get(name), False

        logger.info(
            f"実験を自動作成: name={name}, variants={len(experiment.variants)}, source=client"
        )
        return experiment, True

    def record_conflict(self, name: str) -> bool:
        """出所の衝突フラグを立てる（一度立てたら戻さない）

        Returns:
            今回の呼び出しでフラグが立った場合True、既に立っていた場合False

        Raises:
            NotFoundError: 実験が見つからない場合
        """
        with self.db.get_cursor() as cur:
            cur.execute(self._SET_CONFLICT_SQL, (int(time.time()), name))
            flipped = cur.rowcount == 1
            if not flipped:
                cur.execute(self._EXISTS_SQL, (name,))
                if cur.fetchone() is None:
                    raise NotFoundError(f"experiment '{name}' not found", name)

        if flipped:
            logger.info(f"出所の衝突を記録: name={name}")
        return flipped

    def set_winner(self, name: str, variant_index: int) -> Experiment:
        """勝者を宣言して実験を完了させる

        Args:
            name: 実験名
            variant_index: 勝者バリアント番号

        Returns:
            更新後の Experiment

        Raises:
            NotFoundError: 実験が見つからない場合
            InvalidStateError: 実験が running 状態でない場合
            InvalidVariantError: バリアント番号が範囲外の場合
        """
        experiment = self.get(name)

        if not experiment.is_running:
            raise InvalidStateError(
                f"Cannot declare a winner for experiment in '{experiment.state.value}' "
                f"status. Only 'running' experiments can be completed.",
                name,
            )
        if not experiment.has_variant(variant_index):
            raise InvalidVariantError(
                f"invalid variant index: {variant_index} "
                f"(experiment has {experiment.variant_count} variants: "
                f"0-{experiment.variant_count - 1})",
                name,
            )

        with self.db.get_cursor() as cur:
            cur.execute(self._SET_WINNER_SQL, (variant_index, int(time.time()), name))
            if cur.rowcount == 0:
                # 読み取り後に別の呼び出しが完了させた
                raise InvalidStateError(
                    f"experiment '{name}' is no longer running", name
                )

        logger.info(f"勝者を宣言: name={name}, variant={variant_index}")
        return self.get(name)

    def set_targeting(
        self,
        name: str,
        url: Optional[str] = None,
        target: Optional[str] = None,
        cta_target: Optional[str] = None,
        conversion_url: Optional[str] = None,
    ) -> Experiment:
        """ターゲティング情報を保存

        値の組み合わせの検証（cta_target と conversion_url の排他など）は呼び出し側で行う。
        空文字列・NoneはNULLとして保存する。

        Raises:
            NotFoundError: 実験が見つからない場合
        """
        with self.db.get_cursor() as cur:
            cur.execute(
                self._SET_TARGETING_SQL,
                (
                    _nullable(url),
                    _nullable(target),
                    _nullable(cta_target),
                    _nullable(conversion_url),
                    int(time.time()),
                    name,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"experiment '{name}' not found", name)

        return self.get(name)

    def list_by_url(self, url: str) -> List[Experiment]:
        """URLが完全一致する running 状態の実験を取得"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_URL_SQL, (url,))
            rows = cur.fetchall()
        return [Experiment.from_row(row) for row in rows]

    def list_all(self) -> List[Experiment]:
        """全実験を新しい順に取得"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_ALL_SQL)
            rows = cur.fetchall()
        return [Experiment.from_row(row) for row in rows]

    def delete(self, name: str) -> None:
        """実験とそのイベントを削除

        Raises:
            NotFoundError: 実験が見つからない場合
        """
        with self.db.get_cursor() as cur:
            cur.execute("DELETE FROM events WHERE experiment_name = ?", (name,))
            removed_events = cur.rowcount
            cur.execute("DELETE FROM experiments WHERE name = ?", (name,))
            if cur.rowcount == 0:
                raise NotFoundError(f"experiment '{name}' not found", name)

        logger.info(f"実験を削除: name={name}, events={removed_events}")

    # ===== Private Methods =====

    def _insert(
        self,
        name: str,
        variants: Sequence[str],
        weights: Optional[Sequence[float]],
        conversion_goal: str,
        provenance: Provenance,
        url: Optional[str] = None,
        target: Optional[str] = None,
        cta_target: Optional[str] = None,
        conversion_url: Optional[str] = None,
    ) -> Experiment:
        """行を挿入（一意制約違反は sqlite3.IntegrityError のまま送出）"""
        now = int(time.time())
        with self.db.get_cursor() as cur:
            cur.execute(
                self._INSERT_SQL,
                (
                    name,
                    encode_list(variants),
                    encode_list(weights),
                    conversion_goal or None,
                    provenance.value,
                    _nullable(url),
                    _nullable(conversion_url),
                    _nullable(target),
                    _nullable(cta_target),
                    now,
                    now,
                ),
            )
            cur.execute(self._SELECT_BY_NAME_SQL, (name,))
            row = cur.fetchone()

        if row is None:
            raise NotFoundError(f"experiment '{name}' vanished after insert", name)
        return Experiment.from_row(row)
