# 実験エンジンのエラー定義
"""
エラー種別モジュール

コアの全操作が送出する例外を一箇所に定義する。

設計方針:
- 種別タグ: 全例外が ErrorKind を持ち、呼び出し側は kind で分岐できる
- クラス階層: 種別ごとのサブクラスで except 節による捕捉も可能
- 伝播: コア内部でログ出力して握りつぶすことはしない
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """エラー種別"""
    INVALID_DEFINITION = "InvalidDefinition"
    ALREADY_EXISTS = "AlreadyExists"
    NOT_FOUND = "NotFound"
    UNKNOWN_EXPERIMENT = "UnknownExperiment"
    INVALID_VARIANT = "InvalidVariant"
    INVALID_STATE = "InvalidState"
    INVALID_REPORT = "InvalidReport"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


class ExperimentError(Exception):
    """コアが送出する例外の基底クラス

    Attributes:
        kind: エラー種別
        experiment_name: 関連する実験名（あれば）
    """

    kind: ErrorKind = ErrorKind.STORAGE_UNAVAILABLE

    def __init__(self, message: str, experiment_name: Optional[str] = None):
        super().__init__(message)
        self.experiment_name = experiment_name

    @property
    def is_client_error(self) -> bool:
        """呼び出し側の入力に起因するエラーか"""
        return self.kind is not ErrorKind.STORAGE_UNAVAILABLE


class InvalidDefinitionError(ExperimentError):
    """実験定義が不正（バリアント不足、重みの不整合、名前の文字種など）"""
    kind = ErrorKind.INVALID_DEFINITION


class AlreadyExistsError(ExperimentError):
    """同名の実験が既に存在する"""
    kind = ErrorKind.ALREADY_EXISTS


class NotFoundError(ExperimentError):
    """実験が見つからない"""
    kind = ErrorKind.NOT_FOUND


class UnknownExperimentError(ExperimentError):
    """イベント報告が解決も自動作成もできない実験を参照している"""
    kind = ErrorKind.UNKNOWN_EXPERIMENT


class InvalidVariantError(ExperimentError):
    """バリアント番号が範囲外"""
    kind = ErrorKind.INVALID_VARIANT


class InvalidStateError(ExperimentError):
    """状態遷移の前提条件を満たしていない"""
    kind = ErrorKind.INVALID_STATE


class InvalidReportError(ExperimentError):
    """イベント報告の必須フィールド欠落・型不正"""
    kind = ErrorKind.INVALID_REPORT


class StorageUnavailableError(ExperimentError):
    """ストレージ操作の失敗（コア内ではリトライしない）"""
    kind = ErrorKind.STORAGE_UNAVAILABLE
