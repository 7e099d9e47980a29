# アプリケーション設定
"""
headline-ab の設定値

環境変数:
    HLAB_DB_PATH: データベースファイルのパス（デフォルト: ./headline-ab.db）
    HLAB_LOG_LEVEL: ログレベル（デフォルト: WARNING）

YAMLファイルからの読み込み:
    config = AppConfig.from_yaml("headline-ab.yaml")
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict

import yaml

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class AppConfig:
    """アプリケーション設定

    使用例:
        config = AppConfig()  # 環境変数から自動取得
        config = AppConfig(db_path="/tmp/test.db", log_level="DEBUG")
    """

    db_path: str = "./headline-ab.db"
    """データベースファイルのパス"""

    busy_timeout_seconds: float = 5.0
    """書き込みロック待ちの上限（秒）"""

    max_connections: int = 10
    """コネクションプールの最大接続数"""

    confidence_level: float = 0.95
    """信頼区間の信頼水準"""

    significance_threshold: float = 0.95
    """confident と判定する確信度の閾値"""

    log_level: str = "WARNING"
    """ログレベル"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数から設定を取得"""
        env_db_path = os.getenv("HLAB_DB_PATH")
        if env_db_path:
            self.db_path = env_db_path

        env_log_level = os.getenv("HLAB_LOG_LEVEL")
        if env_log_level:
            self.log_level = env_log_level

        if isinstance(self.log_level, str):
            self.log_level = self.log_level.upper()

    @classmethod
    def from_yaml(cls, path: str) -> "AppConfig":
        """YAMLファイルから設定を読み込む

        環境変数はファイルの値より優先される。

        Raises:
            ValueError: YAMLとして不正、ルートがオブジェクトでない、または未知のキーがある場合
        """
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"設定ファイルの解析に失敗しました: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("設定ファイルのルートはオブジェクトである必要があります")

        known = {f.name for f in fields(cls)}
        unknown = sorted(str(key) for key in set(data) - known)
        if unknown:
            raise ValueError(f"未知の設定キーがあります: {', '.join(unknown)}")

        return cls(**data)

    def validate(self) -> None:
        """設定値を検証

        Raises:
            ValueError: 値の型または範囲が無効な場合
        """
        # 型の確認は範囲の比較より先（YAMLの値は任意の型になりうる）
        for name in ("db_path", "log_level"):
            if not isinstance(getattr(self, name), str):
                raise ValueError(f"{name} は文字列である必要があります: {getattr(self, name)!r}")
        for name in ("busy_timeout_seconds", "confidence_level", "significance_threshold"):
            if not _is_number(getattr(self, name)):
                raise ValueError(f"{name} は数値である必要があります: {getattr(self, name)!r}")
        if isinstance(self.max_connections, bool) or not isinstance(self.max_connections, int):
            raise ValueError(
                f"max_connections は整数である必要があります: {self.max_connections!r}"
            )

        if not self.db_path:
            raise ValueError("db_path が設定されていません")

        if self.max_connections < 1:
            raise ValueError(
                f"max_connections は1以上である必要があります: {self.max_connections}"
            )

        if self.busy_timeout_seconds <= 0:
            raise ValueError(
                f"busy_timeout_seconds は正の数である必要があります: {self.busy_timeout_seconds}"
            )

        if not (0.0 < self.confidence_level < 1.0):
            raise ValueError(
                f"confidence_level は 0-1 の範囲（両端を含まない）である必要があります: "
                f"{self.confidence_level}"
            )

        if not (0.0 < self.significance_threshold < 1.0):
            raise ValueError(
                f"significance_threshold は 0-1 の範囲（両端を含まない）である必要があります: "
                f"{self.significance_threshold}"
            )

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"log_level は {', '.join(sorted(_LOG_LEVELS))} のいずれかです: {self.log_level}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
