# Config モジュール
from headline_ab.config.app_config import AppConfig

__all__ = [
    "AppConfig",
]
