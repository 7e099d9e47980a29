# DB モジュール
from headline_ab.db.connection import DatabaseConnection

__all__ = [
    "DatabaseConnection",
]
