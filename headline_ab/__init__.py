# headline-ab
"""
見出しA/Bテストのイベント取り込み・統計推論エンジン

- EventLedger: 重複排除付きのイベント台帳
- ExperimentRegistry: 実験定義の管理と自動作成
- IngestionGateway: 信頼できないイベント報告の受付
- stats.inference: 信頼区間と勝率の計算
"""

__version__ = "1.0.0"
