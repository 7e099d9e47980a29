#!/usr/bin/env python3
"""
headline-ab CLI メインエントリーポイント

実験の作成・結果確認・勝者宣言・イベントの取り込みをターミナルから行う。
"""

import copy
import logging
import sys
from typing import Optional

import click

from headline_ab import __version__
from headline_ab.cli.commands.experiment import (
    create_command,
    delete_command,
    list_command,
)
from headline_ab.cli.commands.export import export_command
from headline_ab.cli.commands.ingest import ingest_command, lookup_command
from headline_ab.cli.commands.results import results_command, winner_command
from headline_ab.cli.utils.output import EXIT_CLIENT_ERROR, exit_with_error
from headline_ab.config.app_config import AppConfig
from headline_ab.db.connection import DatabaseConnection
from headline_ab.errors import StorageUnavailableError
from headline_ab.ingestion.gateway import IngestionGateway
from headline_ab.registry.experiment_registry import ExperimentRegistry
from headline_ab.store.event_ledger import EventLedger

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.db: Optional[DatabaseConnection] = None
        self.registry: Optional[ExperimentRegistry] = None
        self.ledger: Optional[EventLedger] = None
        self.gateway: Optional[IngestionGateway] = None
        self._initialized = False

    def initialize(self):
        """遅延初期化（必要時に呼び出される）"""
        if self._initialized:
            return

        config = self.config or AppConfig()
        try:
            self.db = DatabaseConnection(
                config.db_path,
                busy_timeout_seconds=config.busy_timeout_seconds,
                max_connections=config.max_connections,
            )
            self.db.initialize()
        except StorageUnavailableError as e:
            exit_with_error(e)
        logger.debug(f"データベースを開きました: path={config.db_path}")

        self.registry = ExperimentRegistry(self.db)
        self.ledger = EventLedger(self.db)
        self.gateway = IngestionGateway(self.registry, self.ledger)
        self._initialized = True

    def close(self):
        if self.db is not None:
            self.db.close()


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)

# 起動時に登録するコマンド（main.py の一覧だけが登録元）
COMMANDS = [
    create_command,
    list_command,
    results_command,
    winner_command,
    export_command,
    delete_command,
    ingest_command,
    lookup_command,
]


def build_cli(config: Optional[AppConfig] = None) -> click.Group:
    """CLIグループを構築してコマンドを登録

    Args:
        config: 基準となる設定。Noneの場合は AppConfig() を使用。
    """

    @click.group()
    @click.version_option(version=__version__, prog_name="headline-ab")
    @click.option('--db', 'db_path', help='データベースファイルのパス')
    @click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
                  help='設定ファイル（YAML）')
    @click.option('--log-level',
                  type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
                  help='ログレベル')
    @click.pass_context
    def cli(click_ctx: click.Context, db_path: Optional[str], config_path: Optional[str],
            log_level: Optional[str]):
        """
        見出しA/Bテスト CLI

        実験の作成、結果の確認、勝者の宣言、イベントの取り込みを行えます。
        """
        ctx = click_ctx.ensure_object(CLIContext)

        try:
            if config_path:
                app_config = AppConfig.from_yaml(config_path)
            elif config is not None:
                app_config = copy.copy(config)
            else:
                app_config = AppConfig()

            if db_path:
                app_config.db_path = db_path
            if log_level:
                app_config.log_level = log_level.upper()
            app_config.validate()
        except (OSError, ValueError) as e:
            click.echo(f"[エラー] 設定の読み込みに失敗しました: {e}", err=True)
            sys.exit(EXIT_CLIENT_ERROR)

        logging.basicConfig(level=app_config.log_level, format=LOG_FORMAT)
        logging.getLogger("headline_ab").setLevel(app_config.log_level)

        ctx.config = app_config
        click_ctx.call_on_close(ctx.close)

    for register in COMMANDS:
        register(cli, pass_context)

    return cli


def main():
    build_cli()()


if __name__ == '__main__':
    main()
