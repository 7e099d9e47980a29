"""
イベント取り込み・URL検索コマンド実装
"""

import json
import sys
from typing import Optional

import click

from headline_ab.cli.utils.output import EXIT_CLIENT_ERROR, echo_json, exit_with_error
from headline_ab.errors import ExperimentError


def ingest_command(cli_group, pass_context):
    """ingest コマンドを CLI グループに追加"""

    @cli_group.command()
    @click.argument('payload', required=False)
    @pass_context
    def ingest(ctx, payload: Optional[str]):
        """イベント報告（JSON）を1件取り込む

        PAYLOAD を省略するか "-" を指定すると標準入力から読み込みます。

        \b
        例:
          headline-ab ingest '{"t": "hero", "v": 0, "e": "view", "vid": "abc", "variants": ["A", "B"]}'
          echo '{"t": "hero", "v": 1, "e": "convert", "vid": "abc"}' | headline-ab ingest
        """
        if payload is None or payload == "-":
            payload = click.get_text_stream("stdin").read()

        try:
            data = json.loads(payload)
        except ValueError as e:
            click.echo(f"[エラー] JSONの解析に失敗しました: {e}", err=True)
            sys.exit(EXIT_CLIENT_ERROR)

        ctx.initialize()

        try:
            outcome = ctx.gateway.ingest_payload(data)
        except ExperimentError as e:
            exit_with_error(e)

        if outcome.experiment_created:
            click.echo(f"実験 '{outcome.experiment.name}' を自動作成しました")
        if outcome.conflict_recorded:
            click.echo(f"⚠ 実験 '{outcome.experiment.name}' の出所の衝突を記録しました", err=True)
        if outcome.event_recorded:
            click.echo("イベントを記録しました")
        else:
            click.echo("重複イベントのため記録をスキップしました")


def lookup_command(cli_group, pass_context):
    """lookup コマンドを CLI グループに追加"""

    @cli_group.command()
    @click.argument('url')
    @pass_context
    def lookup(ctx, url: str):
        """URLに一致する実行中の実験をJSONで表示する"""
        ctx.initialize()

        try:
            experiments = ctx.gateway.lookup_by_url(url)
        except ExperimentError as e:
            exit_with_error(e)

        echo_json(experiments)
