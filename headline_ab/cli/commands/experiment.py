"""
実験の作成・一覧・削除コマンド実装
"""

import sys
from typing import List, Optional

import click

from headline_ab.cli.utils.output import (
    EXIT_CLIENT_ERROR,
    echo_json,
    echo_table,
    exit_with_error,
    format_number,
)
from headline_ab.errors import ExperimentError
from headline_ab.models.experiment import ExperimentSummary


def create_command(cli_group, pass_context):
    """create コマンドを CLI グループに追加"""

    @cli_group.command()
    @click.argument('name')
    @click.option('-v', '--variants', required=True, help='バリアント（カンマ区切り、2件以上）')
    @click.option('--weights', help='配分（カンマ区切り、合計1.0）')
    @click.option('--goal', 'conversion_goal', default='', help='コンバージョンの説明')
    @click.option('--url', help='対象ページのURL（完全一致）')
    @click.option('--target', help='見出し要素のCSSセレクタ')
    @click.option('--cta-target', help='CTA要素のCSSセレクタ')
    @click.option('--conversion-url', help='表示でコンバージョンとみなすURL')
    @pass_context
    def create(ctx, name: str, variants: str, weights: Optional[str], conversion_goal: str,
               url: Optional[str], target: Optional[str], cta_target: Optional[str],
               conversion_url: Optional[str]):
        """実験を作成する

        \b
        例:
          headline-ab create hero --variants "Ship Faster,Build Better"
          headline-ab create hero -v "A,B" --url "/" --target "h1" --cta-target "button.signup"
        """
        if cta_target and conversion_url:
            click.echo("[エラー] --cta-target と --conversion-url は同時に指定できません", err=True)
            sys.exit(EXIT_CLIENT_ERROR)

        variant_list = _split_csv(variants)
        weight_list = None
        if weights:
            try:
                weight_list = [float(w) for w in _split_csv(weights)]
            except ValueError:
                click.echo(f"[エラー] --weights は数値のカンマ区切りで指定してください: {weights}", err=True)
                sys.exit(EXIT_CLIENT_ERROR)

        ctx.initialize()

        try:
            experiment = ctx.registry.create(
                name,
                variant_list,
                weights=weight_list,
                conversion_goal=conversion_goal,
                url=url,
                target=target,
                cta_target=cta_target,
                conversion_url=conversion_url,
            )
        except ExperimentError as e:
            exit_with_error(e)

        click.echo(f"実験 '{experiment.name}' を作成しました（バリアント {experiment.variant_count}件）:")
        for i, label in enumerate(experiment.variants):
            weight = f"  ({experiment.weights[i]:.2f})" if experiment.weights else ""
            click.echo(f"  {i}: {label}{weight}")
        if experiment.url:
            click.echo(f"  URL: {experiment.url}")
        if experiment.target:
            click.echo(f"  Target: {experiment.target}")
        if experiment.cta_target:
            click.echo(f"  CTA Target: {experiment.cta_target}")
        if experiment.conversion_url:
            click.echo(f"  Conversion URL: {experiment.conversion_url}")


def list_command(cli_group, pass_context):
    """list コマンドを CLI グループに追加"""

    @cli_group.command(name='list')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']),
                  default='table', help='出力形式')
    @pass_context
    def list_experiments(ctx, output_format: str):
        """実験の一覧を表示する（新しい順）"""
        ctx.initialize()

        try:
            summaries = [
                ExperimentSummary(experiment=e, stats=ctx.ledger.aggregate(e.name))
                for e in ctx.registry.list_all()
            ]
        except ExperimentError as e:
            exit_with_error(e)

        if output_format == 'json':
            payload = []
            for summary in summaries:
                data = summary.experiment.to_dict()
                data["views"] = summary.total_views
                data["conversions"] = summary.total_conversions
                payload.append(data)
            echo_json(payload)
            return

        if not summaries:
            click.echo("実験はまだありません。")
            click.echo("\nヒント: 訪問者のイベントが届くと実験は自動作成されます。"
                       "headline-ab create でも作成できます")
            return

        headers = ["名前", "出所", "状態", "バリアント", "表示", "コンバージョン", "作成日"]
        rows = []
        for summary in summaries:
            experiment = summary.experiment
            source = experiment.provenance.value
            if experiment.has_conflict:
                source += " (!)"
            created = experiment.created_at.strftime("%Y-%m-%d") if experiment.created_at else "-"
            rows.append([
                experiment.name,
                source,
                experiment.state.value.upper(),
                experiment.variant_count,
                format_number(summary.total_views),
                format_number(summary.total_conversions),
                created,
            ])
        echo_table(headers, rows)


def delete_command(cli_group, pass_context):
    """delete コマンドを CLI グループに追加"""

    @cli_group.command()
    @click.argument('name')
    @click.option('--yes', is_flag=True, help='確認せずに削除')
    @pass_context
    def delete(ctx, name: str, yes: bool):
        """実験とそのイベントを削除する"""
        ctx.initialize()

        try:
            ctx.registry.get(name)
            if not yes and not click.confirm(f"実験 '{name}' とそのイベントを削除します。続行しますか？"):
                click.echo("削除をキャンセルしました")
                return
            ctx.registry.delete(name)
        except ExperimentError as e:
            exit_with_error(e)

        click.echo(f"実験 '{name}' を削除しました")


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",")]
