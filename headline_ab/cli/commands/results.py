"""
結果表示・勝者宣言コマンド実装
"""

import click

from headline_ab.cli.utils.output import (
    echo_json,
    echo_table,
    exit_with_error,
    format_number,
    format_percent,
)
from headline_ab.errors import ExperimentError
from headline_ab.stats.inference import analyze

# この確信度以上なら「有意ではないが上回っている」と表示する
SUGGESTIVE_CONFIDENCE = 0.90

_MAX_LABEL_WIDTH = 16


def results_command(cli_group, pass_context):
    """results コマンドを CLI グループに追加"""

    @cli_group.command()
    @click.argument('name')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']),
                  default='table', help='出力形式')
    @pass_context
    def results(ctx, name: str, output_format: str):
        """実験の結果（コンバージョン率と信頼区間）を表示する"""
        ctx.initialize()

        try:
            experiment = ctx.registry.get(name)
            stats = ctx.ledger.aggregate(name)
        except ExperimentError as e:
            exit_with_error(e)

        result = analyze(
            experiment,
            stats,
            threshold=ctx.config.significance_threshold,
            confidence=ctx.config.confidence_level,
        )

        if output_format == 'json':
            data = result.to_dict()
            data["experiment"] = experiment.to_dict()
            echo_json(data)
            return

        click.echo(f"実験: {experiment.name}")
        click.echo(f"状態: {experiment.state.value}")
        if experiment.conversion_goal:
            click.echo(f"目標: {experiment.conversion_goal}")
        if experiment.winner_variant is not None:
            click.echo(f"勝者: {experiment.winner_variant}")
        if experiment.created_at:
            click.echo(f"作成日: {experiment.created_at.strftime('%Y-%m-%d')}")
        click.echo("")

        ci_label = f"{ctx.config.confidence_level * 100:g}% CI"
        headers = ["バリアント", "表示", "コンバージョン", "率", ci_label, ""]
        rows = []
        for variant in result.variants:
            label = variant.name
            if len(label) > _MAX_LABEL_WIDTH:
                label = label[:_MAX_LABEL_WIDTH - 3] + "..."
            ci = "N/A"
            if variant.views > 0:
                ci = f"[{variant.ci_lower * 100:.1f}%, {variant.ci_upper * 100:.1f}%]"
            indicator = "← LEADING" if variant.index == result.leading_variant else ""
            rows.append([
                label,
                format_number(variant.views),
                format_number(variant.conversions),
                format_percent(variant.rate),
                ci,
                indicator,
            ])
        echo_table(headers, rows)
        click.echo("")

        leading_name = result.variants[result.leading_variant].name
        confidence_pct = result.confidence_level * 100
        if result.confident:
            click.echo(f"有意性: {confidence_pct:.1f}% の確信度で \"{leading_name}\" が勝者です")
        elif result.confidence_level >= SUGGESTIVE_CONFIDENCE:
            click.echo(
                f"有意性: {confidence_pct:.1f}% の確信度で \"{leading_name}\" がコントロールを"
                f"上回っています（まだ有意ではありません）"
            )
        else:
            click.echo("有意性: 勝者を判断するにはデータが不足しています")


def winner_command(cli_group, pass_context):
    """winner コマンドを CLI グループに追加"""

    @cli_group.command()
    @click.argument('name')
    @click.option('-v', '--variant', 'variant_index', type=int, required=True,
                  help='勝者バリアント番号')
    @pass_context
    def winner(ctx, name: str, variant_index: int):
        """勝者を宣言して実験を完了させる"""
        ctx.initialize()

        try:
            experiment = ctx.registry.set_winner(name, variant_index)
        except ExperimentError as e:
            exit_with_error(e)

        click.echo(
            f"実験 '{name}' の勝者を宣言しました: バリアント {variant_index} "
            f"(\"{experiment.variants[variant_index]}\")"
        )
        click.echo("実験は完了状態になりました。")
