"""
イベントエクスポートコマンド実装
"""

import click

from headline_ab.cli.utils.output import exit_with_error
from headline_ab.errors import ExperimentError
from headline_ab.store.event_ledger import events_to_csv, events_to_json


def export_command(cli_group, pass_context):
    """export コマンドを CLI グループに追加"""

    @cli_group.command()
    @click.argument('name')
    @click.option('-f', '--format', 'output_format', type=click.Choice(['csv', 'json']),
                  default='csv', help='出力形式')
    @pass_context
    def export(ctx, name: str, output_format: str):
        """生イベントをCSVまたはJSONで出力する

        \b
        例:
          headline-ab export hero --format csv > hero-data.csv
          headline-ab export hero --format json > hero-data.json
        """
        ctx.initialize()

        try:
            ctx.registry.get(name)
            events = ctx.ledger.list_events(name)
        except ExperimentError as e:
            exit_with_error(e)

        if output_format == 'json':
            click.echo(events_to_json(events))
        else:
            click.echo(events_to_csv(events), nl=False)
