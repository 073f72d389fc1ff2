import asyncio

import click
from pydantic import ValidationError

from codemend.cli.common import build_engine, db_url_option
from codemend.cli.formatter import console, format_json, format_table
from codemend.config.remediation import STRATEGY_ORDER, ScanOptions
from codemend.models import Severity


@click.command('scan')
@click.argument('root', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--concurrency', '-j', type=int, help='Worker pool size.')
@click.option('--no-auto-apply', is_flag=True, help='Hold every validated fix for review.')
@click.option('--severity-floor', type=click.Choice([s.value for s in Severity]), help='Only remediate issues at or above this severity.')
@click.option('--strategy', 'strategies', multiple=True, type=click.Choice(STRATEGY_ORDER), help='Enable only these strategies. Repeatable.')
@click.option('--json', 'as_json', is_flag=True, help='Print the batch report as JSON.')
@db_url_option
@click.pass_context
def scan(ctx, root, concurrency, no_auto_apply, severity_floor, strategies, as_json, db_url):
    """
    Scan ROOT, remediate what is found and print the batch report.
    """
    engine = build_engine(root, db_url)

    overrides = {}
    if concurrency is not None:
        overrides['concurrency'] = concurrency
    if no_auto_apply:
        overrides['auto_apply'] = False
    if severity_floor:
        overrides['severity_floor'] = severity_floor
    if strategies:
        overrides['strategies'] = list(strategies)
    try:
        options = ScanOptions.model_validate({**engine.config.scan.model_dump(), **overrides})
    except ValidationError as e:
        raise click.BadParameter(str(e))

    report = asyncio.run(engine.run(root, options))

    if as_json:
        click.echo(format_json(report.model_dump(mode='json')))
    else:
        rows = [(key, value) for key, value in report.summary().items() if key not in ('project', 'root')]
        console.print(format_table(rows, ['Metric', 'Value'], title=f"codemend: {report.project}"))
        for error in report.errors:
            click.echo(f"Error: {error}", err=True)

    if report.store_failures:
        ctx.exit(1)
