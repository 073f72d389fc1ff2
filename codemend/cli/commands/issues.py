import click

from codemend.cli.common import build_engine, db_url_option, root_option
from codemend.cli.formatter import colorize_severity, console, format_json, format_table, highlight_diff
from codemend.errors import DataStoreFailure
from codemend.models import IssueState


@click.command('issues')
@root_option
@click.option('--file', 'file_path', help='Only issues of this file (relative to the root).')
@click.option('--state', 'states', multiple=True, type=click.Choice([s.value for s in IssueState]), help='Filter by state. Repeatable.')
@click.option('--json', 'as_json', is_flag=True, help='Print issues as JSON.')
@db_url_option
def issues(root, file_path, states, as_json, db_url):
    """List tracked issues."""
    service = build_engine(root, db_url).review_service(root)
    found = service.list_issues(file_path=file_path, states=[IssueState(s) for s in states] if states else None)

    if as_json:
        click.echo(format_json([i.model_dump(mode='json', exclude={'attempts'}) for i in found]))
        return
    if not found:
        click.echo("No issues found.")
        return
    rows = [
        (i.id, f"{i.file_path}:{i.line}", i.rule_id, colorize_severity(i.severity.value), i.state.value, len(i.attempts))
        for i in found
    ]
    console.print(format_table(rows, ['ID', 'Location', 'Rule', 'Severity', 'State', 'Attempts'], title="Issues"))


@click.command('history')
@click.argument('issue_id')
@root_option
@click.option('--diff', 'show_diff', is_flag=True, help='Show the diff of every attempt that carried a patch.')
@db_url_option
def history(issue_id, root, show_diff, db_url):
    """Show the ordered fix attempts of ISSUE_ID."""
    service = build_engine(root, db_url).review_service(root)
    try:
        attempts = service.get_history(issue_id)
    except DataStoreFailure as e:
        raise click.ClickException(str(e))

    rows = [
        (
            a.sequence,
            a.strategy,
            a.outcome.value,
            f"{a.raw_confidence:.2f}",
            f"{a.calibrated_confidence:.2f}",
            "yes" if a.applied else "",
            a.error or "",
        )
        for a in attempts
    ]
    console.print(
        format_table(rows, ['#', 'Strategy', 'Outcome', 'Raw', 'Calibrated', 'Applied', 'Error'], title=f"Issue {issue_id}")
    )
    if show_diff:
        for attempt in attempts:
            if attempt.diff:
                console.print(f"[bold]#{attempt.sequence} {attempt.strategy}[/bold]")
                console.print(highlight_diff(attempt.diff))
