import click

from codemend.cli.common import build_engine, db_url_option, root_option
from codemend.errors import DataStoreFailure
from codemend.models import ReviewDecision


@click.command('review')
@click.argument('issue_id')
@click.argument('decision', type=click.Choice([d.value for d in ReviewDecision]))
@root_option
@db_url_option
def review(issue_id, decision, root, db_url):
    """Approve, reject or defer an issue waiting for review."""
    service = build_engine(root, db_url).review_service(root)
    try:
        outcome = service.decide(issue_id, decision)
    except DataStoreFailure as e:
        raise click.ClickException(str(e))

    message = f"Issue {issue_id}: {decision} -> {outcome.issue.state.value}"
    if outcome.apply_result is not None:
        message += f" ({outcome.apply_result.status})"
        if outcome.apply_result.detail:
            message += f": {outcome.apply_result.detail}"
    click.echo(message)
