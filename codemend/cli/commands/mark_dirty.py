import click

from codemend.cli.common import build_engine, db_url_option


@click.command('mark-dirty')
@click.argument('root', type=click.Path(exists=True, file_okay=False))
@click.argument('paths', nargs=-1, required=True)
@db_url_option
def mark_dirty(root, paths, db_url):
    """Force the next scan to re-detect PATHS (relative to ROOT)."""
    engine = build_engine(root, db_url)
    for path in paths:
        engine.mark_dirty(root, path)
    click.echo(f"Marked {len(paths)} file(s) dirty.")
