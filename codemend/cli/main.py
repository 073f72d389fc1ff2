import click

from codemend import __version__
from codemend.utils.logging import setup_logging

from .commands.issues import history, issues
from .commands.mark_dirty import mark_dirty
from .commands.review import review
from .commands.scan import scan


@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option('--log-level', default='INFO', show_default=True, help='Log level.')
@click.option('--json-logs', is_flag=True, help='Emit logs as JSON lines.')
@click.version_option(version=__version__)
def main(log_level, json_logs):
    """
    codemend: finds defects in a source tree and fixes them with validated patches.
    """
    setup_logging(log_level, json_logs)


main.add_command(scan)
main.add_command(issues)
main.add_command(history)
main.add_command(review)
main.add_command(mark_dirty)

if __name__ == '__main__':
    main()
