from typing import Optional

import click

from codemend.config.defaults import CodemendConfig
from codemend.config.loader import load_config
from codemend.engine import RemediationEngine


def load_project_config(root: str, db_url: Optional[str] = None) -> CodemendConfig:
    try:
        config = load_config(root)
    except ValueError as e:
        raise click.ClickException(str(e))
    if db_url:
        config.storage.db_url = db_url
    return config


def build_engine(root: str, db_url: Optional[str] = None) -> RemediationEngine:
    return RemediationEngine(load_project_config(root, db_url))


def root_option(fn):
    return click.option(
        '--root',
        type=click.Path(exists=True, file_okay=False),
        default='.',
        show_default=True,
        help='Project root the issues belong to.',
    )(fn)


def db_url_option(fn):
    return click.option('--db-url', help='SQLAlchemy URL of the issue store. Defaults to <root>/.codemend/codemend.db.')(fn)
