import json

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

console = Console()

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "green",
}


def format_table(data, columns, title=None):
    """Formats data into a rich table."""
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in data:
        table.add_row(*[str(item) for item in row])
    return table


def format_json(data, pretty=True):
    """Formats data as a JSON string."""
    if pretty:
        return json.dumps(data, indent=2, default=str)
    else:
        return json.dumps(data, separators=(',', ':'), default=str)


def colorize_severity(severity: str) -> str:
    style = SEVERITY_STYLES.get(severity, "white")
    return f"[{style}]{severity}[/{style}]"


def highlight_diff(diff: str):
    """Highlights a unified diff using rich."""
    return Syntax(diff, "diff", theme="monokai", line_numbers=False)
