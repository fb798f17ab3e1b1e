import json
import os
from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBSYNC_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_record(kind: str, data: Dict[str, Any], fields: Sequence[str]) -> None:
    """Print one record.
    - plain: '<Kind> <id>: field=value, ...'
    - json: the full record as a JSON object
    - rich: a panel with one line per field
    """
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{f}:[/] {data.get(f)}" for f in fields)
        _console.print(Panel.fit(content, title=f"{kind} {data.get('id', '')}", border_style="blue"))
    else:
        details = ", ".join(f"{f}={data.get(f)}" for f in fields)
        print(f"{kind} {data.get('id', '')}: {details}")


def print_records(title: str, rows: List[Dict[str, Any]], fields: Sequence[str]) -> None:
    mode = get_output_mode()

    if not rows:
        print(f"No {title.lower()} found.")
        return

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for f in fields:
            table.add_column(f, style="white")
        for row in rows:
            table.add_row(*(str(row.get(f, "")) for f in fields))
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join(str(row.get(f, "")) for f in fields))
