"""Rich console output for request results, streamed items and health checks."""

import json
import logging
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from llm_dispatch.models import ExtractionResult, RequestResult, StreamProgress

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _item_label(item: Any) -> str:
    if isinstance(item, dict) and isinstance(item.get("title"), str):
        return item["title"]
    return json.dumps(item, ensure_ascii=False)[:80]


def _usage_line(result: RequestResult) -> str:
    parts = [f"Role: {result.role}", f"Backend: {result.backend_id} ({result.model_id})"]
    if result.usage is not None:
        parts.append(f"Tokens: {result.usage.input_units} in / {result.usage.output_units} out")
        if result.usage.cost_unknown:
            parts.append("Cost: unknown")
        else:
            parts.append(f"Cost: {result.usage.total_cost:.6f} {result.usage.currency}")
    return " | ".join(parts)


def print_result(result: RequestResult) -> None:
    """Print a completed request's payload and its backend/usage summary."""
    console.print(Rule("[bold green]Result[/bold green]"))
    payload = result.payload
    if isinstance(payload, ExtractionResult):
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Item")
        for index, item in enumerate(payload.items, start=1):
            table.add_row(str(index), Text(_item_label(item)))
        console.print(table)
        if payload.used_fallback:
            console.print(Text("Some items were recovered from the full response.", style="yellow"))
        if payload.used_non_streaming:
            console.print(Text("Streaming failed; items came from a non-streaming call.", style="yellow"))
    elif isinstance(payload, str):
        console.print(Markdown(payload))
    else:
        console.print_json(json.dumps(payload, ensure_ascii=False, default=str))
    console.print(Text(_usage_line(result), style="dim"), soft_wrap=True)


def print_health(results: dict[str, tuple[bool, str]]) -> list[str]:
    """Print one line per role. Returns the failed role names."""
    failed: list[str] = []
    for role in sorted(results):
        ok, err = results[role]
        if ok:
            console.print(f"  [green]OK  [/green] {role}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {role}: {escape(short_err)}")
            failed.append(role)
    return failed


class StreamProgressDisplay:
    """Progress bar fed by the stream parser's per-item callback."""

    def __init__(self, expected_total: int, description: str = "Receiving items") -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self._task_id = self._progress.add_task(description, total=expected_total or None)

    def __enter__(self) -> "StreamProgressDisplay":
        self._progress.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._progress.stop()

    def on_progress(self, item: Any, progress: StreamProgress) -> None:
        self._progress.update(
            self._task_id,
            completed=progress.count,
            description=f"~{progress.estimated_units} tokens",
        )
        self._progress.print(Panel(Text(_item_label(item)), title=f"Item {progress.count}", border_style="dim"))
