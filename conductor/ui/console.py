"""Terminal output for the conductor CLI.

Three renderings share one ``ConsoleManager`` API:

* Rich tables and panels on an interactive terminal,
* one JSON object per line when ``--json`` is given (results on stdout,
  stages, errors and progress on stderr),
* plain lines on stderr when stderr is not a terminal.
"""

from __future__ import annotations

import json
import logging
import math
import re
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Protocol

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

MAX_JSON_STRING = 500
MAX_JSON_DEPTH = 10

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_STATUS_STYLES = {
    "completed": "green",
    "complete": "green",
    "running": "blue",
    "starting": "blue",
    "pending": "white",
    "skipped": "yellow",
    "warning": "yellow",
    "retrying": "magenta",
    "failed": "red",
    "error": "red",
    "cancelled": "red",
}


def _styled(status: str) -> str:
    return f"[{_STATUS_STYLES.get(status, 'white')}]{status}[/]"


def json_safe(value: Any, depth: int = 0) -> Any:
    """Copy ``value`` into something ``json.dumps`` accepts.

    Strings lose control characters and are capped at ``MAX_JSON_STRING``;
    non-finite floats are clamped; unknown objects become their ``str``;
    anything nested deeper than ``MAX_JSON_DEPTH`` is replaced by a marker.
    """
    if depth > MAX_JSON_DEPTH:
        return "[TRUNCATED: nesting too deep]"
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value):
            return 0.0
        if math.isinf(value):
            return 1e308 if value > 0 else -1e308
        return value
    if isinstance(value, dict):
        return {str(key): json_safe(item, depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item, depth + 1) for item in value]

    text = _CONTROL_CHARS.sub("", value if isinstance(value, str) else str(value))
    if len(text) > MAX_JSON_STRING:
        text = text[: MAX_JSON_STRING - 3] + "..."
    return text


class ProgressTracker(Protocol):
    def update(self, completed: int, total: int | None = None, description: str | None = None) -> None: ...


class ConsoleManager:
    """Renders CLI output for the selected mode."""

    def __init__(self, verbose: bool = False, json_output: bool = False, console: Console | None = None):
        self.verbose = verbose
        self.json_output = json_output
        self.is_tty = sys.stderr.isatty()
        # Rich output and progress refreshes interleave from the worker thread
        self._lock = threading.RLock()
        self.console: Console | None = None if json_output else (console or Console(stderr=True))

    # ------------------------------------------------------------------ logging

    def setup_logging(self, logger: logging.Logger) -> None:
        """Route ``logger`` to the console; repeated calls add no handlers."""
        if self.json_output:
            wanted: type[logging.Handler] = logging.StreamHandler
        else:
            wanted = RichHandler

        if not any(isinstance(handler, wanted) for handler in logger.handlers):
            if self.json_output:
                handler: logging.Handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(logging.Formatter("%(message)s"))
            else:
                handler = RichHandler(
                    console=self.console, show_time=True, show_path=self.verbose, rich_tracebacks=True
                )
            logger.addHandler(handler)

        logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    # ----------------------------------------------------------------- progress

    @contextmanager
    def progress_context(self, description: str, total: int | None = None) -> Iterator[ProgressTracker]:
        """Progress bar on a terminal, JSON lines or 10% steps elsewhere."""
        if self.json_output:
            yield JsonProgressTracker(description)
            return
        if not self.is_tty or self.console is None:
            yield FallbackProgressTracker(description)
            return

        progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=self.console,
        )
        with self._lock:
            progress.start()
            task_id = progress.add_task(description, total=total or 100)
        try:
            yield RichProgressTracker(progress, task_id, self._lock)
        finally:
            with self._lock:
                progress.stop()

    # ------------------------------------------------------------------ records

    def print_stage(self, stage: str, status: str = "starting") -> None:
        if self.json_output:
            self._emit({"type": "stage", "stage": stage, "status": status})
        elif self.console is not None:
            self._print(Panel(f"[bold]{stage}[/bold]", style=_STATUS_STYLES.get(status, "white"), padding=(0, 1)))
        else:
            self._plain(f"[{status.upper()}] {stage}")

    def print_execution(self, execution: dict[str, Any]) -> None:
        """Show a finished run, as produced by ``ExecutionContext.to_dict()``."""
        if self.json_output:
            self._emit({"type": "execution", "execution": execution}, stream=sys.stdout)
            return

        steps: dict[str, dict[str, Any]] = execution.get("step_results", {})
        status = str(execution.get("status"))
        if self.console is None:
            self._plain(f"Execution {execution.get('execution_id')}: {status}")
            for step_id, result in steps.items():
                self._plain(f"  {step_id}: {result.get('status')}")
            return

        table = Table(title=f"Pipeline {execution.get('pipeline_id')} ({execution.get('execution_id')})")
        for header, options in (
            ("Step", {"style": "cyan"}),
            ("Status", {}),
            ("Retries", {"justify": "right"}),
            ("Duration", {"justify": "right"}),
            ("Error", {"style": "red"}),
        ):
            table.add_column(header, **options)
        for step_id, result in steps.items():
            duration = result.get("duration")
            table.add_row(
                step_id,
                _styled(str(result.get("status", "unknown"))),
                str(result.get("retry_count", 0)),
                "-" if duration is None else f"{duration:.2f}s",
                result.get("error") or "",
            )
        self._print(table)
        self._print(f"Status: {_styled(status)} in {execution.get('duration') or 0:.2f}s")

    def print_validation(self, pipeline_id: str, errors: list[str], waves: list[list[str]] | None) -> None:
        if self.json_output:
            self._emit(
                {"type": "validation", "pipeline_id": pipeline_id, "valid": not errors, "errors": errors, "waves": waves},
                stream=sys.stdout,
            )
            return

        if errors:
            lines = [f"[red]Pipeline {pipeline_id} is invalid:[/red]"] + [f"  [red]-[/red] {e}" for e in errors]
        else:
            lines = [f"[green]Pipeline {pipeline_id} is valid[/green]"]
            lines += [f"  wave {index}: {', '.join(wave)}" for index, wave in enumerate(waves or [])]
        for line in lines:
            if self.console is not None:
                self._print(line)
            else:
                self._plain(re.sub(r"\[/?\w+\]", "", line))

    def print_dead_letters(self, entries: Iterable[dict[str, Any]]) -> None:
        entries = list(entries)
        if self.json_output:
            self._emit({"type": "dead_letters", "entries": entries}, stream=sys.stdout)
            return
        if self.console is None:
            for entry in entries:
                self._plain(f"{entry['job_id']} ({entry['kind']}): {entry.get('reason')}")
            return

        table = Table(title=f"Dead letters ({len(entries)})")
        table.add_column("Job", style="cyan")
        table.add_column("Kind")
        table.add_column("Attempts", justify="right")
        table.add_column("Reason", style="red")
        table.add_column("Since")
        for entry in entries:
            since = datetime.fromtimestamp(entry["created_at"]).strftime("%Y-%m-%d %H:%M:%S")
            table.add_row(
                entry["job_id"], entry["kind"], str(entry.get("attempts_made", 0)), entry.get("reason", ""), since
            )
        self._print(table)

    def print_document(self, document: dict[str, Any]) -> None:
        """Write a generated pipeline document to stdout."""
        print(json.dumps(document, indent=2, default=str))

    def print_error(self, message: str) -> None:
        if self.json_output:
            self._emit({"type": "error", "message": message})
        elif self.console is not None:
            self._print(f"[red]ERROR: {message}[/red]")
        else:
            self._plain(f"ERROR: {message}")

    # ---------------------------------------------------------------- internals

    def _print(self, renderable: Any) -> None:
        with self._lock:
            self.console.print(renderable)

    def _plain(self, line: str) -> None:
        with self._lock:
            print(line, file=sys.stderr)

    def _emit(self, record: dict[str, Any], stream=None) -> None:
        line = json.dumps(json_safe({"timestamp": datetime.now().isoformat(), **record}))
        with self._lock:
            print(line, file=stream or sys.stderr)


class RichProgressTracker:
    def __init__(self, progress: Progress, task_id: Any, lock: threading.RLock):
        self.progress = progress
        self.task_id = task_id
        self._lock = lock

    def update(self, completed: int, total: int | None = None, description: str | None = None) -> None:
        changes: dict[str, Any] = {"completed": completed}
        if total is not None:
            changes["total"] = total
        if description is not None:
            changes["description"] = description
        with self._lock:
            self.progress.update(self.task_id, **changes)


class JsonProgressTracker:
    """Writes one ``progress`` record per update to stderr."""

    def __init__(self, description: str):
        self.description = description
        self.started = time.monotonic()
        self._lock = threading.Lock()

    def update(self, completed: int, total: int | None = None, description: str | None = None) -> None:
        total = max(1, total or 100)
        completed = max(0, min(completed or 0, total))
        record = json.dumps(
            {
                "timestamp": datetime.now().isoformat(),
                "type": "progress",
                "stage": (description or self.description)[:200],
                "completed": completed,
                "total": total,
                "percentage": round(completed / total * 100, 1),
                "elapsed": round(time.monotonic() - self.started, 3),
            }
        )
        with self._lock:
            print(record, file=sys.stderr)


class FallbackProgressTracker:
    """Prints a line whenever progress moves by 10% or reaches the end."""

    def __init__(self, description: str):
        self.description = description
        self._last = -100.0
        self._lock = threading.Lock()

    def update(self, completed: int, total: int | None = None, description: str | None = None) -> None:
        percentage = completed / (total or 100) * 100
        with self._lock:
            if percentage - self._last < 10 and percentage < 100:
                return
            self._last = percentage
        print(f"{description or self.description}: {percentage:.0f}% complete", file=sys.stderr)
