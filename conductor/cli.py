"""Command line interface for validating, running and inspecting pipelines."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from . import __version__
from .config import Config, get_config
from .exceptions import ConductorError
from .monitoring.dead_letter import SQLiteDeadLetterStore
from .orchestration.parser import create_sample_pipeline, load_pipeline
from .orchestration.state_manager import InMemoryStateManager, PersistentStateManager
from .orchestration.workflow_engine.core import EngineConfig, WorkflowEngine
from .orchestration.workflow_engine.events import EventBus, EventType, WorkflowEvent
from .orchestration.workflow_engine.steps import ExecutionMode, WorkflowStatus
from .providers import ProviderRegistry, builtin_providers
from .ui.console import ConsoleManager
from .utils.logging_factory import LoggingFactory

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Declarative pipeline orchestration: validate, run and inspect pipelines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  # Check a pipeline definition without running it
  conductor validate pipeline.yaml

  # Run a pipeline with run variables
  conductor run pipeline.yaml --var topic=robots --var duration=5

  # Run one step at a time
  conductor run pipeline.json --sequential

  # Generate a sample pipeline document
  conductor sample "solar power" --output solar.yaml

  # Inspect or purge dead-lettered jobs
  conductor dead-letters --db ./data/dead_letters.db
  conductor dead-letters --db ./data/dead_letters.db --purge

Built-in providers:
  echo   - Returns its inputs merged with config.outputs
  sleep  - Waits for inputs.seconds and reports it
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json",
        "--json-output",
        dest="json_output",
        action="store_true",
        help="Emit machine-readable JSON to stdout/stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a pipeline definition")
    validate_parser.add_argument("pipeline", help="Pipeline file (JSON or YAML)")

    run_parser = subparsers.add_parser("run", help="Run a pipeline to completion")
    run_parser.add_argument("pipeline", help="Pipeline file (JSON or YAML)")
    run_parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Run variable (repeatable); values are parsed as YAML scalars",
    )
    run_parser.add_argument("--sequential", action="store_true", help="Run steps of a wave one at a time")
    run_parser.add_argument("--max-concurrency", type=int, help="Maximum steps running at once")
    run_parser.add_argument("--state-db", type=Path, help="SQLite file for execution records")

    sample_parser = subparsers.add_parser("sample", help="Print a sample content pipeline")
    sample_parser.add_argument("topic", help="Topic of the sample pipeline")
    sample_parser.add_argument("--output", "-o", type=Path, help="Write to file (.json, .yaml or .yml)")

    dead_parser = subparsers.add_parser("dead-letters", help="List or purge dead-lettered jobs")
    dead_parser.add_argument("--db", type=Path, required=True, help="Dead-letter SQLite database")
    dead_parser.add_argument("--limit", type=int, default=50, help="Maximum entries to list")
    dead_parser.add_argument("--purge", action="store_true", help="Delete all entries")

    return parser


def parse_variables(pairs: List[str]) -> Dict[str, Any]:
    """Parse ``KEY=VALUE`` pairs; values go through ``yaml.safe_load``.

    Raises:
        ValueError: If a pair has no ``=`` or an empty key
    """
    variables: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid variable '{pair}'. Expected KEY=VALUE")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        variables[key.strip()] = value
    return variables


def build_registry(config: Config) -> ProviderRegistry:
    """Registry with the built-in providers, honouring disabled providers."""
    registry = ProviderRegistry()
    for provider in builtin_providers():
        registry.register(provider)
    for name in config.disabled_providers:
        if registry.has(name):
            registry.disable(name)
    return registry


def build_engine(args: argparse.Namespace, config: Config, event_bus: EventBus) -> WorkflowEngine:
    engine_config = config.engine_config()
    if getattr(args, "sequential", False):
        engine_config = EngineConfig(ExecutionMode.SEQUENTIAL, engine_config.max_concurrency)
    if getattr(args, "max_concurrency", None):
        engine_config = EngineConfig(engine_config.execution_mode, args.max_concurrency)

    state_db = getattr(args, "state_db", None) or config.state_db
    state_manager = PersistentStateManager(state_db) if state_db else InMemoryStateManager(config.state_max_records)
    return WorkflowEngine(
        build_registry(config), config=engine_config, event_bus=event_bus, state_manager=state_manager
    )


def validate_command(args: argparse.Namespace, config: Config, console_manager: ConsoleManager) -> int:
    """Handle the validate subcommand.

    Returns:
        Exit code (0 when the pipeline is valid)
    """
    pipeline = load_pipeline(Path(args.pipeline))
    engine = build_engine(args, config, EventBus())
    report = engine.validate_workflow(pipeline)
    console_manager.print_validation(pipeline.id, report.errors, report.plan.waves if report.plan else None)
    return 0 if report.valid else 1


async def _run_pipeline(args: argparse.Namespace, config: Config, console_manager: ConsoleManager) -> int:
    pipeline = load_pipeline(Path(args.pipeline))
    variables = parse_variables(args.var)
    event_bus = EventBus()
    engine = build_engine(args, config, event_bus)

    console_manager.print_stage(f"Pipeline: {pipeline.name}", "starting")
    with console_manager.progress_context(pipeline.name, total=100) as tracker:

        def on_progress(event: WorkflowEvent) -> None:
            current = event.data.get("current_step")
            tracker.update(event.data.get("progress", 0), 100, f"{pipeline.name}: {current}" if current else None)

        event_bus.subscribe(EventType.WORKFLOW_PROGRESS, on_progress)
        context = await engine.execute_workflow(pipeline, variables)

    console_manager.print_execution(context.to_dict())
    succeeded = context.status == WorkflowStatus.COMPLETED
    console_manager.print_stage(f"Pipeline: {pipeline.name}", "complete" if succeeded else "error")
    return 0 if succeeded else 1


def run_command(args: argparse.Namespace, config: Config, console_manager: ConsoleManager) -> int:
    """Handle the run subcommand.

    Returns:
        Exit code (0 when the pipeline completed)
    """
    return asyncio.run(_run_pipeline(args, config, console_manager))


def sample_command(args: argparse.Namespace, config: Config, console_manager: ConsoleManager) -> int:
    """Handle the sample subcommand."""
    document = create_sample_pipeline(args.topic).model_dump(mode="json", by_alias=True, exclude_none=True)
    if args.output is None:
        console_manager.print_document(document)
        return 0

    if args.output.suffix.lower() in (".yaml", ".yml"):
        text = yaml.safe_dump(document, sort_keys=False)
    else:
        text = json.dumps(document, indent=2)
    args.output.write_text(text, encoding="utf-8")
    logger.info(f"Sample pipeline written to {args.output}")
    return 0


def dead_letters_command(args: argparse.Namespace, config: Config, console_manager: ConsoleManager) -> int:
    """Handle the dead-letters subcommand."""
    store = SQLiteDeadLetterStore(args.db)
    try:
        if args.purge:
            count = store.purge()
            logger.info(f"Purged {count} dead letter(s) from {args.db}")
            return 0
        console_manager.print_dead_letters(e.to_dict() for e in store.list_entries(args.limit))
        return 0
    finally:
        store.close()


COMMANDS = {
    "validate": validate_command,
    "run": run_command,
    "sample": sample_command,
    "dead-letters": dead_letters_command,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    config = get_config()
    verbose = args.verbose or config.verbose
    json_output = args.json_output or config.json_output

    LoggingFactory.initialize(
        log_dir=config.log_dir,
        level=logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO),
        format_string=config.log_format,
        log_to_file=config.log_to_file,
        log_to_console=False,
    )
    console_manager = ConsoleManager(verbose=verbose, json_output=json_output)
    console_manager.setup_logging(logging.getLogger("conductor"))
    LoggingFactory.configure_verbose(verbose)

    try:
        config.validate()
        return COMMANDS[args.command](args, config, console_manager)
    except (ConductorError, ValueError) as e:
        message = e.message if isinstance(e, ConductorError) else str(e)
        console_manager.print_error(message)
        if isinstance(e, ConductorError) and getattr(e, "errors", None) and len(e.errors) > 1:
            for error in e.errors[1:]:
                console_manager.print_error(error)
        return 1
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
