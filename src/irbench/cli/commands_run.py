"""`irbench` run command."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Annotated, Literal

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
import tyro

from irbench.config.loader import load_bench_config
from irbench.errors import ConfigurationError, ResolutionError, StageExecutionError
from irbench.observability.logging import configure_logging, get_logger, log_event
from irbench.pipeline.dag import BUILD_STAGE, StageGraph, build_stage_graph
from irbench.pipeline.driver import (
    HaltPolicy,
    RunReport,
    prepare_graph,
    render_stage_lines,
    run_pipeline,
)
from irbench.pipeline.stage import StageKind, StageOutcome, StageStatus
from irbench.source.resolver import ResolvedExecutables, resolve_source
from irbench.storage.reports import write_report
from irbench.version import __version__


EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_CONFIGURATION = 2
EXIT_RESOLUTION = 3

_LOGGER = get_logger("irbench.cli")

_STATUS_STYLE = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "bold red",
    StageStatus.SKIPPED: "yellow",
    StageStatus.BLOCKED: "magenta",
}


@dataclass(slots=True)
class RunCommand:
    """Build indexes and evaluate runs described by a YAML configuration."""

    config_file: Path | None = None  # Configuration file path.
    suppress: tuple[str, ...] = ()  # Stage names to skip; the flag may be repeated.
    collections: tuple[str, ...] = ()  # Restrict the run to these collections; repeatable.
    print_stages: bool = False  # Print the stages and exit.
    with_dependencies: bool = False
    on_failure: Literal["stop", "continue"] = "stop"
    scorer: bool = True  # Pass `--scorer bm25` to the query evaluator.
    report_file: Path | None = None  # Write the run report as JSON.
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    version: Annotated[bool, tyro.conf.arg(aliases=("-V",))] = False


def _render_summary(console: Console, graph: StageGraph, report: RunReport) -> None:
    table = Table(title="irbench run")
    table.add_column("stage")
    table.add_column("status")
    table.add_column("seconds", justify="right")
    table.add_column("detail")
    for outcome in report.outcomes:
        table.add_row(
            outcome.stage,
            Text(outcome.status.value, style=_STATUS_STYLE[outcome.status]),
            f"{outcome.duration_sec:.1f}",
            outcome.message,
        )
    console.print(table)

    for outcome in report.outcomes:
        if outcome.status is not StageStatus.SUCCEEDED or not outcome.output:
            continue
        if graph.get(outcome.stage).kind is StageKind.EVALUATE:
            console.print(Panel(Text(outcome.output), title=outcome.stage))


def _render_failure(console: Console, outcome: StageOutcome) -> None:
    console.print(Text(f"stage {outcome.stage} failed: {outcome.message}", style="bold red"))
    if outcome.command:
        console.print(Text(f"command: {outcome.command}"))
    if outcome.output:
        console.print(Panel(Text(outcome.output), title="captured output"))


def _print_stages(command: RunCommand, graph: StageGraph) -> None:
    graph, active = prepare_graph(
        graph,
        suppressed=command.suppress,
        collections=command.collections or None,
    )
    for line in render_stage_lines(graph, active, with_dependencies=command.with_dependencies):
        print(line)


def execute(command: RunCommand) -> int:
    configure_logging(command.log_level)
    console = Console()
    err_console = Console(stderr=True)

    if command.version:
        print(f"irbench {__version__}")
        return EXIT_OK
    if command.config_file is None:
        err_console.print(Text("error: --config-file is required", style="bold red"))
        return EXIT_CONFIGURATION

    try:
        config = load_bench_config(command.config_file)
        if command.print_stages:
            graph = build_stage_graph(
                config,
                ResolvedExecutables.unresolved(),
                use_scorer=command.scorer,
            )
            _print_stages(command, graph)
            return EXIT_OK

        config.workdir.mkdir(parents=True, exist_ok=True)
        executables = resolve_source(
            config.source,
            config.workdir,
            compile_source=BUILD_STAGE not in command.suppress,
        )
        graph = build_stage_graph(config, executables, use_scorer=command.scorer)
    except ConfigurationError as exc:
        log_event(_LOGGER, "configuration_error", level=logging.ERROR, error=str(exc))
        err_console.print(Text(f"configuration error: {exc}", style="bold red"))
        return EXIT_CONFIGURATION
    except ResolutionError as exc:
        log_event(
            _LOGGER,
            "resolution_error",
            level=logging.ERROR,
            error=f"{type(exc).__name__}: {exc}",
        )
        err_console.print(Text(f"{type(exc).__name__}: {exc}", style="bold red"))
        if exc.command:
            err_console.print(Text(f"command: {' '.join(exc.command)}"))
        if exc.output:
            err_console.print(Panel(Text(exc.output), title="captured output"))
        return EXIT_RESOLUTION

    exit_code = EXIT_OK
    try:
        report = run_pipeline(
            graph,
            suppressed=command.suppress,
            collections=command.collections or None,
            halt_policy=HaltPolicy(command.on_failure),
            raise_on_error=True,
        )
    except StageExecutionError as exc:
        report = exc.report
        exit_code = EXIT_STAGE_FAILED

    _render_summary(console, graph, report)
    for failure in report.failures:
        _render_failure(err_console, failure)
    if command.report_file is not None:
        write_report(command.report_file, report, config_file=command.config_file)
    return exit_code
