"""Walk a stage graph, applying suppression and selection, and report."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Iterable

from irbench.errors import StageExecutionError
from irbench.observability.logging import get_logger, log_event
from irbench.pipeline.dag import StageGraph
from irbench.pipeline.executor import CommandRunner, LineSink, execute_stage, run_subprocess
from irbench.pipeline.stage import StageOutcome, StageStatus


_LOGGER = get_logger("irbench.driver")


class HaltPolicy(str, Enum):
    """What to do with the rest of the graph after a stage fails."""

    STOP_ALL = "stop"
    CONTINUE_INDEPENDENT = "continue"


@dataclass(slots=True)
class RunReport:
    """Per-stage outcomes in walk order."""

    outcomes: list[StageOutcome] = field(default_factory=list)
    halt_policy: HaltPolicy = HaltPolicy.STOP_ALL
    halted_at: str | None = None
    duration_sec: float = 0.0

    @property
    def succeeded(self) -> bool:
        return all(outcome.status is not StageStatus.FAILED for outcome in self.outcomes)

    @property
    def failures(self) -> list[StageOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is StageStatus.FAILED]

    def outcome(self, stage_name: str) -> StageOutcome:
        for outcome in self.outcomes:
            if outcome.stage == stage_name:
                return outcome
        raise KeyError(stage_name)

    def statuses(self) -> dict[str, str]:
        return {outcome.stage: outcome.status.value for outcome in self.outcomes}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "SUCCEEDED" if self.succeeded else "FAILED",
            "halt_policy": self.halt_policy.value,
            "halted_at": self.halted_at,
            "duration_sec": round(self.duration_sec, 6),
            "stages": [outcome.to_dict() for outcome in self.outcomes],
        }


def prepare_graph(
    graph: StageGraph,
    *,
    suppressed: Iterable[str] = (),
    collections: Iterable[str] | None = None,
) -> tuple[StageGraph, set[str]]:
    """Apply the collection filter and validate suppressed names.

    Unknown names in either filter are reported and otherwise ignored.
    Returns the pruned graph and the suppressed names that exist in it.
    """

    if collections is not None:
        wanted = list(collections)
        known = {stage.collection for stage in graph if stage.collection is not None}
        for name in wanted:
            if name not in known:
                log_event(
                    _LOGGER,
                    "unknown_collection_filter",
                    level=logging.WARNING,
                    collection=name,
                )
        graph = graph.select_collections(wanted)

    active: set[str] = set()
    for name in suppressed:
        if name in graph:
            active.add(name)
        else:
            log_event(_LOGGER, "unknown_suppression", level=logging.WARNING, stage=name)
    return graph, active


def render_stage_lines(
    graph: StageGraph,
    suppressed: Iterable[str] = (),
    *,
    with_dependencies: bool = False,
) -> list[str]:
    """Describe the graph one stage per line, in walk order."""

    skipped = set(suppressed)
    lines: list[str] = []
    for stage in graph.walk_order():
        line = stage.name
        if stage.name in skipped:
            line += " (suppressed)"
        if with_dependencies and stage.depends_on:
            line += " <- " + ", ".join(stage.depends_on)
        lines.append(line)
    return lines


def run_pipeline(
    graph: StageGraph,
    *,
    suppressed: Iterable[str] = (),
    collections: Iterable[str] | None = None,
    halt_policy: HaltPolicy = HaltPolicy.STOP_ALL,
    runner: CommandRunner = run_subprocess,
    on_line: LineSink | None = None,
    raise_on_error: bool = False,
) -> RunReport:
    """Execute the graph sequentially and collect a RunReport.

    Suppressed stages are reported as skipped and their dependents still
    run. On failure, `STOP_ALL` stops the walk immediately;
    `CONTINUE_INDEPENDENT` marks the failed stage's dependents as blocked
    and keeps going with everything else. With `raise_on_error` a failed
    run raises StageExecutionError carrying the first failure and the report.
    """

    graph, active_suppressed = prepare_graph(
        graph,
        suppressed=suppressed,
        collections=collections,
    )
    order = graph.walk_order()
    report = RunReport(halt_policy=halt_policy)
    blocked: dict[str, str] = {}
    started_perf = time.perf_counter()

    log_event(
        _LOGGER,
        "pipeline_started",
        stage_count=len(order),
        suppressed=sorted(active_suppressed),
        halt_policy=halt_policy.value,
    )

    for stage in order:
        if stage.name in active_suppressed:
            log_event(_LOGGER, "stage_skipped", level=logging.WARNING, stage=stage.name)
            report.outcomes.append(
                StageOutcome(
                    stage=stage.name,
                    status=StageStatus.SKIPPED,
                    message="suppressed",
                )
            )
            continue

        if stage.name in blocked:
            log_event(
                _LOGGER,
                "stage_blocked",
                level=logging.WARNING,
                stage=stage.name,
                failed_dependency=blocked[stage.name],
            )
            report.outcomes.append(
                StageOutcome(
                    stage=stage.name,
                    status=StageStatus.BLOCKED,
                    message=f"dependency {blocked[stage.name]} failed",
                )
            )
            continue

        log_event(_LOGGER, "stage_started", stage=stage.name, kind=stage.kind.value)
        outcome = execute_stage(stage, runner=runner, on_line=on_line)
        report.outcomes.append(outcome)
        log_event(
            _LOGGER,
            "stage_finished",
            level=logging.INFO if outcome.ok else logging.ERROR,
            stage=stage.name,
            status=outcome.status.value,
            duration_sec=round(outcome.duration_sec, 3),
        )

        if outcome.status is StageStatus.FAILED:
            if halt_policy is HaltPolicy.STOP_ALL:
                report.halted_at = stage.name
                break
            for dependent in graph.dependents(stage.name):
                blocked.setdefault(dependent, stage.name)

    report.duration_sec = time.perf_counter() - started_perf
    log_event(
        _LOGGER,
        "pipeline_finished",
        level=logging.INFO if report.succeeded else logging.ERROR,
        status="SUCCEEDED" if report.succeeded else "FAILED",
        stages=report.statuses(),
    )
    if raise_on_error and not report.succeeded:
        raise StageExecutionError(report.failures[0], report=report)
    return report
