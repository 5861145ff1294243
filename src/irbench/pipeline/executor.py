"""Run stages as external processes and classify their outcome."""

from __future__ import annotations

from dataclasses import dataclass
import glob
import logging
from pathlib import Path
import subprocess
import time
from typing import Callable, Protocol

from irbench.errors import CommandSpawnError
from irbench.observability.logging import get_logger, log_event
from irbench.pipeline.stage import (
    FailureKind,
    Invocation,
    StageDefinition,
    StageOutcome,
    StageStatus,
)


_LOGGER = get_logger("irbench.executor")

LineSink = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and captured output of one command."""

    returncode: int
    output: str


class CommandRunner(Protocol):
    """Call signature every command runner must implement.

    Runners stream output lines to `on_line` as they arrive and raise
    `CommandSpawnError` when the process cannot be started.
    """

    def __call__(self, invocation: Invocation, on_line: LineSink) -> CommandResult:
        ...


def _spawn_reason(exc: OSError) -> str:
    return exc.strerror or str(exc)


def _start_input_pipe(invocation: Invocation) -> subprocess.Popen[bytes] | None:
    pipe = invocation.input_pipe
    if pipe is None:
        return None
    files = sorted(glob.glob(pipe.pattern))
    if not files:
        raise CommandSpawnError(
            invocation.argv(),
            f"could not resolve any files for pattern: {pipe.pattern}",
        )
    reader = pipe.command(files)
    try:
        return subprocess.Popen(reader, cwd=invocation.cwd, stdout=subprocess.PIPE)
    except OSError as exc:
        raise CommandSpawnError(reader, _spawn_reason(exc)) from exc


def run_subprocess(invocation: Invocation, on_line: LineSink) -> CommandResult:
    """Run one invocation with `subprocess`, streaming its output.

    Stdout and stderr are merged unless stdout is redirected to a file, in
    which case only stderr is streamed and captured.
    """

    argv = invocation.argv()
    stdout_handle = None
    if invocation.stdout_path is not None:
        try:
            stdout_handle = invocation.stdout_path.open("w", encoding="utf-8")
        except OSError as exc:
            raise CommandSpawnError(
                argv,
                f"could not open {invocation.stdout_path}: {_spawn_reason(exc)}",
            ) from exc

    producer = None
    lines: list[str] = []
    try:
        producer = _start_input_pipe(invocation)
        if stdout_handle is not None:
            stdout = stdout_handle
            stderr = subprocess.PIPE
        else:
            stdout = subprocess.PIPE  # type: ignore[assignment]
            stderr = subprocess.STDOUT

        try:
            process = subprocess.Popen(
                argv,
                cwd=invocation.cwd,
                stdin=producer.stdout if producer is not None else subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise CommandSpawnError(argv, _spawn_reason(exc)) from exc
        finally:
            if producer is not None and producer.stdout is not None:
                # The child holds its own copy of the read end.
                producer.stdout.close()

        with process:
            stream = process.stderr if invocation.stdout_path is not None else process.stdout
            assert stream is not None
            for raw in stream:
                line = raw.rstrip("\n")
                lines.append(line)
                on_line(line)
            returncode = process.wait()
    finally:
        if stdout_handle is not None:
            stdout_handle.close()
        if producer is not None:
            producer_code = producer.wait()
        else:
            producer_code = 0

    if returncode == 0 and producer_code != 0:
        lines.append(f"input reader exited with status {producer_code}")
        returncode = producer_code
    return CommandResult(returncode=returncode, output="\n".join(lines))


def _prepare_directories(invocation: Invocation) -> None:
    for target in (invocation.creates, invocation.stdout_path):
        if target is not None:
            Path(target).parent.mkdir(parents=True, exist_ok=True)


def _stream_to_log(stage_name: str) -> LineSink:
    def _sink(line: str) -> None:
        log_event(_LOGGER, "process_output", stage=stage_name, line=line)

    return _sink


def execute_stage(
    stage: StageDefinition,
    *,
    runner: CommandRunner = run_subprocess,
    on_line: LineSink | None = None,
) -> StageOutcome:
    """Run every step of a stage in order and report the outcome.

    Steps whose `creates` target already exists are treated as satisfied.
    The first failing step fails the stage; nothing is retried.
    """

    sink = on_line if on_line is not None else _stream_to_log(stage.name)
    started_perf = time.perf_counter()
    outputs: list[str] = []
    satisfied: list[str] = []

    for invocation in stage.invocations:
        command = invocation.display()
        if invocation.creates is not None and invocation.creates.exists():
            satisfied.append(command)
            log_event(
                _LOGGER,
                "step_satisfied",
                stage=stage.name,
                command=command,
                target=str(invocation.creates),
            )
            continue

        log_event(_LOGGER, "step_started", stage=stage.name, command=command)
        try:
            _prepare_directories(invocation)
            result = runner(invocation, sink)
        except (CommandSpawnError, OSError) as exc:
            log_event(
                _LOGGER,
                "step_failed",
                level=logging.ERROR,
                stage=stage.name,
                command=command,
                error=str(exc),
            )
            return StageOutcome(
                stage=stage.name,
                status=StageStatus.FAILED,
                failure=FailureKind.SPAWN_ERROR,
                command=command,
                output="\n".join(outputs),
                message=str(exc),
                duration_sec=time.perf_counter() - started_perf,
                satisfied_steps=tuple(satisfied),
            )

        if result.output:
            outputs.append(result.output)
        if result.returncode != 0:
            log_event(
                _LOGGER,
                "step_failed",
                level=logging.ERROR,
                stage=stage.name,
                command=command,
                exit_code=result.returncode,
            )
            return StageOutcome(
                stage=stage.name,
                status=StageStatus.FAILED,
                failure=FailureKind.EXIT_CODE,
                exit_code=result.returncode,
                command=command,
                output="\n".join(outputs),
                message=f"command exited with status {result.returncode}",
                duration_sec=time.perf_counter() - started_perf,
                satisfied_steps=tuple(satisfied),
            )

    return StageOutcome(
        stage=stage.name,
        status=StageStatus.SUCCEEDED,
        output="\n".join(outputs),
        duration_sec=time.perf_counter() - started_perf,
        satisfied_steps=tuple(satisfied),
    )
