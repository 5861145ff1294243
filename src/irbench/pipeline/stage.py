"""Pipeline stage definitions, command descriptors and outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
import shlex
from typing import Any


class StageKind(str, Enum):
    """Classification of generated stages."""

    SOURCE_BUILD = "build"
    FORWARD_INDEX = "forward_index"
    INVERTED_INDEX = "inverted_index"
    EVALUATE = "evaluate"


@dataclass(frozen=True, slots=True)
class InputPipe:
    """Files streamed into a command's stdin by a reader program.

    The glob pattern is expanded when the command runs, not when the
    stage graph is built.
    """

    reader: str
    pattern: str

    def command(self, files: list[str]) -> list[str]:
        return [self.reader, *files]


@dataclass(frozen=True, slots=True)
class Invocation:
    """One external command run as part of a stage."""

    program: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    input_pipe: InputPipe | None = None
    stdout_path: Path | None = None
    creates: Path | None = None

    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def display(self) -> str:
        """Render the command as a shell line that reproduces it."""

        line = shlex.join(self.argv())
        if self.input_pipe is not None:
            line = f"{self.input_pipe.reader} {self.input_pipe.pattern} | {line}"
        if self.stdout_path is not None:
            line = f"{line} > {shlex.quote(str(self.stdout_path))}"
        if self.cwd is not None:
            line = f"(cd {shlex.quote(str(self.cwd))} && {line})"
        return line


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """Named unit of pipeline work with its dependencies and commands."""

    name: str
    kind: StageKind
    depends_on: tuple[str, ...] = ()
    invocations: tuple[Invocation, ...] = ()
    collection: str | None = None


class StageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class FailureKind(str, Enum):
    EXIT_CODE = "exit_code"
    SPAWN_ERROR = "spawn_error"


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """Result of driving one stage."""

    stage: str
    status: StageStatus
    failure: FailureKind | None = None
    exit_code: int | None = None
    command: str | None = None
    output: str = ""
    message: str = ""
    duration_sec: float = 0.0
    satisfied_steps: tuple[str, ...] = field(default=())

    @property
    def ok(self) -> bool:
        return self.status in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "failure": self.failure.value if self.failure is not None else None,
            "exit_code": self.exit_code,
            "command": self.command,
            "output": self.output,
            "message": self.message,
            "duration_sec": round(self.duration_sec, 6),
            "satisfied_steps": list(self.satisfied_steps),
        }
