"""Error taxonomy for configuration, source resolution and stage execution."""

from __future__ import annotations

from typing import Any, Sequence


class BenchError(RuntimeError):
    """Base class for all irbench failures."""


class ConfigurationError(BenchError, ValueError):
    """Raised when the benchmark configuration is malformed or inconsistent."""


class UnknownCollectionReference(ConfigurationError):
    """Raised when a run names a collection absent from the configuration."""

    def __init__(self, collection: str, run_index: int | None = None) -> None:
        self.collection = collection
        self.run_index = run_index
        where = f"run {run_index}" if run_index is not None else "run"
        super().__init__(f"{where} references unknown collection '{collection}'")


class UnsupportedEncoding(ConfigurationError):
    """Raised when a collection requests an encoding the engine does not provide."""

    def __init__(self, collection: str, encoding: str) -> None:
        self.collection = collection
        self.encoding = encoding
        super().__init__(
            f"collection '{collection}' requests unsupported encoding '{encoding}'"
        )


class ResolutionError(BenchError):
    """Raised when the engine executables cannot be obtained.

    Failures caused by an external command keep the command line, its exit
    status and the captured output so the step can be reproduced by hand.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] | None = None,
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        self.command = list(command) if command is not None else None
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class MissingExecutable(ResolutionError):
    """Raised when a required program is absent or not runnable."""

    def __init__(self, name: str, path: Any) -> None:
        self.name = name
        self.path = path
        super().__init__(f"missing executable '{name}' (expected at {path})")


class CloneFailed(ResolutionError):
    """Raised when the engine repository cannot be cloned."""


class CheckoutFailed(ResolutionError):
    """Raised when fetching or checking out the requested ref fails."""


class BuildFailed(ResolutionError):
    """Raised when configuring or compiling the engine fails."""


class UnimplementedSource(ResolutionError):
    """Raised for source kinds that are accepted but cannot be resolved."""

    def __init__(self, kind: str, detail: str = "") -> None:
        self.kind = kind
        suffix = f" ({detail})" if detail else ""
        super().__init__(f"source type '{kind}' is not implemented{suffix}")


class CommandSpawnError(BenchError):
    """Raised by command runners when a process cannot be started."""

    def __init__(self, command: Sequence[str], reason: str) -> None:
        self.command = list(command)
        self.reason = reason
        super().__init__(f"could not start {' '.join(self.command)}: {reason}")


class StageExecutionError(BenchError):
    """Raised when a stage's external command fails."""

    def __init__(self, outcome: Any, report: Any = None) -> None:
        self.outcome = outcome
        self.report = report
        super().__init__(f"stage {outcome.stage} failed: {outcome.message}")
