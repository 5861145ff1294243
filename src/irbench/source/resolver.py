"""Turn a configured source into a validated set of engine executables."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from irbench.config.schema import DockerSource, GitSource, PathSource, SourceSpec
from irbench.errors import (
    BuildFailed,
    CheckoutFailed,
    CloneFailed,
    CommandSpawnError,
    MissingExecutable,
    ResolutionError,
    UnimplementedSource,
)
from irbench.observability.logging import get_logger, log_event
from irbench.pipeline.executor import CommandRunner, run_subprocess
from irbench.pipeline.stage import Invocation


_LOGGER = get_logger("irbench.source")

REQUIRED_PROGRAMS: tuple[str, ...] = (
    "parse_collection",
    "lexicon",
    "invert",
    "create_freq_index",
    "create_wand_data",
    "extract_topics",
    "evaluate_queries",
)

KNOWN_ENCODINGS: frozenset[str] = frozenset(
    {
        "ef",
        "single",
        "pefuniform",
        "pefopt",
        "block_optpfor",
        "block_varintg8iu",
        "block_streamvbyte",
        "block_maskedvbyte",
        "block_interpolative",
        "block_qmx",
        "block_varintgb",
        "block_simple8b",
        "block_simple16",
        "block_simdbp",
        "block_mixed",
    }
)

CHECKOUT_DIRNAME = "pisa"


@dataclass(frozen=True, slots=True)
class ResolvedExecutables:
    """Absolute paths of the engine programs, computed once per run."""

    programs: Mapping[str, Path]
    bin_dir: Path | None = None
    encodings: frozenset[str] = field(default=KNOWN_ENCODINGS)

    def path(self, program: str) -> str:
        try:
            return str(self.programs[program])
        except KeyError as exc:
            raise MissingExecutable(program, self.bin_dir) from exc

    def supports(self, encoding: str) -> bool:
        return encoding in self.encodings

    @classmethod
    def unresolved(cls) -> "ResolvedExecutables":
        """Bare program names; used to describe stages without a source."""

        return cls(programs=MappingProxyType({name: Path(name) for name in REQUIRED_PROGRAMS}))

    @classmethod
    def from_directory(cls, bin_dir: Path) -> "ResolvedExecutables":
        """Validate that every required program is an executable file."""

        bin_dir = bin_dir.resolve()
        programs: dict[str, Path] = {}
        for name in REQUIRED_PROGRAMS:
            candidate = bin_dir / name
            if not candidate.is_file() or not os.access(candidate, os.X_OK):
                raise MissingExecutable(name, candidate)
            programs[name] = candidate
        return cls(programs=MappingProxyType(programs), bin_dir=bin_dir)


def checkout_dir(workdir: Path) -> Path:
    return workdir / CHECKOUT_DIRNAME


def _run_checked(
    runner: CommandRunner,
    invocation: Invocation,
    error: type[ResolutionError],
    message: str,
) -> None:
    command = invocation.argv()
    log_event(_LOGGER, "source_command", command=invocation.display())

    def _sink(line: str) -> None:
        log_event(_LOGGER, "process_output", stage="build", line=line)

    try:
        result = runner(invocation, _sink)
    except CommandSpawnError as exc:
        raise error(f"{message}: {exc.reason}", command=command) from exc
    if result.returncode != 0:
        raise error(
            f"{message} (exit status {result.returncode})",
            command=command,
            returncode=result.returncode,
            output=result.output,
        )


def _resolve_git(
    source: GitSource,
    workdir: Path,
    *,
    runner: CommandRunner,
    compile_source: bool,
) -> ResolvedExecutables:
    repo_dir = checkout_dir(workdir)
    cloned = False
    if not (repo_dir / ".git").exists():
        repo_dir.parent.mkdir(parents=True, exist_ok=True)
        _run_checked(
            runner,
            Invocation("git", ("clone", source.url, str(repo_dir))),
            CloneFailed,
            f"cloning {source.url} failed",
        )
        cloned = True

    build_dir = repo_dir / "build"
    build_dir.mkdir(parents=True, exist_ok=True)

    if not compile_source:
        log_event(_LOGGER, "compile_suppressed", level=logging.WARNING, path=str(repo_dir))
    else:
        if not cloned:
            _run_checked(
                runner,
                Invocation("git", ("fetch", "--all", "--tags"), cwd=repo_dir),
                CheckoutFailed,
                "fetching updates failed",
            )
        if source.ref:
            _run_checked(
                runner,
                Invocation("git", ("checkout", source.ref), cwd=repo_dir),
                CheckoutFailed,
                f"checkout of {source.ref} failed",
            )
        _run_checked(
            runner,
            Invocation("cmake", ("-DCMAKE_BUILD_TYPE=Release", ".."), cwd=build_dir),
            BuildFailed,
            "cmake configuration failed",
        )
        _run_checked(
            runner,
            Invocation("cmake", ("--build", "."), cwd=build_dir),
            BuildFailed,
            "build failed",
        )

    return ResolvedExecutables.from_directory(build_dir / "bin")


def resolve_source(
    source: SourceSpec,
    workdir: Path,
    *,
    runner: CommandRunner = run_subprocess,
    compile_source: bool = True,
) -> ResolvedExecutables:
    """Produce validated executables for a configured source.

    Reruns re-validate the binaries; an existing git checkout is reused
    instead of cloned again. With `compile_source=False` an existing
    checkout is validated as-is.
    """

    log_event(_LOGGER, "source_resolving", source=repr(source), workdir=str(workdir))
    if isinstance(source, PathSource):
        path = source.path if source.path.is_absolute() else workdir / source.path
        resolved = ResolvedExecutables.from_directory(path)
    elif isinstance(source, GitSource):
        resolved = _resolve_git(
            source,
            workdir,
            runner=runner,
            compile_source=compile_source,
        )
    elif isinstance(source, DockerSource):
        raise UnimplementedSource("docker", f"tag {source.tag}")
    else:
        raise TypeError(f"Unsupported source type: {type(source).__name__}")

    log_event(_LOGGER, "source_resolved", bin_dir=str(resolved.bin_dir))
    return resolved
