from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import stat
from typing import Any, Callable

import pytest
import yaml

from irbench.errors import CommandSpawnError
from irbench.pipeline.executor import CommandResult
from irbench.pipeline.stage import Invocation
from irbench.source.resolver import REQUIRED_PROGRAMS


STANDIN_OUTPUT = {
    "evaluate_queries": 'echo "301 Q0 doc-17 1 12.5 standin"',
    "trec_eval": "printf 'map\\tall\\t0.2500\\n'",
}


def _standin_script(name: str, log_path: Path, body: str | None) -> str:
    if body is None:
        body = STANDIN_OUTPUT.get(name, f'echo "{name} done"')
    return (
        "#!/bin/sh\n"
        f'echo "{name} $*" >> "{log_path}"\n'
        "cat > /dev/null\n"
        f"{body}\n"
    )


@pytest.fixture
def make_programs() -> Callable[..., Path]:
    """Return a helper writing shell stand-ins for the engine programs."""

    def _make(
        bin_dir: Path,
        overrides: dict[str, str] | None = None,
        names: tuple[str, ...] = (*REQUIRED_PROGRAMS, "trec_eval"),
    ) -> Path:
        bin_dir.mkdir(parents=True, exist_ok=True)
        log_path = bin_dir / "calls.log"
        for name in names:
            body = (overrides or {}).get(name)
            script = bin_dir / name
            script.write_text(_standin_script(name, log_path, body), encoding="utf-8")
            script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return bin_dir

    return _make


@pytest.fixture
def standin_bin(tmp_path: Path, make_programs: Callable[..., Path]) -> Path:
    return make_programs(tmp_path / "bin")


@pytest.fixture
def on_path(monkeypatch: pytest.MonkeyPatch) -> Callable[[Path], None]:
    """Put a directory first on PATH so bare program names resolve to it."""

    def _prepend(directory: Path) -> None:
        monkeypatch.setenv("PATH", f"{directory}{os.pathsep}{os.environ.get('PATH', '')}")

    return _prepend


@dataclass
class FakeRunner:
    """Command runner that records invocations instead of spawning processes.

    Results are looked up by "program subcommand" first, then by program
    name, both using the basename of the program path.
    """

    results: dict[str, CommandResult] = field(default_factory=dict)
    spawn_errors: set[str] = field(default_factory=set)
    on_call: Callable[[Invocation], None] | None = None
    calls: list[Invocation] = field(default_factory=list)

    @staticmethod
    def keys(invocation: Invocation) -> list[str]:
        program = Path(invocation.program).name
        keys = [program]
        if invocation.args:
            keys.insert(0, f"{program} {invocation.args[0]}")
        return keys

    def __call__(self, invocation: Invocation, on_line: Callable[[str], None]) -> CommandResult:
        self.calls.append(invocation)
        keys = self.keys(invocation)
        if any(key in self.spawn_errors for key in keys):
            raise CommandSpawnError(invocation.argv(), "No such file or directory")
        if self.on_call is not None:
            self.on_call(invocation)
        result = next(
            (self.results[key] for key in keys if key in self.results),
            CommandResult(returncode=0, output=f"{keys[-1]} ok"),
        )
        for line in result.output.splitlines():
            on_line(line)
        return result

    def commands(self) -> list[str]:
        return [self.keys(call)[0] for call in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


def scenario_payload(workdir: Path, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "workdir": str(workdir),
        "source": {"type": "path", "path": "bin"},
        "collections": [
            {
                "name": "wapo",
                "collection_dir": "collections/wapo",
                "encodings": ["block_simdbp"],
            }
        ],
        "runs": [
            {
                "collection": "wapo",
                "type": "evaluate",
                "topics": "topics/wapo.topics",
                "qrels": "topics/wapo.qrels",
            }
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def scenario() -> Callable[..., dict[str, Any]]:
    """Return a builder for the single-collection `wapo` configuration."""

    return scenario_payload


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[dict[str, Any]], Path]:
    def _write(payload: dict[str, Any], name: str = "bench.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        return path

    return _write
