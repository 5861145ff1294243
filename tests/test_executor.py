from __future__ import annotations

from pathlib import Path

import pytest

from irbench.errors import CommandSpawnError
from irbench.pipeline.executor import CommandResult, execute_stage, run_subprocess
from irbench.pipeline.stage import (
    FailureKind,
    InputPipe,
    Invocation,
    StageDefinition,
    StageKind,
    StageStatus,
)


def _stage(*invocations: Invocation) -> StageDefinition:
    return StageDefinition(
        name="forward_index:wapo",
        kind=StageKind.FORWARD_INDEX,
        invocations=invocations,
        collection="wapo",
    )


def test_successful_command_captures_output() -> None:
    lines: list[str] = []

    outcome = execute_stage(
        _stage(Invocation("sh", ("-c", "echo first; echo second >&2"))),
        on_line=lines.append,
    )

    assert outcome.status is StageStatus.SUCCEEDED
    assert outcome.ok
    assert sorted(lines) == ["first", "second"]
    assert "first" in outcome.output


def test_non_zero_exit_fails_with_exit_code() -> None:
    outcome = execute_stage(
        _stage(
            Invocation("sh", ("-c", "echo broken index; exit 3")),
            Invocation("sh", ("-c", "echo never")),
        ),
        on_line=lambda line: None,
    )

    assert outcome.status is StageStatus.FAILED
    assert outcome.failure is FailureKind.EXIT_CODE
    assert outcome.exit_code == 3
    assert outcome.output == "broken index"
    assert outcome.command == "sh -c 'echo broken index; exit 3'"
    assert "never" not in outcome.output


def test_missing_program_is_a_spawn_error(tmp_path: Path) -> None:
    outcome = execute_stage(
        _stage(Invocation(str(tmp_path / "no-such-program"))),
        on_line=lambda line: None,
    )

    assert outcome.status is StageStatus.FAILED
    assert outcome.failure is FailureKind.SPAWN_ERROR
    assert outcome.exit_code is None
    assert "no-such-program" in outcome.message


def test_input_pipe_streams_matching_files_in_order(tmp_path: Path) -> None:
    (tmp_path / "b.jl").write_text("second\n", encoding="utf-8")
    (tmp_path / "a.jl").write_text("first\n", encoding="utf-8")

    result = run_subprocess(
        Invocation("cat", input_pipe=InputPipe(reader="cat", pattern=str(tmp_path / "*.jl"))),
        lambda line: None,
    )

    assert result == CommandResult(returncode=0, output="first\nsecond")


def test_input_pipe_without_matches_is_a_spawn_error(tmp_path: Path) -> None:
    outcome = execute_stage(
        _stage(
            Invocation("cat", input_pipe=InputPipe(reader="cat", pattern=str(tmp_path / "*.jl")))
        ),
        on_line=lambda line: None,
    )

    assert outcome.failure is FailureKind.SPAWN_ERROR
    assert "could not resolve any files" in outcome.message


def test_failing_input_reader_fails_the_step(tmp_path: Path) -> None:
    (tmp_path / "a.jl").write_text("x\n", encoding="utf-8")

    result = run_subprocess(
        Invocation(
            "cat",
            input_pipe=InputPipe(reader="false", pattern=str(tmp_path / "*.jl")),
        ),
        lambda line: None,
    )

    assert result.returncode != 0
    assert "input reader exited" in result.output


def test_stdout_redirect_writes_file_and_streams_stderr(tmp_path: Path) -> None:
    target = tmp_path / "runs" / "wapo.results"
    lines: list[str] = []

    outcome = execute_stage(
        _stage(
            Invocation(
                "sh",
                ("-c", "echo '301 Q0 doc 1 1.0 run'; echo progress >&2"),
                stdout_path=target,
            )
        ),
        on_line=lines.append,
    )

    assert outcome.status is StageStatus.SUCCEEDED
    assert target.read_text(encoding="utf-8") == "301 Q0 doc 1 1.0 run\n"
    assert lines == ["progress"]


def test_steps_with_existing_outputs_are_satisfied(tmp_path: Path, fake_runner) -> None:
    existing = tmp_path / "fwd" / "wapo.terms"
    existing.parent.mkdir(parents=True)
    existing.write_text("", encoding="utf-8")

    outcome = execute_stage(
        _stage(
            Invocation("parse_collection", ("-o", "fwd/wapo"), creates=existing),
            Invocation("lexicon", ("build",), creates=tmp_path / "fwd" / "wapo.termmap"),
        ),
        runner=fake_runner,
        on_line=lambda line: None,
    )

    assert outcome.status is StageStatus.SUCCEEDED
    assert len(outcome.satisfied_steps) == 1
    assert fake_runner.commands() == ["lexicon build"]


def test_fake_runner_failure_stops_remaining_steps(fake_runner) -> None:
    fake_runner.results["invert"] = CommandResult(returncode=1, output="bad forward index")

    outcome = execute_stage(
        _stage(Invocation("invert"), Invocation("create_freq_index")),
        runner=fake_runner,
        on_line=lambda line: None,
    )

    assert outcome.failure is FailureKind.EXIT_CODE
    assert outcome.output == "bad forward index"
    assert fake_runner.commands() == ["invert"]


def test_stage_without_steps_succeeds() -> None:
    outcome = execute_stage(
        StageDefinition(name="build", kind=StageKind.SOURCE_BUILD),
        on_line=lambda line: None,
    )

    assert outcome.status is StageStatus.SUCCEEDED
    assert outcome.to_dict()["status"] == "succeeded"


def test_output_directory_that_cannot_be_created_is_a_spawn_error(
    tmp_path: Path, fake_runner
) -> None:
    (tmp_path / "blocker").write_text("", encoding="utf-8")

    outcome = execute_stage(
        _stage(Invocation("evaluate_queries", stdout_path=tmp_path / "blocker" / "wapo.results")),
        runner=fake_runner,
        on_line=lambda line: None,
    )

    assert outcome.status is StageStatus.FAILED
    assert outcome.failure is FailureKind.SPAWN_ERROR
    assert "blocker" in outcome.message
    assert fake_runner.calls == []


def test_unopenable_redirect_fails_before_reader_starts(tmp_path: Path) -> None:
    (tmp_path / "a.jl").write_text("x\n", encoding="utf-8")
    (tmp_path / "blocker").write_text("", encoding="utf-8")
    invocation = Invocation(
        "cat",
        input_pipe=InputPipe(reader="cat", pattern=str(tmp_path / "*.jl")),
        stdout_path=tmp_path / "blocker" / "out.txt",
    )

    with pytest.raises(CommandSpawnError, match="could not open"):
        run_subprocess(invocation, lambda line: None)
