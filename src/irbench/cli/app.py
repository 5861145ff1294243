"""Tyro CLI application entrypoint."""

from __future__ import annotations

import sys
from typing import Sequence

import tyro

from irbench.cli import commands_run


REPEATABLE_FLAGS = ("--suppress", "--collections")


def fold_repeated_flags(
    argv: Sequence[str],
    flags: Sequence[str] = REPEATABLE_FLAGS,
) -> list[str]:
    """Merge every occurrence of a list flag into one, keeping all values.

    `--suppress a --suppress b c` becomes `--suppress a b c`; `--flag=value`
    is accepted too. Other arguments keep their relative order.
    """

    values: dict[str, list[str]] = {flag: [] for flag in flags}
    present: list[str] = []
    folded: list[str] = []
    current: str | None = None
    for token in argv:
        if token.startswith("-"):
            current = None
            name, sep, inline = token.partition("=")
            if name in values:
                if name not in present:
                    present.append(name)
                if sep:
                    values[name].append(inline)
                else:
                    current = name
                continue
        elif current is not None:
            values[current].append(token)
            continue
        folded.append(token)

    for flag in present:
        folded.extend([flag, *values[flag]])
    return folded


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments, run the pipeline and return the exit status."""

    args = fold_repeated_flags(sys.argv[1:] if argv is None else argv)
    command = tyro.cli(
        commands_run.RunCommand,
        args=args,
        prog="irbench",
        description="Standard benchmark pipeline for the retrieval engine.",
    )
    return commands_run.execute(command)
