"""Persist run reports with atomic writes."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from pathlib import Path
import tempfile

from irbench.pipeline.driver import RunReport
from irbench.version import __version__


REPORT_SCHEMA = "irbench-report/v1"


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


def write_report(path: Path, report: RunReport, *, config_file: Path | None = None) -> Path:
    """Write a RunReport as JSON, replacing any previous report at `path`."""

    payload = {
        "schema": REPORT_SCHEMA,
        "version": __version__,
        "written_at": datetime.now(timezone.utc).isoformat(),
        "config_file": str(config_file.resolve()) if config_file is not None else None,
        **report.to_dict(),
    }
    _atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
    return path
