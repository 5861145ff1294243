"""Load benchmark configs from YAML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, get_args

import yaml

from irbench.config.schema import (
    BenchConfig,
    CollectionConfig,
    CollectionKind,
    DockerSource,
    GitSource,
    PathSource,
    RunConfig,
    SourceSpec,
    TopicsFormat,
    TrecTopicField,
)
from irbench.errors import ConfigurationError
from irbench.observability.logging import get_logger, log_event


_LOGGER = get_logger("irbench.config")


def _require_mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"missing or corrupted {where}")
    return value


def _require_string(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{where}.{key} missing or not a string")
    return value


def _optional_string(payload: dict[str, Any], key: str, where: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"{where}.{key} is not a string")
    return value


def _choice(value: str, allowed: Any, what: str) -> str:
    options = get_args(allowed)
    if value not in options:
        raise ConfigurationError(
            f"invalid {what}: {value} (expected one of: {', '.join(options)})"
        )
    return value


def _rooted(value: str | Path, root: Path) -> Path:
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return root / path


def parse_source(payload: Any, workdir: Path) -> SourceSpec:
    """Parse the `source` section into one of the source variants."""

    source = _require_mapping(payload, "source")
    kind = _require_string(source, "type", "source")
    if kind == "path":
        return PathSource(path=_rooted(_require_string(source, "path", "source"), workdir))
    if kind == "git":
        url = _require_string(source, "url", "source")
        ref = _optional_string(source, "ref", "source")
        if ref is None:
            ref = _optional_string(source, "branch", "source")
        return GitSource(url=url, ref=ref)
    if kind == "docker":
        return DockerSource(tag=_require_string(source, "tag", "source"))
    raise ConfigurationError(f"unknown source type: {kind}")


def _parse_encodings(payload: Any, name: str) -> tuple[str, ...]:
    if not isinstance(payload, list):
        raise ConfigurationError(
            f"failed to parse collection {name}: missing or corrupted encoding list"
        )
    encodings: list[str] = []
    for entry in payload:
        if isinstance(entry, str) and entry:
            encodings.append(entry)
        else:
            log_event(
                _LOGGER,
                "invalid_encoding",
                level=logging.ERROR,
                collection=name,
                entry=repr(entry),
            )
    if not encodings:
        raise ConfigurationError(
            f"failed to parse collection {name}: no valid encoding entries"
        )
    return tuple(encodings)


def parse_collection(payload: Any, workdir: Path) -> CollectionConfig:
    """Parse one `collections[]` entry, rooting relative paths at `workdir`."""

    entry = _require_mapping(payload, "collection entry")
    name = _require_string(entry, "name", "collection")
    where = f"collections[{name}]"
    collection_dir = _require_string(entry, "collection_dir", where)
    forward_index = _optional_string(entry, "forward_index", where) or f"fwd/{name}"
    inverted_index = _optional_string(entry, "inverted_index", where) or f"inv/{name}"
    kind = _choice(
        _optional_string(entry, "kind", where) or "wapo",
        CollectionKind,
        "collection kind",
    )
    return CollectionConfig(
        name=name,
        collection_dir=_rooted(collection_dir, workdir),
        forward_index=_rooted(forward_index, workdir),
        inverted_index=_rooted(inverted_index, workdir),
        encodings=_parse_encodings(entry.get("encodings"), name),
        kind=kind,  # type: ignore[arg-type]
    )


def parse_run(payload: Any, workdir: Path, index: int) -> RunConfig:
    """Parse one `runs[]` entry."""

    entry = _require_mapping(payload, f"runs[{index}]")
    where = f"runs[{index}]"
    collection = _require_string(entry, "collection", where)
    kind = _require_string(entry, "type", where)
    if kind != "evaluate":
        raise ConfigurationError(f"unknown run type: {kind}")

    topics_format = _choice(
        _optional_string(entry, "topics_format", where) or "trec",
        TopicsFormat,
        "topics format",
    )
    field = _choice(
        _optional_string(entry, "trec_topic_field", where) or "title",
        TrecTopicField,
        "trec topic field",
    )

    algorithms = entry.get("algorithms", ["wand"])
    if (
        not isinstance(algorithms, list)
        or not algorithms
        or not all(isinstance(item, str) and item for item in algorithms)
    ):
        raise ConfigurationError(f"{where}.algorithms must be a non-empty list of strings")

    output = _optional_string(entry, "output", where)
    return RunConfig(
        collection=collection,
        topics=_rooted(_require_string(entry, "topics", where), workdir),
        qrels=_rooted(_require_string(entry, "qrels", where), workdir),
        kind="evaluate",
        topics_format=topics_format,  # type: ignore[arg-type]
        trec_topic_field=field,  # type: ignore[arg-type]
        algorithms=tuple(algorithms),
        output=_rooted(output, workdir) if output is not None else None,
    )


def bench_config_from_dict(payload: Any, base_dir: Path) -> BenchConfig:
    """Build a BenchConfig from a parsed YAML document.

    `base_dir` anchors a relative `workdir`; every other relative path is
    rooted at the resolved workdir.
    """

    document = _require_mapping(payload, "configuration document")
    workdir_value = document.get("workdir")
    if not isinstance(workdir_value, str) or not workdir_value:
        raise ConfigurationError("missing or corrupted workdir")
    workdir = _rooted(workdir_value, base_dir.resolve())

    source = parse_source(document.get("source"), workdir)

    raw_collections = document.get("collections")
    if not isinstance(raw_collections, list) or not raw_collections:
        raise ConfigurationError("missing or corrupted collections config")
    collections: list[CollectionConfig] = []
    seen: set[str] = set()
    for raw in raw_collections:
        collection = parse_collection(raw, workdir)
        if collection.name in seen:
            raise ConfigurationError(f"duplicate collection name: {collection.name}")
        seen.add(collection.name)
        collections.append(collection)

    raw_runs = document.get("runs") or []
    if not isinstance(raw_runs, list):
        raise ConfigurationError("missing or corrupted runs config")
    runs = tuple(parse_run(raw, workdir, index) for index, raw in enumerate(raw_runs))

    config = BenchConfig(
        workdir=workdir,
        source=source,
        collections=tuple(collections),
        runs=runs,
    )
    for index, run in enumerate(config.runs):
        config.collection(run.collection, run_index=index)
    return config


def load_bench_config(path: Path) -> BenchConfig:
    """Read and validate a YAML configuration file."""

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"failed to read config file {path}: {exc}") from exc
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"could not parse YAML file {path}: {exc}") from exc
    return bench_config_from_dict(payload, base_dir=path.parent)
