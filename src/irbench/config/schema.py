"""Dataclass-based configuration schema for irbench."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from irbench.errors import UnknownCollectionReference


TopicsFormat = Literal["trec", "simple"]
TrecTopicField = Literal["title", "desc", "narr"]
CollectionKind = Literal["wapo", "trecweb"]
RunKind = Literal["evaluate"]


@dataclass(frozen=True, slots=True)
class PathSource:
    """Prebuilt executables in a local directory."""

    path: Path


@dataclass(frozen=True, slots=True)
class GitSource:
    """Engine repository to clone and compile."""

    url: str
    ref: str | None = None


@dataclass(frozen=True, slots=True)
class DockerSource:
    """Docker image holding the executables (not resolvable yet)."""

    tag: str


SourceSpec = PathSource | GitSource | DockerSource


@dataclass(frozen=True, slots=True)
class CollectionConfig:
    """One document collection and the encodings to build for it."""

    name: str
    collection_dir: Path
    forward_index: Path
    inverted_index: Path
    encodings: tuple[str, ...]
    kind: CollectionKind = "wapo"


@dataclass(frozen=True, slots=True)
class RunConfig:
    """One evaluation run against a collection."""

    collection: str
    topics: Path
    qrels: Path
    kind: RunKind = "evaluate"
    topics_format: TopicsFormat = "trec"
    trec_topic_field: TrecTopicField = "title"
    algorithms: tuple[str, ...] = ("wand",)
    output: Path | None = None

    def queries_path(self) -> Path:
        """Return the file the query evaluator reads queries from."""

        if self.topics_format == "trec":
            return Path(f"{self.topics}.{self.trec_topic_field}")
        return self.topics


@dataclass(frozen=True, slots=True)
class BenchConfig:
    """Top-level benchmark configuration."""

    workdir: Path
    source: SourceSpec
    collections: tuple[CollectionConfig, ...]
    runs: tuple[RunConfig, ...] = ()

    def collection(self, name: str, run_index: int | None = None) -> CollectionConfig:
        """Look up a collection by name."""

        for collection in self.collections:
            if collection.name == name:
                return collection
        raise UnknownCollectionReference(name, run_index)

    @property
    def collection_names(self) -> tuple[str, ...]:
        return tuple(collection.name for collection in self.collections)

    def run_output(self, run_index: int) -> Path:
        """Return the base path for a run's result files."""

        run = self.runs[run_index]
        if run.output is not None:
            return run.output
        return self.workdir / "runs" / f"{run.collection}.run-{run_index}"
