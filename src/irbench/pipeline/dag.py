"""Stage graph construction, selection and ordering."""

from __future__ import annotations

from dataclasses import dataclass
import heapq
from pathlib import Path
from typing import Iterable, Iterator

from irbench.config.schema import BenchConfig, CollectionConfig, RunConfig
from irbench.errors import ConfigurationError, UnsupportedEncoding
from irbench.pipeline.stage import InputPipe, Invocation, StageDefinition, StageKind
from irbench.source.resolver import ResolvedExecutables


BUILD_STAGE = "build"

_PARSER_INPUT = {
    "wapo": ("cat", "data/*.jl"),
    "trecweb": ("zcat", "GX*/*.gz"),
}


def forward_index_stage_name(collection: str) -> str:
    return f"forward_index:{collection}"


def inverted_index_stage_name(collection: str, encoding: str) -> str:
    return f"inverted_index:{collection}:{encoding}"


def evaluate_stage_name(collection: str, run_index: int) -> str:
    return f"evaluate:{collection}:run-{run_index}"


def _suffixed(path: Path, suffix: str) -> Path:
    return Path(f"{path}.{suffix}")


@dataclass(frozen=True, slots=True)
class StageGraph:
    """Generated stages in emission order plus their dependency edges."""

    stages: tuple[StageDefinition, ...]

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"duplicate stage name: {stage.name}")
            seen.add(stage.name)

    def __iter__(self) -> Iterator[StageDefinition]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    def __contains__(self, name: object) -> bool:
        return any(stage.name == name for stage in self.stages)

    def names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def get(self, name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def dependents(self, name: str) -> set[str]:
        """Return every stage that transitively depends on `name`."""

        found: set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for stage in self.stages:
                if current in stage.depends_on and stage.name not in found:
                    found.add(stage.name)
                    frontier.append(stage.name)
        return found

    def select_collections(self, names: Iterable[str]) -> "StageGraph":
        """Keep global stages and the stages of the selected collections."""

        selected = set(names)
        kept = tuple(
            stage
            for stage in self.stages
            if stage.collection is None or stage.collection in selected
        )
        kept_names = {stage.name for stage in kept}
        for stage in kept:
            missing = [dep for dep in stage.depends_on if dep not in kept_names]
            if missing:
                raise ValueError(
                    f"stage {stage.name} depends on pruned stages: {', '.join(missing)}"
                )
        return StageGraph(stages=kept)

    def walk_order(self) -> list[StageDefinition]:
        """Topological order that is stable with respect to emission order."""

        position = {stage.name: index for index, stage in enumerate(self.stages)}
        pending: dict[str, int] = {}
        dependents: dict[str, list[str]] = {stage.name: [] for stage in self.stages}
        for stage in self.stages:
            unknown = [dep for dep in stage.depends_on if dep not in position]
            if unknown:
                raise ValueError(
                    f"stage {stage.name} depends on unknown stages: {', '.join(unknown)}"
                )
            pending[stage.name] = len(set(stage.depends_on))
            for dep in set(stage.depends_on):
                dependents[dep].append(stage.name)

        ready = [position[name] for name, count in pending.items() if count == 0]
        heapq.heapify(ready)
        ordered: list[StageDefinition] = []
        while ready:
            stage = self.stages[heapq.heappop(ready)]
            ordered.append(stage)
            for child in dependents[stage.name]:
                pending[child] -= 1
                if pending[child] == 0:
                    heapq.heappush(ready, position[child])

        if len(ordered) != len(self.stages):
            stuck = sorted(set(position) - {stage.name for stage in ordered})
            raise ValueError(f"stage graph has a cycle involving: {', '.join(stuck)}")
        return ordered


def _forward_index_invocations(
    collection: CollectionConfig,
    executables: ResolvedExecutables,
) -> tuple[Invocation, ...]:
    reader, pattern = _PARSER_INPUT[collection.kind]
    fwd = collection.forward_index
    parse = Invocation(
        program=executables.path("parse_collection"),
        args=(
            "-o",
            str(fwd),
            "-f",
            collection.kind,
            "--stemmer",
            "porter2",
            "--content-parser",
            "html",
            "--batch-size",
            "1000",
        ),
        input_pipe=InputPipe(reader=reader, pattern=str(collection.collection_dir / pattern)),
        creates=_suffixed(fwd, "terms"),
    )
    lexicon = executables.path("lexicon")
    terms_map = Invocation(
        program=lexicon,
        args=("build", str(_suffixed(fwd, "terms")), str(_suffixed(fwd, "termmap"))),
        creates=_suffixed(fwd, "termmap"),
    )
    documents_map = Invocation(
        program=lexicon,
        args=("build", str(_suffixed(fwd, "documents")), str(_suffixed(fwd, "docmap"))),
        creates=_suffixed(fwd, "docmap"),
    )
    return (parse, terms_map, documents_map)


def _inverted_index_invocations(
    collection: CollectionConfig,
    encoding: str,
    executables: ResolvedExecutables,
) -> tuple[Invocation, ...]:
    fwd = str(collection.forward_index)
    inv = collection.inverted_index
    invert = Invocation(
        program=executables.path("invert"),
        args=("-i", fwd, "-o", str(inv)),
        creates=_suffixed(inv, "docs"),
    )
    compress = Invocation(
        program=executables.path("create_freq_index"),
        args=("-t", encoding, "-c", str(inv), "-o", str(_suffixed(inv, encoding)), "--check"),
        creates=_suffixed(inv, encoding),
    )
    wand = Invocation(
        program=executables.path("create_wand_data"),
        args=("-c", str(inv), "-o", str(_suffixed(inv, "wand"))),
        creates=_suffixed(inv, "wand"),
    )
    return (invert, compress, wand)


def _evaluate_invocations(
    run: RunConfig,
    collection: CollectionConfig,
    output: Path,
    executables: ResolvedExecutables,
    use_scorer: bool,
) -> tuple[Invocation, ...]:
    steps: list[Invocation] = []
    queries = run.queries_path()
    if run.topics_format == "trec":
        steps.append(
            Invocation(
                program=executables.path("extract_topics"),
                args=("-i", str(run.topics), "-o", str(run.topics)),
                creates=queries,
            )
        )

    fwd = collection.forward_index
    inv = collection.inverted_index
    for encoding in collection.encodings:
        for algorithm in run.algorithms:
            results = Path(f"{output}.{encoding}.{algorithm}.results")
            args = [
                "-t",
                encoding,
                "-i",
                str(_suffixed(inv, encoding)),
                "-w",
                str(_suffixed(inv, "wand")),
                "-a",
                algorithm,
                "-q",
                str(queries),
                "--terms",
                str(_suffixed(fwd, "termmap")),
                "--documents",
                str(_suffixed(fwd, "docmap")),
                "--stemmer",
                "porter2",
                "-k",
                "1000",
            ]
            if use_scorer:
                args.extend(["--scorer", "bm25"])
            steps.append(
                Invocation(
                    program=executables.path("evaluate_queries"),
                    args=tuple(args),
                    stdout_path=results,
                )
            )
            steps.append(
                Invocation(
                    program="trec_eval",
                    args=("-q", "-a", str(run.qrels), str(results)),
                )
            )
    return tuple(steps)


def build_stage_graph(
    config: BenchConfig,
    executables: ResolvedExecutables,
    *,
    use_scorer: bool = True,
) -> StageGraph:
    """Expand a configuration into the full stage graph.

    Stages are emitted per collection in configuration order: forward
    index, one inverted index per encoding, then the collection's runs.
    Run references are checked before any stage is emitted.
    """

    run_targets = [
        (index, run, config.collection(run.collection, run_index=index))
        for index, run in enumerate(config.runs)
    ]

    stages: list[StageDefinition] = [
        StageDefinition(name=BUILD_STAGE, kind=StageKind.SOURCE_BUILD)
    ]
    for collection in config.collections:
        if len(set(collection.encodings)) != len(collection.encodings):
            raise ConfigurationError(
                f"collection '{collection.name}' lists an encoding more than once"
            )
        for encoding in collection.encodings:
            if not executables.supports(encoding):
                raise UnsupportedEncoding(collection.name, encoding)

        forward_name = forward_index_stage_name(collection.name)
        stages.append(
            StageDefinition(
                name=forward_name,
                kind=StageKind.FORWARD_INDEX,
                depends_on=(BUILD_STAGE,),
                invocations=_forward_index_invocations(collection, executables),
                collection=collection.name,
            )
        )

        inverted_names: list[str] = []
        for encoding in collection.encodings:
            name = inverted_index_stage_name(collection.name, encoding)
            inverted_names.append(name)
            stages.append(
                StageDefinition(
                    name=name,
                    kind=StageKind.INVERTED_INDEX,
                    depends_on=(forward_name,),
                    invocations=_inverted_index_invocations(collection, encoding, executables),
                    collection=collection.name,
                )
            )

        for index, run, target in run_targets:
            if target.name != collection.name:
                continue
            stages.append(
                StageDefinition(
                    name=evaluate_stage_name(collection.name, index),
                    kind=StageKind.EVALUATE,
                    depends_on=tuple(inverted_names),
                    invocations=_evaluate_invocations(
                        run,
                        collection,
                        config.run_output(index),
                        executables,
                        use_scorer,
                    ),
                    collection=collection.name,
                )
            )

    return StageGraph(stages=tuple(stages))
