"""Finalization and serialization of stage artifacts."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from onnx import ModelProto, helper

from pipesplit._errors import SelfContainmentError
from pipesplit._naming import SYNC_DOMAIN, SYNC_OPSET_VERSION

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pipesplit._ir import ComputationGraph, NodeId

    from ._stage_graph import StageGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StageArtifact:
    """One self-contained stage graph, ready to be handed to a runtime.

    Attributes:
        stage: Stage index.
        model: The serialized-ready ONNX model.
        node_ids: Identifiers of the main-graph nodes the stage runs, in order.

    """

    stage: int
    model: ModelProto
    node_ids: tuple[NodeId, ...]

    @property
    def input_names(self) -> list[str]:
        return [vi.name for vi in self.model.graph.input]

    @property
    def output_names(self) -> list[str]:
        return [vi.name for vi in self.model.graph.output]

    def to_bytes(self) -> bytes:
        return self.model.SerializeToString()


def self_containment_problems(model: ModelProto) -> list[str]:
    """List every tensor a model consumes or declares as output without being able to provide it.

    A node input must be an initializer, a declared input or the output of an
    earlier node; a declared output must be produced by a node or be an input
    or initializer.
    """
    graph = model.graph
    available = {t.name for t in graph.initializer} | {vi.name for vi in graph.input}
    problems: list[str] = []
    for index, node in enumerate(graph.node):
        label = node.name or (node.output[0] if node.output else f"#{index}")
        problems.extend(
            f"node '{label}' consumes unresolved tensor '{name}'"
            for name in node.input
            if name and name not in available
        )
        available.update(name for name in node.output if name)
    problems.extend(
        f"output '{vi.name}' is never produced" for vi in graph.output if vi.name not in available
    )
    return problems


def _opset_imports(main: ComputationGraph) -> list:
    imports = [helper.make_opsetid(op.domain, op.version) for op in main.model.opset_import]
    if not any(op.domain == SYNC_DOMAIN for op in imports):
        imports.append(helper.make_opsetid(SYNC_DOMAIN, SYNC_OPSET_VERSION))
    return imports


def assemble(main: ComputationGraph, stage_graph: StageGraph) -> StageArtifact:
    """Turn a filled-in stage graph into a stage artifact.

    The artifact keeps the main model's metadata (IR version, producer, opset
    imports) and additionally imports the sync-node domain.

    Raises:
        SelfContainmentError: If the stage consumes a tensor it cannot resolve.

    """
    graph = helper.make_graph(
        nodes=stage_graph.nodes,
        name=f"{main.name or 'main'}_stage{stage_graph.stage}",
        inputs=list(stage_graph.inputs.values()),
        outputs=list(stage_graph.outputs.values()),
        initializer=list(stage_graph.initializers.values()),
        value_info=list(stage_graph.value_info.values()),
    )

    model = ModelProto()
    model.CopyFrom(main.model)
    model.ClearField("graph")
    model.graph.CopyFrom(graph)
    del model.opset_import[:]
    model.opset_import.extend(_opset_imports(main))

    problems = self_containment_problems(model)
    if problems:
        raise SelfContainmentError(stage_graph.stage, problems)

    return StageArtifact(stage=stage_graph.stage, model=model, node_ids=tuple(stage_graph.node_ids))


def _reserve(target: Path, suffix: str) -> Path:
    fd, name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=suffix, dir=target.parent)
    os.close(fd)
    return Path(name)


def _roll_back(placed: Sequence[tuple[Path, Path | None]]) -> set[Path]:
    """Undo renamed artifacts; returns the backups that could not be restored."""
    stranded: set[Path] = set()
    for target, backup in reversed(placed):
        try:
            if backup is None:
                target.unlink(missing_ok=True)
            else:
                backup.replace(target)
        except OSError as e:
            logger.warning(f"Could not restore {target}, previous contents kept in {backup}: {e}")
            if backup is not None:
                stranded.add(backup)
    return stranded


def write_artifacts(artifacts: Sequence[StageArtifact], paths: Sequence[Path]) -> None:
    """Write every artifact, or none of them.

    All artifacts are checked and serialized first; each is written to a
    temporary file beside its target. The temporary files are then renamed
    into place, moving any existing file aside first. If anything fails, the
    files already renamed are put back and every temporary file is removed.

    Raises:
        ValueError: If the number of paths does not match the number of artifacts.
        SelfContainmentError: If an artifact is not self-contained.

    """
    if len(artifacts) != len(paths):
        msg = f"Got {len(paths)} paths for {len(artifacts)} artifacts"
        raise ValueError(msg)

    for artifact in artifacts:
        problems = self_containment_problems(artifact.model)
        if problems:
            raise SelfContainmentError(artifact.stage, problems)
    payloads = [artifact.to_bytes() for artifact in artifacts]

    scratch: list[Path] = []
    placed: list[tuple[Path, Path | None]] = []
    staged: list[tuple[Path, Path]] = []
    committed = False
    try:
        for payload, raw_path in zip(payloads, paths, strict=True):
            target = Path(raw_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = _reserve(target, ".tmp")
            scratch.append(tmp_path)
            staged.append((tmp_path, target))
            tmp_path.write_bytes(payload)

        for tmp_path, target in staged:
            backup = None
            if target.exists():
                backup = _reserve(target, ".bak")
                scratch.append(backup)
                target.replace(backup)
            placed.append((target, backup))
            tmp_path.replace(target)
        committed = True
    finally:
        stranded = set() if committed else _roll_back(placed)
        for path in scratch:
            if path not in stranded:
                path.unlink(missing_ok=True)

    for _, path in staged:
        logger.info(f"Wrote {path}")
