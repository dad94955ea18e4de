"""Top-level split operation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pipesplit._ir import ComputationGraph
from pipesplit._schedule import SyncLayout

from ._assembler import StageArtifact, assemble, write_artifacts
from ._partitioner import partition

if TYPE_CHECKING:
    from onnx import ModelProto

    from pipesplit._cut import CutSpecification

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "sub_"


def artifact_path(output_dir: Path, stage: int, prefix: str = DEFAULT_PREFIX) -> Path:
    return output_dir / f"{prefix}{stage}.onnx"


@dataclass(frozen=True, slots=True)
class PartitionResult:
    """The stage artifacts produced from one main graph and one cut specification.

    Attributes:
        cut: The cut specification that was applied.
        artifacts: One artifact per stage, in stage order.

    """

    cut: CutSpecification
    artifacts: tuple[StageArtifact, ...]

    @property
    def num_stages(self) -> int:
        return len(self.artifacts)

    def __getitem__(self, stage: int) -> StageArtifact:
        return self.artifacts[stage]

    def layouts(self) -> list[SyncLayout]:
        """Event slots each artifact exposes, for building a schedule."""
        return [SyncLayout.from_model(a.stage, a.model) for a in self.artifacts]

    def save(self, output_dir: Path | str, prefix: str = DEFAULT_PREFIX) -> list[Path]:
        """Write ``<prefix><stage>.onnx`` files into ``output_dir`` (all or nothing).

        Returns:
            The written paths, in stage order.

        """
        paths = [artifact_path(Path(output_dir), a.stage, prefix) for a in self.artifacts]
        write_artifacts(self.artifacts, paths)
        return paths


def split_model(model: ModelProto | ComputationGraph, cut: CutSpecification) -> PartitionResult:
    """Split a forward+gradient graph into self-contained, event-gated stage artifacts.

    Every stage is validated and assembled before the result is returned, so a
    failure never yields a partial set of artifacts.

    Args:
        model: The main ONNX model, or an already indexed ComputationGraph.
        cut: How to cut the graph into stages.

    Returns:
        The PartitionResult holding one artifact per stage.

    Raises:
        PartitionError: If the cut cannot be applied to the graph.

    Example:
        >>> result = split_model(onnx.load("backprop.onnx"), cut)
        >>> result.save("out")
        [PosixPath('out/sub_0.onnx'), PosixPath('out/sub_1.onnx')]

    """
    main = model if isinstance(model, ComputationGraph) else ComputationGraph.from_model(model)
    stage_graphs = partition(main, cut)
    artifacts = tuple(assemble(main, stage_graph) for stage_graph in stage_graphs)
    logger.info(f"Split '{main.name}' ({len(main)} nodes) into {len(artifacts)} stage(s)")
    return PartitionResult(cut=cut, artifacts=artifacts)
