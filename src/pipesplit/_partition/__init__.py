"""Graph partitioning, sync node insertion and artifact assembly.

The top-level entry point is ``split_model``:

1. ``validate_cut`` checks the cut specification against the main graph
2. ``partition`` copies each node into its stage and inserts wait/record nodes
3. ``assemble`` turns each stage into a self-contained ONNX artifact
"""

from ._assembler import StageArtifact, assemble, self_containment_problems, write_artifacts
from ._partitioner import partition
from ._split import DEFAULT_PREFIX, PartitionResult, artifact_path, split_model
from ._stage_graph import StageGraph
from ._sync import DATA_CHANNEL, PIPELINE_CHANNEL, EventChannel, insert_entry_wait, insert_exit_record
from ._validate import validate_cut

__all__ = [
    "DATA_CHANNEL",
    "DEFAULT_PREFIX",
    "PIPELINE_CHANNEL",
    "EventChannel",
    "PartitionResult",
    "StageArtifact",
    "StageGraph",
    "artifact_path",
    "assemble",
    "insert_entry_wait",
    "insert_exit_record",
    "partition",
    "self_containment_problems",
    "split_model",
    "validate_cut",
    "write_artifacts",
]
