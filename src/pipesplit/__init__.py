"""Pipeline-parallel partitioning of forward/backward ONNX training graphs."""

__all__ = [
    "NO_EVENT",
    "ComputationGraph",
    "CutSpecification",
    "DependencyGraph",
    "Direction",
    "DirectionCut",
    "EventAbortedError",
    "EventPool",
    "EventRange",
    "EventSlot",
    "EventTimeoutError",
    "EventToken",
    "GraphNode",
    "InvalidSpecificationError",
    "NodeId",
    "PartitionError",
    "PartitionResult",
    "PipelineRun",
    "PipelineSchedule",
    "ScheduleError",
    "SelfContainmentError",
    "StageArtifact",
    "StageAssignment",
    "StageCut",
    "Step",
    "SyncAction",
    "SyncChannel",
    "SyncLayout",
    "TokenAllocator",
    "UnclassifiedNodeError",
    "UnresolvableReferenceError",
    "build_schedule",
    "export_schedule",
    "load_artifacts",
    "load_cut_spec",
    "load_model",
    "make_sync_ops",
    "one_f_one_b_order",
    "run_pipeline",
    "run_reference",
    "save_artifacts",
    "save_cut_spec",
    "split_model",
    "validate_cut",
]

from ._cut import CutSpecification, Direction, DirectionCut, StageAssignment, StageCut
from ._errors import (
    EventAbortedError,
    EventTimeoutError,
    InvalidSpecificationError,
    PartitionError,
    ScheduleError,
    SelfContainmentError,
    UnclassifiedNodeError,
    UnresolvableReferenceError,
)
from ._events import NO_EVENT, EventRange, EventToken, TokenAllocator
from ._graph import DependencyGraph
from ._io import export_schedule, load_artifacts, load_cut_spec, load_model, save_artifacts, save_cut_spec
from ._ir import ComputationGraph, GraphNode, NodeId
from ._naming import EventSlot, SyncAction, SyncChannel
from ._partition import PartitionResult, StageArtifact, split_model, validate_cut
from ._runtime import EventPool, PipelineRun, make_sync_ops, run_pipeline, run_reference
from ._schedule import PipelineSchedule, Step, SyncLayout, build_schedule, one_f_one_b_order
