"""In-process execution of stage artifacts with the ONNX reference evaluator."""

from ._event_pool import EventPool
from ._ops import make_sync_ops
from ._runner import DEFAULT_TIMEOUT, PipelineRun, run_pipeline, run_reference, stage_feeds

__all__ = [
    "DEFAULT_TIMEOUT",
    "EventPool",
    "PipelineRun",
    "make_sync_ops",
    "run_pipeline",
    "run_reference",
    "stage_feeds",
]
