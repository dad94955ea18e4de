"""Threaded, in-process execution of stage artifacts under a pipeline schedule."""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from onnx import ModelProto, helper
from onnx.reference import ReferenceEvaluator

from pipesplit._naming import EventSlot, strip_sync

from ._event_pool import EventPool
from ._ops import make_sync_ops

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from onnx.reference.op_run import OpRun

    from pipesplit._partition import PartitionResult, StageArtifact
    from pipesplit._schedule import PipelineSchedule

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True, slots=True)
class PipelineRun:
    """Outputs of every stage invocation of one pipeline run.

    Attributes:
        stage_outputs: ``stage_outputs[mb][stage]`` maps output names to values.
        pending_events: Tokens recorded but never waited on when the run ended.

    """

    stage_outputs: list[list[dict[str, np.ndarray]]]
    pending_events: list[int] = field(default_factory=list)

    @property
    def num_microbatches(self) -> int:
        return len(self.stage_outputs)

    def outputs(self, microbatch: int) -> dict[str, np.ndarray]:
        """Outputs of all stages for one microbatch, without ``_sync`` transport tensors."""
        merged: dict[str, np.ndarray] = {}
        for outputs in self.stage_outputs[microbatch]:
            merged.update({name: value for name, value in outputs.items() if strip_sync(name) is None})
        return merged


def _as_models(stages: PartitionResult | Sequence[StageArtifact | ModelProto]) -> list[ModelProto]:
    items = stages.artifacts if hasattr(stages, "artifacts") else stages
    return [item if isinstance(item, ModelProto) else item.model for item in items]


def _placeholder(model: ModelProto, name: str) -> np.ndarray:
    for vi in model.graph.input:
        if vi.name == name and vi.type.tensor_type.elem_type:
            return np.zeros((), dtype=helper.tensor_dtype_to_np_dtype(vi.type.tensor_type.elem_type))
    return np.zeros((), dtype=np.float32)


def stage_feeds(
    model: ModelProto,
    schedule: PipelineSchedule,
    microbatch: int,
    stage: int,
    feeds: Mapping[str, np.ndarray],
) -> dict[str, np.ndarray]:
    """Build the complete input dict of one stage invocation.

    Event inputs come from the schedule. Ordinary inputs and ``<x>_sync``
    inputs of main-graph inputs come from ``feeds``. Any other ``<x>_sync``
    input is filled with a placeholder that the data-wait replaces with the
    upstream value, or rejects when no upstream value arrives.

    Raises:
        KeyError: If an ordinary input has no value in ``feeds``.

    """
    events = schedule.feeds(microbatch, stage)
    result: dict[str, np.ndarray] = {}
    for vi in model.graph.input:
        name = vi.name
        original = strip_sync(name)
        if EventSlot.parse(name) is not None:
            result[name] = events[name]
        elif name in feeds:
            result[name] = feeds[name]
        elif original is not None and original in feeds:
            result[name] = feeds[original]
        elif original is not None:
            result[name] = _placeholder(model, name)
        else:
            msg = f"Stage {stage} input '{name}' has no value for microbatch {microbatch}"
            raise KeyError(msg)
    return result


def _run_invocation(
    model: ModelProto,
    ops: list[type[OpRun]],
    inputs: dict[str, np.ndarray],
    label: str,
) -> dict[str, np.ndarray]:
    logger.debug(f"{label}: start")
    evaluator = ReferenceEvaluator(model, new_ops=ops)
    values = evaluator.run(None, inputs)
    logger.debug(f"{label}: done")
    return dict(zip(evaluator.output_names, values, strict=True))


def run_pipeline(
    stages: PartitionResult | Sequence[StageArtifact | ModelProto],
    schedule: PipelineSchedule,
    feeds: Sequence[Mapping[str, np.ndarray]],
    *,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> PipelineRun:
    """Run every (microbatch, stage) invocation concurrently, one thread each.

    Nothing orders the threads except the wait/record nodes in the artifacts,
    so a correct schedule yields the same values as the unsplit model. The
    first failing invocation aborts the event pool, so the others stop waiting
    and its exception reaches the caller even without a timeout.

    Args:
        stages: Stage artifacts (or plain models) in stage order.
        schedule: Token assignment for the run.
        feeds: Main-graph inputs, one mapping per microbatch.
        timeout: Seconds any single wait may block; None waits forever.

    Returns:
        The PipelineRun holding every stage's outputs.

    Raises:
        ValueError: If the counts of stages or microbatches disagree with the schedule.
        EventTimeoutError: If a wait is never satisfied (a deadlock or a lost record).
        ScheduleError: If a data-wait receives no value for one of its tensors.

    """
    models = _as_models(stages)
    if len(models) != schedule.num_stages:
        msg = f"Schedule covers {schedule.num_stages} stage(s) but {len(models)} were given"
        raise ValueError(msg)
    if len(feeds) != schedule.num_microbatches:
        msg = f"Schedule covers {schedule.num_microbatches} microbatch(es) but {len(feeds)} feeds were given"
        raise ValueError(msg)

    pool = EventPool(timeout=timeout)
    ops = make_sync_ops(pool, external={name for feed in feeds for name in feed})
    num_tasks = schedule.num_microbatches * schedule.num_stages
    inputs = [
        [stage_feeds(model, schedule, mb, stage, feeds[mb]) for stage, model in enumerate(models)]
        for mb in range(schedule.num_microbatches)
    ]
    logger.info(f"Running {schedule.num_microbatches} microbatch(es) over {schedule.num_stages} stage(s)")

    with ThreadPoolExecutor(max_workers=num_tasks, thread_name_prefix="pipesplit") as executor:
        futures = [
            [
                executor.submit(_run_invocation, model, ops, inputs[mb][stage], f"microbatch {mb} stage {stage}")
                for stage, model in enumerate(models)
            ]
            for mb in range(schedule.num_microbatches)
        ]
        flat = [future for row in futures for future in row]
        done, _ = wait(flat, return_when=FIRST_EXCEPTION)
        failed = next((future for future in flat if future in done and future.exception() is not None), None)
        if failed is not None:
            logger.debug("An invocation failed, aborting the remaining waits")
            pool.abort()

    if failed is not None:
        failed.result()
    stage_outputs = [[future.result() for future in row] for row in futures]

    pending = pool.pending()
    if pending:
        logger.debug(f"Events never waited on: {pending}")
    return PipelineRun(stage_outputs=stage_outputs, pending_events=pending)


def run_reference(model: ModelProto, feeds: Mapping[str, np.ndarray]) -> dict[str, np.ndarray]:
    """Run the unsplit model once with the ONNX reference evaluator."""
    evaluator = ReferenceEvaluator(model)
    values = evaluator.run(None, dict(feeds))
    return dict(zip(evaluator.output_names, values, strict=True))
