"""Reference-evaluator implementations of the sync operators.

Both operators pass their tensor inputs through unchanged: output ``i`` is
input ``i + 1`` (the first input is the event token). A data-channel record
publishes its outputs into the event pool, and the matching data-channel
wait substitutes them for the placeholders it was fed. A data-wait whose
payload lacks one of its ``<x>_sync`` tensors fails unless ``x`` is fed
directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from onnx.reference.op_run import OpRun

from pipesplit._errors import ScheduleError
from pipesplit._naming import SYNC_DOMAIN, EventSlot, SyncChannel, strip_sync

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ._event_pool import EventPool


def _channel(op: OpRun) -> SyncChannel | None:
    slot = EventSlot.parse(op.onnx_node.input[0])
    return None if slot is None else slot.channel


def _passthrough(op: OpRun, event_id: np.ndarray, tensors: tuple) -> tuple:
    outputs = tuple(tensors[: len(op.onnx_node.output)])
    # OpRun requires at least one result even for a node without outputs
    return outputs if outputs else (event_id,)


def _missing_payload(op: OpRun, payload: dict, external: frozenset[str]) -> list[str]:
    missing = []
    # Inputs past the outputs are wait dependencies, never substituted
    for name in op.onnx_node.input[1 : 1 + len(op.onnx_node.output)]:
        original = strip_sync(name)
        if name not in payload and original is not None and original not in external:
            missing.append(name)
    return missing


def make_sync_ops(pool: EventPool, external: Iterable[str] = ()) -> list[type[OpRun]]:
    """Build WaitEvent/RecordEvent operator classes bound to ``pool``.

    Pass the result as ``new_ops`` to ``onnx.reference.ReferenceEvaluator``.

    Args:
        pool: Event pool shared by every invocation of the run.
        external: Tensors fed directly to every stage (main-graph inputs); a
            data-wait may receive their ``_sync`` copies without a payload.

    """
    fed = frozenset(external)

    class WaitEvent(OpRun):
        op_domain = SYNC_DOMAIN

        def _run(self, event_id, *tensors):
            token = int(event_id)
            payload = pool.wait(token)
            if _channel(self) is SyncChannel.DATA:
                missing = _missing_payload(self, payload, fed)
                if missing:
                    msg = f"Event {token} at '{self.onnx_node.input[0]}' carries no value for {', '.join(missing)}"
                    raise ScheduleError(msg)
                names = self.onnx_node.input[1:]
                tensors = tuple(payload.get(name, value) for name, value in zip(names, tensors, strict=False))
            return _passthrough(self, event_id, tensors)

    class RecordEvent(OpRun):
        op_domain = SYNC_DOMAIN

        def _run(self, event_id, *tensors):
            outputs = _passthrough(self, event_id, tensors)
            payload = None
            if _channel(self) is SyncChannel.DATA:
                payload = dict(zip(self.onnx_node.output, tensors, strict=False))
            pool.record(int(event_id), payload)
            return outputs

    return [WaitEvent, RecordEvent]
