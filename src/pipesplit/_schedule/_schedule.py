"""Event-token assignment for a one-forward-one-backward pipeline."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from pipesplit._cut import Direction, StageAssignment
from pipesplit._errors import ScheduleError
from pipesplit._events import NO_EVENT, TokenAllocator
from pipesplit._graph import DependencyGraph
from pipesplit._naming import EventSlot, SyncAction, SyncChannel

from ._order import Step, one_f_one_b_order

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pipesplit._events import EventToken

    from ._layout import SyncLayout

logger = logging.getLogger(__name__)

# (microbatch, slot) -> token; a missing or None entry is fed as NO_EVENT
TokenTable = dict[tuple[int, EventSlot], "EventToken | None"]


def _pipeline_order(num_stages: int) -> list[StageAssignment]:
    forward = [StageAssignment(s, Direction.FORWARD) for s in range(num_stages)]
    backward = [StageAssignment(s, Direction.BACKWARD) for s in reversed(range(num_stages))]
    return forward + backward


@dataclass(frozen=True, slots=True)
class PipelineSchedule:
    """Concrete event-token values for every (microbatch, stage, direction).

    Attributes:
        layouts: Event slots of each stage artifact, in stage order.
        num_microbatches: Number of microbatches per iteration.
        orders: Invocation order of each stage.
        tokens: Token assigned to each (microbatch, slot).
        allocator: The allocator the tokens came from (owns the value ranges).

    """

    layouts: tuple[SyncLayout, ...]
    num_microbatches: int
    orders: tuple[tuple[Step, ...], ...]
    tokens: TokenTable = field(default_factory=dict)
    allocator: TokenAllocator = field(default_factory=TokenAllocator)

    @property
    def num_stages(self) -> int:
        return len(self.layouts)

    def token_value(self, microbatch: int, slot: EventSlot) -> int:
        token = self.tokens.get((microbatch, slot))
        return NO_EVENT if token is None else token.value

    def events(self, microbatch: int, stage: int) -> dict[str, int]:
        """Event input name -> token value for one stage invocation."""
        return {
            slot.input_name: self.token_value(microbatch, slot) for slot in self.layouts[stage].sorted_slots()
        }

    def feeds(self, microbatch: int, stage: int) -> dict[str, np.ndarray]:
        """Event inputs of one stage invocation as int64 scalars, ready to feed an engine."""
        return {name: np.array(value, dtype=np.int64) for name, value in self.events(microbatch, stage).items()}

    def happens_before(self) -> DependencyGraph[tuple[int, StageAssignment]]:
        """Ordering constraints between (microbatch, direction) executions.

        Within one invocation the forward part runs before the backward part;
        across invocations every wait runs after the record of its token.
        """
        recorders: dict[int, tuple[int, StageAssignment]] = {}
        for (mb, slot), token in self.tokens.items():
            if token is not None and slot.action is SyncAction.RECORD:
                recorders.setdefault(token.value, (mb, slot.assignment))

        nodes: list[tuple[int, StageAssignment]] = []
        edges: list[tuple[tuple[int, StageAssignment], tuple[int, StageAssignment]]] = []
        for mb in range(self.num_microbatches):
            for stage in range(self.num_stages):
                fw = (mb, StageAssignment(stage, Direction.FORWARD))
                bw = (mb, StageAssignment(stage, Direction.BACKWARD))
                nodes.extend((fw, bw))
                edges.append((fw, bw))
        for (mb, slot), token in self.tokens.items():
            if token is not None and slot.action is SyncAction.WAIT and token.value in recorders:
                edges.append((recorders[token.value], (mb, slot.assignment)))
        return DependencyGraph.from_edges(edges, nodes=nodes)

    def issues(self) -> list[str]:
        """Validate the schedule and return a list of problems.

        Checks for:
        - waits whose token is never recorded, or recorded more than once
        - tokens waited on more than once (a wait consumes its event)
        - tokens outside the range owned by their channel and stage
        - overlapping ranges
        - data-wait tensors the paired data-record does not carry
        - cycles in the happens-before graph (a static deadlock)

        Returns:
            List of error messages. Empty list if the schedule is valid.

        """
        problems: list[str] = []
        recorded: defaultdict[int, list[str]] = defaultdict(list)
        waited: defaultdict[int, list[str]] = defaultdict(list)

        for (mb, slot), token in sorted(self.tokens.items(), key=lambda item: (item[0][0], item[0][1])):
            if token is None:
                continue
            where = f"microbatch {mb} {slot.input_name}"
            (recorded if slot.action is SyncAction.RECORD else waited)[token.value].append(where)

            expected = (
                self.allocator.data_range()
                if slot.channel is SyncChannel.DATA
                else self.allocator.pipeline_range(slot.assignment.stage)
            )
            if token.value not in expected:
                problems.append(f"{where}: token {token.value} outside {expected.label}")

        for value, sites in sorted(recorded.items()):
            if len(sites) > 1:
                problems.append(f"Token {value} recorded more than once: {', '.join(sites)}")
        for value, sites in sorted(waited.items()):
            if value not in recorded:
                problems.append(f"Token {value} is never recorded but waited on by {', '.join(sites)}")
            if len(sites) > 1:
                problems.append(f"Token {value} waited on more than once: {', '.join(sites)}")

        ranges = self.allocator.allocated()
        for i, first in enumerate(ranges):
            problems.extend(
                f"Ranges overlap: {first.label} and {second.label}" for second in ranges[i + 1 :] if first.overlaps(second)
            )

        problems.extend(self._handover_issues())

        cycle = self.happens_before().find_cycle()
        if cycle is not None:
            path = " -> ".join(f"mb{mb}:{assignment}" for mb, assignment in cycle)
            problems.append(f"Deadlock: cyclic wait {path}")

        return problems

    def _handover_issues(self) -> list[str]:
        """Tensors a data-wait expects that its paired data-record does not carry.

        A data-wait is paired with the previous direction in pipeline order, so
        a tensor recorded further upstream (a skip connection), or handed over
        as a plain output, never reaches it. Tensors that no artifact produces
        are main-graph inputs and are fed directly.
        """
        order = _pipeline_order(self.num_stages)
        previous = dict(zip(order[1:], order, strict=False))
        sources: defaultdict[str, list[str]] = defaultdict(list)
        for layout in self.layouts:
            for direction, name in sorted(layout.published):
                sources[name].append(f"the data record of {StageAssignment(layout.stage, direction)}")
            for name in sorted(layout.outputs):
                sources[name].append(f"an output of stage {layout.stage}")

        problems: list[str] = []
        for layout in self.layouts:
            for direction, name in sorted(layout.received):
                assignment = StageAssignment(layout.stage, direction)
                upstream = previous.get(assignment)
                if name not in sources:
                    continue
                if (
                    upstream is not None
                    and upstream.stage != assignment.stage
                    and (upstream.direction, name) in self.layouts[upstream.stage].published
                ):
                    continue
                paired = "no direction" if upstream is None else str(upstream)
                problems.append(
                    f"{assignment} waits for '{name}' but its data wait is paired with {paired}, "
                    f"which does not record it (it comes from {', '.join(sources[name])})",
                )
        return problems

    def validate(self) -> None:
        """Raise ScheduleError if the schedule has any problem."""
        problems = self.issues()
        if problems:
            msg = "Invalid pipeline schedule:\n  " + "\n  ".join(problems)
            raise ScheduleError(msg)

    def to_dict(self) -> dict[str, Any]:
        """Plain-data form of the schedule (for TOML export)."""
        return {
            "num_stages": self.num_stages,
            "num_microbatches": self.num_microbatches,
            "range_size": self.allocator.range_size,
            "stages": [
                {
                    "stage": stage,
                    "order": [str(step) for step in self.orders[stage]],
                    "microbatches": [
                        {"microbatch": mb, "events": self.events(mb, stage)} for mb in range(self.num_microbatches)
                    ],
                }
                for stage in range(self.num_stages)
            ],
        }


def _assign_pipeline_tokens(
    layout: SyncLayout,
    order: Sequence[Step],
    allocator: TokenAllocator,
    tokens: TokenTable,
) -> None:
    """Chain the pipeline-channel slots of one stage in invocation order.

    Each wait takes the token of the most recent record that no other wait has
    consumed yet; the very first wait of the stage does not wait at all.
    """
    pending: EventToken | None = None
    for step in order:
        assignment = StageAssignment(layout.stage, step.direction)
        wait = EventSlot(assignment, SyncAction.WAIT, SyncChannel.PIPELINE)
        record = EventSlot(assignment, SyncAction.RECORD, SyncChannel.PIPELINE)
        if layout.has_slot(wait):
            tokens[step.microbatch, wait] = pending
            pending = None
        if layout.has_slot(record):
            pending = allocator.pipeline(layout.stage)
            tokens[step.microbatch, record] = pending


def _assign_data_tokens(
    layouts: Sequence[SyncLayout],
    num_microbatches: int,
    allocator: TokenAllocator,
    tokens: TokenTable,
) -> None:
    """Pair each cross-stage data-record with the data-wait of the next direction."""
    order = _pipeline_order(len(layouts))
    for mb in range(num_microbatches):
        for producer, consumer in zip(order, order[1:], strict=False):
            if producer.stage == consumer.stage:
                continue  # turnaround inside one invocation
            record = EventSlot(producer, SyncAction.RECORD, SyncChannel.DATA)
            wait = EventSlot(consumer, SyncAction.WAIT, SyncChannel.DATA)
            token = allocator.data() if layouts[producer.stage].has_slot(record) else None
            if token is not None:
                tokens[mb, record] = token
            if layouts[consumer.stage].has_slot(wait):
                if token is None:
                    logger.warning(f"Microbatch {mb}: {wait} has no upstream data record, it will not wait")
                tokens[mb, wait] = token


def build_schedule(
    layouts: Sequence[SyncLayout],
    num_microbatches: int,
    allocator: TokenAllocator | None = None,
) -> PipelineSchedule:
    """Assign event tokens for a one-forward-one-backward pipeline.

    Args:
        layouts: Event slots of each stage artifact, in stage order.
        num_microbatches: Number of microbatches to schedule.
        allocator: Token factory; a fresh ``TokenAllocator()`` by default.

    Returns:
        The PipelineSchedule.

    Raises:
        ScheduleError: If the layouts are not in stage order or a token range is exhausted.

    """
    for index, layout in enumerate(layouts):
        if layout.stage != index:
            msg = f"Layout at position {index} belongs to stage {layout.stage}"
            raise ScheduleError(msg)
    allocator = allocator if allocator is not None else TokenAllocator()

    num_stages = len(layouts)
    orders = tuple(tuple(one_f_one_b_order(num_stages, s, num_microbatches)) for s in range(num_stages))
    tokens: TokenTable = {}
    _assign_data_tokens(layouts, num_microbatches, allocator, tokens)
    for layout, order in zip(layouts, orders, strict=True):
        _assign_pipeline_tokens(layout, order, allocator, tokens)

    logger.debug(f"Scheduled {num_microbatches} microbatch(es) over {num_stages} stage(s)")
    return PipelineSchedule(
        layouts=tuple(layouts),
        num_microbatches=num_microbatches,
        orders=orders,
        tokens=tokens,
        allocator=allocator,
    )
