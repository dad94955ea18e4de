"""Synthesis of wait/record event nodes at stage-direction boundaries.

Each boundary uses two independent event channels:

- the data channel tracks readiness of a microbatch's tensors across stages;
- the pipeline channel tracks execution order of invocations within a stage.

At the entry a data-wait feeds a pipeline-wait; at the exit a
pipeline-record feeds a data-record. A transport node can later be placed
between the two nodes of each pair without renaming anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from onnx import helper

from pipesplit._naming import (
    RECORD_OP,
    SYNC_DOMAIN,
    WAIT_OP,
    EventSlot,
    SyncAction,
    SyncChannel,
    recv_name,
    send_name,
    sync_name,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from onnx import NodeProto

    from pipesplit._cut import CutSpecification, StageAssignment
    from pipesplit._ir import ComputationGraph

    from ._stage_graph import StageGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EventChannel:
    """Factory for the wait/record nodes of one synchronization channel."""

    channel: SyncChannel

    def wait(
        self,
        stage_graph: StageGraph,
        assignment: StageAssignment,
        inputs: Sequence[str],
        outputs: Sequence[str],
    ) -> NodeProto:
        return self._emit(stage_graph, EventSlot(assignment, SyncAction.WAIT, self.channel), WAIT_OP, inputs, outputs)

    def record(
        self,
        stage_graph: StageGraph,
        assignment: StageAssignment,
        inputs: Sequence[str],
        outputs: Sequence[str],
    ) -> NodeProto:
        return self._emit(
            stage_graph,
            EventSlot(assignment, SyncAction.RECORD, self.channel),
            RECORD_OP,
            inputs,
            outputs,
        )

    @staticmethod
    def _emit(
        stage_graph: StageGraph,
        slot: EventSlot,
        op_type: str,
        inputs: Sequence[str],
        outputs: Sequence[str],
    ) -> NodeProto:
        # The event token is always the first input
        node = helper.make_node(
            op_type,
            [slot.input_name, *inputs],
            list(outputs),
            name=slot.input_name,
            domain=SYNC_DOMAIN,
        )
        stage_graph.add_sync_node(node)
        stage_graph.declare_event_input(slot.input_name)
        logger.debug(f"Stage {stage_graph.stage}: {op_type} '{slot.input_name}' ({len(inputs)} in, {len(outputs)} out)")
        return node


DATA_CHANNEL = EventChannel(SyncChannel.DATA)
PIPELINE_CHANNEL = EventChannel(SyncChannel.PIPELINE)


def insert_entry_wait(
    stage_graph: StageGraph,
    main: ComputationGraph,
    cut: CutSpecification,
    assignment: StageAssignment,
) -> list[NodeProto]:
    """Gate the start of a stage direction on its event tokens.

    Incoming tensors arrive as ``<x>_sync`` inputs and leave the pipeline-wait
    under their original names, which the compute nodes consume unchanged.
    Stage 0 forward is the pipeline entry and never waits.

    Returns:
        The synthesized wait nodes, in order (empty when nothing crosses the boundary).

    """
    direction_cut = cut.direction(assignment)
    if not direction_cut.has_entry_sync:
        return []
    if cut.is_first(assignment):
        logger.debug(f"Stage {assignment}: pipeline entry, sync inputs stay ordinary inputs")
        return []

    names = direction_cut.sync_inputs
    depends = list(direction_cut.wait_depends)

    for name in names:
        source = main.inputs[name] if main.is_graph_input(name) else main.value_info_for(name)
        stage_graph.declare_input(sync_name(name), source)
        if not main.is_graph_input(name):
            stage_graph.describe(recv_name(name), source)
        stage_graph.describe(name, source)

    nodes: list[NodeProto] = []
    if names:
        # Dependencies gate the first wait of the pair
        nodes.append(
            DATA_CHANNEL.wait(
                stage_graph,
                assignment,
                [*(sync_name(n) for n in names), *depends],
                [recv_name(n) for n in names],
            ),
        )
        pipeline_inputs = [recv_name(n) for n in names]
    else:
        pipeline_inputs = depends

    nodes.append(PIPELINE_CHANNEL.wait(stage_graph, assignment, pipeline_inputs, list(names)))
    return nodes


def insert_exit_record(
    stage_graph: StageGraph,
    main: ComputationGraph,
    cut: CutSpecification,
    assignment: StageAssignment,
) -> list[NodeProto]:
    """Signal the end of a stage direction and publish its outgoing tensors as ``<x>_sync``.

    The terminal direction (stage 0 backward) never records: gradients end
    the pipeline there and no stage waits on it.

    Returns:
        The synthesized record nodes, in order (empty when nothing crosses the boundary).

    """
    direction_cut = cut.direction(assignment)
    if not direction_cut.has_exit_sync:
        return []
    if cut.is_terminal(assignment):
        logger.debug(f"Stage {assignment}: pipeline exit, record dependencies ignored")
        return []

    names = direction_cut.sync_outputs
    nodes = [
        PIPELINE_CHANNEL.record(
            stage_graph,
            assignment,
            [*names, *direction_cut.record_depends],
            [send_name(n) for n in names],
        ),
        DATA_CHANNEL.record(
            stage_graph,
            assignment,
            [send_name(n) for n in names],
            [sync_name(n) for n in names],
        ),
    ]

    for name in names:
        source = main.value_info_for(name)
        stage_graph.declare_output(sync_name(name), source)
        stage_graph.describe(send_name(name), source)
        stage_graph.describe(name, source)

    return nodes
