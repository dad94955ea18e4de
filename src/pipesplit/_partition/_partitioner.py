"""Assignment of main-graph nodes to stage sub-graphs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pipesplit._cut import Direction, StageAssignment

from ._stage_graph import StageGraph
from ._sync import insert_entry_wait, insert_exit_record
from ._validate import validate_cut

if TYPE_CHECKING:
    from pipesplit._cut import CutSpecification
    from pipesplit._ir import ComputationGraph, GraphNode, NodeId

logger = logging.getLogger(__name__)


def _direction_bounds(
    main: ComputationGraph,
    assignments: dict[NodeId, StageAssignment],
) -> tuple[dict[StageAssignment, NodeId], dict[StageAssignment, NodeId]]:
    """First and last node of every direction, in main-graph order."""
    first: dict[StageAssignment, NodeId] = {}
    last: dict[StageAssignment, NodeId] = {}
    for node in main.nodes:
        assignment = assignments[node.id]
        first.setdefault(assignment, node.id)
        last[assignment] = node.id
    return first, last


def _consumed_across_stages(cut: CutSpecification) -> dict[str, set[int]]:
    """Map each sync input to the stages that receive it."""
    consumers: dict[str, set[int]] = {}
    for assignment, direction_cut in cut.iter_directions():
        for name in direction_cut.sync_inputs:
            consumers.setdefault(name, set()).add(assignment.stage)
    return consumers


def _copy_node(
    stage_graph: StageGraph,
    main: ComputationGraph,
    cut: CutSpecification,
    node: GraphNode,
    consumers: dict[str, set[int]],
) -> None:
    sync_inputs = cut.waited_inputs(stage_graph.stage)
    sync_outputs = cut.recorded_outputs(stage_graph.stage)

    for name in node.inputs:
        if main.is_initializer(name):
            stage_graph.add_initializer(main.initializers[name])
        if name in sync_inputs or stage_graph.produces(name):
            continue
        # Carry over an external dependency of the main graph verbatim
        if main.is_graph_input(name):
            stage_graph.declare_input(name, main.inputs[name])

    stage_graph.copy_node(node)

    for name in node.outputs:
        if name in sync_outputs:
            continue  # published by the exit record instead
        if main.is_graph_output(name):
            stage_graph.declare_output(name, main.outputs[name])
        elif consumers.get(name, set()) - {stage_graph.stage}:
            # Received elsewhere without an exit record here: expose it for the runtime to hand over
            stage_graph.declare_output(name, main.value_info_for(name))
        else:
            stage_graph.describe(name, main.value_info.get(name))


def partition(main: ComputationGraph, cut: CutSpecification) -> list[StageGraph]:
    """Split the main graph into one sub-graph per stage.

    Nodes are visited once, in main-graph order, and appended to their stage,
    so every stage stays topologically sorted without re-sorting. Sync nodes
    are placed around each direction: the forward entry wait at the top of the
    stage, the backward entry wait right before the first backward node, and
    each exit record right after the direction's last node.

    Args:
        main: The main graph (forward and gradient nodes).
        cut: The cut specification.

    Returns:
        One StageGraph per stage, in stage order.

    Raises:
        PartitionError: If the cut does not match the graph (see ``validate_cut``).

    """
    assignments = validate_cut(main, cut)
    first, last = _direction_bounds(main, assignments)
    consumers = _consumed_across_stages(cut)

    stage_graphs = [StageGraph(stage=i) for i in range(cut.num_stages)]
    for stage_graph in stage_graphs:
        insert_entry_wait(stage_graph, main, cut, StageAssignment(stage_graph.stage, Direction.FORWARD))

    for node in main.nodes:
        assignment = assignments[node.id]
        stage_graph = stage_graphs[assignment.stage]

        if assignment.direction is Direction.BACKWARD and first[assignment] == node.id:
            insert_entry_wait(stage_graph, main, cut, assignment)

        _copy_node(stage_graph, main, cut, node, consumers)
        logger.debug(f"Node '{node.id}' ({node.op_type}) -> stage {assignment}")

        if last[assignment] == node.id:
            insert_exit_record(stage_graph, main, cut, assignment)

    for stage_graph in stage_graphs:
        logger.info(
            f"Stage {stage_graph.stage}: {len(stage_graph.node_ids)} nodes, "
            f"{len(stage_graph.nodes) - len(stage_graph.node_ids)} sync nodes, "
            f"{len(stage_graph.inputs)} inputs, {len(stage_graph.outputs)} outputs",
        )
    return stage_graphs
