"""Validation of a cut specification against the main graph."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pipesplit._errors import (
    InvalidSpecificationError,
    PartitionError,
    UnclassifiedNodeError,
    UnresolvableReferenceError,
)
from pipesplit._naming import strip_sync

if TYPE_CHECKING:
    from pipesplit._cut import CutSpecification, DirectionCut, StageAssignment
    from pipesplit._ir import ComputationGraph, NodeId

logger = logging.getLogger(__name__)


def _check_references(
    main: ComputationGraph,
    cut: CutSpecification,
    assignment: StageAssignment,
    direction_cut: DirectionCut,
) -> None:
    where = f"stage {assignment.stage} {assignment.direction}"
    for node_id in direction_cut.nodes:
        if not main.has_node(node_id):
            raise UnresolvableReferenceError("node", node_id, f"{where} nodes")

    for field_name in ("sync_inputs", "sync_outputs"):
        for name in getattr(direction_cut, field_name):
            if not main.knows_tensor(name):
                raise UnresolvableReferenceError("tensor", name, f"{where} {field_name}")

    stage_cut = cut.stages[assignment.stage]
    boundary = stage_cut.sync_inputs() | stage_cut.sync_outputs()
    for field_name in ("wait_depends", "record_depends"):
        for name in getattr(direction_cut, field_name):
            if main.knows_tensor(name):
                continue
            # A dependency may name the synchronized copy of a boundary tensor of the same stage
            original = strip_sync(name)
            if original is not None and original in boundary:
                continue
            raise UnresolvableReferenceError("dependency", name, f"{where} {field_name}")


def _check_consistency(
    main: ComputationGraph,
    cut: CutSpecification,
    assignments: dict[NodeId, StageAssignment],
    assignment: StageAssignment,
    direction_cut: DirectionCut,
) -> None:
    where = f"stage {assignment.stage} {assignment.direction}"

    if not direction_cut.nodes and (direction_cut.has_entry_sync or direction_cut.has_exit_sync):
        msg = f"{where} declares boundary tensors or dependencies but has no nodes"
        raise InvalidSpecificationError(msg)

    both = sorted(set(direction_cut.sync_inputs) & set(direction_cut.sync_outputs))
    if both:
        msg = f"{where}: {', '.join(both)} listed as both sync input and sync output"
        raise InvalidSpecificationError(msg)

    if cut.is_first(assignment):
        external = [name for name in direction_cut.sync_inputs if not main.is_graph_input(name)]
        if external:
            msg = f"{where} is the pipeline entry; sync inputs {', '.join(external)} must be graph inputs"
            raise InvalidSpecificationError(msg)
    if cut.is_terminal(assignment) and direction_cut.sync_outputs:
        msg = f"{where} is the pipeline exit; no stage can receive {', '.join(direction_cut.sync_outputs)}"
        raise InvalidSpecificationError(msg)

    for name in direction_cut.sync_inputs:
        producer = main.producer_of(name)
        if producer is not None and assignments[producer.id].stage == assignment.stage:
            msg = (
                f"{where}: sync input '{name}' is produced by node '{producer.id}' of the same stage; "
                "it cannot also arrive from another stage"
            )
            raise InvalidSpecificationError(msg)

    for name in direction_cut.sync_outputs:
        producer = main.producer_of(name)
        if producer is None or assignments[producer.id] != assignment:
            owner = "no node" if producer is None else f"node '{producer.id}' ({assignments[producer.id]})"
            msg = f"{where}: sync output '{name}' must be produced in this direction, but is produced by {owner}"
            raise InvalidSpecificationError(msg)


def validate_cut(main: ComputationGraph, cut: CutSpecification) -> dict[NodeId, StageAssignment]:
    """Check a cut specification against the main graph before anything is rewritten.

    Args:
        main: The main graph.
        cut: The cut specification.

    Returns:
        The mapping from node identifier to (stage, direction).

    Raises:
        PartitionError: If the main graph is not topologically sorted.
        InvalidSpecificationError: If the cut is internally inconsistent.
        UnresolvableReferenceError: If the cut names unknown nodes or tensors.
        UnclassifiedNodeError: If some main-graph node is not assigned.

    """
    topology_errors = main.validate_topology()
    if topology_errors:
        msg = f"Main graph is not topologically sorted: {topology_errors[0]}"
        raise PartitionError(msg)

    assignments = cut.assignments()
    for assignment, direction_cut in cut.iter_directions():
        _check_references(main, cut, assignment, direction_cut)

    unclassified = [node.id for node in main.nodes if node.id not in assignments]
    if unclassified:
        raise UnclassifiedNodeError(unclassified)

    for assignment, direction_cut in cut.iter_directions():
        _check_consistency(main, cut, assignments, assignment, direction_cut)

    logger.debug(f"Cut specification valid: {len(assignments)} nodes in {cut.num_stages} stage(s)")
    return assignments
