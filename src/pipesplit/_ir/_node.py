"""Node identity for computation graphs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, NewType

if TYPE_CHECKING:
    from collections.abc import Sequence

    from onnx import NodeProto

NodeId = NewType("NodeId", str)


def assign_node_ids(nodes: Sequence[NodeProto]) -> list[NodeId]:
    """Assign a stable identifier to every node.

    The identifier is the node's name when it has one, otherwise the name of
    its first output, otherwise ``<op_type>_<index>`` for nodes without
    outputs.

    Raises:
        ValueError: If two nodes end up with the same identifier.

    """
    ids: list[NodeId] = []
    seen: dict[NodeId, int] = {}
    for index, node in enumerate(nodes):
        if node.name:
            node_id = NodeId(node.name)
        elif node.output and node.output[0]:
            node_id = NodeId(node.output[0])
        else:
            node_id = NodeId(f"{node.op_type}_{index}")
        if node_id in seen:
            msg = f"Duplicate node id '{node_id}' at positions {seen[node_id]} and {index}"
            raise ValueError(msg)
        seen[node_id] = index
        ids.append(node_id)
    return ids


@dataclass(frozen=True, slots=True)
class GraphNode:
    """A node of the main graph together with its identity.

    Attributes:
        id: Stable identifier used by cut specifications.
        index: Position of the node in the main graph.
        proto: The original ONNX node, copied verbatim into stage graphs.

    """

    id: NodeId
    index: int
    proto: NodeProto

    @property
    def op_type(self) -> str:
        return self.proto.op_type

    @property
    def domain(self) -> str:
        return self.proto.domain

    @property
    def inputs(self) -> tuple[str, ...]:
        # Optional inputs are encoded as empty names in ONNX
        return tuple(name for name in self.proto.input if name)

    @property
    def outputs(self) -> tuple[str, ...]:
        return tuple(name for name in self.proto.output if name)
