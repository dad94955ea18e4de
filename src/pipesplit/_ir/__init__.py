"""Intermediate representation of the main computation graph.

The IR is a read-only view over an ONNX model that assigns every node a
stable identifier and answers the lookups the partitioner needs:

- NodeId: Stable node identifier referenced by cut specifications
- GraphNode: One node with its identifier and position
- ComputationGraph: Ordered nodes plus initializers, inputs, outputs and value descriptors
"""

from ._graph import ComputationGraph
from ._node import GraphNode, NodeId, assign_node_ids

__all__ = ["ComputationGraph", "GraphNode", "NodeId", "assign_node_ids"]
