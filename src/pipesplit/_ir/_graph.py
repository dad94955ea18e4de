"""Read-only view of the main computation graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import onnx
from onnx import helper, shape_inference

from pipesplit._graph import DependencyGraph

from ._node import GraphNode, NodeId, assign_node_ids

if TYPE_CHECKING:
    from collections.abc import Iterator

    from onnx import ModelProto, TensorProto, ValueInfoProto

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ComputationGraph:
    """An ONNX model holding forward and gradient nodes, indexed for partitioning.

    The wrapped model is never mutated. Lookups are by tensor name.

    Attributes:
        model: The (shape-inferred) ONNX model.
        nodes: Nodes in their original, topologically valid order.
        initializers: Constant tensors by name.
        inputs: Declared graph inputs by name.
        outputs: Declared graph outputs by name.
        value_info: Shape/type metadata of intermediate tensors by name.

    """

    model: ModelProto
    nodes: tuple[GraphNode, ...]
    initializers: dict[str, TensorProto] = field(default_factory=dict)
    inputs: dict[str, ValueInfoProto] = field(default_factory=dict)
    outputs: dict[str, ValueInfoProto] = field(default_factory=dict)
    value_info: dict[str, ValueInfoProto] = field(default_factory=dict)
    _by_id: dict[NodeId, GraphNode] = field(default_factory=dict, repr=False)
    _producers: dict[str, GraphNode] = field(default_factory=dict, repr=False)

    @classmethod
    def from_model(cls, model: ModelProto, *, infer_shapes: bool = True) -> ComputationGraph:
        """Index an ONNX model.

        Args:
            model: The main model (forward plus gradient nodes).
            infer_shapes: Run ONNX shape inference first so tensors crossing a
                cut carry type metadata even when the model omits value_info.

        Raises:
            ValueError: If two nodes share an identifier or a tensor has two producers.

        """
        if infer_shapes:
            try:
                model = shape_inference.infer_shapes(model)
            except (onnx.checker.ValidationError, onnx.shape_inference.InferenceError) as e:
                logger.warning(f"Shape inference failed, using declared value_info only: {e}")

        graph = model.graph
        node_ids = assign_node_ids(graph.node)
        nodes = tuple(GraphNode(id=node_id, index=i, proto=n) for i, (node_id, n) in enumerate(zip(node_ids, graph.node)))

        producers: dict[str, GraphNode] = {}
        for node in nodes:
            for name in node.outputs:
                if name in producers:
                    msg = f"Tensor '{name}' is produced by both '{producers[name].id}' and '{node.id}'"
                    raise ValueError(msg)
                producers[name] = node

        logger.debug(f"Indexed graph '{graph.name}' with {len(nodes)} nodes")
        return cls(
            model=model,
            nodes=nodes,
            initializers={t.name: t for t in graph.initializer},
            inputs={vi.name: vi for vi in graph.input},
            outputs={vi.name: vi for vi in graph.output},
            value_info={vi.name: vi for vi in graph.value_info},
            _by_id={node.id: node for node in nodes},
            _producers=producers,
        )

    @property
    def name(self) -> str:
        return self.model.graph.name

    def node(self, node_id: NodeId | str) -> GraphNode:
        """Get a node by its identifier.

        Raises:
            KeyError: If no node has this identifier.

        """
        return self._by_id[NodeId(node_id)]

    def has_node(self, node_id: NodeId | str) -> bool:
        return node_id in self._by_id

    def producer_of(self, tensor: str) -> GraphNode | None:
        """Return the node producing ``tensor``, or None for inputs, initializers and unknown names."""
        return self._producers.get(tensor)

    def is_initializer(self, tensor: str) -> bool:
        return tensor in self.initializers

    def is_graph_input(self, tensor: str) -> bool:
        return tensor in self.inputs

    def is_graph_output(self, tensor: str) -> bool:
        return tensor in self.outputs

    def knows_tensor(self, tensor: str) -> bool:
        """Check whether ``tensor`` is an initializer, input, output or produced value of this graph."""
        return (
            tensor in self.initializers
            or tensor in self.inputs
            or tensor in self.outputs
            or tensor in self.value_info
            or tensor in self._producers
        )

    def value_info_for(self, tensor: str) -> ValueInfoProto | None:
        """Resolve shape/type metadata for ``tensor``.

        Looks at value_info, then graph outputs, then graph inputs, and finally
        synthesizes a descriptor from an initializer. Returns None when the
        graph carries no metadata for the name.
        """
        for table in (self.value_info, self.outputs, self.inputs):
            if tensor in table:
                return table[tensor]
        if tensor in self.initializers:
            init = self.initializers[tensor]
            return helper.make_tensor_value_info(tensor, init.data_type, list(init.dims))
        return None

    def iter_tensor_names(self) -> Iterator[str]:
        """Yield every tensor name the graph knows, without duplicates."""
        seen: set[str] = set()
        for names in (self.inputs, self.initializers, self._producers, self.outputs, self.value_info):
            for name in names:
                if name not in seen:
                    seen.add(name)
                    yield name

    def validate_topology(self) -> list[str]:
        """Check that every node input is available before the node runs.

        Returns:
            List of error messages. Empty list if the node order is valid.

        """
        available = set(self.initializers) | set(self.inputs)
        errors: list[str] = []
        for node in self.nodes:
            errors.extend(
                f"Node '{node.id}' consumes '{name}' before it is produced"
                for name in node.inputs
                if name not in available
            )
            available.update(node.outputs)
        return errors

    def dataflow(self) -> DependencyGraph[NodeId]:
        """Build the node-level dataflow graph (producer -> consumer)."""
        edges: list[tuple[NodeId, NodeId]] = []
        for node in self.nodes:
            for name in node.inputs:
                producer = self._producers.get(name)
                if producer is not None:
                    edges.append((producer.id, node.id))
        return DependencyGraph.from_edges(edges, nodes=[node.id for node in self.nodes])

    def __len__(self) -> int:
        """Return the number of nodes in the graph."""
        return len(self.nodes)
