"""Mutable sub-graph builder used while a stage is being assembled."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from onnx import NodeProto, TensorProto, ValueInfoProto, helper

if TYPE_CHECKING:
    from pipesplit._ir import GraphNode, NodeId

logger = logging.getLogger(__name__)


def _renamed(value_info: ValueInfoProto, name: str) -> ValueInfoProto:
    copy = ValueInfoProto()
    copy.CopyFrom(value_info)
    copy.name = name
    return copy


@dataclass(slots=True)
class StageGraph:
    """The sub-graph of one stage while the partitioner fills it in.

    Every registry is keyed by tensor name and keeps insertion order, and
    registering a name twice is a no-op. Initializers are copied, so the
    finished stage shares no storage with the main graph or other stages.

    Attributes:
        stage: Stage index.
        nodes: Node sequence (copied compute nodes and synthesized sync nodes).
        node_ids: Identifiers of the copied main-graph nodes, in order.
        initializers: Owned copies of referenced initializers.
        inputs: Declared sub-graph inputs.
        outputs: Declared sub-graph outputs.
        value_info: Shape/type metadata for internal tensors.
        produced: Names produced by any node added so far.

    """

    stage: int
    nodes: list[NodeProto] = field(default_factory=list)
    node_ids: list[NodeId] = field(default_factory=list)
    initializers: dict[str, TensorProto] = field(default_factory=dict)
    inputs: dict[str, ValueInfoProto] = field(default_factory=dict)
    outputs: dict[str, ValueInfoProto] = field(default_factory=dict)
    value_info: dict[str, ValueInfoProto] = field(default_factory=dict)
    produced: set[str] = field(default_factory=set)

    def copy_node(self, node: GraphNode) -> None:
        """Append a verbatim copy of a main-graph node."""
        copy = NodeProto()
        copy.CopyFrom(node.proto)
        self.nodes.append(copy)
        self.node_ids.append(node.id)
        self.produced.update(node.outputs)

    def add_sync_node(self, node: NodeProto) -> None:
        self.nodes.append(node)
        self.produced.update(name for name in node.output if name)

    def produces(self, name: str) -> bool:
        return name in self.produced

    def add_initializer(self, tensor: TensorProto) -> bool:
        """Copy an initializer in unless one with the same name is present."""
        if tensor.name in self.initializers:
            return False
        copy = TensorProto()
        copy.CopyFrom(tensor)
        self.initializers[tensor.name] = copy
        return True

    def declare_input(self, name: str, source: ValueInfoProto | None) -> bool:
        """Declare a sub-graph input named ``name`` typed like ``source``.

        An input without known metadata is still declared (untyped) so the
        artifact stays loadable.
        """
        if name in self.inputs:
            return False
        if source is None:
            logger.warning(f"Stage {self.stage}: no type information for input '{name}', declaring it untyped")
            self.inputs[name] = helper.make_empty_tensor_value_info(name)
        else:
            self.inputs[name] = _renamed(source, name)
        return True

    def declare_event_input(self, name: str) -> bool:
        """Declare a scalar int64 event-token input."""
        if name in self.inputs:
            return False
        self.inputs[name] = helper.make_tensor_value_info(name, TensorProto.INT64, [])
        return True

    def declare_output(self, name: str, source: ValueInfoProto | None) -> bool:
        if name in self.outputs:
            return False
        self.outputs[name] = helper.make_empty_tensor_value_info(name) if source is None else _renamed(source, name)
        return True

    def describe(self, name: str, source: ValueInfoProto | None) -> bool:
        """Register shape/type metadata for an internal tensor; unknown metadata is skipped."""
        if source is None or name in self.value_info:
            return False
        self.value_info[name] = _renamed(source, name)
        return True
