"""Which event slots a stage artifact exposes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pipesplit._naming import SYNC_DOMAIN, WAIT_OP, EventSlot, SyncChannel, strip_sync

if TYPE_CHECKING:
    from collections.abc import Iterable

    from onnx import ModelProto

    from pipesplit._cut import Direction


@dataclass(frozen=True, slots=True)
class SyncLayout:
    """The event-token inputs of one stage artifact.

    A schedule only assigns tokens to slots that exist: a direction without
    boundary tensors has no wait or record nodes, and its neighbours must not
    wait on tokens it would never record.

    Attributes:
        stage: Stage index.
        slots: Every event slot declared as an input of the artifact.
        received: (direction, tensor) pairs a data-wait takes in as ``<tensor>_sync``.
        published: (direction, tensor) pairs a data-record sends out as ``<tensor>_sync``.
        outputs: Ordinary (not ``_sync``) outputs of the artifact.

    """

    stage: int
    slots: frozenset[EventSlot]
    received: frozenset[tuple[Direction, str]] = field(default_factory=frozenset)
    published: frozenset[tuple[Direction, str]] = field(default_factory=frozenset)
    outputs: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_input_names(cls, stage: int, names: Iterable[str]) -> SyncLayout:
        """Build the layout from input names, ignoring ordinary tensors.

        Raises:
            ValueError: If an event input belongs to a different stage.

        """
        slots: set[EventSlot] = set()
        for name in names:
            slot = EventSlot.parse(name)
            if slot is None:
                continue
            if slot.assignment.stage != stage:
                msg = f"Event input '{name}' does not belong to stage {stage}"
                raise ValueError(msg)
            slots.add(slot)
        return cls(stage=stage, slots=frozenset(slots))

    @classmethod
    def from_model(cls, stage: int, model: ModelProto) -> SyncLayout:
        """Build the layout of an artifact, including the tensors its data channel moves."""
        layout = cls.from_input_names(stage, (vi.name for vi in model.graph.input))
        received: set[tuple[Direction, str]] = set()
        published: set[tuple[Direction, str]] = set()
        for node in model.graph.node:
            slot = EventSlot.parse(node.input[0]) if node.domain == SYNC_DOMAIN and node.input else None
            if slot is None or slot.channel is not SyncChannel.DATA:
                continue
            if node.op_type == WAIT_OP:
                # Trailing inputs past the outputs are wait dependencies
                names = node.input[1 : 1 + len(node.output)]
                target = received
            else:
                names = node.output
                target = published
            for name in names:
                original = strip_sync(name)
                if original is not None:
                    target.add((slot.assignment.direction, original))
        outputs = frozenset(vi.name for vi in model.graph.output if strip_sync(vi.name) is None)
        return cls(
            stage=stage,
            slots=layout.slots,
            received=frozenset(received),
            published=frozenset(published),
            outputs=outputs,
        )

    def has_slot(self, slot: EventSlot) -> bool:
        return slot in self.slots

    def sorted_slots(self) -> list[EventSlot]:
        return sorted(self.slots)
