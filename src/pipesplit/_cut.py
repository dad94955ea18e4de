"""Cut specification: which nodes and boundary tensors belong to which stage."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ._errors import InvalidSpecificationError
from ._ir import NodeId

if TYPE_CHECKING:
    from collections.abc import Iterator


class Direction(StrEnum):
    """Forward or backward (gradient) portion of a stage's work."""

    FORWARD = "fw"
    BACKWARD = "bw"


@dataclass(frozen=True, slots=True, order=True)
class StageAssignment:
    """The (stage, direction) bucket a node is placed in."""

    stage: int
    direction: Direction

    def __str__(self) -> str:
        return f"{self.stage}_{self.direction}"


class DirectionCut(BaseModel):
    """Membership and boundary tensors of one direction of one stage.

    All lists keep their declaration order, which decides the input/output
    order of the synthesized sync nodes.

    Attributes:
        nodes: Identifiers of the nodes that run in this direction.
        sync_inputs: Cross-stage tensors consumed here.
        sync_outputs: Cross-stage tensors produced here.
        wait_depends: Tensors the entry wait must depend on (ordering only).
        record_depends: Tensors the exit record must depend on (ordering only).

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    nodes: tuple[NodeId, ...] = ()
    sync_inputs: tuple[str, ...] = ()
    sync_outputs: tuple[str, ...] = ()
    wait_depends: tuple[str, ...] = ()
    record_depends: tuple[str, ...] = ()

    @field_validator("nodes", "sync_inputs", "sync_outputs", "wait_depends", "record_depends")
    @classmethod
    def _no_duplicates(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        duplicates = sorted({name for name in value if value.count(name) > 1})
        if duplicates:
            msg = f"duplicate entries: {', '.join(duplicates)}"
            raise ValueError(msg)
        return value

    @property
    def has_entry_sync(self) -> bool:
        """Whether the direction needs a wait at its entry."""
        return bool(self.sync_inputs or self.wait_depends)

    @property
    def has_exit_sync(self) -> bool:
        """Whether the direction needs a record at its exit."""
        return bool(self.sync_outputs or self.record_depends)


class StageCut(BaseModel):
    """Forward and backward cuts of one stage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    fw: DirectionCut = Field(default_factory=DirectionCut)
    bw: DirectionCut = Field(default_factory=DirectionCut)

    def direction(self, direction: Direction) -> DirectionCut:
        return self.fw if direction is Direction.FORWARD else self.bw

    def sync_inputs(self) -> frozenset[str]:
        """Sync inputs of both directions."""
        return frozenset(self.fw.sync_inputs) | frozenset(self.bw.sync_inputs)

    def sync_outputs(self) -> frozenset[str]:
        """Sync outputs of both directions."""
        return frozenset(self.fw.sync_outputs) | frozenset(self.bw.sync_outputs)


class CutSpecification(BaseModel):
    """Caller-declared mapping of nodes and boundary tensors to stages.

    Any number of stages is supported. The pipeline runs forward through
    stages ``0..N-1`` and backward through ``N-1..0``.

    Example:
        >>> cut = CutSpecification(stages=[
        ...     StageCut(fw=DirectionCut(nodes=("A",), sync_outputs=("A_out",))),
        ...     StageCut(fw=DirectionCut(nodes=("B", "C"), sync_inputs=("A_out",))),
        ... ])
        >>> cut.assignments()[NodeId("B")]
        StageAssignment(stage=1, direction=<Direction.FORWARD: 'fw'>)

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    stages: tuple[StageCut, ...]

    @field_validator("stages")
    @classmethod
    def _at_least_one_stage(cls, value: tuple[StageCut, ...]) -> tuple[StageCut, ...]:
        if not value:
            msg = "a cut specification needs at least one stage"
            raise ValueError(msg)
        return value

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CutSpecification:
        """Validate raw data (e.g. parsed TOML) into a cut specification.

        Raises:
            InvalidSpecificationError: If the data does not describe a valid cut.

        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            msg = f"Invalid cut specification: {e}"
            raise InvalidSpecificationError(msg) from e

    @property
    def num_stages(self) -> int:
        return len(self.stages)

    def direction(self, assignment: StageAssignment) -> DirectionCut:
        return self.stages[assignment.stage].direction(assignment.direction)

    def iter_directions(self) -> Iterator[tuple[StageAssignment, DirectionCut]]:
        """Yield every direction, forward lists first, then backward lists."""
        for direction in Direction:
            for stage, stage_cut in enumerate(self.stages):
                yield StageAssignment(stage, direction), stage_cut.direction(direction)

    def assignments(self) -> dict[NodeId, StageAssignment]:
        """Map every listed node to its (stage, direction).

        Raises:
            InvalidSpecificationError: If a node is listed in more than one direction.

        """
        result: dict[NodeId, StageAssignment] = {}
        for assignment, cut in self.iter_directions():
            for node_id in cut.nodes:
                if node_id in result:
                    msg = f"Node '{node_id}' is listed in both {result[node_id]} and {assignment}"
                    raise InvalidSpecificationError(msg)
                result[node_id] = assignment
        return result

    def pipeline_order(self) -> list[StageAssignment]:
        """Directions in the order a microbatch flows through them."""
        forward = [StageAssignment(s, Direction.FORWARD) for s in range(self.num_stages)]
        backward = [StageAssignment(s, Direction.BACKWARD) for s in reversed(range(self.num_stages))]
        return forward + backward

    def is_first(self, assignment: StageAssignment) -> bool:
        """The pipeline entry point: stage 0 forward has no upstream stage."""
        return assignment == StageAssignment(0, Direction.FORWARD)

    def is_terminal(self, assignment: StageAssignment) -> bool:
        """The pipeline exit: gradients terminate at stage 0 backward."""
        return assignment == StageAssignment(0, Direction.BACKWARD)

    def waited_inputs(self, stage: int) -> frozenset[str]:
        """Sync inputs of ``stage`` that arrive through a wait node.

        Stage 0 forward never waits, so its sync inputs are ordinary inputs.
        """
        return frozenset(
            name
            for direction in Direction
            if not self.is_first(StageAssignment(stage, direction))
            for name in self.stages[stage].direction(direction).sync_inputs
        )

    def recorded_outputs(self, stage: int) -> frozenset[str]:
        """Sync outputs of ``stage`` that leave through a record node."""
        return frozenset(
            name
            for direction in Direction
            if not self.is_terminal(StageAssignment(stage, direction))
            for name in self.stages[stage].direction(direction).sync_outputs
        )
