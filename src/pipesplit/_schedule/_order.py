"""Per-stage invocation order of a one-forward-one-backward pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from pipesplit._cut import Direction
from pipesplit._errors import ScheduleError


@dataclass(frozen=True, slots=True)
class Step:
    """One direction of one microbatch executed on a stage."""

    microbatch: int
    direction: Direction

    def __str__(self) -> str:
        prefix = "F" if self.direction is Direction.FORWARD else "B"
        return f"{prefix}{self.microbatch}"


def one_f_one_b_order(num_stages: int, stage: int, num_microbatches: int) -> list[Step]:
    """Order in which ``stage`` runs forward and backward steps under 1F1B.

    The stage first runs ``num_stages - stage - 1`` warm-up forwards, then
    alternates one forward and one backward, then drains the remaining
    backwards. The last stage therefore alternates from the start.

    Example:
        >>> [str(s) for s in one_f_one_b_order(3, 0, 4)]
        ['F0', 'F1', 'F2', 'B0', 'F3', 'B1', 'B2', 'B3']
        >>> [str(s) for s in one_f_one_b_order(3, 2, 3)]
        ['F0', 'B0', 'F1', 'B1', 'F2', 'B2']

    Raises:
        ScheduleError: If the stage index or counts are out of range.

    """
    if num_stages < 1 or num_microbatches < 1:
        msg = f"Need at least one stage and one microbatch, got {num_stages} and {num_microbatches}"
        raise ScheduleError(msg)
    if not 0 <= stage < num_stages:
        msg = f"Stage {stage} out of range for {num_stages} stage(s)"
        raise ScheduleError(msg)

    warmup = min(num_stages - stage - 1, num_microbatches)
    steps = [Step(mb, Direction.FORWARD) for mb in range(warmup)]
    for mb in range(warmup, num_microbatches):
        steps.append(Step(mb, Direction.FORWARD))
        steps.append(Step(mb - warmup, Direction.BACKWARD))
    steps.extend(Step(mb, Direction.BACKWARD) for mb in range(num_microbatches - warmup, num_microbatches))
    return steps
