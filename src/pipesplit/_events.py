"""Typed event tokens and a range-allocating factory.

Event tokens are integer rendezvous values fed to the ``wait_*``/``record_*``
inputs of stage artifacts. Values are split into disjoint ranges: one range
for data-dependency tokens and one range per stage for pipeline-order
tokens. ``TokenAllocator`` is the only way tokens are minted, so two owners
can never be handed the same value.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ._errors import ScheduleError
from ._naming import SyncChannel

NO_EVENT = -1
"""Token value that makes a wait return immediately and a record do nothing."""

DEFAULT_RANGE_SIZE = 100


@dataclass(frozen=True, slots=True, order=True)
class EventToken:
    """One synchronization rendezvous point."""

    value: int
    channel: SyncChannel

    def __int__(self) -> int:
        return self.value


@dataclass(frozen=True, slots=True)
class EventRange:
    """A half-open interval ``[start, stop)`` of token values with one owner.

    Attributes:
        start: First value in the range.
        stop: One past the last value.
        channel: Which kind of token the range hands out.
        stage: Owning stage for pipeline ranges, None for the shared data range.

    """

    start: int
    stop: int
    channel: SyncChannel
    stage: int | None = None

    def __contains__(self, value: object) -> bool:
        return isinstance(value, int) and self.start <= value < self.stop

    def __len__(self) -> int:
        return self.stop - self.start

    def overlaps(self, other: EventRange) -> bool:
        return self.start < other.stop and other.start < self.stop

    @property
    def label(self) -> str:
        if self.stage is None:
            return f"{self.channel} [{self.start}, {self.stop})"
        return f"{self.channel} stage {self.stage} [{self.start}, {self.stop})"


@dataclass(slots=True)
class _Cursor:
    range: EventRange
    next_value: int


@dataclass(slots=True)
class TokenAllocator:
    """Hands out event tokens from non-overlapping ranges.

    The data range is ``[0, range_size)``; stage ``s`` owns the pipeline range
    ``[range_size * (s + 1), range_size * (s + 2))``. With the default size
    this reproduces the conventional layout: 0-99 data, 100-199 stage 0,
    200-299 stage 1, and so on.

    Example:
        >>> allocator = TokenAllocator()
        >>> allocator.data().value, allocator.data().value
        (0, 1)
        >>> allocator.pipeline(1).value
        200

    """

    range_size: int = DEFAULT_RANGE_SIZE
    _cursors: dict[int | None, _Cursor] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if self.range_size < 1:
            msg = f"range_size must be positive, got {self.range_size}"
            raise ScheduleError(msg)

    def data_range(self) -> EventRange:
        return EventRange(0, self.range_size, SyncChannel.DATA)

    def pipeline_range(self, stage: int) -> EventRange:
        if stage < 0:
            msg = f"Stage index must be non-negative, got {stage}"
            raise ScheduleError(msg)
        start = self.range_size * (stage + 1)
        return EventRange(start, start + self.range_size, SyncChannel.PIPELINE, stage)

    def range_of(self, token: EventToken) -> EventRange | None:
        """Return the range a token value belongs to, or None if it is outside every range."""
        if token.value < 0:
            return None
        index = token.value // self.range_size
        return self.data_range() if index == 0 else self.pipeline_range(index - 1)

    def data(self) -> EventToken:
        """Allocate the next data-dependency token."""
        return self._allocate(None, self.data_range())

    def pipeline(self, stage: int) -> EventToken:
        """Allocate the next pipeline-order token of ``stage``."""
        return self._allocate(stage, self.pipeline_range(stage))

    def _allocate(self, key: int | None, event_range: EventRange) -> EventToken:
        cursor = self._cursors.setdefault(key, _Cursor(event_range, event_range.start))
        if cursor.next_value >= event_range.stop:
            msg = f"Event range exhausted: {event_range.label} (increase range_size)"
            raise ScheduleError(msg)
        token = EventToken(cursor.next_value, event_range.channel)
        cursor.next_value += 1
        return token

    def allocated(self) -> list[EventRange]:
        """Ranges that have handed out at least one token, in allocation order."""
        return [cursor.range for cursor in self._cursors.values() if cursor.next_value > cursor.range.start]
