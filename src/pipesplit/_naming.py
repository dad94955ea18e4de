"""Naming scheme for synchronized tensors and event-token inputs.

A tensor ``x`` crossing a stage boundary travels as::

    x -> record_pipeline -> x_send -> record_data -> x_sync
    x_sync -> wait_data -> x_recv -> wait_pipeline -> x

so that a transport (send/recv) can later sit between the two halves of
each pair without renaming anything the compute nodes see.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from ._cut import Direction, StageAssignment

SYNC_SUFFIX = "_sync"
RECV_SUFFIX = "_recv"
SEND_SUFFIX = "_send"

SYNC_DOMAIN = "com.microsoft"
SYNC_OPSET_VERSION = 1
WAIT_OP = "WaitEvent"
RECORD_OP = "RecordEvent"


def sync_name(tensor: str) -> str:
    return tensor + SYNC_SUFFIX


def recv_name(tensor: str) -> str:
    return tensor + RECV_SUFFIX


def send_name(tensor: str) -> str:
    return tensor + SEND_SUFFIX


def strip_sync(name: str) -> str | None:
    """Return the original tensor name of a ``_sync`` name, or None."""
    if name.endswith(SYNC_SUFFIX) and len(name) > len(SYNC_SUFFIX):
        return name[: -len(SYNC_SUFFIX)]
    return None


class SyncChannel(StrEnum):
    """Data readiness (same microbatch across stages) or execution order (within a stage)."""

    DATA = "data"
    PIPELINE = "pipeline"


class SyncAction(StrEnum):
    WAIT = "wait"
    RECORD = "record"


_SLOT_PATTERN = re.compile(r"^(wait|record)_(data|pipeline)_(\d+)_(fw|bw)$")


@dataclass(frozen=True, slots=True, order=True)
class EventSlot:
    """One event-token input of a stage artifact, e.g. ``wait_data_1_fw``."""

    assignment: StageAssignment
    action: SyncAction
    channel: SyncChannel

    @property
    def input_name(self) -> str:
        return f"{self.action}_{self.channel}_{self.assignment}"

    @classmethod
    def parse(cls, name: str) -> EventSlot | None:
        """Parse an event input name; returns None for ordinary tensor names."""
        match = _SLOT_PATTERN.match(name)
        if match is None:
            return None
        action, channel, stage, direction = match.groups()
        return cls(
            assignment=StageAssignment(int(stage), Direction(direction)),
            action=SyncAction(action),
            channel=SyncChannel(channel),
        )

    def __str__(self) -> str:
        return self.input_name
