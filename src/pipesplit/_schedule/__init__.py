"""Event-token schedules for running stage artifacts as a 1F1B pipeline."""

from ._layout import SyncLayout
from ._order import Step, one_f_one_b_order
from ._schedule import PipelineSchedule, build_schedule

__all__ = [
    "PipelineSchedule",
    "Step",
    "SyncLayout",
    "build_schedule",
    "one_f_one_b_order",
]
