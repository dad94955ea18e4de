"""Errors raised while partitioning a graph or building a pipeline schedule."""


class PartitionError(Exception):
    """Base class for errors detected before any stage artifact is written."""


class UnclassifiedNodeError(PartitionError):
    """Raised when a main-graph node is not assigned to any stage direction."""

    def __init__(self, node_ids: list[str]) -> None:
        self.node_ids = node_ids
        preview = ", ".join(repr(n) for n in node_ids[:5])
        more = f" (and {len(node_ids) - 5} more)" if len(node_ids) > 5 else ""
        super().__init__(f"{len(node_ids)} node(s) not assigned to any stage: {preview}{more}")


class UnresolvableReferenceError(PartitionError):
    """Raised when the cut specification names a node or tensor the main graph does not know."""

    def __init__(self, kind: str, name: str, where: str) -> None:
        self.kind = kind
        self.name = name
        self.where = where
        super().__init__(f"Unknown {kind} '{name}' referenced in {where}")


class InvalidSpecificationError(PartitionError):
    """Raised when a cut specification is internally inconsistent."""


class SelfContainmentError(InvalidSpecificationError):
    """Raised when a stage artifact consumes a tensor it cannot resolve."""

    def __init__(self, stage: int, problems: list[str]) -> None:
        self.stage = stage
        self.problems = problems
        details = "; ".join(problems)
        super().__init__(f"Stage {stage} artifact is not self-contained: {details}")


class ScheduleError(ValueError):
    """Raised when event tokens cannot be allocated or a schedule is inconsistent."""


class EventTimeoutError(TimeoutError):
    """Raised when a wait is not satisfied by any record within the allowed time."""

    def __init__(self, token: int, timeout: float) -> None:
        self.token = token
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for event {token}")


class EventAbortedError(RuntimeError):
    """Raised in a blocked wait when the run it belongs to has been aborted."""

    def __init__(self, token: int) -> None:
        self.token = token
        super().__init__(f"Wait for event {token} aborted")
