"""Exception taxonomy for the generation orchestrator."""


class NeverendingError(Exception):
    """Base class for all orchestrator errors."""


class TransientProviderError(NeverendingError):
    """Timeout, connection drop or rate limit from the generation service."""


class FatalBatchError(NeverendingError):
    """A batch cannot continue; the work is marked failed."""


class EnrichmentFailure(NeverendingError):
    """Ledger extraction or voice review failed. Never blocks a chapter."""


class ReviewParseError(NeverendingError):
    """A quality review reply could not be parsed into scores."""


class InvalidTransitionError(NeverendingError):
    def __init__(self, work_id: str, current: str, requested: str):
        self.work_id = work_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Work {work_id} cannot move from {current} to {requested}"
        )


class WorkNotFoundError(NeverendingError):
    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Work {work_id} not found")
