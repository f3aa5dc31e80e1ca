"""
Exception types raised across the ingestion and processing pipeline.
"""


class ScanPipelineError(Exception):
    """Base class for all pipeline errors."""


class ImageDecodeError(ScanPipelineError):
    """Image bytes could not be decoded. Fatal for the single item only."""


class ImageSkipped(ScanPipelineError):
    """An image source returned something that should not be ingested."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Skipped {source}: {reason}")
        self.source = source
        self.reason = reason


class NotFound(ScanPipelineError):
    """A book, page or job does not exist."""


class PipelineError(ScanPipelineError):
    """The pipeline cannot perform the requested operation."""


class InvalidTransition(PipelineError):
    """A pipeline action is not allowed from the current status."""

    def __init__(self, action: str, status: str, reason: str) -> None:
        super().__init__(f"Cannot {action} pipeline in status '{status}': {reason}")
        self.action = action
        self.status = status
        self.reason = reason


class StepFailed(PipelineError):
    """An atomic pipeline step could not complete."""


class BudgetExceeded(ScanPipelineError):
    """A spend ceiling would be exceeded by the next inference call."""

    def __init__(self, spent: float, ceiling: float, amount: float) -> None:
        super().__init__(
            f"Budget limit reached: ${spent:.4f} spent of ${ceiling:.4f}, "
            f"next call needs ${amount:.4f}"
        )
        self.spent = spent
        self.ceiling = ceiling
        self.amount = amount
