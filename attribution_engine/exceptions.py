"""Custom exceptions for the attribution engine."""


class AttributionEngineError(Exception):
    """Base exception for all attribution engine errors."""

    pass


class ValidationError(AttributionEngineError):
    """Raised when input is rejected before any mutation."""

    pass


class NotFoundError(AttributionEngineError):
    """Raised when a model, experiment or alert id is unknown."""

    pass


class StateConflictError(AttributionEngineError):
    """Raised when an operation is not valid in the current state."""

    pass


class PartialComputationError(AttributionEngineError):
    """Raised when weighting a single journey fails.

    Absorbed by the report builder and surfaced as ``error_count``.
    """

    def __init__(self, message: str, customer_id: str = None):
        super().__init__(message)
        self.customer_id = customer_id


class OperationCancelled(AttributionEngineError):
    """Raised when a cancellation signal is observed mid-operation."""

    pass
