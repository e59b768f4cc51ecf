"""Exception hierarchy for the alert pipeline."""


class PipelineError(Exception):
    """Base exception for pipeline operations."""
    pass


class AuthenticationError(PipelineError):
    """Caller failed the function auth gate."""
    pass


class MetricComputationError(PipelineError):
    """A goal or alert metric could not be computed."""
    pass


class PersistenceError(PipelineError):
    """A store write failed."""
    pass


class DeliveryError(PipelineError):
    """A single outbound webhook attempt failed."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = True,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.response_body = response_body


class AlertNotFoundError(PipelineError):
    """Alert instance does not exist."""
    pass


class AlertAlreadyResolvedError(PipelineError):
    """Alert instance has already been resolved."""
    pass
