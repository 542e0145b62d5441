"""Pulse — Error Taxonomy.

Per-period and per-row failures are collected into run results and
diagnostics; only QueryTimeoutError is allowed to fail a whole request.
"""


class PulseError(Exception):
    """Base class for engine errors."""


class FetchFailure(PulseError):
    """The fetch provider reported failure for a period."""

    def __init__(self, period: str, message: str = "fetch provider request failed"):
        self.period = period
        super().__init__(f"{period}: {message}")


class ConversionFailure(PulseError):
    """Daily → monthly rollup (or its store write) failed for one unit."""

    def __init__(self, metric_name: str, period: str, message: str):
        self.metric_name = metric_name
        self.period = period
        super().__init__(f"{metric_name} @ {period}: {message}")


class DecodeFailure(PulseError):
    """A stored metric value could not be decoded.

    The codec never raises this; the merger records one per skipped value
    as a diagnostic sample.
    """

    def __init__(self, metric_name: str, period: str, source: str, reason: str):
        self.metric_name = metric_name
        self.period = period
        self.source = source
        self.reason = reason
        super().__init__(f"{source} {metric_name} @ {period}: {reason}")


class QueryTimeoutError(PulseError):
    """The dashboard read-and-merge deadline elapsed."""

    def __init__(self, timeout_seconds: float, period_count: int):
        self.timeout_seconds = timeout_seconds
        self.period_count = period_count
        super().__init__(
            f"Dashboard query timed out after {timeout_seconds}s ({period_count} periods)"
        )


class FetchProviderError(PulseError):
    """Raised by the HTTP fetch provider when the ingestion service errors."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)
