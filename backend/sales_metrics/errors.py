"""Exception types raised by the metrics engine."""


class MetricsError(Exception):
    """Base class for every metrics engine failure."""


class MetricValidationError(MetricsError, ValueError):
    """Request rejected before any query was built.

    ``errors`` carries every reason found, so callers can report them all
    at once instead of one per round trip.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid metric request: " + ", ".join(self.errors))


class RegistryError(MetricsError):
    """The metric catalog is internally inconsistent (raised at import)."""


class UnsafeQueryError(MetricsError):
    """Generated SQL failed the read-only guard."""


class QueryExecutionError(MetricsError):
    """The store rejected a query or returned an unusable payload."""
