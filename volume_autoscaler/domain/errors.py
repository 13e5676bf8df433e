class InvalidIntent(ValueError):
    """Raised when a VolumeAutoscaler spec cannot be turned into a usable policy."""


class InvalidTarget(InvalidIntent):
    """Raised when the target is not exactly one of volumeName / selector."""


class MetricsError(RuntimeError):
    """Base for everything the metrics client can raise."""


class TransportError(MetricsError):
    pass


class BackendError(MetricsError):
    pass


class MalformedResponse(MetricsError):
    pass


class NoResult(MetricsError):
    pass


class AmbiguousResult(MetricsError):
    def __init__(self, query: str, count: int) -> None:
        self.query = query
        self.count = count
        super().__init__(f"expected 1 series, got {count} for query: {query}")


class ResizeError(RuntimeError):
    pass


class NotExpandable(ResizeError):
    pass


class ResizeConflict(ResizeError):
    pass


class ResizeInProgress(ResizeError):
    pass


class DeadlineExceeded(RuntimeError):
    """Raised instead of issuing a platform call once the cycle's budget is spent."""
