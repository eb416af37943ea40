"""
Error taxonomy for the download pipeline.

Every failure leaves the service layer as exactly one of these classes. The
message is meant for people; raw transport or ffmpeg output goes in `detail`.
"""

from typing import Optional


class FetchError(Exception):
    """Base class for classified pipeline failures"""

    kind = 'fetch_error'

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class PlanNotFound(FetchError):
    """No combination of renditions satisfies the request"""

    kind = 'plan_not_found'


class SourceUnavailable(FetchError):
    """The catalog says the source is private, removed or restricted"""

    kind = 'source_unavailable'


class TransientLookupFailure(FetchError):
    """Catalog lookup failed in a way that may succeed on retry"""

    kind = 'transient_lookup_failure'


class LookupExhausted(FetchError):
    """
    Raised when every retry of a transient lookup failure has been used up.

    Carries the number of attempts made.
    """

    kind = 'lookup_exhausted'

    def __init__(self, message: str, detail: Optional[str] = None, attempts: int = 0):
        super().__init__(message, detail)
        self.attempts = attempts


class FetchTimeout(FetchError):
    """A stream transfer exceeded its deadline"""

    kind = 'fetch_timeout'


class FetchFailed(FetchError):
    """A stream transfer errored"""

    kind = 'fetch_failed'


class ProcessingTimeout(FetchError):
    """ffmpeg exceeded its wall-clock ceiling and was killed"""

    kind = 'processing_timeout'


class ProcessingFailed(FetchError):
    """ffmpeg exited non-zero or could not be started"""

    kind = 'processing_failed'


class PartialCleanupFailure(FetchError):
    """
    A temporary file could not be removed.

    Only ever logged; it must not replace the outcome of the request.
    """

    kind = 'partial_cleanup_failure'
