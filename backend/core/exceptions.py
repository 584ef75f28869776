"""
Matching pipeline exceptions.

Every transient failure of the pipeline has its own type so callers can
absorb it at the smallest scope (one step or one candidate).
"""
from typing import Optional


class MatchingError(Exception):
    """Base class for match-and-notify pipeline errors."""


class GeoResolutionFailed(MatchingError):
    """Raised when a city/region cannot be resolved to coordinates."""

    def __init__(self, city: str, region: str, reason: str):
        self.city = city
        self.region = region
        self.reason = reason
        super().__init__(f"Could not geocode '{city}, {region}': {reason}")


class RetrievalUnavailable(MatchingError):
    """Raised when the member store cannot be queried."""


class GateUnavailable(MatchingError):
    """Raised when the relevance gate cannot judge a candidate."""


class EmbeddingUnavailable(MatchingError):
    """Raised when an embedding cannot be generated."""


class PushDeliveryError(MatchingError):
    """Raised when the push provider rejects or fails a message."""

    def __init__(self, message: str, provider_error: Optional[str] = None):
        self.provider_error = provider_error
        super().__init__(message)


class RunRetryable(MatchingError):
    """Raised when a run ended retryable and its trigger must be delivered again."""

    def __init__(self, need_id: object, reason: Optional[str] = None):
        self.need_id = need_id
        self.reason = reason
        super().__init__(f"Matching run for need {need_id} is retryable: {reason or 'unknown'}")
