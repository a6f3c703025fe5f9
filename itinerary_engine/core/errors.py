"""
Error taxonomy for itinerary generation.

Only ConfigurationError is allowed to reach callers of the generation
pipeline; everything else is absorbed by retries or the fallback itinerary.
"""

from __future__ import annotations

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
CONFIGURATION_STATUS_CODES = {401, 403}

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "rate-limit",
    "overloaded",
    "unavailable",
    "resource exhausted",
    "try again",
)
_CONFIGURATION_MARKERS = ("api key", "api_key", "credential", "permission denied", "unauthorized")


class ItineraryEngineError(Exception):
    """Base class for generation pipeline errors."""

    retryable: bool = False


class TransientBackendError(ItineraryEngineError):
    """Timeout, rate limit or overload from the generation backend."""

    retryable = True


class MalformedOutputError(ItineraryEngineError):
    """Backend text could not be turned into a schema-valid itinerary."""

    retryable = True


class ExhaustionError(ItineraryEngineError):
    """A strategy used up all of its attempts without a valid result."""


class ConfigurationError(ItineraryEngineError):
    """Missing credentials or an unusable backend. Never retried."""


def _status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_backend_error(exc: BaseException) -> ItineraryEngineError:
    """
    Map an arbitrary exception raised by the generation backend into the taxonomy.

    Args:
        exc: Exception raised while calling the backend

    Returns:
        An ItineraryEngineError instance chained to the original exception
    """
    if isinstance(exc, ItineraryEngineError):
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    status = _status_code(exc)

    if status in CONFIGURATION_STATUS_CODES or any(m in lowered for m in _CONFIGURATION_MARKERS):
        classified: ItineraryEngineError = ConfigurationError(message)
    elif (
        isinstance(exc, TimeoutError)
        or status in TRANSIENT_STATUS_CODES
        or any(m in lowered for m in _TRANSIENT_MARKERS)
    ):
        classified = TransientBackendError(message)
    elif "json" in lowered or "parse" in lowered or "schema" in lowered:
        classified = MalformedOutputError(message)
    else:
        # Unknown failures are treated as retryable, like transient ones
        classified = TransientBackendError(message)

    classified.__cause__ = exc
    return classified
