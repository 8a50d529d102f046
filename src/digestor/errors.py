from __future__ import annotations


class DigestorError(Exception):
    """Base class for pipeline failures."""

    category = "internal_error"


class FetchError(DigestorError):
    category = "fetch_failed"


class ExtractionError(DigestorError):
    category = "extraction_failed"


class ScoringError(DigestorError):
    category = "scoring_failed"


class UpstreamError(DigestorError):
    """An external HTTP API answered with an error or could not be reached."""

    category = "upstream_failed"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(UpstreamError):
    category = "rate_limited"


class TransientServerError(UpstreamError):
    category = "upstream_unavailable"


class AuthError(UpstreamError):
    category = "upstream_auth_failed"


class SummarizationError(DigestorError):
    category = "summarization_failed"


class PersistenceError(DigestorError):
    category = "persistence_failed"


RETRYABLE_ERRORS = (RateLimitError, TransientServerError)


def classify_http_status(code: int, message: str) -> UpstreamError:
    if code == 429:
        return RateLimitError(message, code)
    if code in (401, 403):
        return AuthError(message, code)
    if code >= 500:
        return TransientServerError(message, code)
    return UpstreamError(message, code)


def error_category(exc: BaseException) -> str:
    return getattr(exc, "category", "internal_error")
