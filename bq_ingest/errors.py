"""
BigQuery Ingestion Errors
-------------------------
Error taxonomy shared by the schema model, the writer and the outputs.

HTTP failures coming back from the BigQuery REST API are represented by the
``google.api_core.exceptions`` hierarchy (``ClientError`` for 4xx,
``ServerError`` for 5xx). The classes below wrap them once a decision about
retrying has been made.
"""

from typing import Any, Iterable, Optional

from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions

RETRYABLE_ERROR_REASON = frozenset(
    [
        "backendError",
        "internalError",
        "rateLimitExceeded",
        "quotaExceeded",
        "tableUnavailable",
        "timeout",
    ]
)
# per-row insertAll reasons follow the same classification as API errors
RETRYABLE_INSERT_ERRORS_REASON = RETRYABLE_ERROR_REASON
RETRYABLE_STATUS_CODE = frozenset([500, 502, 503, 504])
REGION_NOT_WRITABLE_MESSAGE = "is not writable in the region"


class BigQueryIngestError(Exception):
    """Base exception for all bq_ingest failures."""


class ConfigurationError(BigQueryIngestError):
    """Raised for invalid schema definitions or output configuration."""


class Error(BigQueryIngestError):
    """
    Delivery failure, optionally wrapping the exception that caused it.

    Use ``RetryableError`` or ``UnRetryableError``; the base class only
    carries the shared accessors.
    """

    retryable = False

    def __init__(self, message: Optional[str] = None, origin: Optional[BaseException] = None):
        self.origin = origin
        if message is None:
            message = str(origin) if origin is not None else self.__class__.__name__
        super().__init__(message)

    @property
    def reason(self) -> Optional[str]:
        return error_reason(self.origin) if self.origin is not None else None

    @property
    def status_code(self) -> Optional[int]:
        return status_code_of(self.origin) if self.origin is not None else None


class UnRetryableError(Error):
    """Delivery failed and sending the same payload again will not help."""


class RetryableError(Error):
    """Delivery failed for a transient reason; the payload can be requeued."""

    retryable = True


class TableCreatedError(RetryableError):
    """The destination table was just created; send the payload next cycle."""


def error_reason(error: Any) -> Optional[str]:
    """Return the machine readable reason attached to an API error, if any."""
    if isinstance(error, Error):
        return error.reason
    errors = getattr(error, "errors", None) or ()
    for item in errors:
        if isinstance(item, dict) and item.get("reason"):
            return item["reason"]
    return getattr(error, "reason", None)


def status_code_of(error: Any) -> Optional[int]:
    """Return the HTTP status code of an API error, if any."""
    if isinstance(error, Error):
        return error.status_code
    code = getattr(error, "code", None)
    return int(code) if isinstance(code, int) else None


def is_auth_error(error: BaseException) -> bool:
    """True for failures that mean the cached credential must not be reused."""
    return isinstance(
        error,
        (
            api_exceptions.Unauthorized,
            api_exceptions.Forbidden,
            auth_exceptions.RefreshError,
            auth_exceptions.DefaultCredentialsError,
        ),
    )


def is_retryable_reason(reason: Optional[str]) -> bool:
    return reason in RETRYABLE_ERROR_REASON


def is_retryable_insert_reason(reason: Optional[str]) -> bool:
    return reason in RETRYABLE_INSERT_ERRORS_REASON


def is_retryable_error(error: BaseException) -> bool:
    """
    Decide whether an API failure is worth retrying.

    Retryable are: a retryable reason code, a 500/502/503/504 server error,
    and the 400 "region not writable" error BigQuery returns during regional
    failover.
    """
    if is_retryable_reason(error_reason(error)):
        return True
    if isinstance(error, api_exceptions.ServerError):
        return status_code_of(error) in RETRYABLE_STATUS_CODE
    if isinstance(error, api_exceptions.ClientError) and status_code_of(error) == 400:
        return REGION_NOT_WRITABLE_MESSAGE in str(error)
    return False


def wrap(error: BaseException, message: Optional[str] = None) -> Error:
    """Wrap an API failure into ``RetryableError`` or ``UnRetryableError``."""
    if isinstance(error, Error):
        return error
    if is_retryable_error(error):
        return RetryableError(message, error)
    return UnRetryableError(message, error)


def any_retryable_insert_error(insert_errors: Iterable[Any]) -> bool:
    """True if any per-row insert error carries a retryable reason."""
    for row_error in insert_errors:
        for reason in getattr(row_error, "reasons", ()):
            if is_retryable_insert_reason(reason):
                return True
    return False
