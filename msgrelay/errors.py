"""
Error taxonomy for the delivery pipeline.

Transport and rate-limit failures are retryable; recipient, block and
template failures are permanent. Unclassified send errors are retried,
while unknown inbound statuses are normalized to ``failed`` elsewhere.
"""

import re
from typing import Optional


class ErrorCode:
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INVALID_NUMBER = "INVALID_NUMBER"
    BLOCKED = "BLOCKED"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    REJECTED = "REJECTED"
    UNKNOWN = "UNKNOWN"


RETRYABLE_ERRORS = frozenset({
    ErrorCode.TIMEOUT,
    ErrorCode.RATE_LIMIT,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.PROVIDER_ERROR,
    ErrorCode.UNKNOWN,
})

PERMANENT_ERRORS = frozenset({
    ErrorCode.INVALID_NUMBER,
    ErrorCode.BLOCKED,
    ErrorCode.TEMPLATE_NOT_FOUND,
    ErrorCode.QUOTA_EXCEEDED,
    ErrorCode.REJECTED,
})

# Checked in order; first match wins. Patterns match whole words only
_MESSAGE_PATTERNS = (
    (re.compile(r"\btime ?outs?\b|\btimed out\b"), ErrorCode.TIMEOUT),
    (re.compile(r"\brate[- ]?limit|\bthrottl|\btoo many requests\b|\blimit (?:reached|exceeded)\b"), ErrorCode.RATE_LIMIT),
    (re.compile(r"\bblock(?:ed|ing)?\b"), ErrorCode.BLOCKED),
    (re.compile(r"\bquota\b|\bcredits?\b|\bbalance\b"), ErrorCode.QUOTA_EXCEEDED),
    (re.compile(r"\btemplate\b"), ErrorCode.TEMPLATE_NOT_FOUND),
    (re.compile(r"\bconnection\b|\bnetwork\b|\bunreachable\b"), ErrorCode.NETWORK_ERROR),
)


class PipelineError(Exception):
    """Base class for domain errors raised inside the pipeline."""


class MalformedPayloadError(PipelineError):
    """Inbound callback could not be decoded or lacks required fields."""


class UnknownProviderError(PipelineError):
    """No adapter is registered under the requested provider name."""


class QuotaError(PipelineError):
    """The quota ledger refused a deduction (no plan, expired, insufficient)."""


def is_retryable(error_code: Optional[str]) -> bool:
    if not error_code:
        return True
    if error_code in PERMANENT_ERRORS:
        return False
    return True


def classify_provider_error(
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    http_status: Optional[int] = None,
) -> str:
    """
    Map a provider failure onto the pipeline's error codes.

    An error code the pipeline already knows wins, then the HTTP status,
    then keywords in the message. Anything else is PROVIDER_ERROR.

    >>> classify_provider_error(error_message="Request timed out")
    'TIMEOUT'
    >>> classify_provider_error(error_message="invalid phone number")
    'INVALID_NUMBER'
    >>> classify_provider_error(http_status=429)
    'RATE_LIMIT'
    """
    if error_code and error_code.upper() in RETRYABLE_ERRORS | PERMANENT_ERRORS:
        return error_code.upper()

    if http_status == 429:
        return ErrorCode.RATE_LIMIT
    if http_status in (408, 504):
        return ErrorCode.TIMEOUT

    message = (error_message or "").lower()
    if "invalid" in message and ("number" in message or "recipient" in message):
        return ErrorCode.INVALID_NUMBER
    for pattern, code in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return code

    return ErrorCode.PROVIDER_ERROR
