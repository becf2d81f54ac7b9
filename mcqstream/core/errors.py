"""
mcqstream — Error Taxonomy
===========================
Every failure path in the pipeline raises a ServiceError tagged with one
ErrorKind. The user-facing text is produced in exactly one place,
friendly_message(), keyed on the kind rather than the error text.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    GLOBAL_QUOTA = "global_quota"
    USER_QUOTA = "user_quota"
    TRANSPORT = "transport"
    EMPTY_GENERATION = "empty_generation"
    INTERNAL = "internal"


class QuotaScope(str, Enum):
    """Which limit rejected the request."""
    GLOBAL = "global"
    DAILY = "daily"
    HOURLY = "hourly"
    ROLLING_DAY = "rolling_day"
    INTERVAL = "interval"


class ServiceError(Exception):
    """A failure with a known kind. `detail` is internal and never shown in production."""

    def __init__(self, kind: ErrorKind, detail: str = "", retryable: bool = False):
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail
        self.retryable = retryable


class QuotaExceededError(ServiceError):
    """Raised by the quota governor; carries the limiting scope and its reset time."""

    def __init__(self, scope: QuotaScope, reset_at: Optional[datetime], detail: str = ""):
        kind = ErrorKind.GLOBAL_QUOTA if scope is QuotaScope.GLOBAL else ErrorKind.USER_QUOTA
        super().__init__(kind, detail or f"{scope.value} limit reached")
        self.scope = scope
        self.reset_at = reset_at

    def seconds_until_reset(self, now: Optional[datetime] = None) -> int:
        if self.reset_at is None:
            return 0
        now = now or datetime.now(timezone.utc)
        return max(0, math.ceil((self.reset_at - now).total_seconds()))


# ── User-facing messages ─────────────────────────────────────────────────────

_STATIC_MESSAGES = {
    ErrorKind.AUTH: "Authentication failed. Please sign in again.",
    ErrorKind.TRANSPORT: "Service is temporarily unavailable. Please try again later.",
    ErrorKind.EMPTY_GENERATION: (
        "No MCQs generated. Please try again with clearer or more detailed study material."
    ),
    ErrorKind.INTERNAL: "Something went wrong. Please try again.",
}

_HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.GLOBAL_QUOTA: 503,
    ErrorKind.USER_QUOTA: 429,
    ErrorKind.TRANSPORT: 503,
    ErrorKind.EMPTY_GENERATION: 422,
    ErrorKind.INTERNAL: 500,
}


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def _quota_message(error: QuotaExceededError, now: Optional[datetime]) -> str:
    seconds = error.seconds_until_reset(now)
    if error.scope is QuotaScope.GLOBAL:
        days = max(1, math.ceil(seconds / 86400))
        return (
            "The service has reached its monthly generation limit. "
            f"It resets in {_plural(days, 'day')}."
        )
    if error.scope is QuotaScope.DAILY:
        hours = max(1, math.ceil(seconds / 3600))
        return f"You've reached your daily upload limit. It resets in {_plural(hours, 'hour')}."
    if error.scope is QuotaScope.ROLLING_DAY:
        hours = max(1, math.ceil(seconds / 3600))
        return f"You've reached your 24-hour upload limit. Try again in {_plural(hours, 'hour')}."
    if error.scope is QuotaScope.HOURLY:
        minutes = max(1, math.ceil(seconds / 60))
        return f"You've reached your hourly upload limit. Try again in {_plural(minutes, 'minute')}."
    return f"Please wait {_plural(max(1, seconds), 'second')} before uploading again."


def friendly_message(
    error: BaseException,
    development: bool = False,
    now: Optional[datetime] = None,
) -> str:
    """Map any exception to the closed set of user-facing strings."""
    if not isinstance(error, ServiceError):
        message = _STATIC_MESSAGES[ErrorKind.INTERNAL]
        return f"{message} ({error})" if development else message

    if isinstance(error, QuotaExceededError):
        return _quota_message(error, now)

    if error.kind is ErrorKind.VALIDATION:
        # Validation details are authored by us and name what's missing.
        return error.detail or "Invalid request."

    message = _STATIC_MESSAGES[error.kind]
    if development and error.detail:
        return f"{message} ({error.detail})"
    return message


def http_status(kind: ErrorKind) -> int:
    return _HTTP_STATUS[kind]
