from datetime import timedelta

import pytest

from conftest import START
from mcqstream.core.errors import (
    ErrorKind,
    QuotaExceededError,
    QuotaScope,
    ServiceError,
    friendly_message,
    http_status,
)


@pytest.mark.parametrize("scope, delta, expected", [
    (QuotaScope.GLOBAL, timedelta(days=3, hours=1), "resets in 4 days"),
    (QuotaScope.DAILY, timedelta(hours=1), "resets in 1 hour"),
    (QuotaScope.ROLLING_DAY, timedelta(hours=5, minutes=1), "Try again in 6 hours"),
    (QuotaScope.HOURLY, timedelta(seconds=90), "Try again in 2 minutes"),
    (QuotaScope.INTERVAL, timedelta(seconds=12), "wait 12 seconds"),
])
def test_quota_messages_name_the_reset_time(scope, delta, expected):
    error = QuotaExceededError(scope, START + delta)
    assert expected in friendly_message(error, now=START)


def test_raw_detail_is_hidden_outside_development():
    error = ServiceError(ErrorKind.TRANSPORT, "Gemini API failed (500): boom")
    assert friendly_message(error) == "Service is temporarily unavailable. Please try again later."
    assert "boom" in friendly_message(error, development=True)


def test_unexpected_exceptions_map_to_internal():
    assert friendly_message(KeyError("x")) == "Something went wrong. Please try again."


def test_validation_detail_is_shown_verbatim():
    error = ServiceError(ErrorKind.VALIDATION, "mime_type is required when file_data is sent.")
    assert friendly_message(error) == "mime_type is required when file_data is sent."


def test_quota_kind_follows_scope():
    assert QuotaExceededError(QuotaScope.GLOBAL, None).kind is ErrorKind.GLOBAL_QUOTA
    assert QuotaExceededError(QuotaScope.HOURLY, None).kind is ErrorKind.USER_QUOTA
    assert QuotaExceededError(QuotaScope.HOURLY, None).seconds_until_reset() == 0


def test_every_kind_has_an_http_status():
    assert {kind: http_status(kind) for kind in ErrorKind} == {
        ErrorKind.VALIDATION: 400,
        ErrorKind.AUTH: 401,
        ErrorKind.GLOBAL_QUOTA: 503,
        ErrorKind.USER_QUOTA: 429,
        ErrorKind.TRANSPORT: 503,
        ErrorKind.EMPTY_GENERATION: 422,
        ErrorKind.INTERNAL: 500,
    }
