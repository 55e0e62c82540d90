import pytest

from slidesift.core.errors import FailureKind
from slidesift.infrastructure.analysis.classification import (
    classify_failure,
    extract_retry_after_seconds,
    parse_retry_after_header,
)


@pytest.mark.parametrize(
    ("message", "status", "expected"),
    [
        ("User location is not supported for the API use. [UPSTREAM_LOCATION_UNSUPPORTED]", 400, FailureKind.POLICY_BLOCKED),
        ("Too many requests (status 429) with location is not supported for the API use", 429, FailureKind.POLICY_BLOCKED),
        ("Resource exhausted: quota exceeded", None, FailureKind.RATE_LIMITED),
        ("Request failed with status 429.", 429, FailureKind.RATE_LIMITED),
        ("Request failed with status 413.", 413, FailureKind.PAYLOAD_TOO_LARGE),
        ("Payload too large for this endpoint", None, FailureKind.PAYLOAD_TOO_LARGE),
        ("Temporary gateway error (status 503). Please retry.", 503, FailureKind.TRANSIENT),
        ("The model is overloaded", None, FailureKind.TRANSIENT),
        ("Deadline exceeded while waiting for model", None, FailureKind.TRANSIENT),
        ("AI returned invalid page numbers.", None, FailureKind.OTHER),
        ("Internal error", 500, FailureKind.OTHER),
    ],
)
def test_classify_failure(message: str, status: int | None, expected: FailureKind) -> None:
    assert classify_failure(message, status) is expected


def test_retry_hints_are_read_from_messages_and_headers() -> None:
    assert extract_retry_after_seconds("Quota exceeded. Retry in about 12s.") == 12.0
    assert extract_retry_after_seconds("Please retry in 3.5 s") == 3.5
    assert extract_retry_after_seconds("no hint here") is None
    assert parse_retry_after_header("7.2") == 8.0
    assert parse_retry_after_header("Wed, 21 Oct 2015 07:28:00 GMT") is None
    assert parse_retry_after_header(None) is None
