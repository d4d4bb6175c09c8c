import pytest

from gateway.failures import FailureKind, classify_failure, primary_failure, should_try_next


@pytest.mark.parametrize(
    "status,message",
    [
        (429, "slow down"),
        (400, "Rate limit reached for model"),
        (500, "boom"),
        (503, "service unavailable"),
        (413, "payload"),
        (400, "Please reduce the length of the messages"),
        (400, "This model's maximum context length is 8192 tokens"),
        (400, "Request too long"),
    ],
)
def test_retryable_failures(status, message):
    assert should_try_next(status, message) is True


@pytest.mark.parametrize(
    "status,message",
    [
        (401, "invalid api key"),
        (400, "bad request"),
        (404, "model not found"),
        (403, "forbidden"),
    ],
)
def test_terminal_failures_outside_search(status, message):
    assert should_try_next(status, message) is False
    assert primary_failure(status, message) is FailureKind.TERMINAL


@pytest.mark.parametrize(
    "status,message",
    [
        (401, "invalid api key"),
        (403, "nope"),
        (404, "nope"),
        (400, "model has been decommissioned"),
        (400, "You do not have permission"),
    ],
)
def test_search_access_issues_advance_in_search_mode(status, message):
    assert should_try_next(status, message, search=True) is True
    assert FailureKind.SEARCH_ACCESS_DENIED in classify_failure(status, message, search=True)


def test_patterns_are_case_insensitive():
    assert FailureKind.RATE_LIMITED in classify_failure(400, "RATE LIMITED")
    assert FailureKind.CONTEXT_TOO_LONG in classify_failure(400, "TOKEN LIMIT exceeded")


def test_several_kinds_can_apply_at_once():
    kinds = classify_failure(503, "rate limit, context too long")
    assert kinds == {
        FailureKind.RATE_LIMITED,
        FailureKind.UPSTREAM_SERVER_ERROR,
        FailureKind.CONTEXT_TOO_LONG,
    }
    assert primary_failure(503, "rate limit, context too long") is FailureKind.RATE_LIMITED


def test_missing_message_falls_back_to_status():
    assert classify_failure(502, None) == {FailureKind.UPSTREAM_SERVER_ERROR}
    assert classify_failure(400, None) == frozenset()
