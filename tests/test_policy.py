import pytest

from foreman.config import PolicyConfig
from foreman.policy import RetryPolicy


def test_quality_failures_route_to_fix_within_budget() -> None:
    policy = RetryPolicy(max_attempts=3)

    assert policy.decide("TEST", "QualityFailure", 1) == "fix"
    assert policy.decide("REVIEW", "ReviewRejected", 2) == "fix"
    assert policy.decide("REVIEW", "ReviewRejected", 3) == "fail"


def test_fix_route_outside_verified_phases_retries() -> None:
    policy = RetryPolicy()

    assert policy.decide("PLAN", "QualityFailure", 1) == "retry"
    assert policy.decide("FIX", "QualityFailure", 1) == "retry"


def test_runner_errors_retry_until_exhausted() -> None:
    policy = RetryPolicy(max_attempts=2)

    assert policy.decide("CODE", "Timeout", 1) == "retry"
    assert policy.decide("CODE", "Transient", 2) == "fail"
    assert policy.decide("CODE", "Fatal", 0) == "fail"


@pytest.mark.parametrize("kind", ["ScopeViolation", "GuardrailBlocked", "ApprovalDenied", "Fatal"])
def test_non_retriable_kinds_ignore_routes(kind: str) -> None:
    policy = RetryPolicy(routes={kind: "retry"})

    assert policy.decide("CODE", kind, 0) == "fail"


def test_exhaustion_can_escalate() -> None:
    policy = RetryPolicy(max_attempts=1, on_exhaustion="escalate")

    assert policy.decide("TEST", "QualityFailure", 0) == "fix"
    assert policy.decide("TEST", "QualityFailure", 1) == "escalate"


def test_explicit_escalate_route_escalates_immediately() -> None:
    policy = RetryPolicy(routes={"Timeout": "escalate"})

    assert policy.decide("CODE", "Timeout", 0) == "escalate"


def test_unknown_failure_kind_fails() -> None:
    assert RetryPolicy().decide("CODE", "Mystery", 0) == "fail"


def test_max_attempts_override_per_call() -> None:
    policy = RetryPolicy(max_attempts=5)

    assert policy.decide("CODE", "Transient", 2, max_attempts=2) == "fail"


def test_invalid_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match="Unknown policy actions"):
        RetryPolicy(routes={"Timeout": "sleep"})


def test_from_config() -> None:
    policy = RetryPolicy.from_config(PolicyConfig(max_attempts=4, on_exhaustion="escalate"))

    assert policy.max_attempts == 4
    assert policy.on_exhaustion == "escalate"
    assert policy.routes["QualityFailure"] == "fix"
