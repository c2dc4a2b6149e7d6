"""Configuration dataclasses."""

import pytest

from eth_token_bridge.config import BackoffPolicy, GasMarginKind, GasMargins, WaitPolicy


def test_backoff_delays():
    """Delays grow exponentially and are capped."""
    policy = BackoffPolicy(max_attempts=5, initial_delay=1.0, max_delay=3.0, multiplier=2.0)
    assert list(policy.delays()) == [1.0, 2.0, 3.0, 3.0]


def test_backoff_single_attempt():
    """One attempt means no sleeping."""
    assert list(BackoffPolicy(max_attempts=1).delays()) == []


def test_wait_policy_needs_finite_timeout():
    """Unbounded waits are refused."""
    with pytest.raises(AssertionError):
        WaitPolicy(timeout=float("inf"))

    with pytest.raises(AssertionError):
        WaitPolicy(timeout=0)


def test_gas_margins():
    """Each call site has its own multiplier."""
    margins = GasMargins()
    assert margins.for_call(GasMarginKind.standard_deposit) == 60
    assert margins.for_call(GasMarginKind.custom_deposit) == 40
    assert margins.for_call(GasMarginKind.gateway_registration) == 2
    assert margins.for_call(GasMarginKind.deployment) == 1

    with pytest.raises(AssertionError):
        GasMargins(deployment=0).for_call(GasMarginKind.deployment)
