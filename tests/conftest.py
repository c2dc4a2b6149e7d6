"""Simulated parent/child chain fixtures.

Every test gets a fresh pair of chains, so the fixtures are function scoped.
"""

import pytest

from eth_token_bridge.config import BackoffPolicy, BridgeConfig, WaitPolicy
from eth_token_bridge.deployment import DeploymentOrchestrator, DeploymentPlan
from eth_token_bridge.fees import FeeEstimator
from eth_token_bridge.messages import MessageTracker
from eth_token_bridge.registration import RegistrationCoordinator
from eth_token_bridge.testing import SimulatedBridge


def _no_sleep(seconds: float):
    pass


@pytest.fixture()
def bridge() -> SimulatedBridge:
    """Parent and child chain with an ETH paying rollup and a token bridge creator."""
    return SimulatedBridge()


@pytest.fixture()
def wait_policy() -> WaitPolicy:
    """Poll without sleeping, give up after a few polls."""
    return WaitPolicy(poll_interval=0, timeout=5, max_attempts=20)


@pytest.fixture()
def bridge_config(wait_policy) -> BridgeConfig:
    return BridgeConfig(wait=wait_policy, backoff=BackoffPolicy(initial_delay=0))


@pytest.fixture()
def plan(bridge: SimulatedBridge, bridge_config: BridgeConfig) -> DeploymentPlan:
    """Token bridge deployed on both simulated chains."""
    orchestrator = DeploymentOrchestrator(
        bridge.deployment_config,
        deployer=bridge.deployer,
        rollup_owner=bridge.rollup_owner,
        bridge_config=bridge_config,
        sleep=_no_sleep,
    )
    return orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)


@pytest.fixture()
def estimator(bridge: SimulatedBridge, bridge_config: BridgeConfig) -> FeeEstimator:
    return FeeEstimator(bridge.parent, bridge.child, bridge.inbox, bridge_config.fees)


@pytest.fixture()
def tracker(bridge: SimulatedBridge, bridge_config: BridgeConfig) -> MessageTracker:
    return MessageTracker(bridge.parent, bridge.child, wait=bridge_config.wait, backoff=bridge_config.backoff, sleep=_no_sleep)


@pytest.fixture()
def coordinator(bridge: SimulatedBridge, estimator, tracker, bridge_config: BridgeConfig) -> RegistrationCoordinator:
    return RegistrationCoordinator(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins)


@pytest.fixture()
def user(bridge: SimulatedBridge) -> str:
    """Token holder with ETH on both chains."""
    return bridge.create_account("user")


@pytest.fixture()
def no_sleep():
    """Sleep function that returns immediately."""
    return _no_sleep
