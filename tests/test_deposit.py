"""ERC-20 deposits through the gateway router."""

import pytest

from eth_token_bridge.calls import GetGateway
from eth_token_bridge.config import BridgeConfig, GasMarginKind
from eth_token_bridge.deployment import DeploymentOrchestrator, DeploymentPlan
from eth_token_bridge.deposit import deposit_token, get_child_balance
from eth_token_bridge.errors import EstimationFailed
from eth_token_bridge.fees import FeeEstimator
from eth_token_bridge.messages import CrossDomainMessageStatus, MessageTracker
from eth_token_bridge.registration import RegistrationCoordinator
from eth_token_bridge.testing import SimulatedBridge


def test_deposit_standard_token(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, bridge_config: BridgeConfig, user: str):
    """Deposit through the standard gateway mints a bridged token on the first deposit."""
    token = bridge.create_token("Standard", user, 1000)

    result = deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=350)

    assert result.gateway == plan.parent.standard_gateway
    assert result.recipient == user
    assert result.child_balance_before == 0
    assert result.child_balance_after == 350
    assert tracker.status(result.handle) == CrossDomainMessageStatus.REDEEMED

    # Tokens are locked in the parent gateway
    assert bridge.token_balance(bridge.parent, token, user) == 650
    assert bridge.token_balance(bridge.parent, token, plan.parent.standard_gateway) == 350
    assert get_child_balance(bridge.child, result.child_token, user) == 350

    # Deposits use the large standard margin
    assert result.quote.gas_limit == bridge_config.margins.for_call(GasMarginKind.standard_deposit) * 150_000


def test_deposit_twice(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, bridge_config: BridgeConfig, user: str):
    """The second deposit lands on the already deployed bridged token."""
    token = bridge.create_token("Twice", user, 1000)
    deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=100)
    result = deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=200)
    assert result.child_balance_before == 100
    assert result.child_balance_after == 300


def test_deposit_to_other_recipient(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, bridge_config: BridgeConfig, user: str):
    token = bridge.create_token("Gift", user, 1000)
    receiver = bridge.create_account("receiver")
    result = deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=10, recipient=receiver)
    assert get_child_balance(bridge.child, result.child_token, receiver) == 10
    assert get_child_balance(bridge.child, result.child_token, user) == 0


def test_deposit_custom_token(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, coordinator: RegistrationCoordinator, bridge_config: BridgeConfig, user: str):
    """Deposit of a custom token after registering it with the custom gateway."""
    parent_token, child_token = bridge.create_custom_token("Custom", user, 1000, plan.parent.custom_gateway, plan.parent.router, plan.child.custom_gateway)
    coordinator.register_custom_token(user, parent_token, child_token, plan.parent.custom_gateway, plan.parent.router)
    assert bridge.parent.call(GetGateway(plan.parent.router, parent_token)) == plan.parent.custom_gateway

    result = deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=parent_token, amount=110)

    assert result.gateway == plan.parent.custom_gateway
    assert result.child_token == child_token
    assert result.child_balance_after - result.child_balance_before == 110
    assert bridge.token_balance(bridge.child, child_token, user) == 110
    assert bridge.token_balance(bridge.parent, parent_token, plan.parent.custom_gateway) == 110
    assert result.quote.gas_limit == bridge_config.margins.for_call(GasMarginKind.custom_deposit) * 150_000


def test_deposit_zero(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, bridge_config: BridgeConfig, user: str):
    token = bridge.create_token("Zero", user, 1000)
    with pytest.raises(AssertionError):
        deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=0)


def test_deposit_child_reverts(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, bridge_config: BridgeConfig, user: str):
    """A deposit whose child call would revert is never submitted."""
    token = bridge.create_token("Reverting", user, 1000)
    bridge.reverting_targets.add(plan.child.standard_gateway.lower())
    tx_count = len(bridge.parent.outcomes)

    with pytest.raises(EstimationFailed):
        deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=100)

    # Only the approval went through
    assert len(bridge.parent.outcomes) == tx_count + 1
    assert bridge.token_balance(bridge.parent, token, user) == 1000


def test_deposit_fee_token_chain(bridge_config: BridgeConfig, no_sleep):
    """On fee token chains the retryable is paid with the fee token, not ETH."""
    bridge = SimulatedBridge(fee_token=True)
    orchestrator = DeploymentOrchestrator(bridge.deployment_config, deployer=bridge.deployer, rollup_owner=bridge.rollup_owner, bridge_config=bridge_config, sleep=no_sleep)
    plan = orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)

    user = bridge.create_account("fee token user")
    bridge.parent.get_contract(bridge.fee_token).mint(user, 10**24)
    token = bridge.create_token("Fee chain token", user, 1000)
    eth_before = bridge.parent.get_balance(user)

    estimator = FeeEstimator(bridge.parent, bridge.child, bridge.inbox, bridge_config.fees)
    tracker = MessageTracker(bridge.parent, bridge.child, wait=bridge_config.wait, sleep=no_sleep)
    result = deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=500)

    assert result.child_balance_after == 500
    assert result.quote.submission_cost == 0
    assert bridge.parent.get_balance(user) == eth_before
    assert bridge.token_balance(bridge.parent, bridge.fee_token, user) == 10**24 - result.quote.total_deposit
