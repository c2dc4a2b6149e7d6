"""Gateway registration on both routers."""

import pytest

from eth_token_bridge.calls import GetGateway
from eth_token_bridge.config import WaitPolicy
from eth_token_bridge.deployment import DeploymentOrchestrator, DeploymentPlan
from eth_token_bridge.errors import MessageNotRedeemed, PartiallyRegistered, TransactionFailed
from eth_token_bridge.fees import FeeEstimator
from eth_token_bridge.messages import CrossDomainMessageStatus, MessageTracker
from eth_token_bridge.registration import RegistrationCoordinator
from eth_token_bridge.testing import SimulatedBridge, SimulatedUsdc

#: Give up on the child leg quickly
SHORT_WAIT = WaitPolicy(poll_interval=0, timeout=5, max_attempts=2)


@pytest.fixture()
def usdc(plan: DeploymentPlan, bridge: SimulatedBridge) -> SimulatedUsdc:
    """USDC with its own gateway pair, not yet registered."""
    admin = bridge.create_account("usdc admin")
    return bridge.create_usdc(plan.parent.router, plan.child.router, owner=admin)


def _registered_gateways(bridge: SimulatedBridge, plan: DeploymentPlan, token: str) -> tuple[str, str]:
    return (
        bridge.parent.call(GetGateway(plan.parent.router, token)),
        bridge.child.call(GetGateway(plan.child.router, token)),
    )


def test_register_gateway(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, usdc: SimulatedUsdc):
    """Both routers map the token to the gateway pair."""
    assert _registered_gateways(bridge, plan, usdc.parent_token) == (plan.parent.standard_gateway, plan.child.standard_gateway)

    assert coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor)

    assert _registered_gateways(bridge, plan, usdc.parent_token) == (usdc.parent_gateway, usdc.child_gateway)
    parent_record, child_record = coordinator.read_registrations(plan.parent.router, [usdc.parent_token])[0]
    assert parent_record.chain_id == bridge.parent.chain_id
    assert child_record.chain_id == bridge.child.chain_id
    assert child_record.gateway == usdc.child_gateway


def test_register_gateway_idempotent(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, usdc: SimulatedUsdc):
    """Registering an existing mapping again sends nothing."""
    coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor)
    tx_count = len(bridge.parent.outcomes)

    assert coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor)
    assert len(bridge.parent.outcomes) == tx_count


def test_register_only_pending(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, usdc: SimulatedUsdc):
    """Already mapped pairs are left out of a batch."""
    token = bridge.create_token("Batch", bridge.deployer, 1)
    assert coordinator.get_pending(plan.parent.router, [plan.parent.weth, token], [plan.parent.weth_gateway, plan.parent.custom_gateway]) == [1]

    coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [plan.parent.weth, token], [plan.parent.weth_gateway, plan.parent.custom_gateway], executor=bridge.parent_upgrade_executor)
    retryable = bridge.get_retryable(coordinator.tracker.messages_of(bridge.parent.outcomes[-1])[0])
    assert retryable.payload.tokens == (token,)
    assert _registered_gateways(bridge, plan, token) == (plan.parent.custom_gateway, plan.child.custom_gateway)


def test_register_mismatched_lists(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator):
    with pytest.raises(ValueError):
        coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [plan.parent.weth], [], executor=bridge.parent_upgrade_executor)

    with pytest.raises(ValueError):
        coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [], [], executor=bridge.parent_upgrade_executor)


def test_register_needs_router_owner(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, usdc: SimulatedUsdc):
    """The router is owned by the upgrade executor, a direct call reverts."""
    with pytest.raises(TransactionFailed):
        coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway])


def test_partially_registered_then_redeem(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, usdc: SimulatedUsdc):
    """A stuck child leg is reported, and re-issuing redeems the stuck ticket instead of paying again."""
    bridge.extra_execution_gas = 10**9

    with pytest.raises(PartiallyRegistered) as e:
        coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor, policy=SHORT_WAIT)

    attempt = e.value.attempt
    assert e.value.status == CrossDomainMessageStatus.FUNDS_DEPOSITED
    assert attempt.tokens == (usdc.parent_token,)
    assert _registered_gateways(bridge, plan, usdc.parent_token) == (usdc.parent_gateway, plan.child.standard_gateway)

    bridge.extra_execution_gas = 0
    tx_count = len(bridge.parent.outcomes)

    assert coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor, previous_attempt=attempt)

    assert len(bridge.parent.outcomes) == tx_count
    assert bridge.get_retryable(attempt.handle).status == CrossDomainMessageStatus.REDEEMED
    assert _registered_gateways(bridge, plan, usdc.parent_token) == (usdc.parent_gateway, usdc.child_gateway)


def test_partially_registered_then_resubmit(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, usdc: SimulatedUsdc):
    """A ticket that failed creation cannot be redeemed, so the child leg is submitted again."""
    bridge.fail_next_creations = 1

    with pytest.raises(PartiallyRegistered) as e:
        coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor)
    assert e.value.status == CrossDomainMessageStatus.CREATION_FAILED

    tx_count = len(bridge.parent.outcomes)
    assert coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor, previous_attempt=e.value.attempt)
    assert len(bridge.parent.outcomes) == tx_count + 1
    assert _registered_gateways(bridge, plan, usdc.parent_token) == (usdc.parent_gateway, usdc.child_gateway)


def test_partially_registered_slow_ticket(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, usdc: SimulatedUsdc):
    """A ticket still on its way is waited for, never paid for twice."""
    bridge.delivery_delay_polls = 10

    with pytest.raises(PartiallyRegistered) as e:
        coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor, policy=SHORT_WAIT)
    assert e.value.status == CrossDomainMessageStatus.NOT_YET_CREATED
    attempt = e.value.attempt
    tx_count = len(bridge.parent.outcomes)

    # Still not delivered, give up again without sending anything
    with pytest.raises(PartiallyRegistered) as e:
        coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor, previous_attempt=attempt, policy=SHORT_WAIT)
    assert e.value.status == CrossDomainMessageStatus.NOT_YET_CREATED
    assert len(bridge.parent.outcomes) == tx_count

    patient = WaitPolicy(poll_interval=0, timeout=5, max_attempts=20)
    assert coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor, previous_attempt=attempt, policy=patient)
    assert len(bridge.parent.outcomes) == tx_count
    assert bridge.get_retryable(attempt.handle).status == CrossDomainMessageStatus.REDEEMED
    assert _registered_gateways(bridge, plan, usdc.parent_token) == (usdc.parent_gateway, usdc.child_gateway)


def test_register_custom_token(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, user: str):
    """The parent token registers itself with the custom gateway and the router."""
    parent_token, child_token = bridge.create_custom_token("Custom", user, 1000, plan.parent.custom_gateway, plan.parent.router, plan.child.custom_gateway)

    handles = coordinator.register_custom_token(user, parent_token, child_token, plan.parent.custom_gateway, plan.parent.router)

    assert len(handles) == 2
    assert _registered_gateways(bridge, plan, parent_token) == (plan.parent.custom_gateway, plan.child.custom_gateway)
    assert bridge.child.get_contract(plan.child.custom_gateway).child_token_address(parent_token) == child_token

    # Both tickets bid the same gas price
    first, second = (bridge.get_retryable(h) for h in handles)
    assert first.max_fee_per_gas == second.max_fee_per_gas


def test_register_custom_token_child_failure(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, user: str):
    """Either message failing is an error."""
    parent_token, child_token = bridge.create_custom_token("Broken", user, 1000, plan.parent.custom_gateway, plan.parent.router, plan.child.custom_gateway)
    bridge.fail_next_creations = 1
    with pytest.raises(MessageNotRedeemed) as e:
        coordinator.register_custom_token(user, parent_token, child_token, plan.parent.custom_gateway, plan.parent.router)
    assert e.value.handle.index == 0


def test_register_gateway_fee_token(bridge_config, no_sleep):
    """On fee token chains the executor approves the router to pull the fees."""
    bridge = SimulatedBridge(fee_token=True)
    orchestrator = DeploymentOrchestrator(bridge.deployment_config, deployer=bridge.deployer, rollup_owner=bridge.rollup_owner, bridge_config=bridge_config, sleep=no_sleep)
    plan = orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)

    estimator = FeeEstimator(bridge.parent, bridge.child, bridge.inbox, bridge_config.fees)
    tracker = MessageTracker(bridge.parent, bridge.child, wait=bridge_config.wait, sleep=no_sleep)
    coordinator = RegistrationCoordinator(bridge.parent, bridge.child, estimator, tracker)
    assert coordinator.get_fee_token() == bridge.fee_token

    admin = bridge.create_account("usdc admin")
    usdc = bridge.create_usdc(plan.parent.router, plan.child.router, owner=admin)
    bridge.parent.get_contract(bridge.fee_token).mint(bridge.parent_upgrade_executor, 10**24)

    assert coordinator.register_gateway(bridge.rollup_owner, plan.parent.router, [usdc.parent_token], [usdc.parent_gateway], executor=bridge.parent_upgrade_executor)
    assert _registered_gateways(bridge, plan, usdc.parent_token) == (usdc.parent_gateway, usdc.child_gateway)
    assert bridge.token_balance(bridge.parent, bridge.fee_token, bridge.parent_upgrade_executor) < 10**24
