"""Cross-domain message tracking."""

import time

import flaky
import pytest

from eth_token_bridge.calls import Approve, CalculateChildTokenAddress
from eth_token_bridge.config import BackoffPolicy, BridgeConfig, WaitPolicy
from eth_token_bridge.deployment import DeploymentOrchestrator, DeploymentPlan
from eth_token_bridge.deposit import deposit_token
from eth_token_bridge.errors import MessageExpired, MessageNotRedeemed, TransientNetworkError
from eth_token_bridge.fees import FeeEstimator
from eth_token_bridge.messages import CrossDomainMessageHandle, CrossDomainMessageStatus, MessageTracker
from eth_token_bridge.registration import RegistrationCoordinator
from eth_token_bridge.testing import SimulatedBridge


def _start_deposit(
    bridge: SimulatedBridge,
    plan: DeploymentPlan,
    estimator: FeeEstimator,
    tracker: MessageTracker,
    user: str,
    amount: int = 100,
    policy: WaitPolicy | None = None,
) -> tuple[str, CrossDomainMessageHandle]:
    """Deposit that times out before its message is redeemed.

    :return:
        Tuple (parent token, minting message)
    """
    token = bridge.create_token("Pending", user, amount)
    with pytest.raises(TimeoutError):
        deposit_token(
            bridge.parent,
            bridge.child,
            estimator,
            tracker,
            BridgeConfig().margins,
            sender=user,
            router=plan.parent.router,
            token=token,
            amount=amount,
            policy=policy or WaitPolicy(poll_interval=0, timeout=5, max_attempts=2),
        )
    (handle,) = tracker.messages_of(bridge.parent.outcomes[-1])
    return token, handle


def _stuck_deposit(bridge, plan, estimator, tracker, user, amount=100):
    """Deposit whose ticket is created but runs out of gas in the auto-redeem."""
    bridge.extra_execution_gas = 10**9
    token, handle = _start_deposit(bridge, plan, estimator, tracker, user, amount)
    bridge.extra_execution_gas = 0
    return token, handle


def _child_balance(bridge: SimulatedBridge, plan: DeploymentPlan, token: str, account: str) -> int:
    child_token = bridge.parent.call(CalculateChildTokenAddress(plan.parent.router, token))
    return bridge.token_balance(bridge.child, child_token, account)


def test_messages_ordered_by_index(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, tracker: MessageTracker, user: str):
    """One transaction, two messages, correlated by index."""
    parent_token, child_token = bridge.create_custom_token("Ordered", user, 1000, plan.parent.custom_gateway, plan.parent.router, plan.child.custom_gateway)
    handles = coordinator.register_custom_token(user, parent_token, child_token, plan.parent.custom_gateway, plan.parent.router)

    assert [h.index for h in handles] == [0, 1]
    assert handles[0].originating_tx_hash == handles[1].originating_tx_hash
    assert handles[0].creation_id != handles[1].creation_id
    assert bridge.get_retryable(handles[0]).destination == plan.child.custom_gateway
    assert bridge.get_retryable(handles[1]).destination == plan.child.router
    assert tracker.wait_for_all(handles) == {0: CrossDomainMessageStatus.REDEEMED, 1: CrossDomainMessageStatus.REDEEMED}


def test_no_messages(plan: DeploymentPlan, bridge: SimulatedBridge, tracker: MessageTracker, user: str):
    """Plain parent transactions have no messages."""
    token = bridge.create_token("Plain", user, 1)

    outcome = bridge.parent.transact_and_confirm(user, Approve(token, plan.parent.router, 1))
    assert tracker.messages_of(outcome) == []
    assert tracker.wait_for_all([]) == {}


def test_status_never_regresses(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, user: str):
    """A lagging node answering an older status does not move the message back."""
    _, handle = _stuck_deposit(bridge, plan, estimator, tracker, user)
    assert tracker.status(handle) == CrossDomainMessageStatus.FUNDS_DEPOSITED

    # A node that has not seen the ticket yet
    ticket = bridge.get_retryable(handle)
    ticket.status = CrossDomainMessageStatus.NOT_YET_CREATED
    ticket.polls_until_delivery = 10
    assert tracker.status(handle) == CrossDomainMessageStatus.FUNDS_DEPOSITED


def test_created_ticket_cannot_fail_creation(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, user: str):
    """CREATION_FAILED is only reachable from NOT_YET_CREATED."""
    _, handle = _stuck_deposit(bridge, plan, estimator, tracker, user)
    assert tracker.status(handle) == CrossDomainMessageStatus.FUNDS_DEPOSITED

    bridge.get_retryable(handle).status = CrossDomainMessageStatus.CREATION_FAILED
    assert tracker.status(handle) == CrossDomainMessageStatus.FUNDS_DEPOSITED

    assert CrossDomainMessageStatus.NOT_YET_CREATED.can_move_to(CrossDomainMessageStatus.REDEEMED)
    assert not CrossDomainMessageStatus.FUNDS_DEPOSITED.can_move_to(CrossDomainMessageStatus.NOT_YET_CREATED)
    assert not CrossDomainMessageStatus.EXPIRED.can_move_to(CrossDomainMessageStatus.REDEEMED)


def test_terminal_status_sticks(plan: DeploymentPlan, bridge: SimulatedBridge, coordinator: RegistrationCoordinator, tracker: MessageTracker, user: str):
    parent_token, child_token = bridge.create_custom_token("Sticky", user, 1000, plan.parent.custom_gateway, plan.parent.router, plan.child.custom_gateway)
    handles = coordinator.register_custom_token(user, parent_token, child_token, plan.parent.custom_gateway, plan.parent.router)
    assert tracker.status(handles[0]) == CrossDomainMessageStatus.REDEEMED

    bridge.get_retryable(handles[0]).status = CrossDomainMessageStatus.FUNDS_DEPOSITED
    assert tracker.status(handles[0]) == CrossDomainMessageStatus.REDEEMED


def test_delayed_delivery(bridge_config: BridgeConfig, no_sleep):
    """Tickets show up on the child chain only after a few polls."""
    bridge = SimulatedBridge(delivery_delay_polls=3)
    orchestrator = DeploymentOrchestrator(bridge.deployment_config, deployer=bridge.deployer, rollup_owner=bridge.rollup_owner, bridge_config=bridge_config, sleep=no_sleep)
    plan = orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)

    user = bridge.create_account("delayed user")
    estimator = FeeEstimator(bridge.parent, bridge.child, bridge.inbox)
    tracker = MessageTracker(bridge.parent, bridge.child, wait=bridge_config.wait, backoff=bridge_config.backoff, sleep=no_sleep)

    token, handle = _start_deposit(bridge, plan, estimator, tracker, user, policy=WaitPolicy(poll_interval=0, timeout=5, max_attempts=1))

    assert tracker.status(handle) == CrossDomainMessageStatus.NOT_YET_CREATED
    assert tracker.status(handle) == CrossDomainMessageStatus.REDEEMED
    assert _child_balance(bridge, plan, token, user) == 100


def test_creation_failed(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, bridge_config: BridgeConfig, user: str):
    """A ticket that was never created is reported with its status."""
    token = bridge.create_token("Failing", user, 100)
    bridge.fail_next_creations = 1
    with pytest.raises(MessageNotRedeemed) as e:
        deposit_token(bridge.parent, bridge.child, estimator, tracker, bridge_config.margins, sender=user, router=plan.parent.router, token=token, amount=100)
    assert e.value.status == CrossDomainMessageStatus.CREATION_FAILED
    assert not isinstance(e.value, MessageExpired)


def test_manual_redeem(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, user: str):
    """A ticket left in FUNDS_DEPOSITED can be redeemed by anyone."""
    token, handle = _stuck_deposit(bridge, plan, estimator, tracker, user, amount=250)
    assert _child_balance(bridge, plan, token, user) == 0

    someone = bridge.create_account("redeemer")
    outcome = tracker.redeem(someone, handle)
    assert outcome.success
    assert tracker.status(handle) == CrossDomainMessageStatus.REDEEMED
    assert _child_balance(bridge, plan, token, user) == 250

    # Second redeem is a no-op
    assert tracker.redeem(someone, handle) is None


def test_expiry(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, user: str):
    """Tickets not redeemed within their lifetime expire."""
    _, handle = _stuck_deposit(bridge, plan, estimator, tracker, user)
    bridge.advance_time(bridge.retryable_lifetime)

    status = tracker.wait_for_status(handle)
    assert status == CrossDomainMessageStatus.EXPIRED
    with pytest.raises(MessageExpired):
        tracker.require_redeemed(handle, status)

    with pytest.raises(MessageExpired):
        tracker.wait_for_redeemed(bridge.parent.outcomes[-1])

    with pytest.raises(MessageExpired):
        tracker.redeem(user, handle)


def test_transient_failures_are_retried(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, tracker: MessageTracker, user: str):
    """A flaky child node does not fail the status read."""
    _, handle = _stuck_deposit(bridge, plan, estimator, tracker, user)
    bridge.child.transient_failures = 3
    assert tracker.status(handle) == CrossDomainMessageStatus.FUNDS_DEPOSITED
    assert bridge.child.transient_failures == 0


def test_transient_failures_exhaust_retries(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, user: str, no_sleep):
    _, handle = _stuck_deposit(bridge, plan, estimator, MessageTracker(bridge.parent, bridge.child, sleep=no_sleep), user)
    tracker = MessageTracker(bridge.parent, bridge.child, backoff=BackoffPolicy(max_attempts=2, initial_delay=0), sleep=no_sleep)
    bridge.child.transient_failures = 2
    with pytest.raises(TransientNetworkError):
        tracker.status(handle)


def test_wait_survives_flaky_node(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, user: str, no_sleep):
    """Polling keeps going when single status reads fail for good."""
    token, handle = _stuck_deposit(bridge, plan, estimator, MessageTracker(bridge.parent, bridge.child, sleep=no_sleep), user)
    tracker = MessageTracker(bridge.parent, bridge.child, backoff=BackoffPolicy(max_attempts=1), sleep=no_sleep)
    bridge.child.transient_failures = 3
    bridge.advance_time(bridge.retryable_lifetime)
    assert tracker.wait_for_status(handle, WaitPolicy(poll_interval=0, timeout=5, max_attempts=10)) == CrossDomainMessageStatus.EXPIRED


@flaky.flaky
def test_wait_timeout_wall_clock(plan: DeploymentPlan, bridge: SimulatedBridge, estimator: FeeEstimator, user: str, no_sleep):
    """The wait gives up after its timeout with real sleeps."""
    _, handle = _stuck_deposit(bridge, plan, estimator, MessageTracker(bridge.parent, bridge.child, sleep=no_sleep), user)
    tracker = MessageTracker(bridge.parent, bridge.child)

    started_at = time.monotonic()
    with pytest.raises(TimeoutError):
        tracker.wait_for_status(handle, WaitPolicy(poll_interval=0.05, timeout=0.3))
    duration = time.monotonic() - started_at
    assert 0.25 < duration < 2.0
