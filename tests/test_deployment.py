"""Token bridge provisioning."""

import dataclasses
import json

import pytest

from eth_token_bridge.calls import GetGateway
from eth_token_bridge.config import BridgeConfig, WaitPolicy
from eth_token_bridge.constants import ZERO_ADDRESS
from eth_token_bridge.deployment import DEPLOYMENT_STEPS, TOKEN_BRIDGE_ROLES, DeploymentOrchestrator, DeploymentPlan, NetworkDescriptor
from eth_token_bridge.errors import DeploymentIncomplete, MessageNotRedeemed
from eth_token_bridge.messages import CrossDomainMessageStatus
from eth_token_bridge.testing import SimulatedBridge


def _orchestrator(bridge: SimulatedBridge, bridge_config: BridgeConfig, no_sleep, **kwargs) -> DeploymentOrchestrator:
    config = dataclasses.replace(bridge.deployment_config, **kwargs)
    return DeploymentOrchestrator(config, deployer=bridge.deployer, rollup_owner=bridge.rollup_owner, bridge_config=bridge_config, sleep=no_sleep)


def test_deploy(plan: DeploymentPlan, bridge: SimulatedBridge):
    """All roles are deployed on both chains and read back."""
    assert plan.parent.chain_id == bridge.parent.chain_id
    assert plan.child.chain_id == bridge.child.chain_id
    assert plan.inbox == bridge.inbox
    assert plan.rollup == bridge.rollup
    assert plan.fee_token is None
    assert plan.confirm_period_blocks == 20

    assert plan.parent.weth == bridge.parent_weth
    assert plan.parent.weth_gateway is not None
    assert plan.child.weth is not None
    assert plan.parent.proxy_admin == bridge.parent_proxy_admin
    assert plan.child.upgrade_executor is not None
    assert plan.child.beacon_proxy_factory is not None

    for contracts, chain in ((plan.parent, bridge.parent), (plan.child, bridge.child)):
        for address in (contracts.router, contracts.standard_gateway, contracts.custom_gateway, contracts.weth_gateway):
            assert chain.has_code(address), f"No code at {address} on {chain}"


def test_deploy_sends_two_messages(plan: DeploymentPlan, bridge: SimulatedBridge, tracker):
    """Factory deployment first, then the contracts."""
    creation = [o for o in bridge.parent.outcomes if o.tx_hash == plan.originating_tx_hash][0]
    handles = tracker.messages_of(creation)
    assert len(handles) == 2
    assert int(bridge.get_retryable(handles[0]).destination, 16) == 0
    assert bridge.get_retryable(handles[1]).destination == bridge.child_factory_address
    assert all(tracker.status(h) == CrossDomainMessageStatus.REDEEMED for h in handles)


def test_weth_gateway_registered(plan: DeploymentPlan, bridge: SimulatedBridge):
    """The WETH gateway is registered with both routers after the deployment."""
    assert bridge.parent.call(GetGateway(plan.parent.router, plan.parent.weth)) == plan.parent.weth_gateway
    assert bridge.child.call(GetGateway(plan.child.router, plan.parent.weth)) == plan.child.weth_gateway


def test_deploy_fee_token_chain(bridge_config: BridgeConfig, no_sleep):
    """Custom fee token rollups have no WETH gateway and pay the creator in the fee token."""
    bridge = SimulatedBridge(fee_token=True)
    plan = _orchestrator(bridge, bridge_config, no_sleep).deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)

    assert plan.fee_token == bridge.fee_token
    assert plan.parent.weth is None
    assert plan.parent.weth_gateway is None
    assert plan.child.weth_gateway is None
    assert bridge.token_balance(bridge.parent, bridge.fee_token, bridge.inbox) > 0
    assert bridge.child.has_code(plan.child.router)


def test_deploy_weth(bridge: SimulatedBridge, bridge_config: BridgeConfig, no_sleep):
    """Without an override a WETH is deployed and registered."""
    orchestrator = _orchestrator(bridge, bridge_config, no_sleep)
    weth = orchestrator.resolve_weth(bridge.parent, None)
    assert weth != bridge.parent_weth
    assert bridge.parent.has_code(weth)

    plan = orchestrator.deploy(bridge.parent, bridge.child)
    assert orchestrator.last_confirmed_step == DEPLOYMENT_STEPS[-1]
    assert bridge.child.has_code(plan.child.router)


def test_deploy_without_weth(bridge: SimulatedBridge, bridge_config: BridgeConfig, no_sleep):
    """No override and no bytecode cannot proceed."""
    orchestrator = _orchestrator(bridge, bridge_config, no_sleep, weth_bytecode=b"")
    with pytest.raises(DeploymentIncomplete) as e:
        orchestrator.deploy(bridge.parent, bridge.child)
    assert e.value.step == "resolve_weth"
    assert e.value.last_confirmed_step is None


def test_deploy_message_failure(bridge: SimulatedBridge, no_sleep):
    """A failed retryable aborts with the step and the last confirmed step."""
    bridge_config = BridgeConfig(wait=WaitPolicy(poll_interval=0, timeout=5, max_attempts=3))
    bridge.fail_next_creations = 1
    orchestrator = _orchestrator(bridge, bridge_config, no_sleep)

    with pytest.raises(DeploymentIncomplete) as e:
        orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)

    assert e.value.step == "wait_messages"
    assert e.value.last_confirmed_step == "create_token_bridge"
    # The contracts retryable cannot run without the factory, so we time out
    # or see the factory creation failing, depending on which wait ends first
    assert isinstance(e.value.__cause__, (MessageNotRedeemed, TimeoutError))


def test_deploy_twice(plan: DeploymentPlan, bridge: SimulatedBridge, bridge_config: BridgeConfig, no_sleep):
    """The creator refuses a second bridge for the same inbox."""
    orchestrator = _orchestrator(bridge, bridge_config, no_sleep)
    with pytest.raises(DeploymentIncomplete) as e:
        orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)
    assert e.value.step == "create_token_bridge"
    assert e.value.last_confirmed_step == "price_factory"


def test_deploy_creator_not_a_contract(bridge: SimulatedBridge, bridge_config: BridgeConfig, no_sleep):
    """A failing read on a wrong creator address is reported with its step."""
    orchestrator = _orchestrator(bridge, bridge_config, no_sleep, token_bridge_creator=bridge.create_account("not a creator"))
    with pytest.raises(DeploymentIncomplete) as e:
        orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)
    assert e.value.step == "price_factory"
    assert e.value.last_confirmed_step == "resolve_weth"
    assert e.value.__cause__ is not None


def test_network_descriptor(plan: DeploymentPlan, tmp_path):
    """The descriptor survives a round trip through JSON."""
    descriptor = plan.to_network_descriptor()
    assert descriptor.get_address("l1GatewayRouter") == plan.parent.router
    assert descriptor.get_address("l2Weth") == plan.child.weth

    path = tmp_path / "network.json"
    descriptor.write_json(path)

    data = json.loads(path.read_text())
    assert data["chainID"] == plan.child.chain_id
    assert data["partnerChainID"] == plan.parent.chain_id
    assert data["ethBridge"]["inbox"] == plan.inbox
    assert data["nativeToken"] == ZERO_ADDRESS
    assert set(data["tokenBridge"]) == set(TOKEN_BRIDGE_ROLES)

    assert NetworkDescriptor.read_json(path) == descriptor


def test_network_descriptor_fee_token(bridge_config: BridgeConfig, no_sleep):
    """Roles that do not apply are written as the zero address and read back as None."""
    bridge = SimulatedBridge(fee_token=True)
    plan = _orchestrator(bridge, bridge_config, no_sleep).deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)
    data = plan.to_network_descriptor().to_dict()
    assert data["tokenBridge"]["l1WethGateway"] == ZERO_ADDRESS
    assert data["nativeToken"] == bridge.fee_token

    descriptor = NetworkDescriptor.from_dict(data)
    assert descriptor.fee_token == bridge.fee_token
    assert descriptor.get_address("l1WethGateway") is None
    assert descriptor.get_address("l2GatewayRouter") == plan.child.router


def test_network_descriptor_missing_roles(plan: DeploymentPlan):
    data = plan.to_network_descriptor().to_dict()
    del data["tokenBridge"]["l2Multicall"]
    with pytest.raises(ValueError):
        NetworkDescriptor.from_dict(data)
