"""Token bridge provisioning.

Deploy a full token bridge for a rollup with one parent chain transaction:

1. Resolve the parent chain WETH, or deploy one for a fresh local chain

2. Price the child factory deployment retryable, whose payload has a fixed size

3. Call ``createTokenBridge()`` on the token bridge creator. It deploys the parent contracts
   and sends two retryables: one deploys the child factory, the other the child contracts.

4. Wait until both retryables are ``REDEEMED``

5. Read the deployed addresses back into a :py:class:`DeploymentPlan`

6. Register the WETH gateway with the routers, which the creator does not do

Any failing step aborts the run with :py:class:`eth_token_bridge.errors.DeploymentIncomplete`.
Contracts deployed before the failure are left in place.

Example:

.. code-block:: python

    orchestrator = DeploymentOrchestrator(config, deployer=deployer.address)
    plan = orchestrator.deploy(parent, child, fee_token_override=weth_address)
    plan.to_network_descriptor().write_json(Path("network.json"))
"""

import dataclasses
import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from pprint import pformat
from typing import Callable, Iterator

from eth_typing import HexAddress
from hexbytes import HexBytes

from eth_token_bridge.calls import (
    Approve,
    ChildDeployment,
    ConfirmPeriodBlocks,
    CreateTokenBridge,
    CrossDomainCallRequest,
    EncodedPayload,
    GasLimitForChildFactoryDeployment,
    Owner,
    ParentDeployment,
    ParentMulticall,
    ProxyAdminOf,
    deploy_contract_call,
)
from eth_token_bridge.config import BridgeConfig, DeploymentConfig, GasMarginKind
from eth_token_bridge.constants import DEFAULT_RETRYABLE_LIFETIME_SECONDS, ZERO_ADDRESS
from eth_token_bridge.endpoint import ChainEndpoint
from eth_token_bridge.errors import DeploymentIncomplete
from eth_token_bridge.fees import FeeEstimator, get_fee_token
from eth_token_bridge.messages import MessageTracker
from eth_token_bridge.registration import RegistrationCoordinator
from eth_token_bridge.utils import addr, none_if_zero

logger = logging.getLogger(__name__)


#: Provisioning steps in execution order
DEPLOYMENT_STEPS = (
    "resolve_weth",
    "price_factory",
    "create_token_bridge",
    "wait_messages",
    "read_back",
    "register_weth_gateway",
)


@dataclass(slots=True, frozen=True)
class DeployedContracts:
    """Token bridge contracts on one chain, keyed by role."""

    chain_id: int

    #: Gateway router, the deposit entry point
    router: HexAddress

    #: Gateway for tokens without a registration
    standard_gateway: HexAddress

    #: Gateway for custom token pairs
    custom_gateway: HexAddress

    proxy_admin: HexAddress

    multicall: HexAddress

    #: ``None`` on custom fee token chains
    weth_gateway: HexAddress | None = None

    #: ``None`` on custom fee token chains
    weth: HexAddress | None = None

    #: Child chain only
    upgrade_executor: HexAddress | None = None

    #: Child chain only
    beacon_proxy_factory: HexAddress | None = None


@dataclass(slots=True, frozen=True)
class DeploymentPlan:
    """Addresses produced by one provisioning run on both chains."""

    parent: DeployedContracts

    child: DeployedContracts

    #: Rollup inbox the bridge was created for
    inbox: HexAddress

    rollup: HexAddress

    #: ERC-20 the child chain pays gas in, ``None`` for ETH
    fee_token: HexAddress | None

    #: The ``createTokenBridge()`` transaction
    originating_tx_hash: HexBytes

    confirm_period_blocks: int = 0

    retryable_lifetime_seconds: int = DEFAULT_RETRYABLE_LIFETIME_SECONDS

    def get_deployment_data(self) -> dict:
        """Role -> address of both chains, for logging and diagnostics."""
        return {
            "parent": dataclasses.asdict(self.parent),
            "child": dataclasses.asdict(self.child),
            "inbox": self.inbox,
            "rollup": self.rollup,
            "fee_token": self.fee_token,
            "tx": self.originating_tx_hash.hex(),
        }

    def pformat(self) -> str:
        return pformat(self.get_deployment_data())

    def to_network_descriptor(self) -> "NetworkDescriptor":
        return NetworkDescriptor(
            parent_chain_id=self.parent.chain_id,
            chain_id=self.child.chain_id,
            inbox=self.inbox,
            rollup=self.rollup,
            fee_token=self.fee_token,
            confirm_period_blocks=self.confirm_period_blocks,
            retryable_lifetime_seconds=self.retryable_lifetime_seconds,
            token_bridge={
                "l1GatewayRouter": self.parent.router,
                "l1ERC20Gateway": self.parent.standard_gateway,
                "l1CustomGateway": self.parent.custom_gateway,
                "l1WethGateway": self.parent.weth_gateway,
                "l1Weth": self.parent.weth,
                "l1ProxyAdmin": self.parent.proxy_admin,
                "l1MultiCall": self.parent.multicall,
                "l2GatewayRouter": self.child.router,
                "l2ERC20Gateway": self.child.standard_gateway,
                "l2CustomGateway": self.child.custom_gateway,
                "l2WethGateway": self.child.weth_gateway,
                "l2Weth": self.child.weth,
                "l2ProxyAdmin": self.child.proxy_admin,
                "l2Multicall": self.child.multicall,
            },
        )


#: Role names of the ``tokenBridge`` section of a network descriptor
TOKEN_BRIDGE_ROLES = (
    "l1GatewayRouter",
    "l1ERC20Gateway",
    "l1CustomGateway",
    "l1WethGateway",
    "l1Weth",
    "l1ProxyAdmin",
    "l1MultiCall",
    "l2GatewayRouter",
    "l2ERC20Gateway",
    "l2CustomGateway",
    "l2WethGateway",
    "l2Weth",
    "l2ProxyAdmin",
    "l2Multicall",
)


@dataclass(slots=True, frozen=True)
class NetworkDescriptor:
    """Persisted topology of a deployed token bridge.

    Written once after a successful deployment and read by everything that needs
    contract addresses afterwards. The JSON layout follows the Arbitrum SDK custom network format.
    Roles that do not apply are written as the zero address.
    """

    parent_chain_id: int

    #: Child chain id
    chain_id: int

    inbox: HexAddress

    rollup: HexAddress

    #: Role name -> address, see :py:data:`TOKEN_BRIDGE_ROLES`
    token_bridge: dict

    fee_token: HexAddress | None = None

    confirm_period_blocks: int = 0

    retryable_lifetime_seconds: int = DEFAULT_RETRYABLE_LIFETIME_SECONDS

    def get_address(self, role: str) -> HexAddress | None:
        """Address of a role, ``None`` if the role does not apply."""
        assert role in TOKEN_BRIDGE_ROLES, f"Unknown role {role}"
        return none_if_zero(self.token_bridge.get(role))

    def to_dict(self) -> dict:
        return {
            "chainID": self.chain_id,
            "partnerChainID": self.parent_chain_id,
            "confirmPeriodBlocks": self.confirm_period_blocks,
            "retryableLifetimeSeconds": self.retryable_lifetime_seconds,
            "nativeToken": self.fee_token or ZERO_ADDRESS,
            "ethBridge": {
                "inbox": self.inbox,
                "rollup": self.rollup,
            },
            "tokenBridge": {role: self.token_bridge.get(role) or ZERO_ADDRESS for role in TOKEN_BRIDGE_ROLES},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NetworkDescriptor":
        token_bridge = data["tokenBridge"]
        missing = set(TOKEN_BRIDGE_ROLES) - set(token_bridge)
        if missing:
            raise ValueError(f"Network descriptor lacks roles: {sorted(missing)}")

        return cls(
            parent_chain_id=data["partnerChainID"],
            chain_id=data["chainID"],
            inbox=addr(data["ethBridge"]["inbox"]),
            rollup=addr(data["ethBridge"]["rollup"]),
            fee_token=none_if_zero(data.get("nativeToken")),
            confirm_period_blocks=data.get("confirmPeriodBlocks", 0),
            retryable_lifetime_seconds=data.get("retryableLifetimeSeconds", DEFAULT_RETRYABLE_LIFETIME_SECONDS),
            token_bridge={role: none_if_zero(token_bridge[role]) for role in TOKEN_BRIDGE_ROLES},
        )

    def write_json(self, path: Path):
        with open(path, "wt") as out:
            json.dump(self.to_dict(), out, indent=2)
        logger.info("Wrote network descriptor to %s", path)

    @classmethod
    def read_json(cls, path: Path) -> "NetworkDescriptor":
        with open(path, "rt") as inp:
            return cls.from_dict(json.load(inp))


class DeploymentOrchestrator:
    """Drives a one-shot token bridge provisioning run."""

    def __init__(
        self,
        config: DeploymentConfig,
        deployer: HexAddress,
        rollup_owner: HexAddress | None = None,
        bridge_config: BridgeConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        :param config:
            Creator, inbox and rollup addresses

        :param deployer:
            Parent chain signer paying for the deployment

        :param rollup_owner:
            Parent chain signer that can execute calls through the rollup upgrade executor.
            Defaults to ``config.rollup_owner``.

        :param bridge_config:
            Fee, margin and wait tunables
        """
        self.config = config
        self.deployer = deployer
        self.rollup_owner = rollup_owner or config.rollup_owner
        self.bridge_config = bridge_config or BridgeConfig()
        self.sleep = sleep
        self.last_confirmed_step: str | None = None

    @contextmanager
    def _step(self, name: str) -> Iterator[None]:
        assert name in DEPLOYMENT_STEPS
        logger.info("Deployment step %s", name)
        try:
            yield
        except DeploymentIncomplete:
            raise
        except Exception as e:
            # Bad addresses surface as node or decoding errors, report them with the step too
            logger.error("Deployment aborted at step %s, last confirmed step %s: %s", name, self.last_confirmed_step, e)
            raise DeploymentIncomplete(f"Deployment failed at {name}: {e}", step=name, last_confirmed_step=self.last_confirmed_step) from e
        self.last_confirmed_step = name

    def resolve_weth(self, parent: ChainEndpoint, fee_token_override: HexAddress | None) -> HexAddress:
        """Use the given parent WETH or deploy a new one."""
        if fee_token_override:
            logger.info("Using existing parent chain WETH %s", fee_token_override)
            return addr(fee_token_override)

        if not self.config.weth_bytecode:
            raise DeploymentIncomplete("No WETH address given and no WETH bytecode configured", step="resolve_weth", last_confirmed_step=self.last_confirmed_step)

        outcome = parent.transact_and_confirm(self.deployer, deploy_contract_call(self.config.weth_bytecode, name="WETH9"), description="WETH deployment")
        assert outcome.contract_address, f"No contract address in {outcome}"
        logger.info("Deployed parent chain WETH at %s", outcome.contract_address)
        return addr(outcome.contract_address)

    def deploy(self, parent: ChainEndpoint, child: ChainEndpoint, fee_token_override: HexAddress | None = None) -> DeploymentPlan:
        """Run the full provisioning.

        :param parent:
            Chain where the rollup and the token bridge creator live

        :param child:
            The rollup chain

        :param fee_token_override:
            Existing parent chain WETH. If not given, a WETH is deployed from ``config.weth_bytecode``.

        :raise DeploymentIncomplete:
            Any step failed. The cause is chained.
        """
        config = self.config
        bridge_config = self.bridge_config
        self.last_confirmed_step = None

        estimator = FeeEstimator(parent, child, config.inbox, bridge_config.fees)
        tracker = MessageTracker(parent, child, wait=bridge_config.wait, backoff=bridge_config.backoff, sleep=self.sleep)

        with self._step("resolve_weth"):
            weth = self.resolve_weth(parent, fee_token_override)

        with self._step("price_factory"):
            fee_token = get_fee_token(parent, config.inbox)
            factory_request = CrossDomainCallRequest(
                source=self.deployer,
                destination=ZERO_ADDRESS,
                call_value=0,
                excess_fee_refund_address=self.deployer,
                call_value_refund_address=self.deployer,
                payload=EncodedPayload(ZERO_ADDRESS, config.child_factory_bytecode),
            )
            quote = estimator.estimate(factory_request)
            max_gas_for_factory = parent.call(GasLimitForChildFactoryDeployment(config.token_bridge_creator))
            quote = dataclasses.replace(quote, gas_limit=max(quote.gas_limit, max_gas_for_factory))
            quote = quote.with_gas_margin(bridge_config.margins.for_call(GasMarginKind.deployment))

            # The contracts retryable carries more calldata than the factory one
            submission_for_contracts = 2 * quote.submission_cost
            gas_price = quote.max_fee_per_gas
            retryable_fee = quote.submission_cost + submission_for_contracts + (quote.gas_limit + config.max_gas_for_contracts) * gas_price
            logger.info(
                "Token bridge creation priced: factory gas %d, contracts gas %d, gas price %d, total retryable fee %d, fee token %s",
                quote.gas_limit,
                config.max_gas_for_contracts,
                gas_price,
                retryable_fee,
                fee_token or "ETH",
            )

        with self._step("create_token_bridge"):
            estimator.revalidate(quote)
            if fee_token:
                parent.transact_and_confirm(self.deployer, Approve(fee_token, config.token_bridge_creator, retryable_fee), description="fee token approval for token bridge creation")
                value = 0
            else:
                value = retryable_fee

            call = CreateTokenBridge(
                config.token_bridge_creator,
                inbox=config.inbox,
                rollup_owner=config.rollup_owner,
                max_gas_for_contracts=config.max_gas_for_contracts,
                gas_price_bid=gas_price,
            )
            outcome = parent.transact_and_confirm(self.deployer, call, value=value, description="token bridge creation")

        with self._step("wait_messages"):
            tracker.wait_for_redeemed(outcome, expected_count=2)

        with self._step("read_back"):
            plan = self.read_deployment(parent, child, fee_token, outcome.tx_hash)
            logger.info("Token bridge deployed:\n%s", plan.pformat())

        with self._step("register_weth_gateway"):
            if plan.parent.weth_gateway:
                # The creator does not register the WETH gateway with the router
                executor = parent.call(Owner(config.rollup))
                coordinator = RegistrationCoordinator(parent, child, estimator, tracker, bridge_config.margins)
                coordinator.register_gateway(self.rollup_owner, plan.parent.router, [weth], [plan.parent.weth_gateway], executor=executor)
            else:
                logger.info("No WETH gateway on a fee token chain, skipping its registration")

        return plan

    def read_deployment(self, parent: ChainEndpoint, child: ChainEndpoint, fee_token: HexAddress | None, tx_hash: HexBytes) -> DeploymentPlan:
        """Read the addresses the creator recorded for our inbox.

        :raise DeploymentIncomplete:
            The creator has no record, or the child contracts are missing
        """
        config = self.config
        creator = config.token_bridge_creator
        parent_roles = parent.call(ParentDeployment(creator, config.inbox))
        child_roles = parent.call(ChildDeployment(creator, config.inbox))
        multicall = parent.call(ParentMulticall(creator))
        proxy_admin = parent.call(ProxyAdminOf(config.inbox))

        if none_if_zero(parent_roles["router"]) is None:
            raise DeploymentIncomplete(f"Creator {creator} has no deployment for inbox {config.inbox}", step="read_back", last_confirmed_step=self.last_confirmed_step)

        if not child.has_code(child_roles["router"]):
            raise DeploymentIncomplete(f"Child router {child_roles['router']} has no code", step="read_back", last_confirmed_step=self.last_confirmed_step)

        return DeploymentPlan(
            parent=DeployedContracts(
                chain_id=parent.chain_id,
                router=addr(parent_roles["router"]),
                standard_gateway=addr(parent_roles["standard_gateway"]),
                custom_gateway=addr(parent_roles["custom_gateway"]),
                weth_gateway=none_if_zero(parent_roles["weth_gateway"]),
                weth=none_if_zero(parent_roles["weth"]),
                proxy_admin=addr(proxy_admin),
                multicall=addr(multicall),
            ),
            child=DeployedContracts(
                chain_id=child.chain_id,
                router=addr(child_roles["router"]),
                standard_gateway=addr(child_roles["standard_gateway"]),
                custom_gateway=addr(child_roles["custom_gateway"]),
                weth_gateway=none_if_zero(child_roles["weth_gateway"]),
                weth=none_if_zero(child_roles["weth"]),
                proxy_admin=addr(child_roles["proxy_admin"]),
                multicall=addr(child_roles["multicall"]),
                upgrade_executor=none_if_zero(child_roles["upgrade_executor"]),
                beacon_proxy_factory=none_if_zero(child_roles["beacon_proxy_factory"]),
            ),
            inbox=addr(config.inbox),
            rollup=addr(config.rollup),
            fee_token=fee_token,
            originating_tx_hash=tx_hash,
            confirm_period_blocks=parent.call(ConfirmPeriodBlocks(config.rollup)),
        )
