"""In-memory parent and child ledgers for tests.

:py:class:`SimulatedBridge` provides two :py:class:`SimulatedChain` endpoints that behave like
an Arbitrum style rollup with a token bridge, without bytecode or a node:

- Parent chain: rollup, inbox, upgrade executor, token bridge creator, routers, gateways, ERC-20 tokens

- Child chain: routers, gateways, bridged tokens, ``ArbRetryableTx``

- Retryables are queued by the inbox and delivered to the child chain after
  a configurable number of status polls

- Auto-redeem happens on delivery if the gas limit covers the execution and
  the max fee per gas covers the child gas price, otherwise the ticket waits in
  ``FUNDS_DEPOSITED`` for a manual redeem until :py:meth:`SimulatedBridge.advance_time` expires it

- A reverting transaction rolls back every state change on both chains

Example:

.. code-block:: python

    bridge = SimulatedBridge()
    orchestrator = DeploymentOrchestrator(bridge.deployment_config, deployer=bridge.deployer, rollup_owner=bridge.rollup_owner)
    plan = orchestrator.deploy(bridge.parent, bridge.child, fee_token_override=bridge.parent_weth)
"""

import copy
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any

import eth_abi
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_token_bridge.abi import CHILD_DEPLOYMENT_FIELDS, PARENT_DEPLOYMENT_FIELDS, encode_call, encode_with_signature, get_function_selector
from eth_token_bridge.calls import (
    AddMinter,
    Approve,
    BalanceOf,
    BurnLockedCollateral,
    CalculateChildTokenAddress,
    CalculateRetryableSubmissionFee,
    ChildDeployment,
    ConfirmPeriodBlocks,
    ContractCall,
    CounterpartGateway,
    CreateTokenBridge,
    CrossDomainCallRequest,
    DefaultGateway,
    DeployContract,
    DepositsPaused,
    EncodedPayload,
    ExecuteCall,
    GasLimitForChildFactoryDeployment,
    GetGateway,
    GetOutboundCalldata,
    GetRetryableTimeout,
    InboxBridge,
    IsMinter,
    NativeToken,
    OutboundTransferCustomRefund,
    Owner,
    ParentDeployment,
    ParentMulticall,
    PauseDeposits,
    PauseWithdrawals,
    ProxyAdminOf,
    ReadCall,
    RedeemRetryable,
    RegisterTokenFromParent,
    RegisterTokenOnChild,
    SetGatewayOnChild,
    SetGateways,
    SetOwner,
    TotalSupply,
    WithdrawalsPaused,
)
from eth_token_bridge.config import DeploymentConfig
from eth_token_bridge.constants import ARB_RETRYABLE_TX, DEFAULT_RETRYABLE_LIFETIME_SECONDS, ZERO_ADDRESS
from eth_token_bridge.endpoint import ChainEndpoint, TransactionOutcome
from eth_token_bridge.errors import EstimationFailed, TransientNetworkError
from eth_token_bridge.messages import CrossDomainMessageHandle, CrossDomainMessageStatus
from eth_token_bridge.retryable import RetryableMessageData, apply_alias, calculate_retryable_ticket_id, calculate_submission_fee

logger = logging.getLogger(__name__)

#: Child gateway entry point for deposits
FINALIZE_INBOUND_TRANSFER = "finalizeInboundTransfer(address,address,address,uint256,bytes)"


class SimulatedRevert(Exception):
    """A simulated contract call reverted."""


def _key(address: str) -> str:
    return address.lower()


def _is_zero(address: str | None) -> bool:
    return address is None or int(address, 16) == 0


@dataclass(slots=True)
class TxContext:
    """Execution context of a simulated call."""

    chain: "SimulatedChain"

    #: ``msg.sender``
    sender: HexAddress

    #: ``tx.origin``
    origin: HexAddress

    #: ``msg.value``
    value: int

    tx_hash: HexBytes

    def with_sender(self, sender: HexAddress, value: int = 0) -> "TxContext":
        return TxContext(self.chain, sender, self.origin, value, self.tx_hash)


@dataclass
class SimulatedRetryable:
    """A ticket in the simulated inbox."""

    ticket_id: HexBytes
    index: int
    message_number: int
    originating_tx_hash: HexBytes
    #: Aliased parent sender
    sender: HexAddress
    destination: HexAddress
    payload: ContractCall
    call_value: int
    gas_limit: int
    max_fee_per_gas: int
    submission_cost: int
    #: Gas the child execution needs
    required_gas: int
    polls_until_delivery: int
    fail_creation: bool = False
    status: CrossDomainMessageStatus = CrossDomainMessageStatus.NOT_YET_CREATED
    #: Expiry timestamp once created
    timeout: int = 0
    #: How many times the execution was attempted
    redeem_attempts: int = 0


#
# Contracts
#


class SimulatedContract:
    """Base for simulated contracts.

    Contracts hold plain data only, so that chain state can be snapshotted.
    """

    #: Write call type -> method name
    writes: dict = {}

    #: Read call type -> method name
    reads: dict = {}

    def __init__(self, address: HexAddress, label: str, owner: HexAddress | None = None, proxy_admin: HexAddress | None = None):
        self.address = address
        self.label = label
        self.owner = owner
        self.proxy_admin = proxy_admin

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.label} at {self.address}>"

    def handle(self, ctx: TxContext, call: ContractCall):
        method = self.writes.get(type(call))
        if method is None:
            raise SimulatedRevert(f"{self.label} does not implement {call.__class__.__name__}")
        return getattr(self, method)(ctx, call)

    def read(self, read: ReadCall) -> Any:
        if isinstance(read, ProxyAdminOf):
            return self.proxy_admin or ZERO_ADDRESS
        if isinstance(read, Owner) and self.owner is not None:
            return self.owner
        method = self.reads.get(type(read))
        if method is None:
            raise SimulatedRevert(f"{self.label} does not implement {read.__class__.__name__}")
        return getattr(self, method)(read)

    def dry_run(self, sender: HexAddress, call: ContractCall):
        """Validate a retryable payload without executing it."""
        if type(call) not in self.writes:
            raise SimulatedRevert(f"{self.label} does not implement {call.__class__.__name__}")

    def require_owner(self, ctx: TxContext):
        if self.owner is None or _key(ctx.sender) != _key(self.owner):
            raise SimulatedRevert(f"{self.label}: caller {ctx.sender} is not the owner {self.owner}")

    def set_owner(self, ctx: TxContext, call: SetOwner):
        self.require_owner(ctx)
        self.owner = call.new_owner


class SimulatedToken(SimulatedContract):
    """ERC-20 with an owner and minters."""

    writes = {Approve: "approve", SetOwner: "set_owner", AddMinter: "add_minter"}
    reads = {BalanceOf: "read_balance", TotalSupply: "read_total_supply", IsMinter: "read_is_minter"}

    def __init__(self, address, label, owner=None, minters=(), proxy_admin=None):
        super().__init__(address, label, owner, proxy_admin)
        self.balances: dict[str, int] = {}
        self.allowances: dict[tuple[str, str], int] = {}
        self.total_supply = 0
        self.minters = {_key(m) for m in minters}

    def balance_of(self, account: str) -> int:
        return self.balances.get(_key(account), 0)

    def mint(self, to: str, amount: int):
        self.balances[_key(to)] = self.balance_of(to) + amount
        self.total_supply += amount

    def burn(self, account: str, amount: int):
        if self.balance_of(account) < amount:
            raise SimulatedRevert(f"{self.label}: burn amount exceeds balance")
        self.balances[_key(account)] = self.balance_of(account) - amount
        self.total_supply -= amount

    def transfer_from(self, spender: str, source: str, to: str, amount: int):
        allowance = self.allowances.get((_key(source), _key(spender)), 0)
        if allowance < amount:
            raise SimulatedRevert(f"{self.label}: insufficient allowance {allowance} < {amount}")
        if self.balance_of(source) < amount:
            raise SimulatedRevert(f"{self.label}: transfer amount exceeds balance")
        self.allowances[(_key(source), _key(spender))] = allowance - amount
        self.balances[_key(source)] = self.balance_of(source) - amount
        self.balances[_key(to)] = self.balance_of(to) + amount

    def approve(self, ctx: TxContext, call: Approve):
        self.allowances[(_key(ctx.sender), _key(call.spender))] = call.amount

    def add_minter(self, ctx: TxContext, call: AddMinter):
        self.require_owner(ctx)
        self.minters.add(_key(call.minter))

    def read_balance(self, read: BalanceOf) -> int:
        return self.balance_of(read.account)

    def read_total_supply(self, read: TotalSupply) -> int:
        return self.total_supply

    def read_is_minter(self, read: IsMinter) -> bool:
        return _key(read.account) in self.minters


class SimulatedCustomToken(SimulatedToken):
    """Parent chain token that registers itself with the custom gateway."""

    writes = {**SimulatedToken.writes, RegisterTokenOnChild: "register_token_on_child"}

    def __init__(self, address, label, custom_gateway: HexAddress, router: HexAddress, owner=None):
        super().__init__(address, label, owner)
        self.custom_gateway = custom_gateway
        self.router = router

    def register_token_on_child(self, ctx: TxContext, call: RegisterTokenOnChild):
        chain = ctx.chain
        if chain.bridge.fee_token is None and ctx.value < call.value_for_gateway + call.value_for_router:
            raise SimulatedRevert(f"{self.label}: insufficient value for registration")

        gateway = chain.get_contract(self.custom_gateway)
        gateway.register_token_to_child(
            ctx.with_sender(self.address, call.value_for_gateway),
            parent_token=self.address,
            child_token=call.child_token,
            max_gas=call.max_gas_for_gateway,
            gas_price_bid=call.gas_price_bid,
            max_submission_cost=call.max_submission_cost_for_gateway,
            credit_back=call.credit_back_address,
            fee_payer=ctx.sender,
        )

        router = chain.get_contract(self.router)
        router.set_gateway_from_token(
            ctx.with_sender(self.address, call.value_for_router),
            token=self.address,
            gateway=self.custom_gateway,
            max_gas=call.max_gas_for_router,
            gas_price_bid=call.gas_price_bid,
            max_submission_cost=call.max_submission_cost_for_router,
            credit_back=call.credit_back_address,
            fee_payer=ctx.sender,
        )


class SimulatedUpgradeExecutor(SimulatedContract):
    """Forwards calls for its executors."""

    writes = {ExecuteCall: "execute_call"}

    def __init__(self, address, label, executors=()):
        super().__init__(address, label)
        self.executors = {_key(e) for e in executors}

    def execute_call(self, ctx: TxContext, call: ExecuteCall):
        if _key(ctx.sender) not in self.executors:
            raise SimulatedRevert(f"{self.label}: {ctx.sender} is not an executor")
        inner = ctx.with_sender(self.address, ctx.value)
        ctx.chain.move_native(self.address, call.call.target, ctx.value)
        ctx.chain.get_contract(call.call.target).handle(inner, call.call)


class SimulatedRollup(SimulatedContract):
    reads = {ConfirmPeriodBlocks: "read_confirm_period_blocks"}

    def __init__(self, address, label, owner, confirm_period_blocks=20):
        super().__init__(address, label, owner)
        self.confirm_period_blocks = confirm_period_blocks

    def read_confirm_period_blocks(self, read) -> int:
        return self.confirm_period_blocks


class SimulatedRollupBridge(SimulatedContract):
    reads = {NativeToken: "read_native_token"}

    def __init__(self, address, label, native_token: HexAddress | None):
        super().__init__(address, label)
        self.native_token = native_token

    def read_native_token(self, read) -> HexAddress:
        return self.native_token or ZERO_ADDRESS


class SimulatedInbox(SimulatedContract):
    reads = {InboxBridge: "read_bridge", CalculateRetryableSubmissionFee: "read_submission_fee"}

    def __init__(self, address, label, rollup_bridge: HexAddress, fee_token: HexAddress | None, proxy_admin=None):
        super().__init__(address, label, proxy_admin=proxy_admin)
        self.rollup_bridge = rollup_bridge
        self.fee_token = fee_token

    def read_bridge(self, read) -> HexAddress:
        return self.rollup_bridge

    def read_submission_fee(self, read: CalculateRetryableSubmissionFee) -> int:
        if self.fee_token is not None:
            return 0
        return calculate_submission_fee(read.data_length, read.base_fee)


class SimulatedParentRouter(SimulatedContract):
    writes = {SetGateways: "set_gateways", OutboundTransferCustomRefund: "outbound_transfer", SetOwner: "set_owner"}
    reads = {
        GetGateway: "read_gateway",
        DefaultGateway: "read_default_gateway",
        CounterpartGateway: "read_counterpart",
    }

    def __init__(self, address, label, owner, default_gateway, counterpart):
        super().__init__(address, label, owner)
        self.default_gateway = default_gateway
        self.counterpart = counterpart
        self.gateways: dict[str, HexAddress] = {}

    def get_gateway(self, token: str) -> HexAddress:
        gateway = self.gateways.get(_key(token))
        if _is_zero(gateway):
            return self.default_gateway
        return gateway

    def set_gateways(self, ctx: TxContext, call: SetGateways):
        self.require_owner(ctx)
        if len(call.tokens) != len(call.gateways) or not call.tokens:
            raise SimulatedRevert(f"{self.label}: WRONG_LENGTH")

        child_gateways = []
        for gateway in call.gateways:
            if _is_zero(gateway):
                child_gateways.append(ZERO_ADDRESS)
            else:
                child_gateways.append(ctx.chain.get_contract(gateway).counterpart)

        for token, gateway in zip(call.tokens, call.gateways):
            self.gateways[_key(token)] = gateway

        ctx.chain.bridge.create_retryable(
            ctx,
            source=self.address,
            destination=self.counterpart,
            payload=SetGatewayOnChild(self.counterpart, tuple(call.tokens), tuple(child_gateways)),
            gas_limit=call.max_gas,
            max_fee_per_gas=call.gas_price_bid,
            max_submission_cost=call.max_submission_cost,
            available=ctx.value,
            fee_token_amount=call.fee_token_amount,
            fee_payer=ctx.sender,
        )

    def set_gateway_from_token(self, ctx: TxContext, token, gateway, max_gas, gas_price_bid, max_submission_cost, credit_back, fee_payer):
        child_gateway = ctx.chain.get_contract(gateway).counterpart
        self.gateways[_key(token)] = gateway
        ctx.chain.bridge.create_retryable(
            ctx,
            source=self.address,
            destination=self.counterpart,
            payload=SetGatewayOnChild(self.counterpart, (token,), (child_gateway,)),
            gas_limit=max_gas,
            max_fee_per_gas=gas_price_bid,
            max_submission_cost=max_submission_cost,
            available=ctx.value,
            fee_token_amount=max_submission_cost + max_gas * gas_price_bid,
            fee_payer=fee_payer,
            fee_spender=token,
        )

    def outbound_transfer(self, ctx: TxContext, call: OutboundTransferCustomRefund):
        gateway = ctx.chain.get_contract(self.get_gateway(call.token))
        gateway.outbound_transfer(ctx, call)

    def read_gateway(self, read: GetGateway) -> HexAddress:
        return self.get_gateway(read.token)

    def read_default_gateway(self, read) -> HexAddress:
        return self.default_gateway

    def read_counterpart(self, read) -> HexAddress:
        return self.counterpart


class SimulatedParentGateway(SimulatedContract):
    """Standard or custom gateway on the parent chain."""

    writes = {SetOwner: "set_owner"}
    reads = {
        CounterpartGateway: "read_counterpart",
        CalculateChildTokenAddress: "read_child_token",
        GetOutboundCalldata: "read_outbound_calldata",
    }

    def __init__(self, address, label, counterpart, router, custom=False, owner=None, proxy_admin=None):
        super().__init__(address, label, owner, proxy_admin)
        self.counterpart = counterpart
        self.router = router
        self.custom = custom
        #: Custom gateway registrations, parent token -> child token
        self.child_tokens: dict[str, HexAddress] = {}

    def child_token_address(self, token: str) -> HexAddress:
        if self.custom:
            return self.child_tokens.get(_key(token), ZERO_ADDRESS)
        return standard_child_token_address(self.counterpart, token)

    def check_deposit(self, call: OutboundTransferCustomRefund):
        if self.custom and _is_zero(self.child_token_address(call.token)):
            raise SimulatedRevert(f"{self.label}: NO_L2_TOKEN_SET")

    def outbound_transfer(self, ctx: TxContext, call: OutboundTransferCustomRefund):
        if _key(call.target) != _key(self.router):
            raise SimulatedRevert(f"{self.label}: only the router can call")
        self.check_deposit(call)
        user = ctx.sender
        token = ctx.chain.get_contract(call.token)
        token.transfer_from(self.address, user, self.address, call.amount)
        data = encode_outbound_calldata(call.token, user, call.to, call.amount, call.callhook)
        ctx.chain.bridge.create_retryable(
            ctx,
            source=self.address,
            destination=self.counterpart,
            payload=EncodedPayload(self.counterpart, data),
            gas_limit=call.max_gas,
            max_fee_per_gas=call.gas_price_bid,
            max_submission_cost=call.max_submission_cost,
            available=ctx.value,
            fee_token_amount=call.fee_token_amount,
            fee_payer=user,
            fee_spender=self.address,
        )

    def register_token_to_child(self, ctx: TxContext, parent_token, child_token, max_gas, gas_price_bid, max_submission_cost, credit_back, fee_payer):
        if not self.custom:
            raise SimulatedRevert(f"{self.label}: not a custom gateway")
        self.child_tokens[_key(parent_token)] = child_token
        ctx.chain.bridge.create_retryable(
            ctx,
            source=self.address,
            destination=self.counterpart,
            payload=RegisterTokenFromParent(self.counterpart, (parent_token,), (child_token,)),
            gas_limit=max_gas,
            max_fee_per_gas=gas_price_bid,
            max_submission_cost=max_submission_cost,
            available=ctx.value,
            fee_token_amount=max_submission_cost + max_gas * gas_price_bid,
            fee_payer=fee_payer,
            fee_spender=parent_token,
        )

    def read_counterpart(self, read) -> HexAddress:
        return self.counterpart

    def read_child_token(self, read: CalculateChildTokenAddress) -> HexAddress:
        return self.child_token_address(read.token)

    def read_outbound_calldata(self, read: GetOutboundCalldata) -> bytes:
        return encode_outbound_calldata(read.token, read.sender, read.to, read.amount, read.data)


class SimulatedParentUsdcGateway(SimulatedParentGateway):
    """Parent chain USDC gateway with pausable deposits and collateral burn."""

    writes = {**SimulatedParentGateway.writes, PauseDeposits: "pause_deposits", BurnLockedCollateral: "burn_locked"}
    reads = {**SimulatedParentGateway.reads, DepositsPaused: "read_deposits_paused"}

    def __init__(self, address, label, counterpart, router, parent_token, child_token, owner):
        super().__init__(address, label, counterpart, router, custom=True, owner=owner)
        self.parent_token = parent_token
        self.child_tokens[_key(parent_token)] = child_token
        self.deposits_paused = False

    def check_deposit(self, call: OutboundTransferCustomRefund):
        if _key(call.token) != _key(self.parent_token):
            raise SimulatedRevert(f"{self.label}: not USDC")
        if self.deposits_paused:
            raise SimulatedRevert(f"{self.label}: deposits paused")

    def pause_deposits(self, ctx: TxContext, call):
        self.require_owner(ctx)
        if self.deposits_paused:
            raise SimulatedRevert(f"{self.label}: deposits already paused")
        self.deposits_paused = True

    def burn_locked(self, ctx: TxContext, call):
        self.require_owner(ctx)
        if not self.deposits_paused:
            raise SimulatedRevert(f"{self.label}: deposits not paused")
        token = ctx.chain.get_contract(self.parent_token)
        if _key(self.address) not in token.minters:
            raise SimulatedRevert(f"{self.label}: gateway is not a minter")
        token.burn(self.address, token.balance_of(self.address))

    def read_deposits_paused(self, read) -> bool:
        return self.deposits_paused


class SimulatedChildRouter(SimulatedContract):
    writes = {SetGatewayOnChild: "set_gateway"}
    reads = {GetGateway: "read_gateway", DefaultGateway: "read_default_gateway", CounterpartGateway: "read_counterpart"}

    def __init__(self, address, label, counterpart, default_gateway):
        super().__init__(address, label)
        self.counterpart = counterpart
        self.default_gateway = default_gateway
        self.gateways: dict[str, HexAddress] = {}

    def dry_run(self, sender, call):
        super().dry_run(sender, call)
        if _key(sender) != _key(apply_alias(self.counterpart)):
            raise SimulatedRevert(f"{self.label}: ONLY_COUNTERPART_GATEWAY")

    def set_gateway(self, ctx: TxContext, call: SetGatewayOnChild):
        self.dry_run(ctx.sender, call)
        for token, gateway in zip(call.tokens, call.gateways):
            self.gateways[_key(token)] = gateway

    def read_gateway(self, read: GetGateway) -> HexAddress:
        gateway = self.gateways.get(_key(read.token))
        if _is_zero(gateway):
            return self.default_gateway
        return gateway

    def read_default_gateway(self, read) -> HexAddress:
        return self.default_gateway

    def read_counterpart(self, read) -> HexAddress:
        return self.counterpart


class SimulatedChildGateway(SimulatedContract):
    """Standard or custom gateway on the child chain."""

    writes = {EncodedPayload: "finalize_inbound_transfer", RegisterTokenFromParent: "register_token_from_parent"}
    reads = {CounterpartGateway: "read_counterpart", CalculateChildTokenAddress: "read_child_token"}

    def __init__(self, address, label, counterpart, custom=False, owner=None):
        super().__init__(address, label, owner)
        self.counterpart = counterpart
        self.custom = custom
        self.child_tokens: dict[str, HexAddress] = {}

    def child_token_address(self, token: str) -> HexAddress:
        if self.custom:
            return self.child_tokens.get(_key(token), ZERO_ADDRESS)
        return standard_child_token_address(self.address, token)

    def dry_run(self, sender, call):
        super().dry_run(sender, call)
        if _key(sender) != _key(apply_alias(self.counterpart)):
            raise SimulatedRevert(f"{self.label}: ONLY_COUNTERPART_GATEWAY")
        if isinstance(call, EncodedPayload):
            decode_finalize_calldata(call.data)
        if isinstance(call, RegisterTokenFromParent) and not self.custom:
            raise SimulatedRevert(f"{self.label}: not a custom gateway")

    def register_token_from_parent(self, ctx: TxContext, call: RegisterTokenFromParent):
        self.dry_run(ctx.sender, call)
        for token, child_token in zip(call.tokens, call.child_tokens):
            self.child_tokens[_key(token)] = child_token

    def finalize_inbound_transfer(self, ctx: TxContext, call: EncodedPayload):
        self.dry_run(ctx.sender, call)
        token, _source, to, amount, _extra = decode_finalize_calldata(call.data)
        child_token = self.child_token_address(token)
        if _is_zero(child_token):
            raise SimulatedRevert(f"{self.label}: no child token for {token}")
        contract = ctx.chain.contracts.get(_key(child_token))
        if contract is None:
            # Standard gateway deploys the bridged token on the first deposit
            contract = ctx.chain.add_contract(SimulatedToken(child_token, f"Bridged {token}", minters=[self.address]))
        if _key(self.address) not in contract.minters:
            raise SimulatedRevert(f"{self.label}: gateway cannot mint {child_token}")
        contract.mint(to, amount)

    def read_counterpart(self, read) -> HexAddress:
        return self.counterpart

    def read_child_token(self, read: CalculateChildTokenAddress) -> HexAddress:
        return self.child_token_address(read.token)


class SimulatedChildUsdcGateway(SimulatedChildGateway):
    writes = {EncodedPayload: "finalize_inbound_transfer", PauseWithdrawals: "pause_withdrawals", SetOwner: "set_owner"}
    reads = {**SimulatedChildGateway.reads, WithdrawalsPaused: "read_withdrawals_paused"}

    def __init__(self, address, label, counterpart, parent_token, child_token, owner):
        super().__init__(address, label, counterpart, custom=True, owner=owner)
        self.child_tokens[_key(parent_token)] = child_token
        self.withdrawals_paused = False

    def pause_withdrawals(self, ctx: TxContext, call):
        self.require_owner(ctx)
        if self.withdrawals_paused:
            raise SimulatedRevert(f"{self.label}: withdrawals already paused")
        self.withdrawals_paused = True

    def read_withdrawals_paused(self, read) -> bool:
        return self.withdrawals_paused


class SimulatedTokenBridgeCreator(SimulatedContract):
    """Deploys the parent contracts and sends two retryables for the child contracts."""

    writes = {CreateTokenBridge: "create_token_bridge"}
    reads = {
        ParentDeployment: "read_parent_deployment",
        ChildDeployment: "read_child_deployment",
        ParentMulticall: "read_multicall",
        GasLimitForChildFactoryDeployment: "read_factory_gas",
    }

    def __init__(self, address, label, weth, multicall, gas_limit_for_factory=3_000_000, owner=None):
        super().__init__(address, label, owner)
        self.weth = weth
        self.multicall = multicall
        self.gas_limit_for_factory = gas_limit_for_factory
        self.child_factory_code = b""
        #: inbox -> (parent roles, child roles)
        self.deployments: dict[str, tuple[dict, dict]] = {}

    def create_token_bridge(self, ctx: TxContext, call: CreateTokenBridge):
        chain = ctx.chain
        bridge = chain.bridge
        if _key(call.inbox) in self.deployments:
            raise SimulatedRevert(f"{self.label}: already created for {call.inbox}")

        inbox = chain.get_contract(call.inbox)
        fee_token = inbox.fee_token
        rollup_owner_executor = bridge.parent_upgrade_executor

        child = {role: bridge.predict_address(f"child:{call.inbox}:{role}") for role in CHILD_DEPLOYMENT_FIELDS}
        parent = {role: bridge.predict_address(f"parent:{call.inbox}:{role}") for role in PARENT_DEPLOYMENT_FIELDS}
        parent["weth"] = self.weth
        if fee_token is not None:
            for roles in (parent, child):
                roles["weth_gateway"] = ZERO_ADDRESS
                roles["weth"] = ZERO_ADDRESS

        chain.add_contract(SimulatedParentRouter(parent["router"], "parent router", rollup_owner_executor, parent["standard_gateway"], child["router"]))
        chain.add_contract(SimulatedParentGateway(parent["standard_gateway"], "parent standard gateway", child["standard_gateway"], parent["router"]))
        chain.add_contract(SimulatedParentGateway(parent["custom_gateway"], "parent custom gateway", child["custom_gateway"], parent["router"], custom=True))
        if fee_token is None:
            weth_gateway = SimulatedParentGateway(parent["weth_gateway"], "parent weth gateway", child["weth_gateway"], parent["router"], custom=True)
            chain.add_contract(weth_gateway)

        bridge.pending_child_deployments[_key(call.inbox)] = {"parent": dict(parent), "child": dict(child), "fee_token": fee_token is not None}
        self.deployments[_key(call.inbox)] = (parent, child)

        factory_payload = EncodedPayload(ZERO_ADDRESS, self.child_factory_code)
        contracts_payload = EncodedPayload(bridge.child_factory_address, eth_abi.encode(["address"], [Web3.to_checksum_address(call.inbox)]))
        submission_factory = calculate_submission_fee(len(factory_payload.data), chain.base_fee) if fee_token is None else 0
        submission_contracts = calculate_submission_fee(len(contracts_payload.data), chain.base_fee) if fee_token is None else 0
        value_factory = submission_factory + self.gas_limit_for_factory * call.gas_price_bid
        value_contracts = submission_contracts + call.max_gas_for_contracts * call.gas_price_bid

        if fee_token is None and ctx.value < value_factory + value_contracts:
            raise SimulatedRevert(f"{self.label}: insufficient value {ctx.value} < {value_factory + value_contracts}")

        for payload, submission, gas_limit, value in (
            (factory_payload, submission_factory, self.gas_limit_for_factory, value_factory),
            (contracts_payload, submission_contracts, call.max_gas_for_contracts, value_contracts),
        ):
            bridge.create_retryable(
                ctx,
                source=self.address,
                destination=payload.target,
                payload=payload,
                gas_limit=gas_limit,
                max_fee_per_gas=call.gas_price_bid,
                max_submission_cost=submission,
                available=value,
                fee_token_amount=value if fee_token is not None else None,
                fee_payer=ctx.sender,
            )

    def read_parent_deployment(self, read: ParentDeployment) -> dict:
        parent, _child = self._get_deployment(read.inbox)
        return dict(parent)

    def read_child_deployment(self, read: ChildDeployment) -> dict:
        _parent, child = self._get_deployment(read.inbox)
        return dict(child)

    def _get_deployment(self, inbox) -> tuple[dict, dict]:
        deployment = self.deployments.get(_key(inbox))
        if deployment is None:
            empty_parent = {role: ZERO_ADDRESS for role in PARENT_DEPLOYMENT_FIELDS}
            empty_child = {role: ZERO_ADDRESS for role in CHILD_DEPLOYMENT_FIELDS}
            return empty_parent, empty_child
        return deployment

    def read_multicall(self, read) -> HexAddress:
        return self.multicall

    def read_factory_gas(self, read) -> int:
        return self.gas_limit_for_factory


class SimulatedChildFactory(SimulatedContract):
    """Deploys the child side of a token bridge."""

    writes = {EncodedPayload: "deploy_contracts"}

    def deploy_contracts(self, ctx: TxContext, call: EncodedPayload):
        (inbox,) = eth_abi.decode(["address"], bytes(call.data))
        pending = ctx.chain.bridge.pending_child_deployments.get(_key(inbox))
        if pending is None:
            raise SimulatedRevert(f"{self.label}: nothing to deploy for {inbox}")
        parent, child = pending["parent"], pending["child"]
        chain = ctx.chain
        if chain.has_code(child["router"]):
            raise SimulatedRevert(f"{self.label}: already deployed")
        chain.add_contract(SimulatedChildRouter(child["router"], "child router", parent["router"], child["standard_gateway"]))
        chain.add_contract(SimulatedChildGateway(child["standard_gateway"], "child standard gateway", parent["standard_gateway"]))
        chain.add_contract(SimulatedChildGateway(child["custom_gateway"], "child custom gateway", parent["custom_gateway"], custom=True))
        if not pending["fee_token"]:
            weth_gateway = SimulatedChildGateway(child["weth_gateway"], "child weth gateway", parent["weth_gateway"], custom=True)
            weth_gateway.child_tokens[_key(parent["weth"])] = child["weth"]
            chain.add_contract(weth_gateway)
            chain.add_contract(SimulatedToken(child["weth"], "child WETH", minters=[child["weth_gateway"]]))
        for role in ("proxy_admin", "beacon_proxy_factory", "upgrade_executor", "multicall"):
            chain.add_contract(SimulatedContract(child[role], f"child {role}"))


class SimulatedArbRetryableTx(SimulatedContract):
    writes = {RedeemRetryable: "redeem"}

    def redeem(self, ctx: TxContext, call: RedeemRetryable):
        ctx.chain.bridge.manual_redeem(call.ticket_id)


#
# Helpers
#


def encode_outbound_calldata(token, source, to, amount, callhook=b"") -> bytes:
    """Child gateway ``finalizeInboundTransfer()`` calldata."""
    return encode_with_signature(
        FINALIZE_INBOUND_TRANSFER,
        [Web3.to_checksum_address(token), Web3.to_checksum_address(source), Web3.to_checksum_address(to), amount, bytes(callhook)],
    )


def decode_finalize_calldata(data: bytes) -> tuple:
    data = bytes(data)
    if data[0:4] != get_function_selector(FINALIZE_INBOUND_TRANSFER):
        raise SimulatedRevert("Unknown child gateway call")
    return eth_abi.decode(["address", "address", "address", "uint256", "bytes"], data[4:])


def standard_child_token_address(child_gateway: str, token: str) -> HexAddress:
    """Deterministic bridged token address of the standard gateway."""
    digest = Web3.keccak(text=f"standard:{_key(child_gateway)}:{_key(token)}")
    return Web3.to_checksum_address(digest[-20:])


#
# Chains
#


class SimulatedChain(ChainEndpoint):
    """One simulated ledger."""

    def __init__(self, bridge: "SimulatedBridge", chain_id: int, name: str, base_fee: int, gas_price: int):
        self.bridge = bridge
        self._chain_id = chain_id
        self.name = name
        self.base_fee = base_fee
        self.gas_price = gas_price
        self.native_balances: dict[str, int] = {}
        self.contracts: dict[str, SimulatedContract] = {}
        self.block_number = 1
        self.outcomes: list[TransactionOutcome] = []

        #: Fail this many next reads with :py:class:`TransientNetworkError`
        self.transient_failures = 0

    def __repr__(self):
        return f"<SimulatedChain {self.name} {self.chain_id}>"

    def add_contract(self, contract: SimulatedContract) -> SimulatedContract:
        assert _key(contract.address) not in self.contracts, f"Address taken: {contract.address}"
        self.contracts[_key(contract.address)] = contract
        return contract

    def get_contract(self, address: str) -> SimulatedContract:
        contract = self.contracts.get(_key(address))
        if contract is None:
            raise SimulatedRevert(f"No contract at {address} on {self.name}")
        return contract

    def move_native(self, source: str, to: str, amount: int):
        if amount == 0:
            return
        balance = self.native_balances.get(_key(source), 0)
        if balance < amount:
            raise SimulatedRevert(f"Insufficient funds: {source} has {balance}, needs {amount}")
        self.native_balances[_key(source)] = balance - amount
        self.native_balances[_key(to)] = self.native_balances.get(_key(to), 0) + amount

    def _check_transient(self):
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientNetworkError(f"{self.name}: simulated node unavailable")

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def get_base_fee(self) -> int:
        return self.base_fee

    def get_gas_price(self) -> int:
        return self.gas_price

    def get_balance(self, address: HexAddress) -> int:
        return self.native_balances.get(_key(address), 0)

    def get_timestamp(self) -> int:
        return self.bridge.now

    def has_code(self, address: HexAddress) -> bool:
        return _key(address) in self.contracts

    def call(self, read: ReadCall) -> Any:
        with self.bridge.lock:
            self._check_transient()
            contract = self.get_contract(read.target)
            if isinstance(read, GetRetryableTimeout):
                return self.bridge.get_ticket_timeout(read.ticket_id)
            if isinstance(read, CalculateChildTokenAddress) and isinstance(contract, SimulatedParentRouter):
                return self.get_contract(contract.get_gateway(read.token)).child_token_address(read.token)
            return contract.read(read)

    def transact(self, sender: HexAddress, call: ContractCall, value: int = 0, gas_limit: int | None = None) -> TransactionOutcome:
        with self.bridge.lock:
            tx_hash = self.bridge.next_tx_hash(self)
            self.block_number += 1
            snapshot = self.bridge.snapshot()
            contract_address = None
            try:
                if isinstance(call, DeployContract):
                    self.move_native(sender, ZERO_ADDRESS, value)
                    contract_address = self.bridge.deploy_contract(self, sender, call)
                else:
                    self.move_native(sender, call.target, value)
                    ctx = TxContext(self, sender, sender, value, tx_hash)
                    self.get_contract(call.target).handle(ctx, call)
                success, reason = True, None
            except SimulatedRevert as e:
                self.bridge.restore(snapshot)
                success, reason = False, str(e)

            if success and self is self.bridge.parent:
                self.bridge.deliver_ready(tx_hash)

            outcome = TransactionOutcome(
                chain_id=self.chain_id,
                tx_hash=tx_hash,
                success=success,
                block_number=self.block_number,
                sender=sender,
                contract_address=contract_address,
                revert_reason=reason,
            )
            self.outcomes.append(outcome)
            return outcome

    def estimate_retryable_gas(self, request: CrossDomainCallRequest, deposit: int) -> int:
        with self.bridge.lock:
            self._check_transient()
            destination = request.destination
            try:
                if _key(destination) in self.bridge.reverting_targets:
                    raise SimulatedRevert(f"{destination} reverts")
                if not _is_zero(destination):
                    self.get_contract(destination).dry_run(apply_alias(request.source), request.payload)
            except SimulatedRevert as e:
                raise EstimationFailed(f"Child call {request.payload.__class__.__name__} to {destination} reverts: {e}", revert_data=str(e).encode(), request=request) from e
            return self.bridge.estimate_execution_gas(request.payload)

    def get_retryable_messages(self, outcome: TransactionOutcome, child_chain_id: int) -> list[CrossDomainMessageHandle]:
        assert child_chain_id == self.bridge.child.chain_id
        with self.bridge.lock:
            self._check_transient()
            tickets = [self.bridge.retryables[t] for t in self.bridge.messages_by_tx.get(outcome.tx_hash.hex(), [])]
            return [
                CrossDomainMessageHandle(
                    creation_id=t.ticket_id,
                    index=t.index,
                    originating_tx_hash=t.originating_tx_hash,
                    parent_chain_id=self.chain_id,
                    child_chain_id=child_chain_id,
                    message_number=t.message_number,
                )
                for t in tickets
            ]

    def get_retryable_status(self, handle: CrossDomainMessageHandle) -> CrossDomainMessageStatus:
        with self.bridge.lock:
            self._check_transient()
            return self.bridge.poll(handle.creation_id)


@dataclass(slots=True, frozen=True)
class SimulatedUsdc:
    """Addresses of a simulated USDC bridge setup."""

    parent_token: HexAddress
    parent_gateway: HexAddress
    child_gateway: HexAddress
    child_token: HexAddress
    owner: HexAddress


class SimulatedBridge:
    """A parent and a child chain joined by a retryable inbox."""

    def __init__(
        self,
        fee_token: bool = False,
        delivery_delay_polls: int = 0,
        retryable_lifetime: int = DEFAULT_RETRYABLE_LIFETIME_SECONDS,
        parent_chain_id: int = 1337,
        child_chain_id: int = 412346,
        parent_base_fee: int = 10 * 10**9,
        child_gas_price: int = 10**8,
    ):
        """
        :param fee_token:
            Child chain pays gas in a parent chain ERC-20 instead of ETH

        :param delivery_delay_polls:
            How many status polls a retryable stays ``NOT_YET_CREATED``

        :param retryable_lifetime:
            Seconds until an un-redeemed ticket expires
        """
        self.lock = threading.RLock()
        self.now = 1_700_000_000
        self._counter = itertools.count(1)
        self.parent = SimulatedChain(self, parent_chain_id, "parent", parent_base_fee, parent_base_fee)
        self.child = SimulatedChain(self, child_chain_id, "child", child_gas_price, child_gas_price)
        self.delivery_delay_polls = delivery_delay_polls
        self.retryable_lifetime = retryable_lifetime

        #: ticket id hex -> ticket
        self.retryables: dict[str, SimulatedRetryable] = {}
        #: originating tx hash hex -> ticket ids
        self.messages_by_tx: dict[str, list[str]] = {}
        self.message_counter = 0
        self.pending_child_deployments: dict[str, dict] = {}

        #: Child addresses whose calls revert
        self.reverting_targets: set[str] = set()
        #: Execution needs this much more gas than the dry run reports
        self.extra_execution_gas = 0
        #: Fail the creation of this many next retryables
        self.fail_next_creations = 0
        #: Dry run gas per payload type
        self.payload_gas = {SetGatewayOnChild: 80_000, RegisterTokenFromParent: 90_000, EncodedPayload: 150_000}
        self.factory_deployment_gas = 1_000_000
        self.contracts_deployment_gas = 5_000_000

        self.deployer = self.create_account("deployer")
        self.rollup_owner = self.create_account("rollup owner")

        self.fee_token = None
        if fee_token:
            self.fee_token = self.create_token("Fee token", self.deployer, 10**27)

        parent = self.parent
        self.parent_upgrade_executor = parent.add_contract(SimulatedUpgradeExecutor(self.predict_address("parent upgrade executor"), "parent upgrade executor", [self.rollup_owner])).address
        self.parent_proxy_admin = parent.add_contract(SimulatedContract(self.predict_address("parent proxy admin"), "parent proxy admin")).address
        self.rollup = parent.add_contract(SimulatedRollup(self.predict_address("rollup"), "rollup", self.parent_upgrade_executor)).address
        rollup_bridge = parent.add_contract(SimulatedRollupBridge(self.predict_address("rollup bridge"), "rollup bridge", self.fee_token)).address
        self.inbox = parent.add_contract(SimulatedInbox(self.predict_address("inbox"), "inbox", rollup_bridge, self.fee_token, proxy_admin=self.parent_proxy_admin)).address
        self.parent_weth = self.create_token("WETH", self.deployer, 0)
        multicall = parent.add_contract(SimulatedContract(self.predict_address("parent multicall"), "parent multicall")).address
        self.creator = parent.add_contract(SimulatedTokenBridgeCreator(self.predict_address("creator"), "token bridge creator", self.parent_weth, multicall)).address
        self.child_factory_address = self.predict_address("child factory")
        self.child.add_contract(SimulatedArbRetryableTx(ARB_RETRYABLE_TX, "ArbRetryableTx"))

    @property
    def deployment_config(self) -> DeploymentConfig:
        return DeploymentConfig(
            token_bridge_creator=self.creator,
            inbox=self.inbox,
            rollup=self.rollup,
            rollup_owner=self.rollup_owner,
            weth_bytecode=b"\x60\x80",
        )

    #
    # State
    #

    def predict_address(self, label: str) -> HexAddress:
        digest = Web3.keccak(text=f"simulated:{label}")
        return Web3.to_checksum_address(digest[-20:])

    def _new_address(self, label: str) -> HexAddress:
        return self.predict_address(f"{label}:{next(self._counter)}")

    def next_tx_hash(self, chain: SimulatedChain) -> HexBytes:
        return HexBytes(Web3.keccak(text=f"tx:{chain.chain_id}:{next(self._counter)}"))

    def snapshot(self):
        return copy.deepcopy(
            (
                self.parent.native_balances,
                self.parent.contracts,
                self.child.native_balances,
                self.child.contracts,
                self.retryables,
                self.messages_by_tx,
                self.message_counter,
                self.pending_child_deployments,
            )
        )

    def restore(self, state):
        (
            self.parent.native_balances,
            self.parent.contracts,
            self.child.native_balances,
            self.child.contracts,
            self.retryables,
            self.messages_by_tx,
            self.message_counter,
            self.pending_child_deployments,
        ) = state

    def advance_time(self, seconds: int):
        """Move the simulated clock forward."""
        with self.lock:
            self.now += seconds

    #
    # Accounts and tokens
    #

    def create_account(self, label: str, eth: int = 1000) -> HexAddress:
        """New EOA funded on both chains."""
        address = self._new_address(f"account:{label}")
        for chain in (self.parent, self.child):
            chain.native_balances[_key(address)] = eth * 10**18
        return address

    def create_token(self, name: str, holder: HexAddress, amount: int, chain: SimulatedChain | None = None, owner: HexAddress | None = None) -> HexAddress:
        """Newly minted ERC-20."""
        chain = chain or self.parent
        token = SimulatedToken(self._new_address(f"token:{name}"), name, owner=owner or holder, minters=[owner or holder])
        token.mint(holder, amount)
        chain.add_contract(token)
        return token.address

    def deploy_contract(self, chain: SimulatedChain, sender: HexAddress, call: DeployContract) -> HexAddress:
        if not call.bytecode:
            raise SimulatedRevert("Empty creation code")
        token = SimulatedToken(self._new_address(f"deploy:{call.name}"), call.name or "contract", owner=sender, minters=[sender])
        chain.add_contract(token)
        return token.address

    def create_custom_token(self, name: str, holder: HexAddress, amount: int, parent_custom_gateway: HexAddress, parent_router: HexAddress, child_custom_gateway: HexAddress) -> tuple[HexAddress, HexAddress]:
        """Parent custom token and its child counterpart, not yet registered.

        :return:
            Tuple (parent token, child token)
        """
        parent_token = SimulatedCustomToken(self._new_address(f"custom:{name}"), name, parent_custom_gateway, parent_router, owner=holder)
        parent_token.mint(holder, amount)
        self.parent.add_contract(parent_token)
        child_token = SimulatedToken(self._new_address(f"child custom:{name}"), f"child {name}", minters=[child_custom_gateway])
        self.child.add_contract(child_token)
        return parent_token.address, child_token.address

    def create_usdc(self, parent_router: HexAddress, child_router: HexAddress, owner: HexAddress, supply: int = 10**15) -> SimulatedUsdc:
        """USDC with its own gateway pair, owned by ``owner`` and not registered with the routers."""
        parent_token = self.create_token("USDC", owner, supply)
        parent_gateway_address = self._new_address("parent usdc gateway")
        child_gateway_address = self._new_address("child usdc gateway")
        child_token = SimulatedToken(self._new_address("child usdc"), "Bridged USDC", owner=owner, minters=[child_gateway_address])
        self.child.add_contract(child_token)
        self.parent.add_contract(SimulatedParentUsdcGateway(parent_gateway_address, "parent usdc gateway", child_gateway_address, parent_router, parent_token, child_token.address, owner))
        self.child.add_contract(SimulatedChildUsdcGateway(child_gateway_address, "child usdc gateway", parent_gateway_address, parent_token, child_token.address, owner))
        return SimulatedUsdc(parent_token, parent_gateway_address, child_gateway_address, child_token.address, owner)

    def token_balance(self, chain: SimulatedChain, token: HexAddress, account: HexAddress) -> int:
        contract = chain.contracts.get(_key(token))
        if contract is None:
            return 0
        return contract.balance_of(account)

    #
    # Retryables
    #

    def estimate_execution_gas(self, payload: ContractCall) -> int:
        if isinstance(payload, EncodedPayload) and _is_zero(payload.target):
            return self.factory_deployment_gas
        if isinstance(payload, EncodedPayload) and _key(payload.target) == _key(self.child_factory_address):
            return self.contracts_deployment_gas
        return self.payload_gas.get(type(payload), 100_000)

    def create_retryable(
        self,
        ctx: TxContext,
        source: HexAddress,
        destination: HexAddress,
        payload: ContractCall,
        gas_limit: int,
        max_fee_per_gas: int,
        max_submission_cost: int,
        available: int,
        fee_token_amount: int | None = None,
        fee_payer: HexAddress | None = None,
        fee_spender: HexAddress | None = None,
        call_value: int = 0,
    ):
        """Inbox ``createRetryableTicket()``."""
        chain = ctx.chain
        assert chain is self.parent
        data = encode_call(payload)

        if self.fee_token is None:
            required_submission = calculate_submission_fee(len(data), chain.base_fee)
            if max_submission_cost < required_submission:
                raise SimulatedRevert(f"InsufficientSubmissionCost: {max_submission_cost} < {required_submission}")
            deposit = available
        else:
            if fee_token_amount is None:
                raise SimulatedRevert("Fee token chain needs a fee token amount")
            token = chain.get_contract(self.fee_token)
            token.transfer_from(fee_spender or source, fee_payer, self.inbox, fee_token_amount)
            deposit = fee_token_amount

        required_value = max_submission_cost + gas_limit * max_fee_per_gas + call_value
        if deposit < required_value:
            raise SimulatedRevert(f"InsufficientValue: {deposit} < {required_value}")

        self.message_counter += 1
        message_number = self.message_counter
        sender = apply_alias(source)
        message = RetryableMessageData(
            destination=destination,
            call_value=call_value,
            deposit=deposit,
            max_submission_fee=max_submission_cost,
            excess_fee_refund_address=fee_payer or ctx.origin,
            call_value_refund_address=fee_payer or ctx.origin,
            gas_limit=gas_limit,
            max_fee_per_gas=max_fee_per_gas,
            data=HexBytes(data),
        )
        ticket_id = calculate_retryable_ticket_id(self.child.chain_id, message_number, sender, chain.base_fee, message)

        fail_creation = self.fail_next_creations > 0
        if fail_creation:
            self.fail_next_creations -= 1

        tx_key = ctx.tx_hash.hex()
        tickets = self.messages_by_tx.setdefault(tx_key, [])
        ticket = SimulatedRetryable(
            ticket_id=ticket_id,
            index=len(tickets),
            message_number=message_number,
            originating_tx_hash=ctx.tx_hash,
            sender=sender,
            destination=destination,
            payload=payload,
            call_value=call_value,
            gas_limit=gas_limit,
            max_fee_per_gas=max_fee_per_gas,
            submission_cost=max_submission_cost,
            required_gas=self.estimate_execution_gas(payload) + self.extra_execution_gas,
            polls_until_delivery=self.delivery_delay_polls,
            fail_creation=fail_creation,
        )
        tickets.append(ticket_id.hex())
        self.retryables[ticket_id.hex()] = ticket
        logger.debug("Queued retryable #%d %s to %s", ticket.index, payload.__class__.__name__, destination)

    def deliver_ready(self, tx_hash: HexBytes):
        """Deliver the tickets of a mined parent transaction that have no delay."""
        for ticket_id in self.messages_by_tx.get(tx_hash.hex(), []):
            ticket = self.retryables[ticket_id]
            if ticket.status == CrossDomainMessageStatus.NOT_YET_CREATED and ticket.polls_until_delivery == 0:
                self._deliver(ticket)

    def _deliver(self, ticket: SimulatedRetryable):
        if ticket.fail_creation:
            ticket.status = CrossDomainMessageStatus.CREATION_FAILED
            return

        ticket.status = CrossDomainMessageStatus.FUNDS_DEPOSITED
        ticket.timeout = self.now + self.retryable_lifetime

        if ticket.gas_limit >= ticket.required_gas and ticket.max_fee_per_gas >= self.child.gas_price:
            try:
                self._execute(ticket)
            except SimulatedRevert as e:
                logger.debug("Auto-redeem of %s failed: %s", ticket.ticket_id.hex(), e)

    def _execute(self, ticket: SimulatedRetryable):
        ticket.redeem_attempts += 1
        snapshot = copy.deepcopy((self.child.contracts, self.child.native_balances))
        ctx = TxContext(self.child, ticket.sender, ticket.sender, ticket.call_value, ticket.ticket_id)
        try:
            if _key(ticket.destination) in self.reverting_targets:
                raise SimulatedRevert(f"{ticket.destination} reverts")
            if _is_zero(ticket.destination):
                if not self.child.has_code(self.child_factory_address):
                    self.child.add_contract(SimulatedChildFactory(self.child_factory_address, "child factory"))
            else:
                self.child.get_contract(ticket.destination).handle(ctx, ticket.payload)
        except SimulatedRevert:
            self.child.contracts, self.child.native_balances = snapshot
            raise
        ticket.status = CrossDomainMessageStatus.REDEEMED

    def _get_ticket(self, ticket_id) -> SimulatedRetryable:
        ticket = self.retryables.get(HexBytes(ticket_id).hex())
        if ticket is None:
            raise SimulatedRevert(f"Unknown ticket {HexBytes(ticket_id).hex()}")
        return ticket

    def _check_expiry(self, ticket: SimulatedRetryable):
        if ticket.status == CrossDomainMessageStatus.FUNDS_DEPOSITED and self.now >= ticket.timeout:
            ticket.status = CrossDomainMessageStatus.EXPIRED

    def poll(self, ticket_id) -> CrossDomainMessageStatus:
        """Status read, advances delayed delivery."""
        with self.lock:
            ticket = self.retryables.get(HexBytes(ticket_id).hex())
            if ticket is None:
                return CrossDomainMessageStatus.NOT_YET_CREATED
            if ticket.status == CrossDomainMessageStatus.NOT_YET_CREATED:
                if ticket.polls_until_delivery > 0:
                    ticket.polls_until_delivery -= 1
                if ticket.polls_until_delivery == 0:
                    # The child chain sequences the tickets of one transaction in order
                    for earlier_id in self.messages_by_tx.get(ticket.originating_tx_hash.hex(), []):
                        earlier = self.retryables[earlier_id]
                        if earlier.index > ticket.index:
                            break
                        if earlier.status == CrossDomainMessageStatus.NOT_YET_CREATED:
                            self._deliver(earlier)
            self._check_expiry(ticket)
            return ticket.status

    def get_ticket_timeout(self, ticket_id) -> int:
        ticket = self._get_ticket(ticket_id)
        self._check_expiry(ticket)
        if ticket.status != CrossDomainMessageStatus.FUNDS_DEPOSITED:
            raise SimulatedRevert("NoTicketWithID")
        return ticket.timeout

    def manual_redeem(self, ticket_id):
        """``ArbRetryableTx.redeem()``"""
        ticket = self._get_ticket(ticket_id)
        self._check_expiry(ticket)
        if ticket.status != CrossDomainMessageStatus.FUNDS_DEPOSITED:
            raise SimulatedRevert(f"NoTicketWithID: ticket is {ticket.status.name}")
        self._execute(ticket)

    def get_retryable(self, handle: CrossDomainMessageHandle) -> SimulatedRetryable:
        return self._get_ticket(handle.creation_id)
