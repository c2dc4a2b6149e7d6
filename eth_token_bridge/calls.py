"""Typed call values.

The orchestration core never handles untyped calldata.
Each contract interaction is one of the frozen dataclasses below and
only :py:mod:`eth_token_bridge.abi` turns them into bytes, at the chain boundary.

- *Write calls* (:py:class:`ContractCall` subclasses) are submitted with
  :py:meth:`eth_token_bridge.endpoint.ChainEndpoint.transact`
  or carried as the payload of a retryable

- *Read calls* (:py:class:`ReadCall` subclasses) are evaluated with
  :py:meth:`eth_token_bridge.endpoint.ChainEndpoint.call`
"""

from dataclasses import dataclass

from eth_typing import HexAddress

from eth_token_bridge.constants import ZERO_ADDRESS


@dataclass(slots=True, frozen=True)
class ContractCall:
    """A state changing call against ``target``."""

    target: HexAddress


@dataclass(slots=True, frozen=True)
class ReadCall:
    """A view call against ``target``."""

    target: HexAddress


#
# Parent chain write calls
#


@dataclass(slots=True, frozen=True)
class Approve(ContractCall):
    """ERC-20 ``approve()``; ``target`` is the token."""

    spender: HexAddress
    amount: int


@dataclass(slots=True, frozen=True)
class OutboundTransferCustomRefund(ContractCall):
    """Parent router deposit entry point; ``target`` is the router.

    On fee token chains ``fee_token_amount`` is set and the fee is
    paid by the router pulling the fee token instead of ``msg.value``.
    """

    token: HexAddress
    refund_to: HexAddress
    to: HexAddress
    amount: int
    max_gas: int
    gas_price_bid: int
    max_submission_cost: int
    callhook: bytes = b""
    fee_token_amount: int | None = None


@dataclass(slots=True, frozen=True)
class SetGateways(ContractCall):
    """Owner-only parent router ``setGateways()``; ``target`` is the router.

    Sets the parent mapping and emits one retryable that mirrors it
    into the child router.
    """

    tokens: tuple[HexAddress, ...]
    gateways: tuple[HexAddress, ...]
    max_gas: int
    gas_price_bid: int
    max_submission_cost: int
    fee_token_amount: int | None = None


@dataclass(slots=True, frozen=True)
class ExecuteCall(ContractCall):
    """Forward ``call`` through an upgrade executor; ``target`` is the executor."""

    call: ContractCall


@dataclass(slots=True, frozen=True)
class RegisterTokenOnChild(ContractCall):
    """Custom token self-registration; ``target`` is the parent custom token.

    Emits two retryables: gateway registration first, router mapping second.
    """

    child_token: HexAddress
    max_submission_cost_for_gateway: int
    max_submission_cost_for_router: int
    max_gas_for_gateway: int
    max_gas_for_router: int
    gas_price_bid: int
    value_for_gateway: int
    value_for_router: int
    credit_back_address: HexAddress


@dataclass(slots=True, frozen=True)
class CreateTokenBridge(ContractCall):
    """Single transaction token bridge deployment; ``target`` is the creator."""

    inbox: HexAddress
    rollup_owner: HexAddress
    max_gas_for_contracts: int
    gas_price_bid: int


@dataclass(slots=True, frozen=True)
class PauseDeposits(ContractCall):
    """``target`` is the parent USDC gateway."""


@dataclass(slots=True, frozen=True)
class PauseWithdrawals(ContractCall):
    """``target`` is the child USDC gateway."""


@dataclass(slots=True, frozen=True)
class SetOwner(ContractCall):
    new_owner: HexAddress


@dataclass(slots=True, frozen=True)
class AddMinter(ContractCall):
    """``target`` is the collateral token."""

    minter: HexAddress


@dataclass(slots=True, frozen=True)
class BurnLockedCollateral(ContractCall):
    """Burn everything the gateway holds; ``target`` is the parent USDC gateway."""


@dataclass(slots=True, frozen=True)
class RedeemRetryable(ContractCall):
    """Manual redeem of a child chain ticket; ``target`` is ``ArbRetryableTx``."""

    ticket_id: bytes


@dataclass(slots=True, frozen=True)
class DeployContract(ContractCall):
    """Contract creation. ``target`` is always the zero address."""

    bytecode: bytes = b""
    constructor_types: tuple[str, ...] = ()
    constructor_args: tuple = ()
    #: Human readable name for logs and simulated chains
    name: str = ""


def deploy_contract_call(bytecode: bytes, constructor_types=(), constructor_args=(), name: str = "") -> DeployContract:
    """Shortcut for a creation call without a target."""
    return DeployContract(ZERO_ADDRESS, bytes(bytecode), tuple(constructor_types), tuple(constructor_args), name)


#
# Child chain payloads, executed by retryables
#


@dataclass(slots=True, frozen=True)
class SetGatewayOnChild(ContractCall):
    """Child router ``setGateway()``; only callable by the aliased parent router."""

    tokens: tuple[HexAddress, ...]
    gateways: tuple[HexAddress, ...]


@dataclass(slots=True, frozen=True)
class RegisterTokenFromParent(ContractCall):
    """Child custom gateway ``registerTokenFromL1()``."""

    tokens: tuple[HexAddress, ...]
    child_tokens: tuple[HexAddress, ...]


@dataclass(slots=True, frozen=True)
class EncodedPayload(ContractCall):
    """Calldata produced by a contract on the chain, e.g. gateway outbound calldata.

    This is the only place raw bytes appear as a payload,
    because the bytes originate from the chain itself.
    """

    data: bytes = b""


#
# Read calls
#


@dataclass(slots=True, frozen=True)
class GetGateway(ReadCall):
    token: HexAddress


@dataclass(slots=True, frozen=True)
class DefaultGateway(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class CounterpartGateway(ReadCall):
    """Paired gateway or router on the other chain."""


@dataclass(slots=True, frozen=True)
class CalculateChildTokenAddress(ReadCall):
    token: HexAddress


@dataclass(slots=True, frozen=True)
class GetOutboundCalldata(ReadCall):
    """Child payload a gateway would produce for a deposit. Returns ``bytes``."""

    token: HexAddress
    sender: HexAddress
    to: HexAddress
    amount: int
    data: bytes = b""


@dataclass(slots=True, frozen=True)
class DepositsPaused(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class WithdrawalsPaused(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class Owner(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class IsMinter(ReadCall):
    account: HexAddress


@dataclass(slots=True, frozen=True)
class BalanceOf(ReadCall):
    account: HexAddress


@dataclass(slots=True, frozen=True)
class TotalSupply(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class InboxBridge(ReadCall):
    """``bridge()`` of a rollup inbox."""


@dataclass(slots=True, frozen=True)
class NativeToken(ReadCall):
    """``nativeToken()`` of a rollup bridge. Reverts on ETH chains."""


@dataclass(slots=True, frozen=True)
class ParentDeployment(ReadCall):
    """Creator's record of the parent side contracts for ``inbox``."""

    inbox: HexAddress


@dataclass(slots=True, frozen=True)
class ChildDeployment(ReadCall):
    """Creator's record of the child side contracts for ``inbox``."""

    inbox: HexAddress


@dataclass(slots=True, frozen=True)
class ParentMulticall(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class GasLimitForChildFactoryDeployment(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class ProxyAdminOf(ReadCall):
    """EIP-1967 admin of a transparent proxy."""


@dataclass(slots=True, frozen=True)
class ConfirmPeriodBlocks(ReadCall):
    pass


@dataclass(slots=True, frozen=True)
class CalculateRetryableSubmissionFee(ReadCall):
    """Inbox submission fee for a payload of ``data_length`` bytes. Zero on fee token chains."""

    data_length: int
    base_fee: int


@dataclass(slots=True, frozen=True)
class GetRetryableTimeout(ReadCall):
    """``ArbRetryableTx.getTimeout()``; reverts once a ticket is redeemed or expired."""

    ticket_id: bytes


#
# Cross-domain request
#


@dataclass(slots=True, frozen=True)
class CrossDomainCallRequest:
    """What we want a retryable to do on the child chain.

    Input to :py:meth:`eth_token_bridge.fees.FeeEstimator.estimate`.
    """

    #: Parent chain address that creates the retryable
    source: HexAddress

    #: Child chain address the payload is executed against
    destination: HexAddress

    #: Value delivered with the child call
    call_value: int

    #: Who gets unused gas and submission fee back
    excess_fee_refund_address: HexAddress

    #: Who gets ``call_value`` back if the ticket is never redeemed
    call_value_refund_address: HexAddress

    #: Child chain call
    payload: ContractCall

    def __post_init__(self):
        assert self.call_value >= 0
        assert isinstance(self.payload, ContractCall), f"Payload must be a typed call, got {type(self.payload)}"
