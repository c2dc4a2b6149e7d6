"""Chain boundary codec.

Turn typed calls from :py:mod:`eth_token_bridge.calls` into selector + ABI encoded payloads
and decode view call results back into Python values.

The encoding is signature based, mirroring Solidity's ``abi.encodeWithSignature()``,
so no ABI files are needed for the contract surfaces we consume.

Example:

.. code-block:: python

    from eth_token_bridge.abi import encode_call
    from eth_token_bridge.calls import SetGatewayOnChild

    data = encode_call(SetGatewayOnChild(child_router, (token,), (child_gateway,)))
    assert data[0:4] == get_function_selector("setGateway(address[],address[])")
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Sequence

import eth_abi
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

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


#: Field names of the creator's parent side deployment record
PARENT_DEPLOYMENT_FIELDS = ("router", "standard_gateway", "custom_gateway", "weth_gateway", "weth")

#: Field names of the creator's child side deployment record
CHILD_DEPLOYMENT_FIELDS = (
    "router",
    "standard_gateway",
    "custom_gateway",
    "weth_gateway",
    "weth",
    "proxy_admin",
    "beacon_proxy_factory",
    "upgrade_executor",
    "multicall",
)

#: ``InboxMessageDelivered(uint256 indexed messageNum, bytes data)``
INBOX_MESSAGE_DELIVERED_EVENT = "InboxMessageDelivered(uint256,bytes)"

#: ``MessageDelivered(uint256 indexed messageIndex, bytes32 indexed beforeInboxAcc, address inbox, uint8 kind, address sender, bytes32 messageDataHash, uint256 baseFeeL1, uint64 timestamp)``
MESSAGE_DELIVERED_EVENT = "MessageDelivered(uint256,bytes32,address,uint8,address,bytes32,uint256,uint64)"

#: Non-indexed part of ``MessageDelivered``
MESSAGE_DELIVERED_DATA_TYPES = ("address", "uint8", "address", "bytes32", "uint256", "uint64")

#: ``RedeemScheduled(bytes32 indexed ticketId, bytes32 indexed retryTxHash, uint64 indexed sequenceNum, uint64 donatedGas, address gasDonor, uint256 maxRefund, uint256 submissionFeeRefund)``
REDEEM_SCHEDULED_EVENT = "RedeemScheduled(bytes32,bytes32,uint64,uint64,address,uint256,uint256)"


def encode_with_signature(function_signature: str, args: Sequence) -> bytes:
    """Mimic Solidity's abi.encodeWithSignature() in Python.

    Example:

    .. code-block:: python

            payload = encode_with_signature("setOwner(address)", [new_owner])
            assert type(payload) == bytes

    :param function_signature:
        Solidity function signature that can be hashed to a selector.

        ABI will be extracted from this signature.

    :param args:
        Argument values to be encoded.
    """

    assert type(args) in (tuple, list)

    function_selector = get_function_selector(function_signature)
    arg_types = get_signature_arg_types(function_signature)
    encoded_args = eth_abi.encode(arg_types, list(args))
    return function_selector + encoded_args


def get_signature_arg_types(function_signature: str) -> list[str]:
    """Split ``foo(address,uint256)`` to ``["address", "uint256"]``."""
    selector_text = function_signature[function_signature.find("(") + 1 : function_signature.rfind(")")]
    if not selector_text:
        return []
    return selector_text.split(",")


@lru_cache(maxsize=512)
def get_function_selector(function_signature: str) -> bytes:
    """Solidity 4-byte function selector."""
    return bytes(Web3.keccak(text=function_signature)[0:4])


@lru_cache(maxsize=64)
def get_topic_signature(event_signature: str) -> HexBytes:
    """Topic 0 of an event log."""
    return HexBytes(Web3.keccak(text=event_signature))


def _addresses(addresses: Sequence[HexAddress]) -> list[str]:
    return [Web3.to_checksum_address(a) for a in addresses]


def _encode_outbound_transfer(call: OutboundTransferCustomRefund) -> tuple[str, list]:
    # The router forwards user data to the gateway which expects
    # (maxSubmissionCost, callHookData) or, on fee token chains,
    # (maxSubmissionCost, callHookData, tokenTotalFeeAmount)
    if call.fee_token_amount is None:
        user_data = eth_abi.encode(["uint256", "bytes"], [call.max_submission_cost, call.callhook])
    else:
        user_data = eth_abi.encode(["uint256", "bytes", "uint256"], [call.max_submission_cost, call.callhook, call.fee_token_amount])
    return (
        "outboundTransferCustomRefund(address,address,address,uint256,uint256,uint256,bytes)",
        [
            Web3.to_checksum_address(call.token),
            Web3.to_checksum_address(call.refund_to),
            Web3.to_checksum_address(call.to),
            call.amount,
            call.max_gas,
            call.gas_price_bid,
            user_data,
        ],
    )


def _encode_set_gateways(call: SetGateways) -> tuple[str, list]:
    args = [_addresses(call.tokens), _addresses(call.gateways), call.max_gas, call.gas_price_bid, call.max_submission_cost]
    if call.fee_token_amount is None:
        return "setGateways(address[],address[],uint256,uint256,uint256)", args
    return "setGateways(address[],address[],uint256,uint256,uint256,uint256)", args + [call.fee_token_amount]


#: Typed write call -> (function signature, argument values)
CALL_ENCODERS: dict[type, Callable[[Any], tuple[str, list]]] = {
    Approve: lambda c: ("approve(address,uint256)", [Web3.to_checksum_address(c.spender), c.amount]),
    OutboundTransferCustomRefund: _encode_outbound_transfer,
    SetGateways: _encode_set_gateways,
    ExecuteCall: lambda c: ("executeCall(address,bytes)", [Web3.to_checksum_address(c.call.target), bytes(encode_call(c.call))]),
    RegisterTokenOnChild: lambda c: (
        "registerTokenOnL2(address,uint256,uint256,uint256,uint256,uint256,uint256,uint256,address)",
        [
            Web3.to_checksum_address(c.child_token),
            c.max_submission_cost_for_gateway,
            c.max_submission_cost_for_router,
            c.max_gas_for_gateway,
            c.max_gas_for_router,
            c.gas_price_bid,
            c.value_for_gateway,
            c.value_for_router,
            Web3.to_checksum_address(c.credit_back_address),
        ],
    ),
    CreateTokenBridge: lambda c: (
        "createTokenBridge(address,address,uint256,uint256)",
        [Web3.to_checksum_address(c.inbox), Web3.to_checksum_address(c.rollup_owner), c.max_gas_for_contracts, c.gas_price_bid],
    ),
    PauseDeposits: lambda c: ("pauseDeposits()", []),
    PauseWithdrawals: lambda c: ("pauseWithdrawals()", []),
    SetOwner: lambda c: ("setOwner(address)", [Web3.to_checksum_address(c.new_owner)]),
    AddMinter: lambda c: ("addMinter(address)", [Web3.to_checksum_address(c.minter)]),
    BurnLockedCollateral: lambda c: ("burnLockedUSDC()", []),
    RedeemRetryable: lambda c: ("redeem(bytes32)", [bytes(c.ticket_id)]),
    SetGatewayOnChild: lambda c: ("setGateway(address[],address[])", [_addresses(c.tokens), _addresses(c.gateways)]),
    RegisterTokenFromParent: lambda c: ("registerTokenFromL1(address[],address[])", [_addresses(c.tokens), _addresses(c.child_tokens)]),
}


#: Typed read call -> (function signature, argument values, output types)
READ_ENCODERS: dict[type, Callable[[Any], tuple[str, list, list[str]]]] = {
    GetGateway: lambda c: ("getGateway(address)", [Web3.to_checksum_address(c.token)], ["address"]),
    DefaultGateway: lambda c: ("defaultGateway()", [], ["address"]),
    CounterpartGateway: lambda c: ("counterpartGateway()", [], ["address"]),
    CalculateChildTokenAddress: lambda c: ("calculateL2TokenAddress(address)", [Web3.to_checksum_address(c.token)], ["address"]),
    GetOutboundCalldata: lambda c: (
        "getOutboundCalldata(address,address,address,uint256,bytes)",
        [Web3.to_checksum_address(c.token), Web3.to_checksum_address(c.sender), Web3.to_checksum_address(c.to), c.amount, c.data],
        ["bytes"],
    ),
    DepositsPaused: lambda c: ("depositsPaused()", [], ["bool"]),
    WithdrawalsPaused: lambda c: ("withdrawalsPaused()", [], ["bool"]),
    Owner: lambda c: ("owner()", [], ["address"]),
    IsMinter: lambda c: ("isMinter(address)", [Web3.to_checksum_address(c.account)], ["bool"]),
    BalanceOf: lambda c: ("balanceOf(address)", [Web3.to_checksum_address(c.account)], ["uint256"]),
    TotalSupply: lambda c: ("totalSupply()", [], ["uint256"]),
    InboxBridge: lambda c: ("bridge()", [], ["address"]),
    NativeToken: lambda c: ("nativeToken()", [], ["address"]),
    ParentDeployment: lambda c: ("inboxToL1Deployment(address)", [Web3.to_checksum_address(c.inbox)], ["address"] * len(PARENT_DEPLOYMENT_FIELDS)),
    ChildDeployment: lambda c: ("inboxToL2Deployment(address)", [Web3.to_checksum_address(c.inbox)], ["address"] * len(CHILD_DEPLOYMENT_FIELDS)),
    ParentMulticall: lambda c: ("l1Multicall()", [], ["address"]),
    GasLimitForChildFactoryDeployment: lambda c: ("gasLimitForL2FactoryDeployment()", [], ["uint256"]),
    ConfirmPeriodBlocks: lambda c: ("confirmPeriodBlocks()", [], ["uint64"]),
    CalculateRetryableSubmissionFee: lambda c: ("calculateRetryableSubmissionFee(uint256,uint256)", [c.data_length, c.base_fee], ["uint256"]),
    GetRetryableTimeout: lambda c: ("getTimeout(bytes32)", [bytes(c.ticket_id)], ["uint256"]),
}


def encode_call(call: ContractCall) -> HexBytes:
    """Encode a typed write call as transaction data.

    - :py:class:`EncodedPayload` is passed through

    - :py:class:`DeployContract` becomes creation code + constructor arguments

    :raise NotImplementedError:
        For a call type the codec does not know
    """
    if isinstance(call, EncodedPayload):
        return HexBytes(call.data)

    if isinstance(call, DeployContract):
        return HexBytes(bytes(call.bytecode) + eth_abi.encode(list(call.constructor_types), list(call.constructor_args)))

    encoder = CALL_ENCODERS.get(type(call))
    if encoder is None:
        raise NotImplementedError(f"No encoder for {call.__class__.__name__}")
    signature, args = encoder(call)
    return HexBytes(encode_with_signature(signature, args))


def encode_read(read: ReadCall) -> tuple[HexBytes, list[str]]:
    """Encode a typed view call.

    :return:
        Tuple (calldata, output types)
    """
    encoder = READ_ENCODERS.get(type(read))
    if encoder is None:
        raise NotImplementedError(f"No encoder for {read.__class__.__name__}")
    signature, args, output_types = encoder(read)
    return HexBytes(encode_with_signature(signature, args)), output_types


def decode_read(read: ReadCall, output_types: list[str], data: bytes) -> Any:
    """Decode a view call result to a Python value.

    - Single values are unwrapped
    - Addresses are checksummed
    - Deployment records become dicts keyed by role
    """
    decoded = eth_abi.decode(output_types, bytes(data))
    values = [Web3.to_checksum_address(v) if t == "address" else v for t, v in zip(output_types, decoded)]

    if isinstance(read, ParentDeployment):
        return dict(zip(PARENT_DEPLOYMENT_FIELDS, values))

    if isinstance(read, ChildDeployment):
        return dict(zip(CHILD_DEPLOYMENT_FIELDS, values))

    if len(values) == 1:
        return values[0]

    return tuple(values)


def load_contract_artifact(path: Path | str) -> tuple[list, bytes]:
    """Read a Solidity compiler artifact from the filesystem.

    Accepts Hardhat/Foundry artifacts (``abi`` + ``bytecode`` keys, Foundry nests bytecode under ``object``).

    :return:
        Tuple (ABI, creation bytecode)
    """
    with open(path, "rt", encoding="utf-8") as f:
        artifact = json.load(f)

    bytecode = artifact.get("bytecode", "")
    if isinstance(bytecode, dict):
        # Foundry
        bytecode = bytecode.get("object", "")

    assert bytecode, f"Artifact {path} has no bytecode"
    return artifact.get("abi", []), bytes(HexBytes(bytecode))
