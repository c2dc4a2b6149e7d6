"""Typed call codec."""

import json

import eth_abi
import pytest
from hexbytes import HexBytes
from web3 import Web3

from eth_token_bridge.abi import (
    PARENT_DEPLOYMENT_FIELDS,
    decode_read,
    encode_call,
    encode_read,
    encode_with_signature,
    get_function_selector,
    load_contract_artifact,
)
from eth_token_bridge.calls import (
    Approve,
    BalanceOf,
    ContractCall,
    EncodedPayload,
    ExecuteCall,
    ParentDeployment,
    PauseDeposits,
    SetGateways,
    deploy_contract_call,
)

TOKEN = Web3.to_checksum_address("0x" + "aa" * 20)
SPENDER = Web3.to_checksum_address("0x" + "bb" * 20)
EXECUTOR = Web3.to_checksum_address("0x" + "cc" * 20)


def test_encode_with_signature():
    """Well known ERC-20 selector."""
    data = encode_with_signature("approve(address,uint256)", [SPENDER, 100])
    assert data[0:4] == HexBytes("0x095ea7b3")
    assert eth_abi.decode(["address", "uint256"], data[4:]) == (SPENDER.lower(), 100)


def test_encode_approve():
    assert encode_call(Approve(TOKEN, SPENDER, 100)) == HexBytes(encode_with_signature("approve(address,uint256)", [SPENDER, 100]))


def test_encode_no_argument_call():
    assert encode_call(PauseDeposits(TOKEN)) == HexBytes(get_function_selector("pauseDeposits()"))


def test_encode_set_gateways_with_fee_token():
    """Fee token chains use the overload with the fee amount."""
    eth_call = SetGateways(TOKEN, tokens=(TOKEN,), gateways=(SPENDER,), max_gas=100, gas_price_bid=2, max_submission_cost=3)
    fee_token_call = SetGateways(TOKEN, tokens=(TOKEN,), gateways=(SPENDER,), max_gas=100, gas_price_bid=2, max_submission_cost=3, fee_token_amount=203)
    assert encode_call(eth_call)[0:4] == get_function_selector("setGateways(address[],address[],uint256,uint256,uint256)")
    assert encode_call(fee_token_call)[0:4] == get_function_selector("setGateways(address[],address[],uint256,uint256,uint256,uint256)")


def test_encode_execute_call():
    """The upgrade executor gets the inner call as bytes."""
    inner = Approve(TOKEN, SPENDER, 1)
    data = encode_call(ExecuteCall(EXECUTOR, inner))
    assert data[0:4] == get_function_selector("executeCall(address,bytes)")
    target, payload = eth_abi.decode(["address", "bytes"], bytes(data[4:]))
    assert Web3.to_checksum_address(target) == TOKEN
    assert payload == bytes(encode_call(inner))


def test_encoded_payload_passthrough():
    assert encode_call(EncodedPayload(TOKEN, b"\x01\x02")) == HexBytes("0x0102")


def test_encode_deployment():
    """Constructor arguments are appended to the creation code."""
    call = deploy_contract_call(b"\x60\x80", ["uint256"], [5], name="Test")
    assert encode_call(call) == HexBytes(b"\x60\x80" + eth_abi.encode(["uint256"], [5]))


def test_unknown_call():
    with pytest.raises(NotImplementedError):
        encode_call(ContractCall(TOKEN))


def test_decode_balance():
    data, output_types = encode_read(BalanceOf(TOKEN, SPENDER))
    assert data[0:4] == get_function_selector("balanceOf(address)")
    assert decode_read(BalanceOf(TOKEN, SPENDER), output_types, eth_abi.encode(["uint256"], [42])) == 42


def test_decode_deployment_record():
    """Creator deployment records decode to a role dict with checksummed addresses."""
    read = ParentDeployment(TOKEN, SPENDER)
    _, output_types = encode_read(read)
    addresses = [Web3.to_checksum_address(f"0x{i:040x}") for i in range(1, len(PARENT_DEPLOYMENT_FIELDS) + 1)]
    record = decode_read(read, output_types, eth_abi.encode(output_types, addresses))
    assert list(record.keys()) == list(PARENT_DEPLOYMENT_FIELDS)
    assert record["router"] == addresses[0]
    assert record["weth"] == addresses[-1]


def test_load_hardhat_artifact(tmp_path):
    path = tmp_path / "Token.json"
    path.write_text(json.dumps({"abi": [{"type": "constructor"}], "bytecode": "0x6080"}))
    abi, bytecode = load_contract_artifact(path)
    assert abi == [{"type": "constructor"}]
    assert bytecode == b"\x60\x80"


def test_load_foundry_artifact(tmp_path):
    """Foundry nests the creation code under bytecode.object."""
    path = tmp_path / "Token.json"
    path.write_text(json.dumps({"abi": [], "bytecode": {"object": "0x6080"}}))
    _, bytecode = load_contract_artifact(path)
    assert bytecode == b"\x60\x80"
