"""Retryable ticket math.

Pure functions, no RPC:

- Parent to child address aliasing

- Inbox submission fee formula

- Ticket id derivation, so that the child chain creation of a message can be looked up
  before it happens

- Parsing of ``InboxMessageDelivered`` payloads

See

- `Retryable tickets <https://docs.arbitrum.io/how-arbitrum-works/arbos/l1-l2-messaging>`__
"""

from dataclasses import dataclass

import rlp
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_token_bridge.constants import (
    ADDRESS_ALIAS_OFFSET,
    SUBMISSION_FEE_BASE_BYTES,
    SUBMISSION_FEE_BYTE_MULTIPLIER,
    SUBMIT_RETRYABLE_TX_TYPE,
)

_ADDRESS_SPACE = 2**160


def apply_alias(address: HexAddress | str) -> HexAddress:
    """How a parent chain contract appears as ``msg.sender`` on the child chain."""
    value = (int(address, 16) + ADDRESS_ALIAS_OFFSET) % _ADDRESS_SPACE
    return Web3.to_checksum_address(value.to_bytes(20, "big"))


def undo_alias(address: HexAddress | str) -> HexAddress:
    """Reverse of :py:func:`apply_alias`."""
    value = (int(address, 16) - ADDRESS_ALIAS_OFFSET) % _ADDRESS_SPACE
    return Web3.to_checksum_address(value.to_bytes(20, "big"))


def calculate_submission_fee(data_length: int, base_fee: int) -> int:
    """Inbox ``calculateRetryableSubmissionFee()``.

    Larger payloads cost more to post as calldata.

    :param data_length:
        Length of the encoded child call in bytes

    :param base_fee:
        Base fee in wei
    """
    assert data_length >= 0
    assert base_fee >= 0
    return (SUBMISSION_FEE_BASE_BYTES + SUBMISSION_FEE_BYTE_MULTIPLIER * data_length) * base_fee


def apply_percent_increase(value: int, percent: int) -> int:
    """Integer ``value * (100 + percent) / 100``."""
    return value + value * percent // 100


def calculate_deposit(submission_cost: int, gas_limit: int, max_fee_per_gas: int, call_value: int = 0) -> int:
    """Value a retryable must be funded with."""
    return submission_cost + gas_limit * max_fee_per_gas + call_value


@dataclass(slots=True, frozen=True)
class RetryableMessageData:
    """Decoded ``InboxMessageDelivered`` payload of a retryable submission."""

    destination: HexAddress
    call_value: int
    #: Total value escrowed for the ticket, includes ``call_value``
    deposit: int
    max_submission_fee: int
    excess_fee_refund_address: HexAddress
    call_value_refund_address: HexAddress
    gas_limit: int
    max_fee_per_gas: int
    data: HexBytes


def _word(data: bytes, index: int) -> int:
    return int.from_bytes(data[index * 32 : (index + 1) * 32], "big")


def _word_address(data: bytes, index: int) -> HexAddress:
    return Web3.to_checksum_address(data[index * 32 + 12 : (index + 1) * 32])


def parse_inbox_message_data(data: bytes) -> RetryableMessageData:
    """Decode the packed payload of an ``InboxMessageDelivered`` event.

    The inbox packs nine 32 byte words followed by the call data:
    destination, call value, deposit, submission fee, excess fee refund address,
    call value refund address, gas limit, max fee per gas, call data length.
    """
    data = bytes(data)
    assert len(data) >= 9 * 32, f"Retryable message data too short: {len(data)} bytes"
    data_length = _word(data, 8)
    call_data = data[9 * 32 : 9 * 32 + data_length]
    assert len(call_data) == data_length, f"Truncated retryable call data, expected {data_length} bytes, got {len(call_data)}"
    return RetryableMessageData(
        destination=_word_address(data, 0),
        call_value=_word(data, 1),
        deposit=_word(data, 2),
        max_submission_fee=_word(data, 3),
        excess_fee_refund_address=_word_address(data, 4),
        call_value_refund_address=_word_address(data, 5),
        gas_limit=_word(data, 6),
        max_fee_per_gas=_word(data, 7),
        data=HexBytes(call_data),
    )


def _int_to_rlp(value: int) -> bytes:
    # Minimal big endian, zero is the empty string
    if value == 0:
        return b""
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def _address_to_rlp(address: str) -> bytes:
    return bytes(HexBytes(address))


def calculate_retryable_ticket_id(
    child_chain_id: int,
    message_number: int,
    sender: HexAddress | str,
    parent_base_fee: int,
    message: RetryableMessageData,
) -> HexBytes:
    """Derive the child chain transaction hash that creates a ticket.

    The ticket id doubles as the hash of the submit retryable transaction
    on the child chain, so the creation receipt can be fetched by it.

    :param child_chain_id:
        Chain id of the destination chain

    :param message_number:
        Inbox message number from ``InboxMessageDelivered``

    :param sender:
        Sender as recorded by the bridge ``MessageDelivered``, already aliased for contracts

    :param parent_base_fee:
        ``baseFeeL1`` from ``MessageDelivered``
    """
    destination = b"" if int(message.destination, 16) == 0 else _address_to_rlp(message.destination)
    fields = [
        _int_to_rlp(child_chain_id),
        message_number.to_bytes(32, "big"),
        _address_to_rlp(sender),
        _int_to_rlp(parent_base_fee),
        _int_to_rlp(message.deposit),
        _int_to_rlp(message.max_fee_per_gas),
        _int_to_rlp(message.gas_limit),
        destination,
        _int_to_rlp(message.call_value),
        _address_to_rlp(message.call_value_refund_address),
        _int_to_rlp(message.max_submission_fee),
        _address_to_rlp(message.excess_fee_refund_address),
        bytes(message.data),
    ]
    encoded = bytes([SUBMIT_RETRYABLE_TX_TYPE]) + rlp.encode(fields)
    return HexBytes(Web3.keccak(encoded))
