"""Retryable ticket protocol constants.

- `Arbitrum retryable tickets <https://docs.arbitrum.io/how-arbitrum-works/arbos/l1-l2-messaging>`__
- `Address aliasing <https://docs.arbitrum.io/how-arbitrum-works/arbos/l1-l2-messaging#address-aliasing>`__
"""

from eth_typing import HexAddress

#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS: HexAddress = HexAddress("0x0000000000000000000000000000000000000000")

#: Parent chain contract addresses are shifted by this offset when they appear as ``msg.sender`` on the child chain
ADDRESS_ALIAS_OFFSET = 0x1111000000000000000000000000000000001111

#: NodeInterface virtual contract on the child chain, used for retryable dry runs
NODE_INTERFACE: HexAddress = HexAddress("0x00000000000000000000000000000000000000C8")

#: ArbRetryableTx precompile on the child chain
ARB_RETRYABLE_TX: HexAddress = HexAddress("0x000000000000000000000000000000000000006E")

#: How long a ticket waits for a redeem before it expires
DEFAULT_RETRYABLE_LIFETIME_SECONDS = 7 * 24 * 60 * 60

#: EIP-2718 type byte of a submit retryable transaction, used in ticket id derivation
SUBMIT_RETRYABLE_TX_TYPE = 0x69

#: Bridge ``MessageDelivered.kind`` for retryable submissions
L1_MESSAGE_TYPE_SUBMIT_RETRYABLE_TX = 9

#: Inbox submission fee formula: fixed part, bytes
SUBMISSION_FEE_BASE_BYTES = 1400

#: Inbox submission fee formula: cost multiplier per payload byte
SUBMISSION_FEE_BYTE_MULTIPLIER = 6

#: EIP-1967 ``bytes32(uint256(keccak256("eip1967.proxy.admin")) - 1)``
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103
