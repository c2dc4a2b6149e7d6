"""Chain endpoint abstraction.

The orchestration core talks to both ledgers only through :py:class:`ChainEndpoint`.
The caller owns the connection lifecycle: endpoints are passed in, never created, by the core.

- :py:class:`eth_token_bridge.web3_endpoint.Web3ChainEndpoint` over a web3.py connection

- :py:class:`eth_token_bridge.testing.SimulatedChain` for tests
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from eth_typing import HexAddress
from hexbytes import HexBytes

from eth_token_bridge.abi import encode_call
from eth_token_bridge.calls import ContractCall, CrossDomainCallRequest, ReadCall
from eth_token_bridge.errors import TransactionFailed

if TYPE_CHECKING:
    from eth_token_bridge.messages import CrossDomainMessageHandle, CrossDomainMessageStatus


logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TransactionOutcome:
    """Result of a mined transaction."""

    #: Chain the transaction was mined on
    chain_id: int

    tx_hash: HexBytes

    #: Receipt status
    success: bool

    block_number: int

    #: Signer address
    sender: HexAddress

    #: Set for contract creations
    contract_address: HexAddress | None = None

    gas_used: int | None = None

    #: Best effort explanation for failed transactions
    revert_reason: str | None = None

    #: Raw receipt as returned by the node, if any
    receipt: dict | None = None

    def __repr__(self):
        status = "ok" if self.success else f"reverted ({self.revert_reason})"
        return f"<TransactionOutcome chain:{self.chain_id} tx:{self.tx_hash.hex()} block:{self.block_number} {status}>"


class ChainEndpoint(ABC):
    """An opaque handle to one ledger.

    Exposes identity, state reads, transaction submission and the retryable ticket
    plumbing the parent and the child chain need.

    Parent only methods: :py:meth:`get_retryable_messages`.
    Child only methods: :py:meth:`estimate_retryable_gas`, :py:meth:`get_retryable_status`.
    """

    @property
    @abstractmethod
    def chain_id(self) -> int:
        """Chain id of the ledger."""

    @abstractmethod
    def get_base_fee(self) -> int:
        """Base fee of the latest block, wei."""

    @abstractmethod
    def get_gas_price(self) -> int:
        """Current gas price the node suggests, wei."""

    @abstractmethod
    def get_balance(self, address: HexAddress) -> int:
        """Native currency balance, wei."""

    @abstractmethod
    def get_timestamp(self) -> int:
        """Timestamp of the latest block, UNIX seconds."""

    @abstractmethod
    def has_code(self, address: HexAddress) -> bool:
        """Is there a contract deployed at the address."""

    @abstractmethod
    def call(self, read: ReadCall) -> Any:
        """Evaluate a view call against the latest state.

        :raise TransientNetworkError:
            When the node does not answer after retries
        """

    @abstractmethod
    def transact(self, sender: HexAddress, call: ContractCall, value: int = 0, gas_limit: int | None = None) -> TransactionOutcome:
        """Sign, broadcast and wait for a transaction.

        A reverted transaction is returned as an outcome with ``success=False``.
        Use :py:meth:`transact_and_confirm` to turn it into an exception.

        :param sender:
            Address of a signer the endpoint manages
        """

    @abstractmethod
    def estimate_retryable_gas(self, request: CrossDomainCallRequest, deposit: int) -> int:
        """Dry run the child call of a retryable.

        :param deposit:
            Value the retryable would be funded with during the dry run

        :raise EstimationFailed:
            The child call reverts
        """

    @abstractmethod
    def get_retryable_messages(self, outcome: TransactionOutcome, child_chain_id: int) -> list["CrossDomainMessageHandle"]:
        """Resolve retryables an originating parent transaction created, ordered by index."""

    @abstractmethod
    def get_retryable_status(self, handle: "CrossDomainMessageHandle") -> "CrossDomainMessageStatus":
        """Read the current status of a ticket from the child chain."""

    def encode_payload(self, call: ContractCall) -> HexBytes:
        """Calldata of a typed call."""
        return encode_call(call)

    def transact_and_confirm(self, sender: HexAddress, call: ContractCall, value: int = 0, gas_limit: int | None = None, description: str | None = None) -> TransactionOutcome:
        """Submit a transaction and raise if it reverts.

        :raise TransactionFailed:
            The transaction was mined but reverted
        """
        description = description or call.__class__.__name__
        logger.info("Submitting %s on chain %d: target %s, value %d, sender %s", description, self.chain_id, call.target, value, sender)
        outcome = self.transact(sender, call, value=value, gas_limit=gas_limit)
        if not outcome.success:
            logger.error("%s reverted on chain %d, tx %s: %s", description, self.chain_id, outcome.tx_hash.hex(), outcome.revert_reason)
            raise TransactionFailed(f"{description} reverted: {outcome.revert_reason}", outcome=outcome, revert_reason=outcome.revert_reason)
        logger.info("%s confirmed in block %d, tx %s", description, outcome.block_number, outcome.tx_hash.hex())
        return outcome
