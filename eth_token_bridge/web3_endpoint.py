"""Chain endpoint over a web3.py connection.

- Reads go through ``eth_call`` and are retried on transient RPC failures

- Writes are signed by :py:class:`eth_token_bridge.hotwallet.HotWallet` instances,
  or sent with ``eth_sendTransaction`` for accounts unlocked on a local dev node

- Retryable plumbing: ``NodeInterface.estimateRetryableTicket`` dry runs,
  ``InboxMessageDelivered`` / ``MessageDelivered`` parsing on the parent chain,
  ticket status resolution from ``ArbRetryableTx`` on the child chain

Example:

.. code-block:: python

    deployer = HotWallet.from_private_key(os.environ["PARENT_KEY"])
    parent_web3 = Web3(HTTPProvider(os.environ["PARENT_RPC"]))
    deployer.sync_nonce(parent_web3)
    parent = Web3ChainEndpoint(parent_web3, signers=[deployer])
"""

import logging
from typing import Any, Iterable

import eth_abi
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TransactionNotFound

from eth_token_bridge.abi import (
    INBOX_MESSAGE_DELIVERED_EVENT,
    MESSAGE_DELIVERED_DATA_TYPES,
    MESSAGE_DELIVERED_EVENT,
    REDEEM_SCHEDULED_EVENT,
    decode_read,
    encode_call,
    encode_read,
    encode_with_signature,
    get_topic_signature,
)
from eth_token_bridge.calls import ContractCall, CrossDomainCallRequest, DeployContract, GetRetryableTimeout, NativeToken, ProxyAdminOf, ReadCall
from eth_token_bridge.config import BackoffPolicy
from eth_token_bridge.constants import (
    ARB_RETRYABLE_TX,
    EIP1967_ADMIN_SLOT,
    L1_MESSAGE_TYPE_SUBMIT_RETRYABLE_TX,
    NODE_INTERFACE,
    ZERO_ADDRESS,
)
from eth_token_bridge.endpoint import ChainEndpoint, TransactionOutcome
from eth_token_bridge.errors import EstimationFailed, TransactionFailed
from eth_token_bridge.hotwallet import HotWallet
from eth_token_bridge.messages import CrossDomainMessageHandle, CrossDomainMessageStatus
from eth_token_bridge.retry import retry_transient
from eth_token_bridge.retryable import calculate_retryable_ticket_id, parse_inbox_message_data

logger = logging.getLogger(__name__)


class Web3ChainEndpoint(ChainEndpoint):
    """:py:class:`ChainEndpoint` over a web3.py connection."""

    def __init__(
        self,
        web3: Web3,
        signers: Iterable[HotWallet] = (),
        backoff: BackoffPolicy | None = None,
        confirmation_timeout: float = 300.0,
        gas_limit_buffer: float = 1.2,
    ):
        """
        :param web3:
            Connection owned by the caller

        :param signers:
            Hot wallets with synced nonces.
            Senders not listed here must be unlocked on the node.

        :param backoff:
            Retry policy for reads

        :param confirmation_timeout:
            Seconds to wait for a transaction receipt

        :param gas_limit_buffer:
            Multiplier over ``eth_estimateGas`` for submitted transactions
        """
        self.web3 = web3
        self.signers = {s.address.lower(): s for s in signers}
        self.backoff = backoff or BackoffPolicy()
        self.confirmation_timeout = confirmation_timeout
        self.gas_limit_buffer = gas_limit_buffer
        self._chain_id = None

    def __repr__(self):
        return f"<Web3ChainEndpoint chain:{self.chain_id} signers:{len(self.signers)}>"

    def _retry(self, func, description: str):
        return retry_transient(func, self.backoff, description=description)

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self._retry(lambda: self.web3.eth.chain_id, "eth_chainId")
        return self._chain_id

    def get_base_fee(self) -> int:
        block = self._retry(lambda: self.web3.eth.get_block("latest"), "eth_getBlockByNumber")
        return block.get("baseFeePerGas") or 0

    def get_gas_price(self) -> int:
        return self._retry(lambda: self.web3.eth.gas_price, "eth_gasPrice")

    def suggest_fees(self) -> dict:
        """Fee fields for the next transaction we originate.

        - EIP-1559 chains: ``2 * base fee + priority fee``

        - Chains without a base fee: the node suggested flat gas price

        Retryable fee parameters for the child chain are priced by :py:mod:`eth_token_bridge.fees`.
        """
        base_fee = self.get_base_fee()
        if not base_fee:
            return {"gasPrice": self.get_gas_price()}

        priority_fee = self._retry(lambda: self.web3.eth.max_priority_fee, "eth_maxPriorityFeePerGas")
        return {"maxFeePerGas": priority_fee + 2 * base_fee, "maxPriorityFeePerGas": priority_fee}

    def get_balance(self, address: HexAddress) -> int:
        return self._retry(lambda: self.web3.eth.get_balance(Web3.to_checksum_address(address)), "eth_getBalance")

    def get_timestamp(self) -> int:
        block = self._retry(lambda: self.web3.eth.get_block("latest"), "eth_getBlockByNumber")
        return block["timestamp"]

    def has_code(self, address: HexAddress) -> bool:
        code = self._retry(lambda: self.web3.eth.get_code(Web3.to_checksum_address(address)), "eth_getCode")
        return len(code) > 0

    def call(self, read: ReadCall) -> Any:
        target = Web3.to_checksum_address(read.target)

        if isinstance(read, ProxyAdminOf):
            slot = self._retry(lambda: self.web3.eth.get_storage_at(target, EIP1967_ADMIN_SLOT), "eth_getStorageAt")
            return Web3.to_checksum_address(bytes(slot)[-20:])

        data, output_types = encode_read(read)

        if isinstance(read, NativeToken):
            # ETH bridges do not have nativeToken() at all
            try:
                raw = self._retry(lambda: self.web3.eth.call({"to": target, "data": data}), "nativeToken()")
            except ContractLogicError:
                return ZERO_ADDRESS
            if len(raw) == 0:
                return ZERO_ADDRESS
            return decode_read(read, output_types, raw)

        raw = self._retry(lambda: self.web3.eth.call({"to": target, "data": data}), f"eth_call {read.__class__.__name__}")
        if len(raw) == 0:
            raise BadFunctionCallOutput(f"{read.__class__.__name__} on {target} returned no data, is it a contract?")
        return decode_read(read, output_types, raw)

    def transact(self, sender: HexAddress, call: ContractCall, value: int = 0, gas_limit: int | None = None) -> TransactionOutcome:
        """Sign, broadcast and wait for a transaction.

        :raise TransactionFailed:
            The transaction would revert already in the gas estimation,
            so nothing was broadcast
        """
        sender = Web3.to_checksum_address(sender)
        tx = {
            "from": sender,
            "chainId": self.chain_id,
            "value": value,
            "data": bytes(encode_call(call)),
        }
        if not isinstance(call, DeployContract):
            tx["to"] = Web3.to_checksum_address(call.target)

        if gas_limit is None:
            try:
                estimated = self.web3.eth.estimate_gas(tx)
            except ContractLogicError as e:
                raise TransactionFailed(f"{call.__class__.__name__} would revert: {e.message}", revert_reason=e.message) from e
            gas_limit = int(estimated * self.gas_limit_buffer)
        tx["gas"] = gas_limit

        tx.update(self.suggest_fees())

        wallet = self.signers.get(sender.lower())
        if wallet is not None:
            signed = wallet.sign_transaction_with_new_nonce(tx)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        else:
            # Dev node unlocked account
            tx_hash = self.web3.eth.send_transaction(tx)

        logger.debug("Broadcasted %s, tx %s", call.__class__.__name__, tx_hash.hex())
        receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout)

        success = receipt["status"] == 1
        revert_reason = None
        if not success:
            revert_reason = self.fetch_revert_reason(tx, receipt["blockNumber"])

        return TransactionOutcome(
            chain_id=self.chain_id,
            tx_hash=HexBytes(tx_hash),
            success=success,
            block_number=receipt["blockNumber"],
            sender=sender,
            contract_address=receipt.get("contractAddress"),
            gas_used=receipt.get("gasUsed"),
            revert_reason=revert_reason,
            receipt=dict(receipt),
        )

    def fetch_revert_reason(self, tx: dict, block_number: int, unknown_error_message="<could not extract the revert reason>") -> str:
        """Replay a reverted transaction against the state before its block."""
        replay_tx = {k: v for k, v in tx.items() if k in ("from", "to", "value", "data", "gas")}
        try:
            self.web3.eth.call(replay_tx, block_number - 1)
        except ContractLogicError as e:
            return e.message
        except ValueError as e:
            logger.debug("Revert exception result is: %s", e)
            return str(e)
        return unknown_error_message

    def estimate_retryable_gas(self, request: CrossDomainCallRequest, deposit: int) -> int:
        payload = bytes(encode_call(request.payload))

        if int(request.destination, 16) == 0:
            # Contract creation, estimated as a plain deployment from the sender
            try:
                return self._retry(lambda: self.web3.eth.estimate_gas({"from": Web3.to_checksum_address(request.source), "data": payload}), "eth_estimateGas deployment")
            except ContractLogicError as e:
                raise EstimationFailed(f"Child deployment from {request.source} reverts: {e.message}", revert_data=e.data, request=request) from e

        data = encode_with_signature(
            "estimateRetryableTicket(address,uint256,address,uint256,address,address,bytes)",
            [
                Web3.to_checksum_address(request.source),
                deposit,
                Web3.to_checksum_address(request.destination),
                request.call_value,
                Web3.to_checksum_address(request.excess_fee_refund_address),
                Web3.to_checksum_address(request.call_value_refund_address),
                payload,
            ],
        )
        try:
            return self._retry(lambda: self.web3.eth.estimate_gas({"to": NODE_INTERFACE, "data": data}), "estimateRetryableTicket")
        except ContractLogicError as e:
            raise EstimationFailed(
                f"Child call {request.payload.__class__.__name__} to {request.destination} reverts: {e.message}",
                revert_data=e.data,
                request=request,
            ) from e

    def get_retryable_messages(self, outcome: TransactionOutcome, child_chain_id: int) -> list[CrossDomainMessageHandle]:
        receipt = outcome.receipt
        if receipt is None:
            receipt = self._retry(lambda: self.web3.eth.get_transaction_receipt(outcome.tx_hash), "eth_getTransactionReceipt")

        delivered_topic = get_topic_signature(MESSAGE_DELIVERED_EVENT)
        inbox_topic = get_topic_signature(INBOX_MESSAGE_DELIVERED_EVENT)

        # messageNum -> (sender, base fee)
        bridge_messages = {}
        # messageNum -> packed retryable data
        inbox_messages = {}

        for log in receipt["logs"]:
            topics = [HexBytes(t) for t in log["topics"]]
            if not topics:
                continue

            if topics[0] == delivered_topic:
                message_num = int.from_bytes(topics[1], "big")
                _inbox, kind, sender, _data_hash, base_fee, _timestamp = eth_abi.decode(list(MESSAGE_DELIVERED_DATA_TYPES), bytes(HexBytes(log["data"])))
                if kind == L1_MESSAGE_TYPE_SUBMIT_RETRYABLE_TX:
                    bridge_messages[message_num] = (Web3.to_checksum_address(sender), base_fee)

            elif topics[0] == inbox_topic:
                message_num = int.from_bytes(topics[1], "big")
                (data,) = eth_abi.decode(["bytes"], bytes(HexBytes(log["data"])))
                inbox_messages[message_num] = data

        handles = []
        for index, message_num in enumerate(sorted(bridge_messages)):
            assert message_num in inbox_messages, f"MessageDelivered {message_num} without InboxMessageDelivered in {outcome.tx_hash.hex()}"
            sender, base_fee = bridge_messages[message_num]
            message = parse_inbox_message_data(inbox_messages[message_num])
            ticket_id = calculate_retryable_ticket_id(child_chain_id, message_num, sender, base_fee, message)
            handles.append(
                CrossDomainMessageHandle(
                    creation_id=ticket_id,
                    index=index,
                    originating_tx_hash=outcome.tx_hash,
                    parent_chain_id=self.chain_id,
                    child_chain_id=child_chain_id,
                    message_number=message_num,
                )
            )
        return handles

    def _get_receipt_or_none(self, tx_hash: HexBytes) -> dict | None:
        try:
            return self._retry(lambda: self.web3.eth.get_transaction_receipt(tx_hash), "eth_getTransactionReceipt")
        except TransactionNotFound:
            return None

    def get_retryable_status(self, handle: CrossDomainMessageHandle) -> CrossDomainMessageStatus:
        creation = self._get_receipt_or_none(handle.creation_id)
        if creation is None:
            return CrossDomainMessageStatus.NOT_YET_CREATED

        if creation["status"] != 1:
            return CrossDomainMessageStatus.CREATION_FAILED

        redeem_logs = self._retry(
            lambda: self.web3.eth.get_logs(
                {
                    "address": ARB_RETRYABLE_TX,
                    "topics": [get_topic_signature(REDEEM_SCHEDULED_EVENT), HexBytes(handle.creation_id)],
                    "fromBlock": creation["blockNumber"],
                    "toBlock": "latest",
                }
            ),
            "RedeemScheduled logs",
        )

        for log in redeem_logs:
            retry_tx_hash = HexBytes(log["topics"][2])
            retry_receipt = self._get_receipt_or_none(retry_tx_hash)
            if retry_receipt is not None and retry_receipt["status"] == 1:
                return CrossDomainMessageStatus.REDEEMED

        try:
            timeout = self.call(GetRetryableTimeout(ARB_RETRYABLE_TX, bytes(handle.creation_id)))
        except ContractLogicError:
            # Ticket no longer exists and no successful redeem was found
            return CrossDomainMessageStatus.EXPIRED

        if timeout <= self.get_timestamp():
            return CrossDomainMessageStatus.EXPIRED

        return CrossDomainMessageStatus.FUNDS_DEPOSITED
