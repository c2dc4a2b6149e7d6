"""Token deposits through the parent gateway router.

The router forwards the deposit to the gateway registered for the token,
which locks the tokens and sends one retryable that mints them on the child chain.

Example:

.. code-block:: python

    result = deposit_token(
        parent,
        child,
        estimator,
        tracker,
        margins=GasMargins(),
        sender=user,
        router=plan.parent.router,
        token=token,
        amount=350 * 10**18,
    )
    assert result.child_balance_after - result.child_balance_before == 350 * 10**18
"""

import logging
from dataclasses import dataclass

from eth_typing import HexAddress
from hexbytes import HexBytes

from eth_token_bridge.calls import (
    Approve,
    BalanceOf,
    CalculateChildTokenAddress,
    CounterpartGateway,
    CrossDomainCallRequest,
    DefaultGateway,
    EncodedPayload,
    GetGateway,
    GetOutboundCalldata,
    OutboundTransferCustomRefund,
)
from eth_token_bridge.config import GasMarginKind, GasMargins, WaitPolicy
from eth_token_bridge.endpoint import ChainEndpoint
from eth_token_bridge.errors import InvariantViolation
from eth_token_bridge.fees import FeeEstimator, RetryableFeeQuote, get_fee_token
from eth_token_bridge.messages import CrossDomainMessageHandle, MessageTracker
from eth_token_bridge.utils import same_address

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DepositResult:
    """A confirmed deposit."""

    #: Parent gateway that locked the tokens
    gateway: HexAddress

    #: Child token the recipient received
    child_token: HexAddress

    recipient: HexAddress

    amount: int

    originating_tx_hash: HexBytes

    #: The redeemed minting message
    handle: CrossDomainMessageHandle

    quote: RetryableFeeQuote

    child_balance_before: int

    child_balance_after: int


def get_child_balance(child: ChainEndpoint, child_token: HexAddress, account: HexAddress) -> int:
    """Child token balance, zero if the bridged token is not deployed yet."""
    if not child.has_code(child_token):
        return 0
    return child.call(BalanceOf(child_token, account))


def deposit_token(
    parent: ChainEndpoint,
    child: ChainEndpoint,
    estimator: FeeEstimator,
    tracker: MessageTracker,
    margins: GasMargins,
    sender: HexAddress,
    router: HexAddress,
    token: HexAddress,
    amount: int,
    recipient: HexAddress | None = None,
    margin_kind: GasMarginKind | None = None,
    policy: WaitPolicy | None = None,
) -> DepositResult:
    """Deposit ERC-20 tokens to the child chain and wait until they are minted.

    :param sender:
        Token holder on the parent chain, pays the retryable fees

    :param router:
        Parent gateway router

    :param recipient:
        Child chain receiver. Defaults to ``sender``.

    :param margin_kind:
        Gas limit margin. Defaults to the standard or custom deposit margin,
        depending on whether the token goes through the default gateway.

    :raise TransactionFailed:
        The deposit reverted, e.g. the gateway has deposits paused

    :raise MessageNotRedeemed:
        The minting message did not reach ``REDEEMED``

    :raise InvariantViolation:
        The recipient's child balance did not grow by exactly ``amount``
    """
    assert amount > 0, f"Deposit amount must be positive, got {amount}"
    recipient = recipient or sender

    gateway = parent.call(GetGateway(router, token))
    child_gateway = parent.call(CounterpartGateway(gateway))
    child_token = parent.call(CalculateChildTokenAddress(router, token))

    if margin_kind is None:
        default_gateway = parent.call(DefaultGateway(router))
        margin_kind = GasMarginKind.standard_deposit if same_address(gateway, default_gateway) else GasMarginKind.custom_deposit

    logger.info("Depositing %d of %s through gateway %s, child token %s", amount, token, gateway, child_token)

    balance_before = get_child_balance(child, child_token, recipient)

    parent.transact_and_confirm(sender, Approve(token, gateway, amount), description="token approval for deposit")

    finalize_data = parent.call(GetOutboundCalldata(gateway, token, sender, recipient, amount, b""))
    request = CrossDomainCallRequest(
        source=gateway,
        destination=child_gateway,
        call_value=0,
        excess_fee_refund_address=recipient,
        call_value_refund_address=sender,
        payload=EncodedPayload(child_gateway, bytes(finalize_data)),
    )
    quote = estimator.estimate(request)
    quote = quote.with_gas_margin(margins.for_call(margin_kind))

    fee_token = get_fee_token(parent, estimator.inbox)
    if fee_token:
        # The gateway pulls the retryable fees in the fee token
        parent.transact_and_confirm(sender, Approve(fee_token, gateway, quote.total_deposit), description="fee token approval for deposit")

    call = OutboundTransferCustomRefund(
        router,
        token=token,
        refund_to=recipient,
        to=recipient,
        amount=amount,
        max_gas=quote.gas_limit,
        gas_price_bid=quote.max_fee_per_gas,
        max_submission_cost=quote.submission_cost,
        fee_token_amount=quote.total_deposit if fee_token else None,
    )

    quote = estimator.revalidate(quote)
    outcome = parent.transact_and_confirm(sender, call, value=0 if fee_token else quote.value, description="deposit")

    (handle,) = tracker.wait_for_redeemed(outcome, policy, expected_count=1)

    balance_after = get_child_balance(child, child_token, recipient)
    if balance_after - balance_before != amount:
        raise InvariantViolation(f"Child balance of {recipient} moved by {balance_after - balance_before}, expected {amount}")

    logger.info("Deposit of %d %s to %s confirmed, child balance %d", amount, token, recipient, balance_after)

    return DepositResult(
        gateway=gateway,
        child_token=child_token,
        recipient=recipient,
        amount=amount,
        originating_tx_hash=outcome.tx_hash,
        handle=handle,
        quote=quote,
        child_balance_before=balance_before,
        child_balance_after=balance_after,
    )
