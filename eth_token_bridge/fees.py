"""Retryable fee estimation.

Price a cross-domain call so that it has a good chance of being automatically
redeemed on the child chain.

- Submission cost: inbox formula over the payload length and the parent base fee, plus a safety bump

- Gas limit: dry run of the child call through the node interface

- ``maxFeePerGas``: current child gas price, plus a safety bump

Callers apply their own gas limit margin with :py:meth:`RetryableFeeQuote.with_gas_margin`,
see :py:class:`eth_token_bridge.config.GasMargins`.

Example:

.. code-block:: python

    estimator = FeeEstimator(parent, child, inbox)
    quote = estimator.estimate(request)
    quote = quote.with_gas_margin(config.margins.for_call(GasMarginKind.gateway_registration))
    quote = estimator.revalidate(quote)
    parent.transact_and_confirm(owner, call, value=quote.total_deposit)
"""

import dataclasses
import logging
import time
from dataclasses import dataclass

from eth_typing import HexAddress

from eth_token_bridge.calls import CalculateRetryableSubmissionFee, CrossDomainCallRequest, InboxBridge, NativeToken
from eth_token_bridge.config import FeeConfig
from eth_token_bridge.endpoint import ChainEndpoint
from eth_token_bridge.errors import GasEstimationStale
from eth_token_bridge.retryable import apply_percent_increase, calculate_deposit
from eth_token_bridge.utils import none_if_zero

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RetryableFeeQuote:
    """Fee parameters of one retryable.

    ``total_deposit`` is derived and cannot be set independently.
    """

    #: Max submission cost, wei
    submission_cost: int

    #: Child chain gas limit
    gas_limit: int

    #: Child chain max fee per gas, wei
    max_fee_per_gas: int

    #: Child gas price at the time of the quote
    child_gas_price: int = 0

    #: Parent base fee the submission cost was calculated with
    parent_base_fee: int = 0

    #: UNIX timestamp of the quote
    quoted_at: float = 0.0

    #: Value delivered with the child call, paid on top of the fees
    call_value: int = 0

    def __post_init__(self):
        assert self.submission_cost >= 0
        assert self.gas_limit >= 0
        assert self.max_fee_per_gas >= 0

    @property
    def total_deposit(self) -> int:
        """``submissionCost + gasLimit * maxFeePerGas``"""
        return calculate_deposit(self.submission_cost, self.gas_limit, self.max_fee_per_gas)

    @property
    def value(self) -> int:
        """Value the originating transaction must attach."""
        return self.total_deposit + self.call_value

    def with_gas_margin(self, multiplier: int) -> "RetryableFeeQuote":
        """Multiply the gas limit by a call site safety margin."""
        assert multiplier >= 1, f"Gas margin must be at least 1, got {multiplier}"
        return dataclasses.replace(self, gas_limit=self.gas_limit * multiplier)

    def get_age(self, now: float | None = None) -> float:
        """Seconds since the quote was made."""
        if now is None:
            now = time.time()
        return now - self.quoted_at

    def ensure_fresh(self, current_child_gas_price: int, max_age: float, now: float | None = None):
        """Check the quote can still be submitted.

        :raise GasEstimationStale:
            The quote is older than ``max_age`` seconds
            or the child gas price has moved above ``max_fee_per_gas``.
        """
        age = self.get_age(now)
        if age > max_age:
            raise GasEstimationStale(f"Fee quote is {age:.1f}s old, max age is {max_age:.1f}s", self)

        if current_child_gas_price > self.max_fee_per_gas:
            raise GasEstimationStale(f"Child gas price {current_child_gas_price:,} moved above quoted max fee per gas {self.max_fee_per_gas:,}", self)

    def to_rpc_dict(self) -> dict:
        """Estimation response fields as the Arbitrum SDK names them."""
        return {
            "maxSubmissionCost": self.submission_cost,
            "gasLimit": self.gas_limit,
            "maxFeePerGas": self.max_fee_per_gas,
            "deposit": self.total_deposit,
        }


class FeeEstimator:
    """Computes retryable fee parameters.

    Stateless apart from its collaborators. Quotes are values and
    the estimator never caches them.
    """

    def __init__(self, parent: ChainEndpoint, child: ChainEndpoint, inbox: HexAddress, config: FeeConfig | None = None):
        """
        :param parent:
            Source chain, where the inbox lives

        :param child:
            Destination chain, where the dry run is executed

        :param inbox:
            Rollup inbox address on the parent chain

        :param config:
            Bump percentages and staleness limits
        """
        self.parent = parent
        self.child = child
        self.inbox = inbox
        self.config = config or FeeConfig()

    def estimate_submission_cost(self, data_length: int, base_fee: int) -> int:
        """Inbox submission fee with the configured bump."""
        fee = self.parent.call(CalculateRetryableSubmissionFee(self.inbox, data_length, base_fee))
        return apply_percent_increase(fee, self.config.submission_fee_percent_increase)

    def estimate_max_fee_per_gas(self) -> tuple[int, int]:
        """Child gas price with the configured bump.

        :return:
            Tuple (max fee per gas, current gas price)
        """
        gas_price = self.child.get_gas_price()
        return apply_percent_increase(gas_price, self.config.gas_price_percent_increase), gas_price

    def estimate_gas_limit(self, request: CrossDomainCallRequest) -> int:
        """Dry run the child call.

        :raise EstimationFailed:
            The child call reverts
        """
        gas = self.child.estimate_retryable_gas(request, deposit=self.config.estimation_deposit + request.call_value)
        gas = apply_percent_increase(gas, self.config.gas_limit_percent_increase)
        return max(gas, self.config.min_gas_limit)

    def estimate(self, request: CrossDomainCallRequest, current_base_fee: int | None = None) -> RetryableFeeQuote:
        """Price a cross-domain call.

        :param request:
            The child call to make

        :param current_base_fee:
            Parent chain base fee. Read from the parent endpoint if not given.

        :raise EstimationFailed:
            The child call would revert.
            Never defaulted: the request needs to be corrected.
        """
        if current_base_fee is None:
            current_base_fee = self.parent.get_base_fee()

        data = self.parent.encode_payload(request.payload)
        submission_cost = self.estimate_submission_cost(len(data), current_base_fee)
        max_fee_per_gas, gas_price = self.estimate_max_fee_per_gas()
        gas_limit = self.estimate_gas_limit(request)

        quote = RetryableFeeQuote(
            submission_cost=submission_cost,
            gas_limit=gas_limit,
            max_fee_per_gas=max_fee_per_gas,
            child_gas_price=gas_price,
            parent_base_fee=current_base_fee,
            quoted_at=time.time(),
            call_value=request.call_value,
        )

        logger.info(
            "Quoted %s to %s, payload %d bytes: submission cost %d, gas limit %d, max fee per gas %d, deposit %d",
            request.payload.__class__.__name__,
            request.destination,
            len(data),
            quote.submission_cost,
            quote.gas_limit,
            quote.max_fee_per_gas,
            quote.total_deposit,
        )
        return quote

    def revalidate(self, quote: RetryableFeeQuote) -> RetryableFeeQuote:
        """Check a quote right before submission.

        :raise GasEstimationStale:
            Re-estimate instead of submitting
        """
        quote.ensure_fresh(self.child.get_gas_price(), self.config.quote_max_age)
        return quote


def get_fee_token(parent: ChainEndpoint, inbox: HexAddress) -> HexAddress | None:
    """Resolve the ERC-20 the child chain pays its gas in.

    Custom fee token chains take retryable deposits as an ERC-20 allowance
    instead of attached ETH.

    :return:
        Fee token address on the parent chain, or ``None`` if the child chain pays gas in ETH
    """
    rollup_bridge = parent.call(InboxBridge(inbox))
    fee_token = none_if_zero(parent.call(NativeToken(rollup_bridge)))
    logger.debug("Inbox %s, bridge %s, fee token %s", inbox, rollup_bridge, fee_token)
    return fee_token
