"""Gateway registration on both routers.

A registration is a pair of legs:

- The parent router ``setGateways()`` call, the authoritative mapping

- The retryable the parent router sends to mirror the mapping into the child router

Both legs must be confirmed before the mapping is live.
If the child leg does not reach ``REDEEMED``, :py:class:`eth_token_bridge.errors.PartiallyRegistered` is raised.
Re-issuing the same registration is idempotent:

- Tokens already mapped on both chains are skipped, so a fully registered set costs nothing

- A previous attempt whose ticket is still ``FUNDS_DEPOSITED`` is manually redeemed instead of paying for a new ticket

- A previous ticket not yet created on the child chain is waited for, never paid for twice

Example:

.. code-block:: python

    coordinator = RegistrationCoordinator(parent, child, estimator, tracker)
    try:
        coordinator.register_gateway(rollup_owner, router, [usdc], [usdc_gateway], executor=upgrade_executor)
    except PartiallyRegistered as e:
        # Later, after fixing what blocked the child leg
        coordinator.register_gateway(rollup_owner, router, [usdc], [usdc_gateway], executor=upgrade_executor, previous_attempt=e.attempt)
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from eth_typing import HexAddress
from hexbytes import HexBytes

from eth_token_bridge.calls import (
    Approve,
    ContractCall,
    CounterpartGateway,
    CrossDomainCallRequest,
    ExecuteCall,
    GetGateway,
    RegisterTokenFromParent,
    RegisterTokenOnChild,
    SetGatewayOnChild,
    SetGateways,
)
from eth_token_bridge.config import GasMarginKind, GasMargins, WaitPolicy
from eth_token_bridge.constants import ZERO_ADDRESS
from eth_token_bridge.endpoint import ChainEndpoint
from eth_token_bridge.errors import PartiallyRegistered
from eth_token_bridge.fees import FeeEstimator, RetryableFeeQuote, get_fee_token
from eth_token_bridge.messages import CrossDomainMessageHandle, CrossDomainMessageStatus, MessageTracker
from eth_token_bridge.utils import is_zero_address, same_address

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class GatewayRegistrationRecord:
    """A router mapping as read from one chain.

    A router holds at most one gateway per token.
    """

    #: Parent chain token address, routers on both chains are keyed by it
    token: HexAddress

    #: Gateway the router resolves the token to
    gateway: HexAddress

    chain_id: int


@dataclass(slots=True, frozen=True)
class RegistrationAttempt:
    """A submitted registration whose child leg may still be pending."""

    #: Parent tokens in the submission
    tokens: tuple[HexAddress, ...]

    #: Parent gateways in the submission
    gateways: tuple[HexAddress, ...]

    #: The retryable mirroring the mapping to the child router
    handle: CrossDomainMessageHandle

    originating_tx_hash: HexBytes

    quote: RetryableFeeQuote


class RegistrationCoordinator:
    """Registers token -> gateway mappings on the parent and the child router."""

    def __init__(
        self,
        parent: ChainEndpoint,
        child: ChainEndpoint,
        estimator: FeeEstimator,
        tracker: MessageTracker,
        margins: GasMargins | None = None,
    ):
        self.parent = parent
        self.child = child
        self.estimator = estimator
        self.tracker = tracker
        self.margins = margins or GasMargins()
        self._fee_token_resolved = False
        self._fee_token = None

    def get_fee_token(self) -> HexAddress | None:
        """Fee token of the child chain, ``None`` for ETH."""
        if not self._fee_token_resolved:
            self._fee_token = get_fee_token(self.parent, self.estimator.inbox)
            self._fee_token_resolved = True
        return self._fee_token

    def read_registrations(self, source_router: HexAddress, tokens: Sequence[HexAddress]) -> list[tuple[GatewayRegistrationRecord, GatewayRegistrationRecord]]:
        """Read the current mappings of both routers.

        :return:
            List of (parent record, child record), in the order of ``tokens``
        """
        child_router = self.parent.call(CounterpartGateway(source_router))
        records = []
        for token in tokens:
            parent_gateway = self.parent.call(GetGateway(source_router, token))
            child_gateway = self.child.call(GetGateway(child_router, token)) if self.child.has_code(child_router) else ZERO_ADDRESS
            records.append(
                (
                    GatewayRegistrationRecord(token, parent_gateway, self.parent.chain_id),
                    GatewayRegistrationRecord(token, child_gateway, self.child.chain_id),
                )
            )
        return records

    def get_pending(self, source_router: HexAddress, tokens: Sequence[HexAddress], gateways: Sequence[HexAddress]) -> list[int]:
        """Indexes of the pairs not yet mapped on both routers."""
        child_gateways = [self._child_gateway_of(g) for g in gateways]
        pending = []
        for idx, (parent_record, child_record) in enumerate(self.read_registrations(source_router, tokens)):
            if not same_address(parent_record.gateway, gateways[idx]) or not same_address(child_record.gateway, child_gateways[idx]):
                pending.append(idx)
        return pending

    def _child_gateway_of(self, gateway: HexAddress) -> HexAddress:
        if is_zero_address(gateway):
            return ZERO_ADDRESS
        return self.parent.call(CounterpartGateway(gateway))

    def register_gateway(
        self,
        router_owner: HexAddress,
        source_router: HexAddress,
        tokens: Sequence[HexAddress],
        gateways: Sequence[HexAddress],
        executor: HexAddress | None = None,
        previous_attempt: RegistrationAttempt | None = None,
        policy: WaitPolicy | None = None,
        redeemer: HexAddress | None = None,
    ) -> bool:
        """Map tokens to gateways on both routers and wait for both legs.

        :param router_owner:
            Signer allowed to call ``setGateways()``, directly or through ``executor``

        :param source_router:
            Parent chain gateway router

        :param executor:
            Upgrade executor owning the router. If given, ``setGateways()`` is wrapped in ``executeCall()``.

        :param previous_attempt:
            Attempt from an earlier :py:class:`PartiallyRegistered`.
            Its ticket is redeemed if it still can be.

        :param redeemer:
            Child chain signer for manual redeems. Defaults to ``router_owner``.

        :return:
            ``True`` once both routers have the mapping

        :raise PartiallyRegistered:
            The parent leg is confirmed but the child leg is not
        """
        tokens = tuple(tokens)
        gateways = tuple(gateways)
        if len(tokens) != len(gateways) or not tokens:
            raise ValueError(f"Need matching non-empty token and gateway lists, got {len(tokens)} tokens and {len(gateways)} gateways")

        if previous_attempt is not None:
            self._finish_previous(previous_attempt, redeemer or router_owner, policy)

        pending = self.get_pending(source_router, tokens, gateways)
        if not pending:
            logger.info("Tokens %s already registered on both routers, nothing to do", tokens)
            return True

        if len(pending) < len(tokens):
            logger.info("%d of %d tokens already registered, submitting the rest", len(tokens) - len(pending), len(tokens))

        attempt = self.submit_registration(
            router_owner,
            source_router,
            tuple(tokens[i] for i in pending),
            tuple(gateways[i] for i in pending),
            executor=executor,
        )
        return self.confirm_registration(attempt, source_router, policy)

    def _finish_previous(self, attempt: RegistrationAttempt, redeemer: HexAddress, policy: WaitPolicy | None):
        """Settle the ticket of an earlier attempt before anything new is paid for.

        :raise PartiallyRegistered:
            The earlier ticket is still not on the child chain
        """
        status = self.tracker.status(attempt.handle)
        if status == CrossDomainMessageStatus.NOT_YET_CREATED:
            logger.info("Previous registration ticket %s is not yet on the child chain, waiting for it", attempt.handle)
            try:
                status = self.tracker.wait_for_creation(attempt.handle, policy)
            except TimeoutError as e:
                raise PartiallyRegistered(f"Previous child router leg of {attempt.tokens} is still pending, not paying for another one", attempt, status) from e

        if status == CrossDomainMessageStatus.FUNDS_DEPOSITED:
            logger.info("Previous registration ticket %s is still redeemable, redeeming it instead of paying for a new one", attempt.handle)
            self.tracker.redeem(redeemer, attempt.handle)
        else:
            logger.info("Previous registration ticket %s is %s", attempt.handle, status.name)

    def submit_registration(
        self,
        router_owner: HexAddress,
        source_router: HexAddress,
        tokens: tuple[HexAddress, ...],
        gateways: tuple[HexAddress, ...],
        executor: HexAddress | None = None,
    ) -> RegistrationAttempt:
        """Submit the parent leg.

        :return:
            Attempt to pass to :py:meth:`confirm_registration`
        """
        child_router = self.parent.call(CounterpartGateway(source_router))
        child_gateways = tuple(self._child_gateway_of(g) for g in gateways)

        request = CrossDomainCallRequest(
            source=source_router,
            destination=child_router,
            call_value=0,
            excess_fee_refund_address=router_owner,
            call_value_refund_address=router_owner,
            payload=SetGatewayOnChild(child_router, tokens, child_gateways),
        )
        quote = self.estimator.estimate(request)
        quote = quote.with_gas_margin(self.margins.for_call(GasMarginKind.gateway_registration))
        quote = self.estimator.revalidate(quote)

        fee_token = self.get_fee_token()
        set_gateways = SetGateways(
            source_router,
            tokens=tokens,
            gateways=gateways,
            max_gas=quote.gas_limit,
            gas_price_bid=quote.max_fee_per_gas,
            max_submission_cost=quote.submission_cost,
            fee_token_amount=quote.total_deposit if fee_token else None,
        )

        if fee_token:
            # The router pulls the fees from its caller
            self._submit_as_owner(router_owner, Approve(fee_token, source_router, quote.total_deposit), executor, value=0, description="fee token approval for registration")
            value = 0
        else:
            value = quote.value

        outcome = self._submit_as_owner(router_owner, set_gateways, executor, value=value, description="gateway registration")
        handles = self.tracker.messages_of(outcome)
        assert len(handles) == 1, f"Gateway registration should produce one message, got {len(handles)}"

        return RegistrationAttempt(
            tokens=tokens,
            gateways=gateways,
            handle=handles[0],
            originating_tx_hash=outcome.tx_hash,
            quote=quote,
        )

    def _submit_as_owner(self, router_owner: HexAddress, call: ContractCall, executor: HexAddress | None, value: int, description: str):
        if executor is not None:
            call = ExecuteCall(executor, call)
        return self.parent.transact_and_confirm(router_owner, call, value=value, description=description)

    def confirm_registration(self, attempt: RegistrationAttempt, source_router: HexAddress, policy: WaitPolicy | None = None) -> bool:
        """Wait for the child leg of a submitted registration.

        :raise PartiallyRegistered:
            The ticket terminated in another status than ``REDEEMED``, or the wait timed out
        """
        try:
            status = self.tracker.wait_for_status(attempt.handle, policy)
        except TimeoutError as e:
            raise PartiallyRegistered(f"Child router leg of {attempt.tokens} did not complete in time", attempt, self.tracker.status(attempt.handle)) from e

        if status != CrossDomainMessageStatus.REDEEMED:
            raise PartiallyRegistered(f"Parent router has {attempt.tokens} registered but the child router leg ended in {status.name}", attempt, status)

        pending = self.get_pending(source_router, attempt.tokens, attempt.gateways)
        if pending:
            raise PartiallyRegistered(f"Child leg redeemed but tokens {[attempt.tokens[i] for i in pending]} are not mapped on both routers", attempt, status)

        logger.info("Registered %s -> %s on both routers", attempt.tokens, attempt.gateways)
        return True

    def register_custom_token(
        self,
        token_owner: HexAddress,
        parent_token: HexAddress,
        child_token: HexAddress,
        custom_gateway: HexAddress,
        router: HexAddress,
        policy: WaitPolicy | None = None,
    ) -> list[CrossDomainMessageHandle]:
        """Register a custom token pair through ``registerTokenOnL2()`` of the parent token.

        One transaction produces two retryables, correlated by index:

        - #0 the custom gateway ``registerTokenFromL1()``

        - #1 the router ``setGateway()``

        :param token_owner:
            Signer calling the parent token, also receives fee refunds

        :return:
            Handles of both redeemed messages

        :raise MessageNotRedeemed:
            Either message did not reach ``REDEEMED``
        """
        child_gateway = self.parent.call(CounterpartGateway(custom_gateway))
        child_router = self.parent.call(CounterpartGateway(router))
        margin = self.margins.for_call(GasMarginKind.token_registration)

        gateway_request = CrossDomainCallRequest(
            source=custom_gateway,
            destination=child_gateway,
            call_value=0,
            excess_fee_refund_address=token_owner,
            call_value_refund_address=token_owner,
            payload=RegisterTokenFromParent(child_gateway, (parent_token,), (child_token,)),
        )
        router_request = CrossDomainCallRequest(
            source=router,
            destination=child_router,
            call_value=0,
            excess_fee_refund_address=token_owner,
            call_value_refund_address=token_owner,
            payload=SetGatewayOnChild(child_router, (parent_token,), (child_gateway,)),
        )

        gateway_quote = self.estimator.revalidate(self.estimator.estimate(gateway_request).with_gas_margin(margin))
        router_quote = self.estimator.revalidate(self.estimator.estimate(router_request).with_gas_margin(margin))

        # Both tickets share one bid
        gas_price_bid = max(gateway_quote.max_fee_per_gas, router_quote.max_fee_per_gas)
        value_for_gateway = gateway_quote.submission_cost + gateway_quote.gas_limit * gas_price_bid
        value_for_router = router_quote.submission_cost + router_quote.gas_limit * gas_price_bid

        fee_token = self.get_fee_token()
        if fee_token:
            self.parent.transact_and_confirm(token_owner, Approve(fee_token, parent_token, value_for_gateway + value_for_router), description="fee token approval for custom token registration")
            value = 0
        else:
            value = value_for_gateway + value_for_router

        call = RegisterTokenOnChild(
            parent_token,
            child_token=child_token,
            max_submission_cost_for_gateway=gateway_quote.submission_cost,
            max_submission_cost_for_router=router_quote.submission_cost,
            max_gas_for_gateway=gateway_quote.gas_limit,
            max_gas_for_router=router_quote.gas_limit,
            gas_price_bid=gas_price_bid,
            value_for_gateway=value_for_gateway,
            value_for_router=value_for_router,
            credit_back_address=token_owner,
        )
        outcome = self.parent.transact_and_confirm(token_owner, call, value=value, description="custom token registration")
        handles = self.tracker.wait_for_redeemed(outcome, policy, expected_count=2)
        logger.info("Custom token %s registered to child token %s through %s", parent_token, child_token, custom_gateway)
        return handles
