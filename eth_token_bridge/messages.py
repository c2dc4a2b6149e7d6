"""Cross-domain message tracking.

Resolve the retryables an originating parent transaction produced and
follow them to a terminal status on the child chain.

- The tracker is a read-only polling observer, apart from the explicit :py:meth:`MessageTracker.redeem`

- Every wait is bounded by :py:class:`eth_token_bridge.config.WaitPolicy`

- Abandoning a wait does not cancel the message: it can still be redeemed later by anyone

Example:

.. code-block:: python

    tracker = MessageTracker(parent, child, wait=WaitPolicy(poll_interval=5, timeout=600))
    handles = tracker.messages_of(outcome)
    statuses = tracker.wait_for_all(handles)
    for handle in handles:
        tracker.require_redeemed(handle, statuses[handle.index])
"""

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from eth_typing import HexAddress
from hexbytes import HexBytes

from eth_token_bridge.calls import RedeemRetryable
from eth_token_bridge.config import BackoffPolicy, WaitPolicy
from eth_token_bridge.constants import ARB_RETRYABLE_TX
from eth_token_bridge.endpoint import ChainEndpoint, TransactionOutcome
from eth_token_bridge.errors import MessageExpired, MessageNotRedeemed, TransientNetworkError
from eth_token_bridge.retry import retry_transient

logger = logging.getLogger(__name__)


class CrossDomainMessageStatus(enum.Enum):
    """Lifecycle of a retryable.

    ``NOT_YET_CREATED -> FUNDS_DEPOSITED | CREATION_FAILED``,
    ``FUNDS_DEPOSITED -> REDEEMED | EXPIRED``.
    """

    #: Not yet seen on the child chain
    NOT_YET_CREATED = "NOT_YET_CREATED"

    #: The ticket creation failed, e.g. the deposit did not cover the submission cost
    CREATION_FAILED = "CREATION_FAILED"

    #: Ticket exists, the auto-redeem did not happen or failed.
    #: Waits for a manual redeem until it expires.
    FUNDS_DEPOSITED = "FUNDS_DEPOSITED_ON_CHILD"

    #: The child call was executed successfully
    REDEEMED = "REDEEMED"

    #: Lifetime passed without a successful redeem
    EXPIRED = "EXPIRED"

    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_move_to(self, other: "CrossDomainMessageStatus") -> bool:
        """Is ``other`` reachable from this status.

        Polls can skip over intermediate statuses,
        e.g. ``NOT_YET_CREATED`` straight to ``REDEEMED`` after an auto-redeem.
        """
        return other in STATUS_SUCCESSORS[self]


#: Statuses that never change
TERMINAL_STATUSES = frozenset(
    {
        CrossDomainMessageStatus.CREATION_FAILED,
        CrossDomainMessageStatus.REDEEMED,
        CrossDomainMessageStatus.EXPIRED,
    }
)

#: Status -> statuses a later poll may report
STATUS_SUCCESSORS = {
    CrossDomainMessageStatus.NOT_YET_CREATED: frozenset(
        {
            CrossDomainMessageStatus.CREATION_FAILED,
            CrossDomainMessageStatus.FUNDS_DEPOSITED,
            CrossDomainMessageStatus.REDEEMED,
            CrossDomainMessageStatus.EXPIRED,
        }
    ),
    CrossDomainMessageStatus.FUNDS_DEPOSITED: frozenset({CrossDomainMessageStatus.REDEEMED, CrossDomainMessageStatus.EXPIRED}),
    CrossDomainMessageStatus.CREATION_FAILED: frozenset(),
    CrossDomainMessageStatus.REDEEMED: frozenset(),
    CrossDomainMessageStatus.EXPIRED: frozenset(),
}


@dataclass(slots=True, frozen=True)
class CrossDomainMessageHandle:
    """One retryable produced by an originating transaction."""

    #: Ticket id, also the hash of the ticket creation transaction on the child chain
    creation_id: HexBytes

    #: Position among the messages of the originating transaction.
    #:
    #: Results are correlated by this, never by completion order.
    index: int

    #: Parent chain transaction that created the message
    originating_tx_hash: HexBytes

    parent_chain_id: int

    child_chain_id: int

    #: Inbox message number
    message_number: int | None = None

    def __repr__(self):
        return f"<Message #{self.index} ticket:{self.creation_id.hex()} from tx:{self.originating_tx_hash.hex()}>"


class MessageTracker:
    """Polls cross-domain message status.

    Safe to poll several handles from several threads.
    """

    def __init__(
        self,
        parent: ChainEndpoint,
        child: ChainEndpoint,
        wait: WaitPolicy | None = None,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        :param wait:
            Default wait policy for :py:meth:`wait_for_status`

        :param backoff:
            Retry policy for a single status read

        :param sleep:
            Sleep function, replaceable in tests
        """
        self.parent = parent
        self.child = child
        self.wait = wait or WaitPolicy()
        self.backoff = backoff or BackoffPolicy()
        self.sleep = sleep
        self._last_seen: dict[CrossDomainMessageHandle, CrossDomainMessageStatus] = {}
        self._lock = threading.Lock()

    def messages_of(self, outcome: TransactionOutcome) -> list[CrossDomainMessageHandle]:
        """Resolve the retryables an originating transaction produced.

        :return:
            Handles ordered by index
        """
        handles = retry_transient(
            lambda: self.parent.get_retryable_messages(outcome, self.child.chain_id),
            self.backoff,
            description=f"reading messages of {outcome.tx_hash.hex()}",
            sleep=self.sleep,
        )
        handles = sorted(handles, key=lambda h: h.index)
        logger.info("Transaction %s produced %d cross-domain messages", outcome.tx_hash.hex(), len(handles))
        return handles

    def status(self, handle: CrossDomainMessageHandle) -> CrossDomainMessageStatus:
        """Current status of a message.

        Only moves along the lifecycle: an answer not reachable from the
        status already seen, e.g. from a lagging node, is ignored.
        """
        observed = retry_transient(
            lambda: self.child.get_retryable_status(handle),
            self.backoff,
            description=f"reading status of {handle}",
            sleep=self.sleep,
        )

        with self._lock:
            previous = self._last_seen.get(handle)
            if previous is not None and observed != previous and not previous.can_move_to(observed):
                logger.debug("Ignoring status %s for %s, already seen %s", observed.name, handle, previous.name)
                return previous
            self._last_seen[handle] = observed
        return observed

    def wait_for_status(self, handle: CrossDomainMessageHandle, policy: WaitPolicy | None = None) -> CrossDomainMessageStatus:
        """Block until the message reaches a terminal status.

        A non-``REDEEMED`` terminal status is returned, not retried.
        Use :py:meth:`require_redeemed` to turn it into an exception.

        :param policy:
            Poll interval and timeout. Defaults to the tracker policy.

        :raise TimeoutError:
            The message did not reach a terminal status in time.
            The message itself lives on.
        """
        status = self._poll_until(handle, policy or self.wait, lambda s: s.is_terminal(), "a terminal status")
        if status == CrossDomainMessageStatus.REDEEMED:
            logger.info("%s reached %s", handle, status.name)
        else:
            logger.warning("%s reached %s, manual intervention needed", handle, status.name)
        return status

    def wait_for_creation(self, handle: CrossDomainMessageHandle, policy: WaitPolicy | None = None) -> CrossDomainMessageStatus:
        """Block until the ticket shows up on the child chain.

        :return:
            Any status other than ``NOT_YET_CREATED``

        :raise TimeoutError:
            The ticket was not created in time
        """
        return self._poll_until(handle, policy or self.wait, lambda s: s != CrossDomainMessageStatus.NOT_YET_CREATED, "the child chain")

    def _poll_until(self, handle: CrossDomainMessageHandle, policy: WaitPolicy, done: Callable[[CrossDomainMessageStatus], bool], what: str) -> CrossDomainMessageStatus:
        started_at = time.monotonic()
        deadline = started_at + policy.timeout

        # Bump our verbosiveness levels for the last part of the wait
        verbose_at = started_at + policy.timeout * 0.8

        attempts = 0
        last_status = None
        while True:
            try:
                last_status = self.status(handle)
            except TransientNetworkError as e:
                logger.warning("Could not read status of %s, still waiting: %s", handle, e)

            if last_status is not None and done(last_status):
                logger.debug("%s is %s after %.1fs", handle, last_status.name, time.monotonic() - started_at)
                return last_status

            attempts += 1
            now = time.monotonic()
            if (policy.max_attempts is not None and attempts >= policy.max_attempts) or now >= deadline:
                raise TimeoutError(f"{handle} did not reach {what} in {policy.timeout}s ({attempts} polls), last status {last_status.name if last_status else '-'}")

            log_level = logging.WARNING if now > verbose_at else logging.DEBUG
            logger.log(log_level, "%s is %s, polling again in %.1fs", handle, last_status.name if last_status else "unknown", policy.poll_interval)
            self.sleep(min(policy.poll_interval, deadline - now))

    def wait_for_all(self, handles: list[CrossDomainMessageHandle], policy: WaitPolicy | None = None) -> dict[int, CrossDomainMessageStatus]:
        """Wait for several messages concurrently.

        :return:
            Map of handle index -> terminal status

        :raise TimeoutError:
            Any of the messages timed out
        """
        if not handles:
            return {}

        with ThreadPoolExecutor(max_workers=len(handles), thread_name_prefix="message-tracker") as executor:
            futures = {h.index: executor.submit(self.wait_for_status, h, policy) for h in handles}
            return {index: future.result() for index, future in futures.items()}

    def require_redeemed(self, handle: CrossDomainMessageHandle, status: CrossDomainMessageStatus):
        """Raise unless ``status`` is ``REDEEMED``.

        :raise MessageExpired:
            The ticket expired, funds are refunded by the protocol

        :raise MessageNotRedeemed:
            Any other status
        """
        if status == CrossDomainMessageStatus.REDEEMED:
            return

        if status == CrossDomainMessageStatus.EXPIRED:
            raise MessageExpired(f"{handle} expired before it was redeemed", handle, status)

        raise MessageNotRedeemed(f"{handle} ended in {status.name}, expected REDEEMED", handle, status)

    def wait_for_redeemed(self, outcome: TransactionOutcome, policy: WaitPolicy | None = None, expected_count: int | None = None) -> list[CrossDomainMessageHandle]:
        """Wait until every message of a transaction is redeemed.

        :param expected_count:
            Assert the transaction produced this many messages

        :return:
            Handles ordered by index

        :raise MessageNotRedeemed:
            Any message terminated in another status
        """
        handles = self.messages_of(outcome)
        if expected_count is not None:
            assert len(handles) == expected_count, f"Expected {expected_count} messages from {outcome.tx_hash.hex()}, got {len(handles)}"

        statuses = self.wait_for_all(handles, policy)
        for handle in handles:
            self.require_redeemed(handle, statuses[handle.index])
        return handles

    def redeem(self, sender: HexAddress, handle: CrossDomainMessageHandle) -> TransactionOutcome | None:
        """Manually redeem a ticket sitting in ``FUNDS_DEPOSITED``.

        Cheaper than paying for a new ticket. Anyone can redeem.

        :return:
            Redeem transaction outcome, or ``None`` if someone already redeemed the ticket

        :raise MessageNotRedeemed:
            The ticket cannot be redeemed any more
        """
        status = self.status(handle)
        if status == CrossDomainMessageStatus.REDEEMED:
            logger.info("%s was already redeemed", handle)
            return None

        if status != CrossDomainMessageStatus.FUNDS_DEPOSITED:
            self.require_redeemed(handle, status)

        outcome = self.child.transact_and_confirm(sender, RedeemRetryable(ARB_RETRYABLE_TX, bytes(handle.creation_id)), description=f"redeem of {handle}")
        return outcome
