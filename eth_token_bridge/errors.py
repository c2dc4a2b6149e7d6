"""Bridge orchestration errors.

Every failure the orchestration layer can report is a subclass of :py:class:`BridgeError`.
Errors are raised to the immediate caller and never converted to default values.

Waiting past a :py:class:`eth_token_bridge.config.WaitPolicy` deadline raises the builtin
:py:class:`TimeoutError`, because abandoning a wait does not cancel the underlying message.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from eth_token_bridge.calls import CrossDomainCallRequest
    from eth_token_bridge.endpoint import TransactionOutcome
    from eth_token_bridge.fees import RetryableFeeQuote
    from eth_token_bridge.messages import CrossDomainMessageHandle, CrossDomainMessageStatus
    from eth_token_bridge.migration import MigrationPhase
    from eth_token_bridge.registration import RegistrationAttempt


class BridgeError(Exception):
    """Base class for all bridge orchestration errors."""


class TransientNetworkError(BridgeError):
    """RPC timeout or unavailable node.

    Endpoints retry these with :py:class:`eth_token_bridge.config.BackoffPolicy`
    and only raise once the policy is exhausted.
    """


class EstimationFailed(BridgeError):
    """The destination call reverts in the dry run.

    The request must be corrected. Retrying the same request is pointless.
    """

    def __init__(self, msg: str, revert_data: bytes | str | None = None, request: "CrossDomainCallRequest | None" = None):
        super().__init__(msg)
        self.revert_data = revert_data
        self.request = request


class GasEstimationStale(BridgeError):
    """A fee quote is too old or the child base fee moved above it.

    Re-estimate before submitting.
    """

    def __init__(self, msg: str, quote: "RetryableFeeQuote"):
        super().__init__(msg)
        self.quote = quote


class MessageNotRedeemed(BridgeError):
    """A cross-domain message reached a terminal status other than ``REDEEMED``."""

    def __init__(self, msg: str, handle: "CrossDomainMessageHandle", status: "CrossDomainMessageStatus"):
        super().__init__(msg)
        self.handle = handle
        self.status = status


class MessageExpired(MessageNotRedeemed):
    """A retryable sat un-redeemed past its lifetime.

    Requires manual intervention: the protocol refunds the escrowed funds,
    we never resubmit on the caller's behalf.
    """


class PartiallyRegistered(BridgeError):
    """The parent router has the mapping but the child router does not.

    Recoverable by re-issuing the same registration.
    Pass :py:attr:`attempt` back to :py:meth:`eth_token_bridge.registration.RegistrationCoordinator.register_gateway`
    so a still pending ticket is redeemed instead of paid for twice.
    """

    def __init__(self, msg: str, attempt: "RegistrationAttempt", status: "CrossDomainMessageStatus | None" = None):
        super().__init__(msg)
        self.attempt = attempt
        self.status = status


class InvariantViolation(BridgeError):
    """Migration step attempted out of order or with the backing invariant broken.

    Fatal. The transition is never forced.
    """

    def __init__(self, msg: str, phase: "MigrationPhase | None" = None):
        super().__init__(msg)
        self.phase = phase


class TransactionFailed(BridgeError):
    """A submitted transaction reverted on-chain."""

    def __init__(self, msg: str, outcome: "TransactionOutcome | None" = None, revert_reason: str | None = None):
        super().__init__(msg)
        self.outcome = outcome
        self.revert_reason = revert_reason


class DeploymentIncomplete(BridgeError):
    """A provisioning run aborted.

    Already deployed contracts are left in place as idle artifacts.
    """

    def __init__(self, msg: str, step: str, last_confirmed_step: str | None = None):
        super().__init__(msg)
        #: The step that failed
        self.step = step
        #: The furthest step that was confirmed before the failure
        self.last_confirmed_step = last_confirmed_step
