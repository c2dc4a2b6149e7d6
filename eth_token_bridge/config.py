"""Bridge orchestration configuration.

Every component takes its tunables as explicit dataclasses at construction.
Nothing here reads environment variables, that is left to scripts.

Example:

.. code-block:: python

    from eth_token_bridge.config import BridgeConfig, WaitPolicy

    config = BridgeConfig(wait=WaitPolicy(poll_interval=2.0, timeout=600.0))
    tracker = MessageTracker(parent, child, wait=config.wait)
"""

import enum
import time
from dataclasses import dataclass, field
from typing import Iterator

from eth_typing import HexAddress


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Retry policy for transient RPC failures."""

    #: How many times we try in total, including the first attempt
    max_attempts: int = 5

    #: Sleep before the second attempt, seconds
    initial_delay: float = 0.5

    #: Upper bound for a single sleep, seconds
    max_delay: float = 10.0

    #: Exponential growth of the sleep
    multiplier: float = 2.0

    def __post_init__(self):
        assert self.max_attempts >= 1, f"max_attempts must be positive, got {self.max_attempts}"
        assert self.initial_delay >= 0
        assert self.multiplier >= 1

    def delays(self) -> Iterator[float]:
        """Sleep durations between attempts.

        Yields ``max_attempts - 1`` values.
        """
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.multiplier


@dataclass(slots=True, frozen=True)
class WaitPolicy:
    """How long and how often we poll a cross-domain message.

    An unbounded wait is not expressible: ``timeout`` must be finite.
    """

    #: Seconds between status polls
    poll_interval: float = 1.0

    #: Seconds until we give up waiting and raise :py:class:`TimeoutError`
    timeout: float = 900.0

    #: Optional cap on the number of polls
    max_attempts: int | None = None

    def __post_init__(self):
        assert self.timeout > 0 and self.timeout != float("inf"), f"WaitPolicy needs a finite positive timeout, got {self.timeout}"
        assert self.poll_interval >= 0
        assert self.max_attempts is None or self.max_attempts >= 1

    def deadline(self) -> float:
        """Monotonic clock deadline for a wait started now."""
        return time.monotonic() + self.timeout


@dataclass(slots=True, frozen=True)
class FeeConfig:
    """Retryable fee estimation parameters.

    Defaults follow the Arbitrum SDK ``ParentToChildMessageGasEstimator``.
    """

    #: Submission cost bump over the inbox formula, percent
    submission_fee_percent_increase: int = 300

    #: ``maxFeePerGas`` bump over the current child gas price, percent
    gas_price_percent_increase: int = 500

    #: Gas limit bump over the dry run result, percent.
    #:
    #: Call sites apply :py:class:`GasMargins` on top of this.
    gas_limit_percent_increase: int = 0

    #: Floor for the estimated gas limit
    min_gas_limit: int = 0

    #: Quote older than this many seconds is stale
    quote_max_age: float = 60.0

    #: Deposit value we claim to have during the dry run,
    #: so that the estimation does not fail for lack of funds
    estimation_deposit: int = 10**18


class GasMarginKind(enum.Enum):
    """Call sites with their own gas limit safety multiplier."""

    standard_deposit = "standard_deposit"
    custom_deposit = "custom_deposit"
    gateway_registration = "gateway_registration"
    token_registration = "token_registration"
    deployment = "deployment"


@dataclass(slots=True, frozen=True)
class GasMargins:
    """Gas limit safety multipliers per call type.

    The multipliers are not derived from a formula.
    Deposits have a predictable code path so a large margin buys fewer manual redeems.
    """

    standard_deposit: int = 60
    custom_deposit: int = 40
    gateway_registration: int = 2
    token_registration: int = 2
    deployment: int = 1

    def for_call(self, kind: GasMarginKind) -> int:
        multiplier = getattr(self, kind.value)
        assert multiplier >= 1, f"Gas margin for {kind} must be at least 1, got {multiplier}"
        return multiplier


@dataclass(slots=True, frozen=True)
class DeploymentConfig:
    """Addresses and limits for a token bridge provisioning run."""

    #: Parent chain token bridge creator
    token_bridge_creator: HexAddress

    #: Rollup inbox on the parent chain
    inbox: HexAddress

    #: Rollup contract on the parent chain
    rollup: HexAddress

    #: Who will own the bridge contracts
    rollup_owner: HexAddress

    #: Gas limit for the retryable that deploys the child contracts
    max_gas_for_contracts: int = 20_000_000

    #: Creation code of the child factory.
    #:
    #: Used to price the fixed size factory deployment retryable.
    child_factory_bytecode: bytes = b""

    #: Creation code of a WETH9 style contract.
    #:
    #: Deployed on the parent chain when no WETH override is given.
    weth_bytecode: bytes = b""


@dataclass(slots=True, frozen=True)
class BridgeConfig:
    """All orchestration tunables in one place."""

    fees: FeeConfig = field(default_factory=FeeConfig)
    margins: GasMargins = field(default_factory=GasMargins)
    wait: WaitPolicy = field(default_factory=WaitPolicy)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
