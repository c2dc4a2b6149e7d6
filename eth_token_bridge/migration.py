"""Bridged asset migration to native issuance.

Moves a gateway from "locked collateral backs the wrapped supply" to
"the issuer mints natively on the child chain", the USDC bridged-to-native upgrade path.

Phases only move forward::

    ACTIVE
      --pause_deposits-->      DEPOSITS_PAUSED
      --pause_withdrawals-->   WITHDRAWALS_PAUSED
      --transfer_ownership-->  OWNERSHIP_TRANSFERRED
      --release_collateral-->  COLLATERAL_RELEASED

The phase is always derived from chain state, never kept only in memory,
so a migration interrupted by a crash resumes with :py:meth:`MigrationStateMachine.run`.

Until ``COLLATERAL_RELEASED`` the locked collateral on the parent chain must cover
the wrapped supply on the child chain. Releasing the collateral retires that invariant.

Example:

.. code-block:: python

    machine = MigrationStateMachine(
        parent,
        child,
        parent_gateway=usdc.parent_gateway,
        child_gateway=usdc.child_gateway,
        parent_token=usdc.parent_token,
        child_token=usdc.child_token,
        parent_admin=admin,
        child_admin=admin,
        new_owner=issuer,
    )
    machine.run()
"""

import enum
import logging
from dataclasses import dataclass

from eth_typing import HexAddress

from eth_token_bridge.calls import (
    AddMinter,
    BalanceOf,
    BurnLockedCollateral,
    DepositsPaused,
    GetGateway,
    IsMinter,
    Owner,
    PauseDeposits,
    PauseWithdrawals,
    SetOwner,
    TotalSupply,
    WithdrawalsPaused,
)
from eth_token_bridge.endpoint import ChainEndpoint
from eth_token_bridge.errors import InvariantViolation
from eth_token_bridge.registration import RegistrationCoordinator
from eth_token_bridge.utils import same_address

logger = logging.getLogger(__name__)


class MigrationPhase(enum.IntEnum):
    """Migration progress, ordered."""

    ACTIVE = 0
    DEPOSITS_PAUSED = 1
    WITHDRAWALS_PAUSED = 2
    OWNERSHIP_TRANSFERRED = 3
    COLLATERAL_RELEASED = 4


@dataclass(slots=True, frozen=True)
class MigrationSnapshot:
    """Migration relevant chain state at one point of time."""

    #: Parent gateway ``depositsPaused()``
    deposits_paused: bool

    #: Child gateway ``withdrawalsPaused()``
    withdrawals_paused: bool

    #: Owner of the parent gateway
    gateway_owner: HexAddress

    #: Owner of the parent token
    token_owner: HexAddress

    #: Can the parent gateway burn the parent token
    gateway_is_minter: bool

    #: Parent token balance of the parent gateway
    locked_collateral: int

    #: Total supply of the child token
    wrapped_supply: int

    def is_ownership_transferred(self, new_owner: HexAddress) -> bool:
        return same_address(self.gateway_owner, new_owner) and same_address(self.token_owner, new_owner)

    def get_phase(self, new_owner: HexAddress) -> MigrationPhase:
        """Derive the phase from the flags and the owners."""
        if self.is_ownership_transferred(new_owner):
            if self.gateway_is_minter and self.locked_collateral == 0:
                return MigrationPhase.COLLATERAL_RELEASED
            return MigrationPhase.OWNERSHIP_TRANSFERRED

        if self.deposits_paused and self.withdrawals_paused:
            return MigrationPhase.WITHDRAWALS_PAUSED

        if self.deposits_paused:
            return MigrationPhase.DEPOSITS_PAUSED

        # Withdrawals alone paused does not move the phase
        return MigrationPhase.ACTIVE

    def is_backed(self) -> bool:
        """Locked collateral covers the wrapped supply."""
        return self.locked_collateral >= self.wrapped_supply


class MigrationStateMachine:
    """Sequences the migration of one bridged asset.

    Every transition re-reads the chain first, checks its preconditions,
    and is a no-op if the chain already shows it done.
    """

    def __init__(
        self,
        parent: ChainEndpoint,
        child: ChainEndpoint,
        parent_gateway: HexAddress,
        child_gateway: HexAddress,
        parent_token: HexAddress,
        child_token: HexAddress,
        parent_admin: HexAddress,
        child_admin: HexAddress,
        new_owner: HexAddress,
        coordinator: RegistrationCoordinator | None = None,
        router: HexAddress | None = None,
    ):
        """
        :param parent_gateway:
            Parent gateway holding the locked collateral

        :param child_gateway:
            Child gateway minting the wrapped token

        :param parent_admin:
            Signer owning the parent gateway and the parent token

        :param child_admin:
            Signer owning the child gateway

        :param new_owner:
            Parent chain signer that takes over the issuance

        :param coordinator:
            Needed for :py:meth:`ensure_gateway_registered`.
            With ``router`` set, pausing deposits also checks the child router has the mapping.

        :param router:
            Parent gateway router. If given, pausing deposits checks the gateway is registered for the token.
        """
        self.parent = parent
        self.child = child
        self.parent_gateway = parent_gateway
        self.child_gateway = child_gateway
        self.parent_token = parent_token
        self.child_token = child_token
        self.parent_admin = parent_admin
        self.child_admin = child_admin
        self.new_owner = new_owner
        self.coordinator = coordinator
        self.router = router
        self._highest_phase = MigrationPhase.ACTIVE

    def read_snapshot(self) -> MigrationSnapshot:
        """Read the migration state from both chains."""
        parent = self.parent
        return MigrationSnapshot(
            deposits_paused=parent.call(DepositsPaused(self.parent_gateway)),
            withdrawals_paused=self.child.call(WithdrawalsPaused(self.child_gateway)),
            gateway_owner=parent.call(Owner(self.parent_gateway)),
            token_owner=parent.call(Owner(self.parent_token)),
            gateway_is_minter=parent.call(IsMinter(self.parent_token, self.parent_gateway)),
            locked_collateral=parent.call(BalanceOf(self.parent_token, self.parent_gateway)),
            wrapped_supply=self.child.call(TotalSupply(self.child_token)),
        )

    def _observe(self, snapshot: MigrationSnapshot) -> MigrationPhase:
        phase = snapshot.get_phase(self.new_owner)
        if phase < self._highest_phase:
            logger.warning("Chain shows migration phase %s, already seen %s, keeping the latter", phase.name, self._highest_phase.name)
            return self._highest_phase
        self._highest_phase = phase
        return phase

    def current_phase(self) -> MigrationPhase:
        """Phase as read from the chain. Never lower than a phase seen before."""
        return self._observe(self.read_snapshot())

    def check_backing(self, snapshot: MigrationSnapshot, phase: MigrationPhase):
        """:raise InvariantViolation: Wrapped supply exceeds the locked collateral before the release"""
        if phase < MigrationPhase.COLLATERAL_RELEASED and not snapshot.is_backed():
            raise InvariantViolation(
                f"Locked collateral {snapshot.locked_collateral:,} does not cover wrapped supply {snapshot.wrapped_supply:,} in phase {phase.name}",
                phase,
            )

    def _prepare(self) -> tuple[MigrationSnapshot, MigrationPhase]:
        snapshot = self.read_snapshot()
        phase = self._observe(snapshot)
        self.check_backing(snapshot, phase)
        return snapshot, phase

    def _advance(self, before: MigrationPhase):
        after = self.current_phase()
        if after != before:
            logger.info("Migration phase %s -> %s", before.name, after.name)
        return after

    def ensure_gateway_registered(self, router_owner: HexAddress, router: HexAddress, executor: HexAddress | None = None) -> bool:
        """Register the migration gateway for the token on both routers."""
        assert self.coordinator is not None, "Gateway registration needs a RegistrationCoordinator"
        self.router = router
        return self.coordinator.register_gateway(router_owner, router, [self.parent_token], [self.parent_gateway], executor=executor)

    def pause_deposits(self) -> MigrationPhase:
        """Stop new collateral from arriving.

        :raise InvariantViolation:
            The admin does not own the parent gateway, or the gateway is not registered for the token on both routers
        """
        snapshot, phase = self._prepare()
        if snapshot.deposits_paused:
            logger.info("Deposits already paused on %s", self.parent_gateway)
            return phase

        if not same_address(snapshot.gateway_owner, self.parent_admin):
            raise InvariantViolation(f"{self.parent_admin} cannot pause deposits, parent gateway is owned by {snapshot.gateway_owner}", phase)

        if self.router is not None:
            registered = self.parent.call(GetGateway(self.router, self.parent_token))
            if not same_address(registered, self.parent_gateway):
                raise InvariantViolation(f"Router {self.router} maps {self.parent_token} to {registered}, not to the migrating gateway {self.parent_gateway}", phase)

            # The parent leg alone does not route withdrawals, the child router must agree too
            if self.coordinator is not None and self.coordinator.get_pending(self.router, [self.parent_token], [self.parent_gateway]):
                raise InvariantViolation(f"{self.parent_token} registration with {self.parent_gateway} has not reached the child router yet", phase)

        self.parent.transact_and_confirm(self.parent_admin, PauseDeposits(self.parent_gateway), description="deposit pause")
        return self._advance(phase)

    def pause_withdrawals(self) -> MigrationPhase:
        """Stop the child gateway from burning wrapped tokens for withdrawals.

        Pausing withdrawals before deposits is allowed but not recommended.

        :raise InvariantViolation:
            The admin does not own the child gateway
        """
        snapshot, phase = self._prepare()
        if snapshot.withdrawals_paused:
            logger.info("Withdrawals already paused on %s", self.child_gateway)
            return phase

        if not snapshot.deposits_paused:
            logger.warning("Pausing withdrawals on %s while deposits are still open, deposits should be paused first", self.child_gateway)

        child_gateway_owner = self.child.call(Owner(self.child_gateway))
        if not same_address(child_gateway_owner, self.child_admin):
            raise InvariantViolation(f"{self.child_admin} cannot pause withdrawals, child gateway is owned by {child_gateway_owner}", phase)

        self.child.transact_and_confirm(self.child_admin, PauseWithdrawals(self.child_gateway), description="withdrawal pause")
        return self._advance(phase)

    def transfer_ownership(self) -> MigrationPhase:
        """Hand the parent token and the parent gateway to the new owner.

        :raise InvariantViolation:
            Either pause flag is not set
        """
        snapshot, phase = self._prepare()
        if not (snapshot.deposits_paused and snapshot.withdrawals_paused):
            raise InvariantViolation(
                f"Ownership transfer needs both chains paused, deposits paused: {snapshot.deposits_paused}, withdrawals paused: {snapshot.withdrawals_paused}",
                phase,
            )

        if snapshot.is_ownership_transferred(self.new_owner):
            logger.info("Ownership already transferred to %s", self.new_owner)
            return phase

        if not same_address(snapshot.token_owner, self.new_owner):
            self.parent.transact_and_confirm(self.parent_admin, SetOwner(self.parent_token, self.new_owner), description="token ownership transfer")

        if not same_address(snapshot.gateway_owner, self.new_owner):
            self.parent.transact_and_confirm(self.parent_admin, SetOwner(self.parent_gateway, self.new_owner), description="gateway ownership transfer")

        return self._advance(phase)

    def release_collateral(self) -> MigrationPhase:
        """Burn the collateral locked in the parent gateway.

        The new owner makes the gateway a minter of the parent token if needed, then burns.
        After this the wrapped supply is no longer backed by the parent gateway.

        :raise InvariantViolation:
            Ownership not transferred or either pause flag is not set
        """
        snapshot, phase = self._prepare()
        if phase == MigrationPhase.COLLATERAL_RELEASED:
            logger.info("Collateral already released")
            return phase

        if phase < MigrationPhase.OWNERSHIP_TRANSFERRED:
            raise InvariantViolation(f"Collateral release needs the ownership transferred to {self.new_owner}, phase is {phase.name}", phase)

        if not (snapshot.deposits_paused and snapshot.withdrawals_paused):
            raise InvariantViolation("Collateral release needs deposits and withdrawals paused", phase)

        if not snapshot.gateway_is_minter:
            self.parent.transact_and_confirm(self.new_owner, AddMinter(self.parent_token, self.parent_gateway), description="gateway minter grant")

        logger.info("Burning %d locked collateral, wrapped supply is %d", snapshot.locked_collateral, snapshot.wrapped_supply)
        self.parent.transact_and_confirm(self.new_owner, BurnLockedCollateral(self.parent_gateway), description="locked collateral burn")

        after = self.read_snapshot()
        if after.locked_collateral != 0:
            raise InvariantViolation(f"{after.locked_collateral} collateral still locked after the burn", phase)

        return self._advance(phase)

    def run(self) -> MigrationPhase:
        """Drive the migration from the phase the chain shows to the end."""
        phase = self.current_phase()
        logger.info("Starting migration of %s from phase %s", self.parent_token, phase.name)

        transitions = {
            MigrationPhase.ACTIVE: self.pause_deposits,
            MigrationPhase.DEPOSITS_PAUSED: self.pause_withdrawals,
            MigrationPhase.WITHDRAWALS_PAUSED: self.transfer_ownership,
            MigrationPhase.OWNERSHIP_TRANSFERRED: self.release_collateral,
        }

        while phase != MigrationPhase.COLLATERAL_RELEASED:
            next_phase = transitions[phase]()
            assert next_phase > phase, f"Migration did not advance from {phase.name}"
            phase = next_phase

        logger.info("Migration of %s complete", self.parent_token)
        return phase
