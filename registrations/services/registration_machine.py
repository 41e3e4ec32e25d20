"""
Registration State Machine for one (user, event) pair.

    UNKNOWN -> NOT_REGISTERED | REGISTERED | WAITLISTED       (load)
    NOT_REGISTERED -> SUBMITTING -> REGISTERED | WAITLISTED   (register)
    REGISTERED | WAITLISTED -> SUBMITTING -> NOT_REGISTERED   (confirmed cancel)

WAITLISTED only occurs for offerings whose store supports a waitlist.
SUBMITTING serializes actions: a second request while one is in flight is a
no-op. The remote procedures are the only authority on whether an action
succeeded; local guards (sold out, not signed in) only spare a round-trip.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..schemas.registration import (
    CapacitySnapshot,
    NoticeKind,
    RegistrationNotice,
    RegistrationState,
    RegistrationStatus,
    RegistrationView,
)
from .capacity_counter import CapacityCounter
from .errors import (
    AlreadyRegisteredError,
    GenericActionError,
    NotAuthenticatedError,
    ProcedureError,
    RegistrationError,
    TransientFetchError,
    classify_procedure_error,
)
from .registration_store import AuthSession, RegistrationStore

logger = logging.getLogger(__name__)

Procedure = Callable[[str, AuthSession], Awaitable[Any]]


@dataclass(frozen=True)
class SessionContext:
    """Who is acting (if anyone) and the store they act through."""

    store: RegistrationStore
    auth: Optional[AuthSession] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.auth.user_id if self.auth else None


REGISTERED_NOTICE = RegistrationNotice(
    kind=NoticeKind.REGISTERED,
    title="Registration confirmed!",
    message="You're on the list. See you there.",
)

WAITLISTED_NOTICE = RegistrationNotice(
    kind=NoticeKind.WAITLISTED,
    title="You're on the waitlist",
    message="We'll let you know automatically if a spot opens up.",
)

CANCELLED_NOTICE = RegistrationNotice(
    kind=NoticeKind.CANCELLED,
    title="Registration cancelled",
    message="Done. Thanks for letting us know.",
)

SPOT_RELEASED_NOTICE = RegistrationNotice(
    kind=NoticeKind.CANCELLED,
    title="Registration cancelled",
    message="Your spot went to the next person on the waitlist.",
)


def _state_for(status: Optional[RegistrationStatus]) -> RegistrationState:
    if status is None:
        return RegistrationState.NOT_REGISTERED
    if status is RegistrationStatus.WAITLIST:
        return RegistrationState.WAITLISTED
    return RegistrationState.REGISTERED


class RegistrationMachine:
    """Tracks and changes one user's registration for one event."""

    def __init__(
        self,
        event_id: str,
        context: SessionContext,
        counter: CapacityCounter,
        submit_timeout: Optional[float] = 15.0
    ):
        self.event_id = event_id
        self.context = context
        self.counter = counter
        self.submit_timeout = submit_timeout
        self.state = RegistrationState.UNKNOWN
        # Bumped on every settled transition so stale reconciliations are dropped.
        self._version = 0

    def _settle(self, state: RegistrationState):
        if state != self.state:
            logger.info(
                f"Registration of {self.context.user_id or 'anonymous'} for "
                f"{self.context.store.kind.value} {self.event_id}: {self.state.value} -> {state.value}"
            )
        self.state = state
        self._version += 1

    async def load(self) -> RegistrationState:
        """
        Determine whether the user is registered.

        Raises:
            TransientFetchError: The state stays UNKNOWN.
        """
        if self.context.auth is None:
            self._settle(RegistrationState.NOT_REGISTERED)
            return self.state

        status = await self.context.store.registration_status(self.event_id, self.context.user_id)
        if self.state is not RegistrationState.SUBMITTING:
            self._settle(_state_for(status))
        return self.state

    async def reconcile(self, count: Optional[int] = None):
        """
        Re-derive the registration from the store after a change notification,
        e.g. when the user registered from another device or was promoted off
        the waitlist. Never raises.
        """
        if self.context.auth is None or self.state is RegistrationState.SUBMITTING:
            return

        version = self._version
        try:
            status = await self.context.store.registration_status(self.event_id, self.context.user_id)
        except TransientFetchError:
            logger.warning(f"Could not reconcile registration for event {self.event_id}")
            return

        if version != self._version or self.state is RegistrationState.SUBMITTING:
            return
        self._settle(_state_for(status))

    async def register(self) -> Optional[RegistrationNotice]:
        """
        Register the user for the event.

        Returns:
            A confirmation or waitlist notice, or None when the request was a
            no-op (already submitting, not in NOT_REGISTERED, or sold out
            without a waitlist).

        Raises:
            NotAuthenticatedError, EventFullError, AlreadyRegisteredError,
            EventNotFoundError, GenericActionError
        """
        if self.state is RegistrationState.SUBMITTING:
            logger.debug(f"Ignoring register for event {self.event_id}: request in flight")
            return None
        if self.context.auth is None:
            raise NotAuthenticatedError()
        if self.state is not RegistrationState.NOT_REGISTERED:
            return None

        basis = self.counter.snapshot(self.event_id)
        if basis is not None and basis.fully_booked and not self.context.store.supports_waitlist:
            logger.debug(f"Ignoring register for event {self.event_id}: sold out")
            return None

        try:
            status = await self._submit(self.context.store.register, RegistrationState.NOT_REGISTERED)
        except AlreadyRegisteredError:
            self._settle(RegistrationState.REGISTERED)
            raise

        if status is RegistrationStatus.WAITLIST:
            self._settle(RegistrationState.WAITLISTED)
            return WAITLISTED_NOTICE

        self._settle(RegistrationState.REGISTERED)
        self._bump(+1, basis)
        return REGISTERED_NOTICE

    async def cancel(self, confirmed: bool = False) -> Optional[RegistrationNotice]:
        """
        Cancel the user's registration or leave the waitlist.

        Args:
            confirmed: Whether the user accepted the confirmation dialog.
                Without it no remote call is made.

        Returns:
            A cancellation notice, or None when the request was a no-op.

        Raises:
            NotAuthenticatedError, GenericActionError
        """
        if self.state not in (RegistrationState.REGISTERED, RegistrationState.WAITLISTED):
            return None
        if not confirmed:
            logger.info(f"Cancellation for event {self.event_id} dismissed")
            return None
        if self.context.auth is None:
            raise NotAuthenticatedError()

        held_spot = self.state is RegistrationState.REGISTERED
        basis = self.counter.snapshot(self.event_id)
        promoted = await self._submit(self.context.store.cancel, self.state)

        self._settle(RegistrationState.NOT_REGISTERED)
        if promoted:
            # The freed spot was handed on; the count is unchanged.
            logger.info(f"Spot for event {self.event_id} went to waitlisted user {promoted}")
            return SPOT_RELEASED_NOTICE
        if held_spot:
            self._bump(-1, basis)
        return CANCELLED_NOTICE

    def _bump(self, delta: int, basis: Optional[CapacitySnapshot]):
        if basis is not None:
            self.counter.bump_optimistic(self.event_id, delta, basis=basis)

    async def _submit(self, procedure: Procedure, fallback: RegistrationState):
        """
        Run a remote procedure in SUBMITTING and return its result. Any
        failure, including cancellation of the caller, settles back on
        `fallback`; failures are re-raised as a RegistrationError.
        """
        name = getattr(procedure, "__name__", "procedure")
        self.state = RegistrationState.SUBMITTING
        try:
            return await asyncio.wait_for(
                procedure(self.event_id, self.context.auth),
                timeout=self.submit_timeout
            )
        except asyncio.CancelledError:
            logger.warning(f"{name} for event {self.event_id} was cancelled")
            self._settle(fallback)
            raise
        except asyncio.TimeoutError as e:
            logger.warning(f"{name} for event {self.event_id} timed out")
            self._settle(fallback)
            raise GenericActionError(timed_out=True) from e
        except ProcedureError as e:
            self._settle(fallback)
            raise classify_procedure_error(e) from e
        except RegistrationError:
            self._settle(fallback)
            raise
        except Exception as e:
            logger.error(f"{name} for event {self.event_id} failed: {e}")
            self._settle(fallback)
            raise GenericActionError() from e

    def view(self) -> RegistrationView:
        """Read model for the registration control."""
        snapshot = self.counter.snapshot(self.event_id)
        sold_out = snapshot is not None and snapshot.fully_booked
        waitlist = self.context.store.supports_waitlist

        if self.state is RegistrationState.SUBMITTING:
            action = "processing"
        elif self.state is RegistrationState.UNKNOWN:
            action = "loading"
        elif self.state is RegistrationState.REGISTERED:
            action = "cancel"
        elif self.state is RegistrationState.WAITLISTED:
            action = "leave_waitlist"
        elif sold_out:
            action = "join_waitlist" if waitlist else "sold_out"
        else:
            action = "register"

        return RegistrationView(
            kind=self.context.store.kind,
            event_id=self.event_id,
            state=self.state,
            snapshot=snapshot,
            can_register=self.state is RegistrationState.NOT_REGISTERED and (waitlist or not sold_out),
            can_cancel=(
                self.state in (RegistrationState.REGISTERED, RegistrationState.WAITLISTED)
                and self.context.auth is not None
            ),
            action=action,
        )
