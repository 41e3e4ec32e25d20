"""
Test configuration and fixtures for Registrations Service.
Provides in-memory stores that behave like the hosted backend's tables
and remote procedures, with hooks for injecting failures and delays.
"""

import pytest
import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from registrations.schemas.registration import (
    EventRecord,
    OfferingKind,
    RegistrationRecord,
    RegistrationStatus,
)
from registrations.services.change_feed import ChangeFeed
from registrations.services.capacity_counter import CapacityCounter
from registrations.services.errors import ProcedureError, TransientFetchError
from registrations.services.event_publisher import (
    ACTIVITIES_TABLE,
    ACTIVITY_REGISTRATIONS_TABLE,
    change_channel,
)
from registrations.services.registration_store import (
    AuthSession,
    RegistrationStore,
    REGISTER_PROCEDURE,
    CANCEL_PROCEDURE,
    REGISTER_ACTIVITY_PROCEDURE,
    CANCEL_ACTIVITY_PROCEDURE,
)


class FakeRegistrationStore(RegistrationStore):
    """
    In-memory RegistrationStore for events.

    The procedures enforce capacity and uniqueness the way the backend does.
    When a feed is attached, every successful write is announced on it.
    """

    register_procedure = REGISTER_PROCEDURE
    cancel_procedure = CANCEL_PROCEDURE

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed
        self.events: Dict[str, EventRecord] = {}
        self.registrations: Dict[str, Set[str]] = {}
        self.waitlists: Dict[str, List[str]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.count_calls = 0
        self.fail_reads = False
        self.procedure_error: Optional[str] = None
        self.gate: Optional[asyncio.Event] = None

    def add_event(self, event_id: str, capacity: Optional[int] = None, enrolled: int = 0, title: str = "Yoga at dawn"):
        self.events[event_id] = EventRecord(id=event_id, title=title, capacity=capacity)
        self.registrations[event_id] = {f"guest-{i}" for i in range(enrolled)}

    def add_registration(self, event_id: str, user_id: str, announce: bool = True):
        """Simulate a registration made elsewhere, e.g. from another device."""
        self.registrations.setdefault(event_id, set()).add(user_id)
        if announce:
            self.announce(self.registration_table, event_id, "INSERT")

    def remove_registration(self, event_id: str, user_id: str, announce: bool = True):
        self.registrations.get(event_id, set()).discard(user_id)
        if announce:
            self.announce(self.registration_table, event_id, "DELETE")

    def add_to_waitlist(self, event_id: str, user_id: str, announce: bool = True):
        self.waitlists.setdefault(event_id, []).append(user_id)
        if announce:
            self.announce(self.registration_table, event_id, "INSERT")

    def announce(self, table: str, event_id: str, change_type: str) -> int:
        if self.feed is None:
            return 0
        return self.feed.dispatch(
            change_channel(self.feed.channel_prefix, table, event_id),
            {"type": change_type, "table": table, "event_id": event_id}
        )

    def _check_reads(self):
        if self.fail_reads:
            raise TransientFetchError()

    async def count_registrations(self, event_id: str) -> int:
        self.count_calls += 1
        self._check_reads()
        return len(self.registrations.get(event_id, ()))

    async def get_event(self, event_id: str) -> Optional[EventRecord]:
        self._check_reads()
        return self.events.get(event_id)

    async def registration_status(self, event_id: str, user_id: str) -> Optional[RegistrationStatus]:
        self._check_reads()
        if user_id in self.registrations.get(event_id, ()):
            return RegistrationStatus.CONFIRMED
        if user_id in self.waitlists.get(event_id, ()):
            return RegistrationStatus.WAITLIST
        return None

    async def _enter_procedure(self, procedure: str, event_id: str, session: AuthSession):
        self.calls.append((procedure, event_id, session.user_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.procedure_error is not None:
            raise ProcedureError(procedure, self.procedure_error)
        if event_id not in self.events:
            raise ProcedureError(procedure, "event_not_found")

    async def register(self, event_id: str, session: AuthSession) -> RegistrationStatus:
        await self._enter_procedure(self.register_procedure, event_id, session)
        enrolled = self.registrations.setdefault(event_id, set())
        if session.user_id in enrolled or session.user_id in self.waitlists.get(event_id, ()):
            raise ProcedureError(self.register_procedure, "already_registered")
        capacity = self.events[event_id].capacity
        if capacity and len(enrolled) >= capacity:
            if not self.supports_waitlist:
                raise ProcedureError(self.register_procedure, "event_full")
            self.add_to_waitlist(event_id, session.user_id)
            return RegistrationStatus.WAITLIST
        self.add_registration(event_id, session.user_id)
        return RegistrationStatus.CONFIRMED

    async def cancel(self, event_id: str, session: AuthSession) -> Optional[str]:
        await self._enter_procedure(self.cancel_procedure, event_id, session)
        waitlist = self.waitlists.get(event_id, [])
        if session.user_id in waitlist:
            waitlist.remove(session.user_id)
            self.announce(self.registration_table, event_id, "DELETE")
            return None

        held_spot = session.user_id in self.registrations.get(event_id, ())
        self.remove_registration(event_id, session.user_id)
        if held_spot and waitlist:
            promoted = waitlist.pop(0)
            self.registrations[event_id].add(promoted)
            self.announce(self.registration_table, event_id, "UPDATE")
            return promoted
        return None

    async def list_user_registrations(self, user_id: str) -> List[RegistrationRecord]:
        self._check_reads()
        records = []
        for event_id in sorted(self.events):
            if user_id in self.registrations.get(event_id, ()):
                status = RegistrationStatus.CONFIRMED
            elif user_id in self.waitlists.get(event_id, ()):
                status = RegistrationStatus.WAITLIST
            else:
                continue
            records.append(RegistrationRecord(
                id=f"{event_id}:{user_id}",
                kind=self.kind,
                event_id=event_id,
                status=status,
                created_at=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
                event=self.events[event_id],
            ))
        return records


class FakeActivityStore(FakeRegistrationStore):
    """In-memory activities: a full activity waitlists new registrations."""

    kind = OfferingKind.ACTIVITY
    offering_table = ACTIVITIES_TABLE
    registration_table = ACTIVITY_REGISTRATIONS_TABLE
    supports_waitlist = True

    register_procedure = REGISTER_ACTIVITY_PROCEDURE
    cancel_procedure = CANCEL_ACTIVITY_PROCEDURE


@pytest.fixture
def feed():
    """In-process change feed."""
    return ChangeFeed()


@pytest.fixture
def store(feed):
    """Fake event store announcing its writes on the feed."""
    return FakeRegistrationStore(feed)


@pytest.fixture
def counter(store, feed):
    """Capacity counter over the fake event store."""
    return CapacityCounter(store, feed)


@pytest.fixture
def activity_store(feed):
    """Fake activity store announcing its writes on the feed."""
    return FakeActivityStore(feed)


@pytest.fixture
def activity_counter(activity_store, feed):
    """Capacity counter over the fake activity store."""
    return CapacityCounter(activity_store, feed)


@pytest.fixture
def alice():
    """A signed-in user."""
    return AuthSession(user_id="alice", claims={"sub": "alice", "email": "alice@example.com"})


@pytest.fixture
def bob():
    """Another signed-in user."""
    return AuthSession(user_id="bob", claims={"sub": "bob"})


@pytest.fixture
def settle():
    """Let background reconciliation loops run until they are idle."""
    async def _settle(rounds: int = 20):
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle
