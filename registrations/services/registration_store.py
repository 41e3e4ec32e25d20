"""
Remote data store boundary for Registrations Service.

RegistrationStore is the interface the capacity counter and the state machine
depend on. One store serves one kind of offering. SqlRegistrationStore talks
to the hosted Postgres backend for events, SqlActivityStore for activities:
plain queries for reads, and the backend's remote procedures for every write.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select, func, or_, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import selectinload

from ..db.database import DatabaseManager
from ..models.registration import Activity, ActivityRegistration, Event, EventRegistration
from ..schemas.registration import (
    EventRecord,
    OfferingKind,
    RegistrationRecord,
    RegistrationStatus,
)
from .errors import ProcedureError, TransientFetchError
from .event_publisher import (
    ACTIVITIES_TABLE,
    ACTIVITY_REGISTRATIONS_TABLE,
    EVENTS_TABLE,
    REGISTRATIONS_TABLE,
    RegistrationEventPublisher,
)

logger = logging.getLogger(__name__)

REGISTER_PROCEDURE = "register_for_event"
CANCEL_PROCEDURE = "cancel_event_registration"
REGISTER_ACTIVITY_PROCEDURE = "register_activity"
CANCEL_ACTIVITY_PROCEDURE = "cancel_activity"


@dataclass(frozen=True)
class AuthSession:
    """The signed-in caller as asserted by the auth provider."""

    user_id: str
    claims: Dict[str, Any] = field(default_factory=dict)


class RegistrationStore(ABC):
    """Interface to the remote tables and procedures of one kind of offering."""

    kind = OfferingKind.EVENT
    offering_table = EVENTS_TABLE
    registration_table = REGISTRATIONS_TABLE
    # Whether a full offering queues new registrations instead of rejecting them.
    supports_waitlist = False

    @abstractmethod
    async def count_registrations(self, event_id: str) -> int:
        """Count registrations holding a spot, without fetching rows."""
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[EventRecord]:
        """Return the offering, or None if it does not exist."""
        ...

    @abstractmethod
    async def registration_status(self, event_id: str, user_id: str) -> Optional[RegistrationStatus]:
        """The user's active registration status, or None if not registered."""
        ...

    @abstractmethod
    async def register(self, event_id: str, session: AuthSession) -> RegistrationStatus:
        """Invoke the atomic register procedure. Raises ProcedureError."""
        ...

    @abstractmethod
    async def cancel(self, event_id: str, session: AuthSession) -> Optional[str]:
        """
        Invoke the atomic cancel procedure. Raises ProcedureError.

        Returns:
            The user promoted from the waitlist into the freed spot, if any
        """
        ...

    @abstractmethod
    async def list_user_registrations(self, user_id: str) -> List[RegistrationRecord]:
        """The user's active registrations, soonest first."""
        ...


class SqlRegistrationStore(RegistrationStore):
    """Events over async SQLAlchemy, publishing changes to Redis."""

    register_procedure = REGISTER_PROCEDURE
    cancel_procedure = CANCEL_PROCEDURE
    procedure_argument = "eid"

    def __init__(
        self,
        db_manager: DatabaseManager,
        publisher: Optional[RegistrationEventPublisher] = None
    ):
        self.db_manager = db_manager
        self.publisher = publisher

    async def count_registrations(self, event_id: str) -> int:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(EventRegistration)
                    .where(EventRegistration.event_id == event_id)
                )
                return int(result.scalar_one())
        except Exception as e:
            logger.warning(f"Failed to count registrations for event {event_id}: {e}")
            raise TransientFetchError() from e

    async def get_event(self, event_id: str) -> Optional[EventRecord]:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(select(Event).where(Event.id == event_id))
                event = result.scalar_one_or_none()
                return EventRecord.model_validate(event) if event else None
        except Exception as e:
            logger.warning(f"Failed to fetch event {event_id}: {e}")
            raise TransientFetchError() from e

    async def registration_status(self, event_id: str, user_id: str) -> Optional[RegistrationStatus]:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    select(EventRegistration.id)
                    .where(
                        EventRegistration.event_id == event_id,
                        EventRegistration.user_id == user_id
                    )
                    .limit(1)
                )
                found = result.scalar_one_or_none() is not None
        except Exception as e:
            logger.warning(f"Failed to check registration of user {user_id} for event {event_id}: {e}")
            raise TransientFetchError() from e

        return RegistrationStatus.CONFIRMED if found else None

    async def list_user_registrations(self, user_id: str) -> List[RegistrationRecord]:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    select(EventRegistration)
                    .join(Event, Event.id == EventRegistration.event_id)
                    .options(selectinload(EventRegistration.event))
                    .where(EventRegistration.user_id == user_id)
                    .order_by(Event.start_at.asc().nulls_last(), EventRegistration.created_at.desc())
                )
                return [RegistrationRecord.model_validate(row) for row in result.scalars().all()]
        except Exception as e:
            logger.warning(f"Failed to list registrations of user {user_id}: {e}")
            raise TransientFetchError() from e

    async def _call_procedure(self, procedure: str, event_id: str, auth: AuthSession) -> Optional[Mapping]:
        """
        Run a remote procedure as the caller and return its first result row.

        The caller's JWT claims are set for the transaction so the procedure
        identifies the user the same way it does for requests from the website.
        """
        claims = dict(auth.claims)
        claims.setdefault("sub", auth.user_id)
        claims.setdefault("role", "authenticated")
        argument = self.procedure_argument

        try:
            async with self.db_manager.get_async_session() as session:
                await session.execute(
                    text("SELECT set_config('request.jwt.claims', :claims, true)"),
                    {"claims": json.dumps(claims)}
                )
                result = await session.execute(
                    text(f"SELECT * FROM {procedure}({argument} => :{argument})"),
                    {argument: event_id}
                )
                return result.mappings().first()
        except DBAPIError as e:
            message = str(e.orig) if e.orig is not None else str(e)
            logger.error(f"{procedure} failed for {self.kind.value} {event_id}: {message}")
            raise ProcedureError(procedure, message) from e
        except Exception as e:
            logger.error(f"{procedure} failed for {self.kind.value} {event_id}: {e}")
            raise ProcedureError(procedure, str(e)) from e

    async def register(self, event_id: str, session: AuthSession) -> RegistrationStatus:
        row = await self._call_procedure(self.register_procedure, event_id, session)
        if self.publisher:
            await self.publisher.publish_registration_created(event_id, table=self.registration_table)
        return self._registration_status(row)

    async def cancel(self, event_id: str, session: AuthSession) -> Optional[str]:
        row = await self._call_procedure(self.cancel_procedure, event_id, session)
        if self.publisher:
            await self.publisher.publish_registration_deleted(event_id, table=self.registration_table)
        return self._promoted_user(row)

    def _registration_status(self, row: Optional[Mapping]) -> RegistrationStatus:
        # register_for_event returns void; success always means a spot.
        return RegistrationStatus.CONFIRMED

    def _promoted_user(self, row: Optional[Mapping]) -> Optional[str]:
        return None


class SqlActivityStore(SqlRegistrationStore):
    """
    Activities over async SQLAlchemy.

    Registrations live in `registrations` with a status; a full activity
    places new registrations on its waitlist, and a cancelled spot is handed
    to the first waitlisted user by the cancel procedure.
    """

    kind = OfferingKind.ACTIVITY
    offering_table = ACTIVITIES_TABLE
    registration_table = ACTIVITY_REGISTRATIONS_TABLE
    supports_waitlist = True

    register_procedure = REGISTER_ACTIVITY_PROCEDURE
    cancel_procedure = CANCEL_ACTIVITY_PROCEDURE
    procedure_argument = "p_activity_id"

    @staticmethod
    def _active():
        return or_(
            ActivityRegistration.status.is_(None),
            ActivityRegistration.status.in_([
                RegistrationStatus.CONFIRMED.value, RegistrationStatus.WAITLIST.value
            ])
        )

    @staticmethod
    def _holding_spot():
        return or_(
            ActivityRegistration.status.is_(None),
            ActivityRegistration.status == RegistrationStatus.CONFIRMED.value
        )

    async def count_registrations(self, event_id: str) -> int:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(ActivityRegistration)
                    .where(ActivityRegistration.activity_id == event_id, self._holding_spot())
                )
                return int(result.scalar_one())
        except Exception as e:
            logger.warning(f"Failed to count registrations for activity {event_id}: {e}")
            raise TransientFetchError() from e

    async def get_event(self, event_id: str) -> Optional[EventRecord]:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    select(Activity).where(Activity.id == event_id, Activity.is_published.is_(True))
                )
                activity = result.scalar_one_or_none()
                return EventRecord.model_validate(activity) if activity else None
        except Exception as e:
            logger.warning(f"Failed to fetch activity {event_id}: {e}")
            raise TransientFetchError() from e

    async def registration_status(self, event_id: str, user_id: str) -> Optional[RegistrationStatus]:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    select(ActivityRegistration.status)
                    .where(
                        ActivityRegistration.activity_id == event_id,
                        ActivityRegistration.user_id == user_id,
                        self._active()
                    )
                    .order_by(ActivityRegistration.created_at.desc())
                    .limit(1)
                )
                row = result.first()
        except Exception as e:
            logger.warning(f"Failed to check registration of user {user_id} for activity {event_id}: {e}")
            raise TransientFetchError() from e

        if row is None:
            return None
        return _parse_status(row[0])

    async def list_user_registrations(self, user_id: str) -> List[RegistrationRecord]:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    select(ActivityRegistration)
                    .join(Activity, Activity.id == ActivityRegistration.activity_id)
                    .options(selectinload(ActivityRegistration.activity))
                    .where(ActivityRegistration.user_id == user_id, self._active())
                    .order_by(Activity.start_at.asc().nulls_last(), ActivityRegistration.created_at.desc())
                )
                rows = result.scalars().all()
                return [
                    RegistrationRecord(
                        id=row.id,
                        kind=OfferingKind.ACTIVITY,
                        event_id=row.activity_id,
                        status=_parse_status(row.status),
                        created_at=row.created_at,
                        event=EventRecord.model_validate(row.activity) if row.activity else None,
                    )
                    for row in rows
                ]
        except Exception as e:
            logger.warning(f"Failed to list activity registrations of user {user_id}: {e}")
            raise TransientFetchError() from e

    def _registration_status(self, row: Optional[Mapping]) -> RegistrationStatus:
        return _parse_status(row.get("status") if row else None)

    def _promoted_user(self, row: Optional[Mapping]) -> Optional[str]:
        promoted = row.get("promoted_user") if row else None
        return str(promoted) if promoted else None


def _parse_status(value: Optional[str]) -> RegistrationStatus:
    """NULL and unrecognised statuses of an active row count as confirmed."""
    if value and str(value).lower() == RegistrationStatus.WAITLIST.value:
        return RegistrationStatus.WAITLIST
    return RegistrationStatus.CONFIRMED
