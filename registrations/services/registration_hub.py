"""
Registration Hub for Registrations Service.

Per-process registry for one kind of offering: one CapacityCounter shared by
every viewer and one RegistrationMachine per (user, event), each reconciled by
the counter's change notifications for its event. The registry is bounded;
the least recently used machines are released first. Everything runs on the
application's event loop.
"""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from ..schemas.registration import (
    CapacitySnapshot,
    OfferingKind,
    RegistrationNotice,
    RegistrationRecord,
    RegistrationState,
    RegistrationView,
)
from .capacity_counter import CapacityCounter, CounterSubscription
from .errors import EventNotFoundError, NotAuthenticatedError, TransientFetchError
from .registration_machine import RegistrationMachine, SessionContext
from .registration_store import AuthSession, RegistrationStore

logger = logging.getLogger(__name__)

MachineKey = Tuple[Optional[str], str]


class RegistrationHub:
    """Entry point used by the API for reads and actions."""

    def __init__(
        self,
        store: RegistrationStore,
        counter: CapacityCounter,
        submit_timeout: Optional[float] = 15.0,
        max_machines: int = 5000
    ):
        self.store = store
        self.counter = counter
        self.submit_timeout = submit_timeout
        self.max_machines = max_machines
        self._machines: "OrderedDict[MachineKey, RegistrationMachine]" = OrderedDict()
        self._subscriptions: Dict[MachineKey, CounterSubscription] = {}

    @property
    def kind(self) -> OfferingKind:
        return self.store.kind

    def machine_count(self) -> int:
        return len(self._machines)

    async def _ensure_counted(self, event_id: str):
        """
        Count the event if its count is unknown.

        Raises:
            EventNotFoundError: The event does not exist.
        """
        if self.counter.snapshot(event_id) is not None:
            return
        try:
            await self.counter.initialize(event_id)
        except TransientFetchError:
            logger.warning(f"Count for {self.kind.value} {event_id} unknown, will retry on next change")

    async def machine_for(self, event_id: str, auth: Optional[AuthSession]) -> RegistrationMachine:
        """
        Get or create the loaded machine for the caller and event.

        Raises:
            EventNotFoundError: Nothing is tracked for an event that does not exist.
        """
        key = (auth.user_id if auth else None, event_id)
        try:
            await self._ensure_counted(event_id)
        except EventNotFoundError:
            self._release_event(event_id)
            raise

        machine = self._machines.get(key)
        if machine is None:
            machine = RegistrationMachine(
                event_id,
                SessionContext(store=self.store, auth=auth),
                self.counter,
                submit_timeout=self.submit_timeout
            )
            self._machines[key] = machine
            self._subscriptions[key] = self.counter.subscribe(event_id, machine.reconcile)
            self._evict_least_recent()
        else:
            self._machines.move_to_end(key)
            if auth is not None:
                # Keep forwarding the caller's latest token claims.
                machine.context = SessionContext(store=self.store, auth=auth)

        if machine.state is RegistrationState.UNKNOWN:
            try:
                await machine.load()
            except TransientFetchError:
                logger.warning(f"Registration status for {self.kind.value} {event_id} unknown")
        return machine

    def _evict_least_recent(self):
        while len(self._machines) > self.max_machines:
            (user_id, event_id), _ = next(iter(self._machines.items()))
            logger.debug(f"Evicting registration of {user_id or 'anonymous'} for {self.kind.value} {event_id}")
            self.release(event_id, user_id)

    def _release_event(self, event_id: str):
        for user_id, key_event_id in [key for key in self._machines if key[1] == event_id]:
            self.release(key_event_id, user_id)

    async def get_snapshot(self, event_id: str) -> Optional[CapacitySnapshot]:
        machine = await self.machine_for(event_id, None)
        return machine.counter.snapshot(event_id)

    async def get_view(self, event_id: str, auth: Optional[AuthSession]) -> RegistrationView:
        machine = await self.machine_for(event_id, auth)
        return machine.view()

    async def register(
        self, event_id: str, auth: Optional[AuthSession]
    ) -> Tuple[Optional[RegistrationNotice], RegistrationView]:
        machine = await self.machine_for(event_id, auth)
        notice = await machine.register()
        return notice, machine.view()

    async def cancel(
        self, event_id: str, auth: Optional[AuthSession], confirmed: bool
    ) -> Tuple[Optional[RegistrationNotice], RegistrationView]:
        machine = await self.machine_for(event_id, auth)
        notice = await machine.cancel(confirmed=confirmed)
        return notice, machine.view()

    async def list_user_registrations(self, auth: Optional[AuthSession]) -> List[RegistrationRecord]:
        if auth is None:
            raise NotAuthenticatedError()
        return await self.store.list_user_registrations(auth.user_id)

    def release(self, event_id: str, user_id: Optional[str]):
        """Forget a machine, e.g. when its viewer navigated away."""
        key = (user_id, event_id)
        subscription = self._subscriptions.pop(key, None)
        if subscription:
            subscription.unsubscribe()
        self._machines.pop(key, None)

    async def close(self):
        for subscription in self._subscriptions.values():
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._machines.clear()
        await self.counter.close()
        logger.info(f"Registration hub for {self.kind.value} registrations closed")
