"""
Pydantic schemas for Registrations Service.
Read models shared by the services and the HTTP layer.

Events and activities share these models. For an activity, `event_id` holds
the activity id, matching the payload of its change notifications.
"""

from pydantic import BaseModel, Field, computed_field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum


def remaining_spots(capacity: Optional[int], enrolled: int) -> Optional[int]:
    """Spots left, or None when the event is not capacity-limited."""
    if not capacity or capacity <= 0:
        return None
    return max(0, capacity - enrolled)


def is_fully_booked(capacity: Optional[int], enrolled: int) -> bool:
    """An event without a positive capacity is never fully booked."""
    return bool(capacity) and capacity > 0 and enrolled >= capacity


class OfferingKind(str, Enum):
    """What a registration is for."""
    EVENT = "event"
    ACTIVITY = "activity"


class OfferingCollection(str, Enum):
    """URL segment naming a kind of offering."""
    EVENTS = "events"
    ACTIVITIES = "activities"

    @property
    def kind(self) -> OfferingKind:
        if self is OfferingCollection.ACTIVITIES:
            return OfferingKind.ACTIVITY
        return OfferingKind.EVENT


class RegistrationStatus(str, Enum):
    """Status of a stored registration row."""
    CONFIRMED = "confirmed"
    WAITLIST = "waitlist"
    CANCELED = "canceled"


class RegistrationState(str, Enum):
    """Registration status of one user for one event."""
    UNKNOWN = "unknown"
    NOT_REGISTERED = "not_registered"
    REGISTERED = "registered"
    WAITLISTED = "waitlisted"
    SUBMITTING = "submitting"


class ChangeType(str, Enum):
    """Row change kinds carried by change notifications."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeNotification(BaseModel):
    """Something changed in `table` for `event_id`; consumers must re-query."""

    type: ChangeType
    table: str
    event_id: str


class CapacitySnapshot(BaseModel):
    """Locally held (enrolled, capacity, remaining) tuple for one event."""

    event_id: str
    enrolled: int = Field(..., ge=0)
    capacity: Optional[int] = Field(None, ge=0)
    provisional: bool = Field(False, description="Optimistic value awaiting the next authoritative count")

    class Config:
        frozen = True

    @computed_field
    @property
    def remaining(self) -> Optional[int]:
        return remaining_spots(self.capacity, self.enrolled)

    @computed_field
    @property
    def fully_booked(self) -> bool:
        return is_fully_booked(self.capacity, self.enrolled)

    def with_enrolled(self, enrolled: int, provisional: bool) -> "CapacitySnapshot":
        return self.model_copy(update={"enrolled": max(0, enrolled), "provisional": provisional})


class EventRecord(BaseModel):
    """Event or activity attributes this service reads."""

    id: str
    title: str
    start_at: Optional[datetime] = None
    capacity: Optional[int] = None
    price: Optional[Decimal] = None
    location: Optional[str] = None

    class Config:
        from_attributes = True


class RegistrationRecord(BaseModel):
    """One of the current user's registrations."""

    id: str
    kind: OfferingKind = OfferingKind.EVENT
    event_id: str
    status: RegistrationStatus = RegistrationStatus.CONFIRMED
    created_at: datetime
    event: Optional[EventRecord] = None

    class Config:
        from_attributes = True


class NoticeKind(str, Enum):
    REGISTERED = "registered"
    WAITLISTED = "waitlisted"
    CANCELLED = "cancelled"


class RegistrationNotice(BaseModel):
    """User-visible confirmation of a completed action."""

    kind: NoticeKind
    title: str
    message: str


class RegistrationView(BaseModel):
    """What a presentation layer needs to render the registration control."""

    kind: OfferingKind = OfferingKind.EVENT
    event_id: str
    state: RegistrationState
    snapshot: Optional[CapacitySnapshot] = Field(None, description="None while the count is unknown")
    can_register: bool
    can_cancel: bool
    action: str = Field(
        ...,
        description="register, join_waitlist, cancel, leave_waitlist, sold_out, processing or loading"
    )


# Request schemas
class CancelRequest(BaseModel):
    """Cancellation is destructive and must be explicitly confirmed."""

    confirm: bool = Field(False, description="True once the user accepted the confirmation dialog")


# Response schemas
class RegistrationActionResponse(BaseModel):
    """Result of a register or cancel request."""

    performed: bool = Field(..., description="False when the request was a no-op")
    notice: Optional[RegistrationNotice] = None
    view: RegistrationView


class RegistrationListResponse(BaseModel):
    items: List[RegistrationRecord]
    total: int


class ErrorResponse(BaseModel):
    """Error envelope returned by the API."""

    error_code: str = Field(..., description="Error code")
    error_message: str = Field(..., description="User-facing error message")
    retryable: bool = Field(False, description="Whether trying again may succeed")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=datetime.now, description="Health check timestamp")
    version: str = Field(..., description="Service version")
    database: str = Field(..., description="Database connection status")
    redis: str = Field(..., description="Redis connection status")
