"""
Table mappings for the hosted backend's events, activities and their registrations.
The schema is owned by the backend; these mappings are used for queries only.
"""

from sqlalchemy import Boolean, Column, String, DateTime, Integer, Numeric, ForeignKey, Index
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Event(Base):
    """A one-off event with its own registration list."""

    __tablename__ = "events"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    start_at = Column(DateTime(timezone=True), nullable=True)
    capacity = Column(Integer, nullable=True)  # NULL or 0 means not capacity-limited
    price = Column(Numeric(10, 2), nullable=True)
    location = Column(String, nullable=True)

    registrations = relationship("EventRegistration", back_populates="event")

    def __repr__(self):
        return f"<Event(id='{self.id}', title='{self.title}', capacity={self.capacity})>"


class EventRegistration(Base):
    """Join record between a user and an event."""

    __tablename__ = "event_registrations"

    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    event = relationship("Event", back_populates="registrations")

    __table_args__ = (
        Index("idx_event_registrations_event", "event_id"),
        Index("idx_event_registrations_user_event", "user_id", "event_id", unique=True),
    )

    def __repr__(self):
        return f"<EventRegistration(event_id='{self.event_id}', user_id='{self.user_id}')>"


class Activity(Base):
    """A recurring-program activity. Only published activities are offered."""

    __tablename__ = "activities"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    start_at = Column(DateTime(timezone=True), nullable=True)
    capacity = Column(Integer, nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    location = Column(String, nullable=True)
    is_published = Column(Boolean, nullable=False, default=False)

    registrations = relationship("ActivityRegistration", back_populates="activity")

    def __repr__(self):
        return f"<Activity(id='{self.id}', title='{self.title}', capacity={self.capacity})>"


class ActivityRegistration(Base):
    """
    A user's place in an activity.
    `status` is confirmed, waitlist or canceled; NULL rows predate the column
    and count as confirmed.
    """

    __tablename__ = "registrations"

    id = Column(String, primary_key=True)
    activity_id = Column(String, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    status = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    activity = relationship("Activity", back_populates="registrations")

    __table_args__ = (
        Index("idx_registrations_activity_status", "activity_id", "status"),
        Index("idx_registrations_user", "user_id"),
    )

    def __repr__(self):
        return (
            f"<ActivityRegistration(activity_id='{self.activity_id}', "
            f"user_id='{self.user_id}', status='{self.status}')>"
        )
