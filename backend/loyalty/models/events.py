from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Event(db.Model):
    """
    Campus event with a budget of points to pay out to attendees.

    POINT POOL: `points` is the allocation, split into `points_remain`
    (still awardable) and `points_awarded` (already paid out). The split is
    enforced by a CHECK constraint as well as by the award code path.

    Deletable only while unpublished and before any points are awarded.
    """
    __tablename__ = "events"
    __table_args__ = (
        db.CheckConstraint("points = points_remain + points_awarded", name="ck_events_point_pool"),
        db.CheckConstraint("points_remain >= 0", name="ck_events_points_remain_nonneg"),
        db.Index("ix_events_published_start", "published", "start_time"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    location = db.Column(db.String(255), nullable=False)

    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)

    capacity = db.Column(db.Integer, nullable=True)  # None = unlimited

    points = db.Column(db.Integer, nullable=False)
    points_remain = db.Column(db.Integer, nullable=False)
    points_awarded = db.Column(db.Integer, nullable=False, default=0)

    published = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    organizers = db.relationship("EventOrganizer", backref="event", lazy=True, cascade="all, delete-orphan")
    guests = db.relationship("EventGuest", backref="event", lazy=True, cascade="all, delete-orphan")

    def has_started(self, now) -> bool:
        return self.start_time <= now

    def has_ended(self, now) -> bool:
        return self.end_time < now

    def is_organizer(self, user_id: int) -> bool:
        return any(o.user_id == user_id for o in self.organizers)

    def guest_record(self, user_id: int):
        return next((g for g in self.guests if g.user_id == user_id), None)

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and len(self.guests) >= self.capacity

    def to_dict(self, include_guests: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "location": self.location,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "capacity": self.capacity,
            "points": self.points,
            "points_remain": self.points_remain,
            "points_awarded": self.points_awarded,
            "published": self.published,
            "organizers": [o.user.to_summary() for o in self.organizers],
            "num_guests": len(self.guests),
            "created_at": to_utc_z(self.created_at),
        }
        if include_guests:
            data["guests"] = [g.to_dict() for g in self.guests]
        return data


class EventOrganizer(db.Model):
    __tablename__ = "event_organizers"
    __table_args__ = (
        db.UniqueConstraint("event_id", "user_id", name="uq_event_organizers_event_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    user = db.relationship("User")


class EventGuest(db.Model):
    """
    Registered attendee.

    Only guests with a confirmation timestamp are eligible for event points.
    """
    __tablename__ = "event_guests"
    __table_args__ = (
        db.UniqueConstraint("event_id", "user_id", name="uq_event_guests_event_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    user = db.relationship("User")

    def to_dict(self) -> dict:
        data = self.user.to_summary()
        data["confirmed_at"] = to_utc_z(self.confirmed_at) if self.confirmed_at else None
        return data
