# Overview: Events, organizers, guests, and the per-event points pool.

"""
Event Points Pool

Each event carries a budget of points:

    points == points_remain + points_awarded,  points_remain >= 0

Awards draw from points_remain and move the same amount into
points_awarded in the same unit of work that credits the guests. A manager
may resize the budget before the event starts; the remaining pool moves by
the same delta.

Organizers (and managers) run an event: they add guests, confirm
attendance and award points. Only confirmed guests are paid.
"""

from __future__ import annotations

from flask import current_app

from ..decorators import requires_role
from ..errors import (
    ConflictError,
    ForbiddenError,
    InsufficientPoolError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from ..extensions import db
from ..models import Event, EventGuest, EventOrganizer, Transaction
from ..models.transactions import TRANSACTION_TYPE_EVENT
from ..roles import Actor, Role
from ..time_utils import coerce_datetime, utcnow
from ..validation import parse_int, parse_positive_int, require_text
from .concurrency import lock_for_update, run_in_transaction
from .pagination import paginate_list, parse_bool
from .user_service import get_user, get_user_by_utorid


def _require_actor(actor) -> Actor:
    if not isinstance(actor, Actor):
        raise ForbiddenError("Authentication required")
    return actor


def get_event_or_404(event_id, *, for_update: bool = False) -> Event:
    query = db.session.query(Event).filter_by(id=parse_int(event_id, "event_id"))
    if for_update:
        query = lock_for_update(query)
    event = query.first()
    if not event:
        raise NotFoundError(f"Event {event_id} not found")
    return event


def _can_run(actor: Actor, event: Event) -> bool:
    return actor.is_manager or event.is_organizer(actor.id)


def _require_runner(actor: Actor, event: Event) -> None:
    if not _can_run(actor, event):
        raise ForbiddenError("Only managers or event organizers may do this")


def _parse_time(value, field: str):
    try:
        parsed = coerce_datetime(value)
    except ValueError:
        raise InvalidInputError(f"Invalid {field}") from None
    if parsed is None:
        raise InvalidInputError(f"Missing required field: {field}")
    return parsed


def _parse_capacity(value) -> int | None:
    if value is None:
        return None
    return parse_positive_int(value, "capacity")


# =============================================================================
# EVENTS
# =============================================================================

@requires_role(Role.MANAGER)
def create_event(actor: Actor, data: dict) -> Event:
    """
    Create an unpublished event (manager+). The creator is its first organizer.
    """
    name = require_text(data, "name")
    description = require_text(data, "description")
    location = require_text(data, "location")
    start = _parse_time(data.get("start_time"), "start_time")
    end = _parse_time(data.get("end_time"), "end_time")
    if start >= end:
        raise InvalidInputError("End time must be after start time")
    points = parse_positive_int(data.get("points"), "points")
    capacity = _parse_capacity(data.get("capacity"))

    organizer_ids = {actor.id}
    for raw_id in data.get("organizers") or []:
        organizer_ids.add(parse_positive_int(raw_id, "organizer id"))

    def _op():
        for user_id in organizer_ids:
            get_user(user_id)

        event = Event(
            name=name,
            description=description,
            location=location,
            start_time=start,
            end_time=end,
            capacity=capacity,
            points=points,
            points_remain=points,
            points_awarded=0,
            published=False,
        )
        for user_id in sorted(organizer_ids):
            event.organizers.append(EventOrganizer(user_id=user_id))
        db.session.add(event)
        db.session.flush()
        return event

    event = run_in_transaction(_op)
    current_app.logger.info("Event %s created by %s with %s points", event.id, actor.id, points)
    return event


def update_event(actor: Actor, event_id, data: dict) -> Event:
    """
    Edit an event (manager+ or organizer).

    points and published are manager-only. name, description, location,
    start_time and capacity are locked once the event has started; end_time
    once it has ended. Changing points moves points_remain by the same delta.
    """
    _require_actor(actor)
    now = utcnow()
    event = get_event_or_404(event_id)
    _require_runner(actor, event)

    if ("points" in data or "published" in data) and not actor.is_manager:
        raise ForbiddenError("Only managers may change points or publish events")

    locked_after_start = ("name", "description", "location", "start_time", "capacity")
    if event.has_started(now) and any(key in data for key in locked_after_start):
        raise InvalidStateError("Cannot update these fields after event has started")

    updates: dict = {}
    for key in ("name", "description", "location"):
        if key in data:
            updates[key] = require_text(data, key)

    if "start_time" in data:
        start = _parse_time(data["start_time"], "start_time")
        if start < now:
            raise InvalidInputError("Start time cannot be in the past")
        updates["start_time"] = start

    if "end_time" in data:
        if event.has_ended(now):
            raise InvalidStateError("Cannot update end time after event has ended")
        end = _parse_time(data["end_time"], "end_time")
        if end < now:
            raise InvalidInputError("End time cannot be in the past")
        updates["end_time"] = end

    if updates.get("start_time", event.start_time) >= updates.get("end_time", event.end_time):
        raise InvalidInputError("End time must be after start time")

    if "capacity" in data:
        capacity = _parse_capacity(data["capacity"])
        if capacity is not None and capacity < len(event.guests):
            raise InvalidStateError("Capacity cannot be less than current number of guests")
        updates["capacity"] = capacity

    new_points = None
    if "points" in data:
        if event.has_started(now):
            raise InvalidStateError("Cannot change points after event has started")
        new_points = parse_positive_int(data["points"], "points")

    if "published" in data:
        if not isinstance(data["published"], bool):
            raise InvalidInputError("published must be a boolean")
        updates["published"] = data["published"]

    def _op():
        locked = get_event_or_404(event.id, for_update=True)
        if new_points is not None:
            remain = locked.points_remain + (new_points - locked.points)
            if remain < 0:
                raise InvalidStateError(
                    "Cannot reduce points below already awarded amount",
                    details={"points_awarded": locked.points_awarded},
                )
            locked.points = new_points
            locked.points_remain = remain
        for key, value in updates.items():
            setattr(locked, key, value)
        db.session.flush()
        return locked

    event = run_in_transaction(_op)
    changed = sorted(updates) + (["points"] if new_points is not None else [])
    current_app.logger.info("Event %s updated by %s: %s", event.id, actor.id, changed)
    return event


def delete_event(actor: Actor, event_id) -> None:
    """Only unpublished events that have paid out nothing can be deleted."""
    _require_actor(actor)
    event = get_event_or_404(event_id)
    _require_runner(actor, event)
    if event.published:
        raise InvalidStateError("Cannot delete published event")
    if event.points_awarded > 0:
        raise InvalidStateError("Cannot delete event with awarded points")

    def _op():
        db.session.delete(event)

    run_in_transaction(_op)
    current_app.logger.info("Event %s deleted by %s", event_id, actor.id)


def get_event(actor: Actor, event_id) -> Event:
    """Unpublished events are visible only to managers and organizers."""
    _require_actor(actor)
    event = get_event_or_404(event_id)
    if not event.published and not _can_run(actor, event):
        raise NotFoundError(f"Event {event_id} not found")
    return event


def list_events(actor: Actor, filters: dict | None = None, page=None, limit=None) -> dict:
    """
    Paginated event listing ordered by start time.

    Filters: name, location (substrings), started, ended (not both),
    show_full (default false hides full events), published (managers only;
    everyone else sees published events only).
    """
    _require_actor(actor)
    filters = filters or {}
    now = utcnow()
    q = db.session.query(Event)

    if filters.get("name"):
        q = q.filter(Event.name.ilike(f"%{filters['name']}%"))
    if filters.get("location"):
        q = q.filter(Event.location.ilike(f"%{filters['location']}%"))

    started = parse_bool(filters.get("started"), "started")
    ended = parse_bool(filters.get("ended"), "ended")
    if started is not None and ended is not None:
        raise InvalidInputError("Cannot specify both started and ended")
    if started is not None:
        q = q.filter(Event.start_time <= now) if started else q.filter(Event.start_time > now)
    if ended is not None:
        q = q.filter(Event.end_time < now) if ended else q.filter(Event.end_time >= now)

    published = parse_bool(filters.get("published"), "published")
    if actor.is_manager:
        if published is not None:
            q = q.filter(Event.published.is_(published))
    else:
        q = q.filter(Event.published.is_(True))

    events = q.order_by(Event.start_time.asc(), Event.id.asc()).all()
    if not parse_bool(filters.get("show_full"), "show_full"):
        events = [e for e in events if not e.is_full]
    return paginate_list(events, page, limit)


# =============================================================================
# ORGANIZERS
# =============================================================================

def add_organizer(actor: Actor, event_id, utorid: str) -> Event:
    _require_actor(actor)
    event = get_event_or_404(event_id)
    _require_runner(actor, event)
    if event.has_ended(utcnow()):
        raise InvalidStateError("Event has already ended")

    user = get_user_by_utorid(utorid)
    if event.is_organizer(user.id):
        raise ConflictError("User is already an organizer")
    if event.guest_record(user.id) is not None:
        raise InvalidStateError("User is registered as a guest")

    def _op():
        event.organizers.append(EventOrganizer(user_id=user.id))
        db.session.flush()
        return event

    run_in_transaction(_op, conflict_message="User is already an organizer")
    current_app.logger.info("User %s added as organizer of event %s by %s", user.utorid, event.id, actor.id)
    return event


@requires_role(Role.MANAGER)
def remove_organizer(actor: Actor, event_id, user_id) -> Event:
    event = get_event_or_404(event_id)
    user_id = parse_int(user_id, "user_id")
    record = next((o for o in event.organizers if o.user_id == user_id), None)
    if record is None:
        raise NotFoundError("User is not an organizer")
    if len(event.organizers) == 1:
        raise InvalidStateError("Cannot remove the last organizer")

    def _op():
        event.organizers.remove(record)
        db.session.flush()
        return event

    run_in_transaction(_op)
    current_app.logger.info("User %s removed as organizer of event %s by %s", user_id, event.id, actor.id)
    return event


# =============================================================================
# GUESTS
# =============================================================================

def _check_can_register(event: Event, user_id: int, now) -> None:
    if event.has_ended(now):
        raise InvalidStateError("Event has already ended")
    if event.is_full:
        raise InvalidStateError("Event is full")
    if event.guest_record(user_id) is not None:
        raise ConflictError("User is already registered")
    if event.is_organizer(user_id):
        raise InvalidStateError("Organizers cannot register as guests")


def _add_guest_row(event: Event, user_id: int, now) -> EventGuest:
    def _op():
        locked = get_event_or_404(event.id, for_update=True)
        if locked.is_full:
            raise InvalidStateError("Event is full")
        guest = EventGuest(user_id=user_id, confirmed_at=now, created_at=now)
        locked.guests.append(guest)
        db.session.flush()
        return guest

    return run_in_transaction(_op, conflict_message="User is already registered")


def rsvp(actor: Actor, event_id) -> EventGuest:
    """Register the actor as a guest."""
    _require_actor(actor)
    now = utcnow()
    event = get_event_or_404(event_id)
    if not event.published and not actor.is_at_least(Role.CASHIER):
        raise NotFoundError(f"Event {event_id} not found")
    _check_can_register(event, actor.id, now)

    guest = _add_guest_row(event, actor.id, now)
    current_app.logger.info("User %s RSVP'd to event %s", actor.id, event.id)
    return guest


def cancel_rsvp(actor: Actor, event_id) -> None:
    _require_actor(actor)
    event = get_event_or_404(event_id)
    if event.has_ended(utcnow()):
        raise InvalidStateError("Event has already ended")
    guest = event.guest_record(actor.id)
    if guest is None:
        raise NotFoundError("Not registered for this event")

    def _op():
        event.guests.remove(guest)
        db.session.flush()

    run_in_transaction(_op)
    current_app.logger.info("User %s cancelled RSVP to event %s", actor.id, event.id)


def add_guest(actor: Actor, event_id, utorid: str) -> EventGuest:
    """Register another user (manager+ or organizer of a published event)."""
    _require_actor(actor)
    now = utcnow()
    event = get_event_or_404(event_id)
    _require_runner(actor, event)
    if not event.published and not actor.is_manager:
        raise NotFoundError(f"Event {event_id} not found")

    user = get_user_by_utorid(utorid)
    _check_can_register(event, user.id, now)

    guest = _add_guest_row(event, user.id, now)
    current_app.logger.info("User %s added to event %s by %s", user.utorid, event.id, actor.id)
    return guest


@requires_role(Role.MANAGER)
def remove_guest(actor: Actor, event_id, user_id) -> None:
    event = get_event_or_404(event_id)
    guest = event.guest_record(parse_int(user_id, "user_id"))
    if guest is None:
        raise NotFoundError("User is not registered")

    def _op():
        event.guests.remove(guest)
        db.session.flush()

    run_in_transaction(_op)
    current_app.logger.info("User %s removed from event %s by %s", user_id, event.id, actor.id)


def set_guest_confirmation(actor: Actor, event_id, utorid: str, confirmed: bool) -> EventGuest:
    """Mark a guest's attendance confirmed (eligible for points) or not."""
    _require_actor(actor)
    if not isinstance(confirmed, bool):
        raise InvalidInputError("confirmed must be a boolean")
    event = get_event_or_404(event_id)
    _require_runner(actor, event)
    user = get_user_by_utorid(utorid)
    guest = event.guest_record(user.id)
    if guest is None:
        raise NotFoundError("User is not registered")

    def _op():
        if confirmed and guest.confirmed_at is None:
            guest.confirmed_at = utcnow()
        elif not confirmed:
            guest.confirmed_at = None
        db.session.flush()
        return guest

    return run_in_transaction(_op)


# =============================================================================
# AWARDS
# =============================================================================

def award_event_points(actor: Actor, event_id, points_per_guest, utorid: str | None = None, remark: str | None = None) -> list[Transaction]:
    """
    Pay `points_per_guest` to one confirmed guest (utorid) or to every
    confirmed guest, drawing the total from the event's pool.

    Raises:
        NotFoundError: event or utorid unknown
        ForbiddenError: actor is neither manager nor organizer
        InvalidInputError: bad amount, or target is not a confirmed guest
        InsufficientPoolError: points_remain < points_per_guest x guests
    """
    _require_actor(actor)
    per_guest = parse_positive_int(points_per_guest, "amount")
    if remark is not None and not isinstance(remark, str):
        raise InvalidInputError("remark must be a string")

    def _op():
        event = get_event_or_404(event_id, for_update=True)
        _require_runner(actor, event)

        if utorid:
            user = get_user_by_utorid(utorid)
            guest = event.guest_record(user.id)
            if guest is None or guest.confirmed_at is None:
                raise InvalidInputError("User is not a confirmed guest of this event")
            guests = [guest]
        else:
            guests = sorted(
                (g for g in event.guests if g.confirmed_at is not None),
                key=lambda g: g.user_id,
            )

        if not guests:
            return []

        required = per_guest * len(guests)
        if event.points_remain < required:
            raise InsufficientPoolError(
                "Insufficient points remaining for this event",
                details={"points_remain": event.points_remain, "required": required},
            )

        note = remark or f"Points from event: {event.name}"
        transactions = []
        for guest in guests:
            recipient = get_user(guest.user_id, for_update=True)
            txn = Transaction(
                type=TRANSACTION_TYPE_EVENT,
                user_id=recipient.id,
                amount=per_guest,
                related_id=event.id,
                suspicious=False,
                remark=note,
                created_by_id=actor.id,
            )
            db.session.add(txn)
            recipient.points += per_guest
            transactions.append(txn)

        event.points_remain -= required
        event.points_awarded += required
        db.session.flush()
        return transactions

    transactions = run_in_transaction(_op)
    if transactions:
        current_app.logger.info(
            "Event %s awarded %s points to %s guest(s) by %s",
            event_id, per_guest, len(transactions), actor.id,
        )
    return transactions

