"""
Pytest fixtures for loyalty backend tests.

Provides the application on an in-memory database, a per-test table wipe,
and factories for users, promotions and events.
"""

import itertools
from datetime import timedelta

import pytest

from loyalty import create_app
from loyalty.extensions import db
from loyalty.models import Event, EventGuest, EventOrganizer, Promotion, Transaction, User
from loyalty.models.promotions import PROMOTION_TYPE_AUTOMATIC
from loyalty.models.transactions import TRANSACTION_TYPE_ADJUSTMENT
from loyalty.roles import Role
from loyalty.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'DEBUG',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_user(db_session):
    """
    Factory for users.

    A non-zero opening balance is backed by an adjustment row so the ledger
    stays consistent with `points`.
    """
    counter = itertools.count(1)

    def _make(role=Role.REGULAR, points=0, verified=True, suspicious=False, utorid=None, name=None):
        n = next(counter)
        utorid = utorid or f"user{n:04d}"
        user = User(
            utorid=utorid,
            name=name or f"Test User {n}",
            email=f"{utorid}@mail.utoronto.ca",
            role=Role.parse(role).value,
            points=points,
            verified=verified,
            suspicious=suspicious,
        )
        db_session.add(user)
        db_session.flush()
        if points:
            db_session.add(Transaction(
                type=TRANSACTION_TYPE_ADJUSTMENT,
                user_id=user.id,
                amount=points,
                remark="opening balance",
                created_by_id=user.id,
            ))
        db_session.commit()
        return user

    return _make


@pytest.fixture(scope='function')
def superuser(make_user):
    return make_user(Role.SUPERUSER, utorid="super001")


@pytest.fixture(scope='function')
def manager(make_user):
    return make_user(Role.MANAGER, utorid="manag001")


@pytest.fixture(scope='function')
def cashier(make_user):
    return make_user(Role.CASHIER, utorid="cashi001")


@pytest.fixture(scope='function')
def customer(make_user):
    return make_user(Role.REGULAR, utorid="custo001")


@pytest.fixture(scope='function')
def make_promotion(db_session):
    """Factory for promotions, active for a day either side of now by default."""

    def _make(type=PROMOTION_TYPE_AUTOMATIC, rate=None, points=None, min_spending_cents=None,
              target_role="all", start_time=None, end_time=None, name="Promo"):
        now = utcnow()
        promo = Promotion(
            name=name,
            description=f"{name} description",
            type=type,
            start_time=start_time or now - timedelta(days=1),
            end_time=end_time or now + timedelta(days=1),
            min_spending_cents=min_spending_cents,
            rate=rate,
            points=points,
            target_role=target_role,
        )
        db_session.add(promo)
        db_session.commit()
        return promo

    return _make


@pytest.fixture(scope='function')
def make_event(db_session):
    """
    Factory for events.

    Guests are confirmed unless listed in `unconfirmed`. Starts tomorrow by
    default; pass start_time/end_time for started or ended events.
    """

    def _make(points=100, organizers=(), guests=(), unconfirmed=(), published=True,
              capacity=None, start_time=None, end_time=None, name="Campus Event"):
        now = utcnow()
        start = start_time or now + timedelta(days=1)
        event = Event(
            name=name,
            description="An event",
            location="Bahen Centre",
            start_time=start,
            end_time=end_time or start + timedelta(hours=2),
            capacity=capacity,
            points=points,
            points_remain=points,
            points_awarded=0,
            published=published,
        )
        for user in organizers:
            event.organizers.append(EventOrganizer(user_id=user.id))
        for user in guests:
            event.guests.append(EventGuest(user_id=user.id, confirmed_at=now))
        for user in unconfirmed:
            event.guests.append(EventGuest(user_id=user.id, confirmed_at=None))
        db_session.add(event)
        db_session.commit()
        return event

    return _make
