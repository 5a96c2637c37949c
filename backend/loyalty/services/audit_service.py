# Overview: Read-only ledger consistency checks.

"""
Ledger audit

Two invariants must hold at quiescence:
- every user's `points` equals the sum of `amount` over their transactions
- every event's pool satisfies points == points_remain + points_awarded
  with points_remain >= 0, and points_awarded matches its event rows

Findings are returned as plain dicts; nothing is repaired automatically.
"""

from __future__ import annotations

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Event, Transaction, User
from ..models.transactions import TRANSACTION_TYPE_EVENT


def find_balance_mismatches() -> list[dict]:
    """Users whose stored balance differs from their ledger total."""
    ledger_totals = (
        db.session.query(
            Transaction.user_id.label("user_id"),
            func.coalesce(func.sum(Transaction.amount), 0).label("total"),
        )
        .group_by(Transaction.user_id)
        .subquery()
    )
    ledger_total = func.coalesce(ledger_totals.c.total, 0)
    rows = (
        db.session.query(User, ledger_total)
        .outerjoin(ledger_totals, ledger_totals.c.user_id == User.id)
        .filter(User.points != ledger_total)
        .order_by(User.id.asc())
        .all()
    )
    return [
        {
            "user_id": user.id,
            "utorid": user.utorid,
            "points": user.points,
            "ledger_total": int(total),
            "difference": user.points - int(total),
        }
        for user, total in rows
    ]


def find_pool_violations() -> list[dict]:
    """
    Events whose points_awarded differs from the event transactions that
    reference them, or whose pool does not add up.

    The pool split and the non-negative remainder are also CHECK constraints
    on `events`; those two conditions only fire on a database created without
    them.
    """
    paid_totals = (
        db.session.query(
            Transaction.related_id.label("event_id"),
            func.sum(Transaction.amount).label("paid"),
        )
        .filter(Transaction.type == TRANSACTION_TYPE_EVENT)
        .group_by(Transaction.related_id)
        .subquery()
    )
    paid = func.coalesce(paid_totals.c.paid, 0)
    rows = (
        db.session.query(Event, paid)
        .outerjoin(paid_totals, paid_totals.c.event_id == Event.id)
        .filter(or_(
            Event.points != Event.points_remain + Event.points_awarded,
            Event.points_remain < 0,
            Event.points_awarded != paid,
        ))
        .order_by(Event.id.asc())
        .all()
    )
    return [
        {
            "event_id": event.id,
            "name": event.name,
            "points": event.points,
            "points_remain": event.points_remain,
            "points_awarded": event.points_awarded,
            "ledger_paid": int(total),
        }
        for event, total in rows
    ]
