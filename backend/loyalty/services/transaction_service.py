# Overview: Points transaction engine; purchases, adjustments, transfers, redemptions, holds.

"""
Transaction Engine

Every change to a user's balance goes through this module (event awards
live in event_service but follow the same rules). Each operation:

1. Validates the command and the actor's role before touching any row
2. Loads the rows that guard the mutation with SELECT ... FOR UPDATE
3. Writes the ledger row(s) and the balance change(s) in one unit of work

INVARIANT: for every user, points == sum(amount) over their transactions.

HOLDS: a purchase is held when either the acting cashier or the customer is
flagged suspicious. A held purchase records amount 0 and credits nothing;
a manager releases it with set_transaction_suspicious(..., False).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from flask import current_app
from sqlalchemy import and_

from ..decorators import requires_role
from ..errors import (
    ForbiddenError,
    InsufficientBalanceError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from ..extensions import db
from ..models import PromotionUsage, Transaction, TransactionPromotion, User
from ..models.transactions import (
    REDEMPTION_PROCESSED,
    REDEMPTION_REQUESTED,
    TRANSACTION_TYPE_ADJUSTMENT,
    TRANSACTION_TYPE_PURCHASE,
    TRANSACTION_TYPE_REDEMPTION,
    TRANSACTION_TYPE_TRANSFER,
    TRANSACTION_TYPES,
)
from ..roles import Actor, Role
from ..time_utils import utcnow
from ..validation import parse_int, parse_positive_int, parse_spent_cents
from .concurrency import lock_for_update, run_in_transaction
from .pagination import paginate, parse_bool
from .promotion_service import base_points, evaluate_purchase
from .user_service import get_user, get_user_by_utorid


DEFAULT_REDEMPTION_REMARK = "Point redemption"
SORTABLE_FIELDS = {
    "created_at": Transaction.created_at,
    "amount": Transaction.amount,
    "id": Transaction.id,
}


# =============================================================================
# COMMANDS
# =============================================================================

@dataclass(frozen=True)
class PurchaseCommand:
    customer_utorid: str
    spent: object
    remark: str = ""
    promotion_ids: Sequence[int] = ()


@dataclass(frozen=True)
class AdjustmentCommand:
    customer_utorid: str
    amount: int
    related_id: int | None
    remark: str = ""


@dataclass(frozen=True)
class TransferCommand:
    recipient_id: int
    amount: int
    remark: str = ""


@dataclass(frozen=True)
class RedemptionCommand:
    amount: int
    remark: str = DEFAULT_REDEMPTION_REMARK


@dataclass(frozen=True)
class EventAwardCommand:
    event_id: int
    points_per_guest: int
    utorid: str | None = None
    remark: str | None = None


@dataclass
class TransactionResult:
    """
    Committed ledger row plus the figures the caller reports back.

    `earned` is what was credited now (0 for a held purchase); `related`
    holds the counterpart rows of a multi-row operation (transfer credit).
    """
    transaction: Transaction
    earned: int = 0
    base: int = 0
    bonus: int = 0
    applied_promotion_ids: list[int] = field(default_factory=list)
    related: list[Transaction] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.transaction.id

    @property
    def suspicious(self) -> bool:
        return self.transaction.suspicious

    def to_dict(self) -> dict:
        data = self.transaction.to_dict()
        if self.transaction.type == TRANSACTION_TYPE_PURCHASE:
            data.update(
                earned=self.earned,
                base=self.base,
                bonus=self.bonus,
                promotion_ids=list(self.applied_promotion_ids),
            )
        if self.related:
            data["related"] = [t.to_dict() for t in self.related]
        return data


def _parse_remark(remark) -> str:
    if remark is None:
        return ""
    if not isinstance(remark, str):
        raise InvalidInputError("remark must be a string")
    return remark


def _get_transaction_or_404(transaction_id, *, for_update: bool = False) -> Transaction:
    query = db.session.query(Transaction).filter_by(id=parse_int(transaction_id, "transaction_id"))
    if for_update:
        query = lock_for_update(query)
    txn = query.first()
    if not txn:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return txn


# =============================================================================
# WRITE SIDE
# =============================================================================

@requires_role(Role.CASHIER)
def create_purchase(command: PurchaseCommand, actor: Actor) -> TransactionResult:
    """
    Record a purchase and credit base points plus promotion bonus.

    Held (amount 0, balance untouched) when the cashier or customer is
    suspicious; promotions are still linked and one-time usage recorded.
    """
    spent_cents = parse_spent_cents(command.spent)
    remark = _parse_remark(command.remark)
    promotion_ids = list(command.promotion_ids or ())

    def _op():
        now = utcnow()
        cashier = get_user(actor.id)
        customer = get_user_by_utorid(command.customer_utorid, for_update=True)

        evaluation = evaluate_purchase(customer, spent_cents, promotion_ids, now)
        base = base_points(spent_cents)
        points_to_add = base + evaluation.bonus
        suspicious = bool(cashier.suspicious or customer.suspicious)

        txn = Transaction(
            type=TRANSACTION_TYPE_PURCHASE,
            user_id=customer.id,
            amount=0 if suspicious else points_to_add,
            spent_cents=spent_cents,
            suspicious=suspicious,
            remark=remark,
            created_by_id=cashier.id,
            created_at=now,
        )
        for promotion_id in evaluation.applied_ids:
            txn.promotion_links.append(TransactionPromotion(promotion_id=promotion_id))
        db.session.add(txn)
        db.session.flush()

        for promo in evaluation.one_time:
            db.session.add(PromotionUsage(
                promotion_id=promo.id,
                user_id=customer.id,
                transaction_id=txn.id,
                created_at=now,
            ))

        if not suspicious:
            customer.points += points_to_add
        db.session.flush()

        return TransactionResult(
            transaction=txn,
            earned=0 if suspicious else points_to_add,
            base=base,
            bonus=evaluation.bonus,
            applied_promotion_ids=evaluation.applied_ids,
        )

    result = run_in_transaction(_op, conflict_message="Promotion already used or concurrent update, please resubmit")
    if result.suspicious:
        current_app.logger.warning(
            "Purchase %s held for review (customer %s, cashier %s)",
            result.id, command.customer_utorid, actor.id,
        )
    else:
        current_app.logger.info(
            "Purchase %s: %s earned %s points (base %s, bonus %s)",
            result.id, command.customer_utorid, result.earned, result.base, result.bonus,
        )
    return result


@requires_role(Role.MANAGER)
def create_adjustment(command: AdjustmentCommand, actor: Actor) -> TransactionResult:
    """
    Signed correction referencing an earlier transaction (manager+).

    Never held. A negative adjustment may take the balance below zero.
    """
    amount = parse_int(command.amount, "amount")
    if command.related_id is None:
        raise InvalidInputError("related_id is required for adjustments")
    related_id = parse_positive_int(command.related_id, "related_id")
    remark = _parse_remark(command.remark)

    def _op():
        customer = get_user_by_utorid(command.customer_utorid, for_update=True)
        if db.session.query(Transaction.id).filter_by(id=related_id).first() is None:
            raise NotFoundError(f"Transaction {related_id} not found")

        txn = Transaction(
            type=TRANSACTION_TYPE_ADJUSTMENT,
            user_id=customer.id,
            amount=amount,
            related_id=related_id,
            suspicious=False,
            remark=remark,
            created_by_id=actor.id,
        )
        db.session.add(txn)
        customer.points += amount
        db.session.flush()
        return TransactionResult(transaction=txn, earned=amount)

    result = run_in_transaction(_op)
    current_app.logger.info(
        "Adjustment %s: %+d points to %s (ref %s) by %s",
        result.id, amount, command.customer_utorid, related_id, actor.id,
    )
    return result


def create_transfer(command: TransferCommand, actor: Actor) -> TransactionResult:
    """
    Move points from the actor to another user.

    Checks run in order: amount, sender exists, sender verified, balance,
    recipient exists, not self. Debit and credit rows commit together.
    """
    if not isinstance(actor, Actor):
        raise ForbiddenError("Authentication required")
    amount = parse_positive_int(command.amount, "amount")
    recipient_id = parse_int(command.recipient_id, "recipient_id")
    remark = _parse_remark(command.remark)

    def _op():
        # lock both rows in id order
        ids = sorted({actor.id, recipient_id})
        rows = {
            u.id: u
            for u in lock_for_update(
                db.session.query(User).filter(User.id.in_(ids)).order_by(User.id)
            ).all()
        }
        sender = rows.get(actor.id)
        if sender is None:
            raise NotFoundError(f"User {actor.id} not found")
        if not sender.verified:
            raise ForbiddenError("Sender must be verified to transfer points")
        if sender.points < amount:
            raise InsufficientBalanceError(
                "Insufficient points",
                details={"balance": sender.points, "requested": amount},
            )
        recipient = rows.get(recipient_id)
        if recipient is None:
            raise NotFoundError(f"User {recipient_id} not found")
        if recipient.id == sender.id:
            raise InvalidInputError("Cannot transfer points to yourself")

        debit = Transaction(
            type=TRANSACTION_TYPE_TRANSFER,
            user_id=sender.id,
            amount=-amount,
            related_id=recipient.id,
            remark=remark,
            created_by_id=sender.id,
        )
        credit = Transaction(
            type=TRANSACTION_TYPE_TRANSFER,
            user_id=recipient.id,
            amount=amount,
            related_id=sender.id,
            remark=remark,
            created_by_id=sender.id,
        )
        db.session.add_all([debit, credit])
        sender.points -= amount
        recipient.points += amount
        db.session.flush()
        return TransactionResult(transaction=debit, earned=-amount, related=[credit])

    result = run_in_transaction(_op)
    current_app.logger.info(
        "Transfer %s: %s points from %s to %s",
        result.id, amount, actor.id, recipient_id,
    )
    return result


def request_redemption(command: RedemptionCommand, actor: Actor) -> TransactionResult:
    """
    Record a redemption request; no points move until a cashier processes it.

    No reservation: the balance is checked again at processing time.
    """
    if not isinstance(actor, Actor):
        raise ForbiddenError("Authentication required")
    amount = parse_positive_int(command.amount, "amount")
    remark = _parse_remark(command.remark) or DEFAULT_REDEMPTION_REMARK

    def _op():
        user = get_user(actor.id, for_update=True)
        if not user.verified:
            raise ForbiddenError("User must be verified to redeem points")
        if amount > user.points:
            raise InsufficientBalanceError(
                "Insufficient points",
                details={"balance": user.points, "requested": amount},
            )
        txn = Transaction(
            type=TRANSACTION_TYPE_REDEMPTION,
            user_id=user.id,
            amount=0,
            redeemed=amount,
            redemption_state=REDEMPTION_REQUESTED,
            remark=remark,
            created_by_id=user.id,
        )
        db.session.add(txn)
        db.session.flush()
        return TransactionResult(transaction=txn)

    result = run_in_transaction(_op)
    current_app.logger.info("Redemption %s requested: %s points by %s", result.id, amount, actor.id)
    return result


@requires_role(Role.CASHIER)
def process_redemption(transaction_id, actor: Actor) -> TransactionResult:
    """
    Pay out a requested redemption (cashier+).

    The requested -> processed transition is a conditional UPDATE, so of two
    concurrent processings only one can match the row.
    """
    def _op():
        txn = _get_transaction_or_404(transaction_id, for_update=True)
        if txn.type != TRANSACTION_TYPE_REDEMPTION:
            raise InvalidStateError("Transaction is not a redemption")
        if txn.redemption_state != REDEMPTION_REQUESTED:
            raise InvalidStateError("Redemption has already been processed")

        user = get_user(txn.user_id, for_update=True)
        if user.points < txn.redeemed:
            raise InsufficientBalanceError(
                "Insufficient points to process redemption",
                details={"balance": user.points, "requested": txn.redeemed},
            )

        now = utcnow()
        matched = (
            db.session.query(Transaction)
            .filter(and_(
                Transaction.id == txn.id,
                Transaction.redemption_state == REDEMPTION_REQUESTED,
            ))
            .update(
                {
                    Transaction.redemption_state: REDEMPTION_PROCESSED,
                    Transaction.amount: -txn.redeemed,
                    Transaction.related_id: actor.id,
                    Transaction.processed_by_id: actor.id,
                    Transaction.processed_at: now,
                },
                synchronize_session=False,
            )
        )
        if matched != 1:
            raise InvalidStateError("Redemption has already been processed")

        user.points -= txn.redeemed
        db.session.flush()
        db.session.expire(txn)
        return TransactionResult(transaction=txn, earned=-txn.redeemed)

    result = run_in_transaction(_op)
    current_app.logger.info(
        "Redemption %s processed by %s: %s points",
        result.id, actor.id, result.transaction.redeemed,
    )
    return result


@requires_role(Role.MANAGER)
def set_transaction_suspicious(actor: Actor, transaction_id, suspicious) -> Transaction:
    """
    Flag or release a transaction (manager+).

    held -> cleared: a withheld purchase gets amount = base points for its
        spend and the customer is credited that amount. A row whose amount
        was already applied is only unflagged.
    cleared -> held: flag only, nothing is clawed back; the user who
        created the transaction is marked suspicious.
    Same-state requests change nothing.
    """
    if not isinstance(suspicious, bool):
        raise InvalidInputError("suspicious must be a boolean")

    state = {"changed": False, "credited": 0}

    def _op():
        txn = _get_transaction_or_404(transaction_id, for_update=True)
        if txn.suspicious == suspicious:
            return txn

        state["changed"] = True
        txn.suspicious = suspicious
        if suspicious:
            creator = get_user(txn.created_by_id, for_update=True)
            creator.suspicious = True
        elif txn.amount == 0 and txn.spent_cents is not None:
            credit = base_points(txn.spent_cents)
            user = get_user(txn.user_id, for_update=True)
            txn.amount = credit
            user.points += credit
            state["credited"] = credit

        db.session.flush()
        return txn

    txn = run_in_transaction(_op)
    if state["changed"] and suspicious:
        current_app.logger.warning(
            "Transaction %s flagged suspicious by %s; creator %s marked suspicious",
            txn.id, actor.id, txn.created_by_id,
        )
    elif state["changed"]:
        current_app.logger.warning(
            "Transaction %s released by %s; credited %s points",
            txn.id, actor.id, state["credited"],
        )
    return txn


def create_transaction(command, actor: Actor):
    """
    Single entry point for ledger writes, dispatching on the command type.

    Returns a TransactionResult, or a list of them for event awards (one
    per guest paid).
    """
    if isinstance(command, PurchaseCommand):
        return create_purchase(command, actor)
    if isinstance(command, AdjustmentCommand):
        return create_adjustment(command, actor)
    if isinstance(command, TransferCommand):
        return create_transfer(command, actor)
    if isinstance(command, RedemptionCommand):
        return request_redemption(command, actor)
    if isinstance(command, EventAwardCommand):
        from .event_service import award_event_points

        transactions = award_event_points(
            actor,
            command.event_id,
            command.points_per_guest,
            utorid=command.utorid,
            remark=command.remark,
        )
        return [TransactionResult(transaction=t, earned=t.amount) for t in transactions]
    raise InvalidInputError(f"Unsupported transaction command: {type(command).__name__}")


# =============================================================================
# READ SIDE
# =============================================================================

def get_transaction(transaction_id, actor: Actor) -> Transaction:
    """Managers may read any transaction; other users only their own."""
    if not isinstance(actor, Actor):
        raise ForbiddenError("Authentication required")
    txn = _get_transaction_or_404(transaction_id)
    if not actor.is_manager and txn.user_id != actor.id:
        raise ForbiddenError("Cannot view another user's transaction")
    return txn


def _apply_filters(q, filters: dict):
    txn_type = filters.get("type")
    if txn_type:
        if txn_type not in TRANSACTION_TYPES:
            raise InvalidInputError(f"Invalid transaction type: {txn_type}")
        q = q.filter(Transaction.type == txn_type)

    if filters.get("related_id") is not None:
        if not txn_type:
            raise InvalidInputError("related_id filter requires a type")
        q = q.filter(Transaction.related_id == parse_int(filters["related_id"], "related_id"))

    if filters.get("promotion_id") is not None:
        promotion_id = parse_int(filters["promotion_id"], "promotion_id")
        q = q.join(TransactionPromotion, TransactionPromotion.transaction_id == Transaction.id).filter(
            TransactionPromotion.promotion_id == promotion_id
        )

    if filters.get("amount") is not None:
        amount = parse_int(filters["amount"], "amount")
        operator = filters.get("operator")
        if operator == "gte":
            q = q.filter(Transaction.amount >= amount)
        elif operator == "lte":
            q = q.filter(Transaction.amount <= amount)
        else:
            raise InvalidInputError("operator must be 'gte' or 'lte' when filtering by amount")
    elif filters.get("operator") is not None:
        raise InvalidInputError("operator requires an amount")

    return q


def _apply_order(q, order_by: str | None):
    key = order_by or "-created_at"
    descending = key.startswith("-")
    column = SORTABLE_FIELDS.get(key.lstrip("-"))
    if column is None:
        raise InvalidInputError(f"Cannot order by {key}")
    primary = column.desc() if descending else column.asc()
    tiebreak = Transaction.id.desc() if descending else Transaction.id.asc()
    return q.order_by(primary, tiebreak)


@requires_role(Role.MANAGER)
def list_transactions(actor: Actor, filters: dict | None = None, page=None, limit=None, order_by: str | None = None) -> dict:
    """
    Paginated ledger scan (manager+).

    Filters: user_id, utorid, type, suspicious, created_by (utorid),
    promotion_id, related_id (with type), amount + operator (gte|lte).
    order_by: created_at (default, newest first), amount or id; prefix
    with '-' for descending.
    """
    filters = filters or {}
    q = db.session.query(Transaction)

    if filters.get("user_id") is not None:
        q = q.filter(Transaction.user_id == parse_int(filters["user_id"], "user_id"))

    if filters.get("utorid"):
        q = q.join(User, User.id == Transaction.user_id).filter(User.utorid == filters["utorid"])

    if filters.get("created_by"):
        creator_ids = db.session.query(User.id).filter(User.utorid == filters["created_by"])
        q = q.filter(Transaction.created_by_id.in_(creator_ids.scalar_subquery()))

    suspicious = parse_bool(filters.get("suspicious"), "suspicious")
    if suspicious is not None:
        q = q.filter(Transaction.suspicious.is_(suspicious))

    q = _apply_filters(q, filters)
    return paginate(_apply_order(q, order_by), page, limit)


def list_user_transactions(actor: Actor, filters: dict | None = None, page=None, limit=None, order_by: str | None = None) -> dict:
    """The actor's own ledger, newest first by default."""
    if not isinstance(actor, Actor):
        raise ForbiddenError("Authentication required")
    q = db.session.query(Transaction).filter(Transaction.user_id == actor.id)
    q = _apply_filters(q, filters or {})
    return paginate(_apply_order(q, order_by), page, limit)


@requires_role(Role.CASHIER)
def list_pending_redemptions(actor: Actor) -> list[Transaction]:
    """Redemptions still waiting for a cashier, oldest first."""
    return (
        db.session.query(Transaction)
        .filter(
            Transaction.type == TRANSACTION_TYPE_REDEMPTION,
            Transaction.redemption_state == REDEMPTION_REQUESTED,
        )
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        .all()
    )
