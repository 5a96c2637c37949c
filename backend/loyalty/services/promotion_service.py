# Overview: Promotion evaluation for purchases, plus promotion management.

"""
Promotion Evaluator

Given a purchase's spend and the customer, decides which promotions apply
and how many bonus points they add on top of the base rate.

RULES:
- Automatic promotions are never requested: among the active, role-eligible
  automatic promotions whose minimum spend is met, the one with the strictly
  largest positive bonus applies. Ties go to the lowest promotion id.
- One-time promotions are requested explicitly by id. The whole batch is
  validated before any is applied; a promotion the customer already used
  fails the batch with ConflictError.
- Explicitly requested automatic ids are validated but never applied twice.

Nothing here writes to the database; the transaction engine records links
and usage rows in the purchase's unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app

from ..decorators import requires_role
from ..errors import (
    ConflictError,
    InvalidInputError,
    InvalidPromotionError,
    InvalidStateError,
    NotFoundError,
)
from ..extensions import db
from ..models import Promotion, PromotionUsage, User
from ..models.promotions import PROMOTION_TYPE_AUTOMATIC, PROMOTION_TYPE_ONE_TIME, PROMOTION_TYPES
from ..roles import Actor, PromotionAudience, Role, can_use
from ..time_utils import coerce_datetime, utcnow
from ..validation import (
    parse_dollars_to_cents,
    parse_int,
    parse_non_negative_int,
    parse_positive_int,
    parse_rate,
    require_text,
    round_half_up,
)
from .concurrency import run_in_transaction
from .pagination import paginate, paginate_list, parse_bool

# Base earning rate: 1 point per $0.25
BASE_POINTS_PER_DOLLAR = 4


@dataclass
class PromotionEvaluation:
    """Outcome of evaluating promotions for one purchase."""
    auto_promotion: Promotion | None = None
    auto_bonus: int = 0
    one_time: list[Promotion] = field(default_factory=list)

    @property
    def one_time_bonus(self) -> int:
        return sum(p.points or 0 for p in self.one_time)

    @property
    def bonus(self) -> int:
        return self.auto_bonus + self.one_time_bonus

    @property
    def applied_ids(self) -> list[int]:
        ids = [self.auto_promotion.id] if self.auto_promotion else []
        ids.extend(p.id for p in self.one_time)
        return ids


def base_points(spent_cents: int) -> int:
    """round-half-up(spent x 4), computed exactly on cents."""
    return round_half_up(Decimal(spent_cents) * BASE_POINTS_PER_DOLLAR / 100)


def automatic_bonus(promotion: Promotion, spent_cents: int) -> int:
    if promotion.rate is None:
        return 0
    return round_half_up(
        Decimal(spent_cents) / 100 * Decimal(str(promotion.rate)) * BASE_POINTS_PER_DOLLAR
    )


def _meets_min_spend(promotion: Promotion, spent_cents: int) -> bool:
    return promotion.min_spending_cents is None or spent_cents >= promotion.min_spending_cents


def select_automatic_promotion(customer_role, spent_cents: int, now=None) -> tuple[Promotion | None, int]:
    """Best automatic promotion for this purchase and its bonus, or (None, 0)."""
    now = now or utcnow()
    candidates = (
        db.session.query(Promotion)
        .filter(
            Promotion.type == PROMOTION_TYPE_AUTOMATIC,
            Promotion.start_time <= now,
            Promotion.end_time >= now,
        )
        .order_by(Promotion.id.asc())
        .all()
    )

    best, best_bonus = None, 0
    for promo in candidates:
        if not can_use(customer_role, promo.target_role):
            continue
        if not _meets_min_spend(promo, spent_cents):
            continue
        bonus = automatic_bonus(promo, spent_cents)
        # strictly greater: first (lowest id) wins a tie
        if bonus > best_bonus:
            best, best_bonus = promo, bonus
    return best, best_bonus


def evaluate_purchase(customer: User, spent_cents: int, promotion_ids=None, now=None) -> PromotionEvaluation:
    """
    Decide the bonus for a purchase.

    Raises:
        InvalidInputError: malformed or duplicate promotion ids
        InvalidPromotionError: unknown, inactive, role-ineligible, or
            minimum spend not met
        ConflictError: a requested one-time promotion was already used
    """
    now = now or utcnow()
    requested = [parse_positive_int(pid, "promotion id") for pid in (promotion_ids or [])]
    if len(set(requested)) != len(requested):
        raise InvalidInputError("Duplicate promotion ids")

    auto_promo, auto_bonus = select_automatic_promotion(customer.role, spent_cents, now)
    evaluation = PromotionEvaluation(auto_promotion=auto_promo, auto_bonus=auto_bonus)
    if not requested:
        return evaluation

    found = {
        p.id: p
        for p in db.session.query(Promotion).filter(Promotion.id.in_(requested)).all()
    }
    missing = [pid for pid in requested if pid not in found]
    if missing:
        raise InvalidPromotionError(
            "One or more promotion IDs are invalid",
            details={"promotion_ids": missing},
        )

    one_time: list[Promotion] = []
    for pid in requested:
        promo = found[pid]
        if not promo.is_active(now):
            raise InvalidPromotionError(f"Promotion {pid} is not active", details={"promotion_id": pid})
        if promo.is_one_time:
            if not can_use(customer.role, promo.target_role):
                raise InvalidPromotionError(
                    f"User is not eligible for promotion {pid}",
                    details={"promotion_id": pid},
                )
            one_time.append(promo)

    if one_time:
        used = [
            row.promotion_id
            for row in db.session.query(PromotionUsage.promotion_id).filter(
                PromotionUsage.user_id == customer.id,
                PromotionUsage.promotion_id.in_([p.id for p in one_time]),
            )
        ]
        if used:
            raise ConflictError(
                "User has already used one or more of these promotions",
                details={"promotion_ids": sorted(used)},
            )

        for promo in one_time:
            if not _meets_min_spend(promo, spent_cents):
                raise InvalidPromotionError(
                    f"Minimum spending of ${promo.min_spending_cents / 100:.2f} required for promotion \"{promo.name}\"",
                    details={"promotion_id": promo.id},
                )

    evaluation.one_time = one_time
    return evaluation


def has_used_promotion(user_id: int, promotion_id: int) -> bool:
    return db.session.query(PromotionUsage.id).filter_by(
        user_id=user_id, promotion_id=promotion_id
    ).first() is not None


def available_one_time_promotions(user: User, now=None) -> list[Promotion]:
    """Active one-time promotions the user is eligible for and has not used."""
    now = now or utcnow()
    used_ids = {
        row.promotion_id
        for row in db.session.query(PromotionUsage.promotion_id).filter_by(user_id=user.id)
    }
    candidates = (
        db.session.query(Promotion)
        .filter(
            Promotion.type == PROMOTION_TYPE_ONE_TIME,
            Promotion.start_time <= now,
            Promotion.end_time >= now,
        )
        .order_by(Promotion.id.asc())
        .all()
    )
    return [p for p in candidates if p.id not in used_ids and can_use(user.role, p.target_role)]


# =============================================================================
# MANAGEMENT
# =============================================================================


def _parse_type(value) -> str:
    normalized = "one-time" if value in ("onetime", "one_time") else value
    if normalized not in PROMOTION_TYPES:
        raise InvalidInputError("Invalid promotion type")
    return normalized


def _parse_audience(value) -> str:
    try:
        return PromotionAudience(value).value
    except ValueError:
        raise InvalidInputError(f"Invalid target role: {value}") from None


def _parse_time(value, field: str):
    try:
        parsed = coerce_datetime(value)
    except ValueError:
        raise InvalidInputError(f"Invalid {field}") from None
    if parsed is None:
        raise InvalidInputError(f"Missing required field: {field}")
    return parsed


def _parse_min_spending(value) -> int:
    cents = parse_dollars_to_cents(value, "min_spending")
    if cents <= 0:
        raise InvalidInputError("min_spending must be greater than zero")
    return cents


def get_promotion_or_404(promotion_id) -> Promotion:
    promo = db.session.query(Promotion).filter_by(id=parse_int(promotion_id, "promotion_id")).first()
    if not promo:
        raise NotFoundError(f"Promotion {promotion_id} not found")
    return promo


@requires_role(Role.MANAGER)
def create_promotion(actor: Actor, data: dict) -> Promotion:
    """
    Create a promotion (manager+).

    automatic: requires rate >= 0; min_spending optional
    one-time: requires points >= 0 and min_spending
    """
    now = utcnow()
    name = require_text(data, "name")
    description = require_text(data, "description")
    promo_type = _parse_type(data.get("type"))
    start = _parse_time(data.get("start_time"), "start_time")
    end = _parse_time(data.get("end_time"), "end_time")

    if start < now:
        raise InvalidInputError("Start time cannot be in the past")
    if start >= end:
        raise InvalidInputError("End time must be after start time")

    promo = Promotion(
        name=name,
        description=description,
        type=promo_type,
        start_time=start,
        end_time=end,
        target_role=_parse_audience(data.get("target_role", PromotionAudience.ALL.value)),
    )

    if promo_type == PROMOTION_TYPE_AUTOMATIC:
        if data.get("rate") is None:
            raise InvalidInputError("Automatic promotions require a valid rate")
        promo.rate = parse_rate(data["rate"])
        if data.get("min_spending") is not None:
            promo.min_spending_cents = _parse_min_spending(data["min_spending"])
    else:
        if data.get("points") is None:
            raise InvalidInputError("One-time promotions require valid points")
        promo.points = parse_non_negative_int(data["points"], "points")
        if data.get("min_spending") is None:
            raise InvalidInputError("One-time promotions require minimum spending")
        promo.min_spending_cents = _parse_min_spending(data["min_spending"])

    def _op():
        db.session.add(promo)
        db.session.flush()
        return promo

    run_in_transaction(_op)
    current_app.logger.info("Promotion %s (%s) created by %s", promo.id, promo.type, actor.id)
    return promo


@requires_role(Role.MANAGER)
def update_promotion(actor: Actor, promotion_id: int, data: dict) -> Promotion:
    """
    Update a promotion (manager+).

    Once started, only end_time may change; once ended, nothing may.
    """
    now = utcnow()
    promo = get_promotion_or_404(promotion_id)
    has_started = promo.start_time <= now
    has_ended = promo.end_time < now

    locked_after_start = ("name", "description", "type", "start_time", "min_spending", "rate", "points", "target_role")
    if has_started and any(key in data for key in locked_after_start):
        raise InvalidStateError("Cannot update these fields after promotion has started")

    updates: dict = {}

    if "start_time" in data:
        start = _parse_time(data["start_time"], "start_time")
        if start < now:
            raise InvalidInputError("Start time cannot be in the past")
        updates["start_time"] = start

    if "end_time" in data:
        if has_ended:
            raise InvalidStateError("Cannot update end time after promotion has ended")
        end = _parse_time(data["end_time"], "end_time")
        if end < now:
            raise InvalidInputError("End time cannot be in the past")
        updates["end_time"] = end

    if updates.get("start_time", promo.start_time) >= updates.get("end_time", promo.end_time):
        raise InvalidInputError("End time must be after start time")

    if "name" in data:
        updates["name"] = require_text(data, "name")
    if "description" in data:
        updates["description"] = require_text(data, "description")
    if "type" in data:
        updates["type"] = _parse_type(data["type"])
    if "target_role" in data:
        updates["target_role"] = _parse_audience(data["target_role"])

    final_type = updates.get("type", promo.type)

    if "min_spending" in data:
        updates["min_spending_cents"] = None if data["min_spending"] is None else _parse_min_spending(data["min_spending"])

    if "rate" in data:
        if final_type != PROMOTION_TYPE_AUTOMATIC:
            raise InvalidInputError("Cannot set rate for non-automatic promotions")
        updates["rate"] = parse_rate(data["rate"])

    if "points" in data:
        if final_type != PROMOTION_TYPE_ONE_TIME:
            raise InvalidInputError("Cannot set points for non-one-time promotions")
        updates["points"] = parse_non_negative_int(data["points"], "points")

    def _op():
        for key, value in updates.items():
            setattr(promo, key, value)
        db.session.flush()
        return promo

    run_in_transaction(_op)
    current_app.logger.info("Promotion %s updated by %s: %s", promo.id, actor.id, sorted(updates))
    return promo


@requires_role(Role.MANAGER)
def delete_promotion(actor: Actor, promotion_id: int) -> None:
    promo = get_promotion_or_404(promotion_id)
    if promo.start_time <= utcnow():
        raise InvalidStateError("Cannot delete promotion that has already started")

    def _op():
        db.session.delete(promo)

    run_in_transaction(_op)
    current_app.logger.info("Promotion %s deleted by %s", promotion_id, actor.id)


def get_promotion(actor: Actor, promotion_id: int) -> Promotion:
    """Managers see any promotion; others only active ones."""
    promo = get_promotion_or_404(promotion_id)
    if not actor.is_manager and not promo.is_active(utcnow()):
        raise NotFoundError(f"Promotion {promotion_id} not found")
    return promo


def list_promotions(actor: Actor, filters: dict | None = None, page=None, limit=None) -> dict:
    """
    Managers: all promotions, filterable by name, type, started, ended.
    Others: active promotions they can use, minus one-time ones already used.
    """
    filters = filters or {}
    now = utcnow()
    q = db.session.query(Promotion)

    if filters.get("name"):
        q = q.filter(Promotion.name.ilike(f"%{filters['name']}%"))
    if filters.get("type"):
        q = q.filter(Promotion.type == _parse_type(filters["type"]))

    if actor.is_manager:
        started = parse_bool(filters.get("started"), "started")
        ended = parse_bool(filters.get("ended"), "ended")
        if started is not None and ended is not None:
            raise InvalidInputError("Cannot specify both started and ended")
        if started is not None:
            q = q.filter(Promotion.start_time <= now) if started else q.filter(Promotion.start_time > now)
        if ended is not None:
            q = q.filter(Promotion.end_time < now) if ended else q.filter(Promotion.end_time >= now)
        return paginate(q.order_by(Promotion.created_at.desc(), Promotion.id.desc()), page, limit)

    used_ids = {
        row.promotion_id
        for row in db.session.query(PromotionUsage.promotion_id).filter_by(user_id=actor.id)
    }
    active = (
        q.filter(Promotion.start_time <= now, Promotion.end_time >= now)
        .order_by(Promotion.created_at.desc(), Promotion.id.desc())
        .all()
    )
    available = [
        p for p in active
        if can_use(actor.role, p.target_role) and not (p.is_one_time and p.id in used_ids)
    ]
    return paginate_list(available, page, limit)
