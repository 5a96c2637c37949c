"""
Promotion Evaluator: automatic selection and explicit one-time validation.
"""

from datetime import timedelta

import pytest

from loyalty.errors import ConflictError, InvalidInputError, InvalidPromotionError
from loyalty.models import Promotion, PromotionUsage
from loyalty.models.promotions import PROMOTION_TYPE_ONE_TIME
from loyalty.roles import Role
from loyalty.services.promotion_service import automatic_bonus, base_points, evaluate_purchase
from loyalty.time_utils import utcnow


# =============================================================================
# POINT ARITHMETIC
# =============================================================================


class TestPointArithmetic:

    @pytest.mark.parametrize(
        "cents,expected",
        [
            (2500, 100),
            (4000, 160),
            (12, 0),    # 0.48
            (13, 1),    # 0.52
            (999, 40),  # 39.96
            (1, 0),
        ],
    )
    def test_base_points(self, cents, expected):
        assert base_points(cents) == expected

    def test_automatic_bonus_rounds_half_up(self):
        # $0.01 x 12.5 x 4 = 0.5
        assert automatic_bonus(Promotion(rate=12.5), 1) == 1

    def test_automatic_bonus_uses_exact_decimal_rate(self):
        # $10.00 x 0.1 x 4 = 4 exactly, not 4.000000000000001
        assert automatic_bonus(Promotion(rate=0.1), 1000) == 4

    def test_no_rate_no_bonus(self):
        assert automatic_bonus(Promotion(rate=None), 5000) == 0


# =============================================================================
# AUTOMATIC SELECTION
# =============================================================================


class TestAutomaticSelection:

    def test_best_bonus_wins(self, db_session, customer, make_promotion):
        make_promotion(rate=0.25, name="small")
        big = make_promotion(rate=1.0, name="big")

        result = evaluate_purchase(customer, 4000)

        assert result.auto_promotion.id == big.id
        assert result.auto_bonus == 160
        assert result.applied_ids == [big.id]

    def test_tie_goes_to_lowest_id(self, db_session, customer, make_promotion):
        first = make_promotion(rate=0.5, name="first")
        make_promotion(rate=0.5, name="second")

        result = evaluate_purchase(customer, 4000)

        assert result.auto_promotion.id == first.id

    def test_zero_bonus_applies_nothing(self, db_session, customer, make_promotion):
        make_promotion(rate=0.0)

        result = evaluate_purchase(customer, 4000)

        assert result.auto_promotion is None
        assert result.bonus == 0
        assert result.applied_ids == []

    def test_window_is_inclusive_at_both_ends(self, db_session, customer, make_promotion):
        now = utcnow()
        ends_now = make_promotion(rate=0.5, start_time=now - timedelta(days=1), end_time=now)
        result = evaluate_purchase(customer, 4000, now=now)
        assert result.auto_promotion.id == ends_now.id

        later = now + timedelta(hours=1)
        starts_later = make_promotion(rate=0.5, start_time=later, end_time=later + timedelta(days=1))
        result = evaluate_purchase(customer, 4000, now=later)
        assert result.auto_promotion.id == starts_later.id

    def test_expired_promotion_is_ignored(self, db_session, customer, make_promotion):
        now = utcnow()
        make_promotion(rate=0.5, start_time=now - timedelta(days=2), end_time=now - timedelta(days=1))

        assert evaluate_purchase(customer, 4000).auto_promotion is None

    def test_min_spending_must_be_met(self, db_session, customer, make_promotion):
        make_promotion(rate=0.5, min_spending_cents=5000)

        assert evaluate_purchase(customer, 4999).auto_promotion is None
        assert evaluate_purchase(customer, 5000).auto_promotion is not None

    def test_role_target_filters_candidates(self, db_session, make_user, make_promotion):
        make_promotion(rate=0.5, target_role="cashier")
        regular = make_user(Role.REGULAR)
        staff = make_user(Role.CASHIER)

        assert evaluate_purchase(regular, 4000).auto_promotion is None
        assert evaluate_purchase(staff, 4000).auto_bonus == 80


# =============================================================================
# EXPLICIT PROMOTION IDS
# =============================================================================


class TestExplicitPromotions:

    def test_one_time_points_are_added(self, db_session, customer, make_promotion):
        promo = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=1000)

        result = evaluate_purchase(customer, 2500, [promo.id])

        assert [p.id for p in result.one_time] == [promo.id]
        assert result.one_time_bonus == 50
        assert result.bonus == 50
        assert result.applied_ids == [promo.id]

    def test_auto_and_one_time_combine(self, db_session, customer, make_promotion):
        auto = make_promotion(rate=0.5)
        one_time = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=30, min_spending_cents=100)

        result = evaluate_purchase(customer, 4000, [one_time.id])

        assert result.bonus == 80 + 30
        assert result.applied_ids == [auto.id, one_time.id]

    def test_duplicate_ids_rejected(self, db_session, customer, make_promotion):
        promo = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=100)

        with pytest.raises(InvalidInputError) as exc:
            evaluate_purchase(customer, 2500, [promo.id, promo.id])
        assert type(exc.value) is InvalidInputError

    def test_unknown_id_rejected(self, db_session, customer):
        with pytest.raises(InvalidPromotionError):
            evaluate_purchase(customer, 2500, [987654])

    def test_malformed_id_rejected(self, db_session, customer):
        with pytest.raises(InvalidInputError):
            evaluate_purchase(customer, 2500, ["abc"])

    def test_inactive_one_time_rejected(self, db_session, customer, make_promotion):
        now = utcnow()
        promo = make_promotion(
            type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=100,
            start_time=now + timedelta(days=1), end_time=now + timedelta(days=2),
        )

        with pytest.raises(InvalidPromotionError):
            evaluate_purchase(customer, 2500, [promo.id])

    def test_role_ineligible_one_time_rejected(self, db_session, customer, make_promotion):
        promo = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=100, target_role="manager")

        with pytest.raises(InvalidPromotionError):
            evaluate_purchase(customer, 2500, [promo.id])

    def test_already_used_is_conflict(self, db_session, customer, make_promotion):
        promo = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=100)
        db_session.add(PromotionUsage(promotion_id=promo.id, user_id=customer.id))
        db_session.commit()

        with pytest.raises(ConflictError) as exc:
            evaluate_purchase(customer, 2500, [promo.id])
        assert exc.value.details["promotion_ids"] == [promo.id]

    def test_below_min_spending_rejected(self, db_session, customer, make_promotion):
        promo = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=5000)

        with pytest.raises(InvalidPromotionError):
            evaluate_purchase(customer, 4999, [promo.id])

    def test_whole_batch_fails_on_one_bad_id(self, db_session, customer, make_promotion):
        good = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=100)
        bad = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=100_000)

        with pytest.raises(InvalidPromotionError):
            evaluate_purchase(customer, 2500, [good.id, bad.id])

    def test_explicit_automatic_is_not_applied_twice(self, db_session, customer, make_promotion):
        auto = make_promotion(rate=0.5)

        result = evaluate_purchase(customer, 4000, [auto.id])

        assert result.applied_ids == [auto.id]
        assert result.bonus == 80
        assert result.one_time == []

    def test_explicit_automatic_must_be_active(self, db_session, customer, make_promotion):
        now = utcnow()
        auto = make_promotion(rate=0.5, start_time=now - timedelta(days=3), end_time=now - timedelta(days=2))

        with pytest.raises(InvalidPromotionError):
            evaluate_purchase(customer, 4000, [auto.id])
