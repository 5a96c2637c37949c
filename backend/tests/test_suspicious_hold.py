"""
Manager review of held and flagged transactions.
"""

import pytest

from loyalty.errors import ForbiddenError, InvalidInputError, NotFoundError
from loyalty.models import PromotionUsage
from loyalty.models.promotions import PROMOTION_TYPE_ONE_TIME
from loyalty.roles import Actor, Role
from loyalty.services.audit_service import find_balance_mismatches
from loyalty.services.transaction_service import (
    PurchaseCommand,
    create_purchase,
    set_transaction_suspicious,
)


def _as(user):
    return Actor(user.id, user.role)


class TestRelease:

    def test_release_credits_base_points(self, db_session, manager, cashier, make_user):
        flagged = make_user(Role.REGULAR, suspicious=True)
        held = create_purchase(PurchaseCommand(flagged.utorid, 25), _as(cashier))

        txn = set_transaction_suspicious(_as(manager), held.id, False)

        assert txn.suspicious is False
        assert txn.amount == 100
        assert flagged.points == 100
        assert find_balance_mismatches() == []

    def test_release_ignores_promotion_bonus(self, db_session, manager, cashier, make_user, make_promotion):
        make_promotion(rate=0.5)
        flagged = make_user(Role.REGULAR, suspicious=True)
        held = create_purchase(PurchaseCommand(flagged.utorid, 40), _as(cashier))
        assert held.bonus == 80

        txn = set_transaction_suspicious(_as(manager), held.id, False)

        assert txn.amount == 160
        assert flagged.points == 160

    def test_release_twice_credits_once(self, db_session, manager, cashier, make_user):
        flagged = make_user(Role.REGULAR, suspicious=True)
        held = create_purchase(PurchaseCommand(flagged.utorid, 25), _as(cashier))

        set_transaction_suspicious(_as(manager), held.id, False)
        set_transaction_suspicious(_as(manager), held.id, False)

        assert flagged.points == 100

    def test_held_usage_is_not_released_again(self, db_session, manager, cashier, make_user, make_promotion):
        flagged = make_user(Role.REGULAR, suspicious=True)
        promo = make_promotion(type=PROMOTION_TYPE_ONE_TIME, points=50, min_spending_cents=100)
        held = create_purchase(PurchaseCommand(flagged.utorid, 25, promotion_ids=[promo.id]), _as(cashier))

        set_transaction_suspicious(_as(manager), held.id, False)

        assert db_session.query(PromotionUsage).filter_by(user_id=flagged.id).count() == 1


class TestFlag:

    def test_flag_marks_creator_without_clawback(self, db_session, manager, cashier, customer):
        purchase = create_purchase(PurchaseCommand(customer.utorid, 25), _as(cashier))

        txn = set_transaction_suspicious(_as(manager), purchase.id, True)

        assert txn.suspicious is True
        assert txn.amount == 100
        assert customer.points == 100
        assert cashier.suspicious is True
        assert customer.suspicious is False

    def test_flag_then_release_does_not_double_credit(self, db_session, manager, cashier, customer):
        purchase = create_purchase(PurchaseCommand(customer.utorid, 25), _as(cashier))

        set_transaction_suspicious(_as(manager), purchase.id, True)
        set_transaction_suspicious(_as(manager), purchase.id, False)

        assert customer.points == 100
        assert find_balance_mismatches() == []

    def test_flag_same_state_is_noop(self, db_session, manager, cashier, make_user):
        flagged = make_user(Role.REGULAR, suspicious=True)
        held = create_purchase(PurchaseCommand(flagged.utorid, 25), _as(cashier))

        set_transaction_suspicious(_as(manager), held.id, True)

        assert cashier.suspicious is False
        assert flagged.points == 0

    def test_later_purchases_by_flagged_cashier_are_held(self, db_session, manager, cashier, customer):
        first = create_purchase(PurchaseCommand(customer.utorid, 25), _as(cashier))
        set_transaction_suspicious(_as(manager), first.id, True)

        second = create_purchase(PurchaseCommand(customer.utorid, 25), _as(cashier))

        assert second.suspicious is True
        assert customer.points == 100


class TestValidation:

    def test_cashier_forbidden(self, db_session, cashier, customer):
        purchase = create_purchase(PurchaseCommand(customer.utorid, 25), _as(cashier))
        with pytest.raises(ForbiddenError):
            set_transaction_suspicious(_as(cashier), purchase.id, True)

    def test_flag_must_be_bool(self, db_session, manager):
        with pytest.raises(InvalidInputError):
            set_transaction_suspicious(_as(manager), 1, "true")

    def test_unknown_transaction(self, db_session, manager):
        with pytest.raises(NotFoundError):
            set_transaction_suspicious(_as(manager), 987654, True)
