"""
Role ordering, promotion audience and the service role gate.
"""

import pytest

from loyalty.errors import ForbiddenError
from loyalty.roles import Actor, PromotionAudience, Role, at_least, can_use
from loyalty.services.user_service import list_users


class TestRoleOrdering:

    def test_total_order(self):
        ordered = [Role.REGULAR, Role.CASHIER, Role.MANAGER, Role.SUPERUSER]
        assert [r.rank for r in ordered] == sorted(r.rank for r in ordered)

    @pytest.mark.parametrize(
        "role,threshold,expected",
        [
            ("regular", "regular", True),
            ("regular", "cashier", False),
            ("cashier", "cashier", True),
            ("manager", "cashier", True),
            ("cashier", "manager", False),
            ("superuser", "manager", True),
        ],
    )
    def test_at_least(self, role, threshold, expected):
        assert at_least(role, threshold) is expected

    def test_parse_is_case_insensitive(self):
        assert Role.parse(" Manager ") is Role.MANAGER
        assert Role.parse(Role.CASHIER) is Role.CASHIER

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Role.parse("admin")


class TestPromotionAudience:

    @pytest.mark.parametrize(
        "role,audience,expected",
        [
            (Role.REGULAR, PromotionAudience.ALL, True),
            (Role.REGULAR, PromotionAudience.CASHIER, False),
            (Role.CASHIER, PromotionAudience.CASHIER, True),
            (Role.MANAGER, PromotionAudience.CASHIER, True),
            (Role.CASHIER, PromotionAudience.MANAGER, False),
            (Role.SUPERUSER, PromotionAudience.MANAGER, True),
        ],
    )
    def test_can_use(self, role, audience, expected):
        assert can_use(role, audience) is expected

    def test_unknown_audience_is_never_eligible(self):
        assert can_use(Role.SUPERUSER, "everyone") is False


class TestActor:

    def test_role_is_parsed(self):
        actor = Actor(id=1, role="manager")
        assert actor.role is Role.MANAGER
        assert actor.is_manager

    def test_cashier_is_not_manager(self):
        assert not Actor(id=1, role=Role.CASHIER).is_manager


class TestRoleGate:

    def test_insufficient_role_is_forbidden(self, db_session, cashier):
        with pytest.raises(ForbiddenError) as exc:
            list_users(Actor(cashier.id, cashier.role))
        assert exc.value.details == {"required_role": "manager"}
        assert exc.value.status_code == 403

    def test_missing_actor_is_forbidden(self, db_session):
        with pytest.raises(ForbiddenError):
            list_users(None)

    def test_sufficient_role_passes(self, db_session, manager):
        result = list_users(actor=Actor(manager.id, manager.role))
        assert result["count"] == 1
