from __future__ import annotations

from ..extensions import db
from ..roles import PromotionAudience
from ..time_utils import to_utc_z, utcnow


PROMOTION_TYPE_AUTOMATIC = "automatic"
PROMOTION_TYPE_ONE_TIME = "one-time"
PROMOTION_TYPES = (PROMOTION_TYPE_AUTOMATIC, PROMOTION_TYPE_ONE_TIME)


class Promotion(db.Model):
    """
    Points promotions.

    TYPES:
    - automatic: rate-based bonus, applied without user action whenever a
      purchase matches (at most one per purchase, the best one wins)
    - one-time: fixed bonus points, claimable once per user

    The active window is inclusive at both ends: start_time <= now <= end_time.
    """
    __tablename__ = "promotions"
    __table_args__ = (
        db.Index("ix_promotions_window", "start_time", "end_time"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")

    type = db.Column(db.String(16), nullable=False, index=True)  # automatic, one-time

    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)

    min_spending_cents = db.Column(db.Integer, nullable=True)
    rate = db.Column(db.Float, nullable=True)  # extra points per dollar, base-4 scale
    points = db.Column(db.Integer, nullable=True)  # one-time bonus

    target_role = db.Column(db.String(16), nullable=False, default=PromotionAudience.ALL.value)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def is_automatic(self) -> bool:
        return self.type == PROMOTION_TYPE_AUTOMATIC

    @property
    def is_one_time(self) -> bool:
        return self.type == PROMOTION_TYPE_ONE_TIME

    def is_active(self, now) -> bool:
        return self.start_time <= now <= self.end_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "min_spending": self.min_spending_cents / 100 if self.min_spending_cents is not None else None,
            "rate": self.rate,
            "points": self.points,
            "target_role": self.target_role,
            "created_at": to_utc_z(self.created_at),
        }


class PromotionUsage(db.Model):
    """
    One row per (one-time promotion, user) ever claimed.

    The unique constraint is the last line of defence for at-most-once use:
    two concurrent purchases claiming the same promotion cannot both commit.
    """
    __tablename__ = "promotion_usages"
    __table_args__ = (
        db.UniqueConstraint("promotion_id", "user_id", name="uq_promotion_usages_promotion_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    promotion = db.relationship("Promotion", backref=db.backref("usages", lazy=True, cascade="all, delete-orphan"))
    user = db.relationship("User", backref=db.backref("promotion_usages", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "promotion_id": self.promotion_id,
            "user_id": self.user_id,
            "transaction_id": self.transaction_id,
            "created_at": to_utc_z(self.created_at),
        }
