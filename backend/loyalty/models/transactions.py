from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


TRANSACTION_TYPE_PURCHASE = "purchase"
TRANSACTION_TYPE_ADJUSTMENT = "adjustment"
TRANSACTION_TYPE_TRANSFER = "transfer"
TRANSACTION_TYPE_REDEMPTION = "redemption"
TRANSACTION_TYPE_EVENT = "event"
TRANSACTION_TYPES = (
    TRANSACTION_TYPE_PURCHASE,
    TRANSACTION_TYPE_ADJUSTMENT,
    TRANSACTION_TYPE_TRANSFER,
    TRANSACTION_TYPE_REDEMPTION,
    TRANSACTION_TYPE_EVENT,
)

REDEMPTION_REQUESTED = "requested"
REDEMPTION_PROCESSED = "processed"


@dataclass(frozen=True)
class Requested:
    """Redemption recorded, no points moved yet."""


@dataclass(frozen=True)
class Processed:
    """Redemption paid out by a cashier; points deducted."""
    by_id: int


class Transaction(db.Model):
    """
    Append-only points ledger.

    Sum of `amount` over a user's rows equals that user's balance.

    RELATED_ID by type:
    - adjustment: the transaction being corrected
    - transfer: the counterpart user
    - redemption: the processing cashier (None until processed)
    - event: the originating event

    MUTABLE FIELDS: only `suspicious` (and `amount` when a hold is released),
    and for redemptions the processing fields set exactly once.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_user_created", "user_id", "created_at"),
        db.Index("ix_transactions_type_state", "type", "redemption_state"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Signed points actually applied to the user's balance by this row
    amount = db.Column(db.Integer, nullable=False, default=0)

    spent_cents = db.Column(db.Integer, nullable=True)  # purchase only
    redeemed = db.Column(db.Integer, nullable=True)  # redemption only

    suspicious = db.Column(db.Boolean, nullable=False, default=False, index=True)
    remark = db.Column(db.Text, nullable=False, default="")

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    related_id = db.Column(db.Integer, nullable=True, index=True)

    redemption_state = db.Column(db.String(16), nullable=True)
    processed_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("transactions", lazy=True))
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    processed_by = db.relationship("User", foreign_keys=[processed_by_id])
    promotion_links = db.relationship(
        "TransactionPromotion",
        backref="transaction",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="TransactionPromotion.promotion_id",
    )

    @property
    def spent(self) -> float | None:
        return self.spent_cents / 100 if self.spent_cents is not None else None

    @property
    def promotion_ids(self) -> list[int]:
        return [link.promotion_id for link in self.promotion_links]

    @property
    def redemption_status(self) -> Requested | Processed | None:
        if self.type != TRANSACTION_TYPE_REDEMPTION:
            return None
        if self.redemption_state == REDEMPTION_PROCESSED:
            return Processed(by_id=self.processed_by_id)
        return Requested()

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "user_id": self.user_id,
            "utorid": self.user.utorid if self.user else None,
            "amount": self.amount,
            "spent": self.spent,
            "redeemed": self.redeemed,
            "related_id": self.related_id,
            "suspicious": self.suspicious,
            "remark": self.remark,
            "created_by": self.created_by.utorid if self.created_by else None,
            "promotion_ids": self.promotion_ids,
            "created_at": to_utc_z(self.created_at),
        }
        if self.type == TRANSACTION_TYPE_REDEMPTION:
            data["redemption_state"] = self.redemption_state
            data["processed_by"] = self.processed_by.utorid if self.processed_by else None
            data["processed_at"] = to_utc_z(self.processed_at) if self.processed_at else None
        return data


class TransactionPromotion(db.Model):
    """Promotions applied to a purchase (automatic winner plus accepted one-time)."""
    __tablename__ = "transaction_promotions"

    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), primary_key=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.id"), primary_key=True)

    promotion = db.relationship("Promotion")
