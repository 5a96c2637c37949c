from __future__ import annotations

from ..extensions import db
from ..roles import Role
from ..time_utils import to_utc_z, utcnow


class User(db.Model):
    """
    Program member, staff or administrator.

    The point balance is a denormalized running total of the member's
    ledger: every balance change is written in the same DB transaction as
    the Transaction row that explains it.

    version_id: balance checks (transfers, redemptions) read `points` and
    write it back; a concurrent writer makes the second flush raise
    StaleDataError.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("utorid", name="uq_users_utorid"),
        db.UniqueConstraint("email", name="uq_users_email"),
        db.Index("ix_users_role", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    utorid = db.Column(db.String(8), nullable=False, index=True)
    name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(16), nullable=False, default=Role.REGULAR.value)
    points = db.Column(db.Integer, nullable=False, default=0)

    # Gates redemption and transfers
    verified = db.Column(db.Boolean, nullable=False, default=False)
    # Purchases touching a suspicious user (as customer or cashier) are held
    suspicious = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def role_enum(self) -> Role:
        return Role.parse(self.role)

    def to_summary(self) -> dict:
        return {"id": self.id, "utorid": self.utorid, "name": self.name}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "utorid": self.utorid,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "points": self.points,
            "verified": self.verified,
            "suspicious": self.suspicious,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }
