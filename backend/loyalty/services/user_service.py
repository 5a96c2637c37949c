# Overview: Service-layer operations for users; registration, flags, roles, lookups.

"""
User management for the points program.

Registration creates unverified regular members with no password; account
activation happens outside this package. Managers verify members, flag or
clear suspicious accounts and promote members to cashier. Only superusers
may grant manager or superuser.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import or_

from ..decorators import requires_role
from ..errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from ..extensions import db
from ..models import User
from ..roles import Actor, Role
from ..validation import validate_email, validate_name, validate_utorid, parse_int
from .concurrency import lock_for_update, run_in_transaction
from .pagination import paginate, parse_bool
from .promotion_service import available_one_time_promotions


MANAGER_ASSIGNABLE_ROLES = (Role.REGULAR, Role.CASHIER)
SELF_EDITABLE_FIELDS = ("name", "email")


def get_user(user_id: int, *, for_update: bool = False) -> User:
    """Load a user by id or raise NotFoundError."""
    query = db.session.query(User).filter_by(id=user_id)
    if for_update:
        query = lock_for_update(query)
    user = query.first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


def get_user_by_utorid(utorid: str, *, for_update: bool = False) -> User:
    if not isinstance(utorid, str) or not utorid.strip():
        raise InvalidInputError("utorid is required")
    query = db.session.query(User).filter_by(utorid=utorid.strip())
    if for_update:
        query = lock_for_update(query)
    user = query.first()
    if not user:
        raise NotFoundError(f"User '{utorid}' not found")
    return user


@requires_role(Role.CASHIER)
def register_user(actor: Actor, utorid: str, name: str, email: str) -> User:
    """
    Register a new member (cashier+).

    Raises:
        InvalidInputError: utorid/name/email fail format checks
        ConflictError: utorid or email already registered
    """
    utorid = validate_utorid(utorid)
    name = validate_name(name)
    email = validate_email(email)

    def _op():
        existing = db.session.query(User).filter(
            or_(User.utorid == utorid, User.email == email)
        ).first()
        if existing:
            raise ConflictError("User already exists")

        user = User(
            utorid=utorid,
            name=name,
            email=email,
            role=Role.REGULAR.value,
            verified=False,
            suspicious=False,
            points=0,
        )
        db.session.add(user)
        db.session.flush()
        return user

    user = run_in_transaction(_op, conflict_message="User already exists")
    current_app.logger.info("User %s registered by %s", user.utorid, actor.id)
    return user


@requires_role(Role.MANAGER)
def update_user(actor: Actor, user_id: int, data: dict) -> User:
    """
    Manager update of verification, suspicion, role and email.

    - verified may only be set to True (no un-verifying)
    - managers may only assign regular or cashier; superusers any role
    """
    updates: dict = {}

    verified = data.get("verified")
    if verified is not None:
        if verified is not True:
            raise InvalidInputError("verified can only be set to true")
        updates["verified"] = True

    suspicious = data.get("suspicious")
    if suspicious is not None:
        if not isinstance(suspicious, bool):
            raise InvalidInputError("suspicious must be a boolean")
        updates["suspicious"] = suspicious

    role = data.get("role")
    if role is not None:
        try:
            new_role = Role.parse(role)
        except ValueError:
            raise InvalidInputError(f"Invalid role: {role}") from None
        if actor.role is not Role.SUPERUSER and new_role not in MANAGER_ASSIGNABLE_ROLES:
            raise ForbiddenError("Managers can only set regular or cashier roles")
        updates["role"] = new_role.value

    email = data.get("email")
    if email is not None:
        updates["email"] = validate_email(email)

    if not updates:
        raise InvalidInputError("No update fields provided")

    def _op():
        user = get_user(parse_int(user_id, "user_id"), for_update=True)
        if "email" in updates and updates["email"] != user.email:
            taken = db.session.query(User.id).filter(User.email == updates["email"], User.id != user.id).first()
            if taken:
                raise ConflictError("Email already in use")
        for key, value in updates.items():
            setattr(user, key, value)
        db.session.flush()
        return user

    user = run_in_transaction(_op)
    current_app.logger.info("User %s updated by %s: %s", user.utorid, actor.id, sorted(updates))
    return user


@requires_role(Role.MANAGER)
def list_users(actor: Actor, filters: dict | None = None, page=None, limit=None) -> dict:
    """
    Paginated user scan.

    Filters: name (substring of utorid or name), role, verified, suspicious.
    """
    filters = filters or {}
    q = db.session.query(User)

    name = filters.get("name")
    if name:
        pattern = f"%{name}%"
        q = q.filter(or_(User.utorid.ilike(pattern), User.name.ilike(pattern)))

    role = filters.get("role")
    if role:
        try:
            q = q.filter(User.role == Role.parse(role).value)
        except ValueError:
            raise InvalidInputError(f"Invalid role: {role}") from None

    verified = parse_bool(filters.get("verified"), "verified")
    if verified is not None:
        q = q.filter(User.verified.is_(verified))

    suspicious = parse_bool(filters.get("suspicious"), "suspicious")
    if suspicious is not None:
        q = q.filter(User.suspicious.is_(suspicious))

    return paginate(q.order_by(User.id.asc()), page, limit)


# =============================================================================
# SELF SERVICE
# =============================================================================

@requires_role(Role.REGULAR)
def get_me(actor: Actor) -> dict:
    """The actor's own profile plus the one-time promotions still open to them."""
    user = get_user(actor.id)
    profile = user.to_dict()
    profile["promotions"] = [p.to_dict() for p in available_one_time_promotions(user)]
    return profile


@requires_role(Role.REGULAR)
def update_me(actor: Actor, data: dict) -> User:
    """
    Edit the actor's own name and email.

    Raises:
        InvalidInputError: unknown field, bad format, or nothing to update
        ConflictError: email belongs to another user
    """
    extra = sorted(set(data) - set(SELF_EDITABLE_FIELDS))
    if extra:
        raise InvalidInputError("Invalid request body", details={"fields": extra})

    updates: dict = {}
    if data.get("name") is not None:
        updates["name"] = validate_name(data["name"])
    if data.get("email") is not None:
        updates["email"] = validate_email(data["email"])

    if not updates:
        raise InvalidInputError("No update fields provided")

    def _op():
        user = get_user(actor.id, for_update=True)
        if "email" in updates and updates["email"] != user.email:
            taken = db.session.query(User.id).filter(User.email == updates["email"], User.id != user.id).first()
            if taken:
                raise ConflictError("Email already in use")
        for key, value in updates.items():
            setattr(user, key, value)
        db.session.flush()
        return user

    user = run_in_transaction(_op, conflict_message="Email already in use")
    current_app.logger.info("User %s updated own profile: %s", user.utorid, sorted(updates))
    return user


@requires_role(Role.REGULAR)
def find_user(actor: Actor, utorid: str) -> dict:
    """Public card (id, utorid, name) for picking a transfer recipient."""
    user = get_user_by_utorid(utorid)
    return {"id": user.id, "utorid": user.utorid, "name": user.name}
