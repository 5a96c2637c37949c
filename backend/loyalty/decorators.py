# Overview: Role gate decorator for service operations.

from functools import wraps
import inspect

from flask import current_app

from .errors import ForbiddenError
from .roles import Actor, Role


def requires_role(threshold: Role):
    """
    Require the operation's `actor` to rank at or above `threshold`.

    The decorated function must take `actor` as a parameter (positional or
    keyword). Denials are logged and raised as ForbiddenError before any
    database work happens.
    """
    def decorator(f):
        signature = inspect.signature(f)
        if "actor" not in signature.parameters:
            raise TypeError(f"{f.__name__} must accept an 'actor' argument")

        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = signature.bind_partial(*args, **kwargs).arguments.get("actor")
            if not isinstance(actor, Actor):
                raise ForbiddenError("Authentication required")

            if not actor.is_at_least(threshold):
                current_app.logger.info(
                    "Denied %s for user %s (role=%s, required=%s)",
                    f.__name__, actor.id, actor.role.value, threshold.value,
                )
                raise ForbiddenError(
                    "Permission denied",
                    details={"required_role": threshold.value},
                )

            return f(*args, **kwargs)

        return decorated_function
    return decorator
