# Overview: Error taxonomy raised by the service layer.

"""
Every service failure is a LoyaltyError subclass.

The request layer maps errors by `status_code`; `kind` is the stable
machine-readable name and `details` carries extra context for the message.
"""

from __future__ import annotations


class LoyaltyError(Exception):
    """Base class for ledger and management failures."""
    kind = "Error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.message, "kind": self.kind}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(LoyaltyError):
    """Referenced user, transaction, event or promotion does not exist."""
    kind = "NotFound"
    status_code = 404


class ForbiddenError(LoyaltyError):
    """Actor lacks permission for the operation."""
    kind = "Forbidden"
    status_code = 403


class InvalidInputError(LoyaltyError):
    """Malformed or out-of-range command parameters."""
    kind = "InvalidInput"
    status_code = 400


class InvalidPromotionError(InvalidInputError):
    """A requested promotion cannot be applied to this purchase."""
    kind = "InvalidPromotion"


class InvalidStateError(LoyaltyError):
    """Operation not valid for the entity's current state."""
    kind = "InvalidState"
    status_code = 400


class InsufficientBalanceError(LoyaltyError):
    kind = "InsufficientBalance"
    status_code = 400


class InsufficientPoolError(LoyaltyError):
    kind = "InsufficientPool"
    status_code = 400


class ConflictError(LoyaltyError):
    """Uniqueness violation, reused one-time promotion, or concurrent update."""
    kind = "Conflict"
    status_code = 409
