from .users import User
from .transactions import Transaction, TransactionPromotion
from .promotions import Promotion, PromotionUsage
from .events import Event, EventOrganizer, EventGuest

__all__ = [
    'User',
    'Transaction', 'TransactionPromotion',
    'Promotion', 'PromotionUsage',
    'Event', 'EventOrganizer', 'EventGuest',
]
