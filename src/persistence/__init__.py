"""
Persistence layer: database manager and webhook tables.
"""

from .database import DatabaseManager
from .models import Base, IdempotencyRecord, WebhookDeliveryRecord

__all__ = [
    'DatabaseManager',
    'Base',
    'IdempotencyRecord',
    'WebhookDeliveryRecord',
]
