"""
Persistence - Database Models

Tables backing the inbound idempotency store and the outbound delivery log.
Column types are portable (string UUIDs, generic JSON) so the same models run
on PostgreSQL in production and SQLite in tests.
"""
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class IdempotencyRecord(Base):
    """
    Processed inbound webhook events.
    One row per (namespace, event_id); the unique constraint is what enforces
    at-most-once marking under concurrent receipt.
    """
    __tablename__ = "webhook_idempotency"

    id = Column(String(36), primary_key=True, default=_new_id)
    namespace = Column(String(100), nullable=False)
    event_id = Column(String(255), nullable=False)
    processed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('namespace', 'event_id', name='uq_webhook_idempotency_namespace_event'),
        Index('ix_webhook_idempotency_expires_at', 'expires_at'),
    )

    def __repr__(self):
        return f"<IdempotencyRecord(namespace='{self.namespace}', event_id='{self.event_id}')>"


class WebhookDeliveryRecord(Base):
    """
    Append-only outbound delivery log.
    One row per terminal delivery outcome (after all retries), never updated.
    """
    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=_new_id)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    endpoint = Column(Text, nullable=False)
    success = Column(Boolean, nullable=False)
    status_code = Column(Integer)
    response_time = Column(Integer)  # milliseconds
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    error_code = Column(String(100))
    request_headers = Column(JSON)
    response_headers = Column(JSON)
    request_body = Column(Text)
    response_body = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_webhook_deliveries_created_at', 'created_at'),
        Index('ix_webhook_deliveries_event_type', 'event_type'),
        Index('ix_webhook_deliveries_success', 'success'),
    )

    def __repr__(self):
        return (
            f"<WebhookDeliveryRecord(event_type='{self.event_type}', "
            f"endpoint='{self.endpoint}', success={self.success})>"
        )
