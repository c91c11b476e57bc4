"""
Idempotency store for inbound webhooks.

Tracks processed (namespace, event_id) pairs with a TTL so that provider
retries and replays are acknowledged instead of reprocessed. Store failures are
logged and never propagate: idempotency is best effort and must not take
webhook receipt down with it.
"""
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..persistence.database import DatabaseManager
from ..persistence.models import IdempotencyRecord
from .models import IdempotencyCheckResult, IdempotencyConfig, InboundRequest, WebhookProvider

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 86400

_UPSERT_DIALECTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def extract_event_id(
    provider: WebhookProvider,
    payload: Optional[Dict[str, Any]],
    request: Optional[InboundRequest] = None
) -> Optional[str]:
    """
    Derive an event ID using the provider's payload conventions.

    stripe:  body.id
    github:  X-GitHub-Delivery header, head_commit.id, pull_request.id, "ping"
    generic: id, event_id, uuid, message_id
    """
    payload = payload if isinstance(payload, dict) else {}

    if provider == WebhookProvider.STRIPE:
        event_id = payload.get("id")
        return str(event_id) if event_id else None

    if provider == WebhookProvider.GITHUB:
        if request is not None:
            delivery = request.get_header("X-GitHub-Delivery")
            if delivery:
                return delivery
        head_commit = payload.get("head_commit")
        if isinstance(head_commit, dict) and head_commit.get("id"):
            return str(head_commit["id"])
        pull_request = payload.get("pull_request")
        if isinstance(pull_request, dict) and pull_request.get("id"):
            return str(pull_request["id"])
        if "zen" in payload:
            return "ping"
        return None

    for key in ("id", "event_id", "uuid", "message_id"):
        value = payload.get(key)
        if value:
            return str(value)
    return None


class IdempotencyStore:
    """Database-backed record of processed inbound events."""

    def __init__(self, db: DatabaseManager, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self._clock = clock

    async def _delete_expired(self, session: AsyncSession, now: datetime) -> int:
        result = await session.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now)
        )
        return result.rowcount or 0

    async def _get_processed_at(
        self, session: AsyncSession, event_id: str, namespace: str
    ) -> Optional[datetime]:
        result = await session.execute(
            select(IdempotencyRecord.processed_at).where(
                IdempotencyRecord.namespace == namespace,
                IdempotencyRecord.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def was_processed(self, event_id: str, namespace: str) -> IdempotencyCheckResult:
        """
        Check whether an event was already processed.

        Expired rows are deleted globally before the lookup.
        """
        try:
            async with self.db.get_session() as session:
                await self._delete_expired(session, self._clock())
                processed_at = await self._get_processed_at(session, event_id, namespace)
                await session.commit()

            return IdempotencyCheckResult(
                was_processed=processed_at is not None,
                event_id=event_id,
                processed_at=processed_at,
            )
        except Exception as e:
            logger.error("Idempotency lookup failed", event_id=event_id, namespace=namespace, error=str(e))
            return IdempotencyCheckResult(was_processed=False, event_id=event_id)

    async def mark_processed(
        self, event_id: str, namespace: str, ttl_seconds: int = DEFAULT_TTL_SECONDS
    ) -> bool:
        """
        Record an event as processed.

        A unique-constraint violation means another request already marked the
        event and counts as success.
        """
        now = self._clock()
        try:
            async with self.db.get_session() as session:
                # An expired row for the same pair would otherwise block the insert
                await self._delete_expired(session, now)
                session.add(IdempotencyRecord(
                    id=str(uuid.uuid4()),
                    namespace=namespace,
                    event_id=event_id,
                    processed_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.debug("Event already marked processed", event_id=event_id, namespace=namespace)
            return True
        except Exception as e:
            logger.error("Failed to mark event processed", event_id=event_id, namespace=namespace, error=str(e))
            return False

    async def _insert_if_absent(
        self, event_id: str, namespace: str, ttl_seconds: int
    ) -> IdempotencyCheckResult:
        """Atomically mark the event, reporting whether it was already marked."""
        now = self._clock()
        insert_factory = _UPSERT_DIALECTS.get(self.db.dialect_name)

        if insert_factory is None:
            # No single-statement upsert: check then mark
            existing = await self.was_processed(event_id, namespace)
            if not existing.was_processed:
                await self.mark_processed(event_id, namespace, ttl_seconds)
            return existing

        async with self.db.get_session() as session:
            await self._delete_expired(session, now)

            stmt = (
                insert_factory(IdempotencyRecord)
                .values(
                    id=str(uuid.uuid4()),
                    namespace=namespace,
                    event_id=event_id,
                    processed_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
                .on_conflict_do_nothing(index_elements=["namespace", "event_id"])
                .returning(IdempotencyRecord.processed_at)
            )
            inserted_at = (await session.execute(stmt)).scalar_one_or_none()

            processed_at = inserted_at
            if inserted_at is None:
                processed_at = await self._get_processed_at(session, event_id, namespace)
            await session.commit()

        return IdempotencyCheckResult(
            was_processed=inserted_at is None,
            event_id=event_id,
            processed_at=processed_at,
        )

    async def check_and_mark_processed(
        self,
        request: InboundRequest,
        config: IdempotencyConfig,
        payload: Optional[Dict[str, Any]] = None
    ) -> IdempotencyCheckResult:
        """
        Extract the event ID from a request and mark it in one step.

        The first receipt reports ``was_processed=False``; later receipts within
        the TTL report ``True`` with the original ``processed_at``. Requests
        without a recognizable event ID are let through.
        """
        if payload is None:
            try:
                payload = json.loads(request.body)
            except ValueError:
                payload = None

        event_id = extract_event_id(config.provider, payload, request)
        if not event_id:
            logger.warning(
                "No event ID found in webhook payload, skipping idempotency check",
                namespace=config.namespace,
                provider=config.provider.value,
            )
            return IdempotencyCheckResult(was_processed=False)

        try:
            result = await self._insert_if_absent(event_id, config.namespace, config.ttl_seconds)
        except Exception as e:
            logger.error("Idempotency check failed", event_id=event_id, namespace=config.namespace, error=str(e))
            return IdempotencyCheckResult(was_processed=False, event_id=event_id)

        if result.was_processed:
            logger.info(
                "Duplicate webhook event",
                event_id=event_id,
                namespace=config.namespace,
                processed_at=result.processed_at.isoformat() if result.processed_at else None,
            )
        return result

    async def release(self, event_id: str, namespace: str) -> bool:
        """Remove a mark so that a provider retry is processed again."""
        try:
            async with self.db.get_session() as session:
                result = await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.namespace == namespace,
                        IdempotencyRecord.event_id == event_id,
                    )
                )
                await session.commit()
            return bool(result.rowcount)
        except Exception as e:
            logger.error("Failed to release idempotency mark", event_id=event_id, namespace=namespace, error=str(e))
            return False

    async def cleanup_expired(self) -> int:
        """Delete expired rows, returning how many were removed."""
        try:
            async with self.db.get_session() as session:
                deleted = await self._delete_expired(session, self._clock())
                await session.commit()
            if deleted:
                logger.info("Cleaned up expired idempotency records", deleted=deleted)
            return deleted
        except Exception as e:
            logger.error("Idempotency cleanup failed", error=str(e))
            return 0
