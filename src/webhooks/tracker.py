"""
Delivery tracker.

Append-only log of outbound delivery outcomes plus the aggregate views used by
operators. Telemetry must never block delivery, so every failure here is
logged and turned into an empty result.
"""
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import structlog
from sqlalchemy import delete, select

from ..persistence.database import DatabaseManager
from ..persistence.models import WebhookDeliveryRecord
from .models import DeliveryMetrics, ErrorAnalysisEntry, WebhookDelivery

logger = structlog.get_logger(__name__)

UNKNOWN_ERROR = "Unknown error"


def _naive_utc(value: datetime) -> datetime:
    # created_at columns hold naive UTC
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _percentile(sorted_values: List[int], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    return float(sorted_values[math.floor(len(sorted_values) * fraction)])


class DeliveryTracker:
    """Persists delivery outcomes and computes delivery metrics."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def _filtered(
        query,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        event_type: Optional[str] = None,
        endpoint: Optional[str] = None,
        success: Optional[bool] = None,
    ):
        if start_date is not None:
            query = query.where(WebhookDeliveryRecord.created_at >= _naive_utc(start_date))
        if end_date is not None:
            query = query.where(WebhookDeliveryRecord.created_at <= _naive_utc(end_date))
        if event_type:
            query = query.where(WebhookDeliveryRecord.event_type == event_type)
        if endpoint:
            query = query.where(WebhookDeliveryRecord.endpoint == endpoint)
        if success is not None:
            query = query.where(WebhookDeliveryRecord.success == success)
        return query

    async def log_delivery(self, delivery: WebhookDelivery) -> str:
        """
        Append one delivery outcome.

        Returns:
            The new row ID, or "" when the write failed
        """
        try:
            data = delivery.model_dump(exclude_none=True)
            data["id"] = data.get("id") or str(uuid.uuid4())
            data["created_at"] = _naive_utc(data.get("created_at") or datetime.utcnow())

            async with self.db.get_session() as session:
                session.add(WebhookDeliveryRecord(**data))
                await session.commit()

            logger.debug(
                "Logged webhook delivery",
                id=data["id"],
                event_type=delivery.event_type,
                endpoint=delivery.endpoint,
                success=delivery.success,
            )
            return data["id"]

        except Exception as e:
            logger.error(
                "Failed to log webhook delivery",
                event_type=delivery.event_type,
                endpoint=delivery.endpoint,
                error=str(e),
            )
            return ""

    async def get_metrics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        event_type: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> DeliveryMetrics:
        """
        Aggregate delivery metrics over the filtered rows.

        Percentiles index the sorted response times at floor(n * 0.95) and
        floor(n * 0.99).
        """
        try:
            query = self._filtered(
                select(
                    WebhookDeliveryRecord.success,
                    WebhookDeliveryRecord.response_time,
                    WebhookDeliveryRecord.retry_count,
                ),
                start_date, end_date, event_type, endpoint,
            )
            async with self.db.get_session() as session:
                rows = (await session.execute(query)).all()
        except Exception as e:
            logger.error("Failed to compute delivery metrics", error=str(e))
            return DeliveryMetrics()

        total = len(rows)
        if total == 0:
            return DeliveryMetrics()

        successful = sum(1 for row in rows if row.success)
        response_times = sorted(row.response_time for row in rows if row.response_time is not None)
        total_retries = sum(row.retry_count or 0 for row in rows)

        average_response_time = 0.0
        if response_times:
            average_response_time = round(sum(response_times) / len(response_times), 2)

        return DeliveryMetrics(
            total_deliveries=total,
            successful_deliveries=successful,
            failed_deliveries=total - successful,
            success_rate=round(successful / total * 100, 2),
            average_response_time=average_response_time,
            p95_response_time=_percentile(response_times, 0.95),
            p99_response_time=_percentile(response_times, 0.99),
            total_retries=total_retries,
            average_retries=round(total_retries / total, 2),
        )

    async def get_recent_deliveries(
        self,
        limit: int = 50,
        offset: int = 0,
        event_type: Optional[str] = None,
        endpoint: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> List[WebhookDelivery]:
        """Most recent deliveries first, paginated."""
        try:
            query = self._filtered(
                select(WebhookDeliveryRecord),
                event_type=event_type, endpoint=endpoint, success=success,
            ).order_by(WebhookDeliveryRecord.created_at.desc()).offset(offset).limit(limit)

            async with self.db.get_session() as session:
                records = (await session.execute(query)).scalars().all()

            return [WebhookDelivery.model_validate(record) for record in records]

        except Exception as e:
            logger.error("Failed to read recent deliveries", error=str(e))
            return []

    async def get_error_analysis(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        event_type: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> List[ErrorAnalysisEntry]:
        """Group failed deliveries by exact error message, most frequent first."""
        try:
            query = self._filtered(
                select(
                    WebhookDeliveryRecord.error_message,
                    WebhookDeliveryRecord.endpoint,
                    WebhookDeliveryRecord.event_type,
                    WebhookDeliveryRecord.created_at,
                ),
                start_date, end_date, event_type, endpoint, success=False,
            )
            async with self.db.get_session() as session:
                rows = (await session.execute(query)).all()
        except Exception as e:
            logger.error("Failed to analyse delivery errors", error=str(e))
            return []

        groups: Dict[str, dict] = {}
        for row in rows:
            message = row.error_message or UNKNOWN_ERROR
            group = groups.setdefault(message, {
                "count": 0,
                "endpoints": set(),
                "event_types": set(),
                "last_occurrence": row.created_at,
            })
            group["count"] += 1
            group["endpoints"].add(row.endpoint)
            group["event_types"].add(row.event_type)
            if row.created_at > group["last_occurrence"]:
                group["last_occurrence"] = row.created_at

        entries = [
            ErrorAnalysisEntry(
                error_message=message,
                count=group["count"],
                endpoints=sorted(group["endpoints"]),
                event_types=sorted(group["event_types"]),
                last_occurrence=group["last_occurrence"],
            )
            for message, group in groups.items()
        ]
        entries.sort(key=lambda entry: entry.count, reverse=True)
        return entries

    async def cleanup_old_records(self, older_than_days: int = 30) -> int:
        """Hard-delete rows older than the cutoff."""
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        try:
            async with self.db.get_session() as session:
                result = await session.execute(
                    delete(WebhookDeliveryRecord).where(WebhookDeliveryRecord.created_at < cutoff)
                )
                await session.commit()
            deleted = result.rowcount or 0
            logger.info("Cleaned up old webhook deliveries", deleted=deleted, older_than_days=older_than_days)
            return deleted
        except Exception as e:
            logger.error("Failed to clean up webhook deliveries", error=str(e))
            return 0
