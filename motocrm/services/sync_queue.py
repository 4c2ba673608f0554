"""
Outbound sync queue - mirrors CRM-side changes (stage, tags, profile) on the chat platform.

State machine per record:
    pending -> in_progress -> succeeded
    pending -> in_progress -> failed -> pending (operator retry) -> in_progress -> ...

Every attempt first claims the record with a conditional UPDATE, so the
drain worker, an admin drain and enqueue() never push the same record twice.
A claim older than CLAIM_LEASE_SECONDS is considered abandoned (crashed
process) and may be taken over.

enqueue() writes the record and makes ONE immediate attempt. Failures are
never retried inline; the periodic drain picks them up. A platform outage
therefore never blocks or corrupts the CRM's own state.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from motocrm.integrations.platform_base import (
    ChatPlatformClient,
    SubscriberNotFoundError,
    PlatformError,
    SyncPushError,
)
from motocrm.models.lead import Lead, STAGE_TAGS, PIPELINE_TAGS
from motocrm.models.sync_record import SyncRecord, SyncStatus, SyncKind
from motocrm.schemas.webhook_payloads import SubscriberPayload
from motocrm.services.channel_detector import Channel, detect_channel
from motocrm.utils.alerting import AlertType, send_alert
from motocrm.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

MAX_DRAIN_ERRORS = 20
CLAIM_LEASE_SECONDS = 600
ORIGIN_CUSTOM_FIELD = "origen"

# Re-adding this tag re-fires the platform's pre-approval flow, so it is
# pushed even when the subscriber already carries it.
ALWAYS_PUSH_TAGS = frozenset({STAGE_TAGS["preapproved"]})


@dataclass
class DrainResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)


class OutboundSyncQueue:
    """Persistent queue of CRM -> platform synchronizations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        platform: ChatPlatformClient,
        max_attempts: int = 5,
        concurrency: int = 3,
    ):
        self.session_factory = session_factory
        self.platform = platform
        self.max_attempts = max_attempts
        self.concurrency = max(1, concurrency)

    async def enqueue(self, lead_id, kind: str, payload: dict, attempt: bool = True) -> SyncRecord:
        """Create a pending record and, by default, attempt it once right away."""
        if kind not in SyncKind.ALL:
            raise ValueError(f"Unknown sync kind: {kind}")

        async with self.session_factory() as session:
            record = SyncRecord(
                lead_id=lead_id,
                kind=kind,
                payload=payload or {},
                status=SyncStatus.PENDING,
                attempts=0,
                correlation_id=get_correlation_id(),
            )
            session.add(record)
            await session.commit()

        logger.info(
            "Sync record enqueued: %s", kind,
            extra={"lead_id": str(lead_id), "sync_record_id": str(record.id)},
        )
        if not attempt:
            return record
        return await self._attempt(record.id) or record

    async def drain_pending(self) -> DrainResult:
        """
        Re-attempt every pending record and every failed record with attempts
        left, with bounded concurrency. One record's failure never aborts the batch.
        """
        async with self.session_factory() as session:
            retryable = SyncRecord.status == SyncStatus.FAILED
            if self.max_attempts > 0:
                retryable = and_(retryable, SyncRecord.attempts < self.max_attempts)
            result = await session.execute(
                select(SyncRecord.id)
                .where(or_(SyncRecord.status == SyncStatus.PENDING, retryable, self._abandoned_claim()))
                .order_by(SyncRecord.created_at)
            )
            record_ids = list(result.scalars().all())

        drain = DrainResult()
        if not record_ids:
            return drain

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _drain_one(record_id):
            async with semaphore:
                try:
                    record = await self._attempt(record_id)
                    if record is None:
                        return
                    status, error, lead_id = record.status, record.last_error, record.lead_id
                except Exception as e:
                    # Store failure while recording the attempt
                    logger.error("Drain attempt crashed for %s: %s", record_id, str(e), exc_info=True)
                    status, error, lead_id = SyncStatus.FAILED, str(e), None

            drain.processed += 1
            if status == SyncStatus.SUCCEEDED:
                drain.succeeded += 1
                return
            drain.failed += 1
            if len(drain.errors) < MAX_DRAIN_ERRORS:
                drain.errors.append({
                    "record_id": str(record_id),
                    "lead_id": str(lead_id) if lead_id else None,
                    "error": error,
                })

        await asyncio.gather(*(_drain_one(rid) for rid in record_ids))

        logger.info(
            "Sync queue drained: processed=%d succeeded=%d failed=%d",
            drain.processed, drain.succeeded, drain.failed,
        )
        return drain

    async def get_stats(self) -> dict:
        """Record counts per status, plus total."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRecord.status, func.count(SyncRecord.id)).group_by(SyncRecord.status)
            )
            counts = {status: count for status, count in result.all()}

        stats = {
            SyncStatus.PENDING: counts.get(SyncStatus.PENDING, 0),
            SyncStatus.IN_PROGRESS: counts.get(SyncStatus.IN_PROGRESS, 0),
            SyncStatus.SUCCEEDED: counts.get(SyncStatus.SUCCEEDED, 0),
            SyncStatus.FAILED: counts.get(SyncStatus.FAILED, 0),
        }
        stats["total"] = sum(counts.values())
        return stats

    async def retry(self, record_id) -> Optional[SyncRecord]:
        """Operator retry: failed -> pending. Returns None if the record does not exist."""
        async with self.session_factory() as session:
            record = await session.get(SyncRecord, record_id)
            if record is None:
                return None
            if record.status == SyncStatus.FAILED:
                record.status = SyncStatus.PENDING
                await session.commit()
                logger.info("Sync record requeued", extra={"sync_record_id": str(record_id)})
            return record

    async def purge_succeeded(self, older_than_days: int) -> int:
        """Delete succeeded records completed more than N days ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SyncRecord).where(
                    SyncRecord.status == SyncStatus.SUCCEEDED,
                    SyncRecord.completed_at < cutoff,
                )
            )
            await session.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d succeeded sync records older than %d days", purged, older_than_days)
        return purged

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    @staticmethod
    def _abandoned_claim():
        stale = datetime.now(timezone.utc) - timedelta(seconds=CLAIM_LEASE_SECONDS)
        return and_(SyncRecord.status == SyncStatus.IN_PROGRESS, SyncRecord.updated_at < stale)

    async def _claim(self, record_id) -> bool:
        """Move a pending/failed record to in_progress and count the attempt, atomically."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncRecord)
                .where(
                    SyncRecord.id == record_id,
                    or_(
                        SyncRecord.status.in_((SyncStatus.PENDING, SyncStatus.FAILED)),
                        self._abandoned_claim(),
                    ),
                )
                .values(
                    status=SyncStatus.IN_PROGRESS,
                    attempts=SyncRecord.attempts + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def _attempt(self, record_id) -> Optional[SyncRecord]:
        """
        Push one record and persist the outcome. Platform errors are recorded,
        not raised. Returns None when the record is already succeeded or
        another worker holds it.
        """
        if not await self._claim(record_id):
            async with self.session_factory() as session:
                if await session.get(SyncRecord, record_id) is None:
                    raise SyncPushError(f"Sync record {record_id} not found")
            logger.debug("Sync record %s not claimable, skipping", record_id)
            return None

        async with self.session_factory() as session:
            record = await session.get(SyncRecord, record_id)
            lead = await session.get(Lead, record.lead_id)
            try:
                await self._push(record, lead)
            except (PlatformError, SyncPushError) as e:
                record.status = SyncStatus.FAILED
                record.last_error = str(e)[:1000]
            except Exception as e:
                logger.error("Unexpected sync push error: %s", str(e), exc_info=True)
                record.status = SyncStatus.FAILED
                record.last_error = f"{type(e).__name__}: {e}"[:1000]
            else:
                record.status = SyncStatus.SUCCEEDED
                record.last_error = None
                record.completed_at = datetime.now(timezone.utc)

            await session.commit()

        extra = {"lead_id": str(record.lead_id), "sync_record_id": str(record.id)}
        if record.status == SyncStatus.SUCCEEDED:
            logger.info("Sync %s succeeded (attempt %d)", record.kind, record.attempts, extra=extra)
        else:
            logger.warning(
                "Sync %s failed (attempt %d): %s", record.kind, record.attempts, record.last_error,
                extra=extra,
            )
            if self.max_attempts > 0 and record.attempts >= self.max_attempts:
                await send_alert(
                    AlertType.SYNC_ATTEMPTS_EXHAUSTED,
                    f"Sync record {record.id} ({record.kind}) failed {record.attempts} times: "
                    f"{record.last_error}",
                    extra=extra,
                )
        return record

    async def _push(self, record: SyncRecord, lead: Optional[Lead]) -> None:
        if lead is None:
            raise SyncPushError(f"Lead {record.lead_id} not found")
        if not lead.subscriber_id:
            raise SyncPushError(f"Lead {lead.id} has no subscriber id")

        payload = record.payload or {}
        if record.kind == SyncKind.STAGE_CHANGE:
            await self._push_stage_change(lead, payload)
        elif record.kind == SyncKind.TAG_CHANGE:
            await self._push_tag_change(lead, payload)
        elif record.kind == SyncKind.PROFILE_UPDATE:
            await self._push_profile_update(lead, payload)
        else:
            raise SyncPushError(f"Unknown sync kind: {record.kind}")

    async def _push_stage_change(self, lead: Lead, payload: dict) -> None:
        """
        Swap pipeline tags on the subscriber: drop every pipeline tag except
        the new stage's, keep business tags, add the new stage's tag.
        """
        new_stage = payload.get("new_stage")
        tag = STAGE_TAGS.get(new_stage)
        if tag is None:
            raise SyncPushError(f"Unknown pipeline stage: {new_stage}")

        raw = await self.platform.get_subscriber(lead.subscriber_id)
        if raw is None:
            raise SubscriberNotFoundError(f"Subscriber {lead.subscriber_id} not found")
        subscriber = SubscriberPayload.from_raw(raw)
        current = subscriber.tags if subscriber else []

        to_remove = [t for t in current if t in PIPELINE_TAGS and t != tag]
        if not to_remove and tag in current and tag not in ALWAYS_PUSH_TAGS:
            logger.debug("Subscriber already on stage tag %s", tag, extra={"lead_id": str(lead.id)})
            return

        for old in to_remove:
            await self.platform.remove_tag(lead.subscriber_id, old)
        await self.platform.add_tag(lead.subscriber_id, tag)

        channel = detect_channel(subscriber).detected
        if channel == Channel.UNKNOWN:
            channel = lead.source_channel
        if channel and channel != Channel.UNKNOWN:
            try:
                await self.platform.set_custom_field(lead.subscriber_id, ORIGIN_CUSTOM_FIELD, channel)
            except PlatformError as e:
                logger.warning(
                    "Could not set %s custom field: %s", ORIGIN_CUSTOM_FIELD, str(e),
                    extra={"lead_id": str(lead.id)},
                )

    async def _push_tag_change(self, lead: Lead, payload: dict) -> None:
        for tag in payload.get("remove") or []:
            await self.platform.remove_tag(lead.subscriber_id, tag)
        for tag in payload.get("add") or []:
            await self.platform.add_tag(lead.subscriber_id, tag)

    async def _push_profile_update(self, lead: Lead, payload: dict) -> None:
        fields = {k: v for k, v in (payload.get("fields") or {}).items() if v not in (None, "")}
        if fields:
            await self.platform.update_subscriber(lead.subscriber_id, fields)
        for name, value in (payload.get("custom_fields") or {}).items():
            await self.platform.set_custom_field(lead.subscriber_id, name, value)
