"""
Bulk sync orchestrator - operator-triggered backfill of subscriber data into Leads.

The chat platform has no "list all subscribers" API, so a run iterates the
Leads the CRM already knows and looks each one up (by subscriber id, then
by phone). Each found subscriber goes through the event processor: the
Lead is merged, its Conversation found or created with last_message_at taken
from the subscriber's last interaction, and the last known inbound text
stored under a stable id. A run is therefore idempotent and safe to restart.

start() returns a BulkSyncHandle immediately; progress is polled through an
injected ProgressStore (in-memory by default, Redis for multi-instance).
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from motocrm.integrations.platform_base import ChatPlatformClient
from motocrm.models.lead import Lead
from motocrm.schemas.webhook_payloads import SubscriberPayload
from motocrm.services.event_processor import EventProcessor
from motocrm.services.webhook_normalizer import parse_timestamp
from motocrm.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

MAX_PROGRESS_ERRORS = 10
DEFAULT_ITEM_DELAY = 0.05  # 50ms between subscribers, platform rate limit


class BulkSyncStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class BulkSyncProgress(BaseModel):
    sync_id: str
    status: str = BulkSyncStatus.RUNNING
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    # last known messages stored for the first time
    messages_synced: int = 0
    errors: list[dict] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status != BulkSyncStatus.RUNNING

    def add_error(self, lead_id: str, error: str) -> None:
        self.errors.append({"lead_id": lead_id, "error": error})
        if len(self.errors) > MAX_PROGRESS_ERRORS:
            self.errors = self.errors[-MAX_PROGRESS_ERRORS:]


# ---------------------------------------------------------------------------
# Progress stores
# ---------------------------------------------------------------------------

class ProgressStore(ABC):
    @abstractmethod
    async def get(self, sync_id: str) -> Optional[BulkSyncProgress]:
        ...

    @abstractmethod
    async def save(self, progress: BulkSyncProgress) -> None:
        ...


class InMemoryProgressStore(ProgressStore):
    """Process-local store. Finished runs are evicted ttl seconds after completion."""

    def __init__(self, ttl_seconds: float = 3600):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, tuple[BulkSyncProgress, Optional[float]]] = {}

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, (_, exp) in self._entries.items() if exp is not None and exp <= now]
        for key in expired:
            del self._entries[key]

    async def get(self, sync_id: str) -> Optional[BulkSyncProgress]:
        self._evict_expired()
        entry = self._entries.get(sync_id)
        if entry is None:
            return None
        return entry[0].model_copy(deep=True)

    async def save(self, progress: BulkSyncProgress) -> None:
        self._evict_expired()
        expires_at = time.monotonic() + self.ttl_seconds if progress.finished else None
        self._entries[progress.sync_id] = (progress.model_copy(deep=True), expires_at)


class RedisProgressStore(ProgressStore):
    """Shared store for multi-instance deployments. Every save refreshes the TTL."""

    def __init__(self, ttl_seconds: int = 3600, key_prefix: str = "motocrm:bulk_sync:"):
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    async def _redis(self):
        from motocrm.utils.redis_client import get_redis
        return await get_redis()

    async def get(self, sync_id: str) -> Optional[BulkSyncProgress]:
        redis = await self._redis()
        raw = await redis.get(f"{self.key_prefix}{sync_id}")
        if not raw:
            return None
        return BulkSyncProgress.model_validate_json(raw)

    async def save(self, progress: BulkSyncProgress) -> None:
        redis = await self._redis()
        await redis.set(
            f"{self.key_prefix}{progress.sync_id}",
            progress.model_dump_json(),
            ex=int(self.ttl_seconds),
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

@dataclass
class BulkSyncHandle:
    sync_id: str
    task: asyncio.Task
    cancel_event: asyncio.Event

    def cancel(self) -> None:
        """Request cooperative cancellation; checked between subscribers."""
        self.cancel_event.set()

    @property
    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> BulkSyncProgress:
        return await self.task


class BulkSyncOrchestrator:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        platform: ChatPlatformClient,
        processor: EventProcessor,
        progress_store: Optional[ProgressStore] = None,
        item_delay: float = DEFAULT_ITEM_DELAY,
    ):
        self.session_factory = session_factory
        self.platform = platform
        self.processor = processor
        self.progress_store = progress_store or InMemoryProgressStore()
        self.item_delay = item_delay
        self._handles: dict[str, BulkSyncHandle] = {}

    async def start(
        self,
        sync_id: Optional[str] = None,
        on_complete: Optional[Callable[[BulkSyncProgress], None]] = None,
    ) -> BulkSyncHandle:
        """Schedule a run in the background and return its handle immediately."""
        sync_id = sync_id or uuid.uuid4().hex
        existing = self._handles.get(sync_id)
        if existing is not None and not existing.done:
            return existing

        await self.progress_store.save(BulkSyncProgress(sync_id=sync_id))

        cancel_event = asyncio.Event()
        task = asyncio.create_task(self.run(sync_id, cancel_event), name=f"bulk-sync-{sync_id}")
        handle = BulkSyncHandle(sync_id=sync_id, task=task, cancel_event=cancel_event)
        self._handles[sync_id] = handle

        def _finished(t: asyncio.Task) -> None:
            self._handles.pop(sync_id, None)
            if on_complete is None or t.cancelled() or t.exception() is not None:
                return
            try:
                on_complete(t.result())
            except Exception as e:
                logger.error("Bulk sync completion callback failed: %s", str(e), extra={"sync_id": sync_id})

        task.add_done_callback(_finished)
        logger.info("Bulk sync started", extra={"sync_id": sync_id})
        return handle

    def cancel(self, sync_id: str) -> bool:
        handle = self._handles.get(sync_id)
        if handle is None or handle.done:
            return False
        handle.cancel()
        return True

    async def get_progress(self, sync_id: str) -> Optional[BulkSyncProgress]:
        return await self.progress_store.get(sync_id)

    async def shutdown(self) -> None:
        """Cancel running syncs and wait for them to record their final progress."""
        handles = [h for h in self._handles.values() if not h.done]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

    async def run(self, sync_id: str, cancel_event: Optional[asyncio.Event] = None) -> BulkSyncProgress:
        """Iterate known Leads and reconcile each with its subscriber. Never raises."""
        progress = await self.progress_store.get(sync_id) or BulkSyncProgress(sync_id=sync_id)
        progress.status = BulkSyncStatus.RUNNING

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Lead.id, Lead.subscriber_id, Lead.phone)
                    .where(or_(Lead.subscriber_id.is_not(None), Lead.phone.is_not(None)))
                    .order_by(Lead.created_at)
                )
                candidates = result.all()

            progress.total = len(candidates)
            await self.progress_store.save(progress)

            cancelled = False
            for index, (lead_id, subscriber_id, phone) in enumerate(candidates):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break

                await self._sync_lead(progress, str(lead_id), subscriber_id, phone)
                progress.processed += 1
                await self.progress_store.save(progress)

                if self.item_delay and index < len(candidates) - 1:
                    await asyncio.sleep(self.item_delay)

            progress.status = BulkSyncStatus.CANCELLED if cancelled else BulkSyncStatus.COMPLETED
        except Exception as e:
            logger.error("Bulk sync aborted: %s", str(e), exc_info=True, extra={"sync_id": sync_id})
            progress.status = BulkSyncStatus.ERROR
            progress.error = str(e)
            await send_alert(AlertType.BULK_SYNC_FAILED, f"Bulk sync {sync_id} aborted: {e}")
        finally:
            progress.completed_at = datetime.now(timezone.utc)
            await self.progress_store.save(progress)

        logger.info(
            "Bulk sync %s: processed=%d succeeded=%d failed=%d skipped=%d",
            progress.status, progress.processed, progress.succeeded, progress.failed, progress.skipped,
            extra={"sync_id": sync_id},
        )
        return progress

    async def _sync_lead(
        self,
        progress: BulkSyncProgress,
        lead_id: str,
        subscriber_id: Optional[str],
        phone: Optional[str],
    ) -> None:
        """One Lead. Not found -> skipped; any error -> failed with the Lead id."""
        try:
            raw = None
            if subscriber_id:
                raw = await self.platform.get_subscriber(subscriber_id)
            if raw is None and phone:
                raw = await self.platform.find_subscriber_by_phone(phone)

            subscriber = SubscriberPayload.from_raw(raw) if raw else None
            if subscriber is None or not (subscriber.id or subscriber.best_phone):
                progress.skipped += 1
                return

            result = await self.processor.process_subscriber_snapshot(
                subscriber, last_interaction=parse_timestamp(subscriber.last_interaction)
            )
            if not result.success:
                raise RuntimeError(result.error or "merge failed")
            progress.succeeded += 1
            if result.message_id and not result.duplicate:
                progress.messages_synced += 1
        except Exception as e:
            progress.failed += 1
            progress.add_error(lead_id, str(e))
            logger.warning(
                "Bulk sync failed for lead: %s", str(e),
                extra={"sync_id": progress.sync_id, "lead_id": lead_id},
            )
