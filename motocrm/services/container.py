"""
Service composition - builds the constructed service objects once at startup.
Stored on app.state.services; tests build their own with fakes injected.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from motocrm.config import Settings
from motocrm.integrations.manychat import ManyChatClient
from motocrm.integrations.platform_base import ChatPlatformClient
from motocrm.services.bulk_sync import (
    BulkSyncOrchestrator,
    InMemoryProgressStore,
    ProgressStore,
    RedisProgressStore,
)
from motocrm.services.event_processor import EventProcessor
from motocrm.services.sync_queue import OutboundSyncQueue


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    platform: ChatPlatformClient
    processor: EventProcessor
    sync_queue: OutboundSyncQueue
    bulk_sync: BulkSyncOrchestrator


def build_progress_store(settings: Settings) -> ProgressStore:
    if settings.bulk_sync_progress_backend == "redis":
        return RedisProgressStore(ttl_seconds=settings.bulk_sync_progress_ttl_seconds)
    return InMemoryProgressStore(ttl_seconds=settings.bulk_sync_progress_ttl_seconds)


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    platform: Optional[ChatPlatformClient] = None,
    progress_store: Optional[ProgressStore] = None,
) -> Services:
    if session_factory is None:
        from motocrm.database import get_session_factory
        session_factory = get_session_factory()
    if platform is None:
        platform = ManyChatClient(
            api_key=settings.manychat_api_key,
            base_url=settings.manychat_base_url,
            timeout=settings.manychat_timeout_seconds,
        )

    processor = EventProcessor(session_factory, platform)
    sync_queue = OutboundSyncQueue(
        session_factory,
        platform,
        max_attempts=settings.sync_max_attempts,
        concurrency=settings.sync_drain_concurrency,
    )
    bulk_sync = BulkSyncOrchestrator(
        session_factory,
        platform,
        processor,
        progress_store=progress_store or build_progress_store(settings),
        item_delay=settings.bulk_sync_item_delay_ms / 1000.0,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        platform=platform,
        processor=processor,
        sync_queue=sync_queue,
        bulk_sync=bulk_sync,
    )
