"""
Tests for motocrm/services/sync_queue.py and the drain worker.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from motocrm.integrations.platform_base import PlatformError, SyncPushError
from motocrm.models.lead import Lead
from motocrm.models.sync_record import SyncKind, SyncRecord, SyncStatus
from motocrm.services.sync_queue import OutboundSyncQueue
from motocrm.utils.logging import set_correlation_id
from motocrm.workers.sync_drain import drain_once

PHONE = "+543709876543"
STAGE_PAYLOAD = {"previous_stage": "new", "new_stage": "consulting"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _make_lead(session_factory, subscriber_id="sub_1", **kwargs) -> Lead:
    fields = dict(
        name="María Gómez", phone=PHONE, subscriber_id=subscriber_id,
        source_channel="whatsapp", tags=[], custom_fields={},
    )
    fields.update(kwargs)
    async with session_factory() as session:
        lead = Lead(**fields)
        session.add(lead)
        await session.commit()
    return lead


async def _get_record(session_factory, record_id) -> SyncRecord:
    async with session_factory() as session:
        return await session.get(SyncRecord, record_id)


def _outage():
    return PlatformError("ManyChat /fb/subscriber/addTag returned 503: down", status_code=503)


# ---------------------------------------------------------------------------
# Enqueue and immediate attempt
# ---------------------------------------------------------------------------

class TestEnqueue:
    async def test_stage_change_swaps_pipeline_tags(self, sync_queue, platform, session_factory):
        platform.add_subscriber(
            "sub_1", whatsapp_phone=PHONE,
            tags=[{"id": 1, "name": "lead-nuevo"}, {"id": 2, "name": "atencion-humana"}],
        )
        lead = await _make_lead(session_factory)

        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)

        assert record.status == SyncStatus.SUCCEEDED
        assert record.attempts == 1
        assert record.completed_at is not None
        assert platform.tag_names("sub_1") == ["atencion-humana", "lead-consultando"]
        assert platform.subscribers["sub_1"]["custom_fields"] == {"origen": "whatsapp"}

    async def test_platform_outage_marks_failed(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", phone=PHONE)
        platform.fail_next.append(_outage())
        lead = await _make_lead(session_factory)

        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)

        assert record.status == SyncStatus.FAILED
        assert record.attempts == 1
        assert "503" in record.last_error
        stored = await _get_record(session_factory, record.id)
        assert stored.status == SyncStatus.FAILED

    async def test_enqueue_without_attempt_stays_pending(self, sync_queue, platform, session_factory):
        lead = await _make_lead(session_factory)
        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD, attempt=False)
        assert record.status == SyncStatus.PENDING
        assert record.attempts == 0
        assert platform.calls == []

    async def test_unknown_kind_is_rejected(self, sync_queue, session_factory):
        lead = await _make_lead(session_factory)
        with pytest.raises(ValueError):
            await sync_queue.enqueue(lead.id, "delete_everything", {})

    async def test_records_correlation_id(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory)
        set_correlation_id("req-123")
        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
        assert record.correlation_id == "req-123"

    async def test_lead_without_subscriber_fails(self, sync_queue, session_factory):
        lead = await _make_lead(session_factory, subscriber_id=None)
        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
        assert record.status == SyncStatus.FAILED
        assert "no subscriber id" in record.last_error

    async def test_subscriber_missing_on_platform_fails(self, sync_queue, session_factory):
        lead = await _make_lead(session_factory, subscriber_id="ghost")
        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
        assert record.status == SyncStatus.FAILED
        assert "not found" in record.last_error


# ---------------------------------------------------------------------------
# Push semantics per kind
# ---------------------------------------------------------------------------

class TestPushSemantics:
    async def test_stage_already_applied_is_noop(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", tags=[{"id": 1, "name": "lead-consultando"}])
        lead = await _make_lead(session_factory)

        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)

        assert record.status == SyncStatus.SUCCEEDED
        assert not [c for c in platform.calls if c[0] in ("add_tag", "remove_tag")]

    async def test_preapproved_tag_is_always_pushed(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", tags=[{"id": 1, "name": "credito-preaprobado"}])
        lead = await _make_lead(session_factory)

        await sync_queue.enqueue(
            lead.id, SyncKind.STAGE_CHANGE,
            {"previous_stage": "ready_for_review", "new_stage": "preapproved"},
        )
        assert ("add_tag", "sub_1", "credito-preaprobado") in platform.calls

    async def test_business_tags_survive_stage_change(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", tags=[
            {"id": 1, "name": "venta-concretada"},
            {"id": 2, "name": "solicitud-en-proceso"},
            {"id": 3, "name": "credito-preaprobado"},
        ])
        lead = await _make_lead(session_factory)

        await sync_queue.enqueue(
            lead.id, SyncKind.STAGE_CHANGE, {"previous_stage": "preapproved", "new_stage": "approved"},
        )
        assert platform.tag_names("sub_1") == ["venta-concretada", "credito-aprobado"]

    async def test_unknown_stage_fails(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory)
        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, {"new_stage": "teleported"})
        assert record.status == SyncStatus.FAILED
        assert "teleported" in record.last_error

    async def test_origin_field_failure_does_not_fail_the_sync(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", whatsapp_phone=PHONE)
        platform.set_custom_field = AsyncMock(side_effect=_outage())
        lead = await _make_lead(session_factory)

        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)

        assert record.status == SyncStatus.SUCCEEDED
        assert platform.tag_names("sub_1") == ["lead-consultando"]

    async def test_origin_falls_back_to_lead_channel(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory, source_channel="instagram")
        await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
        assert ("set_custom_field", "sub_1", "origen", "instagram") in platform.calls

    async def test_tag_change(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", tags=[{"id": 1, "name": "lead-nuevo"}])
        lead = await _make_lead(session_factory)

        record = await sync_queue.enqueue(
            lead.id, SyncKind.TAG_CHANGE, {"add": ["atencion-humana"], "remove": ["lead-nuevo"]},
        )
        assert record.status == SyncStatus.SUCCEEDED
        assert platform.tag_names("sub_1") == ["atencion-humana"]

    async def test_profile_update_skips_empty_fields(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory)

        await sync_queue.enqueue(
            lead.id, SyncKind.PROFILE_UPDATE,
            {"fields": {"first_name": "Ana", "email": ""}, "custom_fields": {"dni": "30123456"}},
        )
        assert ("update_subscriber", "sub_1", {"first_name": "Ana"}) in platform.calls
        assert ("set_custom_field", "sub_1", "dni", "30123456") in platform.calls


# ---------------------------------------------------------------------------
# Drain, retry, stats, purge
# ---------------------------------------------------------------------------

class TestDrain:
    async def test_failed_record_succeeds_on_drain(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", tags=[{"id": 1, "name": "lead-nuevo"}])
        platform.fail_next.append(_outage())
        lead = await _make_lead(session_factory)
        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
        assert record.status == SyncStatus.FAILED

        result = await sync_queue.drain_pending()

        assert result.processed == 1
        assert result.succeeded == 1
        stored = await _get_record(session_factory, record.id)
        assert stored.status == SyncStatus.SUCCEEDED
        assert stored.attempts >= 2
        assert stored.last_error is None
        assert platform.tag_names("sub_1") == ["lead-consultando"]

    async def test_one_failure_does_not_abort_the_batch(self, sync_queue, platform, session_factory):
        platform.add_subscriber("ok")
        platform.failures["broken"] = _outage()
        good = await _make_lead(session_factory, subscriber_id="ok")
        bad = await _make_lead(session_factory, subscriber_id="broken", phone="+543705550000")
        await sync_queue.enqueue(good.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD, attempt=False)
        bad_record = await sync_queue.enqueue(bad.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD, attempt=False)

        result = await sync_queue.drain_pending()

        assert result.processed == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert result.errors[0]["record_id"] == str(bad_record.id)
        assert result.errors[0]["lead_id"] == str(bad.id)
        assert "503" in result.errors[0]["error"]

    async def test_exhausted_records_are_not_drained(self, session_factory, platform):
        queue = OutboundSyncQueue(session_factory, platform, max_attempts=2)
        platform.failures["sub_1"] = _outage()
        lead = await _make_lead(session_factory)

        with patch("motocrm.services.sync_queue.send_alert", new_callable=AsyncMock) as alert:
            record = await queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
            alert.assert_not_called()
            await queue.drain_pending()
            alert.assert_called_once()

            result = await queue.drain_pending()

        assert result.processed == 0
        stored = await _get_record(session_factory, record.id)
        assert stored.attempts == 2
        assert stored.status == SyncStatus.FAILED

    async def test_zero_max_attempts_means_unlimited(self, session_factory, platform):
        queue = OutboundSyncQueue(session_factory, platform, max_attempts=0)
        platform.failures["sub_1"] = _outage()
        lead = await _make_lead(session_factory)

        with patch("motocrm.services.sync_queue.send_alert", new_callable=AsyncMock) as alert:
            record = await queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
            for _ in range(3):
                await queue.drain_pending()
            alert.assert_not_called()

        assert (await _get_record(session_factory, record.id)).attempts == 4

    async def test_empty_queue(self, sync_queue):
        result = await sync_queue.drain_pending()
        assert result.processed == 0
        assert result.errors == []

    async def test_stats(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory)
        await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)
        await sync_queue.enqueue(lead.id, SyncKind.TAG_CHANGE, {"add": ["vip"]}, attempt=False)
        platform.failures["sub_1"] = _outage()
        await sync_queue.enqueue(lead.id, SyncKind.TAG_CHANGE, {"add": ["x"]})

        assert await sync_queue.get_stats() == {
            "pending": 1, "in_progress": 0, "succeeded": 1, "failed": 1, "total": 3,
        }

    async def test_retry_requeues_failed_record(self, sync_queue, platform, session_factory):
        platform.failures["sub_1"] = _outage()
        lead = await _make_lead(session_factory)
        record = await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD)

        retried = await sync_queue.retry(record.id)

        assert retried.status == SyncStatus.PENDING
        assert retried.attempts == 1
        assert (await _get_record(session_factory, record.id)).status == SyncStatus.PENDING

    async def test_retry_unknown_record(self, sync_queue):
        assert await sync_queue.retry(uuid.uuid4()) is None

    async def test_purge_succeeded(self, sync_queue, session_factory):
        lead = await _make_lead(session_factory)
        now = datetime.now(timezone.utc)
        async with session_factory() as session:
            session.add_all([
                SyncRecord(lead_id=lead.id, kind=SyncKind.TAG_CHANGE, payload={}, attempts=1,
                           status=SyncStatus.SUCCEEDED, completed_at=now - timedelta(days=40)),
                SyncRecord(lead_id=lead.id, kind=SyncKind.TAG_CHANGE, payload={}, attempts=1,
                           status=SyncStatus.SUCCEEDED, completed_at=now - timedelta(days=1)),
                SyncRecord(lead_id=lead.id, kind=SyncKind.TAG_CHANGE, payload={}, attempts=5,
                           status=SyncStatus.FAILED),
            ])
            await session.commit()

        assert await sync_queue.purge_succeeded(30) == 1

        async with session_factory() as session:
            remaining = (await session.execute(select(SyncRecord))).scalars().all()
        assert len(remaining) == 2


class TestClaiming:
    async def test_concurrent_drains_push_once(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1", tags=[{"id": 1, "name": "solicitud-en-proceso"}])
        lead = await _make_lead(session_factory)
        record = await sync_queue.enqueue(
            lead.id, SyncKind.STAGE_CHANGE,
            {"previous_stage": "ready_for_review", "new_stage": "preapproved"},
            attempt=False,
        )

        results = await asyncio.gather(sync_queue.drain_pending(), sync_queue.drain_pending())

        assert [c for c in platform.calls if c[0] == "add_tag"] == [
            ("add_tag", "sub_1", "credito-preaprobado"),
        ]
        assert sum(r.processed for r in results) == 1
        stored = await _get_record(session_factory, record.id)
        assert stored.status == SyncStatus.SUCCEEDED
        assert stored.attempts == 1

    @pytest.mark.parametrize("status", [SyncStatus.IN_PROGRESS, SyncStatus.SUCCEEDED])
    async def test_unclaimable_record_is_not_pushed(self, sync_queue, platform, session_factory, status):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory)
        async with session_factory() as session:
            record = SyncRecord(lead_id=lead.id, kind=SyncKind.TAG_CHANGE, payload={"add": ["vip"]},
                                attempts=1, status=status)
            session.add(record)
            await session.commit()

        assert await sync_queue._attempt(record.id) is None
        assert platform.calls == []
        assert (await _get_record(session_factory, record.id)).attempts == 1

    async def test_abandoned_claim_is_taken_over(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory)
        async with session_factory() as session:
            record = SyncRecord(lead_id=lead.id, kind=SyncKind.TAG_CHANGE, payload={"add": ["vip"]},
                                attempts=1, status=SyncStatus.IN_PROGRESS,
                                updated_at=datetime.now(timezone.utc) - timedelta(hours=1))
            session.add(record)
            await session.commit()

        result = await sync_queue.drain_pending()

        assert result.succeeded == 1
        stored = await _get_record(session_factory, record.id)
        assert stored.status == SyncStatus.SUCCEEDED
        assert stored.attempts == 2
        assert platform.tag_names("sub_1") == ["vip"]

    async def test_unknown_record_raises(self, sync_queue):
        with pytest.raises(SyncPushError):
            await sync_queue._attempt(uuid.uuid4())


class TestDrainWorker:
    async def test_drain_once_skips_empty_queue(self, sync_queue):
        with patch.object(sync_queue, "drain_pending", new_callable=AsyncMock) as drain:
            assert await drain_once(sync_queue) == 0
            drain.assert_not_called()

    async def test_drain_once_processes_due_records(self, sync_queue, platform, session_factory):
        platform.add_subscriber("sub_1")
        lead = await _make_lead(session_factory)
        await sync_queue.enqueue(lead.id, SyncKind.STAGE_CHANGE, STAGE_PAYLOAD, attempt=False)

        assert await drain_once(sync_queue) == 1
        assert (await sync_queue.get_stats())["succeeded"] == 1
