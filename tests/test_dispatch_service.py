"""
Unit tests for the outbound dispatch queue and delivery proof callbacks.
"""
import uuid
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from leadclock.core.exceptions import ValidationError, NotFoundError
from leadclock.models.event_log import EventTypes
from leadclock.models.outbound import OutboundMessage, MessageStatus, MessageRecipients, FailureReasons
from leadclock.models.proof import ProofEvent, ProofTypes, ProofChannels
from leadclock.models.sla import SLAStopReasons
from leadclock.repositories.outbound_repo import OutboundMessageRepository
from leadclock.services.dispatch_service import DispatchService, DispatchResult, sanitize_error_message
from leadclock.services.proof_service import ProofService
from leadclock.services.sla_service import SLAService
from tests.factories import FakeMessagingProvider, add_lead, add_clock, events_of


class CrashingMessagingProvider(FakeMessagingProvider):
    """Raises a non-provider error for the given phones."""

    def __init__(self, errors: dict):
        super().__init__()
        self.errors = errors

    async def send(self, to_phone, text):
        if to_phone in self.errors:
            raise self.errors[to_phone]
        return await super().send(to_phone, text)


class RacingMessagingProvider(FakeMessagingProvider):
    """Another dispatcher marks the message SENT while this send is in flight."""

    def __init__(self, session_factory):
        super().__init__()
        self.session_factory = session_factory

    async def send(self, to_phone, text):
        async with self.session_factory() as other:
            await OutboundMessageRepository(other).guarded_update(
                OutboundMessage.to_phone == to_phone,
                OutboundMessage.status == MessageStatus.QUEUED,
                values={"status": MessageStatus.SENT, "provider": "other", "provider_message_id": "other-1"}
            )
            await other.commit()
        return await super().send(to_phone, text)


async def queue(session, lead, to_phone, text="Hello", recipient=MessageRecipients.LEAD):
    message = await DispatchService(session).enqueue_message(
        lead_id=lead.id,
        workspace_id=lead.workspace_id,
        text=text,
        to_phone=to_phone,
        recipient=recipient
    )
    await session.commit()
    return message


class TestSanitizeErrorMessage:

    def test_credentials_are_replaced(self):
        error = Exception("Authentication failed for AC" + "a" * 32)
        assert sanitize_error_message(error) == FailureReasons.PROVIDER_ERROR

    def test_plain_message_is_truncated(self):
        error = Exception("timeout  while\nconnecting " + "x" * 300)
        cleaned = sanitize_error_message(error)
        assert cleaned.startswith("timeout while connecting")
        assert len(cleaned) <= 200


class TestDispatchQueued:

    @pytest.mark.asyncio
    async def test_counts_and_missing_phone(self, session, workspace, messaging_provider):
        lead = await add_lead(session, workspace)
        await queue(session, lead, "+40712345678", "one")
        missing = await queue(session, lead, None, "two")
        await queue(session, lead, "+40712345678", "three")

        summary = await DispatchService(session, messaging_provider).dispatch_queued(10)

        assert (summary.processed, summary.sent, summary.failed) == (3, 2, 1)
        failed = await OutboundMessageRepository(session).get(missing.id)
        assert failed.status == MessageStatus.FAILED
        assert failed.failure_reason == FailureReasons.MISSING_TO_PHONE
        assert sorted(text for _, text in messaging_provider.sent) == ["one", "three"]

    @pytest.mark.asyncio
    async def test_sent_message_records_proof_and_event(self, session, workspace, messaging_provider):
        lead = await add_lead(session, workspace)
        message = await queue(session, lead, "+40712345678")

        outcome = await DispatchService(session, messaging_provider).dispatch_message(message.id)

        assert outcome == DispatchResult.SENT
        sent = await OutboundMessageRepository(session).get(message.id)
        assert sent.status == MessageStatus.SENT
        assert sent.provider == "fake"
        assert sent.provider_message_id == "fake-1"
        proofs = (await session.exec(select(ProofEvent))).all()
        assert len(proofs) == 1
        assert proofs[0].type == ProofTypes.SENT
        assert len(await events_of(session, lead.id, EventTypes.MESSAGE_SENT)) == 1

    @pytest.mark.asyncio
    async def test_agent_messages_are_not_proof_of_contact(self, session, workspace, messaging_provider):
        lead = await add_lead(session, workspace)
        message = await queue(session, lead, "+40700000001", recipient=MessageRecipients.AGENT)

        await DispatchService(session, messaging_provider).dispatch_message(message.id)

        assert (await session.exec(select(ProofEvent))).all() == []

    @pytest.mark.asyncio
    async def test_provider_error_fails_message(self, session, workspace):
        lead = await add_lead(session, workspace)
        message = await queue(session, lead, "+40799999999")
        provider = FakeMessagingProvider(fail_for={"+40799999999"})

        summary = await DispatchService(session, provider).dispatch_queued()

        assert summary.failed == 1
        failed = await OutboundMessageRepository(session).get(message.id)
        assert failed.failure_reason == FailureReasons.PROVIDER_ERROR
        assert failed.error_message
        assert len(await events_of(session, lead.id, EventTypes.MESSAGE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_fails_only_that_message(self, session, workspace):
        lead = await add_lead(session, workspace)
        timed_out = await queue(session, lead, "+40799999999", "a")
        delivered = await queue(session, lead, "+40712345678", "b")
        provider = CrashingMessagingProvider({"+40799999999": asyncio.TimeoutError()})

        summary = await DispatchService(session, provider).dispatch_queued(10)

        assert (summary.processed, summary.sent, summary.failed) == (2, 1, 1)
        repo = OutboundMessageRepository(session)
        failed = await repo.get(timed_out.id)
        assert failed.status == MessageStatus.FAILED
        assert failed.failure_reason == FailureReasons.PROVIDER_ERROR
        assert (await repo.get(delivered.id)).status == MessageStatus.SENT
        assert len(await events_of(session, lead.id, EventTypes.MESSAGE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_stored_as_provider_error(self, session, workspace):
        lead = await add_lead(session, workspace)
        message = await queue(session, lead, "+40799999999")
        provider = CrashingMessagingProvider({"+40799999999": ConnectionError("connection refused")})

        outcome = await DispatchService(session, provider).dispatch_message(message.id)

        assert outcome == DispatchResult.FAILED
        failed = await OutboundMessageRepository(session).get(message.id)
        assert failed.error_message == "connection refused"

    @pytest.mark.asyncio
    async def test_lost_race_after_send_writes_nothing(self, session, session_factory, workspace):
        lead = await add_lead(session, workspace)
        lead_id = lead.id
        message = await queue(session, lead, "+40712345678")
        message_id = message.id
        provider = RacingMessagingProvider(session_factory)

        summary = await DispatchService(session, provider).dispatch_queued(10)

        assert (summary.processed, summary.sent, summary.failed, summary.skipped) == (1, 0, 0, 1)
        assert len(provider.sent) == 1
        stored = await OutboundMessageRepository(session).get(message_id)
        assert stored.provider_message_id == "other-1"
        assert (await session.exec(select(ProofEvent))).all() == []
        assert await events_of(session, lead_id, EventTypes.MESSAGE_SENT) == []

    @pytest.mark.asyncio
    async def test_message_is_sent_once(self, session, workspace, messaging_provider):
        lead = await add_lead(session, workspace)
        message = await queue(session, lead, "+40712345678")
        service = DispatchService(session, messaging_provider)

        first = await service.dispatch_message(message.id)
        second = await service.dispatch_message(message.id)
        summary = await service.dispatch_queued()

        assert first == DispatchResult.SENT
        assert second == DispatchResult.SKIPPED
        assert summary.processed == 0
        assert len(messaging_provider.sent) == 1

    @pytest.mark.asyncio
    async def test_limit_takes_oldest_first(self, session, workspace, messaging_provider):
        lead = await add_lead(session, workspace)
        for i in range(3):
            message = await queue(session, lead, "+40712345678", f"m{i}")
            await OutboundMessageRepository(session).guarded_update(
                OutboundMessage.id == message.id,
                values={"created_at": datetime(2026, 1, 5, 10, 0) + timedelta(minutes=i)}
            )
            await session.commit()

        summary = await DispatchService(session, messaging_provider).dispatch_queued(2)

        assert summary.processed == 2
        assert [text for _, text in messaging_provider.sent] == ["m0", "m1"]


class TestDeliveryStatus:

    @pytest.mark.asyncio
    async def test_delivered_stops_clock(self, session, workspace):
        lead = await add_lead(session, workspace)
        await add_clock(session, lead, datetime.utcnow())

        result = await ProofService(session).record_delivery_status(lead.id, "fake", "fake-1", "delivered")

        assert result.reused is False
        assert result.sla_stopped is True
        state = await SLAService(session).get_state(lead.id)
        assert state.stop_reason == SLAStopReasons.PROOF_DELIVERED
        assert state.stop_proof_event_id == result.proof_event_id

    @pytest.mark.asyncio
    async def test_duplicate_callback_is_reused(self, session, workspace):
        lead = await add_lead(session, workspace)
        await add_clock(session, lead, datetime.utcnow())
        service = ProofService(session)

        first = await service.record_delivery_status(lead.id, "fake", "fake-1", "DELIVERED")
        second = await service.record_delivery_status(lead.id, "fake", "fake-1", "DELIVERED")

        assert second.reused is True
        assert second.proof_event_id == first.proof_event_id
        assert second.sla_stopped is False
        assert len((await session.exec(select(ProofEvent))).all()) == 1
        assert len(await events_of(session, lead.id, EventTypes.SLA_STOPPED)) == 1
        assert len(await events_of(session, lead.id, EventTypes.PROOF_STATUS)) == 2

    @pytest.mark.asyncio
    async def test_read_after_delivered_keeps_first_stop(self, session, workspace):
        lead = await add_lead(session, workspace)
        await add_clock(session, lead, datetime.utcnow())
        service = ProofService(session)

        await service.record_delivery_status(lead.id, "fake", "fake-1", "DELIVERED")
        read = await service.record_delivery_status(lead.id, "fake", "fake-1", "READ")

        assert read.reused is False
        assert read.sla_stopped is False
        state = await SLAService(session).get_state(lead.id)
        assert state.stop_reason == SLAStopReasons.PROOF_DELIVERED

    @pytest.mark.asyncio
    async def test_callback_stamps_message(self, session, workspace, messaging_provider):
        lead = await add_lead(session, workspace)
        message = await queue(session, lead, "+40712345678")
        await DispatchService(session, messaging_provider).dispatch_message(message.id)

        await ProofService(session).record_delivery_status(lead.id, "fake", "fake-1", "READ")

        stamped = await OutboundMessageRepository(session).get(message.id)
        assert stamped.read_at is not None
        assert stamped.delivered_at is None

    @pytest.mark.asyncio
    async def test_unsupported_status(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(ValidationError):
            await ProofService(session).record_delivery_status(lead.id, "fake", "fake-1", "SENT")

    @pytest.mark.asyncio
    async def test_unknown_lead(self, session, workspace):
        with pytest.raises(NotFoundError):
            await ProofService(session).record_delivery_status(uuid.uuid4(), "fake", "fake-1", "READ")


class TestManualProof:

    @pytest.mark.asyncio
    async def test_manual_proof_stops_clock(self, session, workspace):
        lead = await add_lead(session, workspace)
        await add_clock(session, lead, datetime.utcnow())

        proof = await ProofService(session).record_manual_proof(
            workspace.id, lead.id, None, ProofChannels.PHONE, "Called, left voicemail"
        )

        assert proof.is_manual
        assert proof.provider_message_id.startswith("manual-")
        state = await SLAService(session).get_state(lead.id)
        assert state.stop_reason == SLAStopReasons.PROOF_MANUAL
        assert len(await events_of(session, lead.id, EventTypes.PROOF_MANUAL)) == 1

    @pytest.mark.asyncio
    async def test_other_workspace_is_not_found(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(NotFoundError):
            await ProofService(session).record_manual_proof(uuid.uuid4(), lead.id, None)
