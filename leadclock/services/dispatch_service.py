"""
Outbound message dispatch queue.
Messages are queued inside the caller's transaction and drained in batches.
Each QUEUED -> SENT/FAILED transition is a guarded update; there are no retries.
"""
import re
import uuid
import logging
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.models.event_log import EventTypes
from leadclock.models.outbound import OutboundMessage, MessageStatus, MessageRecipients, FailureReasons
from leadclock.models.proof import ProofTypes, ProofChannels
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.outbound_repo import OutboundMessageRepository, ProofEventRepository
from leadclock.schemas.messaging import DispatchSummary
from leadclock.services.integrations.base import MessagingProvider
from leadclock.services.integrations.messaging import get_messaging_provider

logger = logging.getLogger(__name__)

# Provider ids / credentials that must never be persisted
_SECRET_PATTERN = re.compile(r"TWILIO|sid|[A-Z]{2}[a-z0-9]{32}")


def sanitize_error_message(error: Exception) -> str:
    """Short, credential-free error text safe to store."""
    message = str(error) or ""
    if _SECRET_PATTERN.search(message):
        return FailureReasons.PROVIDER_ERROR
    cleaned = " ".join(message[:200].split())
    return cleaned or FailureReasons.PROVIDER_ERROR


class DispatchResult:
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class DispatchService:
    """Service for queueing and sending outbound WhatsApp messages."""

    def __init__(self, session: AsyncSession, provider: Optional[MessagingProvider] = None):
        self.session = session
        self._provider = provider
        self.message_repo = OutboundMessageRepository(session)
        self.proof_repo = ProofEventRepository(session)
        self.event_repo = EventLogRepository(session)

    @property
    def provider(self) -> MessagingProvider:
        if self._provider is None:
            self._provider = get_messaging_provider()
        return self._provider

    async def enqueue_message(
        self,
        lead_id: uuid.UUID,
        workspace_id: uuid.UUID,
        text: str,
        to_phone: Optional[str],
        recipient: str = MessageRecipients.LEAD
    ) -> OutboundMessage:
        """
        Create a QUEUED message and its message_queued event.
        Does not commit; the caller owns the transaction.
        """
        message = await self.message_repo.create({
            "lead_id": lead_id,
            "workspace_id": workspace_id,
            "recipient": recipient,
            "to_phone": to_phone,
            "text": text,
            "status": MessageStatus.QUEUED
        })
        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=workspace_id,
            event_type=EventTypes.MESSAGE_QUEUED,
            payload={
                "outbound_message_id": str(message.id),
                "recipient": recipient,
                "to_phone": to_phone
            }
        )
        return message

    async def dispatch_queued(self, limit: Optional[int] = None) -> DispatchSummary:
        """
        Send up to limit QUEUED messages, oldest first.
        Every message is handled in its own transaction.
        """
        limit = limit or settings.DISPATCH_BATCH_LIMIT
        queued = await self.message_repo.list_queued(limit)
        message_ids = [message.id for message in queued]
        await self.session.commit()

        summary = DispatchSummary()
        for message_id in message_ids:
            outcome = await self.dispatch_message(message_id)
            summary.processed += 1
            if outcome == DispatchResult.SENT:
                summary.sent += 1
            elif outcome == DispatchResult.FAILED:
                summary.failed += 1
            else:
                summary.skipped += 1

        if message_ids:
            logger.info(
                f"Dispatch batch: processed={summary.processed} sent={summary.sent} "
                f"failed={summary.failed} skipped={summary.skipped}"
            )
        return summary

    async def dispatch_message(self, message_id: uuid.UUID) -> str:
        """Send one message if it is still QUEUED."""
        message = await self.message_repo.get(message_id)
        if not message or message.status != MessageStatus.QUEUED:
            await self.session.rollback()
            return DispatchResult.SKIPPED

        to_phone = (message.to_phone or "").strip()
        if not to_phone:
            return await self._fail(message, FailureReasons.MISSING_TO_PHONE, None)

        # No transaction is held across the provider call
        await self.session.commit()
        try:
            result = await self.provider.send(to_phone, message.text)
        except Exception as e:
            logger.error(f"Provider send failed for message {message.id}: {sanitize_error_message(e)}")
            return await self._fail(message, FailureReasons.PROVIDER_ERROR, sanitize_error_message(e))

        moved = await self.message_repo.transition(message.id, MessageStatus.SENT, {
            "provider": result.provider,
            "provider_message_id": result.provider_message_id,
            "sent_at": result.sent_at
        })
        if not moved:
            await self.session.rollback()
            logger.warning(f"Message {message_id} left QUEUED concurrently, skipping")
            return DispatchResult.SKIPPED

        if message.recipient == MessageRecipients.LEAD:
            await self.proof_repo.create({
                "lead_id": message.lead_id,
                "workspace_id": message.workspace_id,
                "channel": ProofChannels.WHATSAPP,
                "provider": result.provider,
                "provider_message_id": result.provider_message_id,
                "type": ProofTypes.SENT,
                "occurred_at": result.sent_at
            })

        await self.event_repo.append(
            lead_id=message.lead_id,
            workspace_id=message.workspace_id,
            event_type=EventTypes.MESSAGE_SENT,
            payload={
                "outbound_message_id": str(message.id),
                "provider": result.provider,
                "provider_message_id": result.provider_message_id,
                "to_phone": to_phone,
                "recipient": message.recipient
            },
            occurred_at=result.sent_at
        )
        await self.session.commit()
        return DispatchResult.SENT

    async def _fail(self, message: OutboundMessage, reason: str, error_message: Optional[str]) -> str:
        message_id = message.id
        moved = await self.message_repo.transition(message_id, MessageStatus.FAILED, {
            "failure_reason": reason,
            "error_message": error_message
        })
        if not moved:
            await self.session.rollback()
            logger.warning(f"Message {message_id} left QUEUED concurrently, skipping")
            return DispatchResult.SKIPPED

        payload = {"outbound_message_id": str(message.id), "reason": reason}
        if error_message:
            payload["error_message"] = error_message
        await self.event_repo.append(
            lead_id=message.lead_id,
            workspace_id=message.workspace_id,
            event_type=EventTypes.MESSAGE_FAILED,
            payload=payload
        )
        await self.session.commit()
        logger.warning(f"Message {message.id} failed: {reason}")
        return DispatchResult.FAILED
