"""
Proof service - records evidence of contact and stops the SLA clock.
"""
import uuid
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.core.exceptions import NotFoundError, ValidationError
from leadclock.models.event_log import EventTypes
from leadclock.models.proof import ProofEvent, ProofTypes, ProofChannels
from leadclock.models.sla import SLAStopReasons
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.lead_repo import LeadRepository
from leadclock.repositories.outbound_repo import OutboundMessageRepository, ProofEventRepository
from leadclock.schemas.messaging import DeliveryStatusResult
from leadclock.services.sla_service import SLAService

logger = logging.getLogger(__name__)

# Callback status -> (proof type, message column, SLA stop reason)
STATUS_MAP = {
    ProofTypes.DELIVERED: ("delivered_at", SLAStopReasons.PROOF_DELIVERED),
    ProofTypes.READ: ("read_at", SLAStopReasons.PROOF_READ),
}


class ProofService:
    """Service for delivery callbacks and manual proof."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.proof_repo = ProofEventRepository(session)
        self.message_repo = OutboundMessageRepository(session)
        self.lead_repo = LeadRepository(session)
        self.event_repo = EventLogRepository(session)
        self.sla_service = SLAService(session)

    async def record_delivery_status(
        self,
        lead_id: uuid.UUID,
        provider: str,
        provider_message_id: str,
        status: str
    ) -> DeliveryStatusResult:
        """
        Record a DELIVERED/READ receipt. Idempotent per
        (lead, whatsapp, provider_message_id, type); a duplicate never stops the clock.
        """
        proof_type = status.upper()
        if proof_type not in STATUS_MAP:
            raise ValidationError(f"unsupported status '{status}'", field="status")
        stamp_field, stop_reason = STATUS_MAP[proof_type]

        lead = await self.lead_repo.get(lead_id)
        if not lead:
            raise NotFoundError("Lead", str(lead_id), code="LEAD_NOT_FOUND")
        workspace_id = lead.workspace_id

        now = datetime.utcnow()
        existing = await self.proof_repo.get_by_key(
            lead_id, ProofChannels.WHATSAPP, provider_message_id, proof_type
        )
        if existing:
            return await self._reused(existing, workspace_id, provider, status, now)

        try:
            proof = await self.proof_repo.create({
                "lead_id": lead_id,
                "workspace_id": workspace_id,
                "channel": ProofChannels.WHATSAPP,
                "provider": provider,
                "provider_message_id": provider_message_id,
                "type": proof_type,
                "is_manual": False,
                "occurred_at": now
            })
        except IntegrityError:
            # Duplicate callback raced us to the unique key
            await self.session.rollback()
            existing = await self.proof_repo.get_by_key(
                lead_id, ProofChannels.WHATSAPP, provider_message_id, proof_type
            )
            return await self._reused(existing, workspace_id, provider, status, now)

        await self.message_repo.stamp_status(lead_id, provider_message_id, stamp_field, now)
        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=workspace_id,
            event_type=EventTypes.PROOF_STATUS,
            payload={
                "provider": provider,
                "provider_message_id": provider_message_id,
                "status": proof_type,
                "proof_event_id": str(proof.id),
                "reused": False
            },
            occurred_at=now
        )
        proof_id = proof.id
        await self.session.commit()

        stop = await self.sla_service.stop_clock(lead_id, stop_reason, proof_id)
        logger.info(f"Proof {proof_type} recorded for lead {lead_id} (sla stopped: {not stop.already_stopped})")
        return DeliveryStatusResult(
            proof_event_id=proof_id,
            reused=False,
            sla_stopped=not stop.already_stopped
        )

    async def _reused(
        self,
        existing: ProofEvent,
        workspace_id: uuid.UUID,
        provider: str,
        status: str,
        now: datetime
    ) -> DeliveryStatusResult:
        await self.event_repo.append(
            lead_id=existing.lead_id,
            workspace_id=workspace_id,
            event_type=EventTypes.PROOF_STATUS,
            payload={
                "provider": provider,
                "provider_message_id": existing.provider_message_id,
                "status": existing.type,
                "proof_event_id": str(existing.id),
                "reused": True
            },
            occurred_at=now
        )
        await self.session.commit()
        logger.info(f"Duplicate {status} callback for lead {existing.lead_id}, proof reused")
        return DeliveryStatusResult(proof_event_id=existing.id, reused=True, sla_stopped=False)

    async def record_manual_proof(
        self,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        channel: str = ProofChannels.PHONE,
        note: Optional[str] = None
    ) -> ProofEvent:
        """Agent-entered proof of contact; stops the SLA clock."""
        lead = await self.lead_repo.get_in_workspace(workspace_id, lead_id)
        if not lead:
            raise NotFoundError("Lead", str(lead_id), code="LEAD_NOT_FOUND")

        now = datetime.utcnow()
        proof = await self.proof_repo.create({
            "lead_id": lead_id,
            "workspace_id": workspace_id,
            "channel": channel,
            "provider": "manual",
            "provider_message_id": f"manual-{uuid.uuid4()}",
            "type": ProofTypes.DELIVERED,
            "is_manual": True,
            "note": note,
            "actor_user_id": user_id,
            "occurred_at": now
        })
        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=workspace_id,
            event_type=EventTypes.PROOF_MANUAL,
            payload={"proof_event_id": str(proof.id), "channel": channel, "note": note},
            actor_user_id=user_id,
            occurred_at=now
        )
        await self.session.commit()

        await self.sla_service.stop_clock(lead_id, SLAStopReasons.PROOF_MANUAL, proof.id)
        return proof
