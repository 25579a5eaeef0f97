"""
Autopilot scenario and run repositories.
"""
import uuid
from typing import Optional, List
from datetime import datetime

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.models.autopilot import AutopilotScenario, AutopilotRun, RunStatus
from leadclock.repositories.base import BaseRepository


class ScenarioRepository(BaseRepository[AutopilotScenario]):
    """Repository for AutopilotScenario operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(AutopilotScenario, session)

    async def get_default(self, workspace_id: uuid.UUID) -> Optional[AutopilotScenario]:
        query = select(AutopilotScenario).execution_options(populate_existing=True).where(
            AutopilotScenario.workspace_id == workspace_id,
            AutopilotScenario.is_default == True  # noqa: E712
        )
        result = await self.session.exec(query)
        return result.first()

    async def list_for_workspace(self, workspace_id: uuid.UUID) -> List[AutopilotScenario]:
        return await self.list(workspace_id=workspace_id, order_desc=False)

    async def clear_default(self, workspace_id: uuid.UUID, except_id: uuid.UUID) -> int:
        return await self.guarded_update(
            AutopilotScenario.workspace_id == workspace_id,
            AutopilotScenario.id != except_id,
            AutopilotScenario.is_default == True,  # noqa: E712
            values={"is_default": False, "updated_at": datetime.utcnow()}
        )

    async def mark_default(self, scenario_id: uuid.UUID) -> int:
        return await self.guarded_update(
            AutopilotScenario.id == scenario_id,
            values={"is_default": True, "updated_at": datetime.utcnow()}
        )


class AutopilotRunRepository(BaseRepository[AutopilotRun]):
    """Repository for AutopilotRun operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(AutopilotRun, session)

    async def get_by_lead(self, lead_id: uuid.UUID) -> Optional[AutopilotRun]:
        return await self.get_by_field("lead_id", lead_id)

    async def save_state(
        self,
        run_id: uuid.UUID,
        expected_revision: int,
        values: dict
    ) -> bool:
        """
        Persist a state write if the run is still ACTIVE at the loaded revision.
        Bumps the revision on success.
        """
        values = dict(values)
        values["revision"] = expected_revision + 1
        values["updated_at"] = datetime.utcnow()
        rows = await self.guarded_update(
            AutopilotRun.id == run_id,
            AutopilotRun.status == RunStatus.ACTIVE,
            AutopilotRun.revision == expected_revision,
            values=values
        )
        return rows == 1

    async def reset(self, run_id: uuid.UUID, scenario_id: uuid.UUID, state: dict) -> int:
        """Point a run at a scenario from the first node."""
        return await self.guarded_update(
            AutopilotRun.id == run_id,
            values={
                "scenario_id": scenario_id,
                "status": RunStatus.ACTIVE,
                "current_step": state["node"],
                "state_json": state,
                "revision": AutopilotRun.revision + 1,
                "updated_at": datetime.utcnow(),
            }
        )

    async def list_ids_for_workspace(self, workspace_id: uuid.UUID) -> List[tuple]:
        query = select(AutopilotRun.id, AutopilotRun.lead_id).where(
            AutopilotRun.workspace_id == workspace_id
        )
        result = await self.session.exec(query)
        return result.all()

    async def reset_all(self, workspace_id: uuid.UUID, scenario_id: uuid.UUID, state: dict) -> int:
        """Bulk migrate every run of a workspace to a scenario."""
        return await self.guarded_update(
            AutopilotRun.workspace_id == workspace_id,
            values={
                "scenario_id": scenario_id,
                "status": RunStatus.ACTIVE,
                "current_step": state["node"],
                "state_json": state,
                "revision": AutopilotRun.revision + 1,
                "updated_at": datetime.utcnow(),
            }
        )
