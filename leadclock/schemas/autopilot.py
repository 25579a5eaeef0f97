"""
Autopilot schemas - requests, results and the persisted conversation state.
"""
import uuid
from typing import Optional, Dict, List
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, field_validator

from leadclock.models.autopilot import RunNodes


class ConversationState(BaseModel):
    """Fixed-schema state persisted in AutopilotRun.state_json."""
    node: str = RunNodes.START
    answers: Dict[str, str] = {}
    question_index: int = 0

    @classmethod
    def reset(cls) -> "ConversationState":
        return cls()

    @classmethod
    def load(cls, raw: Optional[dict]) -> "ConversationState":
        raw = raw or {}
        answers = raw.get("answers") or {}
        return cls(
            node=raw.get("node") or RunNodes.START,
            answers={str(k): str(v) for k, v in answers.items() if v is not None},
            question_index=int(raw.get("question_index", raw.get("questionIndex", 0)) or 0),
        )


class AutopilotDecision(BaseModel):
    """
    Planner output. Accepts the camelCase keys the model is asked to produce.
    """
    model_config = ConfigDict(populate_by_name=True)

    next_text: str = Field(default="", alias="nextText")
    intent: Optional[str] = None
    answers: Dict[str, str] = {}
    should_handover: bool = Field(default=False, alias="shouldHandover")
    handover_reason: Optional[str] = Field(default=None, alias="handoverReason")

    @field_validator("answers", mode="before")
    @classmethod
    def _stringify_answers(cls, value):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("answers must be an object")
        return {str(k): str(v) for k, v in value.items() if v not in (None, "")}

    @field_validator("next_text", mode="before")
    @classmethod
    def _strip_text(cls, value):
        return "" if value is None else str(value).strip()


class AutopilotStartRequest(BaseModel):
    lead_id: uuid.UUID
    scenario_id: Optional[uuid.UUID] = None


class AutopilotReplyRequest(BaseModel):
    lead_id: uuid.UUID
    text: str = Field(..., min_length=1, max_length=4000)


class SwitchScenarioRequest(BaseModel):
    scenario_id: uuid.UUID


class AutopilotRunResponse(BaseModel):
    id: uuid.UUID
    lead_id: uuid.UUID
    workspace_id: uuid.UUID
    scenario_id: uuid.UUID
    status: str
    current_step: str
    state_json: dict
    revision: int
    last_inbound_at: Optional[datetime]
    last_outbound_at: Optional[datetime]

    class Config:
        from_attributes = True


class AutopilotStartResult(BaseModel):
    run: AutopilotRunResponse
    created: bool
    queued_message_id: Optional[uuid.UUID] = None
    message_blocked: bool = False
    blocked_reason: Optional[str] = None


class AutopilotReplyResult(BaseModel):
    run_id: uuid.UUID
    status: str
    node: str
    handed_over: bool = False
    handover_reason: Optional[str] = None
    queued_message_id: Optional[uuid.UUID] = None
    message_blocked: bool = False
    blocked_reason: Optional[str] = None
    stale: bool = False
    decision: Optional[AutopilotDecision] = None


class ScenarioResponse(BaseModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    name: str
    scenario_type: str
    mode: str
    max_questions: int
    is_default: bool
    agent_name: Optional[str]
    company_name: Optional[str]
    handover_user_id: Optional[uuid.UUID]
    required_slots: List[str]

    class Config:
        from_attributes = True


class SetDefaultResult(BaseModel):
    scenario_id: uuid.UUID
    migrated_runs: int
    audited: bool
