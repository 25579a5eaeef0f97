# Models package - normalized database models
from leadclock.models.workspace import Workspace, WorkspaceMember, User
from leadclock.models.lead import Lead
from leadclock.models.sla import SLAState
from leadclock.models.escalation import EscalationEvent
from leadclock.models.proof import ProofEvent
from leadclock.models.autopilot import AutopilotScenario, AutopilotRun
from leadclock.models.outbound import OutboundMessage
from leadclock.models.agent_reply import PendingAgentReply
from leadclock.models.event_log import EventLog
