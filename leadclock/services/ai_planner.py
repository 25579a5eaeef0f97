"""
Autopilot planners.

AIPlanner asks a chat-completion model for the next message as strict JSON.
RulesPlanner is the deterministic slot-filling script used by RULES scenarios.
Both return an AutopilotDecision and never touch the database.
"""
import re
import json
import asyncio
import logging
from typing import Optional, List, Dict

from pydantic import ValidationError as PydanticValidationError

from leadclock.config import settings
from leadclock.core.exceptions import AIPlannerError
from leadclock.models.autopilot import AutopilotScenario
from leadclock.models.lead import Lead
from leadclock.schemas.autopilot import AutopilotDecision, ConversationState
from leadclock.services.integrations.base import ChatCompletionProvider

logger = logging.getLogger(__name__)

DEFAULT_AUTOPILOT_PROMPT = """OBJECTIVE
You are {agent_name}, a sales representative for {company_name}. Answer quickly and move the lead towards a call or demo.

COMPANY
{company_description}

OFFER
{offer_summary}

BOOKING LINK (if any)
{calendar_link}

RULES
1) Keep messages short, at most 2-3 sentences.
2) Ask exactly one question per message.
3) Ask at most {maxQuestions} qualifying questions, then hand over to a human agent.
4) Never invent facts about the company. If you don't know, hand over.
5) Address the lead as {lead_name} when the name is known."""

CLOSING_TEXT = "Thank you! I'm connecting you with a colleague from {company_name}."

PROMPT_VARIABLES = (
    "agent_name",
    "company_name",
    "company_description",
    "offer_summary",
    "calendar_link",
    "lead_name",
)

COLLECTED_KEYS = ["intent", "name", "phone", "email", "service", "preferredTime"]

INTENT_KEYWORDS = [
    ("pricing", ("price", "pricing", "cost", "tarif", "quote")),
    ("booking", ("booking", "book", "calendar", "appointment", "meeting", "schedule")),
    ("contact", ("contact", "agent", "operator", "human", "call me")),
]

GREETINGS = ("hi", "hello", "hey", "hola", "ciao", "good morning", "good afternoon")

_PHONE_PATTERN = re.compile(r"^[\d+\s\-()]{7,}$")
_WORD_PATTERN = re.compile(r"^[^\W\d_]+$")


def build_scenario_prompt(
    template: str,
    max_questions: int,
    agent_name: Optional[str] = None,
    company_name: Optional[str] = None,
    company_description: Optional[str] = None,
    offer_summary: Optional[str] = None,
    calendar_link: Optional[str] = None,
    lead_name: Optional[str] = None
) -> str:
    """Replace {variable} placeholders; missing values become empty strings."""
    values = {
        "agent_name": agent_name,
        "company_name": company_name,
        "company_description": company_description,
        "offer_summary": offer_summary,
        "calendar_link": calendar_link,
        "lead_name": lead_name,
    }
    result = template
    for key in PROMPT_VARIABLES:
        result = result.replace("{" + key + "}", (values[key] or "").strip())
    return result.replace("{maxQuestions}", str(max_questions))


def detect_intent(text: str) -> str:
    lower = text.lower().strip()
    for intent, keywords in INTENT_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return intent
    return "other"


def is_likely_filling_slot(text: str) -> bool:
    """Email, phone number or a one/two word name rather than a request."""
    value = text.strip()
    if not value:
        return False
    if "@" in value and len(value) <= 80:
        return True
    if _PHONE_PATTERN.match(value):
        return True
    words = value.split()
    return len(words) <= 2 and len(value) <= 40 and all(_WORD_PATTERN.match(w) for w in words)


def is_greeting(text: str) -> bool:
    lower = text.lower().strip(" !.?")
    return lower in GREETINGS or any(lower.startswith(g + " ") for g in GREETINGS)


def next_missing_slot(answers: Dict[str, str], slots: Optional[List[str]] = None) -> Optional[str]:
    for key in slots or COLLECTED_KEYS:
        if not (answers.get(key) or "").strip():
            return key
    return None


def parse_decision(raw_text: str) -> AutopilotDecision:
    """Parse the model's JSON answer. Any malformed output raises AIPlannerError."""
    text = (raw_text or "").strip()
    # Clean markdown code blocks if present
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise AIPlannerError("AI response is not JSON")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise AIPlannerError(f"AI response is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise AIPlannerError("AI response is not a JSON object")

    try:
        decision = AutopilotDecision.model_validate(data)
    except PydanticValidationError as e:
        raise AIPlannerError(f"AI response failed validation: {e.error_count()} errors") from e

    if not decision.next_text and not decision.should_handover:
        raise AIPlannerError("AI response has no nextText")
    return decision


class AIPlanner:
    """Plans the next autopilot message with a chat-completion model."""

    def __init__(self, provider: ChatCompletionProvider, timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout

    def build_messages(
        self,
        scenario: AutopilotScenario,
        lead: Lead,
        state: ConversationState,
        reply_text: str,
        company_name: Optional[str] = None,
        company_description: Optional[str] = None
    ) -> List[Dict[str, str]]:
        prompt = build_scenario_prompt(
            scenario.ai_prompt or DEFAULT_AUTOPILOT_PROMPT,
            scenario.max_questions,
            agent_name=scenario.agent_name,
            company_name=scenario.company_name or company_name,
            company_description=scenario.company_description or company_description,
            offer_summary=scenario.offer_summary,
            calendar_link=scenario.calendar_link,
            lead_name=lead.first_name,
        )
        remaining = scenario.max_questions - state.question_index - 1

        system_parts = [
            "You are an assistant in a WhatsApp chat. Reply with ONLY valid JSON, no markdown.",
            "",
            "JSON schema:",
            '{"nextText": "string (max 600 chars)", "intent": "pricing"|"booking"|"contact"|"other", '
            '"answers": {}, "shouldHandover": boolean, "handoverReason": string|null}',
            "",
            "Rules:",
            "- One short message, ending with exactly one question. Never list numbered options.",
            f"- You have {remaining} question(s) left before handover. If that is 0 or less, set shouldHandover=true.",
        ]
        if scenario.required_slots:
            system_parts.append(
                f"- Collect these fields: {', '.join(scenario.required_slots)}. Store each in \"answers\". "
                "Set shouldHandover=true only when all are collected."
            )
        else:
            system_parts.append(
                "- Store name, phone, email, service and preferredTime in answers when the lead gives them."
            )
        if not is_likely_filling_slot(reply_text):
            system_parts.append(f"- Lead intent from keywords: {detect_intent(reply_text)}.")
        system_parts.extend(["", "Company context:", prompt])

        user_parts = []
        if lead.first_name or lead.email or lead.source:
            user_parts.append("Lead info:")
            if lead.first_name:
                user_parts.append(f"  Name: {lead.first_name}")
            if lead.email:
                user_parts.append(f"  Email: {lead.email}")
            if lead.source:
                user_parts.append(f"  Source: {lead.source}")
            user_parts.append("")
        user_parts.append(
            f"Conversation state: questionIndex={state.question_index}, maxQuestions={scenario.max_questions}"
        )
        user_parts.append(f"Collected so far: {json.dumps(state.answers)}")
        user_parts.append("")
        user_parts.append(f"Lead just replied: \"{reply_text}\"")
        user_parts.append("")
        user_parts.append("Respond with ONLY JSON.")

        return [
            {"role": "system", "content": "\n".join(system_parts)},
            {"role": "user", "content": "\n".join(user_parts)},
        ]

    async def plan(
        self,
        scenario: AutopilotScenario,
        lead: Lead,
        state: ConversationState,
        reply_text: str,
        company_name: Optional[str] = None,
        company_description: Optional[str] = None
    ) -> AutopilotDecision:
        messages = self.build_messages(
            scenario, lead, state, reply_text, company_name, company_description
        )
        timeout = self.timeout or settings.AI_TIMEOUT_SECONDS
        try:
            raw_text = await asyncio.wait_for(self.provider.complete(messages), timeout=timeout)
        except AIPlannerError:
            raise
        except asyncio.TimeoutError as e:
            raise AIPlannerError(f"AI request timed out after {timeout}s") from e
        except Exception as e:
            logger.error(f"Chat provider failed: {type(e).__name__}")
            raise AIPlannerError(f"AI request failed: {type(e).__name__}") from e

        try:
            return parse_decision(raw_text)
        except AIPlannerError:
            logger.warning(f"Malformed AI response ({len(raw_text or '')} chars)")
            raise


class RulesPlanner:
    """
    Deterministic qualification script.
    Fills one slot per reply in COLLECTED_KEYS order (or the scenario's
    required slots) and asks for the next missing one.
    """

    def plan(
        self,
        scenario: AutopilotScenario,
        lead: Lead,
        state: ConversationState,
        reply_text: str,
        company_name: Optional[str] = None
    ) -> AutopilotDecision:
        text = reply_text.strip()
        answers = dict(state.answers)
        update: Dict[str, str] = {}
        slots = list(scenario.required_slots or COLLECTED_KEYS)

        # A greeting or a free-text request answers nothing but the intent
        consumed = is_greeting(text)
        if not consumed and "intent" not in answers:
            if is_likely_filling_slot(text):
                update["intent"] = "other"
            else:
                update["intent"] = detect_intent(text)
                consumed = True

        if not consumed:
            slot = next_missing_slot({**answers, **update}, slots)
            if slot is None:
                update[f"q{state.question_index}_answer"] = text
            else:
                update[slot] = text

        merged = {**answers, **update}
        last_question = state.question_index + 1 >= scenario.max_questions
        remaining_slot = next_missing_slot(merged, slots)

        if last_question or remaining_slot is None:
            closing = CLOSING_TEXT.format(company_name=scenario.company_name or company_name or "our team")
            return AutopilotDecision(
                next_text=closing,
                intent=merged.get("intent"),
                answers=update,
                should_handover=True,
                handover_reason="qualification_complete" if remaining_slot is None else "max_questions",
            )

        return AutopilotDecision(
            next_text=self._question_for(remaining_slot, merged, lead),
            intent=merged.get("intent"),
            answers=update,
            should_handover=False,
        )

    def _question_for(self, slot: str, answers: Dict[str, str], lead: Lead) -> str:
        name = answers.get("name") or (lead.first_name or "").strip()
        prefix = f"{name}, " if name else ""
        if slot == "intent":
            return "What can I help you with today?"
        if slot == "name":
            return "What's your name?"
        if slot == "phone":
            return f"{prefix}what's the best phone number to reach you?"
        if slot == "email":
            return f"{prefix}what's your email address?"
        if slot == "service":
            intent = answers.get("intent", "other")
            if intent == "pricing":
                return f"{prefix}which service would you like pricing for?"
            if intent == "booking":
                return f"{prefix}which service would you like to book?"
            return f"{prefix}tell me briefly what you need."
        if slot == "preferredTime":
            return f"{prefix}which day or time works best for you?"
        return f"{prefix}could you tell me your {slot}?"
