"""
Chat-completion provider backed by OpenAI.
"""
import asyncio
import logging
from typing import List, Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from leadclock.config import settings
from leadclock.core.exceptions import AIPlannerError
from leadclock.services.integrations.base import ChatCompletionProvider

logger = logging.getLogger(__name__)


class OpenAIChatProvider(ChatCompletionProvider):
    """
    OpenAI chat completions in JSON mode.
    Every call is bounded by AI_TIMEOUT_SECONDS.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.model = model or settings.AI_MODEL
        self.timeout = timeout or settings.AI_TIMEOUT_SECONDS
        api_key = api_key or settings.OPENAI_API_KEY
        self.client = AsyncOpenAI(api_key=api_key, timeout=self.timeout) if api_key else None

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        if not self.client:
            raise AIPlannerError("AI client not configured")

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format={"type": "json_object"},
                    temperature=0.2
                ),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise AIPlannerError(f"AI request timed out after {self.timeout}s") from e
        except OpenAIError as e:
            logger.error(f"OpenAI request failed: {type(e).__name__}")
            raise AIPlannerError(f"AI request failed: {type(e).__name__}") from e

        content = response.choices[0].message.content
        if not content:
            raise AIPlannerError("AI returned an empty response")
        return content
