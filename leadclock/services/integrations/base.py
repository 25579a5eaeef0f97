"""
Base interfaces for integration providers.
Abstract base classes for third-party service integrations.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict


@dataclass
class SendResult:
    """Outcome of a successful provider send."""
    provider: str
    provider_message_id: str
    sent_at: datetime = field(default_factory=datetime.utcnow)


class MessagingProvider(ABC):
    """Base interface for WhatsApp messaging providers (Twilio, stub, etc.)"""

    name: str = "base"

    @abstractmethod
    async def send(self, to_phone: str, text: str) -> SendResult:
        """
        Send a WhatsApp text message.

        Returns:
            SendResult with the provider's message id

        Raises:
            MessagingProviderError: when the provider rejects the message
        """
        pass


class ChatCompletionProvider(ABC):
    """Base interface for chat-completion LLM providers."""

    @abstractmethod
    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """
        Run a chat completion and return the raw assistant text.

        Args:
            messages: [{"role": "system" | "user" | "assistant", "content": str}]
        """
        pass
