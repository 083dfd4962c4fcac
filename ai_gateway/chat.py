"""Conversation-level entry point on top of the gateway."""

import logging
import time
from typing import Optional

from pydantic import BaseModel

from ai_gateway.core.models import MessageRole, Query
from ai_gateway.gateway import Gateway, GatewayOptions
from ai_gateway.storage.base import MessageStore

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class SendMessageResult(BaseModel):
    """Answer to one chat message."""

    conversation_id: str
    message_id: str
    response: str
    provider: str | None = None
    model: str
    tokens_in: int
    tokens_out: int
    cost_usd: float
    latency_ms: int
    cached: bool = False
    replayed: bool = False


class ChatService:
    """Sends chat messages through the gateway and keeps the conversation.

    History comes from the message store; quota checks and usage recording
    happen inside the gateway for the given user and request id. Sending the
    same request id twice in one conversation returns the stored answer
    without calling a provider again.
    """

    def __init__(
        self,
        gateway: Gateway,
        messages: MessageStore,
        history_limit: int = HISTORY_LIMIT,
        default_system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.gateway = gateway
        self.messages = messages
        self.history_limit = history_limit
        self.default_system_prompt = default_system_prompt

    async def send_message(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        request_id: Optional[str] = None,
        temperature: float = 0.7,
    ) -> SendMessageResult:
        """Answer a user message in a conversation.

        Args:
            user_id: User sending the message (charged for usage)
            conversation_id: Conversation the message belongs to
            content: Message text
            model: Model to force; chosen by complexity when None
            system_prompt: Overrides the default system prompt
            request_id: Idempotency key for the whole exchange
            temperature: Sampling temperature

        Returns:
            The assistant's answer and its accounting

        Raises:
            QuotaExceededError: If the user cannot afford the request
            AllProvidersFailedError: If no provider could answer
        """
        started = time.perf_counter()

        if request_id:
            previous = await self.messages.find_by_request_id(conversation_id, request_id)
            if previous is not None:
                logger.info(f"Replaying stored answer for request {request_id}")
                return SendMessageResult(
                    conversation_id=conversation_id,
                    message_id=previous.id,
                    response=previous.content,
                    model=previous.model or "unknown",
                    tokens_in=previous.prompt_tokens or 0,
                    tokens_out=previous.completion_tokens or 0,
                    cost_usd=0.0,
                    latency_ms=int((time.perf_counter() - started) * 1000),
                    cached=True,
                    replayed=True,
                )

        recent = await self.messages.get_recent_messages(conversation_id, self.history_limit)
        query = Query(
            text=content,
            model=model,
            user_id=user_id,
            request_id=request_id,
            history=[message.as_chat_message() for message in recent],
        )
        options = GatewayOptions(
            temperature=temperature,
            system_prompt=system_prompt or self.default_system_prompt,
        )

        result = await self.gateway.route_request(query, options)
        latency_ms = int((time.perf_counter() - started) * 1000)

        await self.messages.create_message(conversation_id, MessageRole.USER, content)
        assistant = await self.messages.create_message(
            conversation_id,
            MessageRole.ASSISTANT,
            result.content,
            model=result.model,
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
            latency_ms=latency_ms,
            request_id=request_id,
        )
        await self.messages.touch(conversation_id)

        return SendMessageResult(
            conversation_id=conversation_id,
            message_id=assistant.id,
            response=result.content,
            provider=result.provider,
            model=result.model,
            tokens_in=result.usage.prompt_tokens,
            tokens_out=result.usage.completion_tokens,
            cost_usd=result.usage.cost_usd,
            latency_ms=latency_ms,
            cached=result.cached,
        )
