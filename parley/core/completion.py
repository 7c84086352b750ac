"""
Completion Client - wraps ``AsyncOpenAI`` chat completions.

Turns a conversation's ordered turns into a single chat-completion request
(system instruction first, then one message per turn) and returns the text
of the *last* choice in the response.  When ``n > 1`` the service returns
several candidates; the last one is authoritative.

There is no retry policy: the underlying client is built with
``max_retries=0`` and every failure surfaces as :class:`CompletionError`.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from parley.core.types import ROLE_SYSTEM, CompletionError, Conversation

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4"
DEFAULT_SYSTEM_PROMPT = (
    "You are a chatbot that helps people by responding to their questions "
    "with short messages."
)

_CONTEXT_TOO_LARGE_PHRASES = (
    "context length", "too many tokens", "maximum context",
    "token limit", "content too large", "payload too large",
)


@dataclass
class CompletionConfig:
    api_key: str
    model: str = DEFAULT_MODEL
    base_url: Optional[str] = None    # e.g. http://localhost:8080/v1
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    n: int = 1                        # candidate completions per request
    timeout: float = 60.0             # seconds


def classify_api_error(exc: Exception) -> str:
    """Return a short label for a provider exception, used in log lines."""
    status = getattr(exc, "status_code", None)
    if status == 429:
        return "rate-limited"
    if status == 413:
        return "context too large"
    if status == 400:
        msg = str(exc).lower()
        if any(phrase in msg for phrase in _CONTEXT_TOO_LARGE_PHRASES):
            return "context too large"
    if isinstance(exc, (openai.APITimeoutError, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(exc, openai.APIConnectionError):
        return "connection error"
    if status is not None:
        return f"HTTP {status}"
    return type(exc).__name__


def build_messages(conversation: Conversation, system_prompt: str) -> list[dict]:
    """System instruction followed by every turn in chronological order."""
    messages = [{"role": ROLE_SYSTEM, "content": system_prompt}]
    messages.extend(
        {"role": turn.role, "content": turn.content} for turn in conversation.turns
    )
    return messages


def last_choice_text(raw: Any) -> str:
    """Extract the reply from a ``ChatCompletion``: the last choice wins."""
    choices = getattr(raw, "choices", None)
    if not choices:
        raise CompletionError("completion response contained no choices")
    message = getattr(choices[-1], "message", None)
    content = getattr(message, "content", None)
    if not content:
        raise CompletionError("last completion choice has no content")
    return content


class CompletionClient:
    """Generates an assistant reply for a conversation."""

    def __init__(self, config: CompletionConfig, client: Optional[AsyncOpenAI] = None) -> None:
        self._cfg = config
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=0,
        )

    def _request_kwargs(self, conversation: Conversation) -> dict:
        kwargs: dict = {
            "model": self._cfg.model,
            "messages": build_messages(conversation, self._cfg.system_prompt),
            "timeout": self._cfg.timeout,
        }
        if self._cfg.n != 1:
            kwargs["n"] = self._cfg.n
        if self._cfg.max_tokens is not None:
            kwargs["max_tokens"] = self._cfg.max_tokens
        if self._cfg.temperature is not None:
            kwargs["temperature"] = self._cfg.temperature
        return kwargs

    async def complete(self, conversation: Conversation) -> str:
        """Request a completion over *conversation* and return the reply text.

        Raises :class:`CompletionError` on any service, network or timeout
        failure, and when the response carries no usable choice.
        """
        kwargs = self._request_kwargs(conversation)
        logger.debug("Requesting completion from %s over %d turn(s)",
                     self._cfg.model, len(conversation.turns))
        try:
            # Hard ceiling on top of the per-request HTTP timeout.
            raw = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs),
                timeout=self._cfg.timeout + 5,
            )
        except (openai.OpenAIError, asyncio.TimeoutError) as exc:
            raise CompletionError(
                f"{self._cfg.model} request failed ({classify_api_error(exc)}): {exc}"
            ) from exc
        return last_choice_text(raw)
