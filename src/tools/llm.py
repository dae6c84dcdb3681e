"""
LLM completion provider interface.

``OpenAIProvider`` talks to the chat completions API through the official
``openai`` SDK. ``ScriptedLLMProvider`` replays canned completions for tests
and the offline console demo. Both report every failure mode (timeout,
API error, empty text) as ``ProviderUnavailableError`` so callers can treat
them uniformly as "unavailable".
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Union

import openai
from openai import AsyncOpenAI

from src.config import settings

logger = logging.getLogger(__name__)

Message = dict[str, str]


class ProviderUnavailableError(Exception):
    """The LLM could not produce a usable completion."""


@dataclass(frozen=True)
class LLMResponse:
    text: str


class LLMProvider(Protocol):
    async def complete(
        self, messages: list[Message], temperature: float, max_tokens: int
    ) -> LLMResponse:
        ...


class OpenAIProvider:
    """Chat completions via the OpenAI SDK."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._model = model or settings.model.llm_model
        self._client = AsyncOpenAI(
            api_key=api_key or settings.model.api_key,
            timeout=timeout or settings.timeouts.llm_sec,
            max_retries=0,
        )

    async def complete(
        self, messages: list[Message], temperature: float, max_tokens: int
    ) -> LLMResponse:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,  # type: ignore[arg-type]
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            raise ProviderUnavailableError(f"{type(e).__name__}: {e}") from e

        text = (response.choices[0].message.content or "") if response.choices else ""
        if not text.strip():
            raise ProviderUnavailableError("empty completion")
        return LLMResponse(text=text)


ScriptedReply = Union[str, None, Exception]


@dataclass
class ScriptedLLMProvider:
    """Returns queued replies in order.

    A ``None`` entry (or an exhausted queue) behaves like an outage, and an
    exception entry is raised as-is. ``responder`` may compute replies from
    the messages instead of a fixed queue.
    """

    replies: list[ScriptedReply] = field(default_factory=list)
    responder: Optional[Callable[[list[Message]], ScriptedReply]] = None
    calls: list[list[Message]] = field(default_factory=list)

    async def complete(
        self, messages: list[Message], temperature: float, max_tokens: int
    ) -> LLMResponse:
        self.calls.append(messages)
        if self.responder is not None:
            reply = self.responder(messages)
        elif self.replies:
            reply = self.replies.pop(0)
        else:
            reply = None
        if isinstance(reply, Exception):
            raise reply
        if reply is None or not reply.strip():
            raise ProviderUnavailableError("no scripted completion")
        return LLMResponse(text=reply)
