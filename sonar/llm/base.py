"""
Provider interface for result analysis.

Every model call Sonar makes is a short, single-turn classification of one
post, so providers only need to accept a system prompt plus a user prompt,
optionally force a JSON reply, and report token usage for the AI ledger.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


def usage_dict(prompt_tokens: int | None, completion_tokens: int | None, total_tokens: int | None = None) -> dict[str, int]:
    """Normalize provider token counts into the ledger's usage shape."""
    prompt = prompt_tokens or 0
    completion = completion_tokens or 0
    return {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": total_tokens if total_tokens is not None else prompt + completion,
    }


def build_chat(prompt: str, system_prompt: str | None = None) -> list[dict[str, str]]:
    """Role-tagged chat for one classification: optional system message, then the prompt."""
    chat = []
    if system_prompt:
        chat.append({"role": "system", "content": system_prompt})
    chat.append({"role": "user", "content": prompt})
    return chat


@dataclass
class LLMResponse:
    """Reply text plus the token usage recorded against the user's budget."""
    content: str
    model: str
    usage: dict[str, int] | None = None
    raw_response: Any = None

    @property
    def prompt_tokens(self) -> int:
        return (self.usage or {}).get("prompt_tokens", 0)

    @property
    def completion_tokens(self) -> int:
        return (self.usage or {}).get("completion_tokens", 0)

    @property
    def token_count(self) -> int:
        if self.usage:
            return self.usage.get("total_tokens", self.prompt_tokens + self.completion_tokens)
        return 0


class LLMProvider(ABC):
    """A model backend the analyzer can send classification prompts to."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier, also used to look up per-token pricing."""
        pass

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Send one request and return the reply.

        Args:
            prompt: The classification prompt for one post.
            system_prompt: Instructions for the model.
            temperature: Sampling temperature.
            max_tokens: Completion cap; the budget gate reserves this much.
            json_mode: Ask the model for a single JSON object.

        Raises whatever the backing SDK raises; the dispatcher records the
        failure and moves on to the next result.
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        pass
