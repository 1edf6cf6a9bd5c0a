"""
Session summarization providers using LLMs.
"""

import os

from .base import (
    SESSION_SUMMARY_SYSTEM_PROMPT,
    build_session_summary_prompt,
    get_registry,
)

# Snapshots are small; anything longer is truncated before sending
MAX_PROMPT_CHARS = 20000


class OpenAISummarization:
    """
    Summarization provider using OpenAI's chat API.

    Requires: RECALL_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    Default model is gpt-4o-mini.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        max_tokens: int = 200,
        temperature: float = 0.3,
        timeout: float = 60.0,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAISummarization requires 'openai' library")

        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

        key = api_key or os.environ.get("RECALL_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set RECALL_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=key, timeout=timeout, max_retries=0)

    def summarize(
        self,
        content: str,
        *,
        max_length: int = 500,
        context: str | None = None,
    ) -> str:
        """Summarize a session snapshot."""
        prompt = build_session_summary_prompt(content[:MAX_PROMPT_CHARS])
        text = self.generate(SESSION_SUMMARY_SYSTEM_PROMPT, prompt, max_tokens=self.max_tokens)
        if not text:
            raise RuntimeError("Empty summary from OpenAI")
        return text.strip()

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 4096,
    ) -> str | None:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=max_tokens,
            temperature=self.temperature,
        )
        return response.choices[0].message.content


class AnthropicSummarization:
    """
    Summarization provider using Anthropic's Claude API.

    Requires: ANTHROPIC_API_KEY environment variable (or api_key).
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
        max_tokens: int = 200,
    ):
        try:
            from anthropic import Anthropic
        except ImportError:
            raise RuntimeError("AnthropicSummarization requires 'anthropic' library")

        self.model = model
        self.max_tokens = max_tokens
        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError("Anthropic API key required. Set ANTHROPIC_API_KEY")
        self.client = Anthropic(api_key=key, max_retries=0)

    def summarize(
        self,
        content: str,
        *,
        max_length: int = 500,
        context: str | None = None,
    ) -> str:
        prompt = build_session_summary_prompt(content[:MAX_PROMPT_CHARS])
        text = self.generate(SESSION_SUMMARY_SYSTEM_PROMPT, prompt, max_tokens=self.max_tokens)
        if not text:
            raise RuntimeError("Empty summary from Anthropic")
        return text.strip()

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 4096,
    ) -> str | None:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        if response.content:
            return response.content[0].text
        return None


class PassthroughSummarization:
    """
    Summarization provider that renders the snapshot without an LLM.

    The readable prompt text (minus instructions) is truncated to
    `max_chars`. Useful offline and in tests.
    """

    def __init__(self, max_chars: int = 1000):
        self.max_chars = max_chars

    def summarize(
        self,
        content: str,
        *,
        max_length: int = 1000,
        context: str | None = None,
    ) -> str:
        rendered = build_session_summary_prompt(content).split("\n\n", 1)[-1]
        limit = min(self.max_chars, max_length)
        if len(rendered) <= limit:
            return rendered
        return rendered[:limit].rsplit(" ", 1)[0] + "..."

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 4096,
    ) -> str | None:
        """Passthrough has no LLM; return None."""
        return None


_registry = get_registry()
_registry.register_summarization("openai", OpenAISummarization)
_registry.register_summarization("anthropic", AnthropicSummarization)
_registry.register_summarization("passthrough", PassthroughSummarization)
