"""Chat providers and retrieval-augmented prompt construction."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

import aiohttp
import openai

from studyrag.config import AppConfig
from studyrag.errors import GenerationError, ValidationError
from studyrag.models import RetrievedChunk

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful study assistant. Format your responses using markdown for better "
    "readability. Use code blocks, bullet points, and text emphasis where appropriate."
)

ChatMessage = Dict[str, str]


def build_messages(prompt: str, history: Sequence[ChatMessage] | None) -> List[ChatMessage]:
    """Assemble the provider message list.

    Without history a system prompt is prepended. With history the user turn is
    appended unless it is already the last message.
    """
    if not history:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
    messages = [dict(message) for message in history]
    last = messages[-1]
    if last.get("role") != "user" or last.get("content") != prompt:
        messages.append({"role": "user", "content": prompt})
    return messages


def build_rag_prompt(message: str, chunks: Sequence[RetrievedChunk]) -> str:
    sources = "\n\n".join(
        f"[Source {position}] {chunk.text}" for position, chunk in enumerate(chunks, start=1)
    )
    return (
        "Based on the following sources, please provide a response. For each piece of "
        "information you use, cite the source number (e.g., [Source 1], [Source 2], etc.).\n\n"
        "Format all math using LaTeX (use $...$ for inline math and $$...$$ for block math), "
        "and use Markdown for all formatting (italics, bold, lists, etc.). Separate paragraphs "
        "with double newlines.\n\n"
        f"Sources:\n{sources}\n\n"
        f"User question: {message}\n\n"
        "Please provide a comprehensive response that directly references the sources above."
    )


class ChatProvider(ABC):
    name: str = "base"

    @abstractmethod
    async def chat(self, prompt: str, history: Sequence[ChatMessage] | None = None) -> str:
        """Generate a reply to ``prompt`` given the prior conversation."""


class OpenAIChatProvider(ChatProvider):
    name = "openai"

    def __init__(self, *, model: str, timeout: float = 60.0, client: Any | None = None) -> None:
        self.model = model
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = openai.AsyncOpenAI(timeout=self.timeout)
            except openai.OpenAIError as exc:
                raise GenerationError(f"OpenAI client unavailable: {exc}") from exc
        return self._client

    async def chat(self, prompt: str, history: Sequence[ChatMessage] | None = None) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.model, messages=build_messages(prompt, history)
            )
        except openai.OpenAIError as exc:
            raise GenerationError(f"OpenAI chat request failed: {exc}") from exc
        if not completion.choices:
            raise GenerationError("OpenAI returned no choices")
        return completion.choices[0].message.content or ""


class OllamaChatProvider(ChatProvider):
    name = "ollama"

    def __init__(self, *, base_url: str, model: str, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    async def chat(self, prompt: str, history: Sequence[ChatMessage] | None = None) -> str:
        body = {"model": self.model, "messages": build_messages(prompt, history), "stream": False}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(f"{self.base_url}/api/chat", json=body) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        raise GenerationError(f"Ollama chat failed ({resp.status}): {text}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise GenerationError(f"Ollama chat request failed: {exc}") from exc

        message = data.get("message") or {}
        return message.get("content") or data.get("content") or ""


def create_chat_provider(name: str | None, config: AppConfig) -> ChatProvider:
    name = (name or config.chat_provider).strip().lower()
    if name == "openai":
        return OpenAIChatProvider(
            model=config.openai_chat_model, timeout=config.request_timeout_seconds
        )
    if name == "ollama":
        return OllamaChatProvider(
            base_url=config.ollama_base_url,
            model=config.ollama_chat_model,
            timeout=config.request_timeout_seconds,
        )
    raise ValidationError(f"Invalid model specified: {name}")
