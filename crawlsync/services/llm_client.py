"""LLM client wrapper for OpenAI-compatible endpoints.

Configuration via environment variables:

- LLM_API_KEY / OPENAI_API_KEY
- LLM_BASE_URL (any OpenAI-compatible endpoint)
- LLM_MODEL (default: gpt-4o-mini)
- LLM_STRONG_MODEL (judge tier for the cleanup pass; defaults to LLM_MODEL)
- LLM_EMBED_MODEL (default: text-embedding-3-small)

Every pipeline stage depends on the `AIBackend` protocol rather than this
class, so tests pass in fakes.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from crawlsync.errors import BackendError, MalformedResponseError, PipelineError
from crawlsync.models.posts import EquivalenceJudgment

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

SUMMARY_SYSTEM_PROMPT = (
    "Summarize the web page for a directory of community services and needs. "
    "Write 3-6 sentences covering who runs it, what is offered or requested, "
    "who it is for, where and when, and how to get in touch. Plain text only."
)

JUDGE_SYSTEM_PROMPT = (
    "You decide whether two listings describe the same real-world service, program "
    "or request. Different dates, locations or audiences mean different listings. "
    "Answer with JSON {\"same\": bool, \"reason\": str}."
)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ToolTurn:
    """One assistant turn of a tool-calling conversation."""

    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    def as_message(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                }
                for c in self.tool_calls
            ]
        return msg


class AIBackend(Protocol):
    model: str

    async def summarize(self, content: str) -> str: ...

    async def embed(self, texts: List[str]) -> List[List[float]]: ...

    async def extract(self, system: str, user: str, schema: Type[T]) -> T: ...

    async def complete_with_tools(
        self, messages: List[Dict[str, Any]], tools: Sequence[Dict[str, Any]]
    ) -> ToolTurn: ...

    async def judge(self, a: str, b: str, *, strong: bool = False) -> bool: ...


def _translate_error(exc: Exception) -> PipelineError:
    if isinstance(
        exc,
        (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError),
    ):
        return BackendError(f"LLM backend unavailable: {exc}")
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return BackendError(f"LLM backend error {exc.status_code}: {exc}")
    return PipelineError(f"LLM request rejected: {exc}")


class LLMClient:
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        strong_model: Optional[str] = None,
        embed_model: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key or os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise RuntimeError("Missing LLM API key. Set LLM_API_KEY or OPENAI_API_KEY.")
        self.base_url = base_url or os.getenv("LLM_BASE_URL") or None
        self.model = model or os.getenv("LLM_MODEL") or "gpt-4o-mini"
        self.strong_model = strong_model or os.getenv("LLM_STRONG_MODEL") or self.model
        self.embed_model = embed_model or os.getenv("LLM_EMBED_MODEL") or "text-embedding-3-small"
        self.timeout = timeout

        if self.base_url:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, timeout=timeout)
        else:
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=timeout)

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 1200,
        model: Optional[str] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, Dict[str, Any], str]:
        """Generate a chat completion and return (text, usage, model)."""
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": float(temperature),
            "max_tokens": int(max_tokens),
        }
        if response_format:
            payload["response_format"] = response_format
        try:
            resp = await self._client.chat.completions.create(**payload)
        except openai.OpenAIError as exc:
            raise _translate_error(exc) from exc
        text = (resp.choices[0].message.content or "").strip() if resp.choices else ""
        usage = getattr(resp, "usage", None)
        usage_dict = usage.model_dump() if hasattr(usage, "model_dump") else (usage or {})
        return text, usage_dict, getattr(resp, "model", payload["model"]) or payload["model"]

    async def summarize(self, content: str) -> str:
        text, _usage, _model = await self.generate(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            max_tokens=400,
        )
        if not text:
            raise MalformedResponseError("LLM returned an empty summary")
        return text

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return embeddings for a list of input strings, in input order."""
        if not texts:
            return []
        try:
            resp = await self._client.embeddings.create(model=self.embed_model, input=texts)
        except openai.OpenAIError as exc:
            raise _translate_error(exc) from exc
        data = sorted(resp.data or [], key=lambda item: item.index)
        if len(data) != len(texts):
            raise MalformedResponseError(f"Expected {len(texts)} embeddings, got {len(data)}")
        return [list(item.embedding) for item in data]

    async def extract(self, system: str, user: str, schema: Type[T], *, model: Optional[str] = None) -> T:
        """Structured extraction: the reply must validate against `schema`."""
        response_format = {
            "type": "json_schema",
            "json_schema": {"name": schema.__name__, "schema": schema.model_json_schema()},
        }
        text, _usage, used_model = await self.generate(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            max_tokens=4000,
            temperature=0.0,
            model=model,
            response_format=response_format,
        )
        try:
            return schema.model_validate_json(text)
        except ValidationError as exc:
            logger.warning("Structured output from %s failed %s validation", used_model, schema.__name__)
            raise MalformedResponseError(f"{schema.__name__}: {exc.error_count()} validation error(s)") from exc

    async def complete_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]],
        *,
        model: Optional[str] = None,
    ) -> ToolTurn:
        try:
            resp = await self._client.chat.completions.create(
                model=model or self.model,
                messages=messages,
                tools=list(tools),
                temperature=0.0,
            )
        except openai.OpenAIError as exc:
            raise _translate_error(exc) from exc
        if not resp.choices:
            raise MalformedResponseError("LLM returned no choices")
        msg = resp.choices[0].message
        calls: List[ToolCall] = []
        for call in msg.tool_calls or []:
            try:
                args = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError as exc:
                raise MalformedResponseError(f"Tool call {call.function.name} has invalid arguments") from exc
            calls.append(ToolCall(id=call.id, name=call.function.name, arguments=args))
        return ToolTurn(content=msg.content or "", tool_calls=calls)

    async def judge(self, a: str, b: str, *, strong: bool = False) -> bool:
        verdict = await self.extract(
            JUDGE_SYSTEM_PROMPT,
            f"Listing A:\n{a}\n\nListing B:\n{b}",
            EquivalenceJudgment,
            model=self.strong_model if strong else None,
        )
        return verdict.same
