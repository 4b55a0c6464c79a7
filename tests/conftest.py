from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from crawlsync.db.memory import MemoryStore
from crawlsync.services.llm_client import ToolTurn


class FakeBackend:
    """Deterministic stand-in for the LLM backend.

    Texts get one-hot embeddings (identical text, identical vector) unless a
    substring in `vectors` matches. Structured extraction pops queued replies
    per schema name; the judge answers with `judge_fn`.
    """

    model = "fake-model"

    def __init__(self) -> None:
        self.vectors: Dict[str, List[float]] = {}
        self.replies: Dict[str, List[Any]] = {}
        self.tool_turns: List[ToolTurn] = []
        self.judge_fn: Callable[[str, str], bool] = lambda a, b: False
        self.summarize_calls: List[str] = []
        self.embed_calls: List[List[str]] = []
        self.extract_calls: List[Dict[str, str]] = []
        self.judge_calls: List[tuple] = []
        self.tool_calls: int = 0
        self._slots: Dict[str, int] = {}

    def vector_for(self, text: str) -> List[float]:
        for needle, vec in self.vectors.items():
            if needle in text:
                return list(vec)
        slot = self._slots.setdefault(text, len(self._slots))
        vec = [0.0] * 64
        vec[slot % 64] = 1.0
        return vec

    async def summarize(self, content: str) -> str:
        self.summarize_calls.append(content)
        return "Summary: " + content[:60]

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.embed_calls.append(list(texts))
        return [self.vector_for(t) for t in texts]

    async def extract(self, system: str, user: str, schema):
        self.extract_calls.append({"schema": schema.__name__, "user": user})
        queue = self.replies.get(schema.__name__) or []
        if not queue:
            return schema()
        reply = queue.pop(0)
        if callable(reply):
            reply = reply(user)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, schema) else schema.model_validate(reply)

    async def complete_with_tools(self, messages, tools) -> ToolTurn:
        self.tool_calls += 1
        if not self.tool_turns:
            return ToolTurn(content="nothing more to do")
        turn = self.tool_turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn

    async def judge(self, a: str, b: str, *, strong: bool = False) -> bool:
        self.judge_calls.append((a, b, strong))
        return self.judge_fn(a, b)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
