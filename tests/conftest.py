import asyncio
from collections.abc import Callable

import pytest

from finance_ai.classifiers.base import TransactionClassifier
from finance_ai.classifiers.memory import FeedbackMemory
from finance_ai.errors import ClassifierError
from finance_ai.models import LLMRequest, LLMSuccess
from finance_ai.services.cache import MemoryCategorizationCache
from finance_ai.services.categorization import CategorizationPipeline


class FakeClassifier(TransactionClassifier):
    """Scriptable stand-in for the OpenAI classifier."""

    def __init__(
        self,
        answer: Callable[[LLMRequest], LLMSuccess] | LLMSuccess | None = None,
        error: ClassifierError | None = None,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
        available: bool = True,
    ):
        self.answer = answer or LLMSuccess(category="Comidas", confidence=0.85, reasoning="Restaurante")
        self.error = error
        self.delay = delay
        self.gate = gate
        self._available = available
        self.requests: list[LLMRequest] = []

    @property
    def available(self) -> bool:
        return self._available

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def classify(self, request: LLMRequest) -> LLMSuccess:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.answer):
            return self.answer(request)
        return self.answer


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def memory(tmp_path) -> FeedbackMemory:
    return FeedbackMemory(data_path=str(tmp_path / "feedback.jsonl"), reload_seconds=300)


@pytest.fixture
def cache() -> MemoryCategorizationCache:
    return MemoryCategorizationCache()


@pytest.fixture
def make_pipeline(cache, memory):
    def _make(llm: TransactionClassifier | None = None, **kwargs) -> CategorizationPipeline:
        kwargs.setdefault("min_confidence", 0.6)
        kwargs.setdefault("batch_delay", 0.0)
        return CategorizationPipeline(cache=cache, memory=memory, llm=llm, **kwargs)
    return _make
