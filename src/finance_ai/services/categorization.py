import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Any

from finance_ai.classifiers.base import TransactionClassifier
from finance_ai.classifiers.memory import FeedbackMemory
from finance_ai.classifiers.rules import RuleEngine
from finance_ai.core import settings
from finance_ai.domain.merchants import cache_key, dedup_hash, normalize_merchant
from finance_ai.errors import ClassifierError
from finance_ai.logger import get_logger
from finance_ai.models import (
    CacheKey,
    CategorizeInput,
    CategorizeOutput,
    LearnedMemory,
    LLMFailure,
    LLMRequest,
    RuleHit,
    RuleMatch,
)
from finance_ai.services.cache import CategorizationCache

logger = get_logger(__name__)

EXPENSE_FALLBACK = "Sin clasificar"
INCOME_FALLBACK = "Ingresos"
HEURISTIC_CONFIDENCE = 0.4
ERROR_CONFIDENCE = 0.1
BATCH_DELAY_SECONDS = 0.1


def is_income(item: CategorizeInput) -> bool:
    # An explicit type always decides; the sign is only consulted without one
    if item.transaction_type is not None:
        return item.transaction_type == "ingreso"
    return item.amount >= 0


def fallback_category(item: CategorizeInput) -> str:
    return INCOME_FALLBACK if is_income(item) else EXPENSE_FALLBACK


class InFlightRequests:
    """
    Coalesces concurrent LLM calls per transaction fingerprint.

    The first caller for a key starts the call; callers arriving while it is
    pending await the same task and get the same result or exception. The
    entry is dropped as soon as the call settles.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task[CategorizeOutput]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(
        self,
        key: str,
        factory: Callable[[], Awaitable[CategorizeOutput]],
    ) -> CategorizeOutput:
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        async def settle() -> CategorizeOutput:
            try:
                return await factory()
            finally:
                if self._pending.get(key) is asyncio.current_task():
                    del self._pending[key]

        # No await between the lookup above and this insert
        task = asyncio.ensure_future(settle())
        self._pending[key] = task
        return await asyncio.shield(task)


@dataclass
class PipelineStats:
    requests: int = 0
    cache_hits: int = 0
    memory_hits: int = 0
    llm_results: int = 0
    llm_failures: int = 0
    fallbacks: int = 0
    total_seconds: float = 0.0

    @property
    def cache_hit_rate(self) -> float:
        return self.cache_hits / self.requests if self.requests else 0.0

    @property
    def avg_seconds(self) -> float:
        return self.total_seconds / self.requests if self.requests else 0.0


class CategorizationPipeline:
    def __init__(
        self,
        cache: CategorizationCache,
        memory: FeedbackMemory,
        llm: TransactionClassifier | None = None,
        rules: RuleEngine | None = None,
        min_confidence: float | str | None = None,
        batch_delay: float = BATCH_DELAY_SECONDS,
        log: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.memory = memory
        self.llm = llm
        self.rules = rules or RuleEngine()
        self.min_confidence = min_confidence
        self.batch_delay = batch_delay
        self.log = log or logger
        self.in_flight = InFlightRequests()
        self.stats = PipelineStats()

    @property
    def llm_enabled(self) -> bool:
        return self.llm is not None and self.llm.available

    def effective_threshold(self) -> float:
        raw = self.min_confidence
        if raw is None:
            raw = settings.get_min_confidence_setting()
        value, valid = settings.resolve_min_confidence(raw)
        if not valid:
            self.log.warning(
                "AI_MIN_CONFIDENCE is not configured correctly (%r). Using default value: %s",
                raw,
                value,
            )
        return value

    async def categorize(self, item: CategorizeInput) -> CategorizeOutput:
        started = perf_counter()
        self.stats.requests += 1
        try:
            return await self._categorize(item)
        finally:
            self.stats.total_seconds += perf_counter() - started

    async def _categorize(self, item: CategorizeInput) -> CategorizeOutput:
        merchant_clean = normalize_merchant(item.merchant)
        fingerprint = dedup_hash(
            item.amount,
            when=item.when,
            merchant_clean=merchant_clean,
            account_last4=item.account_last4,
            bank_message_id=item.bank_message_id,
        )
        key = cache_key(item.description, merchant_clean, item.amount, item.currency)

        cached = await self._lookup_cache(key)
        if cached is not None:
            self.stats.cache_hits += 1
            self.log.debug("[CATEGORIZE] Cache hit for '%s'", item.description[:50])
            return cached

        learned = await self._consult_memory(item)
        if learned is not None:
            self.stats.memory_hits += 1
            result = self._from_memory(learned, merchant_clean, fingerprint)
            await self._store(key, result)
            return result

        bag = " ".join(part for part in (merchant_clean, item.description) if part).strip()
        rule = self.rules.match(bag)
        threshold = self.effective_threshold()

        wants_llm = bool(item.use_ai) or not isinstance(rule, RuleHit) or rule.strength < threshold
        if wants_llm and self.llm_enabled:
            outcome = await self._classify_with_llm(item, merchant_clean, fingerprint, key)
            if isinstance(outcome, CategorizeOutput):
                return outcome
            self.stats.llm_failures += 1
            self.log.warning(
                "LLM categorization failed (%s), falling back to rules: %s",
                outcome.kind,
                outcome.detail,
            )

        self.stats.fallbacks += 1
        result = self._from_rules(item, rule, threshold, merchant_clean, fingerprint)
        await self._store(key, result)
        return result

    @staticmethod
    def _from_memory(learned: LearnedMemory, merchant_clean: str, fingerprint: str) -> CategorizeOutput:
        return CategorizeOutput(
            category=learned.category,
            confidence=learned.confidence,
            reasons=[f"learned:{learned.source} ({learned.count} votes)"],
            merchant_clean=merchant_clean,
            dedup_hash=fingerprint,
            ai_enhanced=False,
        )

    def _from_rules(
        self,
        item: CategorizeInput,
        rule: RuleMatch,
        threshold: float,
        merchant_clean: str,
        fingerprint: str,
    ) -> CategorizeOutput:
        if isinstance(rule, RuleHit):
            strength = min(1.0, rule.strength)
            category = rule.category if strength >= threshold else fallback_category(item)
            return CategorizeOutput(
                category=category,
                confidence=strength,
                reasons=[rule.reason],
                merchant_clean=merchant_clean,
                dedup_hash=fingerprint,
                ai_enhanced=False,
            )

        self.log.debug(
            "[CATEGORIZE] No rule for '%s' (threshold %.2f), using heuristic fallback",
            item.description[:50],
            threshold,
        )
        return CategorizeOutput(
            category=fallback_category(item),
            confidence=HEURISTIC_CONFIDENCE,
            reasons=["fallback:heuristic"],
            merchant_clean=merchant_clean,
            dedup_hash=fingerprint,
            ai_enhanced=False,
        )

    async def _classify_with_llm(
        self,
        item: CategorizeInput,
        merchant_clean: str,
        fingerprint: str,
        key: CacheKey,
    ) -> CategorizeOutput | LLMFailure:
        async def ask() -> CategorizeOutput:
            request = LLMRequest(
                description=item.description,
                merchant=item.merchant,
                amount=item.amount,
                currency=item.currency,
                recent_transactions=item.previous_transactions or [],
                user_profile=item.user_profile,
            )
            answer = await self.llm.classify(request)
            result = CategorizeOutput(
                category=answer.category,
                confidence=answer.confidence,
                reasons=[f"ai:{answer.reasoning}"],
                merchant_clean=merchant_clean,
                dedup_hash=fingerprint,
                ai_enhanced=True,
                ai_reasoning=answer.reasoning,
            )
            self.stats.llm_results += 1
            await self._store(key, result)
            return result

        try:
            return await self.in_flight.run(fingerprint, ask)
        except ClassifierError as e:
            return LLMFailure(kind=e.kind, detail=e.detail)
        except Exception as e:
            self.log.exception("Unexpected error from LLM classifier")
            return LLMFailure(kind="unexpected", detail=str(e))

    async def _lookup_cache(self, key: CacheKey) -> CategorizeOutput | None:
        try:
            return await self.cache.get(key)
        except Exception as e:
            self.log.warning("Failed to read cache for categorization, treating as miss: %s", e)
            return None

    async def _consult_memory(self, item: CategorizeInput) -> LearnedMemory | None:
        try:
            return await self.memory.consult(item.merchant, item.description)
        except Exception as e:
            self.log.warning("Failed to consult learned memory, treating as miss: %s", e)
            return None

    async def _store(self, key: CacheKey, result: CategorizeOutput) -> None:
        try:
            await self.cache.set(key, result)
        except Exception as e:
            self.log.warning("Failed to set cache for categorization: %s", e)

    async def categorize_batch(
        self,
        items: Sequence[CategorizeInput | Mapping[str, Any]],
        use_ai: bool = False,
        max_concurrency: int = 3,
    ) -> list[CategorizeOutput]:
        """
        Categorize ``items`` in chunks of ``max_concurrency``.

        Items inside a chunk run concurrently; a short pause separates chunks.
        The result list is positionally aligned with ``items`` and a failing
        item yields an "error:processing" placeholder instead of an exception.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        results: list[CategorizeOutput] = []
        for start in range(0, len(items), max_concurrency):
            chunk = items[start:start + max_concurrency]
            chunk_results = await asyncio.gather(*(
                self._categorize_isolated(item, start + offset, use_ai)
                for offset, item in enumerate(chunk)
            ))
            results.extend(chunk_results)

            if start + max_concurrency < len(items):
                await self._pace()

        return results

    async def _pace(self) -> None:
        await asyncio.sleep(self.batch_delay)

    async def _categorize_isolated(
        self,
        item: CategorizeInput | Mapping[str, Any],
        index: int,
        use_ai: bool,
    ) -> CategorizeOutput:
        try:
            if isinstance(item, CategorizeInput):
                parsed = item.model_copy(update={"use_ai": use_ai})
            else:
                payload = {k: v for k, v in item.items() if k != "useAI"}
                parsed = CategorizeInput.model_validate({**payload, "use_ai": use_ai})
            return await self.categorize(parsed)
        except Exception as e:
            self.log.error("Error categorizing transaction %s: %s", index, e)
            return error_placeholder(item)


def _field(item: CategorizeInput | Mapping[str, Any], name: str, alias: str | None = None) -> Any:
    if isinstance(item, CategorizeInput):
        return getattr(item, name)
    if name in item:
        return item[name]
    return item.get(alias) if alias else None


def error_placeholder(item: CategorizeInput | Mapping[str, Any]) -> CategorizeOutput:
    try:
        merchant_clean = normalize_merchant(_field(item, "merchant"))
        fingerprint = dedup_hash(
            float(_field(item, "amount") or 0),
            when=_field(item, "when"),
            merchant_clean=merchant_clean,
            account_last4=_field(item, "account_last4", "accountLast4"),
            bank_message_id=_field(item, "bank_message_id", "bankMessageId"),
        )
    except (TypeError, ValueError, AttributeError):
        merchant_clean = ""
        fingerprint = ""

    return CategorizeOutput(
        category=EXPENSE_FALLBACK,
        confidence=ERROR_CONFIDENCE,
        reasons=["error:processing"],
        merchant_clean=merchant_clean,
        dedup_hash=fingerprint,
        ai_enhanced=False,
    )
