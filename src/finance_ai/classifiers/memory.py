import asyncio
import json
import os
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from time import monotonic

from pydantic import ValidationError
from rapidfuzz import fuzz, process

from finance_ai.core import settings
from finance_ai.domain.merchants import normalize_merchant
from finance_ai.logger import get_logger
from finance_ai.models import FeedbackEntry, LearnedMemory

logger = get_logger(__name__)

MIN_CONSENSUS = 0.7
MAX_CONFIDENCE = 0.95


def description_key(description: str) -> str:
    return description.lower().strip()


def feedback_keys(entry: FeedbackEntry) -> list[str]:
    keys: list[str] = []
    if entry.item is None:
        return keys
    if entry.item.merchant:
        merchant = normalize_merchant(entry.item.merchant)
        if merchant:
            keys.append(f"merchant:{merchant}")
    if entry.item.description:
        keys.append(f"desc:{description_key(entry.item.description)}")
    return keys


def aggregate_feedback(entries: Iterable[FeedbackEntry]) -> dict[str, LearnedMemory]:
    """
    Build the memory bank from user corrections.

    Votes are counted per merchant and per description; a key is learned only
    when its winning category holds at least 70% of the votes.
    """
    votes: dict[str, dict[str, int]] = {}
    for entry in entries:
        for key in feedback_keys(entry):
            per_category = votes.setdefault(key, {})
            per_category[entry.category_user] = per_category.get(entry.category_user, 0) + 1

    bank: dict[str, LearnedMemory] = {}
    for key, per_category in votes.items():
        winner, max_votes = max(per_category.items(), key=lambda item: item[1])
        total_votes = sum(per_category.values())
        consensus = max_votes / total_votes
        if consensus < MIN_CONSENSUS:
            continue
        confidence = min(MAX_CONFIDENCE, 0.5 + consensus * 0.4 + min(max_votes, 5) * 0.02)
        bank[key] = LearnedMemory(
            category=winner,
            confidence=confidence,
            source="user_feedback",
            count=total_votes,
        )
    return bank


class FeedbackMemory:
    def __init__(
        self,
        data_path: str | None = None,
        reload_seconds: float | None = None,
        fuzzy_threshold: float = 92.0,
        clock: Callable[[], float] = monotonic,
    ):
        self.data_path = data_path or os.path.join(settings.DATA_DIR, "feedback.jsonl")
        self.reload_seconds = (
            reload_seconds
            if reload_seconds is not None
            else settings.get_env_int("MEMORY_RELOAD_SECONDS", settings.DEFAULT_MEMORY_RELOAD_SECONDS, min_value=0)
        )
        self.fuzzy_threshold = fuzzy_threshold
        self.clock = clock
        self.memory: dict[str, LearnedMemory] = {}
        self._loaded_at: float | None = None

    def _read_entries(self) -> list[FeedbackEntry]:
        if not os.path.exists(self.data_path):
            return []

        entries: list[FeedbackEntry] = []
        with open(self.data_path, encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(FeedbackEntry.model_validate_json(line))
                except ValidationError:
                    logger.debug("[MEMORY] Skipping malformed feedback line: %s", line[:80])
        return entries

    async def load(self, force: bool = False) -> None:
        fresh = (
            self._loaded_at is not None
            and self.clock() - self._loaded_at < self.reload_seconds
        )
        if not force and fresh and self.memory:
            return

        try:
            entries = await asyncio.to_thread(self._read_entries)
        except (OSError, UnicodeDecodeError) as e:
            # Keep serving the previous bank; retry after the reload interval
            logger.error("[MEMORY] Error loading feedback from %s: %s", self.data_path, e)
            self._loaded_at = self.clock()
            return

        self.memory = aggregate_feedback(entries)
        self._loaded_at = self.clock()
        logger.info("[MEMORY] Loaded %d learned patterns from feedback.", len(self.memory))

    async def consult(self, merchant: str | None, description: str) -> LearnedMemory | None:
        await self.load()

        if merchant:
            merchant_clean = normalize_merchant(merchant)
            if merchant_clean:
                match = self.memory.get(f"merchant:{merchant_clean}")
                if match:
                    return match

        key = description_key(description)
        match = self.memory.get(f"desc:{key}")
        if match:
            return match

        return self._fuzzy_description_match(key)

    def _fuzzy_description_match(self, key: str) -> LearnedMemory | None:
        candidates = [k[len("desc:"):] for k in self.memory if k.startswith("desc:")]
        if not key or not candidates:
            return None

        result = process.extractOne(
            key,
            candidates,
            scorer=fuzz.token_sort_ratio,
            score_cutoff=self.fuzzy_threshold,
        )
        if not result:
            return None

        matched, score, _ = result
        learned = self.memory[f"desc:{matched}"]
        return learned.model_copy(update={"confidence": learned.confidence * score / 100.0})

    def _append(self, entry: FeedbackEntry) -> None:
        settings.ensure_dir(os.path.dirname(self.data_path))
        with open(self.data_path, "a", encoding="utf-8") as handle:
            handle.write(entry.model_dump_json(by_alias=True, exclude_none=True) + "\n")

    async def record(self, entry: FeedbackEntry) -> None:
        """Append a user correction; the next consult rebuilds the memory bank."""
        if entry.ts is None:
            entry = entry.model_copy(update={"ts": datetime.now(timezone.utc).isoformat()})
        await asyncio.to_thread(self._append, entry)
        self._loaded_at = None
        logger.info(
            "[MEMORY] Recorded feedback %s -> '%s'",
            entry.dedup_hash[:12],
            entry.category_user,
        )
