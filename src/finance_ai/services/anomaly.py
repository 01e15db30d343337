from collections.abc import Iterable, Mapping
from statistics import median
from typing import Any

from finance_ai.logger import get_logger
from finance_ai.models import AnomalyResult, Severity, TransactionRecord

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 3.5
MIN_THRESHOLD = 0.1
MAX_THRESHOLD = 10.0
MIN_GROUP_SIZE = 5
UNCATEGORIZED = "Uncategorized"
Z_SCALE = 0.6745


def format_es_ar(value: float, max_fraction_digits: int = 3) -> str:
    """Render ``value`` like es-AR locale output: 12.345,6"""
    text = f"{value:,.{max_fraction_digits}f}"
    if max_fraction_digits > 0:
        text = text.rstrip("0").rstrip(".")
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def median_absolute_deviation(values: list[float]) -> tuple[float, float]:
    """Return (median, MAD) of ``values``."""
    center = median(values)
    return center, median(abs(v - center) for v in values)


def robust_z_score(value: float, center: float, mad: float) -> float:
    safe_mad = mad if mad != 0 else 1.0
    return Z_SCALE * (value - center) / safe_mad


def severity_for(score: float) -> Severity:
    if score > 8:
        return "high"
    if score > 5:
        return "medium"
    return "low"


def _as_record(transaction: TransactionRecord | Mapping[str, Any]) -> TransactionRecord:
    if isinstance(transaction, TransactionRecord):
        return transaction
    return TransactionRecord.model_validate(transaction)


def detect_outliers(
    transactions: Iterable[TransactionRecord | Mapping[str, Any]],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[AnomalyResult]:
    """
    Flag unusual amounts per category with a robust (median/MAD) z-score.

    Groups smaller than five transactions are skipped. Results follow the order
    in which categories and their members were first seen; sort downstream if
    a ranking is needed.
    """
    if not MIN_THRESHOLD <= threshold <= MAX_THRESHOLD:
        raise ValueError(f"threshold must be between {MIN_THRESHOLD} and {MAX_THRESHOLD}, got {threshold}")

    by_category: dict[str, list[TransactionRecord]] = {}
    for transaction in transactions:
        record = _as_record(transaction)
        by_category.setdefault(record.category or UNCATEGORIZED, []).append(record)

    anomalies: list[AnomalyResult] = []
    for category, group in by_category.items():
        if len(group) < MIN_GROUP_SIZE:
            continue

        values = [abs(record.amount) for record in group]
        center, mad = median_absolute_deviation(values)

        for record, value in zip(group, values):
            score = robust_z_score(value, center, mad)
            if score <= threshold:
                continue
            anomalies.append(AnomalyResult(
                transaction_id=record.id,
                amount=record.amount,
                description=record.description or "Sin descripción",
                category=category,
                severity=severity_for(score),
                reason=(
                    f"Gasto inusual de ${format_es_ar(value)} en '{category}' "
                    f"(Mediana: ${format_es_ar(center, 0)}). Score: {score:.1f}"
                ),
            ))

    logger.debug("[ANOMALY] %d anomalies across %d categories", len(anomalies), len(by_category))
    return anomalies
