import re
from collections.abc import Sequence
from datetime import datetime

from pydantic import BaseModel

from finance_ai.logger import get_logger
from finance_ai.models import CategorizeInput, Currency, TransactionRecord
from finance_ai.services.categorization import EXPENSE_FALLBACK, CategorizationPipeline

logger = get_logger(__name__)

TOP_LIMIT = 8
RECURRING_LIMIT = 10
STREAMING_SERVICES = re.compile(r"netflix|spotify|disney|youtube", re.IGNORECASE)


class SummaryItem(CategorizeInput):
    category: str | None = None


class Totals(BaseModel):
    income: float
    expense: float
    net: float


class CategoryTotal(BaseModel):
    category: str
    total: float


class MerchantTotal(BaseModel):
    merchant: str
    total: float


class AIEnhancement(BaseModel):
    enabled: bool
    enhanced_transactions: int
    enhancement_rate: float


class PeriodSummary(BaseModel):
    period: str | None
    currency: Currency
    totals: Totals
    top_categories: list[CategoryTotal]
    top_merchants: list[MerchantTotal]
    suggestions: list[str]
    ai_enhancement: AIEnhancement


class _Enriched(BaseModel):
    amount: float
    category: str
    merchant: str | None = None
    ai_enhanced: bool = False


async def summarize(
    items: Sequence[SummaryItem],
    pipeline: CategorizationPipeline | None = None,
    currency: Currency = "ARS",
    period_label: str | None = None,
    classify_missing: bool = True,
    use_ai: bool = False,
) -> PeriodSummary:
    """
    Totals, top categories/merchants and advice for a period.

    Items without a category are run through the batch categorizer first when
    ``classify_missing`` is set and a pipeline is given.
    """
    if not items:
        raise ValueError("summarize requires at least one item")

    classified: dict[int, tuple[str, bool]] = {}
    missing = [index for index, item in enumerate(items) if not item.category]
    if classify_missing and missing and pipeline is not None:
        outputs = await pipeline.categorize_batch(
            [items[index] for index in missing],
            use_ai=use_ai,
            max_concurrency=2 if use_ai else 5,
        )
        for index, output in zip(missing, outputs):
            classified[index] = (output.category, output.ai_enhanced)

    enriched: list[_Enriched] = []
    for index, item in enumerate(items):
        category, ai_enhanced = classified.get(index, (item.category or EXPENSE_FALLBACK, False))
        enriched.append(_Enriched(
            amount=item.amount,
            category=category,
            merchant=item.merchant,
            ai_enhanced=ai_enhanced,
        ))

    total_income = 0.0
    total_expense = 0.0
    by_category: dict[str, float] = {}
    by_merchant: dict[str, float] = {}
    ai_enhanced_count = 0

    for entry in enriched:
        if entry.amount >= 0:
            total_income += entry.amount
        else:
            total_expense += entry.amount
        by_category[entry.category] = by_category.get(entry.category, 0.0) + entry.amount
        if entry.merchant:
            by_merchant[entry.merchant] = by_merchant.get(entry.merchant, 0.0) + entry.amount
        if entry.ai_enhanced:
            ai_enhanced_count += 1

    net = total_income + total_expense
    top_categories = sorted(by_category.items(), key=lambda kv: abs(kv[1]), reverse=True)[:TOP_LIMIT]
    top_merchants = sorted(by_merchant.items(), key=lambda kv: abs(kv[1]), reverse=True)[:TOP_LIMIT]

    suggestions: list[str] = []
    transport_total = sum(total for cat, total in top_categories if "transporte" in cat.lower())
    if abs(transport_total) > 0.3 * abs(total_expense):
        suggestions.append(
            "Tu gasto en Transporte es alto este período (>30% de los egresos). "
            "Considerá optimizar traslados."
        )
    subscriptions = [m for m, _ in top_merchants if STREAMING_SERVICES.search(m)]
    if len(subscriptions) >= 2:
        suggestions.append("Detectamos múltiples suscripciones. Revisá si las usás todas.")
    if net < 0:
        suggestions.append(
            "Cerraste el período con balance negativo. Evaluá reducir rubros con mayor peso."
        )
    elif net > total_income * 0.3:
        suggestions.append("Excelente gestión financiera! Tenés un ahorro considerable este período.")
    if ai_enhanced_count > len(items) * 0.5:
        suggestions.append(
            f"Se usó IA para categorizar {ai_enhanced_count} transacciones, "
            "mejorando la precisión del análisis."
        )

    logger.debug("[SUMMARY] %d items, %d AI-enhanced", len(items), ai_enhanced_count)
    return PeriodSummary(
        period=period_label,
        currency=currency,
        totals=Totals(
            income=round(total_income, 2),
            expense=round(total_expense, 2),
            net=round(net, 2),
        ),
        top_categories=[CategoryTotal(category=c, total=round(t, 2)) for c, t in top_categories],
        top_merchants=[MerchantTotal(merchant=m, total=round(t, 2)) for m, t in top_merchants],
        suggestions=suggestions,
        ai_enhancement=AIEnhancement(
            enabled=use_ai,
            enhanced_transactions=ai_enhanced_count,
            enhancement_rate=round(ai_enhanced_count / len(items) * 100, 1),
        ),
    )


class DayAmount(BaseModel):
    day: str
    amount: float


class CategoryAmount(BaseModel):
    category: str
    amount: float


class MerchantCount(BaseModel):
    merchant: str
    count: int


class SpendingPatterns(BaseModel):
    timeframe: str
    total_spending: float
    average_transaction: float
    total_transactions: int
    top_spending_days: list[DayAmount]
    top_categories: list[CategoryAmount]
    recurring_merchants: list[MerchantCount]


def _weekday(value: datetime | str | None) -> str:
    """Day of week with Sunday as 0; unknown dates count as Sunday."""
    if value is None:
        return "0"
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return "0"
    return str(value.isoweekday() % 7)


def analyze_patterns(items: Sequence[TransactionRecord], timeframe: str = "month") -> SpendingPatterns:
    if not items:
        raise ValueError("analyze_patterns requires at least one transaction")

    by_day: dict[str, float] = {}
    by_category: dict[str, float] = {}
    merchant_counts: dict[str, int] = {}
    total_amount = 0.0

    for item in items:
        if item.amount >= 0:
            continue
        spent = abs(item.amount)
        total_amount += spent

        day = _weekday(item.when)
        by_day[day] = by_day.get(day, 0.0) + spent

        category = item.category or EXPENSE_FALLBACK
        by_category[category] = by_category.get(category, 0.0) + spent

        if item.merchant:
            merchant_counts[item.merchant] = merchant_counts.get(item.merchant, 0) + 1

    # Averaged over every transaction, income included
    average = total_amount / len(items)

    return SpendingPatterns(
        timeframe=timeframe,
        total_spending=round(total_amount, 2),
        average_transaction=round(average, 2),
        total_transactions=len(items),
        top_spending_days=[
            DayAmount(day=d, amount=round(a, 2))
            for d, a in sorted(by_day.items(), key=lambda kv: kv[1], reverse=True)
        ],
        top_categories=[
            CategoryAmount(category=c, amount=round(a, 2))
            for c, a in sorted(by_category.items(), key=lambda kv: kv[1], reverse=True)
        ],
        recurring_merchants=[
            MerchantCount(merchant=m, count=n)
            for m, n in sorted(merchant_counts.items(), key=lambda kv: kv[1], reverse=True)[:RECURRING_LIMIT]
        ],
    )
