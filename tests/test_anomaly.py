import pytest

from finance_ai.models import TransactionRecord
from finance_ai.services.anomaly import (
    detect_outliers,
    format_es_ar,
    median_absolute_deviation,
    robust_z_score,
)


def group(amounts: list[float], category: str | None = "Comidas") -> list[dict]:
    return [
        {"_id": f"t{i}", "amount": amount, "category": category, "description": f"gasto {i}"}
        for i, amount in enumerate(amounts)
    ]


@pytest.mark.parametrize(
    ("outlier", "severity"),
    [
        (16, "low"),
        (19, "medium"),
        (30, "high"),
    ],
)
def test_severity_bands(outlier, severity) -> None:
    anomalies = detect_outliers(group([10, 10, 10, 10, 10, outlier]))

    assert len(anomalies) == 1
    assert anomalies[0].severity == severity
    assert anomalies[0].transaction_id == "t5"


def test_single_spike_in_a_noisy_group() -> None:
    anomalies = detect_outliers(group([10, 12, 11, 9, 13, 100]))

    assert len(anomalies) == 1
    assert anomalies[0].amount == 100
    assert anomalies[0].severity == "high"


def test_small_groups_are_skipped() -> None:
    assert detect_outliers(group([10, 10, 10, 1000])) == []


def test_identical_amounts_have_no_outliers() -> None:
    assert detect_outliers(group([25] * 8)) == []


def test_below_median_is_never_flagged() -> None:
    assert detect_outliers(group([100, 100, 100, 100, 100, 1])) == []


def test_sign_is_ignored_for_scoring() -> None:
    anomalies = detect_outliers(group([-10, -10, -10, -10, -10, -30]))

    assert len(anomalies) == 1
    assert anomalies[0].amount == -30


def test_reason_text() -> None:
    anomaly = detect_outliers(group([10, 10, 10, 10, 10, 30]))[0]

    assert anomaly.reason == "Gasto inusual de $30 en 'Comidas' (Mediana: $10). Score: 13.5"
    assert anomaly.description == "gasto 5"
    assert anomaly.category == "Comidas"


def test_missing_category_and_description() -> None:
    records = [TransactionRecord(amount=a) for a in (10, 10, 10, 10, 10, 30)]

    anomaly = detect_outliers(records)[0]

    assert anomaly.category == "Uncategorized"
    assert anomaly.description == "Sin descripción"
    assert anomaly.transaction_id is None


def test_results_follow_input_order() -> None:
    transactions = group([10, 10, 10, 10, 10, 30], "Comidas") + group([5, 5, 5, 5, 5, 50, 40], "Transporte")

    anomalies = detect_outliers(transactions)

    assert [(a.category, a.amount) for a in anomalies] == [
        ("Comidas", 30),
        ("Transporte", 50),
        ("Transporte", 40),
    ]


def test_lower_threshold_flags_more() -> None:
    amounts = [10, 12, 11, 9, 13, 16]

    assert detect_outliers(group(amounts)) == []
    assert len(detect_outliers(group(amounts), threshold=1.0)) == 1


@pytest.mark.parametrize("threshold", [0.0, 0.05, 10.5, -1])
def test_threshold_out_of_range(threshold) -> None:
    with pytest.raises(ValueError):
        detect_outliers(group([10] * 6), threshold=threshold)


def test_empty_input() -> None:
    assert detect_outliers([]) == []


def test_helpers() -> None:
    center, mad = median_absolute_deviation([1, 2, 3, 4, 100])

    assert (center, mad) == (3, 1)
    assert robust_z_score(3, 3, 0) == 0
    assert robust_z_score(13, 10, 0) == pytest.approx(0.6745 * 3)
    assert format_es_ar(1234567.891) == "1.234.567,891"
    assert format_es_ar(1500.5) == "1.500,5"
    assert format_es_ar(1500.4, 0) == "1.500"
