import json
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import openai
import pytest

from finance_ai.classifiers.llm import (
    CATEGORIES,
    HISTORY_LIMIT,
    LLMClassifier,
    build_prompt,
    format_amount,
    parse_response,
)
from finance_ai.errors import ClassifierError
from finance_ai.models import LLMRequest, PreviousTransaction, UserProfile


@pytest.fixture
def mock_openai_client() -> Generator[MagicMock, None, None]:
    with patch("finance_ai.classifiers.llm.AsyncOpenAI") as mock:
        yield mock


def completion_with(content: str | None) -> MagicMock:
    mock_completion = MagicMock()
    mock_completion.choices[0].message.content = content
    return mock_completion


def make_request(**overrides) -> LLMRequest:
    data = {"description": "PEDIDOSYA *LA PAROLACCIA", "merchant": "La Parolaccia", "amount": -8500.0, "currency": "ARS"}
    data.update(overrides)
    return LLMRequest(**data)


@pytest.mark.anyio
async def test_llm_classify(mock_openai_client: MagicMock) -> None:
    mock_instance = mock_openai_client.return_value
    mock_instance.chat.completions.create = AsyncMock(
        return_value=completion_with(json.dumps({
            "category": "comidas",
            "confidence": 0.88,
            "reasoning": "Delivery de restaurante",
            "suggestedSubcategory": "Delivery",
        }))
    )

    classifier = LLMClassifier(api_key="sk-fake", model="gpt-4o-mini")
    result = await classifier.classify(make_request())

    assert classifier.available is True
    assert result.category == "Comidas"
    assert result.confidence == 0.88
    assert result.reasoning == "Delivery de restaurante"
    assert result.subcategory == "Delivery"

    mock_instance.chat.completions.create.assert_awaited_once()
    kwargs = mock_instance.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0]["role"] == "system"
    assert "PEDIDOSYA *LA PAROLACCIA" in kwargs["messages"][1]["content"]


@pytest.mark.anyio
async def test_llm_api_error_becomes_classifier_error(mock_openai_client: MagicMock) -> None:
    mock_instance = mock_openai_client.return_value
    mock_instance.chat.completions.create = AsyncMock(side_effect=openai.OpenAIError("boom"))

    classifier = LLMClassifier(api_key="sk-fake")

    with pytest.raises(ClassifierError) as excinfo:
        await classifier.classify(make_request())

    assert excinfo.value.kind == "api"
    assert "boom" in excinfo.value.detail


@pytest.mark.anyio
async def test_llm_garbage_response(mock_openai_client: MagicMock) -> None:
    mock_instance = mock_openai_client.return_value
    mock_instance.chat.completions.create = AsyncMock(return_value=completion_with("not json at all"))

    classifier = LLMClassifier(api_key="sk-fake")

    with pytest.raises(ClassifierError) as excinfo:
        await classifier.classify(make_request())

    assert excinfo.value.kind == "parse"


@pytest.mark.anyio
async def test_llm_without_key_is_unavailable(mock_openai_client: MagicMock, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    classifier = LLMClassifier()

    assert classifier.available is False
    mock_openai_client.assert_not_called()
    with pytest.raises(ClassifierError) as excinfo:
        await classifier.classify(make_request())
    assert excinfo.value.kind == "unavailable"


def test_llm_client_options(mock_openai_client: MagicMock) -> None:
    LLMClassifier(api_key="sk-fake", base_url="http://localhost:8080/v1", timeout=5, max_retries=0)

    kwargs = mock_openai_client.call_args.kwargs
    assert kwargs["api_key"] == "sk-fake"
    assert kwargs["base_url"] == "http://localhost:8080/v1"
    assert kwargs["timeout"] == 5
    assert kwargs["max_retries"] == 0


@pytest.mark.parametrize(
    ("payload", "category", "confidence"),
    [
        ({"category": "Supermercado", "confidence": 0.9}, "Supermercado", 0.9),
        ({"category": "Categoría inventada", "confidence": 0.9}, "Sin clasificar", 0.9),
        ({"category": "Transporte"}, "Transporte", 0.7),
        ({"category": "Transporte", "confidence": "alta"}, "Transporte", 0.7),
        ({"category": "Transporte", "confidence": 0.01}, "Transporte", 0.1),
        ({"category": "Transporte", "confidence": 4}, "Transporte", 1.0),
        ({}, "Sin clasificar", 0.7),
    ],
)
def test_parse_response(payload, category, confidence) -> None:
    result = parse_response(json.dumps(payload))

    assert result.category == category
    assert result.confidence == pytest.approx(confidence)
    assert result.category in CATEGORIES


def test_parse_response_default_reasoning() -> None:
    result = parse_response(json.dumps({"category": "Salud", "confidence": 0.8}))

    assert result.reasoning == "Categorización basada en IA"
    assert result.subcategory is None


@pytest.mark.parametrize("content", [None, "", "{broken", "[1, 2]"])
def test_parse_response_rejects_bad_content(content) -> None:
    with pytest.raises(ClassifierError) as excinfo:
        parse_response(content)

    assert excinfo.value.kind == "parse"


def test_format_amount() -> None:
    assert format_amount(1234567.5) == "1.234.567,50"
    assert format_amount(0) == "0,00"


def test_build_prompt_direction_and_amount() -> None:
    expense = build_prompt(make_request(amount=-1500.25))
    income = build_prompt(make_request(amount=350000, currency="USD"))

    assert "ARS 1.500,25 (expense)" in expense
    assert "USD 350.000,00 (income)" in income


def test_build_prompt_limits_history() -> None:
    history = [
        PreviousTransaction(description=f"compra-{i:02d}", amount=-100.0, category="Compras")
        for i in range(HISTORY_LIMIT + 5)
    ]

    prompt = build_prompt(make_request(recent_transactions=history))

    assert "HISTORIAL RECIENTE" in prompt
    assert f"compra-{HISTORY_LIMIT - 1:02d}" in prompt
    assert f"compra-{HISTORY_LIMIT:02d}" not in prompt


def test_build_prompt_common_merchants() -> None:
    profile = UserProfile(commonMerchants=["Coto", "YPF"])

    prompt = build_prompt(make_request(user_profile=profile))

    assert "COMERCIOS FRECUENTES:** Coto, YPF" in prompt


def test_build_prompt_without_context() -> None:
    prompt = build_prompt(make_request(merchant=None))

    assert "No especificado" in prompt
    assert "HISTORIAL RECIENTE" not in prompt
    assert "COMERCIOS FRECUENTES" not in prompt
