import logging
import os
from unittest.mock import patch

import pytest

from finance_ai.classifiers.llm import LLMClassifier
from finance_ai.factory import build_pipeline
from finance_ai.logger import ColourizedFormatter, get_logging_config
from finance_ai.models import CategorizeInput
from finance_ai.services.cache import FileCategorizationCache


@pytest.fixture(autouse=True)
def fresh_rules(monkeypatch):
    monkeypatch.setattr("finance_ai.classifiers.rules._default_engine", None)
    monkeypatch.delenv("RULES_PATH", raising=False)


def test_build_pipeline_without_key(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    pipeline = build_pipeline(data_dir=str(tmp_path))

    assert pipeline.llm is None
    assert pipeline.llm_enabled is False
    assert isinstance(pipeline.cache, FileCategorizationCache)
    assert pipeline.cache.cache_dir == os.path.join(str(tmp_path), "cache")
    assert pipeline.memory.data_path == os.path.join(str(tmp_path), "feedback.jsonl")


def test_build_pipeline_with_key(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-fake")

    with patch("finance_ai.classifiers.llm.AsyncOpenAI"):
        pipeline = build_pipeline(data_dir=str(tmp_path))

    assert isinstance(pipeline.llm, LLMClassifier)
    assert pipeline.llm_enabled is True


@pytest.mark.anyio
async def test_built_pipeline_categorizes_and_caches(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    pipeline = build_pipeline(data_dir=str(tmp_path))
    item = CategorizeInput(description="YPF ESTACION 33", merchant="YPF", amount=-30000, currency="ARS")

    first = await pipeline.categorize(item)
    second = await pipeline.categorize(item)

    assert first.category == "Combustible"
    assert second == first
    assert pipeline.stats.cache_hits == 1
    assert pipeline.cache.stats().total_entries == 1


def test_build_pipeline_loads_custom_rules(tmp_path, monkeypatch) -> None:
    rules_path = tmp_path / "rules.json"
    rules_path.write_text('[{"category": "Mascotas", "pattern": "puppis", "strength": 0.9}]')
    monkeypatch.setenv("RULES_PATH", str(rules_path))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    pipeline = build_pipeline(data_dir=str(tmp_path))

    assert pipeline.rules.match("puppis").category == "Mascotas"


def test_logging_config_with_file(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = get_logging_config()

    assert config["loggers"][""]["level"] == "DEBUG"
    assert config["loggers"][""]["handlers"] == ["console", "file"]
    assert config["handlers"]["file"]["filename"] == os.path.join(str(tmp_path / "logs"), "finance_ai.log")
    assert (tmp_path / "logs").is_dir()


def test_logging_config_console_only(monkeypatch) -> None:
    monkeypatch.delenv("LOG_DIR", raising=False)

    config = get_logging_config()

    assert "file" not in config["handlers"]
    assert config["loggers"]["openai"]["level"] == "WARNING"


def test_colourized_formatter_restores_levelname() -> None:
    record = logging.LogRecord("finance_ai", logging.WARNING, __file__, 1, "hola", None, None)

    text = ColourizedFormatter("%(levelname)s %(message)s").format(record)

    assert text == f"{ColourizedFormatter.YELLOW}WARNING{ColourizedFormatter.RESET} hola"
    assert record.levelname == "WARNING"
