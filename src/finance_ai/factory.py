import os

from finance_ai.classifiers.llm import LLMClassifier
from finance_ai.classifiers.memory import FeedbackMemory
from finance_ai.classifiers.rules import get_default_engine
from finance_ai.core import settings
from finance_ai.logger import get_logger, setup_logging
from finance_ai.services.cache import FileCategorizationCache
from finance_ai.services.categorization import CategorizationPipeline

logger = get_logger(__name__)


def build_pipeline(data_dir: str | None = None, configure_logging: bool = False) -> CategorizationPipeline:
    """Wire the categorization pipeline from environment configuration."""
    if configure_logging:
        setup_logging()

    logger.info("Initializing services...")
    settings.log_environment()

    data_dir = data_dir or settings.DATA_DIR
    settings.ensure_dir(data_dir)

    llm = None
    if settings.get_openai_api_key():
        llm = LLMClassifier()
        logger.info(
            "LLM classifier enabled: model=%s, base_url=%s",
            llm.model,
            os.getenv("OPENAI_BASE_URL") or "default",
        )
    else:
        logger.warning("OPENAI_API_KEY not found. LLM classifier disabled.")

    pipeline = CategorizationPipeline(
        cache=FileCategorizationCache(cache_dir=os.path.join(data_dir, "cache")),
        memory=FeedbackMemory(data_path=os.path.join(data_dir, "feedback.jsonl")),
        llm=llm,
        rules=get_default_engine(),
    )
    logger.info("Services initialized.")
    return pipeline
