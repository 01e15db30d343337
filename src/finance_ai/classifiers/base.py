from abc import ABC, abstractmethod

from finance_ai.models import LLMRequest, LLMSuccess


class TransactionClassifier(ABC):
    @property
    def available(self) -> bool:
        """Whether the classifier has what it needs (credentials) to be called."""
        return True

    @abstractmethod
    async def classify(self, request: LLMRequest) -> LLMSuccess:
        """Categorize the transaction or raise ClassifierError."""
        pass
