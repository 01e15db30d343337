from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Currency = Literal["ARS", "USD"]
TransactionType = Literal["ingreso", "egreso", "transferencia"]
Severity = Literal["low", "medium", "high"]


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class PreviousTransaction(BaseModel):
    description: str
    amount: float
    category: str | None = None


class UserProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    common_merchants: list[str] | None = Field(default=None, alias="commonMerchants")


class CategorizeInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    description: str = Field(min_length=1)
    merchant: str | None = None
    amount: float
    currency: Currency
    when: str | None = None
    account_last4: str | None = Field(default=None, alias="accountLast4")
    bank_message_id: str | None = Field(default=None, alias="bankMessageId")
    transaction_type: TransactionType | None = Field(default=None, alias="transactionType")
    use_ai: bool | None = Field(default=None, alias="useAI")
    previous_transactions: list[PreviousTransaction] | None = Field(
        default=None, alias="previousTransactions"
    )
    user_profile: UserProfile | None = Field(default=None, alias="userProfile")


class CategorizeOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    category: str
    confidence: float  # 0.0 to 1.0
    reasons: list[str]
    merchant_clean: str
    dedup_hash: str = Field(alias="dedupHash")
    ai_enhanced: bool = Field(default=False, alias="aiEnhanced")
    ai_reasoning: str | None = Field(default=None, alias="aiReasoning")

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp_confidence(value)


class CacheKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    merchant: str
    amount: float
    currency: str


class RuleHit(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    strength: float
    reason: str

    @property
    def hit(self) -> bool:
        return True


class RuleMiss(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: str = "rule:none"

    @property
    def hit(self) -> bool:
        return False


RuleMatch = RuleHit | RuleMiss


class LLMRequest(BaseModel):
    description: str
    merchant: str | None = None
    amount: float
    currency: Currency
    recent_transactions: list[PreviousTransaction] = Field(default_factory=list)
    user_profile: UserProfile | None = None


class LLMSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    confidence: float
    reasoning: str
    subcategory: str | None = None


class LLMFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str  # "unavailable", "api", "parse"
    detail: str


class LearnedMemory(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    confidence: float
    source: str = "user_feedback"
    count: int


class FeedbackItem(BaseModel):
    description: str
    merchant: str | None = None
    amount: float | None = None


class FeedbackEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dedup_hash: str = Field(alias="dedupHash")
    category_user: str = Field(min_length=1)
    reason: str | None = None
    item: FeedbackItem | None = None
    ts: str | None = None


class TransactionRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    amount: float
    when: datetime | str | None = Field(default=None, validation_alias=AliasChoices("when", "date"))
    description: str | None = None
    category: str | None = None
    merchant: str | None = None


class AnomalyResult(BaseModel):
    transaction_id: str | None = None
    amount: float
    description: str
    category: str
    severity: Severity
    reason: str
