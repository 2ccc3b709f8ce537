"""
Data model for the smart categorization engine.

Records loaded from and written to the store, the ephemeral suggestion
records produced per request, and the result types returned by the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

UNCATEGORIZED = "Uncategorized"
FALLBACK_CONFIDENCE = 0.3


class TransactionType(IntEnum):
    """Transaction type ids used to scope default rules"""
    EXPENSE = 1
    INCOME = 2
    SAVINGS = 3


class RuleType(str, Enum):
    """Kinds of default rules"""
    KEYWORD = "keyword"
    MERCHANT = "merchant"


class SuggestionSource(str, Enum):
    """Where a suggestion came from"""
    MERCHANT_PATTERN = "merchant_pattern"
    RULE = "rule"
    ML_MODEL = "ml_model"
    USER_HISTORY = "user_history"
    FALLBACK = "fallback"


@dataclass
class MerchantPattern:
    """Known merchant substring mapped to a category"""
    pattern: str
    category: str
    confidence_score: float = 0.7
    usage_count: int = 0


@dataclass
class DefaultRule:
    """Static keyword/merchant rule scoped by transaction type"""
    rule_type: RuleType
    rule_value: str
    category: str
    confidence_score: float
    transaction_type_id: int = TransactionType.EXPENSE

    @property
    def key(self) -> str:
        return f"{RuleType(self.rule_type).value}:{self.rule_value.lower()}"


@dataclass
class TrainingSample:
    """Labeled description used to (re)train the classifier"""
    description: str
    category: str
    amount: float = 0.0
    transaction_type_id: int = TransactionType.EXPENSE
    verified: bool = True
    user_id: Optional[str] = None
    processed_features: Optional[List[str]] = None


@dataclass
class FeedbackRecord:
    """Append-only audit entry for an accepted or corrected suggestion"""
    user_id: str
    description: str
    suggested_category: Optional[str]
    actual_category: str
    was_accepted: bool
    confidence_score: float
    amount: Optional[float] = None
    merchant_pattern: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class UserTransaction:
    """A previously categorized transaction of one user"""
    description: str
    category: str


@dataclass
class Suggestion:
    """Category suggestion with a confidence and a traceable source"""
    category: str
    confidence: float
    source: SuggestionSource
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "category": self.category,
            "confidence": self.confidence,
            "source": SuggestionSource(self.source).value,
        }
        if self.meta:
            data["meta"] = dict(self.meta)
        return data


def fallback_suggestion() -> Suggestion:
    """The single suggestion returned when the pipeline fails unexpectedly"""
    return Suggestion(
        category=UNCATEGORIZED,
        confidence=FALLBACK_CONFIDENCE,
        source=SuggestionSource.FALLBACK,
    )


@dataclass
class CategorizationResult:
    """
    Outcome of one categorization request.

    `degraded` is False for a ranked result (possibly empty) and True when the
    pipeline failed and the fallback suggestion was substituted.
    """
    suggestions: List[Suggestion]
    degraded: bool = False
    error: Optional[str] = None

    @classmethod
    def ok(cls, suggestions: List[Suggestion]) -> "CategorizationResult":
        return cls(suggestions=list(suggestions))

    @classmethod
    def fallback(cls, error: Exception) -> "CategorizationResult":
        return cls(suggestions=[fallback_suggestion()], degraded=True, error=f"{type(error).__name__}: {error}")


class RetrainState(str, Enum):
    """States of the retraining pipeline"""
    IDLE = "idle"
    CHECKING = "checking"
    TRAINING = "training"


class RetrainOutcome(str, Enum):
    """How a retrain trigger ended"""
    ALREADY_RUNNING = "already_running"
    INSUFFICIENT_FEEDBACK = "insufficient_feedback"
    INSUFFICIENT_DATA = "insufficient_data"
    RETRAINED = "retrained"
    FAILED = "failed"


@dataclass
class RetrainReport:
    """Summary of one retrain trigger"""
    outcome: RetrainOutcome
    new_feedback: int = 0
    sample_count: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def swapped(self) -> bool:
        return self.outcome == RetrainOutcome.RETRAINED


class CategorizationError(Exception):
    """Base exception for categorization engine operations"""
    pass
