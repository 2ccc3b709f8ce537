"""
Smart Categorization Engine

Suggests up to three spending categories for a transaction description by
combining four independent signal sources:

1. Merchant patterns: substring lookup in the learned merchant table
2. Default rules: static keyword/merchant rules scoped by transaction type
3. ML model: multinomial Naive Bayes over extracted features
4. User history: Jaccard similarity against the user's own categorized transactions

Source outputs are merged and ranked (one suggestion per category, highest
confidence first). Feedback on suggestions reinforces the merchant table and
grows the training corpus; the retraining pipeline periodically rebuilds the
model from that corpus.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .. import config
from ..models import CategorizationResult, RetrainReport, Suggestion, TransactionType
from . import ranking
from .classifier import ClassifierTrainingError, CategoryClassifier, predict_category, train_classifier
from .feedback import FeedbackRecorder
from .features import FeatureExtractor
from .matchers import DefaultRuleMatcher, MerchantPatternMatcher
from .retraining import RetrainingPipeline
from .store import CategorizationStore
from .user_history import UserHistoryMatcher

logger = logging.getLogger(__name__)


@dataclass
class SuggestionContext:
    """Inputs shared by all signal sources for one request"""
    description: str
    description_lower: str
    amount: Any
    transaction_type_id: int
    user_id: Optional[str] = None


SuggestionSourceFn = Callable[[SuggestionContext], Awaitable[Sequence[Suggestion]]]


class SmartCategorizationEngine:
    """Categorization service owning the in-memory tables and the classifier reference"""

    def __init__(self, store: Optional[CategorizationStore] = None,
                 extractor: Optional[FeatureExtractor] = None,
                 max_suggestions: int = config.MAX_SUGGESTIONS,
                 historical_limit: int = config.HISTORICAL_TRAINING_LIMIT,
                 user_history_limit: int = config.USER_HISTORY_LIMIT,
                 user_history_timeout: float = config.USER_HISTORY_TIMEOUT,
                 min_training_samples: int = config.MIN_TRAINING_SAMPLES,
                 min_new_feedback: int = config.MIN_NEW_FEEDBACK,
                 min_retrain_samples: int = config.MIN_RETRAIN_SAMPLES):
        self.store = store
        self.extractor = extractor or FeatureExtractor(entity_model=config.entity_model_name())
        self.max_suggestions = max_suggestions
        self.historical_limit = historical_limit
        self.min_training_samples = min_training_samples

        self.merchant_matcher = MerchantPatternMatcher()
        self.rule_matcher = DefaultRuleMatcher()
        self.classifier: Optional[CategoryClassifier] = None
        self.user_history = UserHistoryMatcher(
            store, self.extractor.tokenize, limit=user_history_limit, timeout=user_history_timeout
        )
        self.feedback = FeedbackRecorder(store, self.extractor, reload_patterns=self.reload_merchant_patterns)
        self.retraining = RetrainingPipeline(
            store, self.extractor, install=self._install_classifier,
            min_new_feedback=min_new_feedback, min_samples=min_retrain_samples,
            min_training_samples=min_training_samples,
        )

        self.sources: Sequence[SuggestionSourceFn] = (
            self._merchant_source,
            self._rule_source,
            self._model_source,
            self._history_source,
        )

        self._initialized = False
        self._init_task: Optional[asyncio.Task] = None
        self._pending_writes: Set[asyncio.Task] = set()

    def set_store(self, store: CategorizationStore):
        """Attach the persistence collaborator (set in main.py lifespan)"""
        self.store = store
        self.user_history.store = store
        self.feedback.store = store
        self.retraining.store = store

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> bool:
        """
        Load patterns and rules and train the initial classifier, at most once.

        Concurrent callers await the same load. A failed load leaves the
        engine uninitialized so the next call retries.
        """
        if self._initialized:
            return True

        if self._init_task is None or (self._init_task.done() and not self._initialized):
            self._init_task = asyncio.ensure_future(self._load())

        # A cancelled caller must not cancel the load other callers wait on
        return await asyncio.shield(self._init_task)

    async def _load(self) -> bool:
        if self.store is None:
            logger.warning("No categorization store attached, smart categorizer not initialized")
            return False

        try:
            self.merchant_matcher.load(await self.store.load_merchant_patterns())
            self.rule_matcher.load(await self.store.load_default_rules())
            await self._train_initial_classifier()

            self._initialized = True
            logger.info(f"✅ Smart categorizer initialized: {len(self.merchant_matcher)} merchant patterns, "
                        f"{len(self.rule_matcher)} rules, model {'ready' if self.classifier else 'not trained'}")
            return True

        except Exception as e:
            logger.error(f"❌ Failed to initialize smart categorizer: {e}")
            return False

    async def _train_initial_classifier(self):
        try:
            transactions = await self.store.load_historical_transactions(self.historical_limit)
        except Exception as e:
            logger.warning(f"Could not load historical transactions, running rule-based only: {e}")
            return

        try:
            classifier = await asyncio.to_thread(
                train_classifier, transactions, self.extractor, self.min_training_samples
            )
        except ClassifierTrainingError as e:
            logger.error(f"Error initializing ML model, running rule-based only: {e}")
            return

        if classifier is not None:
            self._install_classifier(classifier)

    def _install_classifier(self, classifier: CategoryClassifier):
        # Single reference assignment; in-flight requests keep the old model
        self.classifier = classifier

    async def reload_merchant_patterns(self):
        """Replace the in-memory merchant table with the store's current one"""
        self.merchant_matcher.load(await self.store.load_merchant_patterns())

    async def _merchant_source(self, context: SuggestionContext) -> Sequence[Suggestion]:
        suggestion = self.merchant_matcher.match(context.description_lower)
        return [suggestion] if suggestion else []

    async def _rule_source(self, context: SuggestionContext) -> Sequence[Suggestion]:
        return self.rule_matcher.match(context.description_lower, context.transaction_type_id)

    async def _model_source(self, context: SuggestionContext) -> Sequence[Suggestion]:
        suggestion = predict_category(self.classifier, self.extractor, context.description, context.amount)
        return [suggestion] if suggestion else []

    async def _history_source(self, context: SuggestionContext) -> Sequence[Suggestion]:
        if not context.user_id:
            return []
        suggestion = await self.user_history.match(context.description, context.user_id)
        return [suggestion] if suggestion else []

    async def _collect(self, context: SuggestionContext) -> List[Suggestion]:
        collected: List[Suggestion] = []
        for source in self.sources:
            try:
                collected.extend(await source(context))
            except Exception as e:
                logger.warning(f"Suggestion source {getattr(source, '__name__', source)} failed: {e}")
        return collected

    async def categorize(self, description: str, amount: Any = 0,
                         transaction_type_id: int = TransactionType.EXPENSE,
                         user_id: Optional[str] = None) -> CategorizationResult:
        """
        Suggest categories for a transaction.

        Args:
            description: Raw transaction description
            amount: Transaction amount
            transaction_type_id: 1 expense, 2 income, 3 savings
            user_id: Enables the user history source when given

        Returns:
            CategorizationResult: ranked suggestions (possibly empty), or the
            degraded fallback when the pipeline itself failed
        """
        try:
            if not await self.initialize():
                logger.warning("Smart categorizer not initialized, suggesting from loaded sources only")

            description = description or ""
            context = SuggestionContext(
                description=description,
                description_lower=description.lower(),
                amount=amount,
                transaction_type_id=transaction_type_id,
                user_id=user_id,
            )
            collected = await self._collect(context)
            return CategorizationResult.ok(ranking.rank_suggestions(collected, self.max_suggestions))

        except Exception as e:
            logger.error(f"Error suggesting category for '{description}': {e}")
            return CategorizationResult.fallback(e)

    async def suggest_category(self, description: str, amount: Any = 0,
                               transaction_type_id: int = TransactionType.EXPENSE,
                               user_id: Optional[str] = None) -> List[Suggestion]:
        """Ranked suggestions only, see categorize()"""
        result = await self.categorize(description, amount, transaction_type_id, user_id)
        return result.suggestions

    async def record_feedback(self, user_id: str, description: str, suggested_category: Optional[str],
                              actual_category: str, was_accepted: bool, confidence: float,
                              amount: Optional[float] = None,
                              transaction_type_id: int = TransactionType.EXPENSE) -> bool:
        """
        Record a suggestion acceptance or correction.

        Only the audit record is awaited; pattern reinforcement and the
        training sample append run in the background.

        Returns:
            True if the audit record was persisted
        """
        record = await self.feedback.persist(
            user_id, description, suggested_category, actual_category, was_accepted, confidence, amount
        )
        if record is None:
            return False

        self._track(self.feedback.reinforce_merchant_pattern(record))
        self._track(self.feedback.append_training_sample(record, transaction_type_id))
        return True

    def _track(self, coro):
        task = asyncio.ensure_future(coro)
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def wait_for_pending_writes(self):
        """Wait for background feedback writes to finish"""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def retrain_model(self) -> RetrainReport:
        """Trigger a retraining run; concurrent triggers are skipped"""
        return await self.retraining.run()

    async def get_stats(self) -> Dict[str, Any]:
        """Get categorizer statistics"""
        classifier = self.classifier
        last_report = self.retraining.last_report
        return {
            "initialized": self._initialized,
            "merchant_patterns": len(self.merchant_matcher),
            "default_rules": len(self.rule_matcher),
            "model_trained": classifier is not None,
            "model_samples": classifier.sample_count if classifier else 0,
            "model_categories": len(classifier.categories) if classifier else 0,
            "model_trained_at": classifier.trained_at.isoformat() if classifier else None,
            "retrain_state": self.retraining.state.value,
            "retrain_running": self.retraining.running,
            "last_retrain_outcome": last_report.outcome.value if last_report else None,
            "pending_writes": len(self._pending_writes),
            "max_suggestions": self.max_suggestions,
        }


# Global instance - store is attached in main.py
engine = SmartCategorizationEngine()
