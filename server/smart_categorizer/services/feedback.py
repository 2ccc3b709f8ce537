"""
Feedback recording.

Every accepted or corrected suggestion is written to the audit trail first.
Two secondary writes follow, each independent of the other and never raising:
reinforcing the merchant pattern table on corrections, and appending a
verified training sample.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..models import FeedbackRecord, MerchantPattern, TrainingSample, TransactionType
from .features import FeatureExtractor, extract_merchant

logger = logging.getLogger(__name__)

NEW_PATTERN_CONFIDENCE = 0.7


class FeedbackRecorder:
    """Persists feedback events and feeds them back into patterns and training data"""

    def __init__(self, store, extractor: FeatureExtractor,
                 reload_patterns: Optional[Callable[[], Awaitable[Any]]] = None):
        self.store = store
        self.extractor = extractor
        self.reload_patterns = reload_patterns
        self._pattern_lock = asyncio.Lock()

    async def persist(self, user_id: str, description: str, suggested_category: Optional[str],
                      actual_category: str, was_accepted: bool, confidence: float,
                      amount: Optional[float] = None) -> Optional[FeedbackRecord]:
        """
        Write the audit record.

        Returns:
            The persisted FeedbackRecord, or None when the write failed
        """
        description = description or ""
        record = FeedbackRecord(
            user_id=user_id,
            description=description,
            suggested_category=suggested_category,
            actual_category=actual_category,
            was_accepted=was_accepted,
            confidence_score=confidence,
            amount=amount,
            merchant_pattern=extract_merchant(description.lower()),
        )

        if self.store is None:
            logger.error("No categorization store attached, feedback not recorded")
            return None

        try:
            await self.store.append_feedback_record(record)
        except Exception as e:
            logger.error(f"Error recording feedback for user {user_id}: {e}")
            return None

        logger.info(f"Recorded feedback: '{description}' → {actual_category} (accepted={was_accepted})")
        return record

    async def reinforce_merchant_pattern(self, record: FeedbackRecord) -> bool:
        """
        Upsert the merchant pattern of a corrected suggestion and reload the table.

        Returns:
            True if a pattern was written
        """
        if record.was_accepted or not record.merchant_pattern:
            return False

        pattern = MerchantPattern(
            pattern=record.merchant_pattern.upper(),
            category=record.actual_category,
            confidence_score=NEW_PATTERN_CONFIDENCE,
            usage_count=1,
        )

        # Upsert and reload as one step so reloads land in write order
        async with self._pattern_lock:
            try:
                await self.store.upsert_merchant_pattern(pattern)
            except Exception as e:
                logger.error(f"Error updating merchant pattern '{pattern.pattern}': {e}")
                return False

            logger.info(f"Reinforced merchant pattern '{pattern.pattern}' → {pattern.category}")

            if self.reload_patterns is not None:
                try:
                    await self.reload_patterns()
                except Exception as e:
                    logger.error(f"Error reloading merchant patterns: {e}")

        return True

    async def append_training_sample(self, record: FeedbackRecord,
                                     transaction_type_id: int = TransactionType.EXPENSE) -> bool:
        """
        Append a verified training sample for the corrected or accepted category.

        Returns:
            True if the sample was written
        """
        amount = record.amount if record.amount is not None else 0.0

        try:
            sample = TrainingSample(
                description=record.description,
                category=record.actual_category,
                amount=amount,
                transaction_type_id=transaction_type_id,
                verified=True,
                user_id=record.user_id,
                processed_features=self.extractor.extract(record.description, amount),
            )
            await self.store.append_training_sample(sample)
        except Exception as e:
            logger.error(f"Error adding training data: {e}")
            return False

        return True
