"""
Categorization Store

Read/write operations the categorization engine needs from persistence:
merchant patterns, default rules, historical and per-user transactions, the
verified training corpus and the feedback audit trail.

Two implementations:
- PostgresCategorizationStore: asyncpg pool, tables created by database.init_db
- InMemoryCategorizationStore: development mode without a database, and tests
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import asyncpg

from ..models import (
    CategorizationError,
    DefaultRule,
    FeedbackRecord,
    MerchantPattern,
    RuleType,
    TrainingSample,
    UserTransaction,
)
from .field_cipher import FieldCipher, FieldCipherError

logger = logging.getLogger(__name__)


class StoreError(CategorizationError):
    """Exception raised when a store operation fails"""
    pass


def _pattern_key(pattern: str) -> str:
    return pattern.strip().upper()


class CategorizationStore(ABC):
    """Persistence collaborator of the categorization engine"""

    @abstractmethod
    async def load_merchant_patterns(self) -> List[MerchantPattern]:
        """Merchant patterns, highest confidence first"""

    @abstractmethod
    async def load_default_rules(self) -> List[DefaultRule]:
        """Active default rules"""

    @abstractmethod
    async def load_historical_transactions(self, limit: int) -> List[TrainingSample]:
        """Categorized transactions for bulk classifier training"""

    @abstractmethod
    async def load_verified_training_samples(self) -> List[TrainingSample]:
        """The whole verified training corpus"""

    @abstractmethod
    async def load_user_transactions(self, user_id: str, limit: int) -> List[UserTransaction]:
        """A user's most recent categorized transactions"""

    @abstractmethod
    async def append_training_sample(self, sample: TrainingSample):
        """Append one sample to the training corpus"""

    @abstractmethod
    async def upsert_merchant_pattern(self, pattern: MerchantPattern):
        """Insert a new pattern, or bump usage and overwrite the category of an existing one"""

    @abstractmethod
    async def append_feedback_record(self, record: FeedbackRecord):
        """Append one entry to the feedback audit trail"""

    @abstractmethod
    async def count_feedback_since(self, since: Optional[datetime]) -> int:
        """Number of feedback records created after `since` (all of them when None)"""

    @abstractmethod
    async def load_last_retrain_at(self) -> Optional[datetime]:
        """Start time of the latest successful retrain, None if there was none"""

    @abstractmethod
    async def record_retrain_run(self, started_at: datetime, sample_count: int):
        """Remember a successful retrain"""


class InMemoryCategorizationStore(CategorizationStore):
    """List and dict backed store"""

    def __init__(self, merchant_patterns: Optional[List[MerchantPattern]] = None,
                 default_rules: Optional[List[DefaultRule]] = None,
                 transactions: Optional[List[TrainingSample]] = None):
        self.merchant_patterns: Dict[str, MerchantPattern] = {}
        for pattern in merchant_patterns or []:
            self.merchant_patterns[_pattern_key(pattern.pattern)] = pattern
        self.default_rules: List[DefaultRule] = list(default_rules or [])
        self.transactions: List[TrainingSample] = list(transactions or [])
        self.training_samples: List[TrainingSample] = []
        self.feedback_records: List[FeedbackRecord] = []
        self.retrain_runs: List[Tuple[datetime, int]] = []

    def add_transaction(self, description: str, category: str, amount: float = 0.0,
                        transaction_type_id: int = 1, user_id: Optional[str] = None):
        """Record an already categorized transaction"""
        self.transactions.append(TrainingSample(
            description=description,
            category=category,
            amount=amount,
            transaction_type_id=transaction_type_id,
            user_id=user_id,
        ))

    async def load_merchant_patterns(self) -> List[MerchantPattern]:
        # sorted() is stable, so equal confidences keep insertion order
        return sorted(
            (MerchantPattern(p.pattern, p.category, p.confidence_score, p.usage_count)
             for p in self.merchant_patterns.values()),
            key=lambda p: p.confidence_score,
            reverse=True,
        )

    async def load_default_rules(self) -> List[DefaultRule]:
        return list(self.default_rules)

    async def load_historical_transactions(self, limit: int) -> List[TrainingSample]:
        usable = [t for t in self.transactions if t.description and t.category]
        return list(reversed(usable))[:limit]

    async def load_verified_training_samples(self) -> List[TrainingSample]:
        return [s for s in self.training_samples if s.verified]

    async def load_user_transactions(self, user_id: str, limit: int) -> List[UserTransaction]:
        history = [
            UserTransaction(description=t.description, category=t.category)
            for t in reversed(self.transactions)
            if t.user_id == user_id and t.description and t.category
        ]
        return history[:limit]

    async def append_training_sample(self, sample: TrainingSample):
        self.training_samples.append(sample)

    async def upsert_merchant_pattern(self, pattern: MerchantPattern):
        key = _pattern_key(pattern.pattern)
        existing = self.merchant_patterns.get(key)
        if existing:
            existing.usage_count += 1
            existing.category = pattern.category
        else:
            self.merchant_patterns[key] = MerchantPattern(
                pattern=key,
                category=pattern.category,
                confidence_score=pattern.confidence_score,
                usage_count=pattern.usage_count,
            )

    async def append_feedback_record(self, record: FeedbackRecord):
        if record.created_at is None:
            record.created_at = datetime.now(timezone.utc)
        self.feedback_records.append(record)

    async def count_feedback_since(self, since: Optional[datetime]) -> int:
        if since is None:
            return len(self.feedback_records)
        return sum(1 for record in self.feedback_records if record.created_at > since)

    async def load_last_retrain_at(self) -> Optional[datetime]:
        if not self.retrain_runs:
            return None
        return max(started_at for started_at, _ in self.retrain_runs)

    async def record_retrain_run(self, started_at: datetime, sample_count: int):
        self.retrain_runs.append((started_at, sample_count))


def _to_float(value) -> float:
    # DECIMAL columns come back as Decimal
    return float(value) if value is not None else 0.0


class PostgresCategorizationStore(CategorizationStore):
    """
    asyncpg-backed store.

    Description columns are encrypted with the optional FieldCipher; rows that
    fail to decrypt are skipped.
    """

    def __init__(self, db_pool: asyncpg.Pool, cipher: Optional[FieldCipher] = None):
        self.db_pool = db_pool
        self.cipher = cipher

    @asynccontextmanager
    async def _connection(self, operation: str):
        try:
            async with self.db_pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Store operation '{operation}' failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if self.cipher is None or not value:
            return value
        return self.cipher.encrypt(value)

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if self.cipher is None or not value:
            return value
        return self.cipher.decrypt(value)

    async def load_merchant_patterns(self) -> List[MerchantPattern]:
        async with self._connection("load_merchant_patterns") as conn:
            rows = await conn.fetch("""
                SELECT pattern, category, confidence_score, usage_count
                FROM merchant_patterns
                ORDER BY confidence_score DESC, usage_count DESC
            """)

        return [
            MerchantPattern(
                pattern=row['pattern'],
                category=row['category'],
                confidence_score=_to_float(row['confidence_score']),
                usage_count=row['usage_count'] or 0,
            )
            for row in rows
        ]

    async def load_default_rules(self) -> List[DefaultRule]:
        async with self._connection("load_default_rules") as conn:
            rows = await conn.fetch("""
                SELECT rule_type, rule_value, category, confidence_score, transaction_type_id
                FROM default_category_rules
                WHERE is_active = true
            """)

        rules = []
        for row in rows:
            try:
                rule_type = RuleType(row['rule_type'])
            except ValueError:
                logger.warning(f"Skipping default rule with unknown type '{row['rule_type']}'")
                continue
            rules.append(DefaultRule(
                rule_type=rule_type,
                rule_value=row['rule_value'],
                category=row['category'],
                confidence_score=_to_float(row['confidence_score']),
                transaction_type_id=row['transaction_type_id'],
            ))
        return rules

    async def load_historical_transactions(self, limit: int) -> List[TrainingSample]:
        async with self._connection("load_historical_transactions") as conn:
            rows = await conn.fetch("""
                SELECT description, category, amount, transaction_type_id
                FROM transactions
                WHERE description IS NOT NULL AND category IS NOT NULL
                ORDER BY created_at DESC
                LIMIT $1
            """, limit)

        samples = []
        for row in self._decrypted_rows(rows, "historical transactions"):
            samples.append(TrainingSample(
                description=row['description'],
                category=row['category'],
                amount=_to_float(row['amount']),
                transaction_type_id=row['transaction_type_id'],
            ))
        return samples

    def _decrypted_rows(self, rows, label: str) -> List[dict]:
        """Copy rows with a plaintext description, skipping the undecryptable ones"""
        decrypted = []
        skipped = 0
        for row in rows:
            try:
                description = self._decrypt(row['description'])
            except FieldCipherError:
                skipped += 1
                continue
            decrypted.append({**dict(row), 'description': description})

        if skipped:
            logger.warning(f"Skipped {skipped} {label} that could not be decrypted")
        return decrypted

    async def load_verified_training_samples(self) -> List[TrainingSample]:
        async with self._connection("load_verified_training_samples") as conn:
            rows = await conn.fetch("""
                SELECT user_id, description, category, amount, transaction_type_id, processed_features
                FROM ml_training_data
                WHERE is_verified = true
                ORDER BY created_at
            """)

        samples = []
        for row in self._decrypted_rows(rows, "training samples"):
            samples.append(TrainingSample(
                description=row['description'],
                category=row['category'],
                amount=_to_float(row['amount']),
                transaction_type_id=row['transaction_type_id'],
                verified=True,
                user_id=str(row['user_id']) if row['user_id'] else None,
                processed_features=list(row['processed_features'] or []),
            ))
        return samples

    async def load_user_transactions(self, user_id: str, limit: int) -> List[UserTransaction]:
        async with self._connection("load_user_transactions") as conn:
            rows = await conn.fetch("""
                SELECT description, category
                FROM transactions
                WHERE user_id = $1 AND description IS NOT NULL AND category IS NOT NULL
                ORDER BY created_at DESC
                LIMIT $2
            """, user_id, limit)

        return [
            UserTransaction(description=row['description'], category=row['category'])
            for row in self._decrypted_rows(rows, "user transactions")
        ]

    async def append_training_sample(self, sample: TrainingSample):
        description = self._encrypt(sample.description)
        async with self._connection("append_training_sample") as conn:
            await conn.execute("""
                INSERT INTO ml_training_data
                    (user_id, description, category, amount, transaction_type_id, processed_features, is_verified)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
            """, sample.user_id, description, sample.category, sample.amount,
                sample.transaction_type_id, sample.processed_features or [], sample.verified)

    async def upsert_merchant_pattern(self, pattern: MerchantPattern):
        async with self._connection("upsert_merchant_pattern") as conn:
            await conn.execute("""
                INSERT INTO merchant_patterns (pattern, category, confidence_score, usage_count)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (pattern) DO UPDATE SET
                    usage_count = merchant_patterns.usage_count + 1,
                    category = EXCLUDED.category,
                    updated_at = CURRENT_TIMESTAMP
            """, _pattern_key(pattern.pattern), pattern.category, pattern.confidence_score, pattern.usage_count)

    async def append_feedback_record(self, record: FeedbackRecord):
        description = self._encrypt(record.description)
        async with self._connection("append_feedback_record") as conn:
            await conn.execute("""
                INSERT INTO categorization_feedback
                    (user_id, description, suggested_category, actual_category, was_accepted,
                     confidence_score, amount, merchant_pattern)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """, record.user_id, description, record.suggested_category, record.actual_category,
                record.was_accepted, record.confidence_score, record.amount, record.merchant_pattern)

    async def count_feedback_since(self, since: Optional[datetime]) -> int:
        async with self._connection("count_feedback_since") as conn:
            if since is None:
                count = await conn.fetchval("SELECT COUNT(*) FROM categorization_feedback")
            else:
                count = await conn.fetchval(
                    "SELECT COUNT(*) FROM categorization_feedback WHERE created_at > $1",
                    since,
                )
        return int(count or 0)

    async def load_last_retrain_at(self) -> Optional[datetime]:
        async with self._connection("load_last_retrain_at") as conn:
            return await conn.fetchval("SELECT MAX(started_at) FROM categorizer_retrain_runs")

    async def record_retrain_run(self, started_at: datetime, sample_count: int):
        async with self._connection("record_retrain_run") as conn:
            await conn.execute("""
                INSERT INTO categorizer_retrain_runs (started_at, sample_count)
                VALUES ($1, $2)
            """, started_at, sample_count)
