"""
Test file to validate per-user history matching
Run with: python -m pytest test_user_history.py -v
"""

import asyncio

import pytest

from smart_categorizer.models import SuggestionSource, UserTransaction
from smart_categorizer.services.store import InMemoryCategorizationStore
from smart_categorizer.services.user_history import (
    UserHistoryMatcher,
    best_history_match,
    jaccard_similarity,
)


def words(count, start=0):
    return " ".join(f"w{i}" for i in range(start, start + count))


class TestJaccardSimilarity:
    """Test token-set similarity"""

    def test_empty_sets(self):
        """Test two empty sets are not similar"""
        assert jaccard_similarity(set(), set()) == 0.0

    def test_partial_overlap(self):
        """Test |A ∩ B| / |A ∪ B|"""
        assert jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)

    def test_identical(self):
        """Test identical sets"""
        assert jaccard_similarity({"uber", "trip"}, {"trip", "uber"}) == 1.0


class TestBestHistoryMatch:
    """Test nearest-neighbour selection"""

    def test_exact_threshold_does_not_qualify(self, extractor):
        """Test similarity of exactly 0.6 is rejected"""
        history = [UserTransaction("a b c d e", "Groceries")]

        assert best_history_match("a b c", history, extractor.tokenize) is None

    def test_just_above_threshold(self, extractor):
        """Test similarity of 0.61 qualifies"""
        history = [UserTransaction(words(61), "Groceries")]

        suggestion = best_history_match(words(100), history, extractor.tokenize)

        assert suggestion.category == "Groceries"
        assert suggestion.source == SuggestionSource.USER_HISTORY
        assert suggestion.meta["similarity"] == pytest.approx(0.61)
        assert suggestion.confidence == pytest.approx(0.488)

    def test_best_match_wins(self, extractor):
        """Test the most similar transaction is chosen"""
        history = [
            UserTransaction("mercado extra compras semana", "Groceries"),
            UserTransaction("mercado extra compras", "Supermarket"),
        ]

        suggestion = best_history_match("MERCADO EXTRA COMPRAS", history, extractor.tokenize)

        assert suggestion.category == "Supermarket"
        assert suggestion.confidence == pytest.approx(0.8)

    def test_confidence_capped(self, extractor):
        """Test confidence never exceeds 0.85"""
        history = [UserTransaction("netflix assinatura", "Entertainment")]

        suggestion = best_history_match("netflix assinatura", history, extractor.tokenize)

        assert suggestion.confidence == pytest.approx(0.8)
        assert suggestion.confidence <= 0.85


class TestUserHistoryMatcher:
    """Test the store-backed matcher"""

    @pytest.mark.asyncio
    async def test_match_from_store(self, extractor):
        """Test suggestions from the user's own transactions"""
        store = InMemoryCategorizationStore()
        store.add_transaction("academia smart fit mensal", "Health", 99.0, user_id="user-1")
        store.add_transaction("academia smart fit mensal", "Sports", 99.0, user_id="user-2")

        matcher = UserHistoryMatcher(store, extractor.tokenize)
        suggestion = await matcher.match("Academia Smart Fit Mensal", "user-1")

        assert suggestion.category == "Health"

    @pytest.mark.asyncio
    async def test_empty_history(self, extractor):
        """Test users without history"""
        matcher = UserHistoryMatcher(InMemoryCategorizationStore(), extractor.tokenize)

        assert await matcher.match("uber trip", "user-1") is None

    @pytest.mark.asyncio
    async def test_store_error_degrades(self, extractor, caplog):
        """Test store errors are logged, not raised"""
        class BrokenStore(InMemoryCategorizationStore):
            async def load_user_transactions(self, user_id, limit):
                raise ConnectionError("database unreachable")

        matcher = UserHistoryMatcher(BrokenStore(), extractor.tokenize)

        assert await matcher.match("uber trip", "user-1") is None
        assert "User suggestion error" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, extractor, caplog):
        """Test the store call is bounded by the timeout"""
        class SlowStore(InMemoryCategorizationStore):
            async def load_user_transactions(self, user_id, limit):
                await asyncio.sleep(5)
                return [UserTransaction("uber trip", "Transport")]

        matcher = UserHistoryMatcher(SlowStore(), extractor.tokenize, timeout=0.05)

        assert await matcher.match("uber trip", "user-1") is None
        assert "timed out" in caplog.text

    @pytest.mark.asyncio
    async def test_limit_passed_to_store(self, extractor):
        """Test at most `limit` transactions are requested"""
        requested = []

        class RecordingStore(InMemoryCategorizationStore):
            async def load_user_transactions(self, user_id, limit):
                requested.append(limit)
                return []

        await UserHistoryMatcher(RecordingStore(), extractor.tokenize).match("uber", "user-1")

        assert requested == [100]
