"""
Per-user history matching.

Finds the user's previously categorized transaction whose description is
most similar to the new one (Jaccard similarity over token sets) and
suggests its category.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional, Set

from ..models import Suggestion, SuggestionSource, UserTransaction

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.6
HISTORY_CONFIDENCE_SCALE = 0.8
MAX_HISTORY_CONFIDENCE = 0.85


def jaccard_similarity(tokens_a: Set[str], tokens_b: Set[str]) -> float:
    """|A ∩ B| / |A ∪ B|, 0.0 when both sets are empty"""
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def best_history_match(description: str, history: Iterable[UserTransaction],
                       tokenize: Callable[[str], List[str]],
                       threshold: float = SIMILARITY_THRESHOLD) -> Optional[Suggestion]:
    """
    Suggest the category of the most similar past transaction.

    Only similarities strictly above the threshold qualify; on ties the
    earliest transaction wins.
    """
    candidate_tokens = set(tokenize(description.lower()))
    best_match: Optional[UserTransaction] = None
    best_similarity = 0.0

    for transaction in history:
        if not transaction.description or not transaction.category:
            continue

        similarity = jaccard_similarity(candidate_tokens, set(tokenize(transaction.description.lower())))
        if similarity > best_similarity and similarity > threshold:
            best_similarity = similarity
            best_match = transaction

    if best_match is None:
        return None

    return Suggestion(
        category=best_match.category,
        confidence=min(best_similarity * HISTORY_CONFIDENCE_SCALE, MAX_HISTORY_CONFIDENCE),
        source=SuggestionSource.USER_HISTORY,
        meta={"similarity": best_similarity, "matched_description": best_match.description},
    )


class UserHistoryMatcher:
    """Nearest-neighbour lookup over one user's categorized transactions"""

    def __init__(self, store, tokenize: Callable[[str], List[str]],
                 limit: int = 100, timeout: float = 2.0):
        self.store = store
        self.tokenize = tokenize
        self.limit = limit
        self.timeout = timeout

    async def match(self, description: str, user_id: str) -> Optional[Suggestion]:
        """
        Suggest a category from the user's history.

        The store call is bounded by `timeout`; timeouts and store errors
        are logged and yield None.
        """
        if not user_id or self.store is None:
            return None

        try:
            history = await asyncio.wait_for(
                self.store.load_user_transactions(user_id, self.limit),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"User history lookup timed out after {self.timeout}s for user {user_id}")
            return None
        except Exception as e:
            logger.error(f"User suggestion error for user {user_id}: {e}")
            return None

        if not history:
            return None

        return best_history_match(description, history, self.tokenize)
