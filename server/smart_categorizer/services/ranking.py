"""
Suggestion ranking.

Merges the outputs of all signal sources: one suggestion per category (the
most confident one), sorted by confidence descending, truncated.
"""

from typing import Dict, Iterable, List, Optional

from ..models import Suggestion


def rank_suggestions(suggestions: Iterable[Optional[Suggestion]], limit: int = 3) -> List[Suggestion]:
    """
    Deduplicate by category keeping the max confidence, then sort and truncate.

    Args:
        suggestions: Suggestions from all sources (None entries are ignored)
        limit: Maximum number of suggestions returned

    Returns:
        At most `limit` suggestions, unique per category, highest confidence first
    """
    by_category: Dict[str, Suggestion] = {}

    for suggestion in suggestions:
        if suggestion is None:
            continue
        existing = by_category.get(suggestion.category)
        if existing is None or suggestion.confidence > existing.confidence:
            by_category[suggestion.category] = suggestion

    ranked = sorted(by_category.values(), key=lambda s: s.confidence, reverse=True)
    return ranked[:limit]
