"""
Merchant pattern and default rule matching.

Both matchers hold in-memory tables loaded from the store and answer with
substring containment against the lower-cased description. Tables are
replaced wholesale on reload, so readers always see one consistent table.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import DefaultRule, MerchantPattern, Suggestion, SuggestionSource

logger = logging.getLogger(__name__)

MAX_PATTERN_CONFIDENCE = 0.98


class MerchantPatternMatcher:
    """Substring lookup against known merchant patterns"""

    def __init__(self):
        self.patterns: Dict[str, MerchantPattern] = {}

    def load(self, patterns: Iterable[MerchantPattern]):
        """Replace the pattern table. Iteration order is load order."""
        table: Dict[str, MerchantPattern] = {}
        for pattern in patterns:
            if not pattern.pattern:
                continue
            table[pattern.pattern.lower()] = pattern
        self.patterns = table
        logger.info(f"Loaded {len(table)} merchant patterns")

    def match(self, description_lower: str) -> Optional[Suggestion]:
        """Return a suggestion for the first pattern contained in the description"""
        for key, pattern in self.patterns.items():
            if key in description_lower:
                confidence = min(pattern.confidence_score + pattern.usage_count / 1000, MAX_PATTERN_CONFIDENCE)
                return Suggestion(
                    category=pattern.category,
                    confidence=confidence,
                    source=SuggestionSource.MERCHANT_PATTERN,
                    meta={"pattern": key, "usage_count": pattern.usage_count},
                )
        return None

    def __len__(self) -> int:
        return len(self.patterns)


class DefaultRuleMatcher:
    """Keyword and merchant rules scoped by transaction type"""

    def __init__(self):
        self.rules: Dict[Tuple[int, str], DefaultRule] = {}

    def load(self, rules: Iterable[DefaultRule]):
        """Replace the rule table, keyed by transaction type and `type:value`"""
        table: Dict[Tuple[int, str], DefaultRule] = {}
        for rule in rules:
            if not rule.rule_value:
                continue
            table[(int(rule.transaction_type_id), rule.key)] = rule
        self.rules = table
        logger.info(f"Loaded {len(table)} default rules")

    def match(self, description_lower: str, transaction_type_id: int) -> List[Suggestion]:
        """Return a suggestion for every rule of this transaction type that fires"""
        suggestions = []

        for (rule_type_id, key), rule in self.rules.items():
            if rule_type_id != transaction_type_id:
                continue
            # keyword and merchant rules both match by containment
            if rule.rule_value.lower() in description_lower:
                suggestions.append(Suggestion(
                    category=rule.category,
                    confidence=rule.confidence_score,
                    source=SuggestionSource.RULE,
                    meta={"rule": key},
                ))

        return suggestions

    def __len__(self) -> int:
        return len(self.rules)
