"""
Shared fixtures for the smart categorizer test-suite.
Run with: python -m pytest -v
"""

import pytest

from smart_categorizer.models import DefaultRule, MerchantPattern, RuleType, TrainingSample
from smart_categorizer.services.categorizer import SmartCategorizationEngine
from smart_categorizer.services.features import FeatureExtractor
from smart_categorizer.services.store import InMemoryCategorizationStore

# (description, category, amount)
LABELED_CORPUS = [
    ("uber trip centro", "Transport", 23.40),
    ("uber trip aeroporto", "Transport", 55.00),
    ("taxi corrida centro", "Transport", 30.00),
    ("posto shell combustivel", "Transport", 150.00),
    ("metro bilhete unico", "Transport", 4.40),
    ("mercado pao de acucar", "Groceries", 210.00),
    ("supermercado extra compras", "Groceries", 180.00),
    ("mercado carrefour compras", "Groceries", 320.00),
    ("hortifruti frutas verduras", "Groceries", 45.00),
    ("padaria pao frances", "Groceries", 12.00),
    ("netflix assinatura mensal", "Entertainment", 39.90),
    ("spotify assinatura premium", "Entertainment", 21.90),
    ("cinema ingresso filme", "Entertainment", 60.00),
]


def labeled_samples(repeat: int = 1, verified: bool = True):
    return [
        TrainingSample(description=description, category=category, amount=amount, verified=verified)
        for _ in range(repeat)
        for description, category, amount in LABELED_CORPUS
    ]


class FakeEntity:
    def __init__(self, text, label_):
        self.text = text
        self.label_ = label_


class FakeDoc:
    def __init__(self, ents):
        self.ents = ents


@pytest.fixture
def extractor():
    """Feature extractor without named-entity features"""
    return FeatureExtractor()


@pytest.fixture
def store():
    return InMemoryCategorizationStore(
        merchant_patterns=[
            MerchantPattern(pattern="starbucks", category="Food & Drink", confidence_score=0.9, usage_count=0),
        ],
        default_rules=[
            DefaultRule(RuleType.KEYWORD, "coffee", "Food & Drink", 0.6, 1),
            DefaultRule(RuleType.KEYWORD, "salario", "Salary", 0.9, 2),
            DefaultRule(RuleType.MERCHANT, "shell", "Transport", 0.75, 1),
        ],
    )


@pytest.fixture
def engine(store, extractor):
    return SmartCategorizationEngine(store=store, extractor=extractor)
