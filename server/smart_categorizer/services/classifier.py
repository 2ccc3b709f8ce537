"""
Statistical classifier for transaction categories.

A multinomial Naive Bayes model over bag-of-features counts, trained on
labeled transactions run through the FeatureExtractor. A trained
CategoryClassifier is never mutated; retraining builds a new instance.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.feature_extraction.text import CountVectorizer
from sklearn.naive_bayes import MultinomialNB
from sklearn.pipeline import Pipeline

from ..models import CategorizationError, Suggestion, SuggestionSource, TrainingSample
from .features import FeatureExtractor

logger = logging.getLogger(__name__)

MODEL_CONFIDENCE_SCALE = 0.8
MAX_MODEL_CONFIDENCE = 0.9


class ClassifierTrainingError(CategorizationError):
    """Exception raised when fitting the classifier fails"""
    pass


def _identity_analyzer(features: Sequence[str]) -> Sequence[str]:
    # Documents are already feature lists
    return features


class CategoryClassifier:
    """Trained model reference, read-only once built"""

    def __init__(self, pipeline: Pipeline, sample_count: int):
        self.pipeline = pipeline
        self.sample_count = sample_count
        self.categories: List[str] = [str(label) for label in pipeline.classes_]
        self.trained_at = datetime.now(timezone.utc)

    def predict(self, features: List[str]) -> Tuple[str, float]:
        """Return the most probable category and its probability"""
        probabilities = self.pipeline.predict_proba([features])[0]
        best = int(np.argmax(probabilities))
        return self.categories[best], float(probabilities[best])


def build_pipeline() -> Pipeline:
    return Pipeline([
        ("vectorizer", CountVectorizer(analyzer=_identity_analyzer, lowercase=False)),
        ("classifier", MultinomialNB()),
    ])


def train_classifier(samples: Iterable[TrainingSample], extractor: FeatureExtractor,
                     min_samples: int = 10) -> Optional[CategoryClassifier]:
    """
    Train a classifier from labeled samples.

    Samples without description or category, and samples yielding no
    features, are discarded.

    Args:
        samples: Labeled training samples
        extractor: Feature extractor shared with inference
        min_samples: Minimum number of usable samples

    Returns:
        A new CategoryClassifier, or None when there is not enough data

    Raises:
        ClassifierTrainingError: If fitting the model fails
    """
    documents: List[List[str]] = []
    labels: List[str] = []

    for sample in samples:
        if not sample.description or not sample.description.strip():
            continue
        if not sample.category or not sample.category.strip():
            continue

        try:
            features = extractor.extract(sample.description, sample.amount)
        except Exception as e:
            logger.warning(f"Error extracting features for training sample '{sample.description}': {e}")
            continue

        if features:
            documents.append(features)
            labels.append(sample.category)

    if len(documents) < min_samples:
        logger.info(f"Insufficient valid training data ({len(documents)} samples), using rule-based approach only")
        return None

    try:
        pipeline = build_pipeline()
        pipeline.fit(documents, labels)
    except Exception as e:
        raise ClassifierTrainingError(f"Failed to train classifier on {len(documents)} samples: {e}") from e

    classifier = CategoryClassifier(pipeline, len(documents))
    logger.info(f"Trained Naive Bayes model with {len(documents)} samples across {len(classifier.categories)} categories")
    return classifier


def predict_category(classifier: Optional[CategoryClassifier], extractor: FeatureExtractor,
                     description: str, amount=0) -> Optional[Suggestion]:
    """
    Model suggestion for a description, or None.

    Never raises: a missing model, an empty feature set or a prediction
    error all yield None.
    """
    if classifier is None:
        return None

    try:
        features = extractor.extract(description, amount)
        if not features:
            return None

        category, probability = classifier.predict(features)
        return Suggestion(
            category=category,
            confidence=min(probability * MODEL_CONFIDENCE_SCALE, MAX_MODEL_CONFIDENCE),
            source=SuggestionSource.ML_MODEL,
            meta={"probability": probability},
        )
    except Exception as e:
        logger.error(f"ML prediction error: {e}")
        return None
