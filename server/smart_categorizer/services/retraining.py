"""
Retraining pipeline.

Idle → Checking → (Skip | Training) → Idle. A run goes ahead only when enough
new feedback has arrived since the last successful run (as recorded in the
store, so separate processes share it) and the verified
corpus is large enough. The new classifier is built off the event loop and
installed with a single reference swap; a failed run leaves the previous
classifier in place.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..models import RetrainOutcome, RetrainReport, RetrainState
from .classifier import CategoryClassifier, train_classifier
from .features import FeatureExtractor

logger = logging.getLogger(__name__)


class RetrainingPipeline:
    """Single-flight retraining with copy-then-swap installation"""

    def __init__(self, store, extractor: FeatureExtractor,
                 install: Callable[[CategoryClassifier], None],
                 min_new_feedback: int = 10, min_samples: int = 50,
                 min_training_samples: int = 10):
        self.store = store
        self.extractor = extractor
        self.install = install
        self.min_new_feedback = min_new_feedback
        self.min_samples = min_samples
        self.min_training_samples = min_training_samples

        self.state = RetrainState.IDLE
        self.last_run_at: Optional[datetime] = None
        self.last_report: Optional[RetrainReport] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def _last_run_marker(self) -> Optional[datetime]:
        # Stored marker is shared with other processes on the same database
        stored = await self.store.load_last_retrain_at()
        markers = [m for m in (stored, self.last_run_at) if m is not None]
        return max(markers) if markers else None

    async def run(self) -> RetrainReport:
        """
        Trigger one retraining run. Never raises.

        Returns:
            RetrainReport describing how the run ended
        """
        if self._lock.locked():
            logger.info("Retraining already in progress, skipping trigger")
            return RetrainReport(outcome=RetrainOutcome.ALREADY_RUNNING)

        async with self._lock:
            report = await self._run()
            report.finished_at = datetime.now(timezone.utc)
            self.state = RetrainState.IDLE
            self.last_report = report
            return report

    async def _run(self) -> RetrainReport:
        # Feedback arriving while this run trains counts towards the next one
        started_at = datetime.now(timezone.utc)
        report = RetrainReport(outcome=RetrainOutcome.FAILED, started_at=started_at)

        try:
            self.state = RetrainState.CHECKING
            report.new_feedback = await self.store.count_feedback_since(await self._last_run_marker())
            if report.new_feedback < self.min_new_feedback:
                logger.info(f"Skipping retrain: {report.new_feedback} new feedback records "
                            f"(minimum {self.min_new_feedback})")
                report.outcome = RetrainOutcome.INSUFFICIENT_FEEDBACK
                return report

            samples = await self.store.load_verified_training_samples()
            report.sample_count = len(samples)
            if len(samples) < self.min_samples:
                logger.info(f"Skipping retrain: {len(samples)} verified training samples "
                            f"(minimum {self.min_samples})")
                report.outcome = RetrainOutcome.INSUFFICIENT_DATA
                return report

            self.state = RetrainState.TRAINING
            logger.info(f"🔄 Retraining model with {len(samples)} samples")
            classifier = await asyncio.to_thread(
                train_classifier, samples, self.extractor, self.min_training_samples
            )
            if classifier is None:
                report.outcome = RetrainOutcome.INSUFFICIENT_DATA
                return report

            self.install(classifier)
            self.last_run_at = started_at
            report.sample_count = classifier.sample_count
            try:
                await self.store.record_retrain_run(started_at, classifier.sample_count)
            except Exception as e:
                logger.warning(f"Could not persist retrain marker, other processes may retrain early: {e}")
            report.outcome = RetrainOutcome.RETRAINED
            logger.info(f"✅ Model retrained with {classifier.sample_count} samples")
            return report

        except Exception as e:
            logger.error(f"❌ Error retraining model, keeping previous classifier: {e}")
            report.outcome = RetrainOutcome.FAILED
            report.error = str(e)
            return report
