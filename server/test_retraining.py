"""
Test file to validate the retraining pipeline
Run with: python -m pytest test_retraining.py -v
"""

import asyncio
import logging

import pytest

from smart_categorizer.models import FeedbackRecord, RetrainOutcome, RetrainState
from smart_categorizer.services import retraining as retraining_module
from smart_categorizer.services.categorizer import SmartCategorizationEngine
from smart_categorizer.services.classifier import train_classifier
from smart_categorizer.services.store import InMemoryCategorizationStore
from conftest import labeled_samples


async def seed(store, feedback_count, samples):
    for i in range(feedback_count):
        await store.append_feedback_record(FeedbackRecord(
            user_id="user-1",
            description=f"compra {i}",
            suggested_category=None,
            actual_category="Shopping",
            was_accepted=False,
            confidence_score=0.0,
        ))
    for sample in samples:
        await store.append_training_sample(sample)


class TestRetrainGates:
    """Test the skip paths"""

    @pytest.mark.asyncio
    async def test_below_feedback_threshold_skips(self, extractor, caplog):
        """Test nine new feedback records do not trigger a retrain"""
        caplog.set_level(logging.INFO)
        store = InMemoryCategorizationStore()
        await seed(store, 9, labeled_samples(repeat=5))
        engine = SmartCategorizationEngine(store=store, extractor=extractor)

        report = await engine.retrain_model()

        assert report.outcome == RetrainOutcome.INSUFFICIENT_FEEDBACK
        assert report.new_feedback == 9
        assert not report.swapped
        assert engine.classifier is None
        assert "Skipping retrain" in caplog.text

    @pytest.mark.asyncio
    async def test_below_corpus_threshold_skips(self, extractor):
        """Test fewer than fifty verified samples do not trigger a retrain"""
        store = InMemoryCategorizationStore()
        await seed(store, 10, labeled_samples(repeat=3))
        engine = SmartCategorizationEngine(store=store, extractor=extractor)

        report = await engine.retrain_model()

        assert report.outcome == RetrainOutcome.INSUFFICIENT_DATA
        assert report.sample_count == 39
        assert engine.classifier is None


class TestRetrainSwap:
    """Test successful and failed retrains"""

    @pytest.mark.asyncio
    async def test_retrain_swaps_classifier(self, extractor):
        """Test a successful run installs the new classifier"""
        store = InMemoryCategorizationStore()
        await seed(store, 10, labeled_samples(repeat=5))
        engine = SmartCategorizationEngine(store=store, extractor=extractor)

        report = await engine.retrain_model()

        assert report.outcome == RetrainOutcome.RETRAINED
        assert report.swapped
        assert report.sample_count == 65
        assert engine.classifier.sample_count == 65
        assert engine.retraining.state == RetrainState.IDLE

    @pytest.mark.asyncio
    async def test_feedback_counted_since_last_run(self, extractor):
        """Test feedback used by one run does not count for the next"""
        store = InMemoryCategorizationStore()
        await seed(store, 10, labeled_samples(repeat=5))
        engine = SmartCategorizationEngine(store=store, extractor=extractor)

        first = await engine.retrain_model()
        second = await engine.retrain_model()

        assert first.outcome == RetrainOutcome.RETRAINED
        assert second.outcome == RetrainOutcome.INSUFFICIENT_FEEDBACK
        assert second.new_feedback == 0

    @pytest.mark.asyncio
    async def test_last_run_shared_through_store(self, extractor):
        """Test a fresh process counts feedback since the last stored run"""
        store = InMemoryCategorizationStore()
        await seed(store, 20, labeled_samples(repeat=5))
        first_engine = SmartCategorizationEngine(store=store, extractor=extractor)

        first = await first_engine.retrain_model()
        await seed(store, 9, [])
        restarted_engine = SmartCategorizationEngine(store=store, extractor=extractor)
        second = await restarted_engine.retrain_model()

        assert first.outcome == RetrainOutcome.RETRAINED
        assert len(store.retrain_runs) == 1
        assert await store.load_last_retrain_at() == first.started_at
        assert second.outcome == RetrainOutcome.INSUFFICIENT_FEEDBACK
        assert second.new_feedback == 9

    @pytest.mark.asyncio
    async def test_skipped_run_not_recorded(self, extractor):
        """Test only successful runs move the stored marker"""
        store = InMemoryCategorizationStore()
        await seed(store, 9, labeled_samples(repeat=5))
        engine = SmartCategorizationEngine(store=store, extractor=extractor)

        await engine.retrain_model()

        assert store.retrain_runs == []
        assert await store.load_last_retrain_at() is None

    @pytest.mark.asyncio
    async def test_training_failure_keeps_previous_classifier(self, extractor, monkeypatch, caplog):
        """Test the last good model stays installed when training fails"""
        store = InMemoryCategorizationStore()
        await seed(store, 10, labeled_samples(repeat=5))
        engine = SmartCategorizationEngine(store=store, extractor=extractor)
        previous = train_classifier(labeled_samples(), extractor)
        engine.classifier = previous

        def broken(samples, extractor, min_samples):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(retraining_module, "train_classifier", broken)

        report = await engine.retrain_model()

        assert report.outcome == RetrainOutcome.FAILED
        assert "out of memory" in report.error
        assert engine.classifier is previous
        assert engine.retraining.last_run_at is None
        assert "keeping previous classifier" in caplog.text

    @pytest.mark.asyncio
    async def test_store_failure_is_reported(self, extractor):
        """Test store errors end the run as failed instead of raising"""
        class BrokenStore(InMemoryCategorizationStore):
            async def count_feedback_since(self, since):
                raise ConnectionError("database unreachable")

        engine = SmartCategorizationEngine(store=BrokenStore(), extractor=extractor)

        report = await engine.retrain_model()

        assert report.outcome == RetrainOutcome.FAILED
        assert engine.retraining.state == RetrainState.IDLE


class TestSingleFlight:
    """Test overlapping triggers"""

    @pytest.mark.asyncio
    async def test_concurrent_trigger_skipped(self, extractor):
        """Test a trigger during a running retrain is skipped"""
        release = asyncio.Event()

        class BlockingStore(InMemoryCategorizationStore):
            async def count_feedback_since(self, since):
                await release.wait()
                return 0

        engine = SmartCategorizationEngine(store=BlockingStore(), extractor=extractor)

        first = asyncio.ensure_future(engine.retrain_model())
        await asyncio.sleep(0)
        assert engine.retraining.running
        assert engine.retraining.state == RetrainState.CHECKING

        second = await engine.retrain_model()
        release.set()
        first_report = await first

        assert second.outcome == RetrainOutcome.ALREADY_RUNNING
        assert first_report.outcome == RetrainOutcome.INSUFFICIENT_FEEDBACK
        assert not engine.retraining.running
