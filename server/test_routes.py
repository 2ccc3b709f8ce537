"""
Test suite for the categorizer REST endpoints

Run with:
    python -m pytest test_routes.py -v
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from smart_categorizer.routes.categorizer import get_engine, router


@pytest.fixture
def client(engine):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_engine] = lambda: engine

    with TestClient(app) as client:
        yield client


class TestSuggestEndpoint:
    """Test POST /categorizer/suggest"""

    def test_suggest_merchant(self, client):
        """Test a known merchant"""
        response = client.post("/categorizer/suggest", json={
            "description": "STARBUCKS COFFEE SHOP",
            "amount": 5.50,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["degraded"] is False
        assert data["suggestions"][0]["category"] == "Food & Drink"
        assert data["suggestions"][0]["source"] == "merchant_pattern"
        assert data["suggestions"][0]["confidence"] == pytest.approx(0.9)
        assert data["suggestions"][0]["meta"]["pattern"] == "starbucks"

    def test_suggest_empty_result(self, client):
        """Test an unknown description returns an empty list"""
        response = client.post("/categorizer/suggest", json={"description": "xyz 123"})

        assert response.status_code == 200
        assert response.json() == {"suggestions": [], "degraded": False}

    def test_invalid_transaction_type(self, client):
        """Test request validation"""
        response = client.post("/categorizer/suggest", json={
            "description": "uber trip",
            "transaction_type_id": 7,
        })

        assert response.status_code == 422


class TestFeedbackEndpoint:
    """Test POST /categorizer/feedback"""

    def test_feedback_recorded(self, client, store):
        """Test feedback is accepted and audited"""
        response = client.post("/categorizer/feedback", json={
            "user_id": "user-1",
            "description": "UBER TRIP 999",
            "suggested_category": "Transport",
            "actual_category": "Rideshare",
            "was_accepted": False,
            "confidence": 0.6,
            "amount": 23.40,
        })

        assert response.status_code == 202
        assert response.json()["recorded"] is True
        assert store.feedback_records[0].actual_category == "Rideshare"

    def test_feedback_requires_category(self, client):
        """Test the corrected category is mandatory"""
        response = client.post("/categorizer/feedback", json={
            "user_id": "user-1",
            "description": "UBER TRIP 999",
            "was_accepted": True,
        })

        assert response.status_code == 422


class TestRetrainAndStats:
    """Test POST /categorizer/retrain and GET /categorizer/stats"""

    def test_retrain_skipped_without_feedback(self, client):
        """Test a retrain trigger with no new feedback"""
        response = client.post("/categorizer/retrain")

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "insufficient_feedback"
        assert data["swapped"] is False

    def test_stats(self, client):
        """Test statistics after the first suggestion"""
        client.post("/categorizer/suggest", json={"description": "STARBUCKS"})

        response = client.get("/categorizer/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["initialized"] is True
        assert data["merchant_patterns"] == 1
        assert data["last_retrain_outcome"] is None
