"""
FastAPI routes for smart transaction categorization.

This module provides REST API endpoints for:
1. Suggesting categories for a transaction description
2. Recording acceptance/correction feedback on a suggestion
3. Triggering a model retrain
4. Getting categorizer statistics
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any

from ..models import TransactionType
from ..services import categorizer
from ..services.categorizer import SmartCategorizationEngine

router = APIRouter(prefix="/categorizer", tags=["categorizer"])


def get_engine() -> SmartCategorizationEngine:
    """Engine dependency, overridden in tests"""
    return categorizer.engine


# Request/Response Models
class SuggestRequest(BaseModel):
    """Request model for category suggestions"""
    description: str = Field(..., description="Raw transaction description")
    amount: float = Field(0, ge=0, description="Transaction amount")
    transaction_type_id: int = Field(TransactionType.EXPENSE, ge=1, le=3, description="1 expense, 2 income, 3 savings")
    user_id: Optional[str] = Field(None, description="Enables suggestions from the user's own history")


class SuggestionResponse(BaseModel):
    """A single ranked suggestion"""
    category: str
    confidence: float
    source: str
    meta: Dict[str, Any] = Field(default_factory=dict)


class SuggestResponse(BaseModel):
    """Response model for category suggestions"""
    suggestions: List[SuggestionResponse]
    degraded: bool


class FeedbackRequest(BaseModel):
    """Request model for suggestion feedback"""
    user_id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    suggested_category: Optional[str] = None
    actual_category: str = Field(..., min_length=1, description="Category the user kept or chose")
    was_accepted: bool
    confidence: float = Field(0, ge=0, le=1)
    amount: Optional[float] = Field(None, ge=0)
    transaction_type_id: int = Field(TransactionType.EXPENSE, ge=1, le=3)


class FeedbackResponse(BaseModel):
    """Response model for feedback submission"""
    recorded: bool
    message: str


class RetrainResponse(BaseModel):
    """Response model for a retrain trigger"""
    outcome: str
    swapped: bool
    new_feedback: int
    sample_count: int
    error: Optional[str] = None


@router.post("/suggest", response_model=SuggestResponse)
async def suggest_categories(request: SuggestRequest, engine: SmartCategorizationEngine = Depends(get_engine)):
    """
    Suggest up to three categories for a transaction.
    An empty list is a valid answer; `degraded` marks the fallback suggestion.
    """
    result = await engine.categorize(
        request.description,
        request.amount,
        request.transaction_type_id,
        request.user_id,
    )

    return SuggestResponse(
        suggestions=[
            SuggestionResponse(
                category=s.category,
                confidence=s.confidence,
                source=s.source.value,
                meta=s.meta,
            )
            for s in result.suggestions
        ],
        degraded=result.degraded,
    )


@router.post("/feedback", response_model=FeedbackResponse, status_code=202)
async def record_feedback(request: FeedbackRequest, engine: SmartCategorizationEngine = Depends(get_engine)):
    """
    Record that the user accepted or corrected a suggestion.
    Pattern reinforcement and training data updates happen in the background.
    """
    recorded = await engine.record_feedback(
        request.user_id,
        request.description,
        request.suggested_category,
        request.actual_category,
        request.was_accepted,
        request.confidence,
        request.amount,
        request.transaction_type_id,
    )

    return FeedbackResponse(
        recorded=recorded,
        message="Feedback recorded" if recorded else "Feedback could not be stored",
    )


@router.post("/retrain", response_model=RetrainResponse)
async def retrain_model(engine: SmartCategorizationEngine = Depends(get_engine)):
    """Trigger a retrain; skipped when there is not enough new feedback"""
    report = await engine.retrain_model()

    return RetrainResponse(
        outcome=report.outcome.value,
        swapped=report.swapped,
        new_feedback=report.new_feedback,
        sample_count=report.sample_count,
        error=report.error,
    )


@router.get("/stats")
async def get_categorizer_stats(engine: SmartCategorizationEngine = Depends(get_engine)):
    """Get categorizer statistics"""
    return await engine.get_stats()
