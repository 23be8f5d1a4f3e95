"""
FastAPI Web Service for the Contextual Book Recommender

Provides RESTful endpoints for:
- Selecting contextual book recommendations
- Recording user interactions
- Running reward attribution and inspecting arm statistics
- Catalog sync and identity merging
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config.settings import get_settings
from errors import NotFoundError, ValidationError
from services.recommendation_engine import RecommendationEngine

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Pydantic models for request/response
class UserSignals(BaseModel):
    has_account: Optional[bool] = Field(None, description="Whether the reader is signed in")
    engagement_level: Optional[float] = Field(None, description="Engagement level (0-1)")
    diversity_score: Optional[float] = Field(None, description="Appetite for variety (0-1)")
    preference_fiction: Optional[float] = Field(None, description="Preference for fiction (0-1)")
    preference_nonfiction: Optional[float] = Field(None, description="Preference for nonfiction (0-1)")
    preference_mixed: Optional[float] = Field(None, description="Preference for mixed reading (0-1)")


class ReadingContext(BaseModel):
    mood: Optional[str] = Field(None, description="Current mood, e.g. relaxed")
    situation: Optional[str] = Field(None, description="Reading situation, e.g. commuting")
    goal: Optional[str] = Field(None, description="Reading goal, e.g. learning")
    time_of_day: Optional[str] = Field(None, description="morning/afternoon/evening/night")
    hour: Optional[int] = Field(None, description="Hour of day (0-23)")
    day_of_week: Optional[int] = Field(None, description="Day of week, 0 = Monday")
    user: Optional[UserSignals] = None


class CandidateBook(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str = Field(..., description="Book identifier")
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    popularity_score: float = Field(0.0, description="Non-personalised popularity")


class RecommendationRequest(BaseModel):
    context: ReadingContext
    candidate_books: List[CandidateBook]
    user_id: Optional[str] = Field(None, description="Signed-in user identifier")
    session_id: Optional[str] = Field(None, description="Anonymous session identifier")
    limit: Optional[int] = Field(None, description="Number of recommendations")


class RecommendationResponse(BaseModel):
    book_list: List[Dict[str, Any]]
    arm_used: Optional[str]
    diagnostics: Dict[str, Any]
    impression_ids: List[str]


class InteractionRequest(BaseModel):
    book_id: str = Field(..., description="Book identifier")
    action_type: str = Field(..., description="click/save/unsave/rate")
    action_value: Optional[float] = Field(None, description="Rating value for 'rate'")
    user_id: Optional[str] = Field(None, description="User identifier")
    session_id: Optional[str] = Field(None, description="Session identifier")
    timestamp: Optional[datetime] = Field(None, description="When the action happened")


class InteractionResponse(BaseModel):
    accepted: bool
    action_id: Optional[str] = None
    points: Optional[float] = None
    error: Optional[str] = None


class AttributionRequest(BaseModel):
    window_hours: Optional[float] = Field(None, description="How far back to scan for actions")
    max_actions: Optional[int] = Field(None, description="Upper bound on actions processed")


class MergeIdentitiesRequest(BaseModel):
    session_id: str
    user_id: str


class CatalogRequest(BaseModel):
    books: List[CandidateBook]


def create_engine_from_settings() -> RecommendationEngine:
    settings = get_settings()
    return RecommendationEngine(settings.to_recommender_config())


def create_app(engine: RecommendationEngine = None) -> FastAPI:
    """
    Build the API application.

    Args:
        engine: Engine to serve; created from settings at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_engine = app.state.engine is None
        if owns_engine:
            try:
                app.state.engine = create_engine_from_settings()
                logger.info("Recommendation engine initialised successfully")
            except Exception as e:
                logger.error(f"Failed to initialise recommendation engine: {e}")
                raise
        yield
        if owns_engine and app.state.engine is not None:
            app.state.engine.close()
            app.state.engine = None

    app = FastAPI(
        title="Contextual Book Recommender API",
        description="Strategy selection for book recommendations using contextual bandits",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={'detail': str(exc), 'field': exc.field})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={'detail': str(exc)})

    _register_routes(app)
    return app


def get_recommendation_engine(request: Request) -> RecommendationEngine:
    engine = request.app.state.engine
    if engine is None:
        engine = create_engine_from_settings()
        request.app.state.engine = engine
    return engine


def _register_routes(app: FastAPI):

    @app.get("/")
    def root():
        return {
            "message": "Contextual Book Recommender API",
            "version": "1.0.0",
            "status": "healthy",
            "timestamp": datetime.now(),
        }

    @app.post("/recommendations", response_model=RecommendationResponse)
    def select_recommendation(
        request: RecommendationRequest,
        engine: RecommendationEngine = Depends(get_recommendation_engine)
    ):
        """
        Select a strategy arm for the reading context and return its ranked books.

        Invalid context returns 422; any other failure returns the popularity
        fallback with diagnostics.fallback = true.
        """
        result = engine.select_recommendation(
            context=request.context.model_dump(exclude_none=True),
            candidate_books=[book.model_dump(exclude_none=True) for book in request.candidate_books],
            user_id=request.user_id,
            session_id=request.session_id,
            limit=request.limit,
        )
        logger.info(f"Returned {len(result['book_list'])} books using arm {result['arm_used']}")
        return result

    @app.post("/interactions", response_model=InteractionResponse)
    def record_interaction(
        request: InteractionRequest,
        engine: RecommendationEngine = Depends(get_recommendation_engine)
    ):
        """Record a click, save, unsave or rating."""
        return engine.record_interaction(
            book_id=request.book_id,
            action_type=request.action_type,
            action_value=request.action_value,
            user_id=request.user_id,
            session_id=request.session_id,
            timestamp=request.timestamp,
        )

    @app.post("/attribution/run")
    def run_attribution(
        request: AttributionRequest = None,
        engine: RecommendationEngine = Depends(get_recommendation_engine)
    ):
        """Attribute pending actions to impressions and update the arms."""
        request = request or AttributionRequest()
        return engine.run_attribution_batch(request.window_hours, max_actions=request.max_actions)

    @app.get("/arms/statistics")
    def get_arm_statistics(
        user_id: Optional[str] = None,
        engine: RecommendationEngine = Depends(get_recommendation_engine)
    ):
        """Per-arm reward, confidence interval and best performing arm."""
        return engine.get_arm_statistics(user_id)

    @app.post("/identities/merge")
    def merge_identities(
        request: MergeIdentitiesRequest,
        engine: RecommendationEngine = Depends(get_recommendation_engine)
    ):
        """Assign an anonymous session's history to a signed-in user."""
        return engine.merge_identities(request.session_id, request.user_id)

    @app.post("/catalog")
    def sync_catalog(
        request: CatalogRequest,
        engine: RecommendationEngine = Depends(get_recommendation_engine)
    ):
        """Upsert books and rebuild the similarity index."""
        return engine.sync_catalog([book.model_dump(exclude_none=True) for book in request.books])

    @app.get("/metrics")
    def get_metrics(engine: RecommendationEngine = Depends(get_recommendation_engine)):
        return engine.get_metrics()

    @app.get("/health")
    def health_check(request: Request):
        """Comprehensive health check endpoint."""
        try:
            engine = get_recommendation_engine(request)
            metrics = engine.get_metrics()
            return {
                "status": "healthy",
                "recommendation_engine": "operational",
                "total_selections": metrics['total_selections'],
                "avg_response_time": metrics['avg_response_time'],
                "similarity_index": engine.similarity_engine.stats(),
                "timestamp": datetime.now(),
            }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(),
            }


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
