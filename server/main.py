from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncpg
import logging

from smart_categorizer import __version__, config
from smart_categorizer.database import init_db, close_db
from smart_categorizer.routes import categorizer as categorizer_routes
from smart_categorizer.scheduler.retrain_scheduler import RetrainScheduler
from smart_categorizer.services.categorizer import engine
from smart_categorizer.services.field_cipher import get_field_cipher
from smart_categorizer.services.store import InMemoryCategorizationStore, PostgresCategorizationStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

retrain_scheduler = RetrainScheduler(engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    db_pool = None

    # Try to connect to PostgreSQL (optional for development)
    try:
        db_pool = await asyncpg.create_pool(config.DATABASE_URL)
        await init_db(db_pool)
        engine.set_store(PostgresCategorizationStore(db_pool, cipher=get_field_cipher()))
        logger.info("✅ Connected to PostgreSQL")
    except Exception as e:
        if not config.is_dev_mode():
            logger.error(f"❌ PostgreSQL connection failed: {e}")
            raise
        logger.warning(f"PostgreSQL connection failed: {e}")
        logger.warning("⚠️  Running with in-memory categorization store (development mode)")
        engine.set_store(InMemoryCategorizationStore())

    if not await engine.initialize():
        logger.warning("⚠️  Smart categorizer will retry initialization on first request")

    await retrain_scheduler.start_scheduler()

    logger.info("🚀 FastAPI server started successfully!")

    yield

    # Shutdown
    await retrain_scheduler.stop_scheduler()
    await engine.wait_for_pending_writes()
    await close_db()
    logger.info("❌ Server shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Smart Categorizer API",
    description="Transaction category suggestions from merchant patterns, rules, a trained model and user history",
    version=__version__,
    docs_url="/docs",  # Swagger UI
    lifespan=lifespan
)

app.add_middleware(CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(categorizer_routes.router)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "ok": True,
        "version": __version__,
        "services": {
            "categorizer": engine.initialized,
            "retrain_scheduler": retrain_scheduler.get_scheduler_stats(),
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
