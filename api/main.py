import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from core.logging_config import configure_logging
from services.health import router as health_router
from services.insights import router as insights_router
from services.knowledge import router as knowledge_router
from services.retrieve import router as retrieve_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    # Try to init DB on startup; don't crash if DB not ready yet
    try:
        from core.database import init_db
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.warning(f"DB init deferred (run scripts/init_db.py once the database is up): {e}")
    yield


app = FastAPI(title="Knowledge Engine API", version="0.1.0", lifespan=lifespan)

app.include_router(health_router, prefix="/health")
app.include_router(knowledge_router)
app.include_router(retrieve_router)
app.include_router(insights_router)
