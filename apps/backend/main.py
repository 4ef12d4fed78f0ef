from fastapi import FastAPI
from dotenv import load_dotenv
from contextlib import asynccontextmanager
import asyncio
import logging

from core.config import get_config
from app.extraction_api import router as extraction_router
from pipeline import __version__
from pipeline.storage import PostgresStore
from pipeline.triggers import build_pipeline, cleanup_stuck_attempts

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 300


async def run_stuck_cleanup(pipeline, interval: float = CLEANUP_INTERVAL_SECONDS):
    """Sweep stuck attempts every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            cleanup_stuck_attempts(pipeline)
        except Exception as e:
            logger.error(f"[extractor] Stuck attempt cleanup failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application lifecycle events."""
    config = get_config()
    pipeline = build_pipeline(config)

    if isinstance(pipeline.store, PostgresStore):
        pipeline.store.ensure_schema()
        logger.info("[extractor] Using PostgreSQL store")
    else:
        logger.warning("[extractor] Using in-memory store; attempts are lost on restart")

    if not config.internal_api_key:
        logger.warning("[extractor] INTERNAL_API_KEY not set, internal endpoints will return 503")

    app.state.pipeline = pipeline
    cleanup_task = asyncio.create_task(run_stuck_cleanup(pipeline))

    yield

    cleanup_task.cancel()
    await asyncio.gather(cleanup_task, return_exceptions=True)
    await pipeline.queue.shutdown()
    logger.info("[extractor] Shut down")


app = FastAPI(title="Job Extraction API", version=__version__, lifespan=lifespan)

app.include_router(extraction_router)


@app.get("/api/healthz")
def healthz():
    pipeline = getattr(app.state, "pipeline", None)
    return {
        "status": "ok",
        "version": __version__,
        "store": type(pipeline.store).__name__ if pipeline else None,
        "queued_jobs": pipeline.queue.pending if pipeline else 0,
    }
