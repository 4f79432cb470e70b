import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cbt.attempts import run_expiry_sweeper
from cbt.config import get_settings
from cbt.database import Base, SessionLocal, engine
from cbt.errors import register_exception_handlers
from cbt.evaluator import HttpEssayEvaluator
from cbt.routers import router

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.evaluator = HttpEssayEvaluator.from_settings(settings)
    sweeper = None
    if settings.expiry_sweep_interval > 0:
        sweeper = asyncio.create_task(run_expiry_sweeper(SessionLocal, app.state.evaluator, settings))
    else:
        logger.info("Expiry sweeper disabled")

    yield

    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    await app.state.evaluator.aclose()


app = FastAPI(
    title="CBT Engine API",
    description="Computer-based tests: authoring, timed attempts, scoring and results",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(router)
