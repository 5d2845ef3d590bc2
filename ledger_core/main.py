
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from ledger_core.api.endpoints import router
from ledger_core.core.config import settings
from ledger_core.core.logging import setup_logging
from ledger_core.db.session import AsyncSessionLocal, engine
from ledger_core.models import Base
from ledger_core.scheduler import ReconciliationScheduler
from ledger_core.services.reconciliation import ReconciliationService

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"{settings.PROJECT_NAME} started")

    scheduler = ReconciliationScheduler(
        ReconciliationService(AsyncSessionLocal),
        settings.RECONCILIATION_INTERVAL_SECONDS,
    )
    scheduler.start()

    yield

    await scheduler.stop()
    await engine.dispose()

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
app.include_router(router, prefix="/api")
