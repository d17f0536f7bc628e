import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import BACKGROUND_JOBS_ENABLED, LOG_LEVEL
from .database import engine
from .errors import DomainError
from .models import Base
from .notifications import drain_notifications, publisher
from .routes import router
from .sweeper import start_background_jobs, stop_background_jobs
from .workers import worker

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_worker():
    try:
        await worker()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Notification worker stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("App starting up...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    worker_task = None
    if BACKGROUND_JOBS_ENABLED:
        worker_task = asyncio.create_task(_run_worker())
        start_background_jobs()
    yield
    logger.info("App shutting down...")
    if BACKGROUND_JOBS_ENABLED:
        await stop_background_jobs()
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)
    await drain_notifications()
    await publisher.close()
    await engine.dispose()


app = FastAPI(title="Event Ticketing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code.value},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"errors": jsonable_encoder(exc.errors())})


app.include_router(router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ticketing.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
