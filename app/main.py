from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.exceptions import BookingError, RateLimited
from app.core.logger import logger
from app.core.redis import redis_client
from app.db.session import init_db
from app.middleware.log_middleware import LogMiddleware
from app.services.notification_service import dispatcher

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(f"{settings.PROJECT_NAME} started")
    yield
    await dispatcher.drain()
    await redis_client.close()
    logger.info(f"{settings.PROJECT_NAME} stopped")

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

from fastapi.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LogMiddleware)

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )

@app.get("/")
async def root():
    return {"message": "Welcome to CareSlot API"}

from app.api.api import api_router
app.include_router(api_router, prefix=settings.API_V1_STR)
