import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from app.core.logger import logger

class LogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        process_time = time.time() - start_time
        actor = request.headers.get("x-actor-role", "-")

        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            f"Method: {request.method} | "
            f"Path: {request.url.path} | "
            f"Actor: {actor} | "
            f"Status: {response.status_code} | "
            f"Duration: {process_time:.4f}s"
        )

        return response
