# main.py
# Configure logging at the very beginning
import logging

from threadboard.config.logging import configure_logging

configure_logging()
logger = logging.getLogger(__name__)  # Get logger after configuration

from uuid import uuid4

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api_service.api.routers.threads import router as threads_router
from threadboard.config.settings import settings

logger.info("Starting FastAPI...")


app = FastAPI(
    title="Threadboard API",
    description="Thread lifecycle, queue promotion and board projection service",
    version="0.1.0",
    docs_url="/docs",
    openapi_url="/openapi.json",
)


# Healthz router
health_router = APIRouter()


@health_router.get("/healthz")
async def health_check():
    return {"status": "ok"}


app.include_router(health_router, tags=["health"])
app.include_router(threads_router)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid4())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.on_event("startup")
async def startup_event():
    logger.info(
        "Thread queue configured",
        extra={
            "max_concurrent_threads": settings.thread_queue.max_concurrent_threads,
            "poll_interval_seconds": settings.thread_queue.poll_interval_seconds,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api_service.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.fastapi_reload,
    )
