"""Main application - HTTP endpoints Entu calls when persons or tasks are edited."""
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from entu_sync import settings
from entu_sync.entu_client import EntuClient
from entu_sync.errors import WebhookError
from entu_sync.janitor import QueueJanitor
from entu_sync.logging_conf import logger
from entu_sync.queue.debounce_queue import InMemoryDebounceQueue
from entu_sync.rate_limiter import RateLimiter
from entu_sync.sync_engine import SyncEngine
from entu_sync.webhook_handler import WebhookHandler


def create_app(
    engine: Optional[SyncEngine] = None,
    queue: Optional[InMemoryDebounceQueue] = None,
    rate_limiter: Optional[RateLimiter] = None,
    secret: Optional[str] = None,
    settle_interval: Optional[float] = None,
    start_janitor: bool = True,
) -> FastAPI:
    """Build the app; both webhook endpoints share one queue and one rate limit."""
    engine = engine or SyncEngine(EntuClient())
    queue = queue or InMemoryDebounceQueue()
    rate_limiter = rate_limiter or RateLimiter()
    secret = secret if secret is not None else settings.WEBHOOK_SECRET
    janitor = QueueJanitor(queue)

    handler_options = dict(queue=queue, rate_limiter=rate_limiter, secret=secret, settle_interval=settle_interval)
    student_handler = WebhookHandler("student-added-to-class", engine.propagate_from_person, **handler_options)
    task_handler = WebhookHandler("task-assigned-to-class", engine.propagate_from_task, **handler_options)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 50)
        logger.info("Entu Permission Sync")
        logger.info("=" * 50)
        logger.info(f"Entu API: {settings.ENTU_API_URL} (account: {settings.ENTU_ACCOUNT})")
        logger.info(f"Rate limit: {rate_limiter.max_requests} per {rate_limiter.window_seconds}s")
        logger.info(f"Settle interval: {student_handler.settle_interval}s")
        logger.info("=" * 50)
        if start_janitor:
            janitor.start()
        yield
        janitor.stop()
        logger.info("Stopped")

    app = FastAPI(title="Entu Permission Sync", lifespan=lifespan)
    app.state.queue = queue

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, exc: WebhookError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.post("/api/webhooks/student-added-to-class")
    async def student_added_to_class(request: Request):
        body = await request.body()
        return await run_in_threadpool(student_handler.handle, body, request.headers)

    @app.post("/api/webhooks/task-assigned-to-class")
    async def task_assigned_to_class(request: Request):
        body = await request.body()
        return await run_in_threadpool(task_handler.handle, body, request.headers)

    @app.get("/api/webhooks/queue-stats")
    def queue_stats():
        return queue.stats().to_dict()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


def main():
    """Entry point."""
    try:
        settings.validate_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    uvicorn.run(create_app(), host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
