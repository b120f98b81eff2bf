"""
FastAPI Application — welcome-message configuration and event intake.

Provides:
- REST API for creators to manage their welcome messages
- Subscription event endpoint that enqueues welcome jobs
- Queue depth / worker stats for operators
- Optional in-process welcome worker (queue.run_worker_in_api)
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import Settings, get_settings
from database.session import close_db, init_db
from database.store import SqlStore
from database.store_base import BaseStore, WelcomeMessageNotFound
from database.store_factory import create_store
from job_queue.consumer import WelcomeWorker
from job_queue.message_queue import MessageQueue, create_message_queue
from models.schemas import TriggerEvent
from services.welcome import (
    WelcomeMessageForbidden, WelcomeMessageInvalid, WelcomeMessageService,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class WelcomeMessageCreateRequest(BaseModel):
    creator_id: str
    subject: str = ""
    content: str = ""
    trigger_event: TriggerEvent = TriggerEvent.SUBSCRIPTION
    tier_id: Optional[str] = None
    delay_minutes: int = 0
    is_active: bool = True


class WelcomeMessageUpdateRequest(BaseModel):
    subject: Optional[str] = None
    content: Optional[str] = None
    trigger_event: Optional[TriggerEvent] = None
    tier_id: Optional[str] = None
    delay_minutes: Optional[int] = None
    is_active: Optional[bool] = None


class WelcomeTestSendRequest(BaseModel):
    creator_id: str
    test_subscriber_id: str = ""


class SubscriptionEventRequest(BaseModel):
    subscriber_id: str
    creator_id: str
    tier_id: Optional[str] = None
    trigger_event: TriggerEvent = TriggerEvent.SUBSCRIPTION


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": False, "message": message})


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings | None = None,
    store: BaseStore | None = None,
    queue: MessageQueue | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or create_store(settings.database)
    queue = queue or create_message_queue(settings.queue)
    qc = settings.queue

    welcome_service = WelcomeMessageService(
        store, queue,
        queue_name=qc.name,
        max_attempts=qc.max_attempts,
    )
    worker = WelcomeWorker(
        queue, store,
        queue_name=qc.name,
        consumer_group=qc.consumer_group,
        consumer_name=qc.consumer_name,
        prefetch=qc.prefetch,
        max_inline_wait_ms=qc.max_inline_wait_ms,
        retry_backoff_ms=qc.retry_backoff_ms,
        promote_interval_s=qc.delayed_promote_interval,
        reclaim_idle_ms=qc.reclaim_idle_ms,
        reclaim_interval_s=qc.reclaim_interval,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(store, SqlStore):
            await init_db()

        queue_ready = await queue.connect()
        if qc.run_worker_in_api and queue_ready:
            await worker.start_background()

        logger.info("fundify_api_started",
                    queue_backend=type(queue).__name__,
                    queue_ready=queue_ready,
                    worker_in_process=worker.running or qc.run_worker_in_api)
        yield

        await worker.stop()
        await queue.close()
        if isinstance(store, SqlStore):
            await close_db()
        logger.info("fundify_api_stopped")

    app = FastAPI(
        title="Fundify API",
        description="Creator welcome messages and delayed delivery",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.queue = queue
    app.state.welcome_service = welcome_service
    app.state.worker = worker

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WelcomeMessageNotFound)
    async def _not_found(request: Request, exc: WelcomeMessageNotFound):
        return _error(404, "Welcome message not found")

    @app.exception_handler(WelcomeMessageForbidden)
    async def _forbidden(request: Request, exc: WelcomeMessageForbidden):
        return _error(403, "Forbidden")

    @app.exception_handler(WelcomeMessageInvalid)
    async def _invalid(request: Request, exc: WelcomeMessageInvalid):
        return _error(400, str(exc))

    # ══════════════════════════════════════════════════════════
    #  HEALTH & QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "queue_backend": type(queue).__name__,
        }

    @app.get("/api/v1/queue/stats")
    async def queue_stats():
        return {
            "queue": qc.name,
            "queue_depth": await queue.queue_length(qc.name),
            "delayed_depth": await queue.delayed_length(qc.name),
            "dead_letter_depth": await queue.dead_letter_length(qc.name),
            "worker_running": worker.running,
            "worker_in_flight": worker.in_flight,
            "worker_stats": worker.stats.as_dict(),
        }

    # ══════════════════════════════════════════════════════════
    #  WELCOME MESSAGES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/welcome-messages", status_code=201)
    async def create_welcome_message(req: WelcomeMessageCreateRequest):
        welcome = await welcome_service.create(req.creator_id, req.model_dump())
        return {"success": True, "message": "Welcome message created",
                "data": welcome.model_dump(mode="json")}

    @app.get("/api/v1/welcome-messages")
    async def list_welcome_messages(creator_id: str = Query(...)):
        rows = await welcome_service.list_for_creator(creator_id)
        return {"success": True, "data": [r.model_dump(mode="json") for r in rows]}

    @app.get("/api/v1/welcome-messages/{welcome_id}")
    async def get_welcome_message(welcome_id: str, creator_id: str = Query(...)):
        welcome = await welcome_service.get_for_creator(welcome_id, creator_id)
        return {"success": True, "data": welcome.model_dump(mode="json")}

    @app.patch("/api/v1/welcome-messages/{welcome_id}")
    async def update_welcome_message(
        welcome_id: str, req: WelcomeMessageUpdateRequest, creator_id: str = Query(...),
    ):
        changes: dict[str, Any] = req.model_dump(exclude_unset=True)
        updated = await welcome_service.update(welcome_id, creator_id, changes)
        return {"success": True, "message": "Welcome message updated",
                "data": updated.model_dump(mode="json")}

    @app.delete("/api/v1/welcome-messages/{welcome_id}")
    async def delete_welcome_message(welcome_id: str, creator_id: str = Query(...)):
        await welcome_service.delete(welcome_id, creator_id)
        return {"success": True, "message": "Welcome message deleted"}

    @app.post("/api/v1/welcome-messages/{welcome_id}/test")
    async def send_test_welcome(welcome_id: str, req: WelcomeTestSendRequest):
        message = await welcome_service.send_test(welcome_id, req.creator_id, req.test_subscriber_id)
        return {"success": True, "message": "Test welcome message sent",
                "data": message.model_dump(mode="json")}

    # ══════════════════════════════════════════════════════════
    #  EVENTS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/subscriptions", status_code=201)
    async def subscription_created(req: SubscriptionEventRequest):
        """
        Called once the platform has committed a subscription. The response
        does not depend on whether welcome jobs could be enqueued.
        """
        enqueued = await welcome_service.send_welcome_messages(
            subscriber_id=req.subscriber_id,
            creator_id=req.creator_id,
            trigger_event=req.trigger_event.value,
            tier_id=req.tier_id,
        )
        return {"success": True, "welcome_jobs_enqueued": enqueued}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
