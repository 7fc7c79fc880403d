"""
FastAPI Application — REST surface of the field-service assistant.

Provides:
- Inbound message webhook for the messaging gateway
- Reminder management (create, list by recipient, cancel)
- Service-completion hook for the field team
- Health, statistics and active-session diagnostics
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings
from core.orchestrator import Orchestrator, create_orchestrator
from job_queue.scheduler import ReminderValidationError

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    orchestrator: Optional[Orchestrator] = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = create_orchestrator(settings)
        app.state.orchestrator = orchestrator

    await orchestrator.start()
    logger.info("assistant_api_started", app=settings.app_name,
                store_backend=settings.database.store_backend,
                messaging=settings.messaging.backend)
    yield

    await orchestrator.stop()
    logger.info("assistant_api_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Field Service Assistant API",
    description="Messaging assistant for quotes, scheduling, FAQ, emergencies and handoff",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class InboundMessageRequest(BaseModel):
    sender: str
    content: str
    metadata: dict[str, Any] = {}


class ReminderCreateRequest(BaseModel):
    recipient: str
    message: str
    scheduled_at: datetime
    kind: str = "reminder"


class ServiceCompletionRequest(BaseModel):
    user_id: str
    service: str = ""


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health(request: Request):
    orchestrator = _orchestrator(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "active_sessions": len(orchestrator.sessions),
        "messenger": await orchestrator.ctx.messenger.health_check(),
    }


@app.get("/api/v1/stats")
async def get_stats(request: Request):
    return await _orchestrator(request).stats()


@app.get("/api/v1/sessions")
async def list_sessions(request: Request):
    return _orchestrator(request).sessions.list_active()


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/messages/inbound")
async def receive_inbound_message(req: InboundMessageRequest, request: Request):
    return await _orchestrator(request).handle_inbound_message(
        sender=req.sender, content=req.content, metadata=req.metadata,
    )


# ══════════════════════════════════════════════════════════════
#  REMINDERS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/reminders", status_code=201)
async def create_reminder(req: ReminderCreateRequest, request: Request):
    scheduler = _orchestrator(request).scheduler
    try:
        job_id = await scheduler.create_reminder(req.recipient, req.message, req.scheduled_at,
                                                 kind=req.kind)
    except ReminderValidationError as e:
        raise HTTPException(400, str(e))
    return {"status": "scheduled", "id": job_id}


@app.get("/api/v1/reminders")
async def list_reminders(request: Request, recipient: str = Query(..., min_length=1)):
    jobs = await _orchestrator(request).scheduler.get_reminders_for_recipient(recipient)
    return [job.model_dump(mode="json") for job in jobs]


@app.delete("/api/v1/reminders/{reminder_id}")
async def cancel_reminder(reminder_id: str, request: Request):
    if not await _orchestrator(request).scheduler.cancel_reminder(reminder_id):
        raise HTTPException(404, "Reminder not found or no longer pending")
    return {"status": "cancelled", "id": reminder_id}


# ══════════════════════════════════════════════════════════════
#  SERVICE COMPLETION
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/services/complete")
async def complete_service(req: ServiceCompletionRequest, request: Request):
    booking = await _orchestrator(request).register_service_completion(req.user_id, req.service)
    if booking is None:
        raise HTTPException(404, "No active booking for this user")
    return {"status": "completed", "booking": booking.model_dump(mode="json")}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
