"""
Loop Sync HTTP Surface

Read-mostly FastAPI app exposing the reconciled loop to a UI shell.

- GET  /                       service info
- GET  /health                 session + source health
- GET  /sync/state             reconciled phase, narration, flags
- GET  /sync/notices           recent notices (toasts)
- POST /sync/detect            start a detection cycle
- POST /sync/approve/{id}      approve an action (502 on backend failure,
                               409 while another approval is in flight)

No business logic lives here: every handler delegates to LoopSession.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import __version__, SERVICE_NAME
from .config import load_config
from .session import LoopSession, ApprovalError, ApprovalInProgressError

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("sync_api")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------
class NarrationResponse(BaseModel):
    phase: str
    label: str
    primary_text: str
    secondary_text: str
    status_message: str
    stage_index: int
    stage_title: str
    description: str
    progress_percent: int


class SyncStateResponse(BaseModel):
    phase: str
    is_complete: bool
    rule: str
    cycle: int
    execution_status: str
    detection_phase: str
    detection_status: str
    is_actively_detecting: bool
    lifecycle: str
    committed_action_id: Optional[str] = None
    foundational_action_id: Optional[str] = None
    readiness: str
    stream_connected: bool
    stream_reconnecting: bool
    is_approving: bool
    has_validated_result: bool
    stale_sources: List[str] = Field(default_factory=list)
    narration: NarrationResponse


class NoticeResponse(BaseModel):
    kind: str
    title: str
    message: str
    severity: str
    blocking: bool
    created_at: str


class DetectResponse(BaseModel):
    triggered: bool
    cycle: int
    status: Optional[str] = None


class ApproveResponse(BaseModel):
    action_id: str
    success: bool
    message: str
    total_changes: int = 0
    validated: bool = False
    lifecycle: str


def _state_response(session: LoopSession) -> SyncStateResponse:
    state = session.state()
    n = state.narration
    return SyncStateResponse(
        phase=state.resolved.phase.value,
        is_complete=state.resolved.is_complete,
        rule=state.resolved.rule,
        cycle=state.cycle,
        execution_status=state.execution_status.value,
        detection_phase=state.detection_phase.value,
        detection_status=state.detection_status.value,
        is_actively_detecting=state.is_actively_detecting,
        lifecycle=state.lifecycle.value,
        committed_action_id=state.committed_action_id,
        foundational_action_id=state.foundational_action.action_id if state.foundational_action else None,
        readiness=state.readiness.value,
        stream_connected=state.stream_connected,
        stream_reconnecting=state.stream_reconnecting,
        is_approving=state.is_approving,
        has_validated_result=bool(state.execution_result and state.execution_result.is_validated()),
        stale_sources=state.stale_sources,
        narration=NarrationResponse(
            phase=n.phase.value,
            label=n.label,
            primary_text=n.primary_text,
            secondary_text=n.secondary_text,
            status_message=n.status_message,
            stage_index=n.stage_index,
            stage_title=n.stage_title,
            description=n.description,
            progress_percent=n.progress_percent,
        ),
    )


def create_app(session: LoopSession, manage_session: bool = True) -> FastAPI:
    """
    Build the app around one session.

    With manage_session the app starts the session on startup and closes it
    on shutdown; otherwise the caller owns the session's lifetime.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_session:
            logger.info(f"{SERVICE_NAME} starting up...")
            await session.start()
        yield
        if manage_session:
            logger.info(f"{SERVICE_NAME} shutting down...")
            await session.close()

    app = FastAPI(
        title=SERVICE_NAME,
        description="Reconciled ZYRA revenue loop state",
        version=__version__,
        lifespan=lifespan,
    )

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "status": "running" if not session.disposed else "stopped",
            "version": __version__,
        }

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        state = session.state()
        degraded = bool(state.stale_sources) or state.stream_reconnecting
        return {
            "status": "degraded" if degraded else "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "readiness": state.readiness.value,
            "stale_sources": state.stale_sources,
            "stream": {
                "connected": state.stream_connected,
                "reconnecting": state.stream_reconnecting,
            },
            "timers": session.scheduler.scheduled_names(),
        }

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------
    @app.get("/sync/state", response_model=SyncStateResponse)
    async def get_state():
        return _state_response(session)

    @app.get("/sync/notices", response_model=List[NoticeResponse])
    async def get_notices(limit: int = 20):
        return [
            NoticeResponse(
                kind=n.kind.value,
                title=n.title,
                message=n.message,
                severity=n.severity.value,
                blocking=n.blocking,
                created_at=n.created_at.isoformat(),
            )
            for n in session.notices.recent(limit)
        ]

    @app.post("/sync/detect", response_model=DetectResponse)
    async def trigger_detection():
        data = await session.trigger_detection()
        return DetectResponse(
            triggered=data is not None,
            cycle=session.reconciler.cycle,
            status=(data or {}).get("status"),
        )

    @app.post("/sync/approve/{action_id}", response_model=ApproveResponse)
    async def approve_action(action_id: str):
        try:
            response = await session.approve_action(action_id)
        except ApprovalInProgressError as e:
            logger.warning(f"Approval of {action_id} rejected: {e}")
            raise HTTPException(status_code=409, detail=str(e))
        except ApprovalError as e:
            logger.error(f"Approval of {action_id} failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        result = response.result
        return ApproveResponse(
            action_id=action_id,
            success=response.success,
            message=response.message,
            total_changes=result.total_changes if result else 0,
            validated=bool(result and result.is_validated()),
            lifecycle=session.lifecycle.state.value,
        )

    return app


def build_default_app() -> FastAPI:
    """App wired from ZYRA_* environment / ZYRA_CONFIG YAML. For `uvicorn --factory`."""
    return create_app(LoopSession(load_config()))


def run(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    """Serve the default app with uvicorn."""
    logger.info(f"Starting {SERVICE_NAME} on {host}:{port}")
    uvicorn.run(build_default_app(), host=host, port=port)


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    run()
