"""FastAPI status API for remote, read-only monitoring."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from ...errors import MaestroError
from ...models import BranchState, ErrorEntry
from ...orchestrator import WorkflowOrchestrator, available_commands


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: str):
        for connection in list(self.active_connections):
            try:
                await connection.send_text(message)
            except (WebSocketDisconnect, RuntimeError):
                # Remove broken connections
                self.disconnect(connection)


class StateResponse(BaseModel):
    phase: str
    feature: Optional[str] = None
    iteration: int
    max_iterations: int
    verdict: str
    escalated: bool
    signals: List[str]
    workers: List[str]
    branch: Optional[BranchState] = None
    available_commands: List[str]
    errors: List[ErrorEntry]


class ReviewResponse(BaseModel):
    verdict: str
    exists: bool
    issues: List[str]


class StatusUpdate(BaseModel):
    phase: str
    iteration: int = 0
    feature: Optional[str] = None
    escalated: bool = False


def create_app(root: Path) -> FastAPI:
    """Build the API for the workflow rooted at ``root``."""
    app = FastAPI(title="Maestro API", version="1.0.0")
    manager = ConnectionManager()
    app.state.manager = manager

    def orchestrator() -> WorkflowOrchestrator:
        try:
            orch = WorkflowOrchestrator(root)
            orch.store.ensure_initialized()
        except MaestroError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return orch

    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy", "root": str(Path(root).resolve())}

    @app.get("/api/state", response_model=StateResponse)
    async def get_state():
        snapshot = orchestrator().inspect()
        record = snapshot.record
        return StateResponse(
            phase=record.phase.value,
            feature=record.feature,
            iteration=record.iteration,
            max_iterations=snapshot.config.max_iterations,
            verdict=snapshot.verdict.value,
            escalated=record.escalated,
            signals=sorted(snapshot.signals),
            workers=snapshot.config.workers,
            branch=snapshot.branch,
            available_commands=available_commands(snapshot),
            errors=record.errors[-20:],
        )

    @app.get("/api/review", response_model=ReviewResponse)
    async def get_review():
        snapshot = orchestrator().inspect()
        return ReviewResponse(
            verdict=snapshot.verdict.value,
            exists=snapshot.review_exists,
            issues=snapshot.issues,
        )

    @app.post("/api/broadcast/status-update")
    async def broadcast_status_update(update: StatusUpdate) -> Dict[str, Any]:
        message = json.dumps({"type": "status_update", **update.model_dump()})
        await manager.broadcast(message)
        return {"message": "Status update broadcasted", "clients": len(manager.active_connections)}

    @app.websocket("/api/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Clients only listen; anything they send is ignored."""
        await manager.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app
