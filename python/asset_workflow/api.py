"""FastAPI application for the asset request workflow.

Authentication happens upstream; the resolved caller arrives in the
X-Actor-Id, X-Actor-Role, X-Organization-Id, X-Hospital-Id and
X-Department-Id headers.
"""

import argparse
from contextlib import asynccontextmanager
from typing import Annotated, Callable

from fastapi import FastAPI, Depends, Header, Request as HttpRequest
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from shared.logging import get_logger, setup_logging

from .clock import Clock, SystemClock
from .config import WorkflowConfig
from .database import get_db, engine as default_engine, SessionLocal, Base
from .errors import WorkflowError
from .escalation import EscalationScheduler
from .events import EventDispatcher
from .schemas import (
    Actor, AssetResponse, AssetSelection, Decision, RequestCreate,
    RequestResponse, UtilizationUpdate,
)
from .service import RequestService

logger = get_logger(__name__)

# Dependency for database session
DbSession = Annotated[Session, Depends(get_db)]


def get_actor(
    x_actor_id: Annotated[str, Header()],
    x_actor_role: Annotated[str, Header()],
    x_organization_id: Annotated[str, Header()],
    x_hospital_id: Annotated[str, Header()],
    x_department_id: Annotated[str, Header()],
) -> Actor:
    """Caller identity as resolved by the authentication layer."""
    return Actor(
        actor_id=x_actor_id,
        role=x_actor_role,
        organization_id=x_organization_id,
        hospital_id=x_hospital_id,
        department_id=x_department_id,
    )


def get_service(http: HttpRequest, db: DbSession) -> RequestService:
    state = http.app.state
    return RequestService(db, state.config, state.clock, state.events)


CurrentActor = Annotated[Actor, Depends(get_actor)]
Service = Annotated[RequestService, Depends(get_service)]


def create_app(
    config: WorkflowConfig | None = None,
    engine: Engine | None = default_engine,
    session_factory: Callable[[], Session] = SessionLocal,
    clock: Clock | None = None,
    events: EventDispatcher | None = None,
) -> FastAPI:
    """Build the API. ``engine=None`` skips table creation on startup."""
    config = config or WorkflowConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (for development)
        if engine is not None:
            Base.metadata.create_all(bind=engine)
        scheduler = None
        if config.escalation_enabled:
            scheduler = EscalationScheduler(session_factory, config, app.state.clock, app.state.events)
            scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    app = FastAPI(
        title="Asset Request Workflow API",
        description="Approval workflow and asset reservation for inter-department transfers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.clock = clock or SystemClock()
    app.state.events = events or EventDispatcher()

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: HttpRequest, exc: WorkflowError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Health check
    @app.get("/api/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "asset-workflow-api", "version": app.version}

    # Request endpoints
    @app.post("/api/requests", response_model=RequestResponse, status_code=201)
    def create_request(payload: RequestCreate, actor: CurrentActor, service: Service):
        """Raise a request. Asset-specific requests reserve their assets immediately."""
        return service.create_request(actor, payload)

    @app.get("/api/requests/mine", response_model=list[RequestResponse])
    def list_my_requests(actor: CurrentActor, service: Service):
        """Requests raised by the caller, newest first."""
        return service.list_my_requests(actor)

    @app.get("/api/requests/pending", response_model=list[RequestResponse])
    def list_pending(actor: CurrentActor, service: Service):
        """Requests waiting at the caller's approval stage."""
        return service.list_pending_for_actor(actor)

    @app.get("/api/requests/open", response_model=list[RequestResponse])
    def list_open(actor: CurrentActor, service: Service):
        """Count-based requests from other departments that still need assets."""
        return service.list_open_requests(actor)

    @app.get("/api/requests/{request_id}", response_model=RequestResponse)
    def get_request(request_id: int, actor: CurrentActor, service: Service):
        """Get a single request with its approval history."""
        return service.get_request(request_id, actor)

    @app.post("/api/requests/{request_id}/approve", response_model=RequestResponse)
    def approve_request(request_id: int, body: Decision, actor: CurrentActor, service: Service):
        return service.approve_request(request_id, actor, body.remarks)

    @app.post("/api/requests/{request_id}/reject", response_model=RequestResponse)
    def reject_request(request_id: int, body: Decision, actor: CurrentActor, service: Service):
        return service.reject_request(request_id, actor, body.remarks)

    @app.post("/api/requests/{request_id}/reserve", response_model=RequestResponse)
    def reserve_assets(request_id: int, body: AssetSelection, actor: CurrentActor, service: Service):
        """Offer assets from the caller's department against a count-based request."""
        return service.reserve_specific_assets(request_id, actor, body.asset_ids)

    @app.post("/api/requests/{request_id}/fulfill", response_model=RequestResponse)
    def fulfill_request(request_id: int, body: AssetSelection, actor: CurrentActor, service: Service):
        return service.fulfill_request(request_id, actor, body.asset_ids)

    @app.post("/api/requests/{request_id}/reject-assets", response_model=RequestResponse)
    def reject_request_assets(request_id: int, body: AssetSelection, actor: CurrentActor,
                              service: Service):
        return service.reject_request_assets(request_id, actor, body.asset_ids, body.remarks)

    # Asset endpoints
    @app.get("/api/departments/{department_id}/assets", response_model=list[AssetResponse])
    def list_available_assets(department_id: str, actor: CurrentActor, service: Service):
        """Assets of a department in the caller's hospital that can be offered right now."""
        return service.list_available_assets(department_id, actor)

    @app.put("/api/assets/{asset_id}/utilization", response_model=AssetResponse)
    def update_utilization(asset_id: int, body: UtilizationUpdate, actor: CurrentActor,
                           service: Service):
        return service.update_utilization(asset_id, actor, body.utilization_status)

    return app


app = create_app()


def main():
    """Run the asset workflow API server."""
    parser = argparse.ArgumentParser(description="Asset Request Workflow API Server")
    parser.add_argument("--port", type=int, default=8082, help="Port to listen on")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    args = parser.parse_args()

    setup_logging("asset-workflow")
    logger.info(f"Starting asset workflow API on {args.host}:{args.port}")

    import uvicorn
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
