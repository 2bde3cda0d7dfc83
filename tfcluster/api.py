from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterator

from fastapi import Depends, FastAPI, Path as APIPath, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tfcluster.config import Settings, get_settings, parse_positive_duration
from tfcluster.db_service.connection import build_engine, build_session_factory, init_db, session_scope
from tfcluster.exceptions import ConfigurationError, DatabaseError, InvalidConfig, ServiceError
from tfcluster.models import (
    ClusterBody,
    ClusterResponse,
    ClustersResponse,
    ErrorResponse,
    HealthResponse,
    OperationListResponse,
    OperationResponse,
    VersionResponse,
)
from tfcluster.services.cluster_service import ClusterService
from tfcluster.services.lock_manager import InFlightRegistry
from tfcluster.services.reaper import ClusterReaper
from tfcluster.services.terraform_client import TerraformClient
from tfcluster.services.terraform_executor import TerraformCommandExecutor

REQUEST_ID_HEADER = "X-Request-ID"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "") or ""


def create_app(
    settings: Settings | None = None,
    *,
    executor: TerraformCommandExecutor | None = None,
    session_factory: sessionmaker | None = None,
) -> FastAPI:
    """Create a FastAPI application instance.

    A ``session_factory`` passed in must already point at an initialized
    schema; otherwise the engine is built from ``settings.database_url``.
    """

    resolved_settings = settings or get_settings()
    resolved_settings.validate()

    logging.basicConfig(
        level=getattr(logging, resolved_settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger = logging.getLogger("tfcluster")

    if session_factory is None:
        try:
            engine = build_engine(resolved_settings.database_url)
            init_db(engine)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Failed to initialize/connect cluster database: {e}") from e
        session_factory = build_session_factory(engine)

    resolved_executor = executor or TerraformCommandExecutor(
        resolved_settings.terraform_bin,
        credentials_file=resolved_settings.credentials_file,
        timeout_seconds=resolved_settings.command_timeout_seconds,
    )
    client = TerraformClient(resolved_executor, workspace_root=resolved_settings.workspace_root)
    service = ClusterService(
        client,
        session_factory,
        cluster_ttl=resolved_settings.cluster_ttl,
        max_destroy_attempts=resolved_settings.max_destroy_attempts,
        registry=InFlightRegistry(),
    )
    reaper = ClusterReaper(service, resolved_settings.reap_interval)

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        with session_scope(session_factory) as session:
            recovered = service.recover_interrupted_clusters(session)
        if recovered:
            logger.warning("startup_recovered count=%d", len(recovered))
        reaper.start()
        try:
            yield
        finally:
            await reaper.stop()
            await service.wait_idle()

    app = FastAPI(
        title="Terraform Cluster Service",
        version="0.1.0",
        description="Provisions and reaps terraform-managed clusters on behalf of API callers",
        lifespan=_lifespan,
    )
    app.state.settings = resolved_settings
    app.state.service = service
    app.state.reaper = reaper

    def get_db() -> Iterator[Session]:
        with session_scope(session_factory) as session:
            yield session

    @app.middleware("http")
    async def _request_id_middleware(request: Request, call_next):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response

    @app.exception_handler(ServiceError)
    async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        """Handle custom service errors."""
        request_id = _request_id(request)
        logger.warning("service_error request_id=%s code=%s message=%s", request_id, exc.code, exc.message)
        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(code=exc.code, message=exc.message, request_id=request_id).model_dump(),
        )

    @app.exception_handler(SQLAlchemyError)
    async def _database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        request_id = _request_id(request)
        logger.exception("database_error request_id=%s", request_id, exc_info=exc)
        error = DatabaseError()
        return JSONResponse(
            status_code=error.http_status,
            content=ErrorResponse(code=error.code, message=error.message, request_id=request_id).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Map request validation errors to the standard ErrorResponse."""
        message = "Request parameter validation failed"
        if exc.errors():
            message = "; ".join(
                f"{'.'.join(str(x) for x in (err.get('loc') or []))}: {err.get('msg')}"
                for err in exc.errors()
            )
        invalid = InvalidConfig(message)
        request_id = _request_id(request)
        logger.warning("validation_error request_id=%s message=%s", request_id, invalid.message)
        return JSONResponse(
            status_code=invalid.http_status,
            content=ErrorResponse(code=invalid.code, message=invalid.message, request_id=request_id).model_dump(),
        )

    @app.put("/cluster", response_model=ClusterResponse, status_code=202)
    async def create_cluster(
        request: Request,
        name: str | None = Query(default=None, max_length=255),
        timeout: str | None = Query(default=None, description="Cluster TTL, e.g. 90m or 2h"),
        db: Session = Depends(get_db),
    ) -> ClusterResponse:
        """Accept a terraform configuration and start provisioning it."""
        request_id = _request_id(request)
        ttl = None
        if timeout:
            try:
                ttl = parse_positive_duration(timeout, name="timeout")
            except ConfigurationError as e:
                raise InvalidConfig(e.message) from e

        config = await request.body()
        cluster = await service.create_cluster(db, config, name=name, ttl=ttl, request_id=request_id)
        return ClusterResponse(request_id=request_id, cluster=ClusterBody.from_domain(cluster))

    @app.get("/cluster/{cluster_id}", response_model=ClusterResponse)
    async def get_cluster(
        request: Request,
        cluster_id: str = APIPath(min_length=1),
        db: Session = Depends(get_db),
    ) -> ClusterResponse:
        request_id = _request_id(request)
        cluster = service.get_cluster(db, cluster_id, request_id=request_id)
        return ClusterResponse(request_id=request_id, cluster=ClusterBody.from_domain(cluster))

    @app.get("/clusters", response_model=ClustersResponse)
    async def get_clusters(request: Request, db: Session = Depends(get_db)) -> ClustersResponse:
        request_id = _request_id(request)
        clusters = service.get_clusters(db, request_id=request_id)
        return ClustersResponse(
            request_id=request_id,
            total_count=len(clusters),
            clusters=[ClusterBody.from_domain(c) for c in clusters],
        )

    @app.delete("/cluster/{cluster_id}", response_model=ClusterResponse, status_code=202)
    async def delete_cluster(
        request: Request,
        cluster_id: str = APIPath(min_length=1),
        db: Session = Depends(get_db),
    ) -> ClusterResponse:
        """Start destroying a cluster; poll GET /cluster/{id} for the outcome."""
        request_id = _request_id(request)
        cluster = await service.delete_cluster(db, cluster_id, request_id=request_id)
        return ClusterResponse(request_id=request_id, cluster=ClusterBody.from_domain(cluster))

    @app.get("/cluster/{cluster_id}/operations", response_model=OperationListResponse)
    async def get_cluster_operations(
        request: Request,
        cluster_id: str = APIPath(min_length=1),
        limit: int = Query(default=100, ge=1, le=1000),
        db: Session = Depends(get_db),
    ) -> OperationListResponse:
        """Retrieve the apply/destroy history of a cluster."""
        operations = service.get_operations(db, cluster_id, limit=limit)
        return OperationListResponse(
            request_id=_request_id(request),
            cluster_id=cluster_id,
            operations=[OperationResponse.model_validate(op, from_attributes=True) for op in operations],
        )

    @app.get("/version", response_model=VersionResponse)
    async def get_version(request: Request) -> VersionResponse:
        version = await service.terraform_version()
        return VersionResponse(request_id=_request_id(request), terraform_version=version)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            reaper_running=reaper.running,
            in_flight=len(service.registry.snapshot()),
        )

    return app
