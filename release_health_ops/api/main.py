from __future__ import annotations

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from analytics.states import StateTaxonomy, load_state_taxonomy
from exceptions import (
    AuthenticationException,
    InvalidRequestException,
    ReleaseHealthException,
    StoreUnavailableException,
)
from storage import SQLAlchemyStore, create_store

from .models.filters import SyncRequest
from .models.schemas import (
    AgingResponse,
    BurnupResponse,
    DependencyRiskResponse,
    ErrorResponse,
    FlowResponse,
    HealthResponse,
    ReleasesResponse,
    ScopeResponse,
    SyncResponse,
    ThroughputResponse,
    WorkItemsResponse,
)
from .services.ingest import ingest_batch
from .services.release import (
    build_aging_response,
    build_burnup_response,
    build_dependency_response,
    build_flow_response,
    build_scope_response,
    build_throughput_response,
)
from .services.work_items import (
    build_releases_response,
    build_work_items_response,
    work_item_query,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite+aiosqlite:///./release_health.db"


def _db_url() -> str:
    return (
        os.getenv("DATABASE_URL")
        or os.getenv("DB_CONN_STRING")
        or DEFAULT_DB_URL
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    store = create_store(_db_url())
    await store.ensure_tables()
    app.state.store = store
    app.state.taxonomy = load_state_taxonomy()
    logger.info("Release health API started")
    try:
        yield
    finally:
        await store.close()


app = FastAPI(
    title="Release Health Ops API",
    version="1.0.0",
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


def get_store(request: Request) -> SQLAlchemyStore:
    return request.app.state.store


def get_taxonomy(request: Request) -> StateTaxonomy:
    return request.app.state.taxonomy


def require_sync_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = os.getenv("SYNC_API_KEY")
    if not expected:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise AuthenticationException("Unauthorized")


_STATUS_CODES = {
    InvalidRequestException: 400,
    AuthenticationException: 401,
    StoreUnavailableException: 503,
}


def _error_response(status_code: int, error: str, message: str, retryable: bool = False):
    body = ErrorResponse(error=error, message=message, retryable=retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(ReleaseHealthException)
async def release_health_error(request: Request, exc: ReleaseHealthException):
    status_code = _STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _error_response(status_code, exc.code, str(exc), exc.retryable)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return _error_response(400, InvalidRequestException.code, details or "invalid request")


@app.get("/health", response_model=HealthResponse)
async def health(store: SQLAlchemyStore = Depends(get_store)) -> HealthResponse | JSONResponse:
    services = {}
    try:
        services["store"] = "ok" if await store.ping() else "down"
    except StoreUnavailableException:
        services["store"] = "down"

    status = "ok" if all(state == "ok" for state in services.values()) else "down"
    response = HealthResponse(ok=status == "ok", status=status, services=services)
    if status != "ok":
        return JSONResponse(status_code=503, content=response.model_dump())
    return response


@app.post(
    "/api/v1/sync",
    response_model=SyncResponse,
    response_model_by_alias=True,
    dependencies=[Depends(require_sync_api_key)],
)
async def sync(
    payload: SyncRequest, store: SQLAlchemyStore = Depends(get_store)
) -> SyncResponse:
    return await ingest_batch(store, payload)


@app.get("/api/v1/work-items", response_model=WorkItemsResponse, response_model_by_alias=True)
async def work_items(
    q: Optional[str] = None,
    release: Optional[str] = None,
    assigned_to_upn: Optional[str] = Query(default=None, alias="assignedToUPN"),
    state: Optional[str] = None,
    type: Optional[str] = None,
    feature: Optional[str] = None,
    from_changed: Optional[str] = Query(default=None, alias="fromChanged"),
    to_changed: Optional[str] = Query(default=None, alias="toChanged"),
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    store: SQLAlchemyStore = Depends(get_store),
) -> WorkItemsResponse:
    query = work_item_query(
        q=q,
        release=release,
        assigned_to_upn=assigned_to_upn,
        state=state,
        type=type,
        feature=feature,
        from_changed=from_changed,
        to_changed=to_changed,
        limit=limit,
        offset=offset,
    )
    return await build_work_items_response(store, query)


@app.get("/api/v1/releases", response_model=ReleasesResponse)
async def releases(store: SQLAlchemyStore = Depends(get_store)) -> ReleasesResponse:
    return await build_releases_response(store)


@app.get("/api/v1/release/scope", response_model=ScopeResponse, response_model_by_alias=True)
async def release_scope(
    release: Optional[str] = None,
    store: SQLAlchemyStore = Depends(get_store),
    taxonomy: StateTaxonomy = Depends(get_taxonomy),
) -> ScopeResponse:
    return await build_scope_response(store, release=release, taxonomy=taxonomy)


@app.get("/api/v1/release/burnup", response_model=BurnupResponse, response_model_by_alias=True)
async def release_burnup(
    release: Optional[str] = None,
    bucket: Optional[str] = None,
    store: SQLAlchemyStore = Depends(get_store),
    taxonomy: StateTaxonomy = Depends(get_taxonomy),
) -> BurnupResponse:
    return await build_burnup_response(
        store, release=release, bucket=bucket, taxonomy=taxonomy
    )


@app.get("/api/v1/release/aging", response_model=AgingResponse, response_model_by_alias=True)
async def release_aging(
    release: Optional[str] = None,
    stale_days: Optional[int] = None,
    store: SQLAlchemyStore = Depends(get_store),
    taxonomy: StateTaxonomy = Depends(get_taxonomy),
) -> AgingResponse:
    return await build_aging_response(
        store, release=release, stale_days=stale_days, taxonomy=taxonomy
    )


@app.get(
    "/api/v1/release/throughput",
    response_model=ThroughputResponse,
    response_model_by_alias=True,
)
async def release_throughput(
    release: Optional[str] = None,
    store: SQLAlchemyStore = Depends(get_store),
    taxonomy: StateTaxonomy = Depends(get_taxonomy),
) -> ThroughputResponse:
    return await build_throughput_response(store, release=release, taxonomy=taxonomy)


@app.get(
    "/api/v1/release/dependencies",
    response_model=DependencyRiskResponse,
    response_model_by_alias=True,
)
async def release_dependencies(
    release: Optional[str] = None,
    store: SQLAlchemyStore = Depends(get_store),
    taxonomy: StateTaxonomy = Depends(get_taxonomy),
) -> DependencyRiskResponse:
    return await build_dependency_response(store, release=release, taxonomy=taxonomy)


@app.get("/api/v1/release/flow", response_model=FlowResponse, response_model_by_alias=True)
async def release_flow(
    release: Optional[str] = None,
    window_days: Optional[int] = None,
    store: SQLAlchemyStore = Depends(get_store),
    taxonomy: StateTaxonomy = Depends(get_taxonomy),
) -> FlowResponse:
    return await build_flow_response(
        store, release=release, window_days=window_days, taxonomy=taxonomy
    )
