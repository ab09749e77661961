from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from qroute import __version__
from qroute.cache import CacheNamespace
from qroute.errors import UpstreamTimeout, UpstreamUnavailable
from qroute.logging import configure_logging
from qroute.models import Scalar, WorkflowOptions, WorkflowResult
from qroute.runtime import Runtime
from qroute.search import HybridQuery
from qroute.workflow import describe_workflow


class QueryRequest(BaseModel):
    query: str
    database_schema: dict[str, Any] | str
    vectorized_fields: dict[str, list[str]] = {}
    options: WorkflowOptions = WorkflowOptions()


class InvalidateRequest(BaseModel):
    namespace: CacheNamespace | None = None


class HybridSearchRequest(BaseModel):
    collection: str
    text: str = Field(min_length=1)
    vector_fields: list[str] = Field(min_length=1)
    keyword_fields: list[str] = []
    must: dict[str, Scalar] = {}
    should: dict[str, Scalar] = {}
    limit: int = Field(default=10, ge=1)


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        app.state.runtime = runtime or Runtime()
        configure_logging(app.state.runtime.config.log_level)
        await app.state.runtime.connect()
        yield
        await app.state.runtime.close()

    app = FastAPI(
        title="qroute",
        description="Retrieval strategy orchestrator - API server",
        version=__version__,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/query")
    async def query(body: QueryRequest, request: Request) -> WorkflowResult:
        # malformed schema text and other input problems come back as a failed result
        return await _runtime(request).query(body.model_dump())

    @app.post("/search")
    async def search(body: HybridSearchRequest, request: Request):
        try:
            hits = await _runtime(request).search(HybridQuery(**body.model_dump()))
        except UpstreamTimeout as e:
            raise HTTPException(status_code=504, detail=e.message) from e
        except UpstreamUnavailable as e:
            raise HTTPException(status_code=503, detail=e.message) from e
        return {"collection": body.collection, "hits": [h.to_row() for h in hits]}

    @app.get("/workflow/definition")
    async def workflow_definition():
        return describe_workflow()

    @app.get("/cache/stats")
    async def cache_stats(request: Request):
        return await _runtime(request).cache.stats()

    @app.post("/cache/invalidate")
    async def invalidate_cache(body: InvalidateRequest, request: Request):
        cache = _runtime(request).cache
        if not cache.enabled:
            raise HTTPException(status_code=409, detail="Cache is disabled")
        if body.namespace is None:
            removed = await cache.invalidate_all()
        else:
            removed = await cache.invalidate_namespace(body.namespace)
        return {"namespace": body.namespace, "removed": removed}

    return app
