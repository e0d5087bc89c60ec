"""FastAPI entrypoint for query, knowledge, explanation, policy and trace endpoints."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from scan_analyst.agent.router import QueryRouter
from scan_analyst.config import AppConfig
from scan_analyst.dependency.client import DependencyGraphAdapter
from scan_analyst.errors import NotFoundError
from scan_analyst.evidence.store import EvidenceStore
from scan_analyst.inference.client import create_inference_client
from scan_analyst.obs.logging import configure_logging
from scan_analyst.obs.tracing import TraceStore
from scan_analyst.workflow.history import WorkflowHistoryAdapter

logger = logging.getLogger(__name__)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    team: str | None = None


class KnowledgeCreateRequest(BaseModel):
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    team: str | None = None
    project: str | None = None
    context_tags: list[str] = Field(default_factory=list)
    created_by: str | None = None


class KnowledgeUpdateRequest(BaseModel):
    question: str | None = Field(default=None, min_length=1)
    answer: str | None = Field(default=None, min_length=1)
    team: str | None = None
    project: str | None = None
    context_tags: list[str] | None = None
    is_active: bool | None = None


class KnowledgeSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    team: str | None = None
    limit: int = Field(default=10, ge=1, le=50)


class RawExplanationRequest(BaseModel):
    raw_output: dict[str, Any]
    tool: str = Field(min_length=1)


class PolicyRequest(BaseModel):
    policy: str = Field(min_length=1)


def build_router(config: AppConfig, trace_store: TraceStore | None = None) -> QueryRouter:
    """Wire a query router and its adapters from configuration."""
    return QueryRouter(
        store=EvidenceStore(config.store.path),
        inference=create_inference_client(config.inference),
        workflow=WorkflowHistoryAdapter(config.workflow),
        dependency=DependencyGraphAdapter(config.dependency),
        config=config.router,
        trace_store=trace_store or TraceStore(),
    )


def camelize_keys(value: Any) -> Any:
    """Rename dict keys to camelCase, recursively; values are left alone."""
    if isinstance(value, dict):
        return {
            to_camel(key) if isinstance(key, str) else key: camelize_keys(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [camelize_keys(item) for item in value]
    return value


def _get_router(request: Request) -> QueryRouter:
    return request.app.state.router


def _get_traces(request: Request) -> TraceStore:
    return request.app.state.trace_store


routes = APIRouter()


@routes.get("/health")
def health(router: QueryRouter = Depends(_get_router)) -> dict[str, Any]:
    traces = router.trace_store.summary() if router.trace_store else {"total_requests": 0}
    return {
        "status": "ok",
        "inference_configured": router.inference.configured,
        "trace_count": traces["total_requests"],
        "explanation_cache_size": len(router.explanation_cache),
    }


@routes.post("/query")
def query(request: QueryRequest, router: QueryRouter = Depends(_get_router)) -> dict[str, Any]:
    try:
        body = router.answer(request.query, request.team).to_dict()
        body["data"] = camelize_keys(body["data"])
        return body
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Query failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@routes.get("/knowledge")
def list_knowledge(
    team: str | None = None,
    active: bool | None = None,
    router: QueryRouter = Depends(_get_router),
) -> dict[str, Any]:
    entries = router.store.list_knowledge_entries(team=team, active=active)
    return {"items": [asdict(entry) for entry in entries]}


@routes.post("/knowledge")
def create_knowledge(
    request: KnowledgeCreateRequest, router: QueryRouter = Depends(_get_router)
) -> dict[str, Any]:
    entry = router.store.create_knowledge_entry(**request.model_dump())
    return asdict(entry)


@routes.post("/knowledge/search")
def search_knowledge(
    request: KnowledgeSearchRequest, router: QueryRouter = Depends(_get_router)
) -> dict[str, Any]:
    matches = router.matcher.find_matches(request.query, request.team, limit=request.limit)
    return {
        "items": [
            {"similarity": match.similarity, **asdict(match.entry)} for match in matches
        ]
    }


@routes.get("/knowledge/{kb_id}")
def get_knowledge(kb_id: str, router: QueryRouter = Depends(_get_router)) -> dict[str, Any]:
    try:
        return asdict(router.store.get_knowledge_entry(kb_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@routes.put("/knowledge/{kb_id}")
def update_knowledge(
    kb_id: str, request: KnowledgeUpdateRequest, router: QueryRouter = Depends(_get_router)
) -> dict[str, Any]:
    try:
        entry = router.store.update_knowledge_entry(kb_id, request.model_dump(exclude_unset=True))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(entry)


@routes.delete("/knowledge/{kb_id}")
def delete_knowledge(kb_id: str, router: QueryRouter = Depends(_get_router)) -> dict[str, Any]:
    try:
        router.store.delete_knowledge_entry(kb_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": kb_id}


@routes.post("/knowledge/{kb_id}/approve")
def approve_knowledge(kb_id: str, router: QueryRouter = Depends(_get_router)) -> dict[str, Any]:
    try:
        return asdict(router.store.approve_knowledge_entry(kb_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@routes.get("/explanation/finding/{finding_id}")
def explain_finding(
    finding_id: str, router: QueryRouter = Depends(_get_router)
) -> dict[str, Any]:
    try:
        explanation = router.explainer.explain(finding_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"finding_id": finding_id, **asdict(explanation)}


@routes.post("/explanation/raw")
def explain_raw(
    request: RawExplanationRequest, router: QueryRouter = Depends(_get_router)
) -> dict[str, Any]:
    return asdict(router.explainer.explain_raw(request.raw_output, request.tool))


@routes.delete("/explanation/cache")
def clear_explanations(router: QueryRouter = Depends(_get_router)) -> dict[str, Any]:
    router.explanation_cache.clear()
    return {"cleared": True}


@routes.delete("/explanation/cache/{finding_id}")
def invalidate_explanation(
    finding_id: str, router: QueryRouter = Depends(_get_router)
) -> dict[str, Any]:
    return {"cleared": router.explanation_cache.invalidate(finding_id)}


@routes.post("/policy/compile")
def compile_policy(
    request: PolicyRequest, router: QueryRouter = Depends(_get_router)
) -> dict[str, Any]:
    policy = router.policy_compiler.compile(request.policy)
    payload = asdict(policy)
    payload["valid"] = router.policy_compiler.validate(policy)
    payload["rule"]["condition"] = policy.rule.condition
    return payload


@routes.get("/traces")
def traces(limit: int = 20, trace_store: TraceStore = Depends(_get_traces)) -> dict[str, Any]:
    return {"items": [asdict(record) for record in trace_store.list_recent(limit=limit)]}


@routes.get("/traces/{trace_id}")
def trace_detail(trace_id: str, trace_store: TraceStore = Depends(_get_traces)) -> dict[str, Any]:
    try:
        record = trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@routes.get("/metrics")
def metrics(trace_store: TraceStore = Depends(_get_traces)) -> dict[str, Any]:
    return trace_store.summary()


def create_app(router: QueryRouter | None = None) -> FastAPI:
    """Build the API around `router`, or around one wired from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned: QueryRouter | None = None
        if getattr(app.state, "router", None) is None:
            config = AppConfig.from_env()
            configure_logging(config.log_level)
            app.state.router = build_router(config)
            app.state.trace_store = app.state.router.trace_store
            logger.info("Scan analyst API started (store=%s)", config.store.path)
            owned = app.state.router
        yield
        if owned is not None:
            owned.close()
            app.state.router = None
            logger.info("Scan analyst API stopped")

    app = FastAPI(title="Scan Analyst", version="0.1.0", lifespan=lifespan)
    app.state.router = router
    if router is not None:
        if router.trace_store is None:
            router.trace_store = TraceStore()
        app.state.trace_store = router.trace_store
    app.include_router(routes)
    return app


app = create_app()
