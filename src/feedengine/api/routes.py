"""API routes exposing feed loading, validation, duplicate detection and OPML."""

from __future__ import annotations

import logging
from typing import Iterator, List

from fastapi import APIRouter, Body, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from pydantic import BaseModel, Field

from feedengine.config import FeedListConfig
from feedengine.engine import FeedEngine
from feedengine.errors import FormatError
from feedengine.models import (
    Article,
    DuplicateDetectionResult,
    FeedCategory,
    FeedSource,
    FeedValidationResult,
    LoadingState,
    LoadingUpdate,
)
from feedengine.services.opml import DEFAULT_OPML_TITLE, OpmlImport

logger = logging.getLogger(__name__)

router = APIRouter()


class LoadRequest(BaseModel):
    feeds: List[FeedSource] | None = None
    force_refresh: bool = False


class LoadResponse(BaseModel):
    state: LoadingState
    summary: str
    articles: List[Article] = Field(default_factory=list)


class RetrySelectedRequest(BaseModel):
    urls: List[str] = Field(default_factory=list)


class ValidateRequest(BaseModel):
    url: str
    discover: bool = False


class DuplicateRequest(BaseModel):
    url: str
    existing: List[FeedSource] = Field(default_factory=list)


class OpmlImportRequest(BaseModel):
    opml: str


class OpmlExportRequest(BaseModel):
    feeds: List[FeedSource] = Field(default_factory=list)
    categories: List[FeedCategory] = Field(default_factory=list)
    title: str = DEFAULT_OPML_TITLE
    owner_name: str | None = None
    owner_email: str | None = None
    include_categories: bool = True
    include_metadata: bool = True


def _engine(request: Request) -> FeedEngine:
    return request.app.state.engine


def _drain(updates: Iterator[LoadingUpdate]) -> None:
    for _ in updates:
        pass


def _snapshot(engine: FeedEngine) -> LoadResponse:
    return LoadResponse(state=engine.loading_state, summary=engine.summary(), articles=engine.articles)


def _require_url(url: str) -> str:
    cleaned = url.strip()
    if not cleaned:
        raise HTTPException(status_code=400, detail="A feed URL is required.")
    return cleaned


@router.post("/feeds/load", response_model=LoadResponse)
async def load_feeds(request: Request, payload: LoadRequest | None = Body(default=None)) -> LoadResponse:
    """Load the given feeds, or the configured feed list, and return the merged articles."""

    request_payload = payload or LoadRequest()
    feeds = request_payload.feeds
    if feeds is None:
        try:
            feeds = FeedListConfig.from_file().feeds
        except FileNotFoundError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    engine = _engine(request)
    await run_in_threadpool(engine.load_all, feeds, request_payload.force_refresh)
    return _snapshot(engine)


@router.get("/feeds/state", response_model=LoadResponse)
async def loading_state(request: Request) -> LoadResponse:
    """Return the current loading state and merged articles."""

    return _snapshot(_engine(request))


@router.post("/feeds/retry", response_model=LoadResponse)
async def retry_failed(request: Request) -> LoadResponse:
    engine = _engine(request)
    await run_in_threadpool(lambda: _drain(engine.retry_failed_feeds()))
    return _snapshot(engine)


@router.post("/feeds/retry-selected", response_model=LoadResponse)
async def retry_selected(request: Request, payload: RetrySelectedRequest) -> LoadResponse:
    urls = [url.strip() for url in payload.urls if url.strip()]
    if not urls:
        raise HTTPException(status_code=400, detail="Select at least one feed to retry.")

    engine = _engine(request)
    await run_in_threadpool(lambda: _drain(engine.retry_selected_feeds(urls)))
    return _snapshot(engine)


@router.post("/feeds/cancel", response_model=LoadResponse)
async def cancel_loading(request: Request) -> LoadResponse:
    engine = _engine(request)
    engine.cancel_loading()
    return _snapshot(engine)


@router.post("/feeds/validate", response_model=FeedValidationResult)
async def validate_feed(request: Request, payload: ValidateRequest) -> FeedValidationResult:
    """Validate a feed URL, optionally discovering feeds linked from the page."""

    url = _require_url(payload.url)
    engine = _engine(request)
    if payload.discover:
        return await run_in_threadpool(engine.validate_feed_with_discovery, url)
    return await run_in_threadpool(engine.validate_feed, url)


@router.post("/feeds/revalidate", response_model=FeedValidationResult)
async def revalidate_feed(request: Request, payload: ValidateRequest) -> FeedValidationResult:
    url = _require_url(payload.url)
    return await run_in_threadpool(_engine(request).revalidate_feed, url)


@router.post("/feeds/duplicates", response_model=DuplicateDetectionResult)
async def detect_duplicate(request: Request, payload: DuplicateRequest) -> DuplicateDetectionResult:
    """Check a candidate URL against the sources already tracked by the caller."""

    url = _require_url(payload.url)
    return _engine(request).detect_duplicate(url, payload.existing)


@router.post("/opml/import", response_model=OpmlImport)
async def import_opml(request: Request, payload: OpmlImportRequest) -> OpmlImport:
    try:
        return _engine(request).import_opml(payload.opml)
    except FormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/opml/export")
async def export_opml(request: Request, payload: OpmlExportRequest) -> Response:
    """Return the given feeds as an OPML 2.0 attachment."""

    document = _engine(request).export_opml(
        payload.feeds,
        payload.categories,
        title=payload.title,
        owner_name=payload.owner_name,
        owner_email=payload.owner_email,
        include_categories=payload.include_categories,
        include_metadata=payload.include_metadata,
    )
    return Response(
        content=document,
        media_type="text/x-opml",
        headers={"Content-Disposition": 'attachment; filename="feeds.opml"'},
    )
