"""FastAPI app exposing stream resolution, source search, bad-link reports and playback sessions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..core.errors import ConcurrentSessionError, MalformedRequestError
from ..models.content_request import ContentRequest
from ..models.source_candidate import RankedResult
from .runtime import ResolverRuntime, build_runtime

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ContentRequestBody(BaseModel):
    title: str = ""
    type: str = ""
    userId: str = ""
    credential: str = ""
    year: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    externalId: Optional[str] = None
    maxBitrateMbps: Optional[float] = None
    excludedHashes: List[str] = []
    excludedFilePaths: List[str] = []
    platformHint: Optional[str] = None
    username: str = ""


class BadLinkReportRequest(BaseModel):
    identity: str
    reporter: str = ""
    reason: str = ""


class SessionRequest(BaseModel):
    credential: str
    userId: str = ""
    username: str = ""


def _client_ip(request: Request, trust_proxy_headers: bool = False) -> str:
    """Socket address of the caller; X-Forwarded-For only when a trusted proxy sits in front."""
    if trust_proxy_headers:
        forwarded = str(request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return request.client.host if request.client else "unknown"


def _content_request(body: ContentRequestBody, ip_address: str) -> ContentRequest:
    payload = body.model_dump()
    payload["ipAddress"] = ip_address
    try:
        return ContentRequest.from_dict(payload)
    except MalformedRequestError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _conflict(exc: ConcurrentSessionError) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"message": str(exc), "activeSession": exc.active_session},
    )


def _ranked_payload(result: RankedResult) -> Dict[str, Any]:
    return {
        "isComplete": result.is_complete,
        "warnings": list(result.warnings),
        "items": result.to_list(),
    }


def create_app(runtime: Optional[ResolverRuntime] = None) -> FastAPI:
    if runtime is None:
        runtime = build_runtime()
    app = FastAPI(title="resolvarr API", version="0.1.0")
    app.state.runtime = runtime

    def client_ip(request: Request) -> str:
        return _client_ip(request, runtime.settings.get_bool("trust_proxy_headers", False))

    @app.on_event("shutdown")
    def shutdown() -> None:
        runtime.maintenance.stop()

    @app.get("/health")
    def health() -> Dict:
        return {
            "ok": True,
            "time": _utc_now_iso(),
            "activeJobs": len(runtime.job_store.active_jobs()),
            "cachedLinks": len(runtime.link_cache),
            "badLinks": len(runtime.bad_links),
        }

    # ---- Streams ----
    @app.post("/api/streams")
    def create_stream(body: ContentRequestBody, request: Request) -> Dict:
        content = _content_request(body, client_ip(request))
        try:
            job_id = runtime.job_store.create_job(content)
        except ConcurrentSessionError as e:
            raise _conflict(e) from e
        except MalformedRequestError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"jobId": job_id}

    @app.get("/api/streams/history")
    def stream_history() -> Dict:
        return {"jobs": runtime.job_store.completed_history()}

    @app.get("/api/streams/{job_id}")
    def get_stream(job_id: str) -> Dict:
        job = runtime.job_store.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Stream job not found.")
        return job

    @app.delete("/api/streams/{job_id}")
    def cancel_stream(job_id: str) -> Dict:
        if not runtime.job_store.cancel_job(job_id):
            raise HTTPException(status_code=404, detail="Stream job not found.")
        return {"ok": True}

    # ---- Sources ----
    @app.post("/api/sources/search")
    def search_sources(body: ContentRequestBody, request: Request) -> Dict:
        content = _content_request(body, client_ip(request))
        return _ranked_payload(runtime.aggregator.search(content))

    @app.post("/api/sources/search/stream")
    def stream_sources(body: ContentRequestBody, request: Request) -> StreamingResponse:
        content = _content_request(body, client_ip(request))

        def lines():
            for snapshot in runtime.aggregator.stream(content):
                yield json.dumps(_ranked_payload(snapshot)) + "\n"

        return StreamingResponse(lines(), media_type="application/x-ndjson")

    # ---- Bad links ----
    @app.post("/api/bad-links")
    def report_bad_link(body: BadLinkReportRequest, request: Request) -> Dict:
        reporter = body.reporter.strip() or client_ip(request)
        try:
            flag = runtime.job_store.report_bad_link(body.identity, reporter, body.reason)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return flag.to_dict()

    @app.get("/api/bad-links")
    def list_bad_links() -> Dict:
        return {"flags": runtime.bad_links.all_active()}

    # ---- Sessions ----
    @app.post("/api/sessions/start")
    def session_start(body: SessionRequest, request: Request) -> Dict:
        try:
            session = runtime.job_store.session_start(
                body.credential, client_ip(request), body.userId, body.username
            )
        except ConcurrentSessionError as e:
            raise _conflict(e) from e
        except MalformedRequestError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"ok": True, "session": session}

    @app.post("/api/sessions/heartbeat")
    def session_heartbeat(body: SessionRequest, request: Request) -> Dict:
        try:
            alive = runtime.job_store.session_heartbeat(body.credential, client_ip(request))
        except MalformedRequestError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        if not alive:
            raise HTTPException(status_code=404, detail="Session not found.")
        return {"ok": True}

    @app.post("/api/sessions/end")
    def session_end(body: SessionRequest, request: Request) -> Dict:
        try:
            ended = runtime.job_store.session_end(body.credential, client_ip(request))
        except MalformedRequestError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"ok": True, "ended": ended}

    @app.get("/api/sessions")
    def list_sessions() -> Dict:
        return {"sessions": runtime.session_guard.active_sessions()}

    return app
