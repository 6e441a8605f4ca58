"""
Chat Hub FastAPI application.
Proxies chat turns to Ollama, OpenAI or Anthropic behind optional AI Guard checks,
and runs security scans against files, registry URLs and live LLM endpoints.
"""
import logging
import os
import time
from typing import Any, Dict

import psutil
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chat_mediator import run_chat_turn
from errors import (
    AttachmentRejected,
    GuardBlocked,
    PersistenceFailure,
    ScanRequestError,
    ScanSubprocessFailure,
    UpstreamError,
)
from guard_log import GuardLog
from llm_providers import available_providers, get_adapter, list_models
from models import (
    ChatTurnRequest,
    ChatTurnResult,
    GuardLogResponse,
    GuardResults,
    GuardStatisticsResponse,
    ModelsRequest,
    ModelsResponse,
    ScanHistoryResponse,
    ScanRecord,
    ScanRequest,
)
from scan_history import get_scan_history
from scan_runner import run_scan

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Chat Hub Backend",
    version="1.0.0",
    description="LLM chat proxy with AI Guard validation and security scanning"
)

# Allow local dev origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize global components
guard_log = GuardLog()

logger.info("Chat Hub initialized")


def _blocked_guard_results(exc: GuardBlocked) -> GuardResults:
    if exc.stage == "input":
        return GuardResults(input_validation=exc.verdict)
    return GuardResults(input_validation=exc.input_verdict, output_validation=exc.verdict)


@app.exception_handler(GuardBlocked)
async def guard_blocked_handler(request: Request, exc: GuardBlocked) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": exc.verdict.message or str(exc),
            "guard_blocked": True,
            "stage": exc.stage,
            "reasons": exc.verdict.reasons,
            "guard": _blocked_guard_results(exc).model_dump(),
        },
    )


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    return JSONResponse(
        status_code=502,
        content={"error": exc.provider_message, "upstream_status": exc.http_status},
    )


@app.exception_handler(AttachmentRejected)
async def attachment_rejected_handler(request: Request, exc: AttachmentRejected) -> JSONResponse:
    return JSONResponse(status_code=413, content={"error": str(exc)})


@app.exception_handler(ScanRequestError)
async def scan_request_error_handler(request: Request, exc: ScanRequestError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ScanSubprocessFailure)
async def scan_failure_handler(request: Request, exc: ScanSubprocessFailure) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": exc.detail, "scan_failed": True, "returncode": exc.returncode},
    )


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.get("/health")
def health() -> Dict[str, Any]:
    """Liveness check with basic process statistics."""
    process = psutil.Process(os.getpid())
    memory_info = process.memory_info()
    return {
        "status": "healthy",
        "memory_mb": round(memory_info.rss / 1024 / 1024, 2),
        "uptime_seconds": int(time.time() - process.create_time()),
    }


@app.get("/api/providers")
def get_providers() -> Dict[str, Any]:
    """Providers with their default endpoints."""
    return {"providers": available_providers()}


@app.post("/api/chat", response_model=ChatTurnResult)
async def chat_endpoint(payload: ChatTurnRequest) -> ChatTurnResult:
    """
    Run one chat turn: PDF extraction, input guard, provider call, output guard.
    """
    adapter = get_adapter(payload.provider)
    guarded = payload.guard is not None and payload.guard.enabled
    try:
        result = await run_chat_turn(payload, adapter=adapter)
    except GuardBlocked as exc:
        guard_log.log_turn(payload.provider.value, payload.model, _blocked_guard_results(exc), blocked_stage=exc.stage)
        raise
    if guarded:
        guard_log.log_turn(payload.provider.value, payload.model, result.guard)
    return result


@app.post("/api/models", response_model=ModelsResponse)
async def models_endpoint(payload: ModelsRequest) -> ModelsResponse:
    """List models available from a provider."""
    models = await list_models(payload.provider, payload.endpoint, payload.api_key)
    return ModelsResponse(models=models)


@app.post("/api/scans", response_model=ScanRecord)
async def create_scan(payload: ScanRequest) -> ScanRecord:
    """Run a scan and store the result in the history."""
    return await run_scan(payload, history=get_scan_history())


@app.get("/api/scans", response_model=ScanHistoryResponse)
def list_scans() -> ScanHistoryResponse:
    """Scan history, newest first."""
    scans = get_scan_history().list_records()
    return ScanHistoryResponse(scans=scans, total=len(scans))


@app.get("/api/scans/{scan_id}", response_model=ScanRecord)
def get_scan(scan_id: str) -> ScanRecord:
    record = get_scan_history().get(scan_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return record


@app.delete("/api/scans/{scan_id}")
def delete_scan(scan_id: str) -> Dict[str, Any]:
    if not get_scan_history().delete(scan_id):
        raise HTTPException(status_code=404, detail="Scan not found")
    return {"deleted": True, "id": scan_id}


@app.get("/api/guard/log", response_model=GuardLogResponse)
def get_guard_log(
    blocked_only: bool = Query(False, description="Only turns AI Guard blocked"),
    limit: int = Query(100, ge=1, le=100),
    offset: int = Query(0, ge=0)
) -> GuardLogResponse:
    """Recent guarded chat turns, newest first."""
    entries = guard_log.get_entries(blocked_only=blocked_only, limit=limit, offset=offset)
    return GuardLogResponse(entries=entries, total=len(guard_log))


@app.get("/api/guard/statistics", response_model=GuardStatisticsResponse)
def get_guard_statistics() -> GuardStatisticsResponse:
    return GuardStatisticsResponse(**guard_log.get_statistics())


@app.delete("/api/guard/log")
def clear_guard_log() -> Dict[str, Any]:
    return {"cleared": guard_log.clear()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.getenv("PORT", "3000")), reload=True)
