"""FastAPI server for querykeeper."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional, Dict, Any, List, Union

from fastapi import FastAPI, HTTPException, Header, Depends
from pydantic import BaseModel, Field

from querykeeper import (
    AdminActionError,
    BusyNotice,
    DenialText,
    ErrorNotice,
    OpenAIAssistantProvider,
    RejectionText,
    RequestOrchestrator,
    SQLiteStorage,
    Settings,
    UsageAdmin,
    UserLocks,
    configure_logging,
)


def _get_api_key() -> Optional[str]:
    return os.getenv("QUERYKEEPER_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


class Services:
    """Process-wide orchestrator and admin sharing one store and lock set."""

    def __init__(self, orchestrator: RequestOrchestrator, admin: UsageAdmin):
        self.orchestrator = orchestrator
        self.admin = admin


@lru_cache(maxsize=1)
def get_services() -> Services:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    store = SQLiteStorage(db_path=settings.db_path)
    locks = UserLocks()
    provider = OpenAIAssistantProvider(settings.assistant_id, settings.openai_api_key)
    orchestrator = RequestOrchestrator.build(store, provider, settings, locks=locks)
    admin = UsageAdmin(store, settings, locks=locks)
    return Services(orchestrator, admin)


app = FastAPI(title="querykeeper API", version="1.0.0")


class AskRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    image_url: Optional[str] = None


class AskResponse(BaseModel):
    status: str = Field(..., pattern="^(answer|pages|denied|rejected|busy|error)$")
    text: Optional[str] = None
    pages: List[str] = Field(default_factory=list)
    detail: Optional[str] = None


class OverrideRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    enabled: bool = True


class ResetRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


def _record_dict(record) -> Dict[str, Any]:
    return {
        "user_id": record.user_id,
        "total_queries": record.total_queries,
        "queries_remaining": record.queries_remaining,
        "expiration": record.expiration,
        "whitelisted": record.whitelisted,
        "blacklisted": record.blacklisted,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/ask", response_model=AskResponse, dependencies=[Depends(_require_api_key)])
async def ask(req: AskRequest, services: Services = Depends(get_services)) -> AskResponse:
    result: Union[str, List[str], BusyNotice, ErrorNotice] = await services.orchestrator.handle(
        req.user_id, req.query, req.image_url
    )
    if isinstance(result, BusyNotice):
        return AskResponse(status="busy", text=result.message)
    if isinstance(result, ErrorNotice):
        return AskResponse(status="error", text=result.message, detail=result.detail)
    if isinstance(result, DenialText):
        return AskResponse(status="denied", text=str(result))
    if isinstance(result, RejectionText):
        return AskResponse(status="rejected", text=str(result))
    if isinstance(result, list):
        return AskResponse(status="pages", pages=result)
    return AskResponse(status="answer", text=result)


@app.get("/usage/{user_id}", dependencies=[Depends(_require_api_key)])
async def usage(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    summary = await services.admin.get_usage(user_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="No usage data")
    return {
        "user_id": summary.user_id,
        "total_queries": summary.total_queries,
        "queries_used": summary.used_display,
        "reset_at": summary.reset_at,
        "whitelisted": summary.whitelisted,
        "blacklisted": summary.blacklisted,
    }


@app.post("/admin/reset", dependencies=[Depends(_require_api_key)])
async def reset(req: ResetRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        record = await services.admin.reset_usage(req.user_id)
    except AdminActionError as exc:
        raise HTTPException(status_code=409, detail=exc.reason) from exc
    return _record_dict(record)


@app.post("/admin/whitelist", dependencies=[Depends(_require_api_key)])
async def whitelist(req: OverrideRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        record = await services.admin.set_whitelisted(req.user_id, req.enabled)
    except AdminActionError as exc:
        raise HTTPException(status_code=409, detail=exc.reason) from exc
    return _record_dict(record)


@app.post("/admin/blacklist", dependencies=[Depends(_require_api_key)])
async def blacklist(req: OverrideRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        record = await services.admin.set_blacklisted(req.user_id, req.enabled)
    except AdminActionError as exc:
        raise HTTPException(status_code=409, detail=exc.reason) from exc
    return _record_dict(record)


@app.get("/stats", dependencies=[Depends(_require_api_key)])
async def stats(top_n: int = 10, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if not 1 <= top_n <= 100:
        raise HTTPException(status_code=422, detail="top_n must be between 1 and 100")
    result = await services.admin.stats(top_n=top_n)
    return {
        "total_queries": result.total_queries_sum,
        "user_count": result.user_count,
        "top_users": [{"user_id": u, "total_queries": t} for u, t in result.top_users],
    }
