"""FastAPI server: upload URLs, analysis sessions and per-persona results."""
import logging
import mimetypes
import random
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import Field

from persona_sim.config import Settings, get_settings
from persona_sim.errors import ContentNotFoundError, SessionExistsError, StoreError
from persona_sim.gateway.chat import ChatGateway, make_chat_gateway
from persona_sim.gateway.pools import make_pool_registry
from persona_sim.models import CamelModel, PersonaBehaviorRecord, SessionAggregate
from persona_sim.personas.catalog import PersonaCatalog
from persona_sim.services.lifecycle import SessionLifecycle
from persona_sim.services.queue import InProcessQueue
from persona_sim.storage.content import LocalContentStore, make_content_store
from persona_sim.storage.records import SQLiteRecordStore

_log = logging.getLogger(__name__)

app = FastAPI(title="persona-sim API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)

UserStatusFilter = Literal["viewed", "opened", "liked", "commented", "purchased"]
SessionStatusFilter = Literal["analyzing", "completed", "failed"]


# ── Wiring ───────────────────────────────────────────────────────────────────
# Built once on startup; tests replace get_services via dependency_overrides.

@dataclass
class Services:
    settings: Settings
    lifecycle: SessionLifecycle
    queue: InProcessQueue
    gateway: ChatGateway


_services: Services | None = None


def get_services() -> Services:
    if _services is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return _services


@app.on_event("startup")
async def _startup() -> None:
    global _services
    settings = get_settings()
    store = SQLiteRecordStore(settings.db_path)
    await store.init()
    catalog = PersonaCatalog.load(settings.personas_dir)
    gateway = make_chat_gateway(settings)
    queue = InProcessQueue(workers=settings.queue_workers)
    lifecycle = SessionLifecycle(
        store=store,
        content=make_content_store(settings),
        catalog=catalog,
        gateway=gateway,
        registry=make_pool_registry(settings),
        queue=queue,
        concurrency=settings.analysis_concurrency,
    )
    queue.start(lifecycle.process)
    _services = Services(settings=settings, lifecycle=lifecycle, queue=queue, gateway=gateway)
    _log.info(
        "[startup] db=%s personas=%d chat=%s content=%s",
        settings.db_path, len(catalog), settings.chat_backend, settings.content_backend,
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _services
    if _services is not None:
        await _services.queue.stop()
        await _services.gateway.aclose()
        _services = None


def generate_session_id() -> str:
    """YYYY-MM-DD plus six random base36 characters."""
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{date}-{suffix}"


# ── Request bodies ───────────────────────────────────────────────────────────

class UploadUrlRequest(CamelModel):
    file_name: str = "content.jpg"
    content_type: str = "image/jpeg"


class AnalyzeRequest(CamelModel):
    session_id: str = Field(min_length=1)
    object_key: str = Field(min_length=1)
    content_title: Optional[str] = None
    persona_count: Optional[Literal[5, 10, 15, 20, 30]] = None


def _session_view(session: SessionAggregate, content_url: str, *, detail: bool) -> dict:
    data = {
        "sessionId": session.session_id,
        "contentUrl": content_url,
        "contentTitle": session.content_title,
        "status": session.status,
        "totalUsers": session.total_users,
        "metrics": session.metrics.to_dict(),
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
    }
    if detail:
        data["journeySteps"] = [s.to_dict() for s in session.journey_steps]
        data["summary"] = session.summary.to_dict()
    return data


def _user_card(user: PersonaBehaviorRecord) -> dict:
    return {
        "userId": user.user_id,
        "name": user.name,
        "status": user.status,
        "interest": user.interest,
        "browseTime": user.browse_time,
    }


def _pagination(limit: int, next_token: str | None) -> dict:
    return {"limit": limit, "nextToken": next_token, "hasMore": next_token is not None}


# ── Endpoints ────────────────────────────────────────────────────────────────

@app.get("/api/health")
def health(services: Services = Depends(get_services)):
    settings = services.settings
    try:
        pkg_version = version("persona-sim")
    except PackageNotFoundError:
        pkg_version = "0.0.0"
    return {
        "status": "healthy",
        "service": "persona-sim",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": pkg_version,
        "environment": settings.stage,
    }


@app.post("/api/sessions/upload-url")
async def create_upload_url(req: UploadUrlRequest, services: Services = Depends(get_services)):
    """Issue a fresh session id and a time-limited URL to PUT the image to."""
    session_id = generate_session_id()
    target = await services.lifecycle.content.writable_url(session_id, req.file_name, req.content_type)
    return {
        "sessionId": session_id,
        "uploadUrl": target.upload_url,
        "objectKey": target.object_key,
        "expiresIn": target.expires_in,
        "message": f"PUT the image to uploadUrl within {target.expires_in} seconds",
    }


def _local_content(services: Services) -> LocalContentStore:
    content = services.lifecycle.content
    if not isinstance(content, LocalContentStore):
        raise HTTPException(status_code=404, detail="Not found")
    return content


@app.put("/api/uploads/{object_key:path}")
async def upload_content(
    object_key: str,
    request: Request,
    expires: int,
    signature: str,
    services: Services = Depends(get_services),
):
    """Signed upload target for the local content backend."""
    content = _local_content(services)
    if not content.verify("PUT", object_key, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired upload URL")
    content.write(object_key, await request.body())
    return {"objectKey": object_key}


@app.get("/api/content/{object_key:path}")
async def download_content(
    object_key: str,
    expires: int,
    signature: str,
    services: Services = Depends(get_services),
):
    content = _local_content(services)
    if not content.verify("GET", object_key, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired content URL")
    data = content.read(object_key)
    if data is None:
        raise HTTPException(status_code=404, detail="Content not found")
    media_type = mimetypes.guess_type(object_key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


@app.post("/api/sessions/analyze", status_code=201)
async def analyze(req: AnalyzeRequest, services: Services = Depends(get_services)):
    """Create an `analyzing` session and queue its persona analysis."""
    try:
        await services.lifecycle.start(req.session_id, req.object_key, req.content_title, req.persona_count)
    except ContentNotFoundError:
        raise HTTPException(status_code=400, detail="File not uploaded or upload expired; request a new upload URL")
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid objectKey: {req.object_key}")
    except SessionExistsError:
        raise HTTPException(status_code=409, detail=f"Session already exists: {req.session_id}; request a new upload URL to retry")
    except StoreError as exc:
        _log.error("create session %s failed: %s", req.session_id, exc)
        raise HTTPException(status_code=500, detail="Failed to create analysis session")
    return {
        "sessionId": req.session_id,
        "status": "analyzing",
        "message": "Analysis started; check back for results",
    }


@app.get("/api/sessions")
async def list_sessions(
    status: Optional[SessionStatusFilter] = None,
    limit: int = Query(20, ge=1, le=100),
    next_token: Optional[str] = Query(None, alias="nextToken"),
    services: Services = Depends(get_services),
):
    """List sessions, newest first."""
    lifecycle = services.lifecycle
    try:
        sessions, token = await lifecycle.list_sessions(status, limit, next_token)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to list sessions")
    return {
        "sessions": [
            _session_view(s, await lifecycle.content.readable_url(s.object_key), detail=False)
            for s in sessions
        ],
        "pagination": _pagination(limit, token),
    }


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str, services: Services = Depends(get_services)):
    lifecycle = services.lifecycle
    try:
        session = await lifecycle.get_session(session_id)
    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to load session")
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return _session_view(session, await lifecycle.content.readable_url(session.object_key), detail=True)


@app.get("/api/sessions/{session_id}/users")
async def list_users(
    session_id: str,
    status: Optional[UserStatusFilter] = None,
    limit: int = Query(30, ge=1, le=100),
    next_token: Optional[str] = Query(None, alias="nextToken"),
    services: Services = Depends(get_services),
):
    """Persona cards for a session, in userId order."""
    try:
        users, token = await services.lifecycle.list_users(session_id, status, limit, next_token)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to list users")
    return {"users": [_user_card(u) for u in users], "pagination": _pagination(limit, token)}


@app.get("/api/sessions/{session_id}/users/{user_id}")
async def get_user(session_id: str, user_id: str, services: Services = Depends(get_services)):
    try:
        user = await services.lifecycle.get_user(session_id, user_id)
    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to load user")
    if user is None:
        raise HTTPException(status_code=404, detail=f"User not found: {user_id}")
    return user.model_dump(by_alias=True, exclude={"used_fallback", "error"}, exclude_none=True)
