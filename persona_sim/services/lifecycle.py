"""Session lifecycle: analyzing -> completed | failed.

The request path only validates the upload, writes the `analyzing` record and
queues a job. The worker runs the fan-out, writes every persona record, and
only then overwrites the session with the aggregate, so a completed session
always has all of its persona records.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from persona_sim.analyzers.evaluator import DEFAULT_CONCURRENCY, analyze_content
from persona_sim.errors import ContentNotFoundError, SessionExistsError
from persona_sim.gateway.chat import ChatGateway
from persona_sim.gateway.pools import ModelPoolRegistry
from persona_sim.models import (
    AnalysisMessage,
    PersonaBehaviorRecord,
    SessionAggregate,
    utc_now,
)
from persona_sim.personas.catalog import PersonaCatalog
from persona_sim.services.queue import TaskQueue
from persona_sim.storage.content import ContentStore
from persona_sim.storage.records import RecordStore

_log = logging.getLogger(__name__)

TTL_SECONDS = 90 * 24 * 60 * 60
SESSIONS_PK = "SESSIONS"
METADATA_SK = "METADATA"


def _session_pk(session_id: str) -> str:
    return f"SESSION#{session_id}"


def session_item(session: SessionAggregate) -> dict[str, Any]:
    return {
        "PK": _session_pk(session.session_id),
        "SK": METADATA_SK,
        "GSI1PK": SESSIONS_PK,
        "GSI1SK": f"STATUS#{session.status}#{session.updated_at}",
        "entityType": "SESSION",
        **session.to_dict(),
    }


def user_item(session_id: str, record: PersonaBehaviorRecord) -> dict[str, Any]:
    return {
        "PK": _session_pk(session_id),
        "SK": f"USER#{record.user_id}",
        "GSI1PK": _session_pk(session_id),
        "GSI1SK": f"STATUS#{record.status}#{record.user_id}",
        "entityType": "USER",
        "sessionId": session_id,
        **record.to_dict(),
    }


class SessionLifecycle:
    def __init__(
        self,
        *,
        store: RecordStore,
        content: ContentStore,
        catalog: PersonaCatalog,
        gateway: ChatGateway,
        registry: ModelPoolRegistry,
        queue: TaskQueue,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.store = store
        self.content = content
        self.catalog = catalog
        self.gateway = gateway
        self.registry = registry
        self.queue = queue
        self.concurrency = concurrency

    # ── Write side ───────────────────────────────────────────────────────────

    async def start(
        self,
        session_id: str,
        object_key: str,
        content_title: str | None = None,
        persona_count: int | None = None,
    ) -> SessionAggregate:
        """Validate the upload, persist the `analyzing` record, and queue the job.

        Raises SessionExistsError if session_id was already started, and
        ContentNotFoundError if nothing was uploaded under object_key.
        """
        if await self.store.get(_session_pk(session_id), METADATA_SK) is not None:
            raise SessionExistsError(f"session {session_id} already exists")
        if not await self.content.exists(object_key):
            raise ContentNotFoundError(f"no upload found for {object_key}")

        count = len(self.catalog) if persona_count is None else persona_count
        now = utc_now()
        session = SessionAggregate(
            session_id=session_id,
            object_key=object_key,
            content_title=content_title,
            status="analyzing",
            total_users=count,
            created_at=now,
            updated_at=now,
            ttl=int(time.time()) + TTL_SECONDS,
        )
        await self.store.put(session_item(session))
        _log.info("session %s created (analyzing, %d personas)", session_id, count)

        await self.queue.send(AnalysisMessage(
            session_id=session_id,
            object_key=object_key,
            content_title=content_title,
            persona_count=count,
        ))
        return session

    async def process(self, message: AnalysisMessage) -> SessionAggregate:
        """Run one session's analysis to a terminal state.

        On any error, makes one best-effort `failed` write and re-raises.
        """
        session_id = message.session_id
        _log.info("processing session %s (%s)", session_id, message.object_key)
        try:
            content_url = await self.content.readable_url(message.object_key)
            result = await analyze_content(
                content_url,
                self.catalog.all(),
                gateway=self.gateway,
                registry=self.registry,
                persona_count=message.persona_count,
                object_key=message.object_key,
                concurrency=self.concurrency,
            )

            await self.store.batch_put([user_item(session_id, u) for u in result.users])
            _log.info("session %s: %d persona records written", session_id, len(result.users))

            existing = await self.store.get(_session_pk(session_id), METADATA_SK)
            now = utc_now()
            completed = SessionAggregate(
                session_id=session_id,
                object_key=message.object_key,
                content_title=message.content_title,
                status="completed",
                total_users=len(result.users),
                metrics=result.metrics,
                journey_steps=result.journey_steps,
                summary=result.summary,
                created_at=(existing or {}).get("createdAt", now),
                updated_at=now,
                ttl=int(time.time()) + TTL_SECONDS,
            )
            await self.store.put(session_item(completed))
            _log.info("session %s completed", session_id)
            return completed
        except Exception as exc:
            _log.error("session %s analysis failed: %s", session_id, exc)
            await self._mark_failed(message)
            raise

    async def _mark_failed(self, message: AnalysisMessage) -> None:
        try:
            existing = await self.store.get(_session_pk(message.session_id), METADATA_SK)
            if existing is not None:
                session = SessionAggregate.model_validate(existing)
            else:
                session = SessionAggregate(
                    session_id=message.session_id,
                    object_key=message.object_key,
                    content_title=message.content_title,
                )
            failed = session.model_copy(update={"status": "failed", "updated_at": utc_now()})
            await self.store.put(session_item(failed))
            _log.info("session %s marked failed", message.session_id)
        except Exception as exc:
            _log.error("could not mark session %s failed; it stays analyzing: %s", message.session_id, exc)

    # ── Read side ────────────────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> SessionAggregate | None:
        item = await self.store.get(_session_pk(session_id), METADATA_SK)
        return SessionAggregate.model_validate(item) if item else None

    async def list_sessions(
        self, status: str | None = None, limit: int = 20, next_token: str | None = None
    ) -> tuple[list[SessionAggregate], str | None]:
        """Newest first, optionally filtered by status."""
        page = await self.store.query(
            SESSIONS_PK,
            index="GSI1",
            sk_prefix=f"STATUS#{status}#" if status else None,
            limit=limit,
            cursor=next_token,
            ascending=False,
        )
        return [SessionAggregate.model_validate(i) for i in page.items], page.next_cursor

    async def list_users(
        self, session_id: str, status: str | None = None, limit: int = 30, next_token: str | None = None
    ) -> tuple[list[PersonaBehaviorRecord], str | None]:
        """Persona records for a session in userId order, optionally filtered by status."""
        if status:
            page = await self.store.query(
                _session_pk(session_id),
                index="GSI1",
                sk_prefix=f"STATUS#{status}#",
                limit=limit,
                cursor=next_token,
            )
        else:
            page = await self.store.query(
                _session_pk(session_id), sk_prefix="USER#", limit=limit, cursor=next_token,
            )
        return [PersonaBehaviorRecord.model_validate(i) for i in page.items], page.next_cursor

    async def get_user(self, session_id: str, user_id: str) -> PersonaBehaviorRecord | None:
        item = await self.store.get(_session_pk(session_id), f"USER#{user_id}")
        return PersonaBehaviorRecord.model_validate(item) if item else None
