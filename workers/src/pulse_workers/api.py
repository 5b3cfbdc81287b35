"""HTTP surface: score trigger, intervention evaluation/application, undo, product events."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import psycopg
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from psycopg.rows import dict_row
from pydantic import BaseModel, ConfigDict, Field

from .batch import build_context, connector, evaluate_for_user, run_scoring_batch
from .config import Config
from .errors import (
    InterventionNotFound,
    MultiTenantViolation,
    NothingToRevert,
    NotRevertible,
    WorkspaceResolutionError,
)
from .health import health_payload
from .intervention_apply import apply_intervention
from .ledger import revert
from .product_events import VALID_EVENT_TYPES, InvalidEventType, track_product_event
from .utils import parse_iso_date

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_SERVICE = "service"


@dataclass(frozen=True)
class Caller:
    user_id: str | None
    role: str

    @property
    def is_service(self) -> bool:
        return self.role == ROLE_SERVICE


class ScoreRequest(BaseModel):
    date: str | None = None
    user_id: str | None = None


class EvaluateRequest(BaseModel):
    date: str | None = None


class ApplyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    intervention_id: str | None = Field(default=None, alias="interventionId")


class ProductEventRequest(BaseModel):
    event_type: str
    entity: str | None = None
    entity_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Dependencies ---


def get_config(request: Request) -> Config:
    return request.app.state.config


async def get_db(config: Config = Depends(get_config)) -> AsyncIterator[psycopg.AsyncConnection[Any]]:
    async with await psycopg.AsyncConnection.connect(config.database_url) as conn:
        yield conn


async def get_caller(
    request: Request, conn: psycopg.AsyncConnection[Any] = Depends(get_db)
) -> Caller:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
        )
    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT user_id, role
            FROM api_tokens
            WHERE token_hash = %s AND revoked_at IS NULL
            """,
            (hash_token(token),),
        )
        row = await cur.fetchone()
    if row is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Caller(
        user_id=str(row["user_id"]) if row["user_id"] is not None else None,
        role=row["role"] or ROLE_USER,
    )


def _require_user(caller: Caller) -> str:
    if not caller.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="A user credential is required")
    return caller.user_id


def _parse_day(value: str | None) -> Any:
    try:
        return parse_iso_date(value, utc_now().date())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid date {value!r}")


# --- App ---


def create_app(config: Config) -> FastAPI:
    app = FastAPI(title="Pulse scoring API")
    app.state.config = config

    @app.exception_handler(MultiTenantViolation)
    async def _tenant_violation(request: Request, exc: MultiTenantViolation) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "multi_tenant_violation", "detail": str(exc)})

    @app.exception_handler(WorkspaceResolutionError)
    async def _workspace_error(request: Request, exc: WorkspaceResolutionError) -> JSONResponse:
        logger.error("Workspace resolution failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": "workspace_unresolved"})

    @app.exception_handler(InterventionNotFound)
    async def _not_found(request: Request, exc: InterventionNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "Intervention not found"})

    @app.exception_handler(NothingToRevert)
    async def _nothing_to_revert(request: Request, exc: NothingToRevert) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "nothing_to_revert"})

    @app.exception_handler(NotRevertible)
    async def _not_revertible(request: Request, exc: NotRevertible) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"error": "not_revertible", "reason": exc.reason, "undo_id": exc.undo_id},
        )

    @app.exception_handler(InvalidEventType)
    async def _invalid_event(request: Request, exc: InvalidEventType) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid event_type", "valid_types": sorted(VALID_EVENT_TYPES)},
        )

    @app.get("/health")
    async def health(config: Config = Depends(get_config)) -> JSONResponse:
        payload = await health_payload(config.database_url)
        return JSONResponse(status_code=200 if payload["status"] == "ok" else 503, content=payload)

    @app.post("/v1/scores/compute")
    async def compute_scores(
        body: ScoreRequest,
        caller: Caller = Depends(get_caller),
        config: Config = Depends(get_config),
    ) -> dict[str, Any]:
        day = _parse_day(body.date)
        if caller.is_service:
            user_ids = [body.user_id] if body.user_id else None
        else:
            own = _require_user(caller)
            if body.user_id and body.user_id != own:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot score another user")
            user_ids = [own]

        result = await run_scoring_batch(
            connector(config.database_url),
            day,
            user_ids,
            concurrency=config.score_concurrency,
            unit_timeout_seconds=config.unit_timeout_seconds,
        )
        return {"success": True, **result.to_dict(include_results=user_ids is not None and len(user_ids) == 1)}

    @app.post("/v1/interventions/evaluate")
    async def evaluate_interventions(
        body: EvaluateRequest,
        caller: Caller = Depends(get_caller),
        conn: psycopg.AsyncConnection[Any] = Depends(get_db),
    ) -> dict[str, Any]:
        user_id = _require_user(caller)
        now = utc_now()
        ctx = await build_context(conn, user_id, _parse_day(body.date))
        await conn.commit()
        report = await evaluate_for_user(conn, ctx, now)
        await conn.commit()
        return {"success": True, **report.to_dict()}

    @app.post("/v1/interventions/apply")
    async def apply(
        body: ApplyRequest,
        caller: Caller = Depends(get_caller),
        conn: psycopg.AsyncConnection[Any] = Depends(get_db),
    ) -> dict[str, Any]:
        if not body.intervention_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="interventionId required")
        user_id = _require_user(caller)
        now = utc_now()
        ctx = await build_context(conn, user_id, now.date())
        outcome = await apply_intervention(conn, ctx, body.intervention_id, now)
        await conn.commit()
        return {
            "success": True,
            "actions": outcome.actions,
            "already_applied": outcome.already_applied,
        }

    @app.post("/v1/undo/{undo_id}/revert")
    async def revert_undo(
        undo_id: str,
        caller: Caller = Depends(get_caller),
        conn: psycopg.AsyncConnection[Any] = Depends(get_db),
    ) -> dict[str, Any]:
        user_id = _require_user(caller)
        now = utc_now()
        ctx = await build_context(conn, user_id, now.date())
        outcome = await revert(conn, ctx, undo_id, now)
        await conn.commit()
        return {
            "success": True,
            "undo_id": outcome.undo_id,
            "entity": outcome.entity,
            "entity_id": outcome.entity_id,
            "action": outcome.action,
            "restored": outcome.restored,
        }

    @app.post("/v1/events")
    async def track_event(
        body: ProductEventRequest,
        caller: Caller = Depends(get_caller),
        conn: psycopg.AsyncConnection[Any] = Depends(get_db),
    ) -> dict[str, Any]:
        user_id = _require_user(caller)
        ctx = await build_context(conn, user_id, utc_now().date())
        result = await track_product_event(
            conn, ctx, body.event_type, body.entity, body.entity_id, body.payload
        )
        await conn.commit()
        return {"success": True, "event_id": result.event_id, "duplicate": result.duplicate}

    return app
