"""
Skill Router — API Server

FastAPI application serving:
  POST /v1/classify                       — classify a request (no side effects)
  POST /v1/workflows                      — start a workflow (text or intent)
  GET  /v1/workflows                      — list instances (?status=)
  GET  /v1/workflows/{id}                 — state snapshot
  GET  /v1/workflows/{id}/report          — final report with exceptions
  POST /v1/workflows/{id}/approve         — approve a planned workflow
  POST /v1/workflows/{id}/reject          — reject a planned workflow
  POST /v1/workflows/{id}/criteria        — record an exit-criterion result
  POST /v1/workflows/{id}/advance         — completion / failure signal
  POST /v1/workflows/{id}/cancel          — abort
  GET  /v1/phases                         — phase catalog
  GET  /v1/stats                          — store and budget statistics
  GET  /health                            — liveness

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

Requires: pip install fastapi uvicorn
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.models import (
    AdvanceSignal,
    ApprovalAction,
    ClassifyRequest,
    CriterionSubmission,
    ErrorResponse,
    WorkflowSubmission,
)
from router.errors import (
    InputError,
    InvariantViolation,
    LoopLimitExceeded,
    NotFound,
    ResourceUnavailable,
    RouterError,
)
from router.runtime import Router
from router.types import intent_from_dict

logger = logging.getLogger("skill_router.api")


def error_status(exc: RouterError) -> int:
    """HTTP status for a router error."""
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (InvariantViolation, LoopLimitExceeded)):
        return 409
    if isinstance(exc, InputError):
        return 422
    if isinstance(exc, ResourceUnavailable):
        return 503
    return 400


def create_app(
    config_path: str | None = None,
    router: Router | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The Router is built lazily on first use so importing this module
    never touches the database. Tests pass a ready Router.
    """
    app = FastAPI(
        title="Skill Router API",
        version="0.1.0",
        description="Phase routing and workflow state machine",
    )

    # ── State ────────────────────────────────────────────────

    _router: Router | None = router

    def get_router() -> Router:
        nonlocal _router
        if _router is None:
            _router = Router(
                config_path=config_path,
                project_root=os.environ.get("SR_PROJECT_ROOT") or None,
                env=os.environ.get("SR_ENV", "dev"),
            )
        return _router

    async def read_body(request: Request) -> dict[str, Any]:
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InputError(f"Body is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise InputError("Body must be a JSON object")
        return body

    def invalid(errors: list[str]) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(error="InputError", message="; ".join(errors), errors=errors).to_dict(),
        )

    # ── Errors ───────────────────────────────────────────────

    @app.exception_handler(RouterError)
    async def router_error(request: Request, exc: RouterError):
        status = error_status(exc)
        if status >= 500 or status == 409:
            logger.warning("%s %s → %d %s: %s", request.method, request.url.path,
                           status, type(exc).__name__, exc)
        body = ErrorResponse(
            error=type(exc).__name__,
            message=str(exc),
            snapshot=getattr(exc, "snapshot", None) or None,
        )
        return JSONResponse(status_code=status, content=body.to_dict())

    @app.on_event("shutdown")
    async def shutdown():
        if _router is not None:
            _router.close()

    # ── Classification ───────────────────────────────────────

    @app.post("/v1/classify")
    async def classify(request: Request):
        body = await read_body(request)
        req = ClassifyRequest(text=body.get("text", ""))
        errors = req.validate()
        if errors:
            return invalid(errors)
        return JSONResponse(content=get_router().explain(req.text))

    # ── Workflows ────────────────────────────────────────────

    @app.post("/v1/workflows")
    async def start_workflow(request: Request):
        body = await read_body(request)
        submission = WorkflowSubmission(text=body.get("text", ""), intent=body.get("intent"))
        errors = submission.validate()
        if errors:
            return invalid(errors)

        router = get_router()
        if submission.intent is not None:
            snap = router.start(intent_from_dict(submission.intent), request_text=submission.text)
        else:
            snap = router.submit(submission.text)
        return JSONResponse(status_code=201, content=snap)

    @app.get("/v1/workflows")
    async def list_workflows(status: str | None = None):
        items = get_router().list_instances(status=status)
        return JSONResponse(content={"count": len(items), "instances": items})

    @app.get("/v1/workflows/{instance_id}")
    async def get_workflow(instance_id: str):
        return JSONResponse(content=get_router().status(instance_id))

    @app.get("/v1/workflows/{instance_id}/report")
    async def get_report(instance_id: str):
        return JSONResponse(content=get_router().report(instance_id))

    @app.post("/v1/workflows/{instance_id}/approve")
    async def approve(instance_id: str, request: Request):
        body = await read_body(request)
        action = ApprovalAction(actor=body.get("approver", ""), notes=body.get("notes", ""))
        errors = action.validate()
        if errors:
            return invalid(errors)
        return JSONResponse(content=get_router().approve(
            instance_id, approver=action.actor, notes=action.notes,
        ))

    @app.post("/v1/workflows/{instance_id}/reject")
    async def reject(instance_id: str, request: Request):
        body = await read_body(request)
        action = ApprovalAction(actor=body.get("rejector", ""), notes=body.get("reason", ""))
        errors = action.validate()
        if errors:
            return invalid(errors)
        return JSONResponse(content=get_router().reject(
            instance_id, rejector=action.actor, reason=action.notes,
        ))

    @app.post("/v1/workflows/{instance_id}/criteria")
    async def record_criterion(instance_id: str, request: Request):
        body = await read_body(request)
        submission = CriterionSubmission(
            criterion_id=body.get("criterion_id", ""),
            outcome=body.get("outcome", ""),
            justification=body.get("justification", ""),
            accept=body.get("accept", False),
            phase_id=body.get("phase_id"),
        )
        errors = submission.validate()
        if errors:
            return invalid(errors)
        return JSONResponse(content=get_router().record(
            instance_id, submission.criterion_id, submission.outcome,
            justification=submission.justification,
            accept=submission.accept,
            phase_id=submission.phase_id,
        ))

    @app.post("/v1/workflows/{instance_id}/advance")
    async def advance(instance_id: str, request: Request):
        body = await read_body(request)
        signal = AdvanceSignal(
            outcome=body.get("outcome", ""),
            condition=body.get("condition"),
            detail=body.get("detail", ""),
        )
        errors = signal.validate()
        if errors:
            return invalid(errors)
        return JSONResponse(content=get_router().advance(
            instance_id, signal.outcome, condition=signal.condition, detail=signal.detail,
        ))

    @app.post("/v1/workflows/{instance_id}/cancel")
    async def cancel(instance_id: str, request: Request):
        body = await read_body(request)
        return JSONResponse(content=get_router().cancel(instance_id, reason=str(body.get("reason", ""))))

    # ── Catalog / Stats ──────────────────────────────────────

    @app.get("/v1/phases")
    async def phases():
        return JSONResponse(content=get_router().phases())

    @app.get("/v1/stats")
    async def stats():
        return JSONResponse(content=get_router().stats())

    # ── Health ───────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app(config_path=os.environ.get("SR_CONFIG_PATH") or None)
