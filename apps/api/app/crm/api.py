from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.imports.llm import TextGenerator, get_text_generator
from app.crm.imports.preprocess import ContentTooLargeError
from app.crm.schemas import (
    DuplicateCheckRequest,
    DuplicateReport,
    ImportParseRequest,
    ImportPayload,
    ImportResult,
    PipelineStageOption,
    TranscriptExtractRequest,
)
from app.crm.service import ActorUser, ImportService


import_router = APIRouter(prefix="/api/crm/import", tags=["crm.import"])
ai_router = APIRouter(prefix="/api/crm/ai", tags=["crm.ai"])
import_service = ImportService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _parse_workspace_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw.strip())
    except ValueError:
        return None


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        workspace_id=_parse_workspace_id(request.headers.get("x-workspace-id")),
        permissions=set(auth_user.roles),
        allowed_workspace_ids=list(auth_user.workspaces),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@import_router.post("/parse", response_model=None)
def parse_import(
    request: Request,
    dto: ImportParseRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    generator: TextGenerator = Depends(get_text_generator),
) -> StreamingResponse | JSONResponse:
    try:
        require_permission(user, "crm.import.execute")
        body = import_service.parse_stream(db, user, dto, generator)
        return StreamingResponse(body, media_type="application/json")
    except ContentTooLargeError as exc:
        return error_response(
            request,
            status_code=413,
            code="crm_import_content_too_large",
            message=str(exc),
            details={"content_chars": exc.content_chars, "max_chars": exc.max_chars},
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_import_parse_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_router.post("/execute", response_model=ImportResult, response_model_by_alias=True)
def execute_import(
    request: Request,
    payload: ImportPayload,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ImportResult | JSONResponse:
    try:
        require_permission(user, "crm.import.execute")
        return import_service.execute(db, user, payload)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_import_execute_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_router.post("/duplicates", response_model=DuplicateReport, response_model_by_alias=True)
def check_import_duplicates(
    request: Request,
    dto: DuplicateCheckRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DuplicateReport | JSONResponse:
    try:
        require_permission(user, "crm.import.execute")
        return import_service.find_duplicates(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_import_duplicates_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_router.get("/stages", response_model=list[PipelineStageOption])
def list_import_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageOption] | JSONResponse:
    try:
        require_permission(user, "crm.import.execute")
        return import_service.list_stage_options(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_import_stages_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@ai_router.post("/extract-tasks", response_model=None)
def extract_transcript_tasks(
    request: Request,
    dto: TranscriptExtractRequest,
    user: ActorUser = Depends(get_current_user),
    generator: TextGenerator = Depends(get_text_generator),
) -> StreamingResponse | JSONResponse:
    try:
        require_permission(user, "crm.tasks.extract")
        body = import_service.extract_tasks_stream(user, dto, generator)
        return StreamingResponse(body, media_type="application/json")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_tasks_extract_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
