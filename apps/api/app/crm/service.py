from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.crm.imports.duplicates import DuplicateDetector
from app.crm.imports.importer import ReferenceGraphImporter
from app.crm.imports.llm import TextGenerator
from app.crm.imports.orchestrator import ExtractionFailure, ExtractionOrchestrator, import_profile, transcript_profile
from app.crm.imports.preprocess import ensure_content_size
from app.crm.imports.streaming import keepalive_stream
from app.crm.imports.transcripts import TranscriptTaskExtractor
from app.crm.repositories import WorkspaceDatastore
from app.crm.schemas import (
    DuplicateCheckRequest,
    DuplicateReport,
    ImportParseRequest,
    ImportPayload,
    ImportResult,
    PipelineStageOption,
    TranscriptExtractRequest,
)


logger = logging.getLogger("app.crm.imports")

TRANSCRIPT_INTERNAL_ERROR_MESSAGE = "Internal server error during task extraction"


@dataclass
class ActorUser:
    user_id: str
    workspace_id: uuid.UUID | None
    permissions: set[str]
    allowed_workspace_ids: list[str] = field(default_factory=list)
    correlation_id: str | None = None


def require_workspace(actor_user: ActorUser) -> uuid.UUID:
    if actor_user.workspace_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="x-workspace-id header with a workspace UUID is required",
        )
    if actor_user.allowed_workspace_ids and str(actor_user.workspace_id) not in actor_user.allowed_workspace_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Workspace not accessible")
    return actor_user.workspace_id


def datastore_for(session: Session, actor_user: ActorUser) -> WorkspaceDatastore:
    return WorkspaceDatastore(session, require_workspace(actor_user), actor_user.user_id)


class ImportService:
    """Entry points for the bulk import flow: parse, check duplicates, execute."""

    def list_stage_options(self, session: Session, actor_user: ActorUser) -> list[PipelineStageOption]:
        datastore = datastore_for(session, actor_user)
        return [
            PipelineStageOption(
                id=str(stage.id),
                name=stage.name,
                pipeline_id=str(pipeline.id),
                pipeline_name=pipeline.name,
            )
            for stage, pipeline in datastore.list_stage_options()
        ]

    def parse_stream(
        self,
        session: Session,
        actor_user: ActorUser,
        request: ImportParseRequest,
        generator: TextGenerator,
    ) -> AsyncIterator[bytes]:
        # Size is checked before any stage lookup or model call.
        ensure_content_size(request.content)
        stage_options = self.list_stage_options(session, actor_user)
        orchestrator = ExtractionOrchestrator(generator, import_profile())

        async def run() -> dict[str, Any]:
            outcome = await orchestrator.extract(request.content, request.file_type, request.file_name, stage_options)
            if isinstance(outcome, ExtractionFailure):
                return outcome.to_payload()
            return outcome.model_dump(mode="json", by_alias=True)

        return keepalive_stream(
            run,
            correlation_id=actor_user.correlation_id,
            workspace_id=str(actor_user.workspace_id),
        )

    def extract_tasks_stream(
        self,
        actor_user: ActorUser,
        request: TranscriptExtractRequest,
        generator: TextGenerator,
    ) -> AsyncIterator[bytes]:
        extractor = TranscriptTaskExtractor(ExtractionOrchestrator(generator, transcript_profile()))

        async def run() -> dict[str, Any]:
            outcome = await extractor.extract(request.transcript, request.deal_title)
            if isinstance(outcome, ExtractionFailure):
                return outcome.to_payload()
            return outcome

        return keepalive_stream(
            run,
            correlation_id=actor_user.correlation_id,
            workspace_id=str(actor_user.workspace_id) if actor_user.workspace_id else None,
            internal_error_message=TRANSCRIPT_INTERNAL_ERROR_MESSAGE,
        )

    def execute(self, session: Session, actor_user: ActorUser, payload: ImportPayload) -> ImportResult:
        importer = ReferenceGraphImporter(datastore_for(session, actor_user))
        return importer.import_payload(payload)

    def find_duplicates(
        self,
        session: Session,
        actor_user: ActorUser,
        request: DuplicateCheckRequest,
    ) -> DuplicateReport:
        detector = DuplicateDetector(datastore_for(session, actor_user))
        return detector.find_duplicates(request.contacts, request.companies)
