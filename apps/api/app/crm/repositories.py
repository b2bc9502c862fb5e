from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from app.core.database import Base
from app.crm.models import CRMCompany, CRMContact, CRMDeal, CRMNote, CRMPipeline, CRMPipelineStage, CRMTask


_ENTITY_MODELS: dict[str, type[Base]] = {
    "Company": CRMCompany,
    "Contact": CRMContact,
    "Deal": CRMDeal,
    "Note": CRMNote,
    "Task": CRMTask,
}

_OWNER_COLUMNS = {
    "Company": "owner_user_id",
    "Contact": "owner_user_id",
    "Deal": "owner_user_id",
    "Note": "author_user_id",
    "Task": "creator_user_id",
}


class WorkspaceDatastore:
    """Reads and writes CRM rows for exactly one workspace.

    Every insert is stamped with the workspace and the acting user, and every read is
    filtered by the workspace, so callers never handle tenant ids themselves.
    """

    def __init__(self, session: Session, workspace_id: uuid.UUID, actor_user_id: str) -> None:
        self.session = session
        self.workspace_id = workspace_id
        self.actor_user_id = actor_user_id

    def insert(self, entity_type: str, values: dict[str, Any]) -> uuid.UUID:
        model = _ENTITY_MODELS[entity_type]
        row = dict(values)
        row["workspace_id"] = self.workspace_id
        row[_OWNER_COLUMNS[entity_type]] = self.actor_user_id

        # A failed insert only rolls back its own savepoint.
        with self.session.begin_nested():
            record = model(**row)
            self.session.add(record)
            self.session.flush()
        return record.id

    def get_stage(self, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        stmt = select(CRMPipelineStage).where(
            CRMPipelineStage.id == stage_id,
            CRMPipelineStage.workspace_id == self.workspace_id,
        )
        return self.session.scalar(stmt)

    def list_stage_options(self) -> list[tuple[CRMPipelineStage, CRMPipeline]]:
        stmt: Select[tuple[CRMPipelineStage, CRMPipeline]] = (
            select(CRMPipelineStage, CRMPipeline)
            .join(CRMPipeline, CRMPipeline.id == CRMPipelineStage.pipeline_id)
            .where(
                CRMPipeline.workspace_id == self.workspace_id,
                CRMPipeline.deleted_at.is_(None),
            )
            .order_by(CRMPipeline.name, CRMPipelineStage.position)
        )
        return [(stage, pipeline) for stage, pipeline in self.session.execute(stmt).all()]

    def find_contacts_by_emails(self, emails: Iterable[str]) -> list[CRMContact]:
        lowered = sorted({email.lower() for email in emails if email})
        if not lowered:
            return []
        stmt = select(CRMContact).where(
            CRMContact.workspace_id == self.workspace_id,
            CRMContact.deleted_at.is_(None),
            func.lower(CRMContact.email).in_(lowered),
        )
        return list(self.session.scalars(stmt).all())

    def find_companies_by_names(self, names: Iterable[str]) -> list[CRMCompany]:
        lowered = sorted({name.lower() for name in names if name})
        if not lowered:
            return []
        stmt = select(CRMCompany).where(
            CRMCompany.workspace_id == self.workspace_id,
            CRMCompany.deleted_at.is_(None),
            func.lower(CRMCompany.company_name).in_(lowered),
        )
        return list(self.session.scalars(stmt).all())
