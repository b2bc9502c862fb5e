from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.context import get_correlation_id
from app.crm.repositories import WorkspaceDatastore
from app.crm.schemas import (
    EntityImportCount,
    EntityType,
    ImportPayload,
    ImportRecordError,
    ImportResult,
    ParsedCompany,
    ParsedContact,
    ParsedDeal,
    ParsedNote,
    ParsedTask,
    RawEntity,
)
from app.metrics import observe_import
from app.services.audit import record_workspace_event


logger = logging.getLogger("app.crm.imports")
tracer = trace.get_tracer("app.crm.imports")

# Dependency order: no entity type references a type that comes after it.
PHASES: tuple[tuple[EntityType, str, type[RawEntity]], ...] = (
    ("Company", "companies", ParsedCompany),
    ("Contact", "contacts", ParsedContact),
    ("Deal", "deals", ParsedDeal),
    ("Note", "notes", ParsedNote),
    ("Task", "tasks", ParsedTask),
)

REFERENCE_TARGETS: dict[str, EntityType] = {
    "company_id": "Company",
    "contact_id": "Contact",
    "deal_id": "Deal",
}

DEAL_STAGE_REQUIRED = "Deal requires a mapped pipeline stage. Please map all stages before importing."
BULK_IMPORT_ACTION = "crm.import.bulk"


class RecordImportError(Exception):
    pass


class IdMap:
    """temp id -> persisted id for one import call, kept per entity type."""

    def __init__(self) -> None:
        self._ids: dict[tuple[str, str], uuid.UUID] = {}

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def get(self, entity_type: str, temp_id: str) -> uuid.UUID | None:
        return self._ids.get((entity_type, temp_id))

    def record(self, entity_type: str, temp_id: str, real_id: uuid.UUID) -> None:
        key = (entity_type, temp_id)
        existing = self._ids.get(key)
        if existing is not None and existing != real_id:
            raise RecordImportError(f"Duplicate _tempId '{temp_id}' for {entity_type}")
        self._ids[key] = real_id


class ReferenceGraphImporter:
    def __init__(self, datastore: WorkspaceDatastore) -> None:
        self.datastore = datastore

    def import_payload(self, payload: ImportPayload) -> ImportResult:
        started = time.perf_counter()
        result = ImportResult()
        id_map = IdMap()

        with tracer.start_as_current_span("crm.import.execute") as span:
            span.set_attribute("workspace_id", str(self.datastore.workspace_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")

            for entity_type, collection, schema in PHASES:
                counts: EntityImportCount = getattr(result.counts, collection)
                for index, raw in enumerate(getattr(payload, collection)):
                    temp_id = _raw_temp_id(raw, collection, index)
                    try:
                        real_id = self._import_record(entity_type, schema, raw, temp_id, id_map, payload.stage_mappings)
                    except ValidationError as exc:
                        self._fail(result, counts, entity_type, temp_id, _validation_message(exc))
                    except RecordImportError as exc:
                        self._fail(result, counts, entity_type, temp_id, str(exc))
                    except SQLAlchemyError as exc:
                        self._fail(result, counts, entity_type, temp_id, _database_message(exc))
                    except Exception as exc:
                        self._fail(result, counts, entity_type, temp_id, str(exc) or exc.__class__.__name__)
                    else:
                        id_map.record(entity_type, temp_id, real_id)
                        counts.success += 1

            result.total_created = sum(getattr(result.counts, collection).success for _, collection, _ in PHASES)
            result.total_failed = sum(getattr(result.counts, collection).failed for _, collection, _ in PHASES)
            span.set_attribute("total_created", result.total_created)
            span.set_attribute("total_failed", result.total_failed)

            counts_payload = result.counts.model_dump()
            if result.total_created > 0:
                record_workspace_event(
                    self.datastore.session,
                    workspace_id=self.datastore.workspace_id,
                    actor_id=self.datastore.actor_user_id,
                    action=BULK_IMPORT_ACTION,
                    metadata={
                        "totalCreated": result.total_created,
                        "totalFailed": result.total_failed,
                        "counts": counts_payload,
                    },
                )
            self.datastore.session.commit()

        duration = time.perf_counter() - started
        observe_import(counts_payload, duration)
        logger.info(
            "import.execute.completed",
            extra={
                "total_created": result.total_created,
                "total_failed": result.total_failed,
                "counts": counts_payload,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return result

    def _import_record(
        self,
        entity_type: EntityType,
        schema: type[RawEntity],
        raw: Any,
        temp_id: str,
        id_map: IdMap,
        stage_mappings: Mapping[str, str | None],
    ) -> uuid.UUID:
        entity = schema.model_validate(raw)
        if (entity_type, entity.temp_id) in id_map:
            raise RecordImportError(f"Duplicate _tempId '{entity.temp_id}' for {entity_type}")

        values = entity.writable_values()
        for column, target_temp_id in entity.references().items():
            real_id = id_map.get(REFERENCE_TARGETS[column], target_temp_id)
            # Unresolved references are dropped, never written as broken ids.
            if real_id is not None:
                values[column] = real_id

        if isinstance(entity, ParsedDeal):
            stage_id, pipeline_id = self._resolve_stage(entity, stage_mappings)
            values["stage_id"] = stage_id
            values["pipeline_id"] = pipeline_id
        elif isinstance(entity, ParsedNote):
            values["content"] = {}

        return self.datastore.insert(entity_type, values)

    def _resolve_stage(self, deal: ParsedDeal, stage_mappings: Mapping[str, str | None]) -> tuple[uuid.UUID, uuid.UUID]:
        stage_uuid = _as_uuid(deal.stage_id)
        if stage_uuid is None and deal.stage_name:
            stage_uuid = _as_uuid(stage_mappings.get(deal.stage_name))

        stage = self.datastore.get_stage(stage_uuid) if stage_uuid is not None else None
        if stage is None:
            raise RecordImportError(DEAL_STAGE_REQUIRED)
        return stage.id, stage.pipeline_id

    @staticmethod
    def _fail(
        result: ImportResult,
        counts: EntityImportCount,
        entity_type: EntityType,
        temp_id: str,
        message: str,
    ) -> None:
        counts.failed += 1
        result.errors.append(ImportRecordError(entity_type=entity_type, temp_id=temp_id, error=message))
        logger.warning(
            "import.record.failed",
            extra={"entity_type": entity_type, "temp_id": temp_id, "error": message[:500]},
        )


def _raw_temp_id(raw: Any, collection: str, index: int) -> str:
    if isinstance(raw, Mapping):
        for key in ("_tempId", "tempId"):
            value = raw.get(key)
            if isinstance(value, (str, int)) and str(value):
                return str(value)
    return f"{collection}[{index}]"


def _as_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "invalid record"))
    return f"{location}: {message}" if location else message


def _database_message(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    return str(original) if original is not None else str(exc)
