from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, ClassVar, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


EntityType = Literal["Company", "Contact", "Deal", "Note", "Task"]
ImportFileType = Literal["csv", "json", "text"]


def extractor_key_field(key: str, **kwargs: Any) -> Any:
    """Accept both ``_key`` (extractor output) and ``key``; serialize as ``_key``."""
    return Field(validation_alias=AliasChoices(f"_{key}", key), serialization_alias=f"_{key}", **kwargs)


class AddressFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None


class SocialProfiles(BaseModel):
    model_config = ConfigDict(extra="ignore")

    linkedin: str | None = None
    twitter: str | None = None


class RawEntity(BaseModel):
    """One extracted CRM record keyed by its batch-local temp id.

    Subclasses declare which attributes may be written (``writable_fields``) and which
    attributes hold temp-id references together with the column each resolves into
    (``reference_fields``). Unknown keys coming from the extractor are dropped on validation.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    writable_fields: ClassVar[tuple[str, ...]] = ()
    reference_fields: ClassVar[dict[str, str]] = {}

    temp_id: str = extractor_key_field("tempId", min_length=1)

    def references(self) -> dict[str, str]:
        resolved: dict[str, str] = {}
        for attribute, column in self.reference_fields.items():
            value = getattr(self, attribute)
            if value:
                resolved[column] = value
        return resolved

    def writable_values(self) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for field_name in self.writable_fields:
            value = getattr(self, field_name)
            if value is None:
                continue
            if isinstance(value, BaseModel):
                value = value.model_dump(exclude_none=True)
                if not value:
                    continue
            if isinstance(value, (str, list, dict)) and not value:
                continue
            values[field_name] = value
        return values


class ParsedCompany(RawEntity):
    writable_fields: ClassVar[tuple[str, ...]] = (
        "company_name",
        "domain",
        "industry",
        "employee_count_range",
        "annual_revenue_range",
        "phone",
        "website",
        "description",
        "address",
        "tags",
    )

    company_name: str = Field(min_length=1)
    domain: str | None = None
    industry: str | None = None
    employee_count_range: str | None = None
    annual_revenue_range: str | None = None
    phone: str | None = None
    website: str | None = None
    description: str | None = None
    address: AddressFields | None = None
    tags: list[str] | None = None


class ParsedContact(RawEntity):
    writable_fields: ClassVar[tuple[str, ...]] = (
        "first_name",
        "last_name",
        "email",
        "phone",
        "job_title",
        "lifecycle_stage",
        "source",
        "address",
        "social_profiles",
        "tags",
    )
    reference_fields: ClassVar[dict[str, str]] = {"company_temp_id": "company_id"}

    company_temp_id: str | None = extractor_key_field("companyTempId", default=None)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    job_title: str | None = None
    lifecycle_stage: str | None = None
    source: str | None = None
    address: AddressFields | None = None
    social_profiles: SocialProfiles | None = None
    tags: list[str] | None = None


class ParsedDeal(RawEntity):
    writable_fields: ClassVar[tuple[str, ...]] = (
        "title",
        "value",
        "currency",
        "expected_close_date",
        "probability",
        "priority",
        "source",
        "description",
        "tags",
    )
    reference_fields: ClassVar[dict[str, str]] = {
        "contact_temp_id": "contact_id",
        "company_temp_id": "company_id",
    }

    contact_temp_id: str | None = extractor_key_field("contactTempId", default=None)
    company_temp_id: str | None = extractor_key_field("companyTempId", default=None)
    stage_name: str | None = extractor_key_field("stageName", default=None)
    title: str = Field(min_length=1)
    value: Decimal | None = None
    currency: str | None = None
    stage_id: str | None = None
    pipeline_id: str | None = None
    expected_close_date: date | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    priority: str | None = None
    source: str | None = None
    description: str | None = None
    tags: list[str] | None = None


class ParsedNote(RawEntity):
    writable_fields: ClassVar[tuple[str, ...]] = ("title", "plain_text", "tags")
    reference_fields: ClassVar[dict[str, str]] = {
        "deal_temp_id": "deal_id",
        "contact_temp_id": "contact_id",
        "company_temp_id": "company_id",
    }

    deal_temp_id: str | None = extractor_key_field("dealTempId", default=None)
    contact_temp_id: str | None = extractor_key_field("contactTempId", default=None)
    company_temp_id: str | None = extractor_key_field("companyTempId", default=None)
    title: str | None = None
    plain_text: str = Field(min_length=1)
    tags: list[str] | None = None


class ParsedTask(RawEntity):
    writable_fields: ClassVar[tuple[str, ...]] = (
        "title",
        "status",
        "priority",
        "task_type",
        "due_date",
        "notes",
        "category",
    )
    reference_fields: ClassVar[dict[str, str]] = {
        "deal_temp_id": "deal_id",
        "contact_temp_id": "contact_id",
    }

    deal_temp_id: str | None = extractor_key_field("dealTempId", default=None)
    contact_temp_id: str | None = extractor_key_field("contactTempId", default=None)
    title: str = Field(min_length=1)
    status: str | None = None
    priority: str | None = None
    task_type: str | None = None
    due_date: date | None = None
    notes: str | None = None
    category: str | None = None


class ImportParseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(min_length=1)
    file_type: ImportFileType = Field(alias="fileType")
    file_name: str = Field(alias="fileName", min_length=1)


class ExtractionBatchRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    companies: list[Any] = Field(default_factory=list)
    contacts: list[Any] = Field(default_factory=list)
    deals: list[Any] = Field(default_factory=list)
    notes: list[Any] = Field(default_factory=list)
    tasks: list[Any] = Field(default_factory=list)
    stage_mappings: dict[str, str | None] = Field(default_factory=dict, alias="stageMappings")
    warnings: list[str] = Field(default_factory=list)
    summary: str = "Import data parsed"


class ImportPayload(BaseModel):
    """Caller-approved entities, still keyed by temp id.

    Entries stay loosely typed here; each record is validated on its own during import so
    one malformed record cannot reject the whole request.
    """

    model_config = ConfigDict(populate_by_name=True)

    companies: list[Any] = Field(default_factory=list)
    contacts: list[Any] = Field(default_factory=list)
    deals: list[Any] = Field(default_factory=list)
    notes: list[Any] = Field(default_factory=list)
    tasks: list[Any] = Field(default_factory=list)
    stage_mappings: dict[str, str | None] = Field(default_factory=dict, alias="stageMappings")


class EntityImportCount(BaseModel):
    success: int = 0
    failed: int = 0


class ImportCounts(BaseModel):
    companies: EntityImportCount = Field(default_factory=EntityImportCount)
    contacts: EntityImportCount = Field(default_factory=EntityImportCount)
    deals: EntityImportCount = Field(default_factory=EntityImportCount)
    notes: EntityImportCount = Field(default_factory=EntityImportCount)
    tasks: EntityImportCount = Field(default_factory=EntityImportCount)


class ImportRecordError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_type: EntityType = Field(alias="entityType")
    temp_id: str = Field(alias="tempId")
    error: str


class ImportResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    counts: ImportCounts = Field(default_factory=ImportCounts)
    errors: list[ImportRecordError] = Field(default_factory=list)
    total_created: int = Field(default=0, alias="totalCreated")
    total_failed: int = Field(default=0, alias="totalFailed")


class DuplicateContactCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    temp_id: str = extractor_key_field("tempId", min_length=1)
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class DuplicateCompanyCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    temp_id: str = extractor_key_field("tempId", min_length=1)
    company_name: str | None = None
    domain: str | None = None


class DuplicateCheckRequest(BaseModel):
    contacts: list[DuplicateContactCandidate] = Field(default_factory=list)
    companies: list[DuplicateCompanyCandidate] = Field(default_factory=list)


class DuplicateMatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temp_id: str = Field(alias="tempId")
    existing_id: str = Field(alias="existingId")
    existing_name: str = Field(alias="existingName")
    match_field: str = Field(alias="matchField")


class DuplicateReport(BaseModel):
    contacts: list[DuplicateMatch] = Field(default_factory=list)
    companies: list[DuplicateMatch] = Field(default_factory=list)


class PipelineStageOption(BaseModel):
    id: str
    name: str
    pipeline_id: str
    pipeline_name: str


class TranscriptExtractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transcript: str = Field(min_length=1)
    deal_title: str | None = Field(default=None, alias="dealTitle")


class DraftTask(BaseModel):
    id: str
    title: str
    task_type: str
    priority: str
    due_date: str
    notes: str
    assignee_id: str | None = None
    confirmed: bool = False
