from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import Settings, get_settings
from app.crm.imports.coercion import ENTITY_KEYS, Unusable, interpret_response
from app.crm.imports.llm import TextGenerator
from app.crm.imports.preprocess import ensure_content_size, preprocess_content
from app.crm.imports.prompts import (
    IMPORT_RETRY_HINTS,
    TRANSCRIPT_RETRY_HINTS,
    build_import_system_prompt,
    build_import_user_prompt,
    with_retry_hint,
)
from app.crm.schemas import ExtractionBatchRead, PipelineStageOption
from app.metrics import observe_extraction, observe_extraction_attempt


logger = logging.getLogger("app.crm.imports")
tracer = trace.get_tracer("app.crm.imports")

IMPORT_FAILURE_MESSAGE = (
    "Unable to parse this file format. The AI could not extract structured data. "
    "Try exporting your CRM data as CSV with clear column headers."
)
TRANSCRIPT_FAILURE_MESSAGE = "Failed to parse AI response"


@dataclass(frozen=True)
class ExtractionProfile:
    name: str
    max_tokens: int
    retry_hints: Mapping[str, str]
    failure_message: str
    # Collection that may legitimately come back empty; None means an empty batch is a misparse.
    empty_list_key: str | None = None


def import_profile(settings: Settings | None = None) -> ExtractionProfile:
    settings = settings or get_settings()
    return ExtractionProfile(
        name="import",
        max_tokens=settings.import_max_tokens,
        retry_hints=IMPORT_RETRY_HINTS,
        failure_message=IMPORT_FAILURE_MESSAGE,
    )


def transcript_profile(settings: Settings | None = None) -> ExtractionProfile:
    settings = settings or get_settings()
    return ExtractionProfile(
        name="transcript",
        max_tokens=settings.transcript_max_tokens,
        retry_hints=TRANSCRIPT_RETRY_HINTS,
        failure_message=TRANSCRIPT_FAILURE_MESSAGE,
        empty_list_key="tasks",
    )


@dataclass(frozen=True)
class ExtractionFailure:
    """Both attempts came back unusable. Never carries partial data."""

    message: str
    first: Unusable
    retry: Unusable
    detected_headers: str | None = None
    was_truncated: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "details": {
                "firstAttemptError": self.first.error,
                "retryError": self.retry.error,
                "firstFailureReason": self.first.reason,
                "retryFailureReason": self.retry.reason,
                "detectedHeaders": self.detected_headers,
                "wasTruncated": self.was_truncated,
                "stopReason": self.retry.stop_reason or self.first.stop_reason,
            },
        }


class ExtractionOrchestrator:
    """Runs one model call plus at most one corrective retry and interprets the output."""

    def __init__(self, generator: TextGenerator, profile: ExtractionProfile) -> None:
        self.generator = generator
        self.profile = profile

    async def run_prompts(self, system: str, user: str) -> dict[str, Any] | ExtractionFailure:
        first = await self._attempt(1, system, user)
        if not isinstance(first, Unusable):
            observe_extraction("succeeded")
            return first

        retry_prompt = with_retry_hint(user, self.profile.retry_hints[first.reason])
        retry = await self._attempt(2, system, retry_prompt)
        if not isinstance(retry, Unusable):
            observe_extraction("succeeded")
            return retry

        observe_extraction("failed")
        logger.error(
            "import.extraction.failed",
            extra={
                "failure_reason": f"{first.reason},{retry.reason}",
                "stop_reason": retry.stop_reason or first.stop_reason,
                "error": f"first: {first.error} | retry: {retry.error}",
            },
        )
        return ExtractionFailure(message=self.profile.failure_message, first=first, retry=retry)

    async def extract(
        self,
        content: str,
        file_type: str,
        file_name: str,
        stage_options: Sequence[PipelineStageOption],
    ) -> ExtractionBatchRead | ExtractionFailure:
        ensure_content_size(content)
        prepared = preprocess_content(content, file_type)

        logger.info(
            "import.extraction.started",
            extra={"file_name": file_name, "file_type": file_type, "content_chars": len(prepared.cleaned)},
        )
        system = build_import_system_prompt(stage_options)
        user = build_import_user_prompt(prepared.cleaned, file_type, file_name)
        outcome = await self.run_prompts(system, user)

        if isinstance(outcome, ExtractionFailure):
            return ExtractionFailure(
                message=outcome.message,
                first=outcome.first,
                retry=outcome.retry,
                detected_headers=prepared.detected_headers,
                was_truncated=prepared.was_truncated,
            )

        warnings = _string_list(outcome.get("warnings"))
        truncation_warning = prepared.truncation_warning(get_settings().import_max_rows)
        if truncation_warning:
            warnings.insert(0, truncation_warning)

        summary = outcome.get("summary")
        return ExtractionBatchRead(
            **{key: outcome[key] for key in ENTITY_KEYS},
            stage_mappings=_stage_mappings(outcome.get("stageMappings")),
            warnings=warnings,
            summary=summary if isinstance(summary, str) and summary else "Import data parsed",
        )

    async def _attempt(self, attempt: int, system: str, user: str) -> dict[str, Any] | Unusable:
        with tracer.start_as_current_span("crm.import.extract_attempt") as span:
            span.set_attribute("attempt", attempt)
            span.set_attribute("profile", self.profile.name)
            span.set_attribute("correlation_id", get_correlation_id() or "")

            generation = await self.generator.generate(system=system, user=user, max_tokens=self.profile.max_tokens)
            result = interpret_response(
                generation.text,
                generation.stop_reason,
                empty_list_key=self.profile.empty_list_key,
            )

            span.set_attribute("stop_reason", generation.stop_reason or "")
            outcome = result.reason if isinstance(result, Unusable) else "success"
            span.set_attribute("outcome", outcome)

        observe_extraction_attempt(outcome)
        if isinstance(result, Unusable):
            logger.warning(
                "import.extraction.attempt_failed",
                extra={
                    "attempt": attempt,
                    "stop_reason": generation.stop_reason,
                    "failure_reason": result.reason,
                    "response_chars": len(generation.text),
                    "error": result.error,
                },
            )
        else:
            logger.info(
                "import.extraction.attempt_succeeded",
                extra={
                    "attempt": attempt,
                    "stop_reason": generation.stop_reason,
                    "response_chars": len(generation.text),
                },
            )
        return result


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _stage_mappings(value: Any) -> dict[str, str | None]:
    if not isinstance(value, dict):
        return {}
    return {str(name): (str(stage_id) if stage_id is not None else None) for name, stage_id in value.items()}
