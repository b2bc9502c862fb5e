from __future__ import annotations

import re
import time
from datetime import date, timedelta
from typing import Any

from app.crm.imports.orchestrator import ExtractionFailure, ExtractionOrchestrator
from app.crm.imports.prompts import TRANSCRIPT_SYSTEM_PROMPT, build_transcript_user_prompt
from app.crm.schemas import DraftTask


VALID_TASK_TYPES = (
    "Call",
    "Email",
    "Meeting",
    "Follow-Up",
    "Demo",
    "Proposal",
    "Automations",
    "Website Development",
    "Custom Development",
    "Training",
    "Consulting",
    "Other",
)
VALID_PRIORITIES = ("Low", "Medium", "High", "Urgent")
DEFAULT_NOTES = "No additional context provided."
DEFAULT_DUE_DAYS = 7

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_tasks(raw_tasks: list[Any], today: date, *, draft_prefix: str | None = None) -> list[DraftTask]:
    prefix = draft_prefix or f"draft-{int(time.time() * 1000)}"
    default_due = (today + timedelta(days=DEFAULT_DUE_DAYS)).isoformat()

    drafts: list[DraftTask] = []
    for index, raw in enumerate(raw_tasks):
        task = raw if isinstance(raw, dict) else {}
        title = task.get("title")
        task_type = task.get("task_type")
        priority = task.get("priority")
        due_date = task.get("due_date")
        notes = task.get("notes")
        drafts.append(
            DraftTask(
                id=f"{prefix}-{index}",
                title=title if isinstance(title, str) and title else f"Task {index + 1}",
                task_type=task_type if task_type in VALID_TASK_TYPES else "Other",
                priority=priority if priority in VALID_PRIORITIES else "Medium",
                due_date=due_date if isinstance(due_date, str) and _ISO_DATE_RE.match(due_date) else default_due,
                notes=notes if isinstance(notes, str) and notes else DEFAULT_NOTES,
            )
        )
    return drafts


class TranscriptTaskExtractor:
    def __init__(self, orchestrator: ExtractionOrchestrator) -> None:
        self.orchestrator = orchestrator

    async def extract(
        self,
        transcript: str,
        deal_title: str | None = None,
        *,
        today: date | None = None,
    ) -> dict[str, Any] | ExtractionFailure:
        today = today or date.today()
        user = build_transcript_user_prompt(transcript, deal_title, today)
        outcome = await self.orchestrator.run_prompts(TRANSCRIPT_SYSTEM_PROMPT, user)
        if isinstance(outcome, ExtractionFailure):
            return outcome

        summary = outcome.get("summary")
        return {
            "tasks": [task.model_dump() for task in normalize_tasks(outcome["tasks"], today)],
            "summary": summary if isinstance(summary, str) else "",
        }
