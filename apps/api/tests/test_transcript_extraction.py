from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Generator
from datetime import date
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.imports.llm import Generation, get_text_generator
from app.crm.imports.orchestrator import TRANSCRIPT_FAILURE_MESSAGE, ExtractionFailure, ExtractionOrchestrator, transcript_profile
from app.crm.imports.prompts import TRANSCRIPT_RETRY_HINTS
from app.crm.imports.transcripts import DEFAULT_NOTES, TranscriptTaskExtractor, normalize_tasks
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


TODAY = date(2026, 10, 19)


class FakeTextGenerator:
    def __init__(self, *generations: Generation) -> None:
        self._queue = list(generations)
        self.calls: list[dict[str, Any]] = []

    def push(self, *generations: Generation) -> None:
        self._queue.extend(generations)

    async def generate(self, *, system: str, user: str, max_tokens: int) -> Generation:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        return self._queue.pop(0)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


def test_normalize_tasks_fills_defaults_for_invalid_fields() -> None:
    drafts = normalize_tasks(
        [
            {
                "title": "Send proposal",
                "task_type": "Proposal",
                "priority": "High",
                "due_date": "2026-10-24",
                "notes": "Include pricing tiers.",
            },
            {"task_type": "Carrier pigeon", "priority": "Whenever", "due_date": "next Friday", "notes": ""},
            "not a task",
        ],
        TODAY,
        draft_prefix="draft-1",
    )

    assert [draft.id for draft in drafts] == ["draft-1-0", "draft-1-1", "draft-1-2"]
    first, second, third = drafts
    assert (first.title, first.task_type, first.priority, first.due_date) == (
        "Send proposal",
        "Proposal",
        "High",
        "2026-10-24",
    )
    assert second.title == "Task 2"
    assert second.task_type == "Other"
    assert second.priority == "Medium"
    assert second.due_date == "2026-10-26"
    assert second.notes == DEFAULT_NOTES
    assert third.title == "Task 3"
    assert third.confirmed is False
    assert third.assignee_id is None


def test_normalize_tasks_generates_shared_prefix() -> None:
    drafts = normalize_tasks([{"title": "A"}, {"title": "B"}], TODAY)

    prefixes = {draft.id.rsplit("-", 1)[0] for draft in drafts}
    assert len(prefixes) == 1
    assert prefixes.pop().startswith("draft-")


def _extractor(generator: FakeTextGenerator) -> TranscriptTaskExtractor:
    return TranscriptTaskExtractor(ExtractionOrchestrator(generator, transcript_profile()))


def test_extract_returns_normalized_tasks_and_summary() -> None:
    generator = FakeTextGenerator(
        Generation(
            text=json.dumps(
                {
                    "tasks": [{"title": "Book demo", "task_type": "Demo", "priority": "Urgent", "due_date": None}],
                    "summary": "Agreed on a demo next week.",
                }
            ),
            stop_reason="end_turn",
        )
    )

    result = asyncio.run(_extractor(generator).extract("Ada: let's book a demo.", "Acme rollout", today=TODAY))

    assert not isinstance(result, ExtractionFailure)
    assert result["summary"] == "Agreed on a demo next week."
    assert len(result["tasks"]) == 1
    task = result["tasks"][0]
    assert task["title"] == "Book demo"
    assert task["priority"] == "Urgent"
    assert task["due_date"] == "2026-10-26"
    call = generator.calls[0]
    assert call["max_tokens"] == get_settings().transcript_max_tokens
    assert "Today's date is 2026-10-19." in call["user"]
    assert 'the deal: "Acme rollout"' in call["user"]
    assert "Ada: let's book a demo." in call["user"]


def test_extract_accepts_transcript_without_action_items() -> None:
    generator = FakeTextGenerator(
        Generation(text='{"tasks": [], "summary": "Status sync, no action items."}', stop_reason="end_turn"),
    )

    result = asyncio.run(_extractor(generator).extract("Quick status sync.", today=TODAY))

    assert result == {"tasks": [], "summary": "Status sync, no action items."}
    assert len(generator.calls) == 1


def test_extract_retries_when_tasks_key_is_missing() -> None:
    generator = FakeTextGenerator(
        Generation(text='{"summary": "Small talk only."}', stop_reason="end_turn"),
        Generation(text='{"tasks": [{"title": "Follow up"}], "summary": "One item."}', stop_reason="end_turn"),
    )

    result = asyncio.run(_extractor(generator).extract("We should follow up.", today=TODAY))

    assert not isinstance(result, ExtractionFailure)
    assert [task["title"] for task in result["tasks"]] == ["Follow up"]
    assert generator.calls[1]["user"].endswith(TRANSCRIPT_RETRY_HINTS["wrong_shape"])


def test_extract_fails_after_two_unusable_responses() -> None:
    generator = FakeTextGenerator(
        Generation(text="Here are the tasks:", stop_reason="end_turn"),
        Generation(text="Let me think about", stop_reason="max_tokens"),
    )

    result = asyncio.run(_extractor(generator).extract("...", today=TODAY))

    assert isinstance(result, ExtractionFailure)
    payload = result.to_payload()
    assert payload["error"] == TRANSCRIPT_FAILURE_MESSAGE
    assert payload["details"]["firstFailureReason"] == "malformed_json"
    assert len(generator.calls) == 2


@pytest.fixture()
def client() -> Generator[tuple[TestClient, FakeTextGenerator], None, None]:
    generator = FakeTextGenerator()

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            workspace_id=uuid.uuid4(),
            permissions={"crm.tasks.extract"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    app.dependency_overrides[get_text_generator] = lambda: generator
    with TestClient(app) as test_client:
        yield test_client, generator
    app.dependency_overrides.clear()


def test_extract_tasks_endpoint_streams_drafts(client: tuple[TestClient, FakeTextGenerator]) -> None:
    test_client, generator = client
    generator.push(
        Generation(text='{"tasks": [{"title": "Email recap", "task_type": "Email"}], "summary": "Recap."}')
    )

    response = test_client.post(
        "/api/crm/ai/extract-tasks",
        json={"transcript": "Bo: I'll email the recap.", "dealTitle": "Beta renewal"},
    )

    assert response.status_code == 200
    body = json.loads(response.text)
    assert body["summary"] == "Recap."
    assert body["tasks"][0]["title"] == "Email recap"
    assert body["tasks"][0]["task_type"] == "Email"
    assert body["tasks"][0]["confirmed"] is False


def test_extract_tasks_endpoint_requires_permission() -> None:
    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="user-2", workspace_id=None, permissions={"crm.import.execute"})

    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    try:
        with TestClient(app) as test_client:
            response = test_client.post("/api/crm/ai/extract-tasks", json={"transcript": "hello"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    assert response.json()["code"] == "crm_tasks_extract_failed"
