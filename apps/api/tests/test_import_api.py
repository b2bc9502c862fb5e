from __future__ import annotations

import json
import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.imports.llm import Generation, get_text_generator
from app.crm.imports.orchestrator import IMPORT_FAILURE_MESSAGE
from app.crm.imports.streaming import INTERNAL_ERROR_MESSAGE
from app.crm.models import CRMCompany, CRMContact, CRMPipeline, CRMPipelineStage
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {"crm.import.execute", "crm.tasks.extract"}


class FakeTextGenerator:
    def __init__(self, *generations: Generation | Exception) -> None:
        self._queue = list(generations)
        self.calls: list[dict[str, Any]] = []

    def push(self, *items: Generation | Exception) -> None:
        self._queue.extend(items)

    async def generate(self, *, system: str, user: str, max_tokens: int) -> Generation:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        item = self._queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def workspace_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def generator() -> FakeTextGenerator:
    return FakeTextGenerator()


@pytest.fixture()
def client(
    db_session: Session,
    workspace_id: uuid.UUID,
    generator: FakeTextGenerator,
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            workspace_id=workspace_id,
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    app.dependency_overrides[get_text_generator] = lambda: generator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_stage(session: Session, workspace_id: uuid.UUID) -> CRMPipelineStage:
    pipeline = CRMPipeline(workspace_id=workspace_id, name="Sales")
    session.add(pipeline)
    session.flush()
    stage = CRMPipelineStage(workspace_id=workspace_id, pipeline_id=pipeline.id, name="Qualified", position=1)
    session.add(stage)
    session.commit()
    return stage


def test_parse_streams_extracted_batch(
    client: TestClient,
    generator: FakeTextGenerator,
    db_session: Session,
    workspace_id: uuid.UUID,
) -> None:
    stage = _seed_stage(db_session, workspace_id)
    generator.push(
        Generation(
            text=json.dumps(
                {
                    "companies": [{"_tempId": "c0", "company_name": "Acme"}],
                    "deals": [{"_tempId": "d0", "title": "Pilot", "_stageName": "Qualified"}],
                    "stageMappings": {"Qualified": str(stage.id)},
                }
            ),
            stop_reason="end_turn",
        )
    )

    response = client.post(
        "/api/crm/import/parse",
        json={"content": "company,deal\nAcme,Pilot\n", "fileType": "csv", "fileName": "deals.csv"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    body = json.loads(response.text)
    assert body["companies"] == [{"_tempId": "c0", "company_name": "Acme"}]
    assert body["stageMappings"] == {"Qualified": str(stage.id)}
    assert body["summary"] == "Import data parsed"
    assert body["contacts"] == []
    assert f'"Qualified" (id: {stage.id})' in generator.calls[0]["system"]


def test_parse_reports_double_failure_in_stream_body(client: TestClient, generator: FakeTextGenerator) -> None:
    generator.push(
        Generation(text="Sorry, nothing here", stop_reason="end_turn"),
        Generation(text='{"contacts": {}}', stop_reason="end_turn"),
    )

    response = client.post(
        "/api/crm/import/parse",
        json={"content": "name\nAda\n", "fileType": "csv", "fileName": "people.csv"},
    )

    assert response.status_code == 200
    body = json.loads(response.text)
    assert body["error"] == IMPORT_FAILURE_MESSAGE
    assert body["details"]["firstFailureReason"] == "malformed_json"
    assert body["details"]["retryFailureReason"] == "wrong_shape"
    assert body["details"]["detectedHeaders"] == "name"
    assert len(generator.calls) == 2


def test_parse_reports_unexpected_error_generically(client: TestClient, generator: FakeTextGenerator) -> None:
    generator.push(RuntimeError("connection reset by upstream"))

    response = client.post(
        "/api/crm/import/parse",
        json={"content": "Met Ada at Acme", "fileType": "text", "fileName": "notes.txt"},
    )

    assert response.status_code == 200
    assert json.loads(response.text) == {"error": INTERNAL_ERROR_MESSAGE}


def test_parse_rejects_oversized_content(
    client: TestClient,
    generator: FakeTextGenerator,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("IMPORT_MAX_CONTENT_CHARS", "1000")
    get_settings.cache_clear()

    response = client.post(
        "/api/crm/import/parse",
        json={"content": "x" * 1001, "fileType": "text", "fileName": "big.txt"},
        headers={"x-correlation-id": "corr-too-large"},
    )

    assert response.status_code == 413
    body = response.json()
    assert body["code"] == "crm_import_content_too_large"
    assert body["details"] == {"content_chars": 1001, "max_chars": 1000}
    assert body["correlation_id"] == "corr-too-large"
    assert generator.calls == []


def test_parse_validates_request_body(client: TestClient) -> None:
    response = client.post("/api/crm/import/parse", json={"content": "a,b", "fileType": "xlsx", "fileName": "x"})

    assert response.status_code == 422


def test_execute_imports_graph_and_returns_counts(
    client: TestClient,
    db_session: Session,
    workspace_id: uuid.UUID,
) -> None:
    response = client.post(
        "/api/crm/import/execute",
        json={
            "companies": [{"_tempId": "c0", "company_name": "Acme"}],
            "contacts": [
                {"_tempId": "k0", "_companyTempId": "c0", "first_name": "Jo", "last_name": "Lee"},
                {"_tempId": "k1", "first_name": "Missing"},
            ],
            "deals": [{"_tempId": "d0", "title": "No stage"}],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["totalCreated"] == 2
    assert body["totalFailed"] == 2
    assert body["counts"]["companies"] == {"success": 1, "failed": 0}
    assert body["counts"]["contacts"] == {"success": 1, "failed": 1}
    assert body["counts"]["deals"] == {"success": 0, "failed": 1}
    assert {(error["entityType"], error["tempId"]) for error in body["errors"]} == {("Contact", "k1"), ("Deal", "d0")}

    contact = db_session.scalar(select(CRMContact).where(CRMContact.workspace_id == workspace_id))
    company = db_session.scalar(select(CRMCompany).where(CRMCompany.workspace_id == workspace_id))
    assert contact is not None and company is not None
    assert contact.company_id == company.id


def test_duplicates_endpoint_reports_matches(client: TestClient, db_session: Session, workspace_id: uuid.UUID) -> None:
    existing = CRMContact(workspace_id=workspace_id, first_name="Jo", last_name="Lee", email="jo@acme.com")
    db_session.add(existing)
    db_session.commit()

    response = client.post(
        "/api/crm/import/duplicates",
        json={"contacts": [{"_tempId": "k0", "email": "JO@ACME.COM"}], "companies": []},
    )

    assert response.status_code == 200
    assert response.json() == {
        "contacts": [
            {"tempId": "k0", "existingId": str(existing.id), "existingName": "Jo Lee", "matchField": "email"}
        ],
        "companies": [],
    }


def test_duplicates_endpoint_accepts_plain_temp_id(client: TestClient, db_session: Session, workspace_id: uuid.UUID) -> None:
    existing = CRMContact(workspace_id=workspace_id, first_name="Jo", last_name="Doe", email="jo@acme.com")
    db_session.add(existing)
    db_session.commit()

    response = client.post("/api/crm/import/duplicates", json={"contacts": [{"tempId": "k0", "email": "JO@ACME.COM"}]})

    assert response.status_code == 200
    matches = response.json()["contacts"]
    assert [(match["tempId"], match["existingId"], match["matchField"]) for match in matches] == [
        ("k0", str(existing.id), "email")
    ]


def test_execute_reports_null_entries_per_record(client: TestClient, db_session: Session, workspace_id: uuid.UUID) -> None:
    response = client.post(
        "/api/crm/import/execute",
        json={"companies": [None, {"tempId": "c1", "company_name": "Acme"}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["counts"]["companies"] == {"success": 1, "failed": 1}
    assert [error["tempId"] for error in body["errors"]] == ["companies[0]"]
    assert db_session.scalar(select(CRMCompany).where(CRMCompany.workspace_id == workspace_id)) is not None


def test_stages_endpoint_lists_workspace_stages(client: TestClient, db_session: Session, workspace_id: uuid.UUID) -> None:
    stage = _seed_stage(db_session, workspace_id)
    _seed_stage(db_session, uuid.uuid4())

    response = client.get("/api/crm/import/stages")

    assert response.status_code == 200
    assert response.json() == [
        {"id": str(stage.id), "name": "Qualified", "pipeline_id": str(stage.pipeline_id), "pipeline_name": "Sales"}
    ]


def test_missing_permission_returns_error_envelope(db_session: Session, workspace_id: uuid.UUID) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="viewer",
            workspace_id=workspace_id,
            permissions=set(),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    try:
        with TestClient(app) as client:
            response = client.post(
                "/api/crm/import/execute",
                json={"companies": [{"_tempId": "c0", "company_name": "Acme"}]},
                headers={"x-correlation-id": "corr-forbidden"},
            )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    assert response.json() == {
        "code": "crm_import_execute_failed",
        "message": "Missing permission: crm.import.execute",
        "details": "Missing permission: crm.import.execute",
        "correlation_id": "corr-forbidden",
    }
    assert db_session.scalars(select(CRMCompany)).all() == []


def _token(**claims: Any) -> str:
    settings = get_settings()
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture()
def jwt_client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_workspace_header_is_required(jwt_client: TestClient) -> None:
    token = _token(sub="user-1", roles=["crm.import.execute"])

    response = jwt_client.get("/api/crm/import/stages", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 400
    assert response.json()["code"] == "crm_import_stages_failed"


def test_workspace_outside_token_claim_is_forbidden(jwt_client: TestClient, workspace_id: uuid.UUID) -> None:
    token = _token(sub="user-1", roles=["crm.import.execute"], workspaces=[str(uuid.uuid4())])

    response = jwt_client.get(
        "/api/crm/import/stages",
        headers={"Authorization": f"Bearer {token}", "x-workspace-id": str(workspace_id)},
    )

    assert response.status_code == 403
    assert response.json()["message"] == "Workspace not accessible"


def test_workspace_from_header_scopes_the_request(
    jwt_client: TestClient,
    db_session: Session,
    workspace_id: uuid.UUID,
) -> None:
    stage = _seed_stage(db_session, workspace_id)
    token = _token(sub="user-1", roles=["crm.import.execute"], workspaces=[str(workspace_id)])

    response = jwt_client.get(
        "/api/crm/import/stages",
        headers={"Authorization": f"Bearer {token}", "x-workspace-id": str(workspace_id)},
    )

    assert response.status_code == 200
    assert [option["id"] for option in response.json()] == [str(stage.id)]


def test_anonymous_caller_lacks_import_permission(jwt_client: TestClient, workspace_id: uuid.UUID) -> None:
    response = jwt_client.get("/api/crm/import/stages", headers={"x-workspace-id": str(workspace_id)})

    assert response.status_code == 403
    assert response.json()["code"] == "crm_import_stages_failed"
