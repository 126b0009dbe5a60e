from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flexicrm import audit, events
from flexicrm.api.deps import get_current_user
from flexicrm.authz.catalog import DEFAULT_ROLE_PERMISSIONS, PERMISSION_IDS
from flexicrm.authz.service import ActorUser
from flexicrm.core.config import get_settings
from flexicrm.core.database import Base, get_db
from flexicrm.crm.service import seed_default_fields
from flexicrm.main import app
from flexicrm.middleware.rate_limit import reset_rate_limiter
from flexicrm.org.models import Organization


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
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    org1, org2 = uuid.uuid4(), uuid.uuid4()
    for organization_id in (org1, org2):
        db_session.add(Organization(id=organization_id, name=str(organization_id)))
        db_session.flush()
        seed_default_fields(db_session, organization_id)
    db_session.commit()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "ceo": ActorUser(user_id=str(uuid.uuid4()), organization_id=str(org1), role="ceo", permissions=set(PERMISSION_IDS)),
        "staff": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=str(org1),
            role="staff",
            permissions=set(DEFAULT_ROLE_PERMISSIONS["staff"]),
        ),
        "outsider": ActorUser(user_id=str(uuid.uuid4()), organization_id=str(org2), role="ceo", permissions=set(PERMISSION_IDS)),
    }
    state = {"current": "ceo"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _rule(trigger_value: str, target_value: str, **extra: object) -> dict:
    return {
        "trigger_field_id": "f_status",
        "trigger_value": trigger_value,
        "target_field_id": "f_source",
        "target_value": target_value,
        **extra,
    }


def test_create_and_list_rules_in_order(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    first = test_client.post("/api/crm/rules", json=_rule("opt_closed", "Won deal"))
    second = test_client.post("/api/crm/rules", json=_rule("opt_lost", "Lost deal"))
    inactive = test_client.post("/api/crm/rules", json=_rule("opt_lead", "ignored", is_active=False))
    assert first.status_code == second.status_code == inactive.status_code == 201
    assert first.json()["order"] == 0
    assert second.json()["order"] == 1

    listed = test_client.get("/api/crm/rules").json()
    assert [item["id"] for item in listed] == [first.json()["id"], second.json()["id"]]
    assert any(event["event_type"] == "crm.automation_rule.create" for event in events.published_events)


def test_invalid_rules_are_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    self_reference = test_client.post(
        "/api/crm/rules",
        json={"trigger_field_id": "f_status", "trigger_value": "x", "target_field_id": "f_status", "target_value": "y"},
    )
    assert self_reference.status_code == 422
    assert self_reference.json()["code"] == "crm_rules_create_failed"

    unknown = test_client.post("/api/crm/rules", json={**_rule("x", "y"), "target_field_id": "f_missing"})
    assert unknown.status_code == 422
    assert "unknown target field" in unknown.json()["message"]


def test_apply_change_runs_matching_rules(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    test_client.post("/api/crm/rules", json=_rule("opt_closed", "first"))
    test_client.post("/api/crm/rules", json=_rule("opt_closed", "second"))

    set_actor("staff")
    response = test_client.post(
        "/api/crm/rules/apply",
        json={"field_id": "f_status", "value": "opt_closed", "form_state": {"f_name": "Eve", "f_source": "web"}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["form_state"] == {"f_name": "Eve", "f_source": "second", "f_status": "opt_closed"}
    assert body["changed_field_ids"] == ["f_source"]

    untouched = test_client.post(
        "/api/crm/rules/apply",
        json={"field_id": "f_status", "value": "opt_lead", "form_state": {"f_source": "web"}},
    )
    assert untouched.json()["form_state"] == {"f_source": "web", "f_status": "opt_lead"}
    assert untouched.json()["changed_field_ids"] == []


def test_replace_rules_upserts_and_removes(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    kept = test_client.post("/api/crm/rules", json=_rule("opt_closed", "old")).json()
    dropped = test_client.post("/api/crm/rules", json=_rule("opt_lost", "gone")).json()

    response = test_client.put(
        "/api/crm/rules",
        json={"rules": [_rule("opt_contacted", "new"), _rule("opt_closed", "updated", id=kept["id"])]},
    )
    assert response.status_code == 200
    body = response.json()
    assert [item["target_value"] for item in body] == ["new", "updated"]
    assert body[1]["id"] == kept["id"]
    assert dropped["id"] not in [item["id"] for item in body]


def test_replace_rules_is_all_or_nothing(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    original = test_client.post("/api/crm/rules", json=_rule("opt_closed", "original")).json()

    unknown_id = test_client.put(
        "/api/crm/rules",
        json={"rules": [_rule("opt_lead", "a"), _rule("opt_closed", "b", id=str(uuid.uuid4()))]},
    )
    assert unknown_id.status_code == 404
    assert unknown_id.json()["code"] == "crm_rules_replace_failed"

    invalid = test_client.put(
        "/api/crm/rules",
        json={"rules": [_rule("opt_lead", "a"), {**_rule("x", "y"), "trigger_field_id": "f_nope"}]},
    )
    assert invalid.status_code == 422

    listed = test_client.get("/api/crm/rules").json()
    assert [(item["id"], item["target_value"]) for item in listed] == [(original["id"], "original")]


def test_delete_rule_scoped_to_organization(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    rule = test_client.post("/api/crm/rules", json=_rule("opt_closed", "x")).json()

    set_actor("outsider")
    assert test_client.delete(f"/api/crm/rules/{rule['id']}").status_code == 404

    set_actor("ceo")
    assert test_client.delete(f"/api/crm/rules/{rule['id']}").status_code == 204
    assert test_client.get("/api/crm/rules").json() == []


def test_staff_cannot_manage_rules(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("staff")
    assert test_client.get("/api/crm/rules").status_code == 403
    response = test_client.post("/api/crm/rules", json=_rule("opt_closed", "x"))
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: schema.automation.manage"
