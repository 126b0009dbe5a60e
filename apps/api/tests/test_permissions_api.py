from __future__ import annotations

from collections.abc import Generator
import uuid
from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flexicrm import audit, events
from flexicrm.authz.catalog import DEFAULT_ROLE_PERMISSIONS, PERMISSION_CATEGORIES, PERMISSIONS
from flexicrm.authz.service import ActorUser, permission_service
from flexicrm.core.config import get_settings
from flexicrm.core.database import Base, get_db
from flexicrm.main import app
from flexicrm.middleware.rate_limit import reset_rate_limiter


@dataclass
class Account:
    user_id: str
    organization_id: str
    headers: dict[str, str]


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
    monkeypatch.setenv("PASSWORD_HASH_ITERATIONS", "1000")
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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _register(client: TestClient, organization_name: str, username: str) -> Account:
    response = client.post(
        "/api/auth/register",
        json={"organization_name": organization_name, "username": username, "full_name": username.title(), "password": "secret1"},
    )
    assert response.status_code == 201
    body = response.json()
    return Account(body["user_id"], body["organization_id"], {"Authorization": f"Bearer {body['access_token']}"})


def _add_staff(client: TestClient, owner: Account, username: str) -> Account:
    created = client.post(
        "/api/admin/members",
        json={"username": username, "full_name": username.title(), "password": "secret1"},
        headers=owner.headers,
    )
    assert created.status_code == 201
    login = client.post("/api/auth/login", json={"username": username, "password": "secret1"})
    assert login.status_code == 200
    body = login.json()
    return Account(body["user_id"], body["organization_id"], {"Authorization": f"Bearer {body['access_token']}"})


@pytest.fixture()
def accounts(client: TestClient) -> tuple[Account, Account]:
    owner = _register(client, "Acme", "boss")
    staff = _add_staff(client, owner, "sam")
    return owner, staff


def test_me_reports_role_defaults(client: TestClient, accounts: tuple[Account, Account]) -> None:
    _, staff = accounts
    response = client.get("/api/me", headers=staff.headers)
    assert response.status_code == 200
    body = response.json()
    assert body["role"] == "staff"
    assert body["organization_id"] == staff.organization_id
    assert body["permissions"] == sorted(DEFAULT_ROLE_PERMISSIONS["staff"])

    granted = client.get("/api/me/permissions/data.customers.create", headers=staff.headers).json()
    denied = client.get("/api/me/permissions/admin.permissions.manage", headers=staff.headers).json()
    assert granted == {"permission_id": "data.customers.create", "granted": True}
    assert denied["granted"] is False


def test_me_requires_token(client: TestClient) -> None:
    assert client.get("/api/me").status_code == 401
    assert client.get("/api/me", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_catalog_is_ordered_by_category(client: TestClient, accounts: tuple[Account, Account]) -> None:
    owner, _ = accounts
    response = client.get("/api/admin/permissions", headers=owner.headers)
    assert response.status_code == 200
    body = response.json()
    assert len(body) == len(PERMISSIONS)
    ranks = [PERMISSION_CATEGORIES.index(item["category"]) for item in body]
    assert ranks == sorted(ranks)


def test_toggle_twice_restores_role_default(client: TestClient, accounts: tuple[Account, Account]) -> None:
    owner, staff = accounts
    url = f"/api/admin/permissions/users/{staff.user_id}/data.customers.create/toggle"

    first = client.post(url, headers=owner.headers)
    assert first.status_code == 200
    assert first.json()["state"] == "denied"
    assert first.json()["effective"] is False
    # The next request from the member already sees the change.
    assert client.get("/api/me/permissions/data.customers.create", headers=staff.headers).json()["granted"] is False

    second = client.post(url, headers=owner.headers)
    assert second.json()["state"] == "default"
    assert second.json()["effective"] is True
    assert second.json()["role_default"] is True
    assert client.get("/api/me/permissions/data.customers.create", headers=staff.headers).json()["granted"] is True

    actions = [entry["action"] for entry in audit.audit_entries if entry["entity_type"] == "authz.permission_override"]
    assert actions == ["toggle", "clear"]


def test_toggle_grants_permission_missing_from_role(client: TestClient, accounts: tuple[Account, Account]) -> None:
    owner, staff = accounts
    response = client.post(
        f"/api/admin/permissions/users/{staff.user_id}/data.customers.export/toggle",
        headers=owner.headers,
    )
    assert response.json()["state"] == "granted"
    assert "data.customers.export" in client.get("/api/me", headers=staff.headers).json()["permissions"]


def test_set_and_clear_override(client: TestClient, accounts: tuple[Account, Account]) -> None:
    owner, staff = accounts
    url = f"/api/admin/permissions/users/{staff.user_id}/data.customers.read.own"

    denied = client.put(url, json={"granted": False}, headers=owner.headers)
    assert denied.json()["state"] == "denied"
    # Setting the same value again replaces the single override row.
    client.put(url, json={"granted": False}, headers=owner.headers)

    states = client.get(f"/api/admin/permissions/users/{staff.user_id}", headers=owner.headers).json()
    by_id = {item["permission_id"]: item for item in states}
    assert len(states) == len(PERMISSIONS)
    assert by_id["data.customers.read.own"]["override"] is False
    assert by_id["data.customers.create"]["state"] == "default"

    cleared = client.delete(url, headers=owner.headers)
    assert cleared.status_code == 200
    assert cleared.json()["state"] == "default"
    assert cleared.json()["effective"] is True


def test_unknown_permission_is_not_found(client: TestClient, accounts: tuple[Account, Account]) -> None:
    owner, staff = accounts
    response = client.post(f"/api/admin/permissions/users/{staff.user_id}/data.nothing/toggle", headers=owner.headers)
    assert response.status_code == 404
    assert response.json()["code"] == "admin_permissions_toggle_failed"
    assert response.json()["message"] == "permission not found"


def test_managing_permissions_requires_permission(client: TestClient, accounts: tuple[Account, Account]) -> None:
    owner, staff = accounts
    response = client.get("/api/admin/permissions", headers=staff.headers)
    assert response.status_code == 403
    assert response.json()["code"] == "admin_permissions_list_failed"

    toggle = client.post(f"/api/admin/permissions/users/{owner.user_id}/admin.users.manage/toggle", headers=staff.headers)
    assert toggle.status_code == 403


def test_members_of_other_organizations_are_hidden(client: TestClient, accounts: tuple[Account, Account]) -> None:
    _, staff = accounts
    rival = _register(client, "Rival", "other-boss")
    response = client.post(
        f"/api/admin/permissions/users/{staff.user_id}/data.customers.create/toggle",
        headers=rival.headers,
    )
    assert response.status_code == 404
    assert response.json()["message"] == "member not found"


def test_refresh_returns_updated_role_and_overrides(client: TestClient, accounts: tuple[Account, Account]) -> None:
    owner, staff = accounts
    before = client.post("/api/me/refresh", headers=staff.headers).json()
    assert before["role"] == "staff"
    assert "data.customers.export" not in before["permissions"]

    promoted = client.patch(f"/api/admin/members/{staff.user_id}", json={"role": "team_lead"}, headers=owner.headers)
    assert promoted.status_code == 200
    after_role = client.post("/api/me/refresh", headers=staff.headers).json()
    assert after_role["role"] == "team_lead"
    assert after_role["permissions"] == sorted(DEFAULT_ROLE_PERMISSIONS["team_lead"])

    client.put(
        f"/api/admin/permissions/users/{staff.user_id}/data.customers.export",
        json={"granted": False},
        headers=owner.headers,
    )
    after_override = client.post("/api/me/refresh", headers=staff.headers).json()
    assert "data.customers.export" not in after_override["permissions"]


def test_reload_updates_loaded_context_in_place(
    client: TestClient,
    db_session: Session,
    accounts: tuple[Account, Account],
) -> None:
    owner, staff = accounts
    owner_context = ActorUser.load(db_session, owner.user_id)
    staff_context = ActorUser.load(db_session, staff.user_id)
    assert owner_context is not None and staff_context is not None
    assert "feature.api.access" not in staff_context.permissions

    permission_service.set_override(db_session, owner_context, uuid.UUID(staff.user_id), "feature.api.access", True)
    # The loaded context keeps its snapshot until reloaded.
    assert "feature.api.access" not in staff_context.permissions
    assert staff_context.reload(db_session) is staff_context
    assert "feature.api.access" in staff_context.permissions

    deactivated = client.post(f"/api/admin/members/{staff.user_id}/deactivate", headers=owner.headers)
    assert deactivated.status_code == 200
    staff_context.reload(db_session)
    assert staff_context.is_active is False
    assert staff_context.permissions == set()
