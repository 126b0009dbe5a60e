from __future__ import annotations

import uuid
from collections.abc import Callable, Generator, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flexicrm import audit, events
from flexicrm.api.deps import get_current_user
from flexicrm.authz.catalog import DEFAULT_ROLE_PERMISSIONS, PERMISSION_IDS
from flexicrm.authz.service import ActorUser
from flexicrm.core.config import get_settings
from flexicrm.core.database import Base, get_db
from flexicrm.crm.models import CustomerRecord
from flexicrm.crm.service import seed_default_fields
from flexicrm.landing import service as landing_service
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
def organization_id(db_session: Session) -> uuid.UUID:
    org_id = uuid.uuid4()
    db_session.add(Organization(id=org_id, name="Acme"))
    db_session.flush()
    seed_default_fields(db_session, org_id)
    db_session.commit()
    return org_id


@pytest.fixture()
def client(
    db_session: Session,
    organization_id: uuid.UUID,
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "ceo": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=str(organization_id),
            role="ceo",
            permissions=set(PERMISSION_IDS),
        ),
        "staff": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=str(organization_id),
            role="staff",
            permissions=set(DEFAULT_ROLE_PERMISSIONS["staff"]),
        ),
        "outsider": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=str(uuid.uuid4()),
            role="ceo",
            permissions=set(PERMISSION_IDS),
        ),
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


def _create_page(test_client: TestClient, name: str = "Spring Promo") -> dict:
    response = test_client.post("/api/admin/landing-pages", json={"name": name})
    assert response.status_code == 201
    return response.json()


def test_create_page_assigns_slug_and_default_content(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    page = _create_page(test_client)

    assert len(page["slug"]) == 10
    assert set(page["slug"]) <= set(landing_service.SLUG_ALPHABET)
    assert page["is_active"] is True
    assert page["content"]["title"] == "Spring Promo"
    assert page["content"]["button_text"] == "Submit"
    assert page["content"]["primary_color"] == "#4f46e5"
    assert [item["id"] for item in test_client.get("/api/admin/landing-pages").json()] == [page["id"]]


def test_update_content_falls_back_to_defaults_for_empty_values(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    page = _create_page(test_client)

    response = test_client.patch(
        f"/api/admin/landing-pages/{page['id']}",
        json={"content": {"title": "Book a call", "description": "", "primary_color": "#112233"}},
    )
    assert response.status_code == 200
    content = response.json()["content"]
    assert content["title"] == "Book a call"
    assert content["description"] == landing_service.DEFAULT_CONTENT["description"]
    assert content["primary_color"] == "#112233"

    invalid = test_client.patch(f"/api/admin/landing-pages/{page['id']}", json={"content": {"primary_color": "red"}})
    assert invalid.status_code == 422


def test_public_view_exposes_only_content(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    page = _create_page(test_client)

    response = test_client.get(f"/api/public/landing-pages/{page['slug']}")
    assert response.status_code == 200
    assert set(response.json()) == {"id", "slug", "content"}
    assert response.json()["content"]["title"] == "Spring Promo"


def test_inactive_and_missing_slugs_look_identical(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    page = _create_page(test_client)
    test_client.patch(f"/api/admin/landing-pages/{page['id']}", json={"is_active": False})

    inactive = test_client.get(f"/api/public/landing-pages/{page['slug']}")
    missing = test_client.get("/api/public/landing-pages/zzzzzzzzzz")
    assert inactive.status_code == missing.status_code == 404
    assert inactive.content == missing.content
    assert inactive.json()["code"] == "landing_page_unavailable"

    lead = test_client.post(f"/api/public/landing-pages/{page['slug']}/leads", json={"phone": "010-1111-2222"})
    assert lead.status_code == 404
    assert lead.content == missing.content


def test_submit_lead_creates_customer(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    test_client, _ = client
    page = _create_page(test_client)

    response = test_client.post(
        f"/api/public/landing-pages/{page['slug']}/leads",
        json={"phone": " 010-1234-5678 ", "organization_id": str(uuid.uuid4())},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success_title"] == "Thank you!"

    record = db_session.get(CustomerRecord, uuid.UUID(body["customer_id"]))
    assert record is not None
    assert record.organization_id == organization_id
    assert record.created_by is None
    assert str(record.source_landing_page_id) == page["id"]
    assert record.data == {"f_name": "Visitor (5678)", "f_phone": "010-1234-5678", "f_source": "Landing Page"}
    assert any(event["event_type"] == "crm.customer.created" for event in events.published_events)


def test_submit_lead_requires_phone(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    page = _create_page(test_client)

    for payload in ({"phone": "   "}, {}):
        response = test_client.post(f"/api/public/landing-pages/{page['slug']}/leads", json=payload)
        assert response.status_code == 422
        assert response.json()["code"] == "public_landing_lead_failed"
    assert db_session.scalars(select(CustomerRecord)).all() == []


def test_visitor_name_uses_last_four_digits() -> None:
    assert landing_service.visitor_name("+82 10-9876-5432") == "Visitor (5432)"
    assert landing_service.visitor_name("abc") == "Visitor (abc)"


def test_slug_collision_is_retried(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    slugs: Iterator[str] = iter(["aaaaaaaaaa", "aaaaaaaaaa", "bbbbbbbbbb"])
    monkeypatch.setattr(landing_service, "generate_slug", lambda: next(slugs))

    first = _create_page(test_client, "First")
    second = _create_page(test_client, "Second")
    assert first["slug"] == "aaaaaaaaaa"
    assert second["slug"] == "bbbbbbbbbb"


def test_slug_allocation_gives_up_after_max_attempts(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setattr(landing_service, "generate_slug", lambda: "cccccccccc")
    _create_page(test_client, "Taken")

    response = test_client.post("/api/admin/landing-pages", json={"name": "Blocked"})
    assert response.status_code == 409
    assert response.json()["code"] == "admin_landing_create_failed"
    assert len(test_client.get("/api/admin/landing-pages").json()) == 1


def test_pages_are_scoped_and_require_settings_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    page = _create_page(test_client)

    set_actor("outsider")
    assert test_client.get("/api/admin/landing-pages").json() == []
    assert test_client.delete(f"/api/admin/landing-pages/{page['id']}").status_code == 404

    set_actor("staff")
    forbidden = test_client.post("/api/admin/landing-pages", json={"name": "Nope"})
    assert forbidden.status_code == 403
    assert forbidden.json()["message"] == "Missing permission: admin.settings.manage"

    set_actor("ceo")
    assert test_client.delete(f"/api/admin/landing-pages/{page['id']}").status_code == 204
    assert test_client.get(f"/api/public/landing-pages/{page['slug']}").status_code == 404
