from __future__ import annotations

import csv
import io
import uuid
from collections.abc import Callable, Generator
from datetime import date

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
from flexicrm.crm.models import CustomerRecord
from flexicrm.crm.service import seed_default_fields
from flexicrm.main import app
from flexicrm.middleware.rate_limit import reset_rate_limiter
from flexicrm.org.models import Organization, Team


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
def tenancy(db_session: Session) -> dict[str, uuid.UUID]:
    ids = {"org1": uuid.uuid4(), "org2": uuid.uuid4(), "team1": uuid.uuid4(), "team2": uuid.uuid4()}
    for key in ("org1", "org2"):
        db_session.add(Organization(id=ids[key], name=key))
        db_session.flush()
        seed_default_fields(db_session, ids[key])
    db_session.add(Team(id=ids["team1"], organization_id=ids["org1"], name="Sales"))
    db_session.add(Team(id=ids["team2"], organization_id=ids["org2"], name="Elsewhere"))
    db_session.commit()
    return ids


@pytest.fixture()
def client(
    db_session: Session,
    tenancy: dict[str, uuid.UUID],
) -> Generator[tuple[TestClient, Callable[[str], ActorUser]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    org1 = str(tenancy["org1"])
    team1 = str(tenancy["team1"])
    actors = {
        "ceo": ActorUser(user_id=str(uuid.uuid4()), organization_id=org1, role="ceo", permissions=set(PERMISSION_IDS)),
        "lead": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=org1,
            role="team_lead",
            team_id=team1,
            permissions=set(DEFAULT_ROLE_PERMISSIONS["team_lead"]) - {"data.customers.read.all"},
        ),
        "staff_a": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=org1,
            role="staff",
            team_id=team1,
            permissions=set(DEFAULT_ROLE_PERMISSIONS["staff"]),
            correlation_id="customers-corr-a",
        ),
        "staff_b": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=org1,
            role="staff",
            permissions=set(DEFAULT_ROLE_PERMISSIONS["staff"]),
        ),
        "outsider": ActorUser(
            user_id=str(uuid.uuid4()),
            organization_id=str(tenancy["org2"]),
            role="ceo",
            permissions=set(PERMISSION_IDS),
        ),
    }
    state = {"current": "ceo"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> ActorUser:
        state["current"] = name
        return actors[name]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create(test_client: TestClient, data: dict) -> dict:
    response = test_client.post("/api/crm/customers", json={"data": data})
    assert response.status_code == 201, response.text
    return response.json()


def test_create_defaults_owner_and_team(client: tuple[TestClient, Callable[[str], ActorUser]], tenancy: dict[str, uuid.UUID]) -> None:
    test_client, set_actor = client
    actor = set_actor("staff_a")

    body = _create(test_client, {"f_name": "Alice", "f_email": "alice@example.com", "f_status": "opt_lead"})

    assert body["created_by"] == actor.user_id
    assert body["assigned_to"] == actor.user_id
    assert body["team_id"] == str(tenancy["team1"])
    assert body["row_version"] == 1
    assert body["data"]["f_status"] == "opt_lead"

    created = [event for event in events.published_events if event["event_type"] == "crm.customer.created"]
    assert created and created[-1]["organization_id"] == actor.organization_id
    customer_audits = [entry for entry in audit.audit_entries if entry["entity_type"] == "crm.customer"]
    assert customer_audits[-1]["correlation_id"] == "customers-corr-a"


def test_invalid_values_are_rejected(client: tuple[TestClient, Callable[[str], ActorUser]]) -> None:
    test_client, _ = client
    bad_email = test_client.post("/api/crm/customers", json={"data": {"f_email": "not-an-email"}})
    assert bad_email.status_code == 422
    assert bad_email.json()["code"] == "crm_customers_create_failed"

    bad_option = test_client.post("/api/crm/customers", json={"data": {"f_status": "opt_unknown"}})
    assert bad_option.status_code == 422


def test_update_replaces_data_and_guards_row_version(client: tuple[TestClient, Callable[[str], ActorUser]]) -> None:
    test_client, _ = client
    created = _create(test_client, {"f_name": "Bob", "f_phone": "010-1111-2222"})

    updated = test_client.put(
        f"/api/crm/customers/{created['id']}",
        json={"data": {"f_name": "Robert"}, "row_version": 1},
    )
    assert updated.status_code == 200
    assert updated.json()["data"] == {"f_name": "Robert"}
    assert updated.json()["row_version"] == 2

    stale = test_client.put(
        f"/api/crm/customers/{created['id']}",
        json={"data": {"f_name": "Bobby"}, "row_version": 1},
    )
    assert stale.status_code == 409
    assert stale.json()["code"] == "crm_customers_update_failed"
    assert stale.json()["message"] == "row_version conflict"

    current = test_client.get(f"/api/crm/customers/{created['id']}").json()
    assert current["data"] == {"f_name": "Robert"}


def test_update_keeps_unchanged_value_after_field_type_change(
    client: tuple[TestClient, Callable[[str], ActorUser]],
) -> None:
    test_client, _ = client
    created = _create(test_client, {"f_name": "Dana", "f_phone": "010-3333-4444"})

    retyped = test_client.patch("/api/crm/fields/f_phone", json={"type": "number"})
    assert retyped.status_code == 200

    kept = test_client.put(
        f"/api/crm/customers/{created['id']}",
        json={"data": {"f_name": "Dana K", "f_phone": "010-3333-4444"}, "row_version": 1},
    )
    assert kept.status_code == 200, kept.text
    assert kept.json()["data"] == {"f_name": "Dana K", "f_phone": "010-3333-4444"}

    changed = test_client.put(
        f"/api/crm/customers/{created['id']}",
        json={"data": {"f_name": "Dana K", "f_phone": "010-5555-6666"}, "row_version": 2},
    )
    assert changed.status_code == 422

    not_finite = test_client.post("/api/crm/customers", json={"data": {"f_phone": "NaN"}})
    assert not_finite.status_code == 422
    assert not_finite.json()["code"] == "crm_customers_create_failed"


def test_soft_delete_and_bulk_delete(client: tuple[TestClient, Callable[[str], ActorUser]], db_session: Session) -> None:
    test_client, _ = client
    first = _create(test_client, {"f_name": "One"})
    second = _create(test_client, {"f_name": "Two"})
    third = _create(test_client, {"f_name": "Three"})

    deleted = test_client.delete(f"/api/crm/customers/{first['id']}")
    assert deleted.status_code == 204
    assert test_client.get(f"/api/crm/customers/{first['id']}").status_code == 404

    record = db_session.get(CustomerRecord, uuid.UUID(first["id"]))
    assert record is not None and record.deleted_at is not None

    bulk = test_client.post(
        "/api/crm/customers/bulk-delete",
        json={"ids": [first["id"], second["id"], third["id"]]},
    )
    assert bulk.status_code == 200
    assert bulk.json() == {"deleted_count": 2}
    assert test_client.get("/api/crm/customers").json() == []


def test_staff_cannot_delete(client: tuple[TestClient, Callable[[str], ActorUser]]) -> None:
    test_client, set_actor = client
    set_actor("staff_a")
    created = _create(test_client, {"f_name": "Keep"})

    response = test_client.delete(f"/api/crm/customers/{created['id']}")
    assert response.status_code == 403
    assert response.json()["code"] == "crm_customers_delete_failed"


def test_other_organization_sees_nothing(client: tuple[TestClient, Callable[[str], ActorUser]]) -> None:
    test_client, set_actor = client
    created = _create(test_client, {"f_name": "Private"})

    set_actor("outsider")
    assert test_client.get("/api/crm/customers").json() == []
    assert test_client.get(f"/api/crm/customers/{created['id']}").status_code == 404
    update = test_client.put(
        f"/api/crm/customers/{created['id']}",
        json={"data": {"f_name": "Hijacked"}, "row_version": 1},
    )
    assert update.status_code == 404


def test_ownership_tiers(client: tuple[TestClient, Callable[[str], ActorUser]]) -> None:
    test_client, set_actor = client
    set_actor("staff_a")
    mine = _create(test_client, {"f_name": "Team record"})
    set_actor("staff_b")
    theirs = _create(test_client, {"f_name": "Solo record"})

    assert [item["id"] for item in test_client.get("/api/crm/customers").json()] == [theirs["id"]]
    assert test_client.get(f"/api/crm/customers/{mine['id']}").status_code == 404

    set_actor("lead")
    visible = {item["id"] for item in test_client.get("/api/crm/customers").json()}
    assert visible == {mine["id"]}
    updated = test_client.put(
        f"/api/crm/customers/{mine['id']}",
        json={"data": {"f_name": "Edited by lead"}, "row_version": 1},
    )
    assert updated.status_code == 200

    set_actor("ceo")
    assert len(test_client.get("/api/crm/customers").json()) == 2


def test_team_from_another_organization_is_refused(
    client: tuple[TestClient, Callable[[str], ActorUser]],
    tenancy: dict[str, uuid.UUID],
) -> None:
    test_client, _ = client
    response = test_client.post(
        "/api/crm/customers",
        json={"data": {"f_name": "Sneaky"}, "team_id": str(tenancy["team2"])},
    )
    assert response.status_code == 403
    denials = [entry for entry in audit.audit_entries if entry["action"] == "rls.denied"]
    assert denials and denials[-1]["after"]["resource"] == "crm.customer"


def test_query_search_sort_and_window(client: tuple[TestClient, Callable[[str], ActorUser]]) -> None:
    test_client, _ = client
    _create(test_client, {"f_name": "Charlie", "f_status": "opt_closed"})
    _create(test_client, {"f_name": "Alice", "f_status": "opt_lead"})
    _create(test_client, {"f_name": "Bob", "f_status": "opt_lead"})
    _create(test_client, {"f_status": "opt_lead"})

    page = test_client.post(
        "/api/crm/customers/query",
        json={"search": "new lead", "sort": {"field_id": "f_name", "direction": "asc"}, "offset": 0, "limit": 2},
    )
    assert page.status_code == 200
    body = page.json()
    assert body["total"] == 3
    assert [item["data"]["f_name"] for item in body["items"]] == ["Alice", "Bob"]

    filtered = test_client.post(
        "/api/crm/customers/query",
        json={"filters": [{"field_id": "f_status", "operator": "equals", "value": "closed won"}]},
    )
    assert [item["data"]["f_name"] for item in filtered.json()["items"]] == ["Charlie"]


def test_export_csv(client: tuple[TestClient, Callable[[str], ActorUser]]) -> None:
    test_client, set_actor = client
    _create(test_client, {"f_name": 'Dana "D"', "f_status": "opt_closed", "f_gone": "orphan"})

    response = test_client.post("/api/crm/customers/export", json={})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert f"customers_{date.today().isoformat()}.csv" in response.headers["content-disposition"]
    assert response.content.startswith(b"\xef\xbb\xbf")

    text = response.content.decode("utf-8-sig")
    rows = list(csv.reader(io.StringIO(text)))
    assert rows[0] == ["Name", "Email", "Phone", "Status", "Source"]
    assert rows[1] == ['Dana "D"', "", "", "Closed Won", ""]

    set_actor("staff_a")
    denied = test_client.post("/api/crm/customers/export", json={})
    assert denied.status_code == 403
    assert denied.json()["code"] == "crm_customers_export_failed"
