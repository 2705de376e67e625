from datetime import date

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from auth import Role, issue_token
from database import Base, get_db
from main import app


def _client() -> TestClient:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db: Session = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _auth(user_id: str = "family-1", role: Role = Role.editor) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id, role)}"}


def test_health():
    client = _client()
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requests_without_token_are_unauthenticated():
    client = _client()
    response = client.get("/obligations")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "unauthenticated"

    response = client.get("/obligations", headers={"Authorization": "Bearer forged"})
    assert response.status_code == 401


def test_calendar_generation_requires_admin():
    client = _client()
    payload = {"start_year": 2025, "end_year": 2025}
    response = client.post("/admin/source-periods/generate", json=payload, headers=_auth())
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "permission-denied"

    response = client.post(
        "/admin/source-periods/generate", json=payload, headers=_auth("ops", Role.admin)
    )
    assert response.status_code == 200
    body = response.json()
    assert body["total_periods"] == 89
    assert body["by_type"]["MONTHLY"] == 12

    response = client.get("/source-periods/2025M03", headers=_auth())
    assert response.status_code == 200
    assert response.json()["start_date"].startswith("2025-03-01T00:00:00")

    response = client.get("/source-periods/2099M01", headers=_auth())
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not-found"


def test_obligation_lifecycle_over_http():
    client = _client()
    client.post(
        "/admin/source-periods/generate",
        json={"start_year": 2025, "end_year": 2026},
        headers=_auth("ops", Role.admin),
    )
    headers = _auth()

    response = client.post(
        "/obligations",
        json={
            "kind": "budget",
            "name": "Groceries",
            "amount_cents": 20000,
            "category_ids": ["groceries"],
            "start_date": "2025-03-01",
        },
        headers=headers,
    )
    assert response.status_code == 201
    budget = response.json()
    assert budget["frequency"] == "MONTHLY"

    response = client.get(
        f"/obligations/{budget['id']}/periods", params={"type": "MONTHLY"}, headers=headers
    )
    assert response.status_code == 200
    months = response.json()
    assert len(months) == 12
    assert months[0]["allocated_amount_cents"] == 20000

    response = client.post(
        "/transactions",
        json={
            "transaction_id": "t1",
            "amount_cents": 8752,
            "date": "2025-03-10",
            "category": "Groceries",
        },
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["transaction"]["splits"][0]["budget_id"] == budget["id"]

    response = client.get(f"/obligations/{budget['id']}", headers=_auth("someone-else"))
    assert response.status_code == 404

    response = client.delete(f"/obligations/{budget['id']}", headers=headers)
    assert response.status_code == 204


def test_validation_errors_use_invalid_argument_code():
    client = _client()
    response = client.post(
        "/obligations",
        json={
            "kind": "budget",
            "name": "Broken",
            "amount_cents": 100,
            "start_date": "2025-03-10",
            "end_date": "2025-03-01",
        },
        headers=_auth(),
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid-argument"


def test_viewer_cannot_write():
    client = _client()
    response = client.post(
        "/obligations",
        json={
            "kind": "budget",
            "name": "Fuel",
            "amount_cents": 100,
            "start_date": str(date(2025, 3, 1)),
        },
        headers=_auth(role=Role.viewer),
    )
    assert response.status_code == 403


def test_materialize_without_calendar_reports_failed_precondition():
    client = _client()
    response = client.post(
        "/obligations",
        json={
            "kind": "budget",
            "name": "Fuel",
            "amount_cents": 100,
            "start_date": "2031-01-01",
        },
        headers=_auth(),
    )
    assert response.status_code == 500
    assert response.json()["detail"]["code"] == "failed-precondition"
