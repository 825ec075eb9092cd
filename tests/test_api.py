import copy

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import smart_input
from auth import UserService
from config import get_settings
from database import Base
from main import app, get_db
from permissions import seed_permissions
from schemas import UserIn
from services import seed_currencies


def _client():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        seed_permissions(session)
        seed_currencies(session, "USD")
        users = UserService(session)
        for email, role in (
            ("root@example.com", "Super Admin"),
            ("owner@example.com", "User"),
            ("guest@example.com", "Viewer"),
        ):
            users.create(UserIn(name=role, email=email, password="password123", roles=[role]))

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _auth(client: TestClient, email: str) -> dict[str, str]:
    response = client.post("/v1/auth/token", json={"email": email, "password": "password123"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_login_and_me():
    client = _client()
    try:
        assert client.get("/v1/me").status_code == 401
        bad = client.post(
            "/v1/auth/token", json={"email": "root@example.com", "password": "wrong"}
        )
        assert bad.status_code == 401

        response = client.get("/v1/me", headers=_auth(client, "owner@example.com"))
        assert response.status_code == 200
        assert response.json()["email"] == "owner@example.com"

        garbage = client.get("/v1/me", headers={"Authorization": "Bearer nope"})
        assert garbage.status_code == 401
    finally:
        app.dependency_overrides.clear()


def test_policies_and_error_mapping():
    client = _client()
    try:
        account = {"name": "Wallet", "account_type": "cash", "currency_code": "USD"}
        guest = _auth(client, "guest@example.com")
        assert client.post("/v1/finance/accounts", json=account, headers=guest).status_code == 403

        owner = _auth(client, "owner@example.com")
        created = client.post("/v1/finance/accounts", json=account, headers=owner)
        assert created.status_code == 201

        missing = client.get("/v1/finance/transactions/999", headers=owner)
        assert missing.status_code == 404
        assert missing.json()["detail"] == "Transaction not found"

        duplicate = client.post(
            "/v1/finance/categories",
            json={"name": "Food", "type": "expense"},
            headers=owner,
        )
        assert duplicate.status_code == 201
        again = client.post(
            "/v1/finance/categories",
            json={"name": "Food", "type": "expense"},
            headers=owner,
        )
        assert again.status_code == 400
    finally:
        app.dependency_overrides.clear()


def test_disabled_module_answers_not_found():
    client = _client()
    try:
        root = _auth(client, "root@example.com")
        assert client.get("/v1/blog/posts", headers=root).status_code == 200

        toggled = client.post("/v1/settings/modules/Blog/toggle", headers=root)
        assert toggled.json() == {"name": "Blog", "enabled": False}
        assert client.get("/v1/blog/posts", headers=root).status_code == 404

        core = client.post("/v1/settings/modules/Permission/toggle", headers=root)
        assert core.status_code == 400
        owner = _auth(client, "owner@example.com")
        assert client.post("/v1/settings/modules/Blog/toggle", headers=owner).status_code == 403
    finally:
        app.dependency_overrides.clear()


def test_csv_import_upload():
    client = _client()
    try:
        owner = _auth(client, "owner@example.com")
        account = client.post(
            "/v1/finance/accounts",
            json={
                "name": "Checking",
                "account_type": "bank",
                "currency_code": "USD",
                "initial_balance": 50_000,
            },
            headers=owner,
        ).json()
        content = (
            "Date,Type,Amount,Category,Description\n"
            "2024-05-01,expense,12.50,Groceries,Market\n"
            "2024-05-02,income,100,Salary,Payday\n"
        )

        response = client.post(
            "/v1/finance/transactions/import",
            data={"account_id": str(account["id"])},
            files={"file": ("import.csv", content.encode("utf-8"), "text/csv")},
            headers=owner,
        )

        assert response.status_code == 200
        assert response.json()["imported"] == 2
        listing = client.get(
            "/v1/finance/transactions",
            params={"period": "custom", "start": "2024-05-01", "end": "2024-05-31"},
            headers=owner,
        )
        assert listing.json()["total"] == 2

        latin = client.post(
            "/v1/finance/transactions/import",
            data={"account_id": str(account["id"])},
            files={"file": ("import.csv", "Café".encode("latin-1"), "text/csv")},
            headers=owner,
        )
        assert latin.status_code == 400
    finally:
        app.dependency_overrides.clear()


def test_finance_dashboard_and_plans():
    client = _client()
    try:
        owner = _auth(client, "owner@example.com")
        client.post(
            "/v1/finance/accounts",
            json={
                "name": "Checking",
                "account_type": "bank",
                "currency_code": "USD",
                "initial_balance": 25_000,
            },
            headers=owner,
        )

        dashboard = client.get("/v1/finance/dashboard", headers=owner)
        assert dashboard.status_code == 200
        assert dashboard.json()["summary"]["total_assets"] == 25_000
        assert dashboard.json()["recent_transactions"] == []

        plan = {
            "name": "Next two years",
            "start_year": 2025,
            "end_year": 2026,
            "currency_code": "USD",
            "periods": [
                {
                    "year": 2025,
                    "items": [
                        {"name": "Salary", "type": "income", "planned_amount": 400_000},
                        {
                            "name": "Holiday",
                            "type": "expense",
                            "planned_amount": 150_000,
                            "recurrence": "one_time",
                        },
                    ],
                }
            ],
        }
        created = client.post("/v1/finance/plans", json=plan, headers=owner)
        assert created.status_code == 201
        body = created.json()
        assert body["total_planned_income"] == 4_800_000
        assert body["planned_net"] == 4_650_000
        assert body["periods"][0]["items"][0]["yearly_amount"] == 4_800_000

        plan["periods"][0]["year"] = 2030
        assert client.post("/v1/finance/plans", json=plan, headers=owner).status_code == 422

        compare = client.get(f"/v1/finance/plans/{body['id']}/compare", headers=owner)
        assert compare.json()[0]["expense_variance_percent"] == -100.0
        recalculated = client.post(f"/v1/finance/plans/{body['id']}/recalculate", headers=owner)
        assert recalculated.json() == {"changes": []}

        root = _auth(client, "root@example.com")
        assert client.get(f"/v1/finance/plans/{body['id']}", headers=root).status_code == 404
        deleted = client.delete(f"/v1/finance/plans/{body['id']}", headers=owner)
        assert deleted.status_code == 204
        assert client.get("/v1/finance/plans", headers=owner).json() == []
    finally:
        app.dependency_overrides.clear()


def test_smart_input_text_and_store(monkeypatch):
    settings = copy.copy(get_settings())
    settings.ai_api_keys = {}
    monkeypatch.setattr(smart_input, "get_settings", lambda: settings)
    client = _client()
    try:
        owner = _auth(client, "owner@example.com")
        account = client.post(
            "/v1/finance/accounts",
            json={
                "name": "Wallet",
                "account_type": "cash",
                "currency_code": "USD",
                "initial_balance": 10_000,
            },
            headers=owner,
        ).json()

        parsed = client.post("/v1/finance/smart-input/text", json={"text": "45"}, headers=owner)
        assert parsed.status_code == 200
        assert parsed.json()["suggested_account"]["id"] == account["id"]

        unconfigured = client.post(
            "/v1/finance/smart-input/text", json={"text": "cafe 45k"}, headers=owner
        )
        assert unconfigured.status_code == 422
        assert "not configured" in unconfigured.json()["detail"]

        stored = client.post(
            "/v1/finance/smart-input/transactions",
            json={
                "account_id": account["id"],
                "transaction_type": "expense",
                "amount": 4_500,
                "transaction_date": "2024-05-01",
                "history_id": parsed.json()["history_id"],
            },
            headers=owner,
        )
        assert stored.status_code == 201
        history = client.get("/v1/finance/smart-input/history", headers=owner).json()
        assert history[0]["transaction_saved"] is True
        assert history[0]["transaction_id"] == stored.json()["id"]

        bad_language = client.post(
            "/v1/finance/smart-input/voice",
            data={"language": "fr"},
            files={"audio": ("note.webm", b"\x1aE", "audio/webm")},
            headers=owner,
        )
        assert bad_language.status_code == 422
    finally:
        app.dependency_overrides.clear()


def test_every_module_router_is_mounted():
    paths = {route.path for route in app.routes}

    for path in (
        "/v1/roles",
        "/v1/settings/modules",
        "/v1/finance/plans",
        "/v1/invoices",
        "/v1/notifications",
        "/v1/blog/posts",
        "/v1/ecommerce/products",
    ):
        assert path in paths
