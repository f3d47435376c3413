from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db, render_transactions_html
from models import Account, AccountType, Transaction, TransactionType
from periods import Period


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        with TestingSession() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _login(client: TestClient, name: str = "alice", role: str = "OWNER") -> dict:
    resp = client.post(
        "/api/auth/register",
        json={
            "username": name,
            "email": f"{name}@ledger.io",
            "password": "s3cret!",
            "role": role,
        },
    )
    assert resp.status_code == 201
    resp = client.post("/api/auth/login", json={"username": name, "password": "s3cret!"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    return {"Authorization": f"Bearer {body['access_token']}"}


def _account(client: TestClient, headers: dict, name: str = "Cash", balance: str = "1000") -> int:
    resp = client.post(
        "/api/accounts",
        json={"name": name, "type": "ASSET", "initial_balance": balance},
        headers=headers,
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def test_requests_without_token_are_unauthorized(client: TestClient) -> None:
    resp = client.get("/api/accounts")
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == "Bearer"

    resp = client.get("/api/accounts", headers={"Authorization": "Bearer junk"})
    assert resp.status_code == 401


def test_bad_login_and_duplicate_registration(client: TestClient) -> None:
    _login(client)
    resp = client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
    assert resp.status_code == 401
    resp = client.post(
        "/api/auth/register",
        json={"username": "alice", "email": "other@ledger.io", "password": "s3cret!"},
    )
    assert resp.status_code == 409
    resp = client.post(
        "/api/auth/register",
        json={"username": "bo", "email": "not-an-email", "password": "1"},
    )
    assert resp.status_code == 422


def test_transaction_flow_updates_balance(client: TestClient) -> None:
    headers = _login(client)
    account_id = _account(client, headers)

    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "amount": "200",
            "type": "INCOME",
            "category": "Sales",
            "date": "2024-01-10T09:00:00",
        },
        headers=headers,
    )
    assert resp.status_code == 201
    txn_id = resp.json()["id"]

    resp = client.put(
        f"/api/transactions/{txn_id}",
        json={
            "account_id": account_id,
            "amount": "150",
            "type": "EXPENSE",
            "category": "Rent",
            "date": "2024-01-10T09:00:00",
        },
        headers=headers,
    )
    assert resp.status_code == 200
    account = client.get(f"/api/accounts/{account_id}", headers=headers).json()
    assert Decimal(account["balance"]) == Decimal("850")

    page = client.get(
        "/api/transactions", params={"category": "Rent"}, headers=headers
    ).json()
    assert page["total_items"] == 1
    assert page["current_page"] == 0
    assert page["transactions"][0]["id"] == txn_id

    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "amount": "-5",
            "type": "EXPENSE",
            "category": "Rent",
        },
        headers=headers,
    )
    assert resp.status_code == 422

    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).status_code == 204
    account = client.get(f"/api/accounts/{account_id}", headers=headers).json()
    assert Decimal(account["balance"]) == Decimal("1000")


def test_other_users_resources_are_not_found(client: TestClient) -> None:
    alice = _login(client, "alice")
    bob = _login(client, "bob")
    account_id = _account(client, alice)

    assert client.get(f"/api/accounts/{account_id}", headers=bob).status_code == 404
    assert client.get("/api/accounts", headers=bob).json() == []
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "amount": "10",
            "type": "EXPENSE",
            "category": "Food",
        },
        headers=bob,
    )
    assert resp.status_code == 404


def test_accountant_cannot_delete_accounts(client: TestClient) -> None:
    clerk = _login(client, "clerk", role="ACCOUNTANT")
    account_id = _account(client, clerk)
    assert client.delete(f"/api/accounts/{account_id}", headers=clerk).status_code == 403

    owner = _login(client, "owner")
    owned = _account(client, owner)
    assert client.delete(f"/api/accounts/{owned}", headers=owner).status_code == 204


def test_budget_alerts_endpoint(client: TestClient) -> None:
    headers = _login(client)
    account_id = _account(client, headers)
    resp = client.post(
        "/api/budgets",
        json={"category": "Food", "amount": "100", "period": "YEARLY"},
        headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["alert_level"] == "OK"
    resp = client.post(
        "/api/budgets",
        json={"category": "Food", "amount": "50", "period": "YEARLY"},
        headers=headers,
    )
    assert resp.status_code == 409

    client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "amount": "95",
            "type": "EXPENSE",
            "category": "Food",
        },
        headers=headers,
    )
    alerts = client.get("/api/budgets/alerts", headers=headers).json()
    assert len(alerts) == 1
    assert alerts[0]["alert_level"] == "DANGER"
    assert alerts[0]["percent_used"] == pytest.approx(95.0)
    assert Decimal(alerts[0]["remaining"]) == Decimal("5")


def test_invoice_paid_creates_income(client: TestClient) -> None:
    headers = _login(client)
    account_id = _account(client, headers, balance="0")
    resp = client.post(
        "/api/invoices",
        json={
            "client_name": "Acme Corp",
            "client_email": "billing@acme.io",
            "due_date": "2024-04-30",
            "account_id": account_id,
            "items": [
                {"description": "Consulting", "quantity": "2", "unit_price": "50"}
            ],
        },
        headers=headers,
    )
    assert resp.status_code == 201
    invoice = resp.json()
    assert invoice["status"] == "DRAFT"
    assert invoice["account_name"] == "Cash"
    assert Decimal(invoice["total"]) == Decimal("100")

    resp = client.put(
        f"/api/invoices/{invoice['id']}/status", json={"status": "paid"}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "PAID"
    account = client.get(f"/api/accounts/{account_id}", headers=headers).json()
    assert Decimal(account["balance"]) == Decimal("100")

    assert client.delete(f"/api/invoices/{invoice['id']}", headers=headers).status_code == 400
    assert client.get("/api/invoices/overdue", headers=headers).json() == []


def test_reports_require_dates(client: TestClient) -> None:
    headers = _login(client)
    _account(client, headers)
    assert client.get("/api/reports/profit-and-loss", headers=headers).status_code == 422
    resp = client.get(
        "/api/reports/cash-flow",
        params={"start_date": "2024-02-01T00:00:00", "end_date": "2024-01-01T00:00:00"},
        headers=headers,
    )
    assert resp.status_code == 400

    sheet = client.get("/api/reports/balance-sheet", headers=headers).json()
    assert Decimal(sheet["total_assets"]) == Decimal("1000")
    assert Decimal(sheet["equity"]) == Decimal("1000")


def test_csv_import_and_export(client: TestClient) -> None:
    headers = _login(client)
    account_id = _account(client, headers, balance="0")
    content = (
        "ID,Account,Amount,Type,Category,Date,Description\n"
        ",Cash,20,INCOME,Sales,2024-01-05 10:00:00,\n"
        ",Cash,oops,EXPENSE,Food,2024-01-06 10:00:00,\n"
    )
    resp = client.post(
        "/api/import/transactions",
        data={"account_id": str(account_id)},
        files={"file": ("ledger.csv", content, "text/csv")},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"]["errors"] == ["Line 3: Invalid amount"]

    valid_only = "".join(content.splitlines(True)[:2])
    resp = client.post(
        "/api/import/transactions",
        data={"account_id": str(account_id)},
        files={"file": ("ledger.csv", valid_only, "text/csv")},
        headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["imported"] == 1

    resp = client.post(
        "/api/import/transactions",
        data={"account_id": str(account_id)},
        files={"file": ("notes.txt", "hello", "text/plain")},
        headers=headers,
    )
    assert resp.status_code == 400

    resp = client.get(
        "/api/export/transactions",
        params={"format": "csv", "start_date": "2024-01-01T00:00:00"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert 'filename="transactions.csv"' in resp.headers["content-disposition"]
    lines = resp.text.splitlines()
    assert lines[0] == "ID,Account,Amount,Type,Category,Date,Description"
    assert ",Cash,20.00,INCOME,Sales,2024-01-05 10:00:00," in lines[1]


def test_transactions_report_html_lists_rows() -> None:
    account = Account(name="Cash", type=AccountType.asset, balance=Decimal("0"))
    txn = Transaction(
        account=account,
        amount=Decimal("1234.5"),
        type=TransactionType.income,
        category="Sales",
        date=datetime(2024, 1, 5, 10, 0),
        description="Walk-in",
    )
    html = render_transactions_html(
        [txn], Period(datetime(2024, 1, 1), datetime(2024, 1, 31, 23, 59))
    )
    assert "Walk-in" in html
    assert "1,234.50" in html
    assert "2024-01-01 00:00 to 2024-01-31 23:59" in html
