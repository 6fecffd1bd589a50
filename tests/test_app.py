from pathlib import Path
import io
from datetime import datetime, timedelta, timezone

import pytest

from budget_tracker import create_app
from budget_tracker.store import get_import_session, stage_import_session


FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def register(client, username="user1", password="password"):
    return client.post("/register", data={"username": username, "password": password})


def login(client, username="user1", password="password"):
    return client.post("/login", data={"username": username, "password": password})


@pytest.fixture()
def logged_in(client):
    register(client)
    login(client)
    return client


def create_checking_account(client, name="Checking"):
    response = client.post("/accounts", data={"name": name, "type": "checking"})
    assert response.status_code == 201
    return response.get_json()["id"]


def upload_statement(client, content, filename, date_format="MM/DD/YYYY"):
    return client.post(
        "/import/statement",
        data={"statement_file": (io.BytesIO(content), filename), "date_format": date_format},
        content_type="multipart/form-data",
    )


def upload_fixture(client, name):
    return upload_statement(client, (FIXTURES / name).read_bytes(), name)


def test_register_login_logout(client):
    response = register(client)
    assert response.status_code == 201

    with client.application.app_context():
        db = client.application.get_db()
        user = db.execute("SELECT password_hash FROM users WHERE username = ?", ("user1",)).fetchone()
    assert user is not None
    assert user["password_hash"] != "password"

    assert register(client).status_code == 409
    assert login(client, password="wrong").status_code == 401
    assert login(client).status_code == 200
    assert client.get("/accounts").status_code == 200

    client.post("/logout")
    assert client.get("/accounts").status_code == 401


def test_register_seeds_default_categories(logged_in):
    categories = logged_in.get("/categories").get_json()["categories"]
    pairs = {(item["group"], item["name"]) for item in categories}

    assert ("Fixed Costs", "Groceries") in pairs
    assert ("Guilt-Free Spending", "Dining Out") in pairs
    assert ("Misc", "Untracked") in pairs


def test_create_category_rejects_duplicates(logged_in):
    response = logged_in.post("/categories", data={"group": "Hobbies", "name": "Climbing"})
    assert response.status_code == 201
    assert response.get_json()["group"] == "Hobbies"

    assert logged_in.post("/categories", data={"group": "Hobbies", "name": "Climbing"}).status_code == 409
    assert logged_in.post("/categories", data={"group": "", "name": "Climbing"}).status_code == 400


def test_create_account_validates_type(logged_in):
    assert logged_in.post("/accounts", data={"name": "Wallet", "type": "piggy"}).status_code == 400
    assert logged_in.post("/accounts", data={"name": ""}).status_code == 400

    create_checking_account(logged_in)

    accounts = logged_in.get("/accounts").get_json()["accounts"]
    assert [account["name"] for account in accounts] == ["Checking"]


def test_manual_transaction_accepts_zero_amount(logged_in):
    account_id = create_checking_account(logged_in)

    response = logged_in.post(
        "/transactions",
        data={"account_id": account_id, "date": "2024-01-02", "amount": "0", "description": "Adjustment"},
    )

    assert response.status_code == 201
    assert response.get_json()["amount"] == 0.0
    bad_date = logged_in.post("/transactions", data={"account_id": account_id, "date": "01/02/2024", "amount": "1"})
    assert bad_date.status_code == 400


def test_qif_preview_lists_candidates_with_suggestions(logged_in):
    response = upload_fixture(logged_in, "checking.qif")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["file_kind"] == "qif"
    assert payload["total"] == 4
    assert payload["date_formats"] == ["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD"]
    first = payload["transactions"][0]
    assert first["description"] == "Coffee Shop Downtown - Latte"
    assert first["suggested_category"] == "Dining Out"
    assert first["suggested_source"] == "keyword"

    again = logged_in.get(f"/import/statement/{payload['import_id']}").get_json()
    assert again["transactions"] == payload["transactions"]


def test_ofx_preview(logged_in):
    payload = upload_fixture(logged_in, "checking.ofx").get_json()

    assert payload["file_kind"] == "ofx"
    assert [row["description"] for row in payload["transactions"]] == [
        "COFFEE SHOP - DOWNTOWN",
        "LANDLORD LLC",
        "PAYROLL DEPOSIT",
    ]


def test_date_format_change_reparses_staged_file(logged_in):
    payload = upload_statement(logged_in, b"D03/04/2024\nT-1.00\nPAmbiguous\n^\n", "ambiguous.qif").get_json()
    assert payload["transactions"][0]["date"] == "2024-03-04"

    response = logged_in.post(
        f"/import/statement/{payload['import_id']}/date-format",
        data={"date_format": "DD/MM/YYYY"},
    )

    assert response.status_code == 200
    assert response.get_json()["transactions"][0]["date"] == "2024-04-03"
    assert logged_in.get(f"/import/statement/{payload['import_id']}").get_json()["date_format"] == "DD/MM/YYYY"

    invalid = logged_in.post(f"/import/statement/{payload['import_id']}/date-format", data={"date_format": "DD.MM.YY"})
    assert invalid.status_code == 400


def test_confirm_imports_then_dedupes_on_reimport(logged_in):
    account_id = create_checking_account(logged_in)
    import_id = upload_fixture(logged_in, "checking.qif").get_json()["import_id"]

    response = logged_in.post(f"/import/statement/{import_id}/confirm", data={"account_id": account_id})

    assert response.status_code == 200
    summary = response.get_json()
    assert summary["imported"] == 4
    assert summary["duplicates"] == 0
    assert summary["skipped"] == 0
    assert summary["total"] == 4
    assert logged_in.get(f"/import/statement/{import_id}").status_code == 404

    transactions = logged_in.get(f"/transactions?account_id={account_id}").get_json()["transactions"]
    by_description = {row["description"]: row for row in transactions}
    assert by_description["ACME PAYROLL"]["category"] == "Salary"
    assert by_description["ACME PAYROLL"]["check_number"] == "1001"
    assert by_description["Missing payee is fine"]["category"] == "Untracked"

    import_id = upload_fixture(logged_in, "checking.qif").get_json()["import_id"]
    summary = logged_in.post(f"/import/statement/{import_id}/confirm", data={"account_id": account_id}).get_json()
    assert summary["imported"] == 0
    assert summary["duplicates"] == 4
    assert len(logged_in.get("/transactions").get_json()["transactions"]) == 4


def test_confirm_requires_specific_account(logged_in):
    import_id = upload_fixture(logged_in, "checking.qif").get_json()["import_id"]

    assert logged_in.post(f"/import/statement/{import_id}/confirm", data={"account_id": "all"}).status_code == 400
    assert logged_in.post(f"/import/statement/{import_id}/confirm", data={}).status_code == 400
    assert logged_in.post(f"/import/statement/{import_id}/confirm", data={"account_id": "999"}).status_code == 404
    assert logged_in.get(f"/import/statement/{import_id}").status_code == 200
    assert logged_in.get("/transactions").get_json()["transactions"] == []


def test_cancel_discards_staged_import(logged_in):
    import_id = upload_fixture(logged_in, "checking.qif").get_json()["import_id"]

    response = logged_in.post(f"/import/statement/{import_id}/cancel")

    assert response.get_json() == {"import_id": import_id, "cancelled": True}
    assert logged_in.get(f"/import/statement/{import_id}").status_code == 404
    assert logged_in.post(f"/import/statement/{import_id}/cancel").status_code == 404


def test_unknown_import_is_reported_as_expired(logged_in):
    response = logged_in.get("/import/statement/missing")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Preview expired. Please re-upload the file."


def test_expired_sessions_are_cleaned_up_on_next_upload(logged_in, app):
    with app.app_context():
        db = app.get_db()
        stage_import_session(db, "stale", 1, "old.qif", "qif", "D01/01/2024\nT-1\nPOld\n^\n", "MM/DD/YYYY")
        stage_import_session(db, "recent", 1, "new.qif", "qif", "D01/01/2024\nT-1\nPNew\n^\n", "MM/DD/YYYY")
        old = (datetime.now(timezone.utc) - timedelta(hours=48)).isoformat()
        db.execute("UPDATE import_sessions SET created_at = ? WHERE import_id = ?", (old, "stale"))
        db.commit()

    upload_fixture(logged_in, "checking.qif")

    with app.app_context():
        assert get_import_session(app.get_db(), "stale", 1) is None
        assert get_import_session(app.get_db(), "recent", 1) is not None


def test_rejects_unsupported_file_extension(logged_in):
    response = upload_statement(logged_in, b"date,amount\n2024-01-01,1\n", "export.csv")

    assert response.status_code == 400
    assert "qif" in response.get_json()["error"].lower()


def test_rejects_ofx_without_transactions(logged_in):
    response = upload_statement(logged_in, b"OFXHEADER:100\n<OFX><BANKTRANLIST></BANKTRANLIST></OFX>", "empty.ofx")

    assert response.status_code == 400


def test_upload_without_file(logged_in):
    assert logged_in.post("/import/statement", data={}, content_type="multipart/form-data").status_code == 400


def test_import_requires_login(client):
    response = upload_statement(client, b"", "x.qif")

    assert response.status_code == 401


def test_db_health_endpoint(client):
    response = client.get("/health/db")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["ok"] is True
    assert payload["missing_tables"] == []


def category_ids(client):
    return {item["name"]: item["id"] for item in client.get("/categories").get_json()["categories"]}


def add_transaction(client, account_id, date, amount, category_id=None, description="Sample"):
    data = {"account_id": account_id, "date": date, "amount": amount, "description": description}
    if category_id is not None:
        data["category_id"] = category_id
    response = client.post("/transactions", data=data)
    assert response.status_code == 201


def test_dashboard_summarizes_month_without_transfers(logged_in):
    account_id = create_checking_account(logged_in)
    transfers_id = logged_in.post("/categories", data={"group": "Misc", "name": "Transfers"}).get_json()["id"]
    ids = category_ids(logged_in)

    add_transaction(logged_in, account_id, "2024-03-01", "3000", ids["Salary"])
    add_transaction(logged_in, account_id, "2024-03-05", "-40", ids["Dining Out"])
    add_transaction(logged_in, account_id, "2024-03-10", "-500", ids["Emergency Fund"])
    add_transaction(logged_in, account_id, "2024-03-11", "-10")
    add_transaction(logged_in, account_id, "2024-03-12", "-200", transfers_id)
    add_transaction(logged_in, account_id, "2024-02-20", "-100", ids["Dining Out"])
    add_transaction(logged_in, account_id, "2024-04-01", "-999", ids["Dining Out"])

    response = logged_in.get("/dashboard?month=2024-03")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["income"] == 3000.0
    assert payload["expenses"] == 550.0
    assert payload["savings"] == 500.0
    assert payload["income_by_category"] == {"Salary": 3000.0}
    assert payload["expenses_by_group"] == {"Guilt-Free Spending": 40.0, "Savings": 500.0, "Misc": 10.0}
    assert payload["expense_breakdown"]["Misc"] == {"Untracked": 10.0}
    assert [item["month"] for item in payload["trend"]] == [
        "2023-10",
        "2023-11",
        "2023-12",
        "2024-01",
        "2024-02",
        "2024-03",
    ]
    assert payload["trend"][-2] == {"month": "2024-02", "income": 0.0, "expenses": 100.0}
    assert payload["trend"][-1] == {"month": "2024-03", "income": 3000.0, "expenses": 550.0}


def test_dashboard_rejects_bad_month(logged_in):
    assert logged_in.get("/dashboard?month=2024-13").status_code == 400
    assert logged_in.get("/dashboard?month=March").status_code == 400
    assert logged_in.get("/dashboard").status_code == 200
