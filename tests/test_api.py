from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pos_ledger.db import init_db
from pos_ledger.ledger import today
from pos_ledger.main import app, get_db

RESERVE = "Sisa Modal"


def _make_client(migrate: bool = True) -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    if migrate:
        init_db(engine, RESERVE)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _headers(client: TestClient, username: str = "owner", role: str = "admin") -> dict:
    register_resp = client.post(
        "/register", json={"username": username, "password": "s3cret", "role": role}
    )
    assert register_resp.status_code == 201
    login_resp = client.post("/login", json={"username": username, "password": "s3cret"})
    assert login_resp.status_code == 200
    return {"Authorization": f"Bearer {login_resp.json()['data']['token']}"}


def _create_account(client: TestClient, headers: dict, name: str, balance: str) -> int:
    resp = client.post("/accounts", json={"name": name, "balance": balance}, headers=headers)
    assert resp.status_code == 201
    return resp.json()["data"]["id"]


def _create_product(client: TestClient, headers: dict, name: str = "Teh Botol", stock: int = 10) -> int:
    resp = client.post(
        "/products",
        json={"name": name, "stock": stock, "price": "8", "costPrice": "5"},
        headers=headers,
    )
    assert resp.status_code == 201
    return resp.json()["data"]["id"]


def _sell(client: TestClient, headers: dict, quantity: int, account: str = "Kas", **extra):
    body = {
        "type": "sale",
        "productName": "Teh Botol",
        "quantity": quantity,
        "costPrice": "5",
        "sellingPrice": "8",
        "accountName": account,
    }
    body.update(extra)
    return client.post("/transactions", json=body, headers=headers)


def _balances(client: TestClient, headers: dict) -> dict:
    resp = client.get("/accounts", headers=headers)
    return {account["name"]: account["balance"] for account in resp.json()["data"]}


def _stock(client: TestClient, headers: dict, name: str = "Teh Botol") -> int:
    resp = client.get("/products", params={"search": name}, headers=headers)
    return resp.json()["data"][0]["stock"]


def _total_capital(client: TestClient, headers: dict) -> str:
    return client.get("/capital/total", headers=headers).json()["data"]["totalCapital"]


def test_sale_and_reversal_round_trip() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")
    _create_product(client, headers)

    sale_resp = _sell(client, headers, 3)
    assert sale_resp.status_code == 201
    sale = sale_resp.json()["data"]["transactions"][0]
    assert sale["total"] == "24.00"
    assert sale["profitPerUnit"] == "3.00"
    assert sale["paymentMethod"] == "Cash"
    assert _stock(client, headers) == 7
    assert _balances(client, headers)["Kas"] == "85.00"
    assert _total_capital(client, headers) == "124.00"

    delete_resp = client.delete(f"/transactions/{sale['id']}", headers=headers)
    assert delete_resp.status_code == 200
    assert _stock(client, headers) == 10
    assert _balances(client, headers)["Kas"] == "100.00"
    assert _total_capital(client, headers) == "100.00"
    assert client.get("/transactions", headers=headers).json()["data"] == []


def test_sale_rejected_for_insufficient_stock_leaves_state_unchanged() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")
    _create_product(client, headers)

    resp = _sell(client, headers, 11)
    assert resp.status_code == 400
    assert "Insufficient stock" in resp.json()["error"]
    assert _stock(client, headers) == 10
    assert _balances(client, headers)["Kas"] == "100.00"
    assert _total_capital(client, headers) == "100.00"


def test_sale_rejected_for_insufficient_funds_leaves_state_unchanged() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "10")
    _create_product(client, headers)

    resp = _sell(client, headers, 3)
    assert resp.status_code == 400
    assert "Insufficient funds" in resp.json()["error"]
    assert _stock(client, headers) == 10
    assert _balances(client, headers)["Kas"] == "10.00"


def test_sale_of_unknown_product_is_not_found() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")

    resp = _sell(client, headers, 1)
    assert resp.status_code == 404
    assert "Teh Botol" in resp.json()["error"]


def test_transfer_sale_credits_destination_and_debits_reserve() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Bank", "0")
    _create_product(client, headers)
    assert client.post("/capital", json={"amount": "100", "type": "add"}, headers=headers).status_code == 201

    resp = _sell(client, headers, 3, account="Bank", paymentMethod="Transfer")
    assert resp.status_code == 201
    balances = _balances(client, headers)
    assert balances["Bank"] == "24.00"
    assert balances[RESERVE] == "85.00"

    txn_id = resp.json()["data"]["transactions"][0]["id"]
    assert client.delete(f"/transactions/{txn_id}", headers=headers).status_code == 200
    balances = _balances(client, headers)
    assert balances["Bank"] == "0.00"
    assert balances[RESERVE] == "100.00"
    assert _total_capital(client, headers) == "100.00"


def test_multi_item_sale_is_all_or_nothing() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")
    _create_product(client, headers, "Teh Botol", 10)
    _create_product(client, headers, "Roti", 1)

    resp = client.post(
        "/transactions",
        json={
            "accountName": "Kas",
            "items": [
                {"productName": "Teh Botol", "quantity": 2, "costPrice": "5", "sellingPrice": "8"},
                {"productName": "Roti", "quantity": 2, "costPrice": "5", "sellingPrice": "8"},
            ],
        },
        headers=headers,
    )
    assert resp.status_code == 400
    assert _stock(client, headers, "Teh Botol") == 10
    assert _stock(client, headers, "Roti") == 1
    assert _balances(client, headers)["Kas"] == "100.00"


def test_update_sale_adjusts_stock_balance_and_capital_by_the_difference() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")
    _create_product(client, headers)
    txn_id = _sell(client, headers, 3).json()["data"]["transactions"][0]["id"]

    resp = client.put(
        f"/transactions/{txn_id}",
        json={"quantity": 5, "costPrice": "5", "sellingPrice": "8"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["total"] == "40.00"
    assert _stock(client, headers) == 5
    assert _balances(client, headers)["Kas"] == "75.00"
    assert _total_capital(client, headers) == "140.00"

    too_many = client.put(f"/transactions/{txn_id}", json={"quantity": 20}, headers=headers)
    assert too_many.status_code == 400
    assert _stock(client, headers) == 5


def test_withdrawal_debits_account_and_records_history() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")

    resp = client.post(
        "/transactions",
        json={"type": "withdrawal", "accountName": "Kas", "amount": "40", "description": "Prive"},
        headers=headers,
    )
    assert resp.status_code == 201
    txn = resp.json()["data"]["transactions"][0]
    assert txn["type"] == "withdrawal"
    assert txn["quantity"] == 0
    assert txn["total"] == "40.00"
    assert _balances(client, headers)["Kas"] == "60.00"
    assert _total_capital(client, headers) == "60.00"

    overdraw = client.put(
        "/accounts/deduct", json={"accountName": "Kas", "amount": "100"}, headers=headers
    )
    assert overdraw.status_code == 400
    assert _balances(client, headers)["Kas"] == "60.00"


def test_unknown_transaction_type_is_rejected() -> None:
    client = _make_client()
    headers = _headers(client)
    resp = client.post("/transactions", json={"type": "refund"}, headers=headers)
    assert resp.status_code == 400
    assert "type" in resp.json()["error"]


def test_expense_update_reapplies_instead_of_stacking() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "200")

    create_resp = client.post(
        "/expenses", json={"description": "Listrik", "amount": "50", "accountName": "Kas"}, headers=headers
    )
    assert create_resp.status_code == 201
    expense_id = create_resp.json()["data"]["id"]
    assert _balances(client, headers)["Kas"] == "150.00"

    update_resp = client.put(
        f"/expenses/{expense_id}",
        json={"description": "Listrik Juni", "amount": "80"},
        headers=headers,
    )
    assert update_resp.status_code == 200
    assert update_resp.json()["data"]["amount"] == "80.00"
    assert _balances(client, headers)["Kas"] == "120.00"
    assert _total_capital(client, headers) == "120.00"

    assert client.delete(f"/expenses/{expense_id}", headers=headers).status_code == 200
    assert _balances(client, headers)["Kas"] == "200.00"
    assert _total_capital(client, headers) == "200.00"
    assert client.get("/expenses", headers=headers).json()["data"] == []


def test_capital_total_is_ledger_sum() -> None:
    client = _make_client()
    headers = _headers(client)
    assert client.post("/capital", json={"amount": "100", "type": "add"}, headers=headers).status_code == 201
    assert client.post("/capital", json={"amount": "30", "type": "subtract"}, headers=headers).status_code == 201
    assert _total_capital(client, headers) == "70.00"
    assert _balances(client, headers)[RESERVE] == "70.00"

    bad_type = client.post("/capital", json={"amount": "10", "type": "transfer"}, headers=headers)
    assert bad_type.status_code == 400
    overdraw = client.post("/capital", json={"amount": "500", "type": "subtract"}, headers=headers)
    assert overdraw.status_code == 400
    assert _total_capital(client, headers) == "70.00"


def test_purchase_debits_account_and_restocks_at_latest_cost() -> None:
    client = _make_client()
    headers = _headers(client)
    account_id = _create_account(client, headers, "Kas", "100")
    product_id = _create_product(client, headers)

    resp = client.post(
        "/purchases",
        json={"productId": product_id, "accountId": account_id, "quantity": 4, "purchasePrice": "6"},
        headers=headers,
    )
    assert resp.status_code == 201
    purchase = resp.json()["data"]
    assert purchase["productName"] == "Teh Botol"
    assert purchase["total"] == "24.00"
    assert _balances(client, headers)["Kas"] == "76.00"
    product = client.get("/products", headers=headers).json()["data"][0]
    assert product["stock"] == 14
    assert product["costPrice"] == "6.00"

    short = client.post(
        "/purchases",
        json={"productId": product_id, "accountId": account_id, "quantity": 100, "purchasePrice": "6"},
        headers=headers,
    )
    assert short.status_code == 400
    assert "Insufficient funds" in short.json()["error"]
    assert len(client.get("/purchases", headers=headers).json()["data"]) == 1

    assert client.delete(f"/purchases/{purchase['id']}", headers=headers).status_code == 200
    assert _balances(client, headers)["Kas"] == "100.00"
    assert _stock(client, headers) == 10


def test_delete_guards_for_products_and_accounts() -> None:
    client = _make_client()
    headers = _headers(client)
    account_id = _create_account(client, headers, "Kas", "100")
    product_id = _create_product(client, headers)
    spare_id = _create_product(client, headers, "Roti", 5)
    _sell(client, headers, 1)

    product_resp = client.delete(f"/products/{product_id}", headers=headers)
    assert product_resp.status_code == 400
    assert "transactions" in product_resp.json()["error"]
    account_resp = client.delete(f"/accounts/{account_id}", headers=headers)
    assert account_resp.status_code == 400

    reserve_id = next(
        account["id"] for account in client.get("/accounts", headers=headers).json()["data"]
        if account["name"] == RESERVE
    )
    assert client.delete(f"/accounts/{reserve_id}", headers=headers).status_code == 400
    assert client.delete(f"/products/{spare_id}", headers=headers).status_code == 200
    assert client.delete(f"/products/{spare_id}", headers=headers).status_code == 404


def test_product_search_and_stock_update() -> None:
    client = _make_client()
    headers = _headers(client)
    product_id = _create_product(client, headers, "Teh Botol")
    _create_product(client, headers, "Roti Tawar")

    names = [p["name"] for p in client.get("/products", params={"search": "roti"}, headers=headers).json()["data"]]
    assert names == ["Roti Tawar"]

    resp = client.put(f"/products/{product_id}", json={"stock": 25}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["stock"] == 25
    assert client.put(f"/products/{product_id}", json={"stock": -1}, headers=headers).status_code == 400
    assert client.put("/products/999", json={"stock": 1}, headers=headers).status_code == 404

    duplicate = client.post(
        "/products", json={"name": "Roti Tawar", "stock": 1, "price": "1", "costPrice": "1"}, headers=headers
    )
    assert duplicate.status_code == 400


def test_account_update_records_balance_correction_as_capital() -> None:
    client = _make_client()
    headers = _headers(client)
    account_id = _create_account(client, headers, "Kas", "100")

    resp = client.put(f"/accounts/{account_id}", json={"name": "Kas Toko", "balance": "60"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"] == {"id": account_id, "name": "Kas Toko", "balance": "60.00"}
    assert _total_capital(client, headers) == "60.00"
    assert _balances(client, headers) == {RESERVE: "0.00", "Kas Toko": "60.00"}


def test_transactions_filtered_by_inclusive_date_range() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")
    _create_product(client, headers)
    first = _sell(client, headers, 1).json()["data"]["transactions"][0]["id"]
    second = _sell(client, headers, 1).json()["data"]["transactions"][0]["id"]

    day = today().isoformat()
    listed = client.get("/transactions", params={"startDate": day, "endDate": day}, headers=headers)
    assert [txn["id"] for txn in listed.json()["data"]] == [second, first]

    past = client.get(
        "/transactions", params={"startDate": "2000-01-01", "endDate": "2000-12-31"}, headers=headers
    )
    assert past.json()["data"] == []


def test_idempotency_key_replays_first_response() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")
    _create_product(client, headers)

    keyed = {**headers, "Idempotency-Key": "sale-001"}
    first = _sell(client, keyed, 2)
    second = _sell(client, keyed, 2)
    assert first.status_code == 201
    assert second.status_code == 201
    assert second.json()["data"] == first.json()["data"]
    assert second.json()["meta"]["warnings"] == ["idempotent replay"]
    assert _stock(client, headers) == 8
    assert len(client.get("/transactions", headers=headers).json()["data"]) == 1


def test_validation_errors_use_error_body() -> None:
    client = _make_client()
    headers = _headers(client)
    resp = client.post("/expenses", json={"description": "Listrik", "amount": "0"}, headers=headers)
    assert resp.status_code == 400
    assert "amount" in resp.json()["error"]


def test_routes_require_credentials_and_role() -> None:
    client = _make_client()
    assert client.get("/products").status_code == 401
    assert client.get("/products", headers={"Authorization": "Bearer nope"}).status_code == 401

    admin = _headers(client, "owner", "admin")
    kasir = _headers(client, "siti", "kasir")
    _create_account(client, admin, "Kas", "100")
    _create_product(client, admin)

    forbidden = client.post(
        "/products", json={"name": "Roti", "stock": 1, "price": "1", "costPrice": "1"}, headers=kasir
    )
    assert forbidden.status_code == 403
    assert client.delete("/transactions/1", headers=kasir).status_code == 403
    assert _sell(client, kasir, 1).status_code == 201
    assert client.get("/products", headers=kasir).status_code == 200


def test_register_and_login_failures() -> None:
    client = _make_client()
    _headers(client, "owner", "admin")
    duplicate = client.post("/register", json={"username": "owner", "password": "x", "role": "admin"})
    assert duplicate.status_code == 400
    bad_role = client.post("/register", json={"username": "budi", "password": "x", "role": "manager"})
    assert bad_role.status_code == 400
    wrong_password = client.post("/login", json={"username": "owner", "password": "wrong"})
    assert wrong_password.status_code == 401
    assert "error" in wrong_password.json()


def test_amounts_finer_than_a_cent_are_rejected() -> None:
    client = _make_client()
    headers = _headers(client)
    _create_account(client, headers, "Kas", "100")
    _create_product(client, headers)

    resp = _sell(client, headers, 3, costPrice="0.333", sellingPrice="0.335")
    assert resp.status_code == 400
    assert "decimal places" in resp.json()["error"]
    assert _stock(client, headers) == 10
    assert _balances(client, headers)["Kas"] == "100.00"
    assert client.get("/transactions", headers=headers).json()["data"] == []

    expense = client.post("/expenses", json={"description": "Parkir", "amount": "2.005"}, headers=headers)
    assert expense.status_code == 400
    assert _total_capital(client, headers) == "100.00"


def test_storage_failure_is_reported_as_500() -> None:
    client = _make_client(migrate=False)
    resp = client.post("/register", json={"username": "owner", "password": "s3cret", "role": "admin"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Storage failure."}
