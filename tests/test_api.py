import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base
from errors import ConflictExceeded, StoreUnavailable, Unauthorized
from identity import issue_user_token, resolve_user_token
from schemas import CategorizeResponse


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(user_id: str = "alice") -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_user_token(user_id)}"}


def _onboard(client, user_id: str = "alice") -> dict:
    response = client.post(
        "/api/onboard", json={"email": f"{user_id}@example.com"}, headers=auth(user_id)
    )
    assert response.status_code == 200
    return response.json()


def test_requests_without_a_valid_token_are_rejected(client) -> None:
    assert client.get("/api/wallets").status_code == 401
    response = client.get("/api/wallets", headers={"Authorization": "Bearer forged"})
    assert response.status_code == 401


def test_onboarding_creates_default_wallet(client) -> None:
    profile = _onboard(client)

    wallets = client.get("/api/wallets", headers=auth()).json()

    assert len(wallets) == 1
    assert wallets[0]["name"] == "Cash"
    assert profile["default_wallet_id"] == wallets[0]["id"]
    assert profile["has_gemini_api_key"] is False
    assert len(client.get("/api/categories/tree", headers=auth()).json()) == 8


def test_transaction_lifecycle_over_http(client) -> None:
    wallet_id = _onboard(client)["default_wallet_id"]

    created = client.post(
        "/api/transactions",
        json={"wallet_id": wallet_id, "amount": 200, "date": "2025-03-01", "type": "expense"},
        headers=auth(),
    )
    assert created.status_code == 201
    txn_id = created.json()["id"]

    patched = client.patch(
        f"/api/transactions/{txn_id}", json={"amount": 350, "tags": ["Food"]}, headers=auth()
    )
    assert patched.status_code == 200
    assert patched.json()["tags"] == ["Food"]

    wallet = client.get("/api/wallets", headers=auth()).json()[0]
    assert wallet["balance"] == -350

    assert client.delete(f"/api/transactions/{txn_id}", headers=auth()).status_code == 204
    wallet = client.get("/api/wallets", headers=auth()).json()[0]
    assert wallet["balance"] == 0


def test_error_statuses(client) -> None:
    alice_wallet = _onboard(client, "alice")["default_wallet_id"]
    _onboard(client, "bob")

    payload = {"wallet_id": alice_wallet, "amount": 10, "date": "2025-03-01", "type": "income"}
    assert client.post("/api/transactions", json=payload, headers=auth("bob")).status_code == 403

    payload["wallet_id"] = 9999
    assert client.post("/api/transactions", json=payload, headers=auth()).status_code == 404

    payload["wallet_id"] = alice_wallet
    payload["amount"] = 0
    assert client.post("/api/transactions", json=payload, headers=auth()).status_code == 422

    payload["amount"] = 10
    assert client.post("/api/transactions", json=payload, headers=auth()).status_code == 201
    assert client.delete(f"/api/wallets/{alice_wallet}", headers=auth()).status_code == 400


def test_transfer_endpoints(client) -> None:
    cash_id = _onboard(client)["default_wallet_id"]
    bank = client.post(
        "/api/wallets", json={"name": "Bank", "initial_balance": 1_000}, headers=auth()
    ).json()

    created = client.post(
        "/api/transfers",
        json={"from_wallet_id": bank["id"], "to_wallet_id": cash_id, "amount": 400, "date": "2025-03-02"},
        headers=auth(),
    )
    assert created.status_code == 201
    legs = created.json()
    assert legs["outgoing"]["linked_transaction_id"] == legs["incoming"]["id"]

    same = client.post(
        "/api/transfers",
        json={"from_wallet_id": cash_id, "to_wallet_id": cash_id, "amount": 1, "date": "2025-03-02"},
        headers=auth(),
    )
    assert same.status_code == 400

    updated = client.patch(
        f"/api/transfers/{legs['incoming']['id']}", json={"amount": 100}, headers=auth()
    )
    assert updated.status_code == 200
    assert updated.json()["outgoing"]["wallet_id"] == bank["id"]

    balances = {w["id"]: w["balance"] for w in client.get("/api/wallets", headers=auth()).json()}
    assert balances == {cash_id: 100, bank["id"]: 900}

    removed = client.delete(f"/api/transfers/{legs['outgoing']['id']}", headers=auth())
    assert removed.json() == {"removed": 2}


def test_reorder_and_recalculate_endpoints(client) -> None:
    cash_id = _onboard(client)["default_wallet_id"]
    bank = client.post("/api/wallets", json={"name": "Bank"}, headers=auth()).json()

    response = client.post(
        "/api/wallets/reorder",
        json=[{"id": bank["id"], "order": 1}, {"id": cash_id, "order": 2}],
        headers=auth(),
    )
    assert response.status_code == 204
    assert [w["name"] for w in client.get("/api/wallets", headers=auth()).json()] == ["Bank", "Cash"]

    recalculated = client.post("/api/wallets/recalculate", headers=auth())
    assert recalculated.json() == {"recalculated": 2}


def test_report_endpoints(client) -> None:
    wallet_id = _onboard(client)["default_wallet_id"]
    client.post(
        "/api/transactions",
        json={"wallet_id": wallet_id, "amount": 900, "date": "2025-03-04", "type": "income"},
        headers=auth(),
    )

    summary = client.get(
        "/api/reports/summary",
        params={"period": "custom", "start": "2025-03-01", "end": "2025-03-31"},
        headers=auth(),
    )
    assert summary.status_code == 200
    assert summary.json()["income"] == 900

    bad = client.get("/api/reports/summary", params={"period": "decade"}, headers=auth())
    assert bad.status_code == 400


def test_categorize_endpoint_uses_injected_categorizer(client) -> None:
    wallet_id = _onboard(client)["default_wallet_id"]
    coffee = next(
        c for c in client.get("/api/categories", headers=auth()).json() if c["name"] == "Coffee"
    )
    txn = client.post(
        "/api/transactions",
        json={"wallet_id": wallet_id, "amount": 45, "date": "2025-03-04", "type": "expense", "note": "Latte"},
        headers=auth(),
    ).json()

    class Stub:
        def categorize(self, request):
            return CategorizeResponse.model_validate(
                {"results": [{"id": str(txn["id"]), "categoryId": str(coffee["id"])}]}
            )

    main.app.dependency_overrides[main.get_categorizer] = lambda: Stub()
    response = client.post("/api/categorize", headers=auth())

    assert response.json() == {"assigned": 1}
    stored = client.get(f"/api/transactions/{txn['id']}", headers=auth()).json()
    assert stored["category_id"] == coffee["id"]


def test_unknown_stream_collection_is_not_found(client) -> None:
    assert client.get("/api/stream/budgets", headers=auth()).status_code == 404


def test_http_error_mapping() -> None:
    assert main.http_error(ConflictExceeded("busy")).status_code == 409
    assert main.http_error(StoreUnavailable("down")).status_code == 503


def test_user_tokens_reject_tampering() -> None:
    token = issue_user_token("alice")
    assert resolve_user_token(token) == "alice"
    with pytest.raises(Unauthorized):
        resolve_user_token(token + "x")
    with pytest.raises(Unauthorized):
        resolve_user_token(None)
