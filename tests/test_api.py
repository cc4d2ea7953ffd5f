import pytest
from fastapi.testclient import TestClient

from ltcpay_api import create_app
from ltcpay_node import CONFIG, build_engine


@pytest.fixture
def engine(chain, main_address):
    config = dict(CONFIG, WIF_KEY="11" * 32, MAIN_ADDRESS=main_address, DB_URL="sqlite://")
    engine = build_engine(config)
    engine.service.chain = chain
    yield engine
    engine.store.close()


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def test_create_payment_from_decimal_amount(client):
    response = client.post("/payments", json={"amount": "0.5"})

    assert response.status_code == 200
    body = response.json()
    assert body["address"].startswith("ltc1q")
    assert body["amount_sats"] == 50_000_000
    assert body["amount"] == "0.50000000"
    assert body["expires_at"] == 0
    assert body["id"]


def test_create_payment_from_sats(client):
    response = client.post("/payments", json={"amount_sats": 1234})

    assert response.status_code == 200
    assert response.json()["amount_sats"] == 1234


@pytest.mark.parametrize("payload", [
    {},
    {"amount": "0"},
    {"amount": "-1"},
    {"amount": "0.000000001"},
    {"amount_sats": -5},
    {"amount_sats": 2 ** 62},
    {"amount": "84000000.00000001"},
])
def test_invalid_amounts_are_rejected(client, payload):
    response = client.post("/payments", json=payload)

    assert response.status_code == 400


def test_unknown_payment_is_404(client):
    assert client.get("/payments/does-not-exist").status_code == 404


def test_payment_view_reports_chain_state(client, chain):
    created = client.post("/payments", json={"amount": "0.5"}).json()
    chain.fund(created["address"], 30_000_000, 999)
    chain.fund(created["address"], 20_000_000, 0)

    response = client.get(f"/payments/{created['id']}")

    assert response.status_code == 200
    view = response.json()
    assert view["status"] == "pending"
    assert view["requested_amount"] == 50_000_000
    assert view["received_amount"] == 50_000_000
    assert view["received"] == "0.50000000"
    assert view["confirmations"] == 2
    assert view["confirmations_needed"] == 2


def test_chain_outage_is_502(client, chain):
    created = client.post("/payments", json={"amount_sats": 1000}).json()
    chain.unavailable.add("*")

    assert client.get(f"/payments/{created['id']}").status_code == 502


def test_cors_allows_any_origin(client):
    response = client.get("/payments/x", headers={"Origin": "https://shop.example"})

    assert response.headers["access-control-allow-origin"] == "*"
