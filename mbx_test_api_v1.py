"""
Marbles Exchange (MBX) - API Tests
Version: 1.0.0
"""

import threading
import time

import pytest
from fastapi.testclient import TestClient

from mbx_config_v1 import MarblesConfig
from mbx_enforcement_v1 import PaymentVerificationFailed
from mbx_main_api import AppState, app, get_app_state
from mbx_state_v1 import InMemoryLedger

class MockPaymentVerifier:
    """Mock payment verifier with a fixed answer."""

    def __init__(self, paid: bool = True, error: Exception = None):
        self.paid = paid
        self.error = error

    def verify_payment(self, offer, payer_account_id, transaction_id):
        if self.error is not None:
            raise self.error
        return self.paid

@pytest.fixture
def verifier():
    return MockPaymentVerifier()

@pytest.fixture
def client(verifier):
    state = AppState(config=MarblesConfig(), ledger=InMemoryLedger(), payment_verifier=verifier)
    app.dependency_overrides[get_app_state] = lambda: state
    yield TestClient(app)
    app.dependency_overrides.clear()

def invoke(client, function, *args):
    return client.post("/api/v1/invoke", json={"function": function, "args": list(args)})

def seed(client):
    assert invoke(client, "init_owner", "o1", "bob", "Acme", "GSELLER01").status_code == 200
    assert invoke(client, "init_owner", "o2", "alice", "Globex").status_code == 200
    assert invoke(client, "init_marble", "m1", "blue", "10", "o1", "Acme").status_code == 200
    assert invoke(client, "make_offer", "m1", "o2", "Globex", "150", "offer1").status_code == 200

# ============================================
# INVOKE ENDPOINT
# ============================================

class TestInvoke:
    """POST /api/v1/invoke maps failure kinds to HTTP statuses."""

    def test_success(self, client):
        response = invoke(client, "init_owner", "o1", "bob", "Acme")

        assert response.status_code == 200
        assert response.json() == {"status": 200, "message": "", "payload": None, "error_kind": None}

    def test_read_returns_payload(self, client):
        invoke(client, "write", "greeting", "hello")

        response = invoke(client, "read", "greeting")

        assert response.status_code == 200
        assert response.json()["payload"] == "hello"

    @pytest.mark.parametrize("function,args,code,kind", [
        ("init_owner", ["o1", "", "Acme"], 400, "validation_error"),
        ("no_such_function", [], 400, "validation_error"),
        ("set_owner", ["m9", "o2", "Acme"], 404, "not_found"),
        ("set_owner", ["m1", "o2", "Globex"], 403, "authorization_mismatch"),
        ("init_owner", ["o1", "bob", "Acme"], 409, "already_exists")
    ])
    def test_failure_status(self, client, function, args, code, kind):
        seed(client)

        response = invoke(client, function, *args)

        assert response.status_code == code
        body = response.json()
        assert body["status"] == 500
        assert body["error_kind"] == kind
        assert body["message"]

    def test_payment_settles(self, client):
        seed(client)

        assert invoke(client, "payment_complete_against_offer", "offer1", "txid123").status_code == 200
        assert client.get("/api/v1/marbles/m1").json()["owner"]["id"] == "o2"

    def test_payment_unmet(self, client, verifier):
        seed(client)
        verifier.paid = False

        response = invoke(client, "payment_complete_against_offer", "offer1", "txid123")

        assert response.status_code == 422
        assert response.json()["error_kind"] == "business_rule_unmet"

    def test_payment_network_failure(self, client, verifier):
        seed(client)
        verifier.error = PaymentVerificationFailed("timeout")

        response = invoke(client, "payment_complete_against_offer", "offer1", "txid123")

        assert response.status_code == 502
        assert response.json()["error_kind"] == "verification_failure"

    def test_request_body_validated(self, client):
        response = client.post("/api/v1/invoke", json={"args": ["o1"]})
        assert response.status_code == 422

# ============================================
# READ-ONLY VIEWS
# ============================================

class TestViews:
    """GET views of stored entities."""

    def test_marble(self, client):
        seed(client)

        body = client.get("/api/v1/marbles/m1").json()

        assert body["docType"] == "marble"
        assert body["owner"] == {"id": "o1", "username": "bob", "company": "Acme"}

    def test_owner(self, client):
        seed(client)

        body = client.get("/api/v1/owners/o1").json()

        assert body["accountId"] == "GSELLER01"
        assert body["enabled"] is True

    def test_offer(self, client):
        seed(client)

        body = client.get("/api/v1/offers/offer1").json()

        assert body["status"] == "PROPOSED"
        assert body["offerPrice"] == 150

    @pytest.mark.parametrize("path", ["/api/v1/marbles/m9", "/api/v1/owners/o9", "/api/v1/offers/x9"])
    def test_missing(self, client, path):
        assert client.get(path).status_code == 404

# ============================================
# CONCURRENT REQUESTS
# ============================================

class SlowLedger(InMemoryLedger):
    """Widens the gap between a read and the write that depends on it."""

    def get_state(self, key):
        time.sleep(0.05)
        return super().get_state(key)

class TestConcurrency:
    """Requests served from the threadpool see each other's writes."""

    def test_same_owner_registered_once(self):
        state = AppState(config=MarblesConfig(), ledger=SlowLedger(), payment_verifier=MockPaymentVerifier())
        app.dependency_overrides[get_app_state] = lambda: state
        statuses = {}

        def register(username):
            statuses[username] = invoke(TestClient(app), "init_owner", "o1", username, "Acme").status_code

        try:
            threads = [threading.Thread(target=register, args=(name,)) for name in ("bob", "eve")]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            stored = TestClient(app).get("/api/v1/owners/o1").json()
        finally:
            app.dependency_overrides.clear()

        assert sorted(statuses.values()) == [200, 409]
        winner = next(name for name, code in statuses.items() if code == 200)
        assert stored["username"] == winner
        assert state.decision_ledger.health_score() == 1.0

# ============================================
# OBSERVABILITY
# ============================================

class TestObservability:
    """Health and metrics endpoints."""

    def test_health(self, client):
        seed(client)

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["health_score"] == 1.0
        assert body["ledger_integrity"] is True
        assert body["ledger_keys"] == 4
        assert body["total_checks"] > 0

    def test_rejected_requests_keep_health(self, client):
        seed(client)
        for _ in range(5):
            assert invoke(client, "init_owner", "o1", "bob", "Acme").status_code == 409
            assert invoke(client, "set_owner", "m1", "o2", "Globex").status_code == 403

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["health_score"] == 1.0

    def test_metrics(self, client):
        seed(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "mbx_operations_total" in response.text
