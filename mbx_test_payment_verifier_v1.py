"""
Marbles Exchange (MBX) - Payment Verifier Tests
Version: 1.0.0

Horizon is faked with httpx.MockTransport; no network access.
"""

import json

import httpx
import pytest

from mbx_config_v1 import MarblesConfig
from mbx_enforcement_v1 import ErrorKind, PaymentVerificationFailed
from mbx_marble_service_v1 import MarbleService
from mbx_metrics import metrics_registry
from mbx_payment_verifier_v1 import HorizonError, PaymentVerifier
from mbx_state_v1 import InMemoryLedger, Marble, Offer, Owner, OwnerRelation

BASE_URL = "https://horizon.test"
SELLER_ACCOUNT = "GSELLER01"

# ============================================
# MOCK HORIZON
# ============================================

class MockHorizon:
    """Serves one transaction's latest payment and memo."""

    def __init__(self, to=SELLER_ACCOUNT, amount="150.0000000", memo_type="text", memo="offer1"):
        self.payment = {
            "id": "12884905985",
            "type": "payment",
            "from": "GBUYER02",
            "to": to,
            "amount": amount,
            "asset_type": "native",
            "transaction_hash": "txid123"
        }
        self.transaction = {
            "id": "txid123",
            "hash": "txid123",
            "successful": True,
            "memo_type": memo_type,
            "memo": memo
        }
        self.requests = []
        self.payments_body = None
        self.error_status = None
        self.raw_body = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.error_status is not None:
            return httpx.Response(self.error_status, json={
                "type": "https://stellar.org/horizon-errors/not_found",
                "title": "Resource Missing",
                "status": self.error_status,
                "detail": "The resource at the url requested was not found."
            })

        if self.raw_body is not None:
            return httpx.Response(200, content=self.raw_body)

        if request.url.path == "/transactions/txid123/payments":
            body = self.payments_body
            if body is None:
                body = {"_embedded": {"records": [self.payment]}}
            return httpx.Response(200, json=body)

        if request.url.path == "/transactions/txid123":
            return httpx.Response(200, json=self.transaction)

        return httpx.Response(404, json={"title": "Resource Missing", "status": 404})

def make_verifier(horizon) -> PaymentVerifier:
    config = MarblesConfig(horizon_base_url=BASE_URL + "/", horizon_timeout_seconds=2.0)
    client = httpx.Client(transport=httpx.MockTransport(horizon))
    return PaymentVerifier(config, client=client)

def make_offer(offer_id="offer1", price=150) -> Offer:
    return Offer(
        id=offer_id,
        buyer=Owner(id="o2", username="alice", company="Globex", account_id="GBUYER02"),
        marble=Marble(id="m1", color="blue", size=10, owner=OwnerRelation("o1", "bob", "Acme")),
        offer_price=price
    )

# ============================================
# VERIFICATION TESTS
# ============================================

class TestVerifyPayment:
    """Payment must match recipient, amount and memo."""

    def test_matching_payment(self):
        horizon = MockHorizon()
        verifier = make_verifier(horizon)

        assert verifier.verify_payment(make_offer(), SELLER_ACCOUNT, "txid123") == True

    def test_queries_latest_payment_then_transaction(self):
        horizon = MockHorizon()
        make_verifier(horizon).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")

        payments, transaction = horizon.requests
        assert str(payments.url).startswith(BASE_URL + "/transactions/txid123/payments")
        assert payments.url.params["limit"] == "1"
        assert payments.url.params["order"] == "desc"
        assert str(transaction.url) == BASE_URL + "/transactions/txid123"

    def test_whole_number_amount(self):
        horizon = MockHorizon(amount="150")
        assert make_verifier(horizon).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123") == True

    @pytest.mark.parametrize("horizon_kwargs", [
        {"memo": "offer2"},
        {"memo_type": "id"},
        {"amount": "149.0000000"},
        {"to": "GSOMEONEELSE"}
    ])
    def test_mismatch(self, horizon_kwargs):
        verifier = make_verifier(MockHorizon(**horizon_kwargs))
        assert verifier.verify_payment(make_offer(), SELLER_ACCOUNT, "txid123") == False

    def test_owner_without_account_never_matches(self):
        horizon = MockHorizon()
        del horizon.payment["to"]

        assert make_verifier(horizon).verify_payment(make_offer(), "", "txid123") == False

    def test_top_level_record_accepted(self):
        horizon = MockHorizon()
        horizon.payments_body = dict(horizon.payment)

        assert make_verifier(horizon).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123") == True

class TestVerificationFailures:
    """Failures are raised, never reported as False."""

    def test_horizon_error_response(self):
        horizon = MockHorizon()
        horizon.error_status = 404

        with pytest.raises(PaymentVerificationFailed) as excinfo:
            make_verifier(horizon).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")

        cause = excinfo.value.__cause__
        assert isinstance(cause, HorizonError)
        assert cause.status_code == 404
        assert cause.problem.title == "Resource Missing"

    def test_network_error(self):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        verifier = PaymentVerifier(
            MarblesConfig(horizon_base_url=BASE_URL),
            client=httpx.Client(transport=httpx.MockTransport(unreachable))
        )

        with pytest.raises(PaymentVerificationFailed, match="Please try again later"):
            verifier.verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")

    def test_fractional_amount(self):
        verifier = make_verifier(MockHorizon(amount="150.5000000"))

        with pytest.raises(PaymentVerificationFailed, match="Unable to parse amount"):
            verifier.verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")

    def test_no_payment_record(self):
        horizon = MockHorizon()
        horizon.payments_body = {"_embedded": {"records": []}}

        with pytest.raises(PaymentVerificationFailed, match="No payment found"):
            make_verifier(horizon).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")

    def test_malformed_json(self):
        horizon = MockHorizon()
        horizon.raw_body = b"<html>maintenance</html>"

        with pytest.raises(PaymentVerificationFailed):
            make_verifier(horizon).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")

    @pytest.mark.parametrize("amount,expected", [("150", 150), ("150.0000000", 150), ("0.0000000", 0)])
    def test_parse_amount(self, amount, expected):
        assert PaymentVerifier.parse_amount(amount) == expected

    @pytest.mark.parametrize("amount", ["", "abc", "1.25", "NaN", "Infinity"])
    def test_parse_amount_rejected(self, amount):
        with pytest.raises(PaymentVerificationFailed):
            PaymentVerifier.parse_amount(amount)

    def test_outcomes_counted(self):
        def sample(result):
            return metrics_registry.get_sample_value('mbx_payment_verifications_total', {'result': result}) or 0

        confirmed, unmet = sample('confirmed'), sample('unmet')

        make_verifier(MockHorizon()).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")
        make_verifier(MockHorizon(memo="other")).verify_payment(make_offer(), SELLER_ACCOUNT, "txid123")

        assert sample('confirmed') == confirmed + 1
        assert sample('unmet') == unmet + 1

# ============================================
# SETTLEMENT THROUGH THE SERVICE
# ============================================

class TestSettlementAgainstHorizon:
    """payment_complete_against_offer with the real verifier."""

    def _service(self, horizon):
        ledger = InMemoryLedger()
        service = MarbleService(ledger, make_verifier(horizon))

        assert service.init_owner(["o1", "bob", "Acme", SELLER_ACCOUNT]).ok
        assert service.init_owner(["o2", "alice", "Globex", "GBUYER02"]).ok
        assert service.init_marble(["m1", "blue", "10", "o1", "Acme"]).ok
        assert service.mark_for_sale(["m1", "Acme", "100"]).ok
        assert service.make_offer(["m1", "o2", "Acme", "150", "offer1"]).ok
        return service, ledger

    def test_payment_transfers_marble(self):
        service, ledger = self._service(MockHorizon())

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.ok
        assert json.loads(ledger.state["m1"])["owner"] == {"id": "o2", "username": "alice", "company": "Globex"}

    @pytest.mark.parametrize("horizon_kwargs", [{"memo": "offer9"}, {"amount": "15.0000000"}])
    def test_mismatch_leaves_ledger_unchanged(self, horizon_kwargs):
        service, ledger = self._service(MockHorizon(**horizon_kwargs))
        before = dict(ledger.state)

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.BUSINESS_RULE
        assert ledger.state == before

    def test_horizon_down(self):
        horizon = MockHorizon()
        horizon.error_status = 503
        service, ledger = self._service(horizon)
        before = dict(ledger.state)

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.VERIFICATION_FAILURE
        assert response.message == "Unable to verify payment information from stellar. Please try again later"
        assert ledger.state == before

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
