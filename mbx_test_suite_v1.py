"""
Marbles Exchange (MBX) - Test Suite
Version: 1.0.0

Coverage for the marble chaincode:
- Unit tests (sanitation, invariants, state accessor, config)
- Operation tests (every entry point, success and failure kinds)
- Failure tests (rollback correctness, ledger failures)
- End-to-end flows (owner -> marble -> offer -> settlement)
"""

import json

import pytest

from mbx_config_v1 import MarblesConfig
from mbx_enforcement_v1 import (
    CompanyAuthorized,
    ValidOfferTransitions,
    OwnerIdAvailable,
    InvariantEnforcer,
    DecisionLedger,
    ArgumentValidationError,
    EntityNotFound,
    PaymentVerificationFailed,
    ErrorKind,
    SystemCompromised,
    sanitize_arguments,
    check_argument_count,
    parse_int
)
from mbx_state_v1 import (
    InMemoryLedger,
    LedgerError,
    StateAccessor,
    Owner,
    OwnerRelation,
    Marble,
    Offer,
    OfferStatus,
    encode_record
)
from mbx_marble_service_v1 import MarbleService
from mbx_metrics import metrics_registry

# ============================================
# MOCK SERVICES
# ============================================

class MockPaymentVerifier:
    """Mock payment verifier with a fixed answer."""

    def __init__(self, paid: bool = True, error: Exception = None):
        self.paid = paid
        self.error = error
        self.calls = []

    def verify_payment(self, offer, payer_account_id, transaction_id):
        self.calls.append((offer.id, payer_account_id, transaction_id))
        if self.error is not None:
            raise self.error
        return self.paid

class RecordingLedger(InMemoryLedger):
    """Counts every access to the store."""

    def __init__(self):
        super().__init__()
        self.accesses = 0

    def get_state(self, key):
        self.accesses += 1
        return super().get_state(key)

    def put_state(self, key, value):
        self.accesses += 1
        super().put_state(key, value)

    def del_state(self, key):
        self.accesses += 1
        super().del_state(key)

class FailingLedger(InMemoryLedger):
    """Rejects writes to chosen keys."""

    def __init__(self, failing_keys):
        super().__init__()
        self.failing_keys = set(failing_keys)

    def put_state(self, key, value):
        if key in self.failing_keys:
            raise LedgerError(f"write rejected for {key}")
        super().put_state(key, value)

class UnreadableLedger(InMemoryLedger):
    """Fails every read."""

    def get_state(self, key):
        raise LedgerError("store offline")

class CorruptingLedger(InMemoryLedger):
    """Stores damaged bytes for the first write to one key."""

    def __init__(self, corrupt_key, fail_deletes=False):
        super().__init__()
        self.corrupt_key = corrupt_key
        self.corrupted = False
        self.fail_deletes = fail_deletes

    def put_state(self, key, value):
        if key == self.corrupt_key and not self.corrupted:
            self.corrupted = True
            value = value + b"#"
        super().put_state(key, value)

    def del_state(self, key):
        if self.fail_deletes:
            raise LedgerError("delete rejected")
        super().del_state(key)

def make_service(ledger=None, verifier=None):
    ledger = ledger if ledger is not None else InMemoryLedger()
    verifier = verifier or MockPaymentVerifier()
    return MarbleService(ledger, verifier), ledger

def seed_market(service):
    """Seller o1 (Acme) owns m1; buyer o2 (Globex)."""
    assert service.init_owner(["o1", "bob", "Acme", "GSELLER01"]).ok
    assert service.init_owner(["o2", "alice", "Globex", "GBUYER02"]).ok
    assert service.init_marble(["m1", "blue", "10", "o1", "Acme"]).ok

def stored(ledger, key):
    return json.loads(ledger.state[key])

# ============================================
# INPUT SANITATION TESTS
# ============================================

class TestInputSanitation:
    """Argument checks that run before any ledger access."""

    def test_valid_arguments_pass(self):
        sanitize_arguments(["m1", "blue", "x" * 32])

    def test_empty_argument_names_position(self):
        with pytest.raises(ArgumentValidationError, match="Argument 1 must be a non-empty string"):
            sanitize_arguments(["m1", "", "10"])

    def test_long_argument_names_position(self):
        with pytest.raises(ArgumentValidationError, match="Argument 2 must be <= 32 characters"):
            sanitize_arguments(["m1", "blue", "x" * 33])

    def test_configurable_limit(self):
        sanitize_arguments(["G" * 56], max_length=64)

        with pytest.raises(ArgumentValidationError, match="must be <= 8 characters"):
            sanitize_arguments(["G" * 9], max_length=8)

    def test_argument_count(self):
        check_argument_count(["a", "b"], 2)
        check_argument_count(["a", "b", "c", "d"], (3, 4))

        with pytest.raises(ArgumentValidationError, match="Incorrect number of arguments. Expecting 3 or 4"):
            check_argument_count(["a", "b"], (3, 4))

    @pytest.mark.parametrize("value,expected", [("10", 10), ("+7", 7), ("-3", -3), ("007", 7)])
    def test_parse_int_valid(self, value, expected):
        assert parse_int(value, 2) == expected

    @pytest.mark.parametrize("value", ["ten", "1.5", " 1", "1e3", "+", "0x10"])
    def test_parse_int_invalid(self, value):
        with pytest.raises(ArgumentValidationError, match="Argument 2 must be a numeric string"):
            parse_int(value, 2)

    def test_parse_int_non_negative(self):
        assert parse_int("0", 2, non_negative=True) == 0

        with pytest.raises(ArgumentValidationError, match="must be a non-negative number"):
            parse_int("-1", 2, non_negative=True)

# ============================================
# INVARIANT UNIT TESTS
# ============================================

class TestCompanyAuthorized:
    """Test INV-401: caller-asserted company must match."""

    def test_pre_check_matching_company(self):
        inv = CompanyAuthorized("transfers")
        assert inv.pre_check(recorded_company="Acme", authed_by_company="Acme") == True

    def test_pre_check_other_company(self):
        inv = CompanyAuthorized("transfers")
        assert inv.pre_check(recorded_company="Acme", authed_by_company="Globex") == False

    def test_pre_check_is_case_sensitive(self):
        inv = CompanyAuthorized("transfers")
        assert inv.pre_check(recorded_company="Acme", authed_by_company="acme") == False

    def test_violation_message(self):
        inv = CompanyAuthorized("deletion")
        message = inv.describe_violation(recorded_company="Acme", authed_by_company="Globex")
        assert message == "The company 'Globex' cannot authorize deletion for 'Acme'."

class TestValidOfferTransitions:
    """Test INV-101: offers move PROPOSED -> ACCEPTED only."""

    @pytest.mark.parametrize("current,new", [("PROPOSED", "ACCEPTED"), ("ACCEPTED", "ACCEPTED")])
    def test_pre_check_allowed(self, current, new):
        assert ValidOfferTransitions().pre_check(current_status=current, new_status=new) == True

    @pytest.mark.parametrize("current,new", [("ACCEPTED", "PROPOSED"), ("PROPOSED", "PROPOSED"), ("SETTLED", "ACCEPTED")])
    def test_pre_check_rejected(self, current, new):
        assert ValidOfferTransitions().pre_check(current_status=current, new_status=new) == False

class TestOwnerIdAvailable:
    """Test INV-001: owner ids register once."""

    def test_pre_check_new_id(self):
        state = StateAccessor(InMemoryLedger())
        assert OwnerIdAvailable().pre_check(owner_id="o1", state=state) == True

    def test_pre_check_taken_id(self):
        state = StateAccessor(InMemoryLedger())
        state.put_owner(Owner(id="o1", username="bob", company="Acme"))
        assert OwnerIdAvailable().pre_check(owner_id="o1", state=state) == False

    def test_rollback_restores_snapshot(self):
        ledger = InMemoryLedger({"o1": b"previous"})
        state = StateAccessor(ledger)
        state.put_owner(Owner(id="o1", username="bob", company="Acme"))

        OwnerIdAvailable().rollback_action({'state': state, 'snapshot': {"o1": b"previous"}})

        assert ledger.state["o1"] == b"previous"

# ============================================
# DECISION LEDGER TESTS
# ============================================

class TestDecisionLedger:
    """Signed audit trail of enforcement decisions."""

    def test_operations_record_signed_decisions(self):
        service, _ = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        entries = service.decision_ledger.entries
        assert len(entries) == 4  # two invariants, pre and post
        assert {e.check_type for e in entries} == {"PRE", "POST"}
        assert all(e.operation == "init_owner" for e in entries)
        assert service.decision_ledger.verify_chain_integrity()

    def test_tampering_detected(self):
        service, _ = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        service.decision_ledger.entries[0].result = False

        assert not service.decision_ledger.verify_chain_integrity()

    def test_rejects_unsigned_decision(self):
        ledger = DecisionLedger(b"secret-a")
        enforcer = InvariantEnforcer("write", [CompanyAuthorized("writes")], ledger, secret=b"secret-b")
        state = StateAccessor(InMemoryLedger())

        with pytest.raises(SystemCompromised):
            enforcer.enforce_action(
                lambda: {},
                recorded_company="Acme",
                authed_by_company="Acme",
                state=state,
                snapshot={}
            )

    def test_caller_errors_keep_health(self):
        """Rejected pre-checks are recorded but do not lower health."""
        service, _ = make_service()
        assert service.decision_ledger.health_score() == 1.0

        service.init_owner(["o1", "bob", "Acme"])
        service.init_owner(["o1", "bob", "Acme"])
        service.disable_owner(["o1", "Globex"])

        assert service.decision_ledger.health_score() == 1.0
        assert len(service.decision_ledger.failures()) == 2

    def test_post_check_failure_lowers_health(self):
        service, _ = make_service(CorruptingLedger("o2"))
        service.init_owner(["o1", "bob", "Acme"])
        service.init_owner(["o2", "alice", "Globex"])

        # o2's first post-check fails and rolls back before the second runs
        assert service.decision_ledger.post_checks == 3
        assert service.decision_ledger.post_check_failures == 1
        assert service.decision_ledger.health_score() == pytest.approx(2 / 3)

    def test_retention_is_bounded(self):
        ledger = DecisionLedger(max_entries=3)
        service = MarbleService(InMemoryLedger(), MockPaymentVerifier(), decision_ledger=ledger)

        service.init_owner(["o1", "bob", "Acme"])
        service.init_owner(["o2", "alice", "Globex"])

        assert len(ledger.entries) == 3
        assert ledger.total_recorded == 8
        assert ledger.post_checks == 4
        assert ledger.verify_chain_integrity()

# ============================================
# STATE ACCESSOR TESTS
# ============================================

class TestStateAccessor:
    """Typed reads with explicit absence."""

    def test_marble_wire_format(self):
        marble = Marble(
            id="m1", color="blue", size=10,
            owner=OwnerRelation(id="o1", username="bob", company="Acme")
        )
        data = json.loads(encode_record(marble))

        assert data == {
            'docType': 'marble',
            'id': 'm1',
            'color': 'blue',
            'size': 10,
            'owner': {'id': 'o1', 'username': 'bob', 'company': 'Acme'},
            'isForSale': False,
            'minPrice': 0
        }

    def test_lookup_missing_key(self):
        state = StateAccessor(InMemoryLedger())
        assert state.lookup_marble("m1") is None
        assert state.lookup_owner("o1") is None
        assert state.lookup_offer("offer1") is None

    def test_lookup_undecodable_bytes(self):
        state = StateAccessor(InMemoryLedger({"m1": b"not json", "o1": b"[1, 2]"}))
        assert state.lookup_marble("m1") is None
        assert state.lookup_owner("o1") is None

    def test_marble_id_must_match_key(self):
        state = StateAccessor(InMemoryLedger({"m1": b'{"id": "m2", "color": "red"}'}))
        assert state.lookup_marble("m1") is None

    def test_owner_needs_username(self):
        state = StateAccessor(InMemoryLedger({"o1": b'{"id": "o1", "username": "", "company": "Acme"}'}))
        assert state.lookup_owner("o1") is None

    def test_wrongly_typed_field_is_absent(self):
        state = StateAccessor(InMemoryLedger({"m1": b'{"id": "m1", "size": "ten"}'}))
        assert state.lookup_marble("m1") is None

    def test_unknown_offer_status_is_absent(self):
        state = StateAccessor(InMemoryLedger({"x1": b'{"id": "x1", "status": "SETTLED"}'}))
        assert state.lookup_offer("x1") is None

    def test_read_failure_is_absence(self):
        state = StateAccessor(UnreadableLedger())

        assert state.lookup_owner("o1") is None
        with pytest.raises(EntityNotFound, match="Owner does not exist - o1"):
            state.fetch_owner("o1")

    def test_fetch_messages(self):
        state = StateAccessor(InMemoryLedger())

        with pytest.raises(EntityNotFound, match="Marble does not exist - m9"):
            state.fetch_marble("m9")
        with pytest.raises(EntityNotFound, match="This offer does not exist - x9"):
            state.fetch_offer("x9")

    def test_offer_keeps_snapshots(self):
        state = StateAccessor(InMemoryLedger())
        buyer = Owner(id="o2", username="alice", company="Globex", account_id="GBUYER02")
        marble = Marble(id="m1", color="blue", size=10, owner=OwnerRelation("o1", "bob", "Acme"))
        state.put_offer(Offer(id="offer1", buyer=buyer, marble=marble, offer_price=150))

        offer = state.fetch_offer("offer1")

        assert offer.buyer == buyer
        assert offer.marble == marble
        assert offer.status == OfferStatus.PROPOSED

# ============================================
# CONFIGURATION TESTS
# ============================================

class TestConfig:
    """MBX_* environment overrides."""

    def test_defaults(self):
        config = MarblesConfig()
        assert config.horizon_base_url == "https://horizon-testnet.stellar.org"
        assert config.horizon_timeout_seconds == 10.0
        assert config.max_argument_length == 32

    def test_from_env(self):
        config = MarblesConfig.from_env({
            'MBX_HORIZON_BASE_URL': "https://horizon.example.org/",
            'MBX_HORIZON_TIMEOUT_SECONDS': "2.5",
            'MBX_MAX_ARGUMENT_LENGTH': "64",
            'MBX_LOG_LEVEL': "debug"
        })

        assert config.horizon_base_url == "https://horizon.example.org"
        assert config.horizon_timeout_seconds == 2.5
        assert config.max_argument_length == 64
        assert config.log_level == "DEBUG"

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            MarblesConfig(horizon_timeout_seconds=0)

    def test_to_dict_hides_secret(self):
        assert 'decision_secret' not in MarblesConfig(decision_secret="hunter2").to_dict()

    def test_decision_ledger_size(self):
        config = MarblesConfig.from_env({'MBX_DECISION_LEDGER_SIZE': "50"})
        assert config.decision_ledger_size == 50

        service = MarbleService(InMemoryLedger(), MockPaymentVerifier(), config=config)
        assert service.decision_ledger.entries.maxlen == 50

        with pytest.raises(ValueError):
            MarblesConfig(decision_ledger_size=0)

# ============================================
# OPERATION TESTS
# ============================================

MUTATING_CALLS = [
    ("init_owner", ["o1", "bob", "Acme"]),
    ("init_marble", ["m1", "blue", "10", "o1", "Acme"]),
    ("set_owner", ["m1", "o2", "Acme"]),
    ("mark_for_sale", ["m1", "Acme", "100"]),
    ("make_offer", ["m1", "o2", "Acme", "150", "offer1"]),
    ("accept_offer", ["offer1", "Acme"]),
    ("payment_complete_against_offer", ["offer1", "txid123"]),
    ("disable_owner", ["o1", "Acme"]),
    ("delete_marble", ["m1", "Acme"]),
    ("write", ["key", "value"])
]

class TestArgumentValidation:
    """Malformed arguments fail before the ledger is touched."""

    @pytest.mark.parametrize("function,args", MUTATING_CALLS)
    @pytest.mark.parametrize("bad_value", ["", "x" * 33])
    def test_rejected_before_ledger_access(self, function, args, bad_value):
        ledger = RecordingLedger()
        service, _ = make_service(ledger)

        bad_args = list(args)
        bad_args[-1] = bad_value
        response = service.invoke(function, bad_args)

        assert response.status == 500
        assert response.error_kind == ErrorKind.VALIDATION
        assert ledger.accesses == 0

    @pytest.mark.parametrize("function,args", MUTATING_CALLS)
    def test_wrong_argument_count(self, function, args):
        ledger = RecordingLedger()
        service, _ = make_service(ledger)

        response = service.invoke(function, args + ["extra", "extra"])

        assert response.error_kind == ErrorKind.VALIDATION
        assert response.message.startswith("Incorrect number of arguments")
        assert ledger.accesses == 0

    def test_unknown_function(self):
        service, _ = make_service()
        response = service.invoke("transfer_everything", [])

        assert response.error_kind == ErrorKind.VALIDATION
        assert response.message == "Received unknown invoke function name - transfer_everything"

class TestInitOwner:
    """Owner registration."""

    def test_registers_owner(self):
        service, ledger = make_service()
        response = service.init_owner(["o1", "Bob", "Acme", "GSELLER01"])

        assert response.ok
        assert stored(ledger, "o1") == {
            'docType': 'marble_owner',
            'id': 'o1',
            'username': 'bob',
            'company': 'Acme',
            'accountId': 'GSELLER01',
            'enabled': True
        }

    def test_account_id_optional(self):
        service, ledger = make_service()
        assert service.init_owner(["o1", "bob", "Acme"]).ok
        assert stored(ledger, "o1")['accountId'] == ""

    def test_second_registration_rejected(self):
        service, ledger = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        response = service.init_owner(["o1", "mallory", "Globex"])

        assert response.error_kind == ErrorKind.ALREADY_EXISTS
        assert response.message == "This owner already exists - o1"
        assert stored(ledger, "o1")['username'] == "bob"
        assert ledger.keys() == ["o1"]

class TestInitMarble:
    """Marble creation."""

    def test_creates_marble_with_owner_snapshot(self):
        service, ledger = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        response = service.init_marble(["m1", "BLUE", "10", "o1", "Acme"])

        assert response.ok
        marble = stored(ledger, "m1")
        assert marble['color'] == "blue"
        assert marble['size'] == 10
        assert marble['owner'] == {'id': 'o1', 'username': 'bob', 'company': 'Acme'}
        assert marble['isForSale'] is False
        assert marble['minPrice'] == 0

    def test_duplicate_marble(self):
        service, _ = make_service()
        seed_market(service)

        response = service.init_marble(["m1", "red", "3", "o2", "Globex"])

        assert response.error_kind == ErrorKind.ALREADY_EXISTS
        assert response.message == "This marble already exists - m1"

    @pytest.mark.parametrize("marble_id", ["m1", "m2"])
    def test_authorization_checked_first(self, marble_id):
        """Wrong company fails whether or not the marble id is free."""
        service, _ = make_service()
        seed_market(service)

        response = service.init_marble([marble_id, "red", "3", "o1", "Globex"])

        assert response.error_kind == ErrorKind.AUTHORIZATION
        assert response.message == "The company 'Globex' cannot authorize creation for 'Acme'."

    def test_missing_owner(self):
        service, _ = make_service()
        response = service.init_marble(["m1", "blue", "10", "o9", "Acme"])

        assert response.error_kind == ErrorKind.NOT_FOUND
        assert response.message == "Owner does not exist - o9"

    @pytest.mark.parametrize("size", ["ten", "-1", "1.5"])
    def test_bad_size(self, size):
        service, ledger = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        response = service.init_marble(["m1", "blue", size, "o1", "Acme"])

        assert response.error_kind == ErrorKind.VALIDATION
        assert "m1" not in ledger.state

class TestSetOwner:
    """Direct ownership transfer."""

    def test_transfer_rewrites_owner_only(self):
        service, ledger = make_service()
        seed_market(service)
        service.mark_for_sale(["m1", "Acme", "100"])

        response = service.set_owner(["m1", "o2", "Acme"])

        assert response.ok
        marble = service.state.fetch_marble("m1")
        assert marble.owner == OwnerRelation(id="o2", username="alice", company="Globex")
        assert marble.color == "blue"
        assert marble.size == 10
        assert marble.is_for_sale is True
        assert marble.min_price == 100

    def test_wrong_company(self):
        service, ledger = make_service()
        seed_market(service)
        before = dict(ledger.state)

        response = service.set_owner(["m1", "o2", "Globex"])

        assert response.error_kind == ErrorKind.AUTHORIZATION
        assert response.message == "The company 'Globex' cannot authorize transfers for 'Acme'."
        assert ledger.state == before

    def test_missing_new_owner(self):
        service, _ = make_service()
        seed_market(service)

        response = service.set_owner(["m1", "o9", "Acme"])

        assert response.error_kind == ErrorKind.NOT_FOUND

    def test_missing_marble(self):
        service, _ = make_service()
        seed_market(service)

        response = service.set_owner(["m9", "o2", "Acme"])

        assert response.error_kind == ErrorKind.NOT_FOUND
        assert response.message == "Marble does not exist - m9"

class TestMarkForSale:
    """Sale listing."""

    def test_lists_marble(self):
        service, ledger = make_service()
        seed_market(service)

        assert service.mark_for_sale(["m1", "Acme", "100"]).ok

        marble = stored(ledger, "m1")
        assert marble['isForSale'] is True
        assert marble['minPrice'] == 100

    def test_non_numeric_price(self):
        service, _ = make_service()
        seed_market(service)

        response = service.mark_for_sale(["m1", "Acme", "lots"])

        assert response.error_kind == ErrorKind.VALIDATION

    def test_wrong_company(self):
        service, _ = make_service()
        seed_market(service)

        response = service.mark_for_sale(["m1", "Globex", "100"])

        assert response.error_kind == ErrorKind.AUTHORIZATION

class TestOffers:
    """Offer proposal and acceptance."""

    def test_make_offer(self):
        service, ledger = make_service()
        seed_market(service)
        service.mark_for_sale(["m1", "Acme", "100"])

        assert service.make_offer(["m1", "o2", "Acme", "150", "offer1"]).ok

        offer = stored(ledger, "offer1")
        assert offer['docType'] == "marble_offer"
        assert offer['status'] == "PROPOSED"
        assert offer['offerPrice'] == 150
        assert offer['buyer']['id'] == "o2"
        assert offer['marble']['id'] == "m1"
        assert offer['marble']['isForSale'] is True

    def test_make_offer_missing_buyer(self):
        service, _ = make_service()
        seed_market(service)

        response = service.make_offer(["m1", "o9", "Acme", "150", "offer1"])

        assert response.error_kind == ErrorKind.NOT_FOUND

    def test_make_offer_missing_marble(self):
        service, _ = make_service()
        seed_market(service)

        response = service.make_offer(["m9", "o2", "Acme", "150", "offer1"])

        assert response.error_kind == ErrorKind.NOT_FOUND

    def test_make_offer_non_numeric_price(self):
        service, _ = make_service()
        seed_market(service)

        response = service.make_offer(["m1", "o2", "Acme", "cheap", "offer1"])

        assert response.error_kind == ErrorKind.VALIDATION

    def test_accept_offer(self):
        service, _ = make_service()
        seed_market(service)
        service.make_offer(["m1", "o2", "Globex", "150", "offer1"])

        assert service.accept_offer(["offer1", "Acme"]).ok
        assert service.state.fetch_offer("offer1").status == OfferStatus.ACCEPTED

    def test_accept_twice_stays_accepted(self):
        service, _ = make_service()
        seed_market(service)
        service.make_offer(["m1", "o2", "Globex", "150", "offer1"])
        service.accept_offer(["offer1", "Acme"])

        response = service.accept_offer(["offer1", "Acme"])

        assert response.ok
        assert response.message == ""
        assert service.state.fetch_offer("offer1").status == OfferStatus.ACCEPTED

    def test_accept_needs_marble_owner_company(self):
        service, _ = make_service()
        seed_market(service)
        service.make_offer(["m1", "o2", "Globex", "150", "offer1"])

        response = service.accept_offer(["offer1", "Globex"])

        assert response.error_kind == ErrorKind.AUTHORIZATION
        assert service.state.fetch_offer("offer1").status == OfferStatus.PROPOSED

    def test_accept_missing_offer(self):
        service, _ = make_service()

        response = service.accept_offer(["offer9", "Acme"])

        assert response.error_kind == ErrorKind.NOT_FOUND
        assert response.message == "This offer does not exist - offer9"

class TestPaymentComplete:
    """Settlement confirmation against the payment network."""

    def _offer_ready(self, verifier):
        service, ledger = make_service(verifier=verifier)
        seed_market(service)
        service.mark_for_sale(["m1", "Acme", "100"])
        service.make_offer(["m1", "o2", "Acme", "150", "offer1"])
        return service, ledger

    def test_verified_payment_transfers_marble(self):
        verifier = MockPaymentVerifier(paid=True)
        service, _ = self._offer_ready(verifier)

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.ok
        assert verifier.calls == [("offer1", "GSELLER01", "txid123")]
        assert service.state.fetch_marble("m1").owner.id == "o2"
        assert service.state.fetch_offer("offer1").status == OfferStatus.PROPOSED

    def test_unmet_payment_changes_nothing(self):
        service, ledger = self._offer_ready(MockPaymentVerifier(paid=False))
        before = dict(ledger.state)

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.BUSINESS_RULE
        assert response.message == "Payment not done in stellar or mismatch in payment information"
        assert ledger.state == before

    def test_verification_failure(self):
        verifier = MockPaymentVerifier(error=PaymentVerificationFailed("connection refused"))
        service, ledger = self._offer_ready(verifier)
        before = dict(ledger.state)

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.VERIFICATION_FAILURE
        assert "Please try again later" in response.message
        assert ledger.state == before

    def test_missing_offer(self):
        verifier = MockPaymentVerifier()
        service, _ = make_service(verifier=verifier)

        response = service.payment_complete_against_offer(["offer9", "txid123"])

        assert response.error_kind == ErrorKind.NOT_FOUND
        assert verifier.calls == []

    def test_current_owner_missing(self):
        verifier = MockPaymentVerifier()
        service, _ = self._offer_ready(verifier)
        service.write(["o1", "gone"])

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.NOT_FOUND
        assert response.message == "Transfer not done. Current owner not found - o1"
        assert verifier.calls == []

    @pytest.mark.parametrize("new_company", ["Initech", "Acme"])
    def test_marble_changed_hands_after_offer(self, new_company):
        """An offer made against a previous owner cannot settle."""
        verifier = MockPaymentVerifier(paid=True)
        service, ledger = self._offer_ready(verifier)
        service.init_owner(["o3", "carol", new_company, "GCAROL03"])
        assert service.set_owner(["m1", "o3", "Acme"]).ok
        before = dict(ledger.state)

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.BUSINESS_RULE
        assert response.message == "Marble m1 changed hands since offer offer1 was made"
        assert verifier.calls == []
        assert ledger.state == before
        assert service.state.fetch_marble("m1").owner.id == "o3"

    def test_settled_offer_cannot_be_replayed(self):
        verifier = MockPaymentVerifier(paid=True)
        service, _ = self._offer_ready(verifier)
        assert service.payment_complete_against_offer(["offer1", "txid123"]).ok

        service.init_owner(["o4", "dave", "Globex", "GDAVE04"])
        assert service.set_owner(["m1", "o4", "Globex"]).ok

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.BUSINESS_RULE
        assert len(verifier.calls) == 1
        assert service.state.fetch_marble("m1").owner.id == "o4"

    def test_deleted_marble(self):
        verifier = MockPaymentVerifier(paid=True)
        service, _ = self._offer_ready(verifier)
        service.delete_marble(["m1", "Acme"])

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.NOT_FOUND
        assert verifier.calls == []

    def test_transfer_write_failure(self):
        ledger = FailingLedger(failing_keys=[])
        service, _ = make_service(ledger, MockPaymentVerifier(paid=True))
        seed_market(service)
        service.make_offer(["m1", "o2", "Acme", "150", "offer1"])
        ledger.failing_keys.add("m1")

        response = service.payment_complete_against_offer(["offer1", "txid123"])

        assert response.error_kind == ErrorKind.LEDGER_FAILURE
        assert service.state.fetch_marble("m1").owner.id == "o1"

class TestDisableOwner:
    """Owner disabling."""

    def test_disables(self):
        service, ledger = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        assert service.disable_owner(["o1", "Acme"]).ok
        assert stored(ledger, "o1")['enabled'] is False

    def test_wrong_company(self):
        service, ledger = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        response = service.disable_owner(["o1", "Globex"])

        assert response.error_kind == ErrorKind.AUTHORIZATION
        assert stored(ledger, "o1")['enabled'] is True

    def test_missing_owner(self):
        service, _ = make_service()
        assert service.disable_owner(["o9", "Acme"]).error_kind == ErrorKind.NOT_FOUND

class TestDeleteMarble:
    """Marble removal."""

    def test_deletes(self):
        service, ledger = make_service()
        seed_market(service)

        assert service.delete_marble(["m1", "Acme"]).ok
        assert "m1" not in ledger.state
        assert service.read(["m1"]).payload == b""

    def test_wrong_company(self):
        service, ledger = make_service()
        seed_market(service)

        response = service.delete_marble(["m1", "Globex"])

        assert response.error_kind == ErrorKind.AUTHORIZATION
        assert response.message == "The company 'Globex' cannot authorize deletion for 'Acme'."
        assert "m1" in ledger.state

    def test_missing_marble(self):
        service, _ = make_service()
        assert service.delete_marble(["m9", "Acme"]).error_kind == ErrorKind.NOT_FOUND

class TestRawAccess:
    """write and read bypass entity typing."""

    def test_write_then_read(self):
        service, ledger = make_service()

        assert service.write(["greeting", "hello"]).ok
        assert ledger.state["greeting"] == b"hello"
        assert service.read(["greeting"]).payload == b"hello"

    def test_read_entity_returns_stored_json(self):
        service, ledger = make_service()
        service.init_owner(["o1", "bob", "Acme"])

        assert service.read(["o1"]).payload == ledger.state["o1"]

    def test_write_failure(self):
        service, _ = make_service(FailingLedger(failing_keys=["k"]))

        response = service.write(["k", "v"])

        assert response.error_kind == ErrorKind.LEDGER_FAILURE
        assert response.message == "write rejected for k"

    def test_read_failure(self):
        service, _ = make_service(UnreadableLedger())

        assert service.read(["k"]).error_kind == ErrorKind.LEDGER_FAILURE

# ============================================
# ROLLBACK TESTS
# ============================================

class TestRollbackMechanisms:
    """Post-check failures restore the ledger."""

    def test_corrupted_write_rolled_back(self):
        ledger = CorruptingLedger("o1")
        service, _ = make_service(ledger)

        response = service.init_owner(["o1", "bob", "Acme"])

        assert response.error_kind == ErrorKind.INVARIANT
        assert response.message.startswith("Post-check failed")
        assert "o1" not in ledger.state

    def test_corrupted_update_restores_previous_bytes(self):
        ledger = CorruptingLedger("not-yet")
        service, _ = make_service(ledger)
        seed_market(service)
        original = ledger.state["m1"]

        ledger.corrupt_key = "m1"
        response = service.mark_for_sale(["m1", "Acme", "100"])

        assert response.error_kind == ErrorKind.INVARIANT
        assert ledger.state["m1"] == original

    def test_failed_rollback_is_compromise(self):
        ledger = CorruptingLedger("o1", fail_deletes=True)
        service, _ = make_service(ledger)

        with pytest.raises(SystemCompromised):
            service.init_owner(["o1", "bob", "Acme"])

# ============================================
# METRICS TESTS
# ============================================

class TestMetrics:
    """Prometheus counters follow operation outcomes."""

    def _sample(self, name, labels):
        return metrics_registry.get_sample_value(name, labels) or 0

    def test_operation_outcomes_counted(self):
        service, _ = make_service()
        ok_before = self._sample('mbx_operations_total', {'function': 'init_owner', 'outcome': 'success'})
        dup_before = self._sample(
            'mbx_operation_failures_total',
            {'function': 'init_owner', 'error_kind': 'already_exists'}
        )

        service.init_owner(["o1", "bob", "Acme"])
        service.init_owner(["o1", "bob", "Acme"])

        assert self._sample('mbx_operations_total', {'function': 'init_owner', 'outcome': 'success'}) == ok_before + 1
        assert self._sample(
            'mbx_operation_failures_total',
            {'function': 'init_owner', 'error_kind': 'already_exists'}
        ) == dup_before + 1

    def test_settlement_transfer_counted(self):
        before = self._sample('mbx_marble_transfers_total', {'trigger': 'settlement'})
        service, _ = make_service(verifier=MockPaymentVerifier(paid=True))
        seed_market(service)
        service.make_offer(["m1", "o2", "Acme", "150", "offer1"])

        service.payment_complete_against_offer(["offer1", "txid123"])

        assert self._sample('mbx_marble_transfers_total', {'trigger': 'settlement'}) == before + 1

# ============================================
# INTEGRATION TESTS
# ============================================

class TestEndToEndFlows:
    """Complete marble trading flows."""

    def test_create_marble_twice(self):
        service, _ = make_service()

        assert service.init_owner(["o1", "bob", "Acme"]).ok
        assert service.init_marble(["m1", "blue", "10", "o1", "Acme"]).ok

        response = service.init_marble(["m1", "green", "4", "o1", "Acme"])
        assert response.error_kind == ErrorKind.ALREADY_EXISTS

    def test_list_and_offer(self):
        service, ledger = make_service()
        seed_market(service)

        assert service.mark_for_sale(["m1", "Acme", "100"]).ok
        assert service.make_offer(["m1", "o2", "Acme", "150", "offer1"]).ok

        offer = service.state.fetch_offer("offer1")
        assert offer.status == OfferStatus.PROPOSED
        assert offer.offer_price == 150
        assert "offer1" in ledger.state

    def test_full_trade(self):
        verifier = MockPaymentVerifier(paid=True)
        service, _ = make_service(verifier=verifier)
        seed_market(service)

        assert service.mark_for_sale(["m1", "Acme", "100"]).ok
        assert service.make_offer(["m1", "o2", "Acme", "150", "offer1"]).ok
        assert service.accept_offer(["offer1", "Acme"]).ok
        assert service.payment_complete_against_offer(["offer1", "txid123"]).ok

        marble = service.state.fetch_marble("m1")
        assert marble.owner == OwnerRelation(id="o2", username="alice", company="Globex")

        # new owner can now resell under its own company
        assert service.mark_for_sale(["m1", "Globex", "200"]).ok
        assert service.mark_for_sale(["m1", "Acme", "200"]).error_kind == ErrorKind.AUTHORIZATION

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
