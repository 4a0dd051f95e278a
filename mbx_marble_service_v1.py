"""
Marbles Exchange (MBX) - Marble Ownership Service
Version: 1.0.0

Entry points of the marble chaincode: owner registration, marble creation
and transfer, sale listing, offer negotiation and settlement confirmation
against the payment network. Every entry point takes an ordered list of
string arguments and answers with a Response.
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from mbx_config_v1 import MarblesConfig
from mbx_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    OwnerIdAvailable,
    MarbleIdAvailable,
    CompanyAuthorized,
    ValidOfferTransitions,
    MarbleOwnershipConsistent,
    LedgerWriteVerified,
    RecordRemoved,
    InvariantViolation,
    EntityNotFound,
    PaymentVerificationFailed,
    PaymentConditionsUnmet,
    ErrorKind,
    sanitize_arguments,
    check_argument_count,
    parse_int,
    logger
)
from mbx_state_v1 import (
    StateAccessor,
    LedgerStub,
    LedgerError,
    Owner,
    OwnerRelation,
    Marble,
    Offer,
    OfferStatus
)
import mbx_metrics

# ============================================
# RESPONSE
# ============================================

STATUS_OK = 200
STATUS_ERROR = 500

@dataclass
class Response:
    """Result of one entry point: success with optional payload, or an error message."""
    status: int
    message: str = ""
    payload: Optional[bytes] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, payload: Optional[bytes] = None) -> "Response":
        return cls(status=STATUS_OK, payload=payload)

    @classmethod
    def error(cls, message: str, kind: ErrorKind) -> "Response":
        return cls(status=STATUS_ERROR, message=message, error_kind=kind)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'message': self.message,
            'payload': self.payload.decode('utf-8', errors='replace') if self.payload is not None else None,
            'error_kind': self.error_kind.value if self.error_kind else None
        }

# ============================================
# MARBLE SERVICE
# ============================================

Handler = Callable[[List[str]], Optional[bytes]]

class MarbleService:
    """Asset and ownership state machine over a key-value ledger."""

    def __init__(
        self,
        ledger: LedgerStub,
        payment_verifier,
        decision_ledger: Optional[DecisionLedger] = None,
        config: Optional[MarblesConfig] = None
    ):
        self.config = config or MarblesConfig()
        self.state = StateAccessor(ledger)
        self.payment_verifier = payment_verifier
        self.decision_ledger = decision_ledger or DecisionLedger(
            self.config.decision_secret_bytes,
            self.config.decision_ledger_size
        )

        self.enforcers: Dict[str, InvariantEnforcer] = {
            name: InvariantEnforcer(name, invariants, self.decision_ledger)
            for name, invariants in {
                "init_owner": [OwnerIdAvailable(), LedgerWriteVerified()],
                "init_marble": [CompanyAuthorized("creation"), MarbleIdAvailable(), LedgerWriteVerified()],
                "set_owner": [CompanyAuthorized("transfers"), MarbleOwnershipConsistent(), LedgerWriteVerified()],
                "mark_for_sale": [CompanyAuthorized("offer_for_sale"), LedgerWriteVerified()],
                "make_offer": [LedgerWriteVerified()],
                "accept_offer": [CompanyAuthorized("acceptance"), ValidOfferTransitions(), LedgerWriteVerified()],
                "disable_owner": [CompanyAuthorized("disabling owners"), LedgerWriteVerified()],
                "delete_marble": [CompanyAuthorized("deletion"), RecordRemoved()],
                "write": [LedgerWriteVerified()]
            }.items()
        }

        # function name -> (accepted argument counts, handler)
        self.handlers: Dict[str, Tuple[Union[int, Sequence[int]], Handler]] = {
            "init_owner": ((3, 4), self._init_owner),
            "init_marble": (5, self._init_marble),
            "set_owner": (3, self._set_owner),
            "mark_for_sale": (3, self._mark_for_sale),
            "make_offer": (5, self._make_offer),
            "accept_offer": (2, self._accept_offer),
            "payment_complete_against_offer": (2, self._payment_complete_against_offer),
            "disable_owner": (2, self._disable_owner),
            "delete_marble": (2, self._delete_marble),
            "write": (2, self._write),
            "read": (1, self._read)
        }

        logger.info(f"[MARBLE_SERVICE] Initialized with {len(self.handlers)} entry points")

    # ----- dispatch -----

    def invoke(self, function: str, args: Sequence[str]) -> Response:
        """Route an invocation to the entry point named by function."""
        if function not in self.handlers:
            message = f"Received unknown invoke function name - {function}"
            logger.warning(f"[MARBLE_SERVICE] {message}")
            mbx_metrics.record_operation("unknown", False, ErrorKind.VALIDATION.value)
            return Response.error(message, ErrorKind.VALIDATION)

        arity, handler = self.handlers[function]
        logger.info(f"[MARBLE_SERVICE] starting {function}")

        try:
            check_argument_count(args, arity)
            sanitize_arguments(args, self.config.max_argument_length)
            payload = handler(list(args))
        except InvariantViolation as e:
            logger.warning(f"[MARBLE_SERVICE] {function} failed ({e.kind.value}): {e}")
            mbx_metrics.record_operation(function, False, e.kind.value)
            return Response.error(str(e), e.kind)
        except LedgerError as e:
            logger.error(f"[MARBLE_SERVICE] {function} ledger failure: {e}")
            mbx_metrics.record_operation(function, False, ErrorKind.LEDGER_FAILURE.value)
            return Response.error(str(e), ErrorKind.LEDGER_FAILURE)

        logger.info(f"[MARBLE_SERVICE] - end {function}")
        mbx_metrics.record_operation(function, True)
        return Response.success(payload)

    def init_owner(self, args: Sequence[str]) -> Response:
        return self.invoke("init_owner", args)

    def init_marble(self, args: Sequence[str]) -> Response:
        return self.invoke("init_marble", args)

    def set_owner(self, args: Sequence[str]) -> Response:
        return self.invoke("set_owner", args)

    def mark_for_sale(self, args: Sequence[str]) -> Response:
        return self.invoke("mark_for_sale", args)

    def make_offer(self, args: Sequence[str]) -> Response:
        return self.invoke("make_offer", args)

    def accept_offer(self, args: Sequence[str]) -> Response:
        return self.invoke("accept_offer", args)

    def payment_complete_against_offer(self, args: Sequence[str]) -> Response:
        return self.invoke("payment_complete_against_offer", args)

    def disable_owner(self, args: Sequence[str]) -> Response:
        return self.invoke("disable_owner", args)

    def delete_marble(self, args: Sequence[str]) -> Response:
        return self.invoke("delete_marble", args)

    def write(self, args: Sequence[str]) -> Response:
        return self.invoke("write", args)

    def read(self, args: Sequence[str]) -> Response:
        return self.invoke("read", args)

    # ----- owners -----

    def _init_owner(self, args: List[str]) -> None:
        """Args: owner id, username, company[, payment account id]."""
        owner = Owner(
            id=args[0],
            username=args[1].lower(),
            company=args[2],
            account_id=args[3] if len(args) > 3 else "",
            enabled=True
        )

        def _register_owner() -> Dict[str, Any]:
            written = self.state.put_owner(owner)
            return {
                'state': self.state,
                'owner_id': owner.id,
                'owner': owner,
                'key': owner.id,
                'written': written
            }

        self.enforcers["init_owner"].enforce_action(
            _register_owner,
            owner_id=owner.id,
            state=self.state,
            snapshot=self.state.snapshot(owner.id)
        )
        logger.info(f"[OWNER] Registered {owner.id} ({owner.username}, {owner.company})")

    def _disable_owner(self, args: List[str]) -> None:
        """Args: owner id, authorizing company."""
        owner_id, authed_by_company = args
        owner = self.state.fetch_owner(owner_id)

        def _disable() -> Dict[str, Any]:
            disabled = replace(owner, enabled=False)
            return {
                'state': self.state,
                'key': owner_id,
                'written': self.state.put_owner(disabled)
            }

        self.enforcers["disable_owner"].enforce_action(
            _disable,
            recorded_company=owner.company,
            authed_by_company=authed_by_company,
            state=self.state,
            snapshot=self.state.snapshot(owner_id)
        )
        logger.info(f"[OWNER] Disabled {owner_id}")

    # ----- marbles -----

    def _init_marble(self, args: List[str]) -> None:
        """Args: marble id, color, size, owner id, authorizing company."""
        marble_id = args[0]
        color = args[1].lower()
        size = parse_int(args[2], 2, non_negative=True)
        owner_id = args[3]
        authed_by_company = args[4]

        owner = self.state.fetch_owner(owner_id)
        marble = Marble(
            id=marble_id,
            color=color,
            size=size,
            owner=OwnerRelation.from_owner(owner)
        )

        def _create_marble() -> Dict[str, Any]:
            return {
                'state': self.state,
                'marble_id': marble_id,
                'key': marble_id,
                'written': self.state.put_marble(marble)
            }

        self.enforcers["init_marble"].enforce_action(
            _create_marble,
            marble_id=marble_id,
            recorded_company=owner.company,
            authed_by_company=authed_by_company,
            state=self.state,
            snapshot=self.state.snapshot(marble_id)
        )
        logger.info(f"[MARBLE] Created {marble_id} ({color}, size {size}) for {owner_id}")

    def _set_owner(self, args: List[str]) -> None:
        """Args: marble id, new owner id, authorizing company."""
        self._transfer(args[0], args[1], args[2], trigger="direct")

    def _transfer(self, marble_id: str, new_owner_id: str, authed_by_company: str, trigger: str):
        """Rewrite the marble's owner snapshot; color, size and sale terms stay."""
        new_owner = self.state.fetch_owner(new_owner_id)
        marble = self.state.fetch_marble(marble_id)

        def _rewrite_owner() -> Dict[str, Any]:
            updated = replace(marble, owner=OwnerRelation.from_owner(new_owner))
            return {
                'state': self.state,
                'marble_id': marble_id,
                'marble_before': marble,
                'new_owner': new_owner,
                'key': marble_id,
                'written': self.state.put_marble(updated)
            }

        self.enforcers["set_owner"].enforce_action(
            _rewrite_owner,
            recorded_company=marble.owner.company,
            authed_by_company=authed_by_company,
            state=self.state,
            snapshot=self.state.snapshot(marble_id)
        )

        mbx_metrics.marble_transfer_counter.labels(trigger=trigger).inc()
        logger.info(f"[TRANSFER] Marble {marble_id}: {marble.owner.id} -> {new_owner.id} ({trigger})")

    def _mark_for_sale(self, args: List[str]) -> None:
        """Args: marble id, authorizing company, minimum price."""
        marble_id, authed_by_company = args[0], args[1]
        min_price = parse_int(args[2], 2)
        marble = self.state.fetch_marble(marble_id)

        def _list_marble() -> Dict[str, Any]:
            listed = replace(marble, is_for_sale=True, min_price=min_price)
            return {
                'state': self.state,
                'key': marble_id,
                'written': self.state.put_marble(listed)
            }

        self.enforcers["mark_for_sale"].enforce_action(
            _list_marble,
            recorded_company=marble.owner.company,
            authed_by_company=authed_by_company,
            state=self.state,
            snapshot=self.state.snapshot(marble_id)
        )
        logger.info(f"[SALE] Marble {marble_id} listed, min price {min_price}")

    def _delete_marble(self, args: List[str]) -> None:
        """Args: marble id, authorizing company."""
        marble_id, authed_by_company = args
        marble = self.state.fetch_marble(marble_id)

        def _remove() -> Dict[str, Any]:
            self.state.delete(marble_id)
            return {'state': self.state, 'key': marble_id}

        self.enforcers["delete_marble"].enforce_action(
            _remove,
            recorded_company=marble.owner.company,
            authed_by_company=authed_by_company,
            state=self.state,
            snapshot=self.state.snapshot(marble_id)
        )

    # ----- offers -----

    def _make_offer(self, args: List[str]) -> None:
        """Args: marble id, buyer id, authorizing company, price, offer id.

        The company is accepted for symmetry with the other entry points but
        not checked; an existing offer id is overwritten.
        """
        marble_id, buyer_id, authed_by_company = args[0], args[1], args[2]
        offer_price = parse_int(args[3], 3)
        offer_id = args[4]

        buyer = self.state.fetch_owner(buyer_id)
        marble = self.state.fetch_marble(marble_id)
        offer = Offer(
            id=offer_id,
            buyer=buyer,
            marble=marble,
            offer_price=offer_price,
            status=OfferStatus.PROPOSED
        )

        def _propose() -> Dict[str, Any]:
            return {
                'state': self.state,
                'key': offer_id,
                'written': self.state.put_offer(offer)
            }

        self.enforcers["make_offer"].enforce_action(
            _propose,
            state=self.state,
            snapshot=self.state.snapshot(offer_id)
        )

        mbx_metrics.offer_status_counter.labels(status=OfferStatus.PROPOSED.value).inc()
        logger.info(f"[OFFER] {offer_id}: {buyer_id} offers {offer_price} for {marble_id} (claimed by '{authed_by_company}')")

    def _accept_offer(self, args: List[str]) -> None:
        """Args: offer id, authorizing company."""
        offer_id, authed_by_company = args
        offer = self.state.fetch_offer(offer_id)
        new_status = OfferStatus.ACCEPTED

        def _accept() -> Dict[str, Any]:
            accepted = replace(offer, status=new_status)
            return {
                'state': self.state,
                'offer_id': offer_id,
                'new_status': new_status.value,
                'key': offer_id,
                'written': self.state.put_offer(accepted)
            }

        self.enforcers["accept_offer"].enforce_action(
            _accept,
            recorded_company=offer.marble.owner.company,
            authed_by_company=authed_by_company,
            current_status=offer.status.value,
            new_status=new_status.value,
            state=self.state,
            snapshot=self.state.snapshot(offer_id)
        )

        mbx_metrics.offer_status_counter.labels(status=new_status.value).inc()
        logger.info(f"[OFFER] {offer_id} accepted (was {offer.status.value})")

    def _payment_complete_against_offer(self, args: List[str]) -> None:
        """
        Args: offer id, payment network transaction id.

        Verifies that the transaction pays the marble's owner the offer price
        with the offer id as memo, then transfers the marble to the buyer.
        The offer record itself is left unchanged, so settlement only goes
        ahead while the marble still belongs to the owner the offer was made
        against; a settled or handed-off marble rejects the offer.
        """
        offer_id, transaction_id = args
        offer = self.state.fetch_offer(offer_id)
        marble = self.state.fetch_marble(offer.marble.id)

        current_owner_id = marble.owner.id
        if current_owner_id != offer.marble.owner.id:
            logger.warning(
                f"[SETTLEMENT] Offer {offer_id} was made against {offer.marble.owner.id} "
                f"but {marble.id} now belongs to {current_owner_id}"
            )
            raise PaymentConditionsUnmet(
                f"Marble {marble.id} changed hands since offer {offer_id} was made"
            )

        owner = self.state.lookup_owner(current_owner_id)
        if owner is None:
            raise EntityNotFound(f"Transfer not done. Current owner not found - {current_owner_id}")

        try:
            paid = self.payment_verifier.verify_payment(offer, owner.account_id, transaction_id)
        except PaymentVerificationFailed as e:
            logger.error(f"[SETTLEMENT] Verification of {transaction_id} for offer {offer_id} failed: {e}")
            raise PaymentVerificationFailed(
                "Unable to verify payment information from stellar. Please try again later"
            ) from e

        if not paid:
            raise PaymentConditionsUnmet("Payment not done in stellar or mismatch in payment information")

        try:
            self._transfer(marble.id, offer.buyer.id, owner.company, trigger="settlement")
        except (InvariantViolation, LedgerError) as e:
            logger.error(
                f"[SETTLEMENT] Payment {transaction_id} verified for offer {offer_id} "
                f"but transfer of {offer.marble.id} to {offer.buyer.id} failed: {e}"
            )
            raise

        logger.info(f"[SETTLEMENT] Offer {offer_id} settled by {transaction_id}")

    # ----- raw access -----

    def _write(self, args: List[str]) -> None:
        """Args: key, value. Bypasses entity typing."""
        key, value = args

        def _put() -> Dict[str, Any]:
            return {
                'state': self.state,
                'key': key,
                'written': self.state.put_raw(key, value.encode())
            }

        self.enforcers["write"].enforce_action(
            _put,
            state=self.state,
            snapshot=self.state.snapshot(key)
        )

    def _read(self, args: List[str]) -> bytes:
        """Args: key. Returns the stored bytes, empty when absent."""
        return self.state.read_raw(args[0])
