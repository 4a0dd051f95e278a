"""
Marbles Exchange (MBX) - Enforcement Layer
Version: 1.0.0

Error taxonomy, argument sanitation and the invariant enforcement layer that
every marble ledger operation runs through.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Type, Union
from enum import Enum
from collections import deque
import hmac
import logging
import re
from abc import ABC, abstractmethod

from mbx_config_v1 import DEFAULT_DECISION_LEDGER_SIZE, DEFAULT_DECISION_SECRET, DEFAULT_MAX_ARGUMENT_LENGTH
import mbx_metrics

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SYSTEM_SECRET = DEFAULT_DECISION_SECRET.encode()

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    SECURITY = "security"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    ROLLBACK = "rollback"
    REJECT = "reject"

class ErrorKind(Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization_mismatch"
    ALREADY_EXISTS = "already_exists"
    VERIFICATION_FAILURE = "verification_failure"
    BUSINESS_RULE = "business_rule_unmet"
    LEDGER_FAILURE = "ledger_failure"
    INVARIANT = "invariant_violation"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("MBX.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class InvariantViolation(Exception):
    """Raised when an invariant is violated."""
    kind = ErrorKind.INVARIANT

class ArgumentValidationError(InvariantViolation):
    """Malformed or missing caller arguments."""
    kind = ErrorKind.VALIDATION

class EntityNotFound(InvariantViolation):
    """Referenced marble, owner or offer is absent from the ledger."""
    kind = ErrorKind.NOT_FOUND

class AuthorizationMismatch(InvariantViolation):
    """Caller's company claim does not match the recorded company."""
    kind = ErrorKind.AUTHORIZATION

class AlreadyExists(InvariantViolation):
    """Duplicate creation of an owner or marble."""
    kind = ErrorKind.ALREADY_EXISTS

class InvalidStateTransition(InvariantViolation):
    """Offer status change outside the allowed transitions."""
    kind = ErrorKind.BUSINESS_RULE

class PaymentVerificationFailed(InvariantViolation):
    """Payment network unreachable or its answer unparseable."""
    kind = ErrorKind.VERIFICATION_FAILURE

class PaymentConditionsUnmet(InvariantViolation):
    """Payment found but it does not settle the offer."""
    kind = ErrorKind.BUSINESS_RULE

class SystemCompromised(Exception):
    """Raised when rollback fails or a decision signature does not verify."""
    pass

# ============================================
# INPUT SANITATION
# ============================================

_INTEGER_PATTERN = re.compile(r'^[+-]?[0-9]+$')

def sanitize_arguments(args: Sequence[str], max_length: int = DEFAULT_MAX_ARGUMENT_LENGTH):
    """Reject the first argument that is empty or longer than max_length."""
    for i, value in enumerate(args):
        if not isinstance(value, str) or len(value) == 0:
            raise ArgumentValidationError(f"Argument {i} must be a non-empty string")
        if len(value) > max_length:
            raise ArgumentValidationError(f"Argument {i} must be <= {max_length} characters")

def check_argument_count(args: Sequence[str], expected: Union[int, Sequence[int]]):
    """Arity check performed before sanitation."""
    allowed = [expected] if isinstance(expected, int) else list(expected)
    if len(args) not in allowed:
        wanted = " or ".join(str(n) for n in allowed)
        raise ArgumentValidationError(f"Incorrect number of arguments. Expecting {wanted}")

def parse_int(value: str, position: int, non_negative: bool = False) -> int:
    """Parse a decimal integer string (optional sign, digits only)."""
    if not _INTEGER_PATTERN.match(value):
        raise ArgumentValidationError(f"Argument {position} must be a numeric string")

    number = int(value)
    if non_negative and number < 0:
        raise ArgumentValidationError(f"Argument {position} must be a non-negative number")
    return number

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def _sign(secret: bytes, invariant_id: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(secret, data.encode(), 'sha256').hexdigest()

@dataclass
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    operation: str
    result: bool
    action: EnforcementResult
    timestamp: datetime
    signature: str

    def verify_signature(self, secret: bytes = SYSTEM_SECRET) -> bool:
        """Verify cryptographic signature."""
        expected = _sign(secret, self.invariant_id, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

    def to_dict(self) -> Dict:
        return {
            'invariant_id': self.invariant_id,
            'check_type': self.check_type,
            'operation': self.operation,
            'result': self.result,
            'action': self.action.value,
            'timestamp': self.timestamp.isoformat()
        }

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Append-only audit trail of enforcement decisions.

    Only the most recent max_entries decisions are retained; the totals
    behind health_score cover every decision ever recorded.
    """

    def __init__(self, secret: bytes = SYSTEM_SECRET, max_entries: int = DEFAULT_DECISION_LEDGER_SIZE):
        self.secret = secret
        self.entries: Deque[EnforcementDecision] = deque(maxlen=max_entries)
        self.total_recorded = 0
        self.post_checks = 0
        self.post_check_failures = 0

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature(self.secret):
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        self.total_recorded += 1
        if decision.check_type == "POST":
            self.post_checks += 1
            if not decision.result:
                self.post_check_failures += 1

        logger.debug(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def health_score(self) -> float:
        """Share of passing post-checks, 1.0 when none ran yet.

        Pre-check rejections are caller errors and do not count.
        """
        if not self.post_checks:
            return 1.0
        return (self.post_checks - self.post_check_failures) / self.post_checks

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        return all(entry.verify_signature(self.secret) for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants."""

    violation: Type[InvariantViolation] = InvariantViolation

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""
        pass

    @abstractmethod
    def post_check(self, result: Dict[str, Any]) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        pass

    @abstractmethod
    def rollback_action(self, state_before: Dict[str, Any]):
        """Define rollback procedure."""
        pass

    def describe_violation(self, **kwargs) -> str:
        """Message carried by the error raised on a failed pre-check."""
        return f"Pre-check failed: {self.id}"

    def restore_snapshot(self, state_before: Dict[str, Any]):
        """Write back the raw values captured before the action."""
        state = state_before['state']
        for key, raw in state_before.get('snapshot', {}).items():
            state.restore_raw(key, raw)
            logger.warning(f"ROLLBACK {self.id}: Restored key {key}")

# ============================================
# STATE INVARIANTS
# ============================================

class OwnerIdAvailable(Invariant):
    """INV-001: Owner ids are registered at most once."""

    violation = AlreadyExists

    def __init__(self):
        super().__init__(
            id="inv_001_owner_id_available",
            statement="It is FORBIDDEN to register an owner id that already resolves to an owner",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="owner_registry"
        )

    def pre_check(self, owner_id: str, state, **kwargs) -> bool:
        exists = state.lookup_owner(owner_id) is not None
        logger.info(f"PRE-CHECK {self.id}: owner_id={owner_id}, exists={exists}")
        return not exists

    def post_check(self, result: Dict[str, Any]) -> bool:
        owner = result['state'].lookup_owner(result['owner_id'])
        valid = owner is not None and owner.username == result['owner'].username
        logger.info(f"POST-CHECK {self.id}: owner_id={result['owner_id']}, registered={valid}")
        return valid

    def rollback_action(self, state_before: Dict[str, Any]):
        self.restore_snapshot(state_before)

    def describe_violation(self, owner_id: str = "", **kwargs) -> str:
        return f"This owner already exists - {owner_id}"

class MarbleIdAvailable(Invariant):
    """INV-002: Marble ids are created at most once."""

    violation = AlreadyExists

    def __init__(self):
        super().__init__(
            id="inv_002_marble_id_available",
            statement="It is FORBIDDEN to create a marble whose id is already in use",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="marble_registry"
        )

    def pre_check(self, marble_id: str, state, **kwargs) -> bool:
        exists = state.lookup_marble(marble_id) is not None
        logger.info(f"PRE-CHECK {self.id}: marble_id={marble_id}, exists={exists}")
        return not exists

    def post_check(self, result: Dict[str, Any]) -> bool:
        marble = result['state'].lookup_marble(result['marble_id'])
        valid = marble is not None
        logger.info(f"POST-CHECK {self.id}: marble_id={result['marble_id']}, created={valid}")
        return valid

    def rollback_action(self, state_before: Dict[str, Any]):
        self.restore_snapshot(state_before)

    def describe_violation(self, marble_id: str = "", **kwargs) -> str:
        return f"This marble already exists - {marble_id}"

# ============================================
# SECURITY INVARIANTS
# ============================================

class CompanyAuthorized(Invariant):
    """INV-401: Caller-asserted company must equal the recorded company.

    The company label comes from the caller, it is not derived from a
    certificate.
    """

    violation = AuthorizationMismatch

    def __init__(self, action_name: str):
        super().__init__(
            id=f"inv_401_company_authorized_{action_name.replace(' ', '_')}",
            statement=f"It is FORBIDDEN to authorize {action_name} for another company's entity",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="authorization"
        )
        self.action_name = action_name

    def pre_check(self, recorded_company: str, authed_by_company: str, **kwargs) -> bool:
        authorized = recorded_company == authed_by_company
        logger.info(f"PRE-CHECK {self.id}: recorded={recorded_company}, claimed={authed_by_company}, authorized={authorized}")

        if not authorized:
            logger.warning(f"AUTHORIZATION VIOLATION: '{authed_by_company}' attempted {self.action_name} for '{recorded_company}'")

        return authorized

    def post_check(self, result: Dict[str, Any]) -> bool:
        return True

    def rollback_action(self, state_before: Dict[str, Any]):
        logger.debug(f"ROLLBACK {self.id}: nothing to undo")

    def describe_violation(self, recorded_company: str = "", authed_by_company: str = "", **kwargs) -> str:
        return f"The company '{authed_by_company}' cannot authorize {self.action_name} for '{recorded_company}'."

# ============================================
# TRANSITION INVARIANTS
# ============================================

class ValidOfferTransitions(Invariant):
    """INV-101: Offers only move PROPOSED -> ACCEPTED.

    Accepting an already ACCEPTED offer is allowed and leaves it ACCEPTED.
    """

    violation = InvalidStateTransition

    ALLOWED_TRANSITIONS = {
        "PROPOSED": ["ACCEPTED"],
        "ACCEPTED": ["ACCEPTED"]
    }

    def __init__(self):
        super().__init__(
            id="inv_101_valid_offer_transitions",
            statement="It is FORBIDDEN for offers to transition outside PROPOSED -> ACCEPTED",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="offer_negotiation"
        )

    def pre_check(self, current_status: str, new_status: str, **kwargs) -> bool:
        allowed = self.ALLOWED_TRANSITIONS.get(current_status, [])
        valid = new_status in allowed
        logger.info(f"PRE-CHECK {self.id}: {current_status} -> {new_status}, valid={valid}")
        return valid

    def post_check(self, result: Dict[str, Any]) -> bool:
        offer = result['state'].lookup_offer(result['offer_id'])
        valid = offer is not None and offer.status.value == result['new_status']
        logger.info(f"POST-CHECK {self.id}: offer={result['offer_id']}, status_stored={valid}")
        return valid

    def rollback_action(self, state_before: Dict[str, Any]):
        self.restore_snapshot(state_before)

    def describe_violation(self, current_status: str = "", new_status: str = "", **kwargs) -> str:
        return f"Offer cannot move from '{current_status}' to '{new_status}'"

# ============================================
# DATA INTEGRITY INVARIANTS
# ============================================

class MarbleOwnershipConsistent(Invariant):
    """INV-601: A transfer rewrites only the embedded owner snapshot."""

    def __init__(self):
        super().__init__(
            id="inv_601_ownership_consistent",
            statement="The system MUST always leave color, size and sale terms unchanged on transfer",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="marble_registry"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Dict[str, Any]) -> bool:
        before = result['marble_before']
        after = result['state'].lookup_marble(result['marble_id'])
        new_owner = result['new_owner']

        if after is None:
            logger.error(f"POST-CHECK {self.id}: marble {result['marble_id']} vanished")
            return False

        owner_matches = (
            after.owner.id == new_owner.id
            and after.owner.username == new_owner.username
            and after.owner.company == new_owner.company
        )
        attributes_kept = (
            after.color == before.color
            and after.size == before.size
            and after.is_for_sale == before.is_for_sale
            and after.min_price == before.min_price
        )

        logger.info(f"POST-CHECK {self.id}: owner_matches={owner_matches}, attributes_kept={attributes_kept}")
        return owner_matches and attributes_kept

    def rollback_action(self, state_before: Dict[str, Any]):
        self.restore_snapshot(state_before)

class LedgerWriteVerified(Invariant):
    """INV-602: The ledger returns exactly the bytes that were written."""

    def __init__(self):
        super().__init__(
            id="inv_602_ledger_write_verified",
            statement="The system MUST always read back what it wrote within one operation",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="state_accessor"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Dict[str, Any]) -> bool:
        stored = result['state'].read_raw(result['key'])
        valid = stored == result['written']
        logger.info(f"POST-CHECK {self.id}: key={result['key']}, verified={valid}")
        return valid

    def rollback_action(self, state_before: Dict[str, Any]):
        self.restore_snapshot(state_before)

class RecordRemoved(Invariant):
    """INV-603: A deleted key reads back empty."""

    def __init__(self):
        super().__init__(
            id="inv_603_record_removed",
            statement="The system MUST always leave no value behind a deleted key",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="state_accessor"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Dict[str, Any]) -> bool:
        removed = len(result['state'].read_raw(result['key'])) == 0
        logger.info(f"POST-CHECK {self.id}: key={result['key']}, removed={removed}")
        return removed

    def rollback_action(self, state_before: Dict[str, Any]):
        self.restore_snapshot(state_before)

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """Runs one operation's write action between its pre and post checks."""

    def __init__(
        self,
        operation: str,
        invariants: List[Invariant],
        ledger: DecisionLedger,
        secret: Optional[bytes] = None
    ):
        self.operation = operation
        self.invariants = invariants
        self.ledger = ledger
        self.secret = secret if secret is not None else ledger.secret
        self.sorted_invariants = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order."""
        sorted_invs = []
        remaining = set(inv.id for inv in invariants)

        while remaining:
            # Dependencies outside this enforcer are never in remaining
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise InvariantViolation("Circular dependency detected in invariants")

            sorted_invs.extend(ready)
            for inv in ready:
                remaining.remove(inv.id)

        return sorted_invs

    def enforce_action(self, action: Callable[[], Dict[str, Any]], **kwargs) -> Dict[str, Any]:
        """
        Execute action with full invariant enforcement.

        kwargs feed the pre-checks and must contain 'state' (the accessor)
        and 'snapshot' (raw values of the keys the action writes).
        """
        state_before = self._capture_state(kwargs)

        for inv in self.sorted_invariants:
            passed = self._pre_check(inv, **kwargs)

            if not passed:
                logger.error(f"PRE-CHECK FAILED: {inv.id}")
                raise inv.violation(inv.describe_violation(**kwargs))

        try:
            result = action()
        except Exception as e:
            logger.error(f"ACTION FAILED: {self.operation}: {e}")
            raise

        for inv in self.sorted_invariants:
            passed = self._post_check(inv, result)

            if not passed:
                logger.error(f"POST-CHECK FAILED: {inv.id}")
                self._rollback(state_before)
                raise InvariantViolation(f"Post-check failed: {inv.id}")

        logger.debug(f"All invariant checks PASSED for {self.operation}")
        return result

    def _pre_check(self, inv: Invariant, **kwargs) -> bool:
        """Execute pre-action check. Lookup failures propagate to the caller."""
        try:
            result = bool(inv.pre_check(**kwargs))
        except Exception as e:
            logger.error(f"Pre-check exception: {inv.id}", exc_info=e)
            raise

        action = EnforcementResult.PROCEED if result else EnforcementResult.REJECT
        self._record(inv, "PRE", result, action)
        return result

    def _post_check(self, inv: Invariant, result: Dict[str, Any]) -> bool:
        """Execute post-action check. Any exception counts as a failure."""
        try:
            check_result = bool(inv.post_check(result))
        except Exception as e:
            logger.error(f"Post-check exception: {inv.id}", exc_info=e)
            check_result = False

        action = EnforcementResult.PROCEED if check_result else EnforcementResult.ROLLBACK
        self._record(inv, "POST", check_result, action)
        return check_result

    def _record(self, inv: Invariant, check_type: str, result: bool, action: EnforcementResult):
        timestamp = datetime.now()
        decision = EnforcementDecision(
            invariant_id=inv.id,
            check_type=check_type,
            operation=self.operation,
            result=result,
            action=action,
            timestamp=timestamp,
            signature=_sign(self.secret, inv.id, result, timestamp)
        )
        self.ledger.record(decision)
        mbx_metrics.record_invariant_check(inv.id, check_type, result)

    def _rollback(self, state_before: Dict[str, Any]):
        """Restore pre-action values, in reverse dependency order."""
        logger.warning(f"ROLLBACK INITIATED for {self.operation}")
        mbx_metrics.rollback_counter.labels(operation=self.operation).inc()

        for inv in reversed(self.sorted_invariants):
            try:
                inv.rollback_action(state_before)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {inv.id}: {e}")
                raise SystemCompromised(f"Rollback failed for {inv.id}") from e

        logger.info("ROLLBACK COMPLETE")

    def _capture_state(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        """Capture current system state."""
        return {
            'timestamp': datetime.now(),
            'snapshot': {},
            **kwargs
        }
