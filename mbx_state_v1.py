"""
Marbles Exchange (MBX) - Ledger State Access
Version: 1.0.0

Marble, owner and offer records, the key-value ledger interface they are
stored in, and typed read/write access on top of it.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
from abc import ABC, abstractmethod
import json

from mbx_enforcement_v1 import EntityNotFound, logger

# ============================================
# DATA MODELS
# ============================================

MARBLE_DOC_TYPE = "marble"
OWNER_DOC_TYPE = "marble_owner"
OFFER_DOC_TYPE = "marble_offer"

class OfferStatus(Enum):
    PROPOSED = "PROPOSED"
    ACCEPTED = "ACCEPTED"

def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"expected string, got {type(value).__name__}")
    return value

def _as_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected integer, got {type(value).__name__}")
    return value

def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise TypeError(f"expected boolean, got {type(value).__name__}")
    return value

@dataclass
class Owner:
    """Registered participant."""
    id: str
    username: str
    company: str
    account_id: str = ""  # external payment account
    enabled: bool = True

    def to_dict(self) -> Dict:
        return {
            'docType': OWNER_DOC_TYPE,
            'id': self.id,
            'username': self.username,
            'company': self.company,
            'accountId': self.account_id,
            'enabled': self.enabled
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Owner":
        return cls(
            id=_as_str(data.get('id')),
            username=_as_str(data.get('username')),
            company=_as_str(data.get('company')),
            account_id=_as_str(data.get('accountId')),
            enabled=_as_bool(data.get('enabled'))
        )

@dataclass
class OwnerRelation:
    """Denormalized owner snapshot embedded in a marble."""
    id: str
    username: str
    company: str

    @classmethod
    def from_owner(cls, owner: Owner) -> "OwnerRelation":
        return cls(id=owner.id, username=owner.username, company=owner.company)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'username': self.username,
            'company': self.company
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "OwnerRelation":
        data = data or {}
        return cls(
            id=_as_str(data.get('id')),
            username=_as_str(data.get('username')),
            company=_as_str(data.get('company'))
        )

@dataclass
class Marble:
    """Transferable asset."""
    id: str
    color: str
    size: int
    owner: OwnerRelation
    is_for_sale: bool = False
    min_price: int = 0

    def to_dict(self) -> Dict:
        return {
            'docType': MARBLE_DOC_TYPE,
            'id': self.id,
            'color': self.color,
            'size': self.size,
            'owner': self.owner.to_dict(),
            'isForSale': self.is_for_sale,
            'minPrice': self.min_price
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Marble":
        return cls(
            id=_as_str(data.get('id')),
            color=_as_str(data.get('color')),
            size=_as_int(data.get('size')),
            owner=OwnerRelation.from_dict(data.get('owner')),
            is_for_sale=_as_bool(data.get('isForSale')),
            min_price=_as_int(data.get('minPrice'))
        )

@dataclass
class Offer:
    """Proposed purchase of a marble, holding snapshots of buyer and marble."""
    id: str
    buyer: Owner
    marble: Marble
    offer_price: int
    status: OfferStatus = OfferStatus.PROPOSED

    def to_dict(self) -> Dict:
        return {
            'docType': OFFER_DOC_TYPE,
            'id': self.id,
            'buyer': self.buyer.to_dict(),
            'marble': self.marble.to_dict(),
            'offerPrice': self.offer_price,
            'status': self.status.value
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Offer":
        return cls(
            id=_as_str(data.get('id')),
            buyer=Owner.from_dict(data.get('buyer') or {}),
            marble=Marble.from_dict(data.get('marble') or {}),
            offer_price=_as_int(data.get('offerPrice')),
            status=OfferStatus(data.get('status') or OfferStatus.PROPOSED.value)
        )

def encode_record(record) -> bytes:
    """JSON-encode a record the way it is stored on the ledger."""
    return json.dumps(record.to_dict(), separators=(',', ':')).encode()

# ============================================
# LEDGER INTERFACE
# ============================================

class LedgerError(Exception):
    """Raised by a ledger when a read, write or delete fails."""
    pass

class LedgerStub(ABC):
    """Key-value ledger supplied by the host environment."""

    @abstractmethod
    def get_state(self, key: str) -> bytes:
        """Return the stored value, or empty bytes for a missing key."""
        pass

    @abstractmethod
    def put_state(self, key: str, value: bytes):
        pass

    @abstractmethod
    def del_state(self, key: str):
        pass

class InMemoryLedger(LedgerStub):
    """In-memory ledger (production hosts supply their own store)."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self.state: Dict[str, bytes] = dict(initial or {})

    def get_state(self, key: str) -> bytes:
        return self.state.get(key, b"")

    def put_state(self, key: str, value: bytes):
        if not key:
            raise LedgerError("key must not be empty")
        self.state[key] = bytes(value)

    def del_state(self, key: str):
        self.state.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self.state.keys())

# ============================================
# STATE ACCESSOR
# ============================================

class StateAccessor:
    """Typed access to marbles, owners and offers on the ledger.

    Absence is reported as None by the lookup_* methods and as EntityNotFound
    by the fetch_* methods. A failed ledger read is treated as absence.
    Writes are applied one by one; nothing groups them into a transaction.
    """

    def __init__(self, ledger: LedgerStub):
        self.ledger = ledger

    # ----- raw access -----

    def read_raw(self, key: str) -> bytes:
        """Read raw bytes; ledger failures propagate."""
        return self.ledger.get_state(key) or b""

    def put_raw(self, key: str, value: bytes) -> bytes:
        self.ledger.put_state(key, value)
        logger.info(f"[STATE] Wrote key {key} ({len(value)} bytes)")
        return value

    def delete(self, key: str):
        self.ledger.del_state(key)
        logger.info(f"[STATE] Deleted key {key}")

    def snapshot(self, *keys: str) -> Dict[str, bytes]:
        """Capture raw values for rollback."""
        return {key: self.read_raw(key) for key in keys}

    def restore_raw(self, key: str, raw: bytes):
        if raw:
            self.ledger.put_state(key, raw)
        else:
            self.ledger.del_state(key)

    def _decode(self, key: str) -> Optional[Dict]:
        try:
            raw = self.ledger.get_state(key)
        except LedgerError as e:
            logger.warning(f"[STATE] Read of {key} failed, treating as absent: {e}")
            return None

        if not raw:
            return None

        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            logger.debug(f"[STATE] Key {key} does not hold a JSON record")
            return None

        return data if isinstance(data, dict) else None

    # ----- marbles -----

    def lookup_marble(self, marble_id: str) -> Optional[Marble]:
        data = self._decode(marble_id)
        if data is None:
            return None

        try:
            marble = Marble.from_dict(data)
        except (TypeError, ValueError):
            return None

        # a default-valued decode has an empty id
        return marble if marble.id == marble_id else None

    def fetch_marble(self, marble_id: str) -> Marble:
        marble = self.lookup_marble(marble_id)
        if marble is None:
            raise EntityNotFound(f"Marble does not exist - {marble_id}")
        return marble

    def put_marble(self, marble: Marble) -> bytes:
        return self.put_raw(marble.id, encode_record(marble))

    # ----- owners -----

    def lookup_owner(self, owner_id: str) -> Optional[Owner]:
        data = self._decode(owner_id)
        if data is None:
            return None

        try:
            owner = Owner.from_dict(data)
        except (TypeError, ValueError):
            return None

        return owner if len(owner.username) > 0 else None

    def fetch_owner(self, owner_id: str) -> Owner:
        owner = self.lookup_owner(owner_id)
        if owner is None:
            raise EntityNotFound(f"Owner does not exist - {owner_id}")
        return owner

    def put_owner(self, owner: Owner) -> bytes:
        return self.put_raw(owner.id, encode_record(owner))

    # ----- offers -----

    def lookup_offer(self, offer_id: str) -> Optional[Offer]:
        data = self._decode(offer_id)
        if data is None:
            return None

        try:
            offer = Offer.from_dict(data)
        except (TypeError, ValueError):
            return None

        return offer if offer.id == offer_id else None

    def fetch_offer(self, offer_id: str) -> Offer:
        offer = self.lookup_offer(offer_id)
        if offer is None:
            raise EntityNotFound(f"This offer does not exist - {offer_id}")
        return offer

    def put_offer(self, offer: Offer) -> bytes:
        return self.put_raw(offer.id, encode_record(offer))
