"""
Marbles Exchange (MBX) - Payment Verification Service
Version: 1.0.0

Confirms that a payment on the Stellar network settles a marble offer.
The payment's memo carries the offer id; recipient and amount must match
the current owner's account and the offer price.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
import time

import httpx
from pydantic import BaseModel, Field, ValidationError

from mbx_config_v1 import MarblesConfig
from mbx_enforcement_v1 import PaymentVerificationFailed, logger
from mbx_state_v1 import Offer
import mbx_metrics

# ============================================
# HORIZON RESOURCES
# ============================================

MEMO_TYPE_TEXT = "text"

class HorizonPayment(BaseModel):
    """Payment operation record."""
    id: Optional[str] = None
    type: Optional[str] = None
    source_account: Optional[str] = Field(None, alias="from")
    to: str = ""
    amount: str = ""
    asset_type: Optional[str] = None
    asset_code: Optional[str] = None
    asset_issuer: Optional[str] = None
    transaction_hash: Optional[str] = None

    class Config:
        populate_by_name = True

class HorizonTransaction(BaseModel):
    """Transaction resource; only the memo matters here."""
    id: Optional[str] = None
    hash: Optional[str] = None
    memo_type: str = ""
    memo: Optional[str] = None
    successful: Optional[bool] = None

class HorizonProblem(BaseModel):
    """Problem document Horizon returns with non-2xx responses."""
    type: str = ""
    title: str = ""
    status: int = 0
    detail: str = ""

class HorizonError(Exception):
    """Non-2xx answer from Horizon."""

    def __init__(self, status_code: int, problem: HorizonProblem):
        self.status_code = status_code
        self.problem = problem
        super().__init__(f"Horizon error {status_code}: {problem.title or 'unknown'} {problem.detail}".strip())

# ============================================
# PAYMENT VERIFIER
# ============================================

class PaymentVerifier:
    """Queries Horizon for a transaction's latest payment and its memo."""

    def __init__(
        self,
        config: Optional[MarblesConfig] = None,
        client: Optional[httpx.Client] = None
    ):
        self.config = config or MarblesConfig()
        self.client = client or httpx.Client(timeout=self.config.horizon_timeout_seconds)
        self.base_url = self.config.horizon_base_url

    def close(self):
        self.client.close()

    def verify_payment(self, offer: Offer, payer_account_id: str, transaction_id: str) -> bool:
        """
        Decide whether transaction_id settles the offer.

        Args:
            offer: Offer being settled
            payer_account_id: external account of the marble's current owner,
                which must be the payment's recipient
            transaction_id: payment network transaction id

        Returns:
            True when recipient, amount and memo all match the offer

        Raises:
            PaymentVerificationFailed: network, HTTP or parse failure
        """
        started = time.monotonic()

        try:
            payment = self.fetch_latest_payment(transaction_id)
            payment_amount = self.parse_amount(payment.amount)
            transaction = self.fetch_transaction(transaction_id)
        except PaymentVerificationFailed:
            mbx_metrics.record_payment_verification("error", time.monotonic() - started)
            raise

        checks = {
            'recipient': bool(payer_account_id) and payment.to == payer_account_id,
            'amount': payment_amount == offer.offer_price,
            'memo_type': transaction.memo_type == MEMO_TYPE_TEXT,
            'memo': transaction.memo == offer.id
        }
        confirmed = all(checks.values())

        logger.info(
            f"[PAYMENT] Offer {offer.id} via tx {transaction_id}: "
            f"to={payment.to}, amount={payment_amount}, memo_type={transaction.memo_type}, "
            f"memo={transaction.memo}, confirmed={confirmed}"
        )

        if not confirmed:
            failed = [name for name, ok in checks.items() if not ok]
            logger.warning(f"[PAYMENT] Offer {offer.id} not settled, mismatched: {', '.join(failed)}")

        mbx_metrics.record_payment_verification(
            "confirmed" if confirmed else "unmet",
            time.monotonic() - started
        )
        return confirmed

    def fetch_latest_payment(self, transaction_id: str) -> HorizonPayment:
        """Most recent payment operation of the transaction."""
        body = self._get_json(
            f"{self.base_url}/transactions/{transaction_id}/payments",
            params={'limit': 1, 'order': 'desc'},
            what="payment"
        )

        records = self._records(body)
        if not records:
            raise PaymentVerificationFailed(f"No payment found for transaction {transaction_id}")

        try:
            return HorizonPayment.model_validate(records[0])
        except ValidationError as e:
            raise PaymentVerificationFailed(f"Unable to parse payment for transaction {transaction_id}") from e

    def fetch_transaction(self, transaction_id: str) -> HorizonTransaction:
        body = self._get_json(
            f"{self.base_url}/transactions/{transaction_id}",
            params=None,
            what="transaction"
        )

        try:
            return HorizonTransaction.model_validate(body)
        except ValidationError as e:
            raise PaymentVerificationFailed(f"Unable to parse transaction {transaction_id}") from e

    @staticmethod
    def parse_amount(amount: str) -> int:
        """Amount as an integer; '150' and '150.0000000' both give 150."""
        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError) as e:
            raise PaymentVerificationFailed("Unable to parse amount in payment") from e

        if not value.is_finite() or value != value.to_integral_value():
            raise PaymentVerificationFailed("Unable to parse amount in payment")

        return int(value)

    @staticmethod
    def _records(body: Any) -> List[Dict]:
        """Records of a collection page, or the body itself when it is a single record."""
        if not isinstance(body, dict):
            return []

        embedded = body.get('_embedded')
        if isinstance(embedded, dict):
            records = embedded.get('records')
            return [r for r in records if isinstance(r, dict)] if isinstance(records, list) else []

        return [body] if body else []

    def _get_json(self, url: str, params: Optional[Dict], what: str) -> Any:
        try:
            response = self.client.get(url, params=params, timeout=self.config.horizon_timeout_seconds)
        except httpx.HTTPError as e:
            logger.error(f"[PAYMENT] Horizon {what} lookup failed: {e}")
            raise PaymentVerificationFailed(
                f"error getting {what} details from stellar. Please try again later"
            ) from e

        if not (200 <= response.status_code < 300):
            error = self._decode_error(response)
            logger.error(f"[PAYMENT] {error}")
            raise PaymentVerificationFailed(f"error getting {what} details from stellar: {error}") from error

        try:
            return response.json()
        except ValueError as e:
            raise PaymentVerificationFailed(f"Unable to decode {what} details from stellar") from e

    @staticmethod
    def _decode_error(response: httpx.Response) -> HorizonError:
        try:
            problem = HorizonProblem.model_validate(response.json())
        except (ValueError, ValidationError):
            problem = HorizonProblem(status=response.status_code, title=response.reason_phrase)
        return HorizonError(response.status_code, problem)
