"""
Payment gateway implementations.

WHAT: Charge the governance fee and report a payment reference
WHY: Identities unlock only against confirmed payments from both parties
HOW: SandboxPaymentGateway issues local references; HttpPaymentGateway calls
     a remote gateway with one idempotency key per payment attempt
"""

from decimal import Decimal
from typing import Iterable, Optional
from uuid import uuid4

from ..core.config import settings
from ..utils.exceptions import CollaboratorUnavailableError
from ..utils.logger import get_logger
from .http_client import RetryingHttpClient
from .types import PaymentConfirmation

logger = get_logger(__name__)

CONFIRMED_STATUSES = {"captured", "confirmed", "paid"}


def attempt_key(negotiation_id: str, payer_id: str) -> str:
    return f"governance-fee:{negotiation_id}:{payer_id}:{uuid4().hex[:12]}"


class SandboxPaymentGateway:
    """
    Local gateway that confirms every payment.

    Payer ids listed in decline_payer_ids are declined, which lets tests and
    demos exercise the failure path.
    """

    def __init__(self, currency: Optional[str] = None, decline_payer_ids: Iterable[str] = ()):
        self.currency = currency or settings.GOVERNANCE_FEE_CURRENCY
        self.decline_payer_ids = set(decline_payer_ids)
        self.charges: list[PaymentConfirmation] = []

    def confirm_payment(self, negotiation_id: str, payer_id: str, amount: Decimal) -> PaymentConfirmation:
        if payer_id in self.decline_payer_ids:
            logger.info(f"Sandbox declined governance fee for {payer_id} on {negotiation_id}")
            return PaymentConfirmation(
                confirmed=False, reference=None, amount=amount,
                currency=self.currency, reason="declined by sandbox"
            )

        confirmation = PaymentConfirmation(
            confirmed=True,
            reference=f"pay_sandbox_{uuid4().hex[:16]}",
            amount=amount,
            currency=self.currency,
        )
        self.charges.append(confirmation)
        logger.info(f"Sandbox captured {amount} {self.currency} from {payer_id} on {negotiation_id}")
        return confirmation


class HttpPaymentGateway:
    """
    Remote payment gateway.

    POST {PAYMENT_GATEWAY_URL}/payments
        {"negotiation_id", "payer_id", "amount", "currency", "purpose"}
        200 -> {"status": "captured" | "declined", "payment_id", "reason"}
        402 -> declined
    """

    def __init__(self, http: Optional[RetryingHttpClient] = None, currency: Optional[str] = None):
        self.currency = currency or settings.GOVERNANCE_FEE_CURRENCY
        self.http = http or RetryingHttpClient(
            name="payment_gateway",
            base_url=settings.PAYMENT_GATEWAY_URL,
            timeout=settings.COLLABORATOR_TIMEOUT,
            max_retries=settings.COLLABORATOR_MAX_RETRIES,
            retry_delay=settings.COLLABORATOR_RETRY_DELAY,
        )

    def confirm_payment(self, negotiation_id: str, payer_id: str, amount: Decimal) -> PaymentConfirmation:
        response = self.http.request(
            "POST",
            "/payments",
            allow_status=(402,),
            json={
                "negotiation_id": negotiation_id,
                "payer_id": payer_id,
                "amount": str(amount),
                "currency": self.currency,
                "purpose": "governance_fee",
            },
            # Transport retries reuse the key; a new attempt after a decline gets its own
            headers={"Idempotency-Key": attempt_key(negotiation_id, payer_id)},
        )
        if response.status_code == 402:
            try:
                data = response.json()
            except ValueError:
                data = {}
            if not isinstance(data, dict):
                data = {}
        else:
            data = self.http.json(response)

        if response.status_code == 402 or data.get("status") not in CONFIRMED_STATUSES:
            reason = data.get("reason") or data.get("status") or "declined"
            logger.warning(f"Gateway declined governance fee for {payer_id} on {negotiation_id}: {reason}")
            return PaymentConfirmation(
                confirmed=False, reference=None, amount=amount,
                currency=self.currency, reason=str(reason)
            )

        reference = data.get("payment_id")
        if not reference:
            raise CollaboratorUnavailableError("payment_gateway", "confirmed payment without payment_id")

        logger.info(f"Gateway captured governance fee {reference} from {payer_id} on {negotiation_id}")
        return PaymentConfirmation(
            confirmed=True, reference=str(reference), amount=amount, currency=self.currency
        )
