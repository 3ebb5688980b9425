"""
CampusBid Escrow — Payment Gateway Collaborator
The engine only needs four provider calls: initiate, verify, refund, payout.
Every call is bounded by GATEWAY_TIMEOUT_SECONDS and any provider problem
surfaces as GatewayFailure.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Optional, TypeVar

from campusbid.config import get_settings
from campusbid.encryption import generate_reference
from campusbid.exceptions import GatewayFailure

logger = logging.getLogger("campusbid.gateway")

T = TypeVar("T")


@dataclass
class BuyerContact:
    email: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class PaymentInitiation:
    reference: str
    payment_link: str


@dataclass
class PaymentVerification:
    status: str  # "success" | "failed" | "pending"
    amount: Decimal
    currency: str = "USD"


class PaymentGateway:
    """Interface every provider adapter (mobile money, card) implements."""

    name = "abstract"

    async def initiate(
        self,
        amount: Decimal,
        currency: str,
        buyer_contact: BuyerContact,
        callback_url: str,
        metadata: Optional[dict] = None,
    ) -> PaymentInitiation:
        raise NotImplementedError

    async def verify(self, reference: str) -> PaymentVerification:
        raise NotImplementedError

    async def refund(self, reference: str, amount: Decimal, reason: str) -> str:
        """Return the provider's refund reference."""
        raise NotImplementedError

    async def payout(self, seller_id: str, amount: Decimal) -> str:
        """Return the provider's payout reference."""
        raise NotImplementedError


async def call_gateway(operation: str, call: Awaitable[T], timeout: Optional[float] = None) -> T:
    """
    Await a gateway call with a deadline.

    Timeouts and unexpected adapter exceptions become GatewayFailure so the
    caller never hangs and never sees provider-specific exception types.
    """
    if timeout is None:
        timeout = get_settings().GATEWAY_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except GatewayFailure:
        raise
    except asyncio.TimeoutError:
        logger.error("Gateway %s timed out after %.1fs", operation, timeout)
        raise GatewayFailure(
            f"Payment provider did not answer the {operation} request in time",
            provider_reason="timeout",
        )
    except Exception as exc:
        logger.error("Gateway %s failed: %s", operation, exc)
        raise GatewayFailure(
            f"Payment provider rejected the {operation} request",
            provider_reason=str(exc),
        )


# ═══════════════════════════════════════════════════════
#  Sandbox gateway (local runs and tests)
# ═══════════════════════════════════════════════════════


@dataclass
class SandboxPaymentGateway(PaymentGateway):
    """
    In-process provider that settles nothing.

    Records every call so tests can assert on payouts/refunds, and can be
    told to fail the next call of a given operation.
    """

    base_url: str = "http://localhost:8000/payment/sandbox"
    verify_statuses: dict = field(default_factory=dict)
    initiated: dict = field(default_factory=dict)
    payouts: list = field(default_factory=list)
    refunds: list = field(default_factory=list)
    _failures: dict = field(default_factory=dict)

    name = "sandbox"

    def fail_next(self, operation: str, reason: str = "declined") -> None:
        self._failures[operation] = reason

    def _maybe_fail(self, operation: str) -> None:
        reason = self._failures.pop(operation, None)
        if reason is not None:
            raise GatewayFailure(f"Sandbox {operation} failed", provider_reason=reason)

    async def initiate(self, amount, currency, buyer_contact, callback_url, metadata=None):
        self._maybe_fail("initiate")
        reference = generate_reference("PAY")
        self.initiated[reference] = {
            "amount": Decimal(amount),
            "currency": currency,
            "callback_url": callback_url,
            "metadata": metadata or {},
        }
        logger.info("Sandbox payment initiated: %s %s %s", reference, amount, currency)
        return PaymentInitiation(
            reference=reference,
            payment_link=f"{self.base_url}/{reference}",
        )

    async def verify(self, reference):
        self._maybe_fail("verify")
        intent = self.initiated.get(reference)
        if intent is None:
            raise GatewayFailure("Unknown payment reference", provider_reason="not_found")
        return PaymentVerification(
            status=self.verify_statuses.get(reference, "pending"),
            amount=intent["amount"],
            currency=intent["currency"],
        )

    async def refund(self, reference, amount, reason):
        self._maybe_fail("refund")
        refund_reference = f"RFND-{secrets.token_hex(8)}"
        self.refunds.append(
            {"reference": reference, "amount": Decimal(amount), "reason": reason,
             "refund_reference": refund_reference}
        )
        return refund_reference

    async def payout(self, seller_id, amount):
        self._maybe_fail("payout")
        payout_reference = f"POUT-{secrets.token_hex(8)}"
        self.payouts.append(
            {"seller_id": seller_id, "amount": Decimal(amount), "payout_reference": payout_reference}
        )
        return payout_reference
