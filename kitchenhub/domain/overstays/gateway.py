"""
Payment gateway for overstay penalties

PaymentGateway is the seam the charge executor talks to; StripePaymentGateway is the
production adapter (off-session PaymentIntents, Checkout Sessions for manual payment).
Gateway failures are translated into GatewayTransientError / GatewayTerminalError so
nothing Stripe-specific leaks past this module.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import stripe

from ...config import FRONTEND_URL, STRIPE_CURRENCY, STRIPE_SECRET_KEY
from .errors import GatewayTerminalError, GatewayTransientError

logger = logging.getLogger(__name__)


class PaymentGateway(ABC):
    @abstractmethod
    async def charge(
        self,
        customer_token: str,
        payment_method_token: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict,
    ) -> str:
        """Charge a saved payment method. Returns the gateway reference."""

    @abstractmethod
    async def create_payment_link(
        self,
        customer_token: Optional[str],
        amount_cents: int,
        description: str,
        metadata: dict,
    ) -> str:
        """Create a hosted payment page for manual collection. Returns its URL."""


class StripePaymentGateway(PaymentGateway):
    """Stripe adapter; the SDK is blocking so calls run in a worker thread"""

    def __init__(self, api_key: Optional[str] = None, currency: str = STRIPE_CURRENCY):
        self.api_key = api_key or STRIPE_SECRET_KEY
        self.currency = currency
        if self.api_key:
            stripe.api_key = self.api_key
        else:
            logger.warning("⚠️ STRIPE_SECRET_KEY not configured - overstay charges will fail")

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def charge(
        self,
        customer_token: str,
        payment_method_token: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict,
    ) -> str:
        if not self.is_available():
            raise GatewayTransientError("Payment gateway is not configured")

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=self.currency,
                customer=customer_token,
                payment_method=payment_method_token,
                off_session=True,
                confirm=True,
                description="Storage overstay penalty",
                metadata={k: str(v) for k, v in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            reason = e.user_message or "Card declined"
            logger.warning(f"💳 Stripe card error for {idempotency_key}: {e.code} - {reason}")
            raise GatewayTerminalError(reason)
        except stripe.InvalidRequestError as e:
            # Detached/missing payment method, unknown customer, etc.
            logger.warning(f"💳 Stripe rejected charge {idempotency_key}: {str(e)}")
            raise GatewayTerminalError(e.user_message or "Payment method is no longer valid")
        except stripe.IdempotencyError as e:
            logger.error(f"❌ Idempotency key reused with different parameters: {idempotency_key}")
            raise GatewayTerminalError(str(e))
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning(f"📡 Stripe transport error for {idempotency_key}: {str(e)}")
            raise GatewayTransientError("Payment provider unreachable", outcome_unknown=True)
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe error for {idempotency_key}: {str(e)}")
            raise GatewayTransientError("Payment provider error")

        if intent.status != "succeeded":
            # requires_action (3DS) cannot be completed off-session
            logger.warning(f"💳 PaymentIntent {intent.id} ended in status {intent.status}")
            raise GatewayTerminalError("Card requires authentication")

        logger.info(f"✅ Stripe charge succeeded: {intent.id} ({amount_cents} cents)")
        return intent.id

    async def create_payment_link(
        self,
        customer_token: Optional[str],
        amount_cents: int,
        description: str,
        metadata: dict,
    ) -> str:
        if not self.is_available():
            raise GatewayTransientError("Payment gateway is not configured")

        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": {k: str(v) for k, v in metadata.items()},
            "success_url": f"{FRONTEND_URL}/chef/overstays?payment=success",
            "cancel_url": f"{FRONTEND_URL}/chef/overstays?payment=cancelled",
        }
        if customer_token:
            params["customer"] = customer_token

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as e:
            logger.error(f"❌ Failed to create Stripe payment link: {str(e)}")
            raise GatewayTransientError("Could not create payment link")

        return session.url
